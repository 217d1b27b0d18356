from __future__ import annotations

import logging

from src.core.rows import PlannedRow, Row
from src.engine.ports.dataset import Dataset
from src.engine.services.compatibility import BulkRoute, KeyedRoute, MergeRoute
from src.engine.services.existing_join import ExistingStateJoiner, KeyedRecords
from src.engine.services.keys import KeyExtractor
from src.engine.services.mutation_apply import apply_bulk, apply_keyed

logger = logging.getLogger("etl_runner")


def plan_mutations_by_key(
    arriving: Dataset[Row],
    route: KeyedRoute,
    *,
    num_partitions: int | None = None,
) -> Dataset[PlannedRow]:
    """Сгруппировать по ключу, присоединить сохранённое состояние и спланировать."""
    planner = route.planner
    extractor = KeyExtractor(planner.key_field_names)
    if len(arriving.schema):
        extractor.validate(arriving.schema)

    joiner = ExistingStateJoiner(route.sink, planner.key_field_names)

    arriving_by_key = arriving.group_by(extractor, num_partitions=num_partitions)
    arriving_and_existing = arriving_by_key.map_partitions(joiner.join_partition)

    def plan_for_key(records: KeyedRecords) -> list[PlannedRow]:
        return list(
            planner.plan_mutations_for_key(records.key, records.arriving, records.existing)
        )

    return arriving_and_existing.flat_map(plan_for_key)


async def write_output(
    data: Dataset[Row],
    route: MergeRoute,
    *,
    num_partitions: int | None = None,
) -> None:
    match route:
        case KeyedRoute():
            planned = plan_mutations_by_key(data, route, num_partitions=num_partitions)
            await apply_keyed(planned, route.sink)
        case BulkRoute():
            groups = route.planner.plan_mutations_for_set(data)
            logger.info(
                "Bulk planner %s produced %d mutation group(s): %s",
                type(route.planner).__name__,
                len(groups),
                [mt.value for mt, _ in groups],
            )
            await apply_bulk(groups, route.sink)
