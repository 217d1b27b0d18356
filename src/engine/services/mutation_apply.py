from __future__ import annotations

import logging
from collections.abc import Sequence

from src.core.enums import MutationType
from src.core.rows import PlannedRow, Row
from src.engine.ports.dataset import Dataset
from src.engine.ports.sink import BulkSink, KeyedSink

logger = logging.getLogger("etl_runner")


async def apply_keyed(planned: Dataset[PlannedRow], sink: KeyedSink) -> None:
    """Применить мутации: один клиент и один вызов apply на партицию."""

    async def apply_partition(rows: list[PlannedRow]) -> None:
        # пустая партиция не открывает клиента
        if not rows:
            return
        async with sink.connect() as client:
            await client.apply_mutations(rows)
        logger.debug("Applied %d planned row(s) for partition", len(rows))

    await planned.foreach_partition(apply_partition)


async def apply_bulk(
    planned: Sequence[tuple[MutationType, Dataset[Row]]],
    sink: BulkSink,
) -> None:
    """Применить группы мутаций последовательно, в порядке планировщика."""
    for mutation_type, rowset in planned:
        logger.info("Applying bulk mutation group type=%s", mutation_type.value)
        await sink.apply_bulk_mutations([(mutation_type, rowset)])
