from __future__ import annotations

import logging
from collections.abc import Mapping

from src.core.rows import Row
from src.engine.ports.dataset import Dataset
from src.engine.registry import ComponentRegistry
from src.engine.schemas.pipeline import StepConfig
from src.engine.services.compatibility import MergeRoute, validate_compatibility
from src.engine.services.merge import write_output

logger = logging.getLogger("etl_runner")


class DataStep:
    """Шаг с данными: input или deriver, опционально запись в output.

    Все компоненты собираются и проверяются в конструкторе, до чтения
    первой строки.
    """

    def __init__(
        self,
        config: StepConfig,
        registry: ComponentRegistry,
        *,
        num_partitions: int | None = None,
    ) -> None:
        self.config = config
        self.name = config.name
        self._num_partitions = num_partitions
        self._data: Dataset[Row] | None = None
        self.finished = False

        self.input = None
        self.deriver = None
        self.route: MergeRoute | None = None

        if config.input is not None:
            self.input = registry.build_input(config.input, step_name=self.name)
        if config.deriver is not None:
            self.deriver = registry.build_deriver(config.deriver, step_name=self.name)

        if config.output is not None and config.planner is not None:
            planner = registry.build_planner(config.planner, step_name=self.name)
            output = registry.build_output(
                config.output,
                step_name=self.name,
                key_field_names=getattr(planner, "key_field_names", None),
                identity_field_names=getattr(planner, "identity_field_names", None),
            )
            self.route = validate_compatibility(planner, output)

    @property
    def dependencies(self) -> list[str]:
        return list(self.config.dependencies)

    @property
    def has_output(self) -> bool:
        return self.route is not None

    @property
    def data(self) -> Dataset[Row] | None:
        return self._data

    async def run(self, dependencies: Mapping[str, Dataset[Row]]) -> Dataset[Row]:
        if self.input is not None:
            data = await self.input.read()
        else:
            data = await self.deriver.derive(  # type: ignore[union-attr]
                {name: dependencies[name] for name in self.dependencies}
            )

        await self.set_data(data)
        self.finished = True
        return self._data  # type: ignore[return-value]

    async def set_data(self, data: Dataset[Row]) -> None:
        if self.config.cache:
            data = data.cache()
        if self.config.hint_small:
            data = data.broadcast()
        self._data = data

        logger.info(
            "Step %s data set cache=%s small_hint=%s output=%s",
            self.name,
            self.config.cache,
            self.config.hint_small,
            self.has_output,
        )

        if self.route is not None:
            await write_output(data, self.route, num_partitions=self._num_partitions)
            logger.info("Step %s output written", self.name)

    def clear_cache(self) -> None:
        if self._data is not None:
            self._data.unpersist()
