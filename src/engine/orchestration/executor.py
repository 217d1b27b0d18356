from __future__ import annotations

import logging
from dataclasses import dataclass

from src.core.rows import Row
from src.engine.orchestration.context import ExecutionContext
from src.engine.orchestration.step import DataStep
from src.engine.ports.dataset import Dataset
from src.engine.registry import ComponentRegistry
from src.engine.schemas.pipeline import PipelineConfig
from src.engine.services.logctx import ctx_prefix

logger = logging.getLogger("etl_runner")


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    steps_run: int
    steps_written: int


class PipelineExecutor:
    """Исполнение одного цикла пайплайна: собрать шаги -> прогнать по зависимостям."""

    def __init__(
        self,
        *,
        registry: ComponentRegistry,
        num_partitions: int | None = None,
    ) -> None:
        self._registry = registry
        self._num_partitions = num_partitions

    def build_steps(self, pipeline: PipelineConfig) -> list[DataStep]:
        # все шаги собираются (и проверяются) до чтения данных
        return [
            DataStep(cfg, self._registry, num_partitions=self._num_partitions)
            for cfg in pipeline.execution_order()
        ]

    async def execute(
        self,
        pipeline: PipelineConfig,
        ctx: ExecutionContext | None = None,
    ) -> ExecutionResult:
        ctx = ctx or ExecutionContext(pipeline=pipeline.name)
        prefix = ctx_prefix(pipeline=ctx.pipeline, run=ctx.run_id)

        steps = self.build_steps(pipeline)
        logger.info("%s start steps=%d attempt=%d", prefix, len(steps), ctx.attempt)

        datasets: dict[str, Dataset[Row]] = {}
        written = 0
        try:
            for step in steps:
                step_prefix = ctx_prefix(pipeline=ctx.pipeline, step=step.name, run=ctx.run_id)
                logger.info("%s running deps=%s", step_prefix, step.dependencies)

                datasets[step.name] = await step.run(datasets)
                if step.has_output:
                    written += 1

            logger.info("%s done steps=%d written=%d", prefix, len(steps), written)
            return ExecutionResult(steps_run=len(steps), steps_written=written)
        finally:
            for step in steps:
                step.clear_cache()
