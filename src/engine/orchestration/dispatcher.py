from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from src.core.exceptions import ConfigurationError
from src.engine.orchestration.context import ExecutionContext
from src.engine.orchestration.executor import ExecutionResult, PipelineExecutor
from src.engine.schemas.pipeline import PipelineConfig
from src.engine.services.db_errors import is_db_disconnect

logger = logging.getLogger("etl_runner")


class PipelineDispatcher:
    """Один цикл пайплайна с повтором всего цикла при сбое.

    Повтор делается на уровне исполнения: ядро merge само ничего не
    повторяет, частично применённые мутации восстанавливаются только
    идемпотентностью sink. Ошибки конфигурации не повторяются.
    """

    def __init__(
        self,
        *,
        executor: PipelineExecutor,
        max_attempts: int = 3,
        backoff_seconds: tuple[float, ...] = (1, 2, 4),
    ) -> None:
        self._executor = executor
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds

    async def dispatch(self, pipeline: PipelineConfig) -> ExecutionResult | None:
        ctx = ExecutionContext(pipeline=pipeline.name)

        for attempt in range(1, self._max_attempts + 1):
            ctx = replace(ctx, attempt=attempt)
            try:
                return await self._executor.execute(pipeline, ctx)

            except ConfigurationError:
                logger.error("Pipeline %s has invalid configuration; not retrying", pipeline.name)
                raise

            except Exception as exc:
                if is_db_disconnect(exc):
                    logger.warning(
                        "DB disconnected during pipeline execution. Exit cycle. "
                        "name=%s run=%s attempt=%d/%d err=%r",
                        pipeline.name, ctx.run_id, attempt, self._max_attempts, exc,
                    )
                    return None

                if attempt < self._max_attempts:
                    delay = self._backoff_seconds[
                        min(attempt - 1, len(self._backoff_seconds) - 1)
                    ]
                    logger.warning(
                        "Pipeline name=%s run=%s attempt %d/%d FAILED: %r. Retrying in %ss",
                        pipeline.name, ctx.run_id, attempt, self._max_attempts, exc, delay,
                    )
                    await asyncio.sleep(delay)
                    continue

                logger.error(
                    "Pipeline name=%s run=%s attempt %d/%d finally FAILED: %r",
                    pipeline.name, ctx.run_id, attempt, self._max_attempts, exc,
                )
                raise

        return None
