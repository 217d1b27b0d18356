from __future__ import annotations

import argparse
import asyncio
import logging

from sqlalchemy import text

from src.config import get_settings
from src.core.exceptions import ConfigurationError
from src.engine.orchestration.dispatcher import PipelineDispatcher
from src.engine.orchestration.executor import PipelineExecutor
from src.engine.registry import default_registry
from src.engine.schemas.pipeline import PipelineConfig, load_pipeline_config
from src.engine.services.db_errors import is_db_disconnect

logger = logging.getLogger("etl_runner")

POSTGRES_COMPONENT_TYPES = frozenset({"sql", "postgres", "postgres_bulk"})


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] [runner] %(message)s",
    )


def uses_postgres(pipeline: PipelineConfig) -> bool:
    for step in pipeline.steps:
        for component in (step.input, step.output):
            if component is not None and component.type in POSTGRES_COMPONENT_TYPES:
                return True
    return False


async def _check_db_connection() -> None:
    """
    Быстрый ping БД. Сессию создаём/закрываем внутри, чтобы не держать "битую".
    """
    from infra.db import async_session_factory

    async with async_session_factory() as session:
        result = await session.execute(text("SELECT 1"))
        _ = result.scalar_one()


async def wait_for_db(
    *,
    attempts: int = 10,
    delays: tuple[float, ...] = (1, 2, 4, 8, 8, 8, 8, 8, 8, 8),
) -> None:
    """
    Ждём пока БД поднимется. Если не поднялась за attempts, падаем.
    """
    last_exc: Exception | None = None

    for i in range(1, attempts + 1):
        try:
            await _check_db_connection()
            logger.info("DB connection OK")
            return
        except Exception as exc:
            last_exc = exc
            delay = delays[i - 1] if i - 1 < len(delays) else delays[-1]
            logger.warning("DB not ready (%d/%d). Retrying in %ss...", i, attempts, delay)
            await asyncio.sleep(delay)

    logger.error("DB did not become ready after %d attempts", attempts)
    raise last_exc  # type: ignore[misc]


async def main_loop(config_path: str, *, interval: float | None = None) -> None:
    settings = get_settings()
    setup_logging(settings.log_level)
    logger.info("ETL merge runner starting up (env=%s)...", settings.app_env)

    pipeline = load_pipeline_config(config_path)

    if uses_postgres(pipeline):
        await wait_for_db()
    logger.info("Startup checks passed")

    executor = PipelineExecutor(
        registry=default_registry(),
        num_partitions=settings.default_parallelism,
    )
    dispatcher = PipelineDispatcher(executor=executor)

    if interval is None:
        await dispatcher.dispatch(pipeline)
        return

    logger.info("Entering micro-batch loop with interval=%s seconds", interval)
    while True:
        try:
            await dispatcher.dispatch(pipeline)
        except ConfigurationError:
            # конфигурация не исправится сама: следующий цикл упадёт так же
            logger.error("Configuration error during pipeline cycle, stopping")
            raise
        except Exception as exc:
            if is_db_disconnect(exc):
                logger.warning("DB disconnected during cycle. Will retry next cycle. err=%r", exc)
            else:
                logger.exception("Error during pipeline cycle")
        await asyncio.sleep(interval)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a plan-then-apply merge pipeline")
    parser.add_argument("--config", required=True, help="path to pipeline JSON config")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="run as micro-batch loop with this pause (seconds) between cycles",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    asyncio.run(main_loop(args.config, interval=args.interval))


if __name__ == "__main__":
    main()
