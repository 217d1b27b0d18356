from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from src.core.exceptions import ConfigurationError
from src.engine import main as runner
from src.engine.main import parse_args, uses_postgres
from src.engine.schemas.pipeline import parse_pipeline_config
from src.engine.services.db_errors import is_db_disconnect


def test_parse_args_defaults_to_single_run():
    args = parse_args(["--config", "pipeline.json"])
    assert args.config == "pipeline.json"
    assert args.interval is None

    assert parse_args(["--config", "p.json", "--interval", "30"]).interval == 30.0


@pytest.mark.parametrize(
    "output, expected",
    [
        ({"type": "postgres", "table": "t"}, True),
        ({"type": "elasticsearch", "index": "films"}, False),
    ],
)
def test_uses_postgres_detects_sql_components(output, expected):
    cfg = parse_pipeline_config(
        {"name": "p", "steps": [
            {"name": "s", "input": {"type": "memory"},
             "planner": {"type": "upsert", "key_field_names": ["id"]}, "output": output},
        ]}
    )
    assert uses_postgres(cfg) is expected


def test_db_disconnect_classification():
    assert is_db_disconnect(OperationalError("SELECT 1", {}, Exception("boom")))
    assert is_db_disconnect(OSError("Connect call failed ('127.0.0.1', 5432)"))
    assert not is_db_disconnect(ValueError("bad row"))


class ScriptedDispatcher:
    """Диспетчер, который по очереди бросает заданные ошибки."""

    def __init__(self, errors):
        self._errors = list(errors)
        self.cycles = 0

    async def dispatch(self, pipeline):
        self.cycles += 1
        raise self._errors.pop(0)


@pytest.fixture
def scripted_loop(monkeypatch):
    def _make(*errors):
        dispatcher = ScriptedDispatcher(errors)
        cfg = parse_pipeline_config(
            {"name": "p", "steps": [{"name": "s", "input": {"type": "memory"}}]}
        )
        monkeypatch.setattr(runner, "load_pipeline_config", lambda path: cfg)
        monkeypatch.setattr(runner, "PipelineDispatcher", lambda executor: dispatcher)
        monkeypatch.setattr(runner.asyncio, "sleep", AsyncMock())
        return dispatcher

    return _make


@pytest.mark.asyncio
async def test_interval_loop_stops_on_configuration_error(scripted_loop):
    dispatcher = scripted_loop(RuntimeError("transient"), ConfigurationError("bad step"))

    with pytest.raises(ConfigurationError, match="bad step"):
        await runner.main_loop("pipeline.json", interval=5)

    # первая ошибка пережита, вторая остановила цикл
    assert dispatcher.cycles == 2
    runner.asyncio.sleep.assert_awaited_once_with(5)
