from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import Settings, get_settings
from src.core.exceptions import ConfigurationError
from src.engine.adapters.planners import (
    AppendPlanner,
    AppendPlannerOptions,
    DeletePlanner,
    DeletePlannerOptions,
    HistoryPlanner,
    HistoryPlannerOptions,
    MergePlanner,
    MergePlannerOptions,
    UpsertPlanner,
    UpsertPlannerOptions,
)
from src.engine.adapters.readers import SqlInput, SqlInputOptions
from src.engine.adapters.sinks_elasticsearch import ESConfig, ElasticsearchSink, ElasticsearchSinkOptions
from src.engine.adapters.sinks_postgres import PostgresBulkSink, PostgresSink, PostgresSinkOptions
from src.engine.adapters.transformers import (
    PassthroughDeriver,
    PassthroughDeriverOptions,
    PythonDeriver,
    PythonDeriverOptions,
)
from src.engine.schemas.pipeline import ComponentConfig

M = TypeVar("M", bound=BaseModel)


def _default_session_factory() -> async_sessionmaker[AsyncSession]:
    # engine создаётся при импорте infra.db, поэтому импорт ленивый
    from infra.db import async_session_factory

    return async_session_factory


@dataclass(frozen=True, slots=True)
class Resources:
    """Общие зависимости для сборки компонентов (настройки, фабрика сессий)."""

    settings: Settings = field(default_factory=get_settings)
    session_factory_provider: Callable[[], async_sessionmaker[AsyncSession]] = _default_session_factory

    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory_provider()

    def es_config(self) -> ESConfig:
        s = self.settings
        return ESConfig(
            url=s.elasticsearch_url,
            user=s.elasticsearch_user or None,
            password=s.elasticsearch_password or None,
            timeout=s.elasticsearch_timeout,
        )


@dataclass(frozen=True, slots=True)
class BuildContext:
    step_name: str
    resources: Resources
    key_field_names: tuple[str, ...] | None = None
    identity_field_names: tuple[str, ...] | None = None


Builder = Callable[[dict[str, Any], BuildContext], Any]


def parse_options(model: type[M], options: dict[str, Any], *, what: str) -> M:
    try:
        return model.model_validate(options)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid options for {what}: {exc}") from exc


# ----------------------------
# Builders
# ----------------------------

def _upsert_planner(options: dict[str, Any], ctx: BuildContext) -> UpsertPlanner:
    return UpsertPlanner(parse_options(UpsertPlannerOptions, options, what="planner 'upsert'"))


def _history_planner(options: dict[str, Any], ctx: BuildContext) -> HistoryPlanner:
    return HistoryPlanner(parse_options(HistoryPlannerOptions, options, what="planner 'history'"))


def _delete_planner(options: dict[str, Any], ctx: BuildContext) -> DeletePlanner:
    return DeletePlanner(parse_options(DeletePlannerOptions, options, what="planner 'delete'"))


def _append_planner(options: dict[str, Any], ctx: BuildContext) -> AppendPlanner:
    return AppendPlanner(parse_options(AppendPlannerOptions, options, what="planner 'append'"))


def _merge_planner(options: dict[str, Any], ctx: BuildContext) -> MergePlanner:
    return MergePlanner(parse_options(MergePlannerOptions, options, what="planner 'merge'"))


def _with_planner_keys(options: dict[str, Any], ctx: BuildContext) -> dict[str, Any]:
    # sink без явных ключей наследует ключи планировщика шага
    if "key_field_names" not in options and ctx.key_field_names:
        return {**options, "key_field_names": list(ctx.key_field_names)}
    return options


def _with_planner_identity(options: dict[str, Any], ctx: BuildContext) -> dict[str, Any]:
    # история версий адресует строку ключом и началом интервала
    identity = ctx.identity_field_names
    if "identity_field_names" not in options and identity and identity != ctx.key_field_names:
        return {**options, "identity_field_names": list(identity)}
    return options


def _postgres_sink(options: dict[str, Any], ctx: BuildContext) -> PostgresSink:
    opts = parse_options(
        PostgresSinkOptions,
        _with_planner_identity(_with_planner_keys(options, ctx), ctx),
        what="output 'postgres'",
    )
    return PostgresSink(opts, ctx.resources.session_factory())


def _postgres_bulk_sink(options: dict[str, Any], ctx: BuildContext) -> PostgresBulkSink:
    opts = parse_options(PostgresSinkOptions, options, what="output 'postgres_bulk'")
    return PostgresBulkSink(opts, ctx.resources.session_factory())


def _elasticsearch_sink(options: dict[str, Any], ctx: BuildContext) -> ElasticsearchSink:
    opts = parse_options(
        ElasticsearchSinkOptions,
        _with_planner_keys(options, ctx),
        what="output 'elasticsearch'",
    )
    return ElasticsearchSink(opts, ctx.resources.es_config())


def _sql_input(options: dict[str, Any], ctx: BuildContext) -> SqlInput:
    opts = parse_options(SqlInputOptions, options, what="input 'sql'")
    return SqlInput(
        opts,
        ctx.resources.session_factory(),
        default_partitions=ctx.resources.settings.default_parallelism,
    )


def _passthrough_deriver(options: dict[str, Any], ctx: BuildContext) -> PassthroughDeriver:
    return PassthroughDeriver(
        parse_options(PassthroughDeriverOptions, options, what="deriver 'passthrough'")
    )


def _python_deriver(options: dict[str, Any], ctx: BuildContext) -> PythonDeriver:
    return PythonDeriver(parse_options(PythonDeriverOptions, options, what="deriver 'python'"))


# ----------------------------
# Registry
# ----------------------------

@dataclass(frozen=True)
class ComponentRegistry:
    """Явное отображение type -> builder для каждого вида компонентов."""

    inputs: dict[str, Builder] = field(default_factory=dict)
    derivers: dict[str, Builder] = field(default_factory=dict)
    planners: dict[str, Builder] = field(default_factory=dict)
    outputs: dict[str, Builder] = field(default_factory=dict)
    resources: Resources = field(default_factory=Resources)

    def _build(
        self,
        kind: str,
        builders: dict[str, Builder],
        config: ComponentConfig,
        *,
        step_name: str,
        key_field_names: Sequence[str] | None = None,
        identity_field_names: Sequence[str] | None = None,
    ) -> Any:
        builder = builders.get(config.type)
        if builder is None:
            raise ConfigurationError(
                f"Unknown {kind} type {config.type!r} in step {step_name!r}. "
                f"Known: {sorted(builders)}"
            )
        ctx = BuildContext(
            step_name=step_name,
            resources=self.resources,
            key_field_names=tuple(key_field_names) if key_field_names else None,
            identity_field_names=tuple(identity_field_names) if identity_field_names else None,
        )
        return builder(config.options(), ctx)

    def build_input(self, config: ComponentConfig, *, step_name: str) -> Any:
        return self._build("input", self.inputs, config, step_name=step_name)

    def build_deriver(self, config: ComponentConfig, *, step_name: str) -> Any:
        return self._build("deriver", self.derivers, config, step_name=step_name)

    def build_planner(self, config: ComponentConfig, *, step_name: str) -> Any:
        return self._build("planner", self.planners, config, step_name=step_name)

    def build_output(
        self,
        config: ComponentConfig,
        *,
        step_name: str,
        key_field_names: Sequence[str] | None = None,
        identity_field_names: Sequence[str] | None = None,
    ) -> Any:
        return self._build(
            "output",
            self.outputs,
            config,
            step_name=step_name,
            key_field_names=key_field_names,
            identity_field_names=identity_field_names,
        )


def default_registry(resources: Resources | None = None) -> ComponentRegistry:
    return ComponentRegistry(
        inputs={"sql": _sql_input},
        derivers={
            "passthrough": _passthrough_deriver,
            "python": _python_deriver,
        },
        planners={
            "upsert": _upsert_planner,
            "history": _history_planner,
            "delete": _delete_planner,
            "append": _append_planner,
            "merge": _merge_planner,
        },
        outputs={
            "postgres": _postgres_sink,
            "postgres_bulk": _postgres_bulk_sink,
            "elasticsearch": _elasticsearch_sink,
        },
        resources=resources or Resources(),
    )
