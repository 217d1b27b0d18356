from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from src.core.exceptions import ConfigurationError

_NAME_RE = re.compile(r"^[A-Za-z0-9_\-]{1,100}$")


def _validate_name(v: str, *, what: str) -> str:
    n = (v or "").strip()
    if not _NAME_RE.fullmatch(n):
        raise ValueError(f"{what} must match {_NAME_RE.pattern}, got {v!r}")
    return n


# ======================
#   Компоненты шага
# ======================

class ComponentConfig(BaseModel):
    """Плоский набор опций компонента: type + произвольные option -> value."""

    model_config = ConfigDict(extra="allow", frozen=True)

    type: str = Field(min_length=1)

    def options(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


# ======================
#   Шаг и пайплайн
# ======================

class StepConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    name: str
    dependencies: list[str] = Field(default_factory=list)

    input: ComponentConfig | None = None
    deriver: ComponentConfig | None = None
    planner: ComponentConfig | None = None
    output: ComponentConfig | None = None

    cache: bool = True
    hint_small: bool = Field(default=False, alias="hint.small")

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return _validate_name(v, what="step name")

    @model_validator(mode="after")
    def _components(self) -> StepConfig:
        if self.input is not None and self.deriver is not None:
            raise ValueError("Steps can not have both an input and a deriver")
        if self.input is None and self.deriver is None:
            raise ValueError("Step requires either an input or a deriver")
        if self.output is not None and self.planner is None:
            raise ValueError("Step with an output requires a planner")
        if self.planner is not None and self.output is None:
            raise ValueError("Step with a planner requires an output")
        if self.name in self.dependencies:
            raise ValueError(f"Step {self.name!r} depends on itself")
        return self


class PipelineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    steps: list[StepConfig] = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return _validate_name(v, what="pipeline name")

    @model_validator(mode="after")
    def _graph(self) -> PipelineConfig:
        names = [s.name for s in self.steps]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate step names: {dupes}")

        known = set(names)
        for s in self.steps:
            unknown = [d for d in s.dependencies if d not in known]
            if unknown:
                raise ValueError(f"Step {s.name!r} depends on unknown step(s) {unknown}")

        self.execution_order()
        return self

    def execution_order(self) -> list[StepConfig]:
        """Шаги в порядке зависимостей (стабильно относительно порядка в файле)."""
        by_name = {s.name: s for s in self.steps}
        done: set[str] = set()
        ordered: list[StepConfig] = []
        pending = list(self.steps)

        while pending:
            ready = [s for s in pending if all(d in done for d in s.dependencies)]
            if not ready:
                cycle = sorted(s.name for s in pending)
                raise ValueError(f"Step dependencies contain a cycle among {cycle}")
            for s in ready:
                ordered.append(by_name[s.name])
                done.add(s.name)
            pending = [s for s in pending if s.name not in done]

        return ordered


def parse_pipeline_config(data: dict[str, Any]) -> PipelineConfig:
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid pipeline configuration: {exc}") from exc


def load_pipeline_config(path: str | Path) -> PipelineConfig:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Pipeline config not found: {p}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Pipeline config {p} is not valid JSON: {exc}") from exc
    return parse_pipeline_config(data)
