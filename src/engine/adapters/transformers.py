from __future__ import annotations

import importlib
import inspect
from collections.abc import Callable, Mapping, Sequence
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

from src.core.exceptions import ConfigurationError
from src.core.rows import Row
from src.engine.adapters.local_dataset import LocalDataset
from src.engine.ports.dataset import Dataset

TransformFn: TypeAlias = Callable[[Sequence[Mapping[str, Any]]], Any]

# python-трансформации грузим только из этого пакета
ALLOWED_TRANSFORM_PREFIX = "src.pipelines."


class PassthroughDeriverOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class PythonDeriverOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    module: str = Field(min_length=1)
    function: str = "transform"
    dependency: str | None = None
    num_partitions: int | None = Field(default=None, ge=1)


class PassthroughDeriver:
    """Объединение (union) всех зависимостей шага."""

    def __init__(self, options: PassthroughDeriverOptions | None = None) -> None:
        self._options = options or PassthroughDeriverOptions()

    async def derive(self, dependencies: Mapping[str, Dataset[Row]]) -> Dataset[Row]:
        if not dependencies:
            raise ConfigurationError("Passthrough deriver requires at least one dependency")

        datasets = iter(dependencies.values())
        unioned = next(datasets)
        for ds in datasets:
            unioned = unioned.union(ds)
        return unioned


def load_python_transform(dotted_path: str, fn_name: str = "transform") -> TransformFn:
    """
    dotted_path: 'src.pipelines.python_tasks.some_task', модуль экспортирует
    transform(rows); transform может быть sync/async.
    """
    if not dotted_path.startswith(ALLOWED_TRANSFORM_PREFIX):
        raise ConfigurationError(
            f"Python deriver module must live under {ALLOWED_TRANSFORM_PREFIX!r}, "
            f"got {dotted_path!r}"
        )
    try:
        mod = importlib.import_module(dotted_path)
    except ImportError as exc:
        raise ConfigurationError(f"Python deriver module {dotted_path!r} not importable") from exc

    fn = getattr(mod, fn_name, None)
    if fn is None:
        raise ConfigurationError(f"Python task module {dotted_path!r} must export {fn_name}(rows)")
    return fn


async def apply_transform(fn: TransformFn, rows: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    res = fn(rows)
    if inspect.isawaitable(res):
        res = await res

    if not isinstance(res, list):
        raise ValueError(f"Python transform must return list[dict], got {type(res)}")
    return [dict(r) for r in res]


class PythonDeriver:
    """Прогоняет строки зависимости через transform(rows) из python-модуля."""

    def __init__(self, options: PythonDeriverOptions) -> None:
        self._options = options
        self._fn = load_python_transform(options.module, options.function)

    def _pick(self, dependencies: Mapping[str, Dataset[Row]]) -> Dataset[Row]:
        name = self._options.dependency
        if name is not None:
            if name not in dependencies:
                raise ConfigurationError(
                    f"Python deriver dependency {name!r} is not among {sorted(dependencies)}"
                )
            return dependencies[name]
        if len(dependencies) != 1:
            raise ConfigurationError(
                "Python deriver needs exactly one dependency or an explicit 'dependency' option"
            )
        return next(iter(dependencies.values()))

    async def derive(self, dependencies: Mapping[str, Dataset[Row]]) -> Dataset[Row]:
        source = self._pick(dependencies)
        rows = [r.as_dict() for r in await source.collect()]
        out = await apply_transform(self._fn, rows)
        return LocalDataset.from_mappings(
            out,
            num_partitions=self._options.num_partitions or source.num_partitions,
        )
