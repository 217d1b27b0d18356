from __future__ import annotations

from dataclasses import dataclass

from src.core.exceptions import ConfigurationError
from src.engine.ports.planner import BulkPlanner, KeyedPlanner
from src.engine.ports.sink import BulkSink, KeyedSink


@dataclass(frozen=True, slots=True)
class KeyedRoute:
    planner: KeyedPlanner
    sink: KeyedSink


@dataclass(frozen=True, slots=True)
class BulkRoute:
    planner: BulkPlanner
    sink: BulkSink


MergeRoute = KeyedRoute | BulkRoute


def _name(component: object) -> str:
    return type(component).__name__


def _check_mutation_types(planner: object, sink: object) -> None:
    emitted = frozenset(planner.emitted_mutation_types())  # type: ignore[attr-defined]
    supported = frozenset(sink.supported_mutation_types())  # type: ignore[attr-defined]
    missing = emitted - supported
    if missing:
        raise ConfigurationError(
            f"Incompatible planner ({_name(planner)}) and output ({_name(sink)}): "
            f"planner emits {sorted(m.value for m in missing)} "
            f"not supported by output (supported={sorted(m.value for m in supported)})"
        )


def _check_row_addressing(planner: KeyedPlanner, sink: KeyedSink) -> None:
    sink_keys = tuple(sink.key_field_names)
    if not sink_keys:
        # без ключей sink умеет только INSERT, это ловит проверка типов
        return
    planner_keys = tuple(planner.key_field_names)
    if sink_keys != planner_keys:
        raise ConfigurationError(
            f"Incompatible planner ({_name(planner)}) and output ({_name(sink)}): "
            f"output looks up rows by {list(sink_keys)} but planner groups by "
            f"{list(planner_keys)}"
        )
    planner_identity = tuple(planner.identity_field_names)
    sink_identity = tuple(sink.identity_field_names)
    if sink_identity != planner_identity:
        raise ConfigurationError(
            f"Incompatible planner ({_name(planner)}) and output ({_name(sink)}): "
            f"planner addresses stored rows by {list(planner_identity)} but output "
            f"addresses them by {list(sink_identity)}"
        )


def validate_compatibility(planner: object, sink: object) -> MergeRoute:
    """Проверить планировщик и sink один раз при сборке шага.

    Форма (per-key / bulk) должна совпадать, и все типы мутаций
    планировщика должны поддерживаться sink. Per-key sink должен искать
    строки по ключу планировщика и адресовать их так же, как планировщик.
    """
    match planner, sink:
        case KeyedPlanner(), KeyedSink():
            _check_mutation_types(planner, sink)
            _check_row_addressing(planner, sink)
            return KeyedRoute(planner=planner, sink=sink)
        case BulkPlanner(), BulkSink():
            _check_mutation_types(planner, sink)
            return BulkRoute(planner=planner, sink=sink)
        case (KeyedPlanner() | BulkPlanner()), (KeyedSink() | BulkSink()):
            raise ConfigurationError(
                f"Incompatible planner ({_name(planner)}) and output ({_name(sink)}): "
                f"planner is {_shape(planner)} but output is {_shape(sink)}"
            )
        case _:
            raise ConfigurationError(
                f"Unexpected planner ({_name(planner)}) or output ({_name(sink)}) class"
            )


def _shape(component: object) -> str:
    if isinstance(component, (KeyedPlanner, KeyedSink)):
        return "key-scoped"
    return "set-scoped"
