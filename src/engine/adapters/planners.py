from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.core.constants import FAR_FUTURE_DATE, FAR_FUTURE_EPOCH_MS, FAR_FUTURE_TIMESTAMP
from src.core.enums import MutationType
from src.core.exceptions import PlanningError
from src.core.rows import PlannedRow, Row
from src.engine.ports.dataset import Dataset


# ----------------------------
# Options
# ----------------------------

class _Options(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class _KeyedOptions(_Options):
    key_field_names: list[str] = Field(min_length=1)

    @field_validator("key_field_names")
    @classmethod
    def _non_blank(cls, v: list[str]) -> list[str]:
        names = [n.strip() for n in v]
        if any(not n for n in names):
            raise ValueError("key_field_names must not contain blank names")
        if len(set(names)) != len(names):
            raise ValueError("key_field_names must be unique")
        return names


class UpsertPlannerOptions(_KeyedOptions):
    last_updated_field_name: str | None = None


class HistoryPlannerOptions(_KeyedOptions):
    timestamp_field_name: str
    effective_from_field_name: str = "effective_from"
    effective_to_field_name: str = "effective_to"
    current_flag_field_name: str | None = "is_current"


class DeletePlannerOptions(_KeyedOptions):
    pass


class AppendPlannerOptions(_Options):
    pass


class MergePlannerOptions(_Options):
    delete_flag_field_name: str | None = None


# ----------------------------
# Helpers
# ----------------------------

def _require_non_null_key(key: Row) -> None:
    nulls = [name for name, value in key.items() if value is None]
    if nulls:
        raise PlanningError(f"Key has null value(s) for field(s) {nulls!r}: {key!r}")


def _same_values(arriving: Row, existing: Row, *, ignore: Iterable[str] = ()) -> bool:
    """Все поля пришедшей строки (кроме ignore) совпадают со строкой из sink."""
    skip = set(ignore)
    return all(
        name in existing and existing[name] == value
        for name, value in arriving.items()
        if name not in skip
    )


def _far_future(value: Any) -> Any:
    if isinstance(value, datetime):
        return FAR_FUTURE_TIMESTAMP
    if isinstance(value, date):
        return FAR_FUTURE_DATE
    if isinstance(value, (int, float)):
        return FAR_FUTURE_EPOCH_MS
    raise PlanningError(
        f"Unsupported timestamp value type for history planning: {type(value).__name__}"
    )


def _ordering_value(row: Row, field: str) -> Any:
    if field not in row:
        raise PlanningError(f"Row does not contain ordering field {field!r}: {row!r}")
    value = row[field]
    if value is None:
        raise PlanningError(f"Ordering field {field!r} is null: {row!r}")
    return value


# ----------------------------
# Key-scoped planners
# ----------------------------

class UpsertPlanner:
    """Upsert по ключу.

    Несколько пришедших строк одного ключа: побеждает строка с наибольшим
    last_updated_field_name. Если поле упорядочивания не задано, несколько
    различных пришедших строк для ключа дают PlanningError (порядок внутри
    группы не определён). Различные строки с одинаковым наибольшим значением
    поля упорядочивания тоже дают PlanningError.

    Сравнение идёт только с последней сохранённой строкой ключа (наибольшее
    поле упорядочивания). Несколько сохранённых строк без поля упорядочивания
    дают PlanningError. Строка, совпадающая с последней сохранённой, не
    эмитится; как и строка старее неё.
    """

    def __init__(self, options: UpsertPlannerOptions) -> None:
        self._options = options
        self.key_field_names: tuple[str, ...] = tuple(options.key_field_names)
        self.identity_field_names: tuple[str, ...] = self.key_field_names

    def emitted_mutation_types(self) -> frozenset[MutationType]:
        return frozenset({MutationType.UPSERT})

    def _latest(self, key: Row, rows: Sequence[Row], *, what: str) -> Row:
        distinct: list[Row] = []
        for r in rows:
            if r not in distinct:
                distinct.append(r)
        if len(distinct) == 1:
            return distinct[0]

        ts_field = self._options.last_updated_field_name
        if ts_field is None:
            raise PlanningError(
                f"{len(distinct)} {what} rows for key {key!r} and no "
                f"last_updated_field_name to choose between them"
            )
        newest = max(_ordering_value(r, ts_field) for r in distinct)
        winners = [r for r in distinct if r[ts_field] == newest]
        if len(winners) > 1:
            raise PlanningError(
                f"{len(winners)} different {what} rows for key {key!r} share "
                f"{ts_field}={newest!r}"
            )
        return winners[0]

    def plan_mutations_for_key(
        self,
        key: Row,
        arriving: Sequence[Row],
        existing: Sequence[Row],
    ) -> list[PlannedRow]:
        _require_non_null_key(key)
        if not arriving:
            return []

        latest = self._latest(key, arriving, what="arriving")
        if not existing:
            return [PlannedRow(MutationType.UPSERT, latest)]

        current = self._latest(key, existing, what="existing")
        if _same_values(latest, current):
            return []

        ts_field = self._options.last_updated_field_name
        if (
            ts_field is not None
            and current.get(ts_field) is not None
            and current[ts_field] > _ordering_value(latest, ts_field)
        ):
            return []

        return [PlannedRow(MutationType.UPSERT, latest)]


class HistoryPlanner:
    """История изменений (SCD type 2).

    Каждая версия ключа хранит интервал [effective_from, effective_to) и,
    опционально, флаг текущей версии. Все пришедшие строки ключа считаются
    версиями-кандидатами и обрабатываются по возрастанию timestamp_field_name.
    Кандидат, совпадающий по значениям с текущей версией, пропускается;
    кандидат не новее текущей версии тоже пропускается. Иначе текущая
    версия закрывается (UPDATE, если она уже в sink) и добавляется новая
    (INSERT).
    """

    def __init__(self, options: HistoryPlannerOptions) -> None:
        self._options = options
        self.key_field_names: tuple[str, ...] = tuple(options.key_field_names)
        # версия адресуется ключом и началом интервала
        self.identity_field_names: tuple[str, ...] = (
            *self.key_field_names,
            options.effective_from_field_name,
        )

    def emitted_mutation_types(self) -> frozenset[MutationType]:
        return frozenset({MutationType.INSERT, MutationType.UPDATE})

    def _history_fields(self) -> list[str]:
        o = self._options
        fields = [o.effective_from_field_name, o.effective_to_field_name]
        if o.current_flag_field_name:
            fields.append(o.current_flag_field_name)
        return fields

    def _close(self, version: Row, at: Any) -> Row:
        changes: dict[str, Any] = {self._options.effective_to_field_name: at}
        if self._options.current_flag_field_name:
            changes[self._options.current_flag_field_name] = False
        return version.replace(**changes)

    def _open(self, arriving: Row, at: Any) -> Row:
        changes: dict[str, Any] = {
            self._options.effective_from_field_name: at,
            self._options.effective_to_field_name: _far_future(at),
        }
        if self._options.current_flag_field_name:
            changes[self._options.current_flag_field_name] = True
        return arriving.replace(**changes)

    def plan_mutations_for_key(
        self,
        key: Row,
        arriving: Sequence[Row],
        existing: Sequence[Row],
    ) -> list[PlannedRow]:
        _require_non_null_key(key)
        o = self._options
        ts_field = o.timestamp_field_name
        history_fields = self._history_fields()

        versions = sorted(
            existing,
            key=lambda r: _ordering_value(r, o.effective_from_field_name),
        )
        current: Row | None = versions[-1] if versions else None
        current_is_existing = current is not None
        # мутации по позициям, чтобы закрытие вставленной в этом же цикле
        # версии правило её INSERT, а не добавляло UPDATE
        planned: list[PlannedRow] = []

        for candidate in sorted(arriving, key=lambda r: _ordering_value(r, ts_field)):
            ts = candidate[ts_field]

            if current is not None:
                if _same_values(candidate, current, ignore=[ts_field, *history_fields]):
                    continue
                if ts <= _ordering_value(current, o.effective_from_field_name):
                    continue

                closed = self._close(current, ts)
                if current_is_existing:
                    planned.append(PlannedRow(MutationType.UPDATE, closed))
                else:
                    planned[-1] = PlannedRow(MutationType.INSERT, closed)

            current = self._open(candidate, ts)
            current_is_existing = False
            planned.append(PlannedRow(MutationType.INSERT, current))

        return planned


class DeletePlanner:
    """Удалить все сохранённые строки для каждого пришедшего ключа.

    Количество пришедших строк ключа не важно: решение принимается по ключу.
    """

    def __init__(self, options: DeletePlannerOptions) -> None:
        self._options = options
        self.key_field_names: tuple[str, ...] = tuple(options.key_field_names)
        self.identity_field_names: tuple[str, ...] = self.key_field_names

    def emitted_mutation_types(self) -> frozenset[MutationType]:
        return frozenset({MutationType.DELETE})

    def plan_mutations_for_key(
        self,
        key: Row,
        arriving: Sequence[Row],
        existing: Sequence[Row],
    ) -> list[PlannedRow]:
        _require_non_null_key(key)
        return [PlannedRow(MutationType.DELETE, row) for row in existing]


# ----------------------------
# Set-scoped planners
# ----------------------------

class AppendPlanner:
    """Весь батч: одна группа INSERT. Повторный прогон дублирует строки."""

    def __init__(self, options: AppendPlannerOptions | None = None) -> None:
        self._options = options or AppendPlannerOptions()

    def emitted_mutation_types(self) -> frozenset[MutationType]:
        return frozenset({MutationType.INSERT})

    def plan_mutations_for_set(
        self,
        arriving: Dataset[Row],
    ) -> list[tuple[MutationType, Dataset[Row]]]:
        return [(MutationType.INSERT, arriving)]


class MergePlanner:
    """Bulk merge: разрешение по ключам делает sink (INSERT ... ON CONFLICT).

    При заданном delete_flag_field_name строки с истинным флагом уходят в
    группу DELETE, остальные: в UPSERT. Строки не теряются и не дублируются.
    """

    def __init__(self, options: MergePlannerOptions) -> None:
        self._options = options

    def emitted_mutation_types(self) -> frozenset[MutationType]:
        if self._options.delete_flag_field_name:
            return frozenset({MutationType.UPSERT, MutationType.DELETE})
        return frozenset({MutationType.UPSERT})

    def plan_mutations_for_set(
        self,
        arriving: Dataset[Row],
    ) -> list[tuple[MutationType, Dataset[Row]]]:
        flag = self._options.delete_flag_field_name
        if not flag:
            return [(MutationType.UPSERT, arriving)]

        def is_deleted(row: Row) -> bool:
            return bool(row.get(flag))

        return [
            (MutationType.UPSERT, arriving.filter(lambda r: not is_deleted(r))),
            (MutationType.DELETE, arriving.filter(is_deleted)),
        ]
