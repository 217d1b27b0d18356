from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

from src.core.enums import MutationType
from src.core.rows import PlannedRow, Row
from src.engine.ports.dataset import Dataset


@runtime_checkable
class KeyedPlanner(Protocol):
    """Планирует мутации независимо для каждого ключа.

    plan_mutations_for_key обязан быть чистым (никакого I/O). Политика
    для нескольких пришедших строк одного ключа описывается в каждой
    реализации.

    key_field_names группируют и ищут сохранённые строки; identity_field_names
    адресуют одну сохранённую строку в UPDATE/DELETE (для истории это ключ
    плюс начало интервала версии).
    """

    key_field_names: tuple[str, ...]
    identity_field_names: tuple[str, ...]

    def emitted_mutation_types(self) -> frozenset[MutationType]: ...

    def plan_mutations_for_key(
        self,
        key: Row,
        arriving: Sequence[Row],
        existing: Sequence[Row],
    ) -> Iterable[PlannedRow]: ...


@runtime_checkable
class BulkPlanner(Protocol):
    """Планирует мутации один раз по всему батчу; разрешение по ключам делает sink."""

    def emitted_mutation_types(self) -> frozenset[MutationType]: ...

    def plan_mutations_for_set(
        self,
        arriving: Dataset[Row],
    ) -> list[tuple[MutationType, Dataset[Row]]]: ...
