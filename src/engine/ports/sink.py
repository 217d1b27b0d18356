from __future__ import annotations

from collections.abc import Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Protocol, runtime_checkable

from src.core.enums import MutationType
from src.core.rows import PlannedRow, Row
from src.engine.ports.dataset import Dataset


class KeyedSinkClient(Protocol):
    """Клиент sink, принадлежащий одной партиции."""

    async def existing_for_keys(self, keys: frozenset[Row]) -> Iterable[Row]:
        """Вернуть сохранённые строки для набора ключей (пустой набор -> пусто)."""
        ...

    async def apply_mutations(self, planned: Sequence[PlannedRow]) -> None:
        ...


@runtime_checkable
class KeyedSink(Protocol):
    """Sink с поиском по ключу: key_field_names для lookup, identity_field_names
    для адресации строки при записи."""

    key_field_names: tuple[str, ...]
    identity_field_names: tuple[str, ...]

    def supported_mutation_types(self) -> frozenset[MutationType]: ...

    def connect(self) -> AbstractAsyncContextManager[KeyedSinkClient]: ...


@runtime_checkable
class BulkSink(Protocol):
    def supported_mutation_types(self) -> frozenset[MutationType]: ...

    async def apply_bulk_mutations(
        self,
        planned: Sequence[tuple[MutationType, Dataset[Row]]],
    ) -> None: ...
