from __future__ import annotations

from collections.abc import Awaitable, Callable, Hashable, Iterable
from typing import Any, Protocol, TypeVar, runtime_checkable

from src.core.rows import Schema

T = TypeVar("T")
U = TypeVar("U")
K = TypeVar("K", bound=Hashable)


@runtime_checkable
class Dataset(Protocol[T]):
    """Неизменяемый, переигрываемый набор данных, разбитый на партиции.

    Партиция: независимая единица параллельной обработки. Трансформации
    ленивые; действия (collect/count/foreach_partition) вычисляют цепочку
    заново, если набор не закэширован.
    """

    @property
    def schema(self) -> Schema: ...

    @property
    def num_partitions(self) -> int: ...

    @property
    def is_broadcast(self) -> bool: ...

    def group_by(
        self,
        key_fn: Callable[[T], K],
        *,
        num_partitions: int | None = None,
    ) -> Dataset[tuple[K, list[T]]]: ...

    def map_partitions(
        self,
        fn: Callable[[list[T]], Awaitable[Iterable[U]]],
    ) -> Dataset[U]: ...

    def flat_map(self, fn: Callable[[T], Iterable[U]]) -> Dataset[U]: ...

    def filter(self, predicate: Callable[[T], bool]) -> Dataset[T]: ...

    def union(self, other: Dataset[T]) -> Dataset[T]: ...

    async def foreach_partition(
        self,
        fn: Callable[[list[T]], Awaitable[Any]],
    ) -> None: ...

    async def collect(self) -> list[T]: ...

    async def count(self) -> int: ...

    def cache(self) -> Dataset[T]: ...

    def unpersist(self) -> Dataset[T]: ...

    def broadcast(self) -> Dataset[T]: ...
