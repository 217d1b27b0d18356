from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Hashable, Iterable, Mapping
from typing import Any, Generic, TypeVar

from src.core.rows import Row, Schema


T = TypeVar("T")
U = TypeVar("U")
K = TypeVar("K", bound=Hashable)

ComputeFn = Callable[[], Awaitable[list[list[Any]]]]


async def run_units(coros: list[Awaitable[U]]) -> list[U]:
    """Запустить партиции конкурентно.

    При падении одной партиции остальные отменяются и дожидаются своего
    завершения (чтобы закрыть клиентов), затем исключение пробрасывается
    как есть.
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for t in tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _split(items: list[T], n: int) -> list[list[T]]:
    n = max(1, n)
    size, rem = divmod(len(items), n)
    out: list[list[T]] = []
    start = 0
    for i in range(n):
        end = start + size + (1 if i < rem else 0)
        out.append(items[start:end])
        start = end
    return out


class LocalDataset(Generic[T]):
    """In-process реализация Dataset: ленивые партиции поверх asyncio.

    Каждая трансформация возвращает новый набор; действие вычисляет цепочку
    заново, пока набор не закэширован через cache().
    """

    def __init__(
        self,
        compute: ComputeFn,
        *,
        schema: Schema | None = None,
        num_partitions: int = 1,
        broadcast: bool = False,
    ) -> None:
        self._compute = compute
        self._schema = schema if schema is not None else Schema()
        self._num_partitions = max(1, int(num_partitions))
        self._broadcast = broadcast
        self._cache_enabled = False
        self._cached: list[list[T]] | None = None
        # набор, поверх которого построен broadcast(): unpersist идёт и в него
        self._source: LocalDataset[T] | None = None

    # ----------------------------
    # Constructors
    # ----------------------------

    @classmethod
    def from_rows(
        cls,
        rows: Iterable[T],
        *,
        schema: Schema | None = None,
        num_partitions: int = 1,
    ) -> LocalDataset[T]:
        items = list(rows)
        if schema is None and items and isinstance(items[0], Row):
            schema = items[0].schema
        partitions = _split(items, num_partitions)

        async def compute() -> list[list[Any]]:
            return [list(p) for p in partitions]

        return cls(compute, schema=schema, num_partitions=len(partitions))

    @classmethod
    def from_mappings(
        cls,
        mappings: Iterable[Mapping[str, Any]],
        *,
        schema: Schema | None = None,
        num_partitions: int = 1,
    ) -> LocalDataset[Row]:
        items = list(mappings)
        if schema is None and items:
            schema = Schema.infer(items[0])
        if schema is not None:
            expected = set(schema.names)
            for i, m in enumerate(items):
                if set(m) != expected:
                    raise ValueError(
                        f"Mapping #{i} has fields {sorted(m)} but schema has "
                        f"{sorted(expected)}"
                    )
        rows = [Row.from_mapping(m, schema) for m in items]
        return cls.from_rows(rows, schema=schema, num_partitions=num_partitions)

    @classmethod
    def empty(cls, schema: Schema | None = None) -> LocalDataset[T]:
        return cls.from_rows([], schema=schema)

    # ----------------------------
    # Properties
    # ----------------------------

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def num_partitions(self) -> int:
        return self._num_partitions

    @property
    def is_broadcast(self) -> bool:
        return self._broadcast

    @property
    def is_cached(self) -> bool:
        return self._cache_enabled

    async def partitions(self) -> list[list[T]]:
        if self._cached is not None:
            return self._cached
        parts = await self._compute()
        if self._cache_enabled:
            self._cached = parts
        return parts

    # ----------------------------
    # Transformations
    # ----------------------------

    def _derive(self, compute: ComputeFn, *, schema: Schema | None, num_partitions: int | None = None):
        return LocalDataset(
            compute,
            schema=schema,
            num_partitions=num_partitions or self._num_partitions,
        )

    def group_by(
        self,
        key_fn: Callable[[T], K],
        *,
        num_partitions: int | None = None,
    ) -> LocalDataset[tuple[K, list[T]]]:
        n = max(1, int(num_partitions or self._num_partitions))

        async def compute() -> list[list[Any]]:
            buckets: list[dict[K, list[T]]] = [{} for _ in range(n)]
            for part in await self.partitions():
                for item in part:
                    key = key_fn(item)
                    buckets[hash(key) % n].setdefault(key, []).append(item)
            return [list(b.items()) for b in buckets]

        return self._derive(compute, schema=None, num_partitions=n)

    def map_partitions(
        self,
        fn: Callable[[list[T]], Awaitable[Iterable[U]]],
        *,
        schema: Schema | None = None,
    ) -> LocalDataset[U]:
        async def compute() -> list[list[Any]]:
            parts = await self.partitions()
            results = await run_units([fn(list(p)) for p in parts])
            return [list(r) for r in results]

        return self._derive(compute, schema=schema)

    def flat_map(
        self,
        fn: Callable[[T], Iterable[U]],
        *,
        schema: Schema | None = None,
    ) -> LocalDataset[U]:
        async def compute() -> list[list[Any]]:
            return [
                [out for item in part for out in fn(item)]
                for part in await self.partitions()
            ]

        return self._derive(compute, schema=schema)

    def filter(self, predicate: Callable[[T], bool]) -> LocalDataset[T]:
        async def compute() -> list[list[Any]]:
            return [
                [item for item in part if predicate(item)]
                for part in await self.partitions()
            ]

        return self._derive(compute, schema=self._schema)

    def union(self, other: LocalDataset[T]) -> LocalDataset[T]:
        if len(other.schema) and len(self._schema) and other.schema.names != self._schema.names:
            raise ValueError(
                f"Cannot union datasets with different schemas: "
                f"{list(self._schema.names)} vs {list(other.schema.names)}"
            )

        async def compute() -> list[list[Any]]:
            return [*await self.partitions(), *await other.partitions()]

        schema = self._schema if len(self._schema) else other.schema
        return self._derive(
            compute,
            schema=schema,
            num_partitions=self._num_partitions + other.num_partitions,
        )

    # ----------------------------
    # Actions
    # ----------------------------

    async def foreach_partition(self, fn: Callable[[list[T]], Awaitable[Any]]) -> None:
        parts = await self.partitions()
        await run_units([fn(list(p)) for p in parts])

    async def collect(self) -> list[T]:
        return [item for part in await self.partitions() for item in part]

    async def count(self) -> int:
        return sum(len(p) for p in await self.partitions())

    # ----------------------------
    # Storage hints
    # ----------------------------

    def cache(self) -> LocalDataset[T]:
        self._cache_enabled = True
        return self

    def unpersist(self) -> LocalDataset[T]:
        self._cache_enabled = False
        self._cached = None
        if self._source is not None:
            self._source.unpersist()
        return self

    def broadcast(self) -> LocalDataset[T]:
        ds: LocalDataset[T] = LocalDataset(
            self.partitions,
            schema=self._schema,
            num_partitions=self._num_partitions,
            broadcast=True,
        )
        ds._source = self
        return ds

    def __repr__(self) -> str:
        return (
            f"LocalDataset(fields={list(self._schema.names)}, "
            f"partitions={self._num_partitions}, cached={self._cache_enabled}, "
            f"broadcast={self._broadcast})"
        )
