from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from itertools import groupby
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.constants import DEFAULT_BATCH_SIZE
from src.core.enums import MutationType
from src.core.exceptions import SinkError
from src.core.rows import PlannedRow, Row
from src.engine.ports.dataset import Dataset
from src.engine.services.sql_ident import validate_sql_ident, validate_table_name

logger = logging.getLogger("etl_runner")

# лимит bind-параметров одного запроса в протоколе Postgres (asyncpg)
POSTGRES_MAX_BIND_PARAMS = 32767


class PostgresSinkOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    table: str
    key_field_names: list[str] | None = None
    identity_field_names: list[str] | None = None
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1, le=100_000)

    @field_validator("table")
    @classmethod
    def _table(cls, v: str) -> str:
        return validate_table_name(v)

    @field_validator("key_field_names", "identity_field_names")
    @classmethod
    def _keys(cls, v: list[str] | None, info: ValidationInfo) -> list[str] | None:
        if v is None:
            return None
        if not v:
            raise ValueError(f"{info.field_name} must not be empty when set")
        return [validate_sql_ident(n, what="key column") for n in v]

    @model_validator(mode="after")
    def _identity_needs_keys(self) -> PostgresSinkOptions:
        if self.identity_field_names and not self.key_field_names:
            raise ValueError("identity_field_names requires key_field_names")
        return self


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class PostgresStatements:
    """Построение SQL для одной таблицы. Все имена проходят validate_sql_ident.

    keys: колонки поиска сохранённых строк (SELECT по ключам).
    identity: колонки, адресующие одну строку (WHERE в UPDATE/DELETE,
    ON CONFLICT). По умолчанию совпадает с keys; для истории версий это
    ключ плюс начало интервала.
    """

    def __init__(
        self,
        table: str,
        key_field_names: Sequence[str] | None,
        identity_field_names: Sequence[str] | None = None,
    ) -> None:
        self.table = validate_table_name(table)
        self.keys: tuple[str, ...] = tuple(
            validate_sql_ident(k, what="key column") for k in (key_field_names or ())
        )
        self.identity: tuple[str, ...] = tuple(
            validate_sql_ident(k, what="key column") for k in (identity_field_names or ())
        ) or self.keys

    def _columns(self, names: Sequence[str]) -> list[str]:
        return [validate_sql_ident(n, what="column name") for n in names]

    def _require_keys(self, mutation_type: MutationType) -> None:
        if not self.keys:
            raise SinkError(
                f"{mutation_type.value} into {self.table} requires key_field_names"
            )

    def select_for_keys(self, keys: Sequence[Row]) -> tuple[str, dict[str, Any]]:
        key_cols = ", ".join(self.keys)
        params: dict[str, Any] = {}
        tuples: list[str] = []
        for i, key in enumerate(keys):
            names = []
            for j, col in enumerate(self.keys):
                p = f"k_{i}_{j}"
                params[p] = key[col]
                names.append(f":{p}")
            tuples.append(f"({', '.join(names)})")
        sql = (
            f"SELECT * FROM {self.table} "
            f"WHERE ({key_cols}) IN ({', '.join(tuples)})"
        )
        return sql, params

    def for_mutation(self, mutation_type: MutationType, names: Sequence[str]) -> str:
        cols = self._columns(names)
        values = ", ".join(f":{c}" for c in cols)
        non_key = [c for c in cols if c not in self.identity]

        if mutation_type is MutationType.INSERT:
            return f"INSERT INTO {self.table} ({', '.join(cols)}) VALUES ({values})"

        self._require_keys(mutation_type)
        missing = [k for k in self.identity if k not in cols]
        if missing:
            raise SinkError(
                f"{mutation_type.value} into {self.table}: rows lack key column(s) {missing!r}"
            )
        where = " AND ".join(f"{k} = :{k}" for k in self.identity)

        if mutation_type is MutationType.UPSERT:
            conflict = f"ON CONFLICT ({', '.join(self.identity)})"
            if non_key:
                sets = ", ".join(f"{c} = EXCLUDED.{c}" for c in non_key)
                conflict = f"{conflict} DO UPDATE SET {sets}"
            else:
                conflict = f"{conflict} DO NOTHING"
            return (
                f"INSERT INTO {self.table} ({', '.join(cols)}) VALUES ({values}) "
                f"{conflict}"
            )

        if mutation_type is MutationType.UPDATE:
            if not non_key:
                raise SinkError(f"UPDATE of {self.table}: rows have no non-key columns")
            sets = ", ".join(f"{c} = :{c}" for c in non_key)
            return f"UPDATE {self.table} SET {sets} WHERE {where}"

        if mutation_type is MutationType.DELETE:
            return f"DELETE FROM {self.table} WHERE {where}"

        raise SinkError(f"Postgres sink does not support mutation type: {mutation_type}")

    def delete_params(self, row: Row) -> dict[str, Any]:
        return {k: row[k] for k in self.identity}


async def execute_mutations(
    session: AsyncSession,
    statements: PostgresStatements,
    mutation_type: MutationType,
    rows: Sequence[Row],
    *,
    batch_size: int,
) -> int:
    """Выполнить одну группу мутаций executemany-батчами. Строки с разным
    набором колонок идут разными statement'ами, порядок сохраняется."""
    written = 0
    for names, same_cols in groupby(rows, key=lambda r: r.schema.names):
        chunk_rows = list(same_cols)
        sql = text(statements.for_mutation(mutation_type, names))
        for chunk in _chunks(chunk_rows, batch_size):
            if mutation_type is MutationType.DELETE:
                payload = [statements.delete_params(r) for r in chunk]
            else:
                payload = [r.as_dict() for r in chunk]
            await session.execute(sql, payload)
            written += len(payload)
    return written


# ----------------------------
# Key-scoped sink
# ----------------------------

class PostgresSinkClient:
    def __init__(
        self,
        session: AsyncSession,
        statements: PostgresStatements,
        *,
        batch_size: int,
    ) -> None:
        self._session = session
        self._statements = statements
        self._batch_size = batch_size

    async def existing_for_keys(self, keys: frozenset[Row]) -> list[Row]:
        if not keys:
            return []
        if not self._statements.keys:
            raise SinkError(f"Lookup in {self._statements.table} requires key_field_names")

        # каждый ключ занимает len(keys) bind-параметров
        per_query = max(1, POSTGRES_MAX_BIND_PARAMS // len(self._statements.keys))
        out: list[Row] = []
        for chunk in _chunks(list(keys), min(self._batch_size, per_query)):
            sql, params = self._statements.select_for_keys(chunk)
            res = await self._session.execute(text(sql), params)
            out.extend(Row.from_mapping(dict(r)) for r in res.mappings().all())
        return out

    async def apply_mutations(self, planned: Sequence[PlannedRow]) -> None:
        written = 0
        for mutation_type, group in groupby(planned, key=lambda p: p.mutation_type):
            written += await execute_mutations(
                self._session,
                self._statements,
                mutation_type,
                [p.row for p in group],
                batch_size=self._batch_size,
            )
        await self._session.commit()
        logger.debug("Postgres %s: applied %d mutation(s)", self._statements.table, written)


class PostgresSink:
    """Key-scoped sink поверх таблицы Postgres (INSERT/UPDATE/UPSERT/DELETE).

    Без key_field_names поддерживается только INSERT. identity_field_names
    (по умолчанию ключ) адресуют строку в UPDATE/DELETE/ON CONFLICT.
    """

    def __init__(
        self,
        options: PostgresSinkOptions,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._options = options
        self._session_factory = session_factory
        self._statements = PostgresStatements(
            options.table,
            options.key_field_names,
            options.identity_field_names,
        )
        self.key_field_names: tuple[str, ...] = self._statements.keys
        self.identity_field_names: tuple[str, ...] = self._statements.identity

    def supported_mutation_types(self) -> frozenset[MutationType]:
        if not self._statements.keys:
            return frozenset({MutationType.INSERT})
        return frozenset(MutationType)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[PostgresSinkClient]:
        async with self._session_factory() as session:
            yield PostgresSinkClient(
                session,
                self._statements,
                batch_size=self._options.batch_size,
            )


# ----------------------------
# Set-scoped sink
# ----------------------------

class PostgresBulkSink:
    """Set-scoped sink: каждая группа пишется партициями, сессия на партицию.

    Разрешение конфликтов по ключу делает сама БД (ON CONFLICT).
    """

    SUPPORTED_WITH_KEYS = frozenset(
        {MutationType.INSERT, MutationType.UPSERT, MutationType.DELETE}
    )

    def __init__(
        self,
        options: PostgresSinkOptions,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._options = options
        self._session_factory = session_factory
        self._statements = PostgresStatements(
            options.table,
            options.key_field_names,
            options.identity_field_names,
        )

    def supported_mutation_types(self) -> frozenset[MutationType]:
        if not self._statements.keys:
            return frozenset({MutationType.INSERT})
        return self.SUPPORTED_WITH_KEYS

    async def apply_bulk_mutations(
        self,
        planned: Sequence[tuple[MutationType, Dataset[Row]]],
    ) -> None:
        for mutation_type, rowset in planned:
            if mutation_type not in self.supported_mutation_types():
                raise SinkError(
                    f"Postgres bulk sink does not support mutation type: {mutation_type.value}"
                )

            async def write_partition(rows: list[Row], mt: MutationType = mutation_type) -> None:
                if not rows:
                    return
                async with self._session_factory() as session:
                    written = await execute_mutations(
                        session,
                        self._statements,
                        mt,
                        rows,
                        batch_size=self._options.batch_size,
                    )
                    await session.commit()
                logger.debug(
                    "Postgres bulk %s %s: written=%d",
                    self._statements.table, mt.value, written,
                )

            await rowset.foreach_partition(write_partition)
