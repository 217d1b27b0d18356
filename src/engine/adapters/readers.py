from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.rows import Row
from src.engine.adapters.local_dataset import LocalDataset
from src.engine.services.sql_pagination import apply_limit_offset_keep_order

logger = logging.getLogger("etl_runner")


class SqlInputOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    query: str = Field(min_length=1)
    page_size: int | None = Field(default=None, ge=1, le=100_000)
    num_partitions: int | None = Field(default=None, ge=1)


class SqlInput:
    """Читает батч SQL-запросом; при page_size: постранично (LIMIT/OFFSET)."""

    def __init__(
        self,
        options: SqlInputOptions,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        default_partitions: int = 1,
    ) -> None:
        self._options = options
        self._session_factory = session_factory
        self._num_partitions = options.num_partitions or default_partitions

    async def _fetch_all(self, session: AsyncSession) -> list[dict[str, Any]]:
        query = self._options.query
        page_size = self._options.page_size
        if page_size is None:
            res = await session.execute(text(query))
            return [dict(r) for r in res.mappings().all()]

        rows: list[dict[str, Any]] = []
        offset = 0
        page_no = 0
        while True:
            page_no += 1
            page_sql = apply_limit_offset_keep_order(query, limit=page_size, offset=offset)
            res = await session.execute(text(page_sql))
            page = [dict(r) for r in res.mappings().all()]
            logger.debug("SQL input page=%d offset=%d fetched=%d", page_no, offset, len(page))
            if not page:
                break
            rows.extend(page)
            offset += len(page)
            if len(page) < page_size:
                break
        return rows

    async def read(self) -> LocalDataset[Row]:
        async with self._session_factory() as session:
            rows = await self._fetch_all(session)
        logger.info("SQL input fetched rows=%d partitions=%d", len(rows), self._num_partitions)
        return LocalDataset.from_mappings(rows, num_partitions=self._num_partitions)
