from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from elasticsearch import AsyncElasticsearch, NotFoundError
from pydantic import BaseModel, ConfigDict, Field

from src.core.enums import MutationType
from src.core.exceptions import SinkError
from src.core.rows import PlannedRow, Row

logger = logging.getLogger("etl_runner")


@dataclass(frozen=True, slots=True)
class ESConfig:
    url: str
    user: str | None
    password: str | None
    timeout: int = 10


class ElasticsearchSinkOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    index: str = Field(min_length=1)
    key_field_names: list[str] = Field(min_length=1)
    id_separator: str = "|"
    refresh: bool = False
    mappings: dict[str, Any] | None = None


def _jsonify(v):
    if v is None:
        return None
    if isinstance(v, UUID):
        return str(v)
    if isinstance(v, Decimal):
        return float(v)
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    return v


def _normalize_row(row: Row) -> dict:
    return {k: _jsonify(val) for k, val in row.items()}


def _first_bulk_error(resp: dict) -> dict | None:
    for it in resp.get("items") or []:
        v = (it.get("update") or it.get("index")
             or it.get("create") or it.get("delete"))
        if v and v.get("error"):
            return v
    return None


class ElasticsearchSinkClient:
    def __init__(self, client: AsyncElasticsearch, options: ElasticsearchSinkOptions) -> None:
        self._client = client
        self._options = options

    def document_id(self, row: Row) -> str:
        missing = [k for k in self._options.key_field_names if k not in row]
        if missing:
            raise SinkError(
                f"ES sink expects key field(s) {missing!r} in row. "
                f"Row keys={list(row)}"
            )
        return self._options.id_separator.join(
            str(_jsonify(row[k])) for k in self._options.key_field_names
        )

    async def _ensure_index(self) -> None:
        index = self._options.index
        if await self._client.indices.exists(index=index):
            return
        body = {"mappings": self._options.mappings or {"dynamic": True}}
        await self._client.indices.create(index=index, **body)

    async def existing_for_keys(self, keys: frozenset[Row]) -> list[Row]:
        if not keys:
            return []
        by_id = {self.document_id(k): k for k in keys}
        try:
            resp = await self._client.mget(index=self._options.index, ids=list(by_id))
        except NotFoundError:
            # индекса ещё нет: сохранённого состояния нет
            return []

        out: list[Row] = []
        for doc in resp.get("docs") or []:
            key = by_id.get(doc.get("_id"))
            if key is None or not doc.get("found"):
                continue
            # в _source значения ключа уже строки (UUID, даты, Decimal):
            # поля ключа берутся из запрошенного ключа
            out.append(Row.from_mapping({**doc["_source"], **key.as_dict()}))
        return out

    def _operations(self, planned: Sequence[PlannedRow]) -> list[dict]:
        index = self._options.index
        ops: list[dict] = []
        for p in planned:
            _id = self.document_id(p.row)
            doc = _normalize_row(p.row)
            match p.mutation_type:
                case MutationType.INSERT:
                    ops.append({"create": {"_index": index, "_id": _id}})
                    ops.append(doc)
                case MutationType.UPDATE:
                    ops.append({"update": {"_index": index, "_id": _id}})
                    ops.append({"doc": doc})
                case MutationType.UPSERT:
                    ops.append({"update": {"_index": index, "_id": _id}})
                    ops.append({"doc": doc, "doc_as_upsert": True})
                case MutationType.DELETE:
                    ops.append({"delete": {"_index": index, "_id": _id}})
                case other:
                    raise SinkError(f"ES sink does not support mutation type: {other}")
        return ops

    async def apply_mutations(self, planned: Sequence[PlannedRow]) -> None:
        if not planned:
            return
        await self._ensure_index()

        resp = await self._client.bulk(
            operations=self._operations(planned),
            refresh=self._options.refresh,
        )
        if resp.get("errors"):
            raise SinkError(
                f"Elasticsearch bulk errors=True. first_error={_first_bulk_error(resp)!r}"
            )
        logger.debug("ES %s: applied %d mutation(s)", self._options.index, len(planned))


class ElasticsearchSink:
    """Key-scoped sink: документ на ключ, _id собирается из значений ключа."""

    def __init__(
        self,
        options: ElasticsearchSinkOptions,
        cfg: ESConfig,
        client_factory: Callable[[], AsyncElasticsearch] | None = None,
    ) -> None:
        self._options = options
        self._cfg = cfg
        self.key_field_names: tuple[str, ...] = tuple(options.key_field_names)
        # документ адресуется только _id из ключа
        self.identity_field_names: tuple[str, ...] = self.key_field_names
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> AsyncElasticsearch:
        auth = None
        if self._cfg.user:
            auth = (self._cfg.user, self._cfg.password or "")
        return AsyncElasticsearch(
            hosts=[self._cfg.url],
            basic_auth=auth,
            request_timeout=self._cfg.timeout,
        )

    def supported_mutation_types(self) -> frozenset[MutationType]:
        return frozenset(MutationType)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[ElasticsearchSinkClient]:
        client = self._client_factory()
        try:
            yield ElasticsearchSinkClient(client, self._options)
        finally:
            await client.close()
