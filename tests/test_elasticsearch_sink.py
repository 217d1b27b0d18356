from datetime import date
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import pytest
from elasticsearch import NotFoundError

from src.core.enums import MutationType
from src.core.exceptions import SinkError
from src.core.rows import PlannedRow, Row
from src.engine.adapters.sinks_elasticsearch import (
    ESConfig,
    ElasticsearchSink,
    ElasticsearchSinkClient,
    ElasticsearchSinkOptions,
)
from src.engine.services.existing_join import ExistingStateJoiner

from tests.fakes import rows_of

CFG = ESConfig(url="http://es:9200", user=None, password=None)


def _es_client():
    client = AsyncMock()
    client.indices.exists.return_value = True
    client.bulk.return_value = {"errors": False, "items": []}
    return client


def _sink(client, **options):
    opts = ElasticsearchSinkOptions(
        index=options.pop("index", "films"),
        key_field_names=options.pop("key_field_names", ["film_id"]),
        **options,
    )
    return ElasticsearchSink(opts, CFG, client_factory=lambda: client)


@pytest.mark.asyncio
async def test_existing_for_keys_uses_mget_by_document_id():
    client = _es_client()
    client.mget.return_value = {
        "docs": [
            {"_id": "1", "found": True, "_source": {"film_id": 1, "title": "A"}},
            {"_id": "2", "found": False},
        ]
    }

    async with _sink(client).connect() as es:
        found = await es.existing_for_keys(frozenset(rows_of({"film_id": 1}, {"film_id": 2})))

    assert found == rows_of({"film_id": 1, "title": "A"})
    kwargs = client.mget.await_args.kwargs
    assert kwargs["index"] == "films"
    assert sorted(kwargs["ids"]) == ["1", "2"]
    client.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_stored_document_with_uuid_key_joins_back_to_its_key():
    film_id = UUID("6f0c1e9a-3c1b-4c8e-9d55-2b8f3f7d1a10")
    key = Row.from_mapping({"film_id": film_id})
    client = _es_client()
    # в _source ключ хранится строкой, как его записал bulk
    client.mget.return_value = {
        "docs": [
            {"_id": str(film_id), "found": True,
             "_source": {"film_id": str(film_id), "title": "A"}},
        ]
    }

    joined = await ExistingStateJoiner(_sink(client), ["film_id"]).join_partition(
        [(key, rows_of({"film_id": film_id, "title": "B"}))]
    )

    assert joined[0].existing == (Row.from_mapping({"film_id": film_id, "title": "A"}),)
    assert isinstance(joined[0].existing[0]["film_id"], UUID)


@pytest.mark.asyncio
async def test_documents_for_unrequested_ids_are_ignored():
    client = _es_client()
    client.mget.return_value = {
        "docs": [{"_id": "99", "found": True, "_source": {"film_id": 99, "title": "Z"}}]
    }

    async with _sink(client).connect() as es:
        assert await es.existing_for_keys(frozenset(rows_of({"film_id": 1}))) == []


@pytest.mark.asyncio
async def test_missing_index_means_no_existing_state():
    client = _es_client()
    client.mget.side_effect = NotFoundError("index_not_found", meta=MagicMock(status=404), body={})

    async with _sink(client).connect() as es:
        assert await es.existing_for_keys(frozenset(rows_of({"film_id": 1}))) == []


@pytest.mark.asyncio
async def test_empty_key_set_does_not_call_es():
    client = _es_client()

    async with _sink(client).connect() as es:
        assert await es.existing_for_keys(frozenset()) == []

    client.mget.assert_not_awaited()


def test_composite_document_id_joins_key_values():
    opts = ElasticsearchSinkOptions(index="films", key_field_names=["film_id", "day"], id_separator=":")
    es = ElasticsearchSinkClient(_es_client(), opts)

    row = Row.from_mapping({"film_id": 5, "day": date(2024, 1, 2), "views": 3})
    assert es.document_id(row) == "5:2024-01-02"

    with pytest.raises(SinkError, match="key field"):
        es.document_id(Row.from_mapping({"views": 3}))


@pytest.mark.asyncio
async def test_apply_mutations_builds_bulk_operations():
    client = _es_client()
    planned = [
        PlannedRow(MutationType.INSERT, Row.from_mapping({"film_id": 1, "title": "A"})),
        PlannedRow(MutationType.UPSERT, Row.from_mapping({"film_id": 2, "title": "B"})),
        PlannedRow(MutationType.UPDATE, Row.from_mapping({"film_id": 3, "title": "C"})),
        PlannedRow(MutationType.DELETE, Row.from_mapping({"film_id": 4, "title": "D"})),
    ]

    async with _sink(client, refresh=True).connect() as es:
        await es.apply_mutations(planned)

    kwargs = client.bulk.await_args.kwargs
    assert kwargs["refresh"] is True
    assert kwargs["operations"] == [
        {"create": {"_index": "films", "_id": "1"}},
        {"film_id": 1, "title": "A"},
        {"update": {"_index": "films", "_id": "2"}},
        {"doc": {"film_id": 2, "title": "B"}, "doc_as_upsert": True},
        {"update": {"_index": "films", "_id": "3"}},
        {"doc": {"film_id": 3, "title": "C"}},
        {"delete": {"_index": "films", "_id": "4"}},
    ]


@pytest.mark.asyncio
async def test_index_is_created_when_missing():
    client = _es_client()
    client.indices.exists.return_value = False

    async with _sink(client, mappings={"properties": {"title": {"type": "text"}}}).connect() as es:
        await es.apply_mutations(
            [PlannedRow(MutationType.UPSERT, Row.from_mapping({"film_id": 1}))]
        )

    client.indices.create.assert_awaited_once_with(
        index="films", mappings={"properties": {"title": {"type": "text"}}}
    )


@pytest.mark.asyncio
async def test_bulk_errors_raise_sink_error_and_close_client():
    client = _es_client()
    client.bulk.return_value = {
        "errors": True,
        "items": [{"update": {"_id": "1", "error": {"type": "mapper_parsing_exception"}}}],
    }

    with pytest.raises(SinkError, match="mapper_parsing_exception"):
        async with _sink(client).connect() as es:
            await es.apply_mutations(
                [PlannedRow(MutationType.UPSERT, Row.from_mapping({"film_id": 1}))]
            )

    client.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_empty_mutation_list_is_noop():
    client = _es_client()

    async with _sink(client).connect() as es:
        await es.apply_mutations([])

    client.bulk.assert_not_awaited()
    client.indices.exists.assert_not_awaited()
