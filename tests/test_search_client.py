"""Tests for the search query client."""

import asyncio

import pytest
from pymongo.errors import OperationFailure

from dataknobs_mongodb.exceptions import QueryError
from dataknobs_mongodb.records import Sorting
from dataknobs_mongodb.search import MongoDbQueryClient, to_sort_clause


@pytest.fixture
def vehicles(server):
    collection = server.collection("the-db", "vehicles")
    collection.add(
        {"device": "Car#1", "time": 1000},
        {"device": "Car#1", "time": 2000},
        {"device": "Car#2", "time": 1000},
    )
    return collection


@pytest.fixture
async def client(server, context, events, meter_registry):
    query_client = MongoDbQueryClient(
        server.client_factory(), events_logger=events, meter_registry=meter_registry
    )
    await query_client.start(context)
    yield query_client
    await query_client.stop(context)


class TestSortClause:
    """Conversion of the sort clause."""

    def test_mapping_keeps_its_order(self):
        clause = to_sort_clause({"device": Sorting.DESC, "time": Sorting.ASC})
        assert clause == [("device", -1), ("time", 1)]

    def test_pairs_are_parsed(self):
        assert to_sort_clause([("device", "asc"), ("time", -1)]) == [("device", 1), ("time", -1)]


class TestMongoDbQueryClient:
    """Execution of one-shot queries."""

    @pytest.mark.asyncio
    async def test_matching_documents_are_sorted(self, client, vehicles):
        result = await client.execute(
            "the-db", "vehicles", {"time": 1000}, {"device": Sorting.DESC}
        )

        assert [d["device"] for d in result.documents] == ["Car#2", "Car#1"]
        assert result.meters.fetched_records == 2

    @pytest.mark.asyncio
    async def test_no_matching_document(self, client, vehicles, events):
        result = await client.execute("the-db", "vehicles", {"time": 5}, {"device": Sorting.ASC})

        assert result.documents == []
        assert result.meters.fetched_records == 0
        assert events.find("mongodb.search.time-to-response") == []
        assert events.find("mongodb.search.success")[0].value[1] == 0

    @pytest.mark.asyncio
    async def test_failure_raises_query_error(self, client, server, vehicles, events):
        server.find_error = OperationFailure("boom")

        with pytest.raises(QueryError) as exc_info:
            await client.execute("the-db", "vehicles", {}, {"time": Sorting.ASC})

        error = exc_info.value
        assert error.database == "the-db"
        assert error.collection == "vehicles"
        assert isinstance(error.__cause__, OperationFailure)
        assert error.context == {"database": "the-db", "collection": "vehicles"}
        assert len(events.find("mongodb.search.failure")) == 1
        assert client._failure_counter.count == 1

    @pytest.mark.asyncio
    async def test_unreachable_server_raises_query_error(self, client, server):
        server.unreachable = True

        with pytest.raises(QueryError, match="No server available"):
            await client.execute("the-db", "vehicles", {}, {"time": Sorting.ASC})

    @pytest.mark.asyncio
    async def test_execute_before_start(self, server):
        query_client = MongoDbQueryClient(server.client_factory())

        with pytest.raises(QueryError, match="not started"):
            await query_client.execute("the-db", "vehicles", {}, {})

    @pytest.mark.asyncio
    async def test_concurrent_queries(self, client, vehicles):
        first, second = await asyncio.gather(
            client.execute("the-db", "vehicles", {"time": 1000}, {"device": Sorting.ASC}),
            client.execute("the-db", "vehicles", {"time": 2000}, {"device": Sorting.ASC}),
        )

        assert [d["device"] for d in first.documents] == ["Car#1", "Car#2"]
        assert [d["time"] for d in second.documents] == [2000]

    @pytest.mark.asyncio
    async def test_events_carry_the_request_tags(self, client, vehicles, events):
        tags = {"input": "query-1"}
        await client.execute("the-db", "vehicles", {"time": 1000}, {"device": Sorting.ASC}, tags)

        assert events.names() == [
            "mongodb.search.searching",
            "mongodb.search.time-to-response",
            "mongodb.search.success",
        ]
        assert all(event.tags == tags for event in events.events)
        assert events.find("mongodb.search.success")[0].value[1] == 2

    @pytest.mark.asyncio
    async def test_meters(self, client, vehicles, context, meter_registry):
        registry = meter_registry.collector_registry
        tags = meter_registry.labels(context.to_meters_tags())

        await client.execute("the-db", "vehicles", {"time": 1000}, {"device": Sorting.ASC})
        await client.execute("the-db", "vehicles", {"time": 2000}, {"device": Sorting.ASC})

        assert registry.get_sample_value("mongodb_search_received_records_total", tags) == 3
        assert registry.get_sample_value("mongodb_search_success_total", tags) == 2
        assert registry.get_sample_value("mongodb_search_time_to_response_count", tags) == 2

    @pytest.mark.asyncio
    async def test_stop_closes_client_and_removes_meters(
        self, server, context, meter_registry
    ):
        query_client = MongoDbQueryClient(server.client_factory(), meter_registry=meter_registry)
        await query_client.start(context)
        await query_client.stop(context)

        assert server.clients[0].closed
        tags = meter_registry.labels(context.to_meters_tags())
        assert (
            meter_registry.collector_registry.get_sample_value("mongodb_search_success_total", tags)
            is None
        )
        with pytest.raises(QueryError):
            await query_client.execute("the-db", "vehicles", {}, {})
