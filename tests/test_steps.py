"""Tests for the poll, search and save steps."""

import asyncio

import pytest

from conftest import wait_until
from dataknobs_mongodb import (
    MonitoringConfig,
    MongoDbQueryClient,
    MongoDbRecord,
    MongoDbSaveStep,
    MongoDbSearchStep,
    PollConfig,
    PollResults,
    QueueOutput,
    SaveConfig,
    SearchConfig,
    SearchOutput,
    SearchResult,
    SearchResults,
    Sorting,
    build_poll_step,
    build_save_client,
)
from dataknobs_mongodb.exceptions import ConfigurationError, SaveError


def poll_config(flatten=False, monitoring=None, sort=None):
    return PollConfig(
        search=SearchConfig(
            database="the-db",
            collection="moves",
            query={"action": "IN"},
            sort=sort or {"time": Sorting.ASC},
            tie_breaker="time",
        ),
        name="poll-moves",
        poll_delay=0.02,
        flatten=flatten,
        monitoring=monitoring or MonitoringConfig(),
    )


@pytest.fixture
def moves(server):
    collection = server.collection("the-db", "moves")
    collection.add(
        {"time": 1, "action": "IN"},
        {"time": 2, "action": "OUT"},
        {"time": 3, "action": "IN"},
    )
    return collection


class TestPollStep:
    """Poll step built from its configuration."""

    @pytest.mark.asyncio
    async def test_flattened_records_keep_order_and_offsets(self, server, moves, context):
        step = build_poll_step(poll_config(flatten=True), client_factory=server.client_factory())
        output = QueueOutput()

        await step.start(context)
        runner = asyncio.create_task(step.run(output))
        try:
            first = [await asyncio.wait_for(output.receive(), 1) for _ in range(2)]
            moves.add({"time": 4, "action": "IN"})
            third = await asyncio.wait_for(output.receive(), 1)
        finally:
            await step.stop(context)
        await asyncio.wait_for(runner, 1)

        records = first + [third]
        assert all(isinstance(r, MongoDbRecord) for r in records)
        assert [r.value["time"] for r in records] == [1, 3, 4]
        assert [r.offset for r in records] == [0, 1, 2]
        assert records[0].source == "the-db.moves"

    @pytest.mark.asyncio
    async def test_batched_results(self, server, moves, context):
        step = build_poll_step(poll_config(), client_factory=server.client_factory())
        output = QueueOutput()

        await step.start(context)
        runner = asyncio.create_task(step.run(output))
        try:
            batch = await asyncio.wait_for(output.receive(), 1)
        finally:
            await step.stop(context)
        await asyncio.wait_for(runner, 1)

        assert isinstance(batch, PollResults)
        assert [r.value["time"] for r in batch] == [1, 3]
        assert batch.meters.fetched_records == 2

    @pytest.mark.asyncio
    async def test_run_ends_when_the_step_stops(self, server, context):
        step = build_poll_step(poll_config(), client_factory=server.client_factory())
        output = QueueOutput()

        await step.start(context)
        runner = asyncio.create_task(step.run(output))
        await wait_until(lambda: len(server.find_calls) >= 1)
        await step.stop(context)

        await asyncio.wait_for(runner, 1)
        assert output.drain() == []

    @pytest.mark.asyncio
    async def test_offsets_survive_restarts(self, server, moves, context):
        step = build_poll_step(poll_config(flatten=True), client_factory=server.client_factory())

        offsets = []
        for _ in range(2):
            output = QueueOutput()
            await step.start(context)
            runner = asyncio.create_task(step.run(output))
            try:
                offsets += [(await asyncio.wait_for(output.receive(), 1)).offset for _ in range(2)]
            finally:
                await step.stop(context)
            await asyncio.wait_for(runner, 1)

        assert offsets == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_monitoring_flags(self, server, moves, context, events, meter_registry):
        config = poll_config(monitoring=MonitoringConfig(events=True, meters=False))
        step = build_poll_step(
            config,
            events_logger=events,
            meter_registry=meter_registry,
            client_factory=server.client_factory(),
        )

        assert step.reader._events_logger is events
        assert step.reader._meter_registry is None

    def test_invalid_sort_is_rejected_at_build(self, server):
        config = poll_config(sort={"action": Sorting.ASC})
        with pytest.raises(ConfigurationError, match="first sorting column"):
            build_poll_step(config, client_factory=server.client_factory())


@pytest.fixture
def vehicles(server):
    collection = server.collection("the-db", "vehicles")
    collection.add(
        {"device": "Car#1", "time": 1000},
        {"device": "Car#1", "time": 2000},
        {"device": "Car#2", "time": 1000},
    )
    return collection


class TestSearchStep:
    """Search step executing one query per input."""

    def make_step(self, server, output=SearchOutput.DOCUMENTS):
        async def find_clause(time):
            return {"time": time}

        return MongoDbSearchStep(
            name="search-vehicles",
            query_client=MongoDbQueryClient(server.client_factory()),
            database=lambda _: "the-db",
            collection=lambda _: "vehicles",
            filter=find_clause,
            sorting=lambda _: {"device": Sorting.DESC},
            output=output,
        )

    @pytest.mark.asyncio
    async def test_documents_output(self, server, vehicles, context):
        step = self.make_step(server)
        output = QueueOutput()

        await step.start(context)
        try:
            await step.execute(1000, output)
        finally:
            await step.stop(context)

        result = output.drain()[0]
        assert isinstance(result, SearchResult)
        assert result.input == 1000
        assert [d["device"] for d in result.documents] == ["Car#2", "Car#1"]

    @pytest.mark.asyncio
    async def test_records_output(self, server, vehicles, context):
        step = self.make_step(server, SearchOutput.RECORDS)
        output = QueueOutput()

        await step.start(context)
        try:
            await step.execute(1000, output)
            await step.execute(2000, output)
        finally:
            await step.stop(context)

        first, second = output.drain()
        assert isinstance(first, SearchResults)
        assert [r.offset for r in first] == [0, 1]
        assert [r.offset for r in second] == [2]
        assert second.input == 2000

    @pytest.mark.asyncio
    async def test_flatten_output(self, server, vehicles, context):
        step = self.make_step(server, SearchOutput.FLATTEN)
        output = QueueOutput()

        await step.start(context)
        try:
            await step.execute(1000, output)
        finally:
            await step.stop(context)

        records = output.drain()
        assert [r.value["device"] for r in records] == ["Car#2", "Car#1"]
        assert [r.offset for r in records] == [0, 1]


class TestSaveStep:
    """Save step inserting the documents of each input."""

    def make_step(self, server, **config):
        return MongoDbSaveStep(
            name="save-moves",
            save_client=build_save_client(
                SaveConfig(**config), client_factory=server.client_factory()
            ),
            database=lambda _: "the-db",
            collection=lambda _: "moves",
            documents=lambda count: [{"n": i} for i in range(count)],
        )

    @pytest.mark.asyncio
    async def test_save_result_is_sent(self, server, context):
        step = self.make_step(server, chunk_size=2)
        output = QueueOutput()

        await step.start(context)
        try:
            await step.execute(3, output)
        finally:
            await step.stop(context)

        result = output.drain()[0]
        assert result.input == 3
        assert result.meters.saved_records == 3
        assert result.meters.failed_records == 0
        assert len(server.insert_calls) == 2

    @pytest.mark.asyncio
    async def test_failure_is_raised(self, server, context):
        step = self.make_step(server)
        server.unreachable = True
        output = QueueOutput()

        await step.start(context)
        try:
            with pytest.raises(SaveError):
                await step.execute(2, output)
        finally:
            await step.stop(context)

        assert output.drain() == []
