"""Tests for the publishers, subscriptions and synchronization helpers."""

import asyncio

import pytest
from pymongo.errors import OperationFailure

from dataknobs_mongodb.exceptions import ConcurrencyError
from dataknobs_mongodb.subscription import (
    UNBOUNDED_DEMAND,
    FindPublisher,
    InsertAck,
    InsertManyPublisher,
    Latch,
    ResultSlot,
    Subscription,
)


class RecordingSubscriber:
    """Subscriber keeping every signal it receives."""

    def __init__(self, demand=UNBOUNDED_DEMAND):
        self.demand = demand
        self.items = []
        self.errors = []
        self.completed = 0
        self.subscription = None

    def on_subscribe(self, subscription):
        self.subscription = subscription
        if self.demand:
            subscription.request(self.demand)

    def on_next(self, item):
        self.items.append(item)

    def on_error(self, error):
        self.errors.append(error)

    def on_complete(self):
        self.completed += 1


class TestResultSlot:
    """Single assignment of the result slot."""

    @pytest.mark.asyncio
    async def test_result_is_delivered(self):
        slot = ResultSlot()
        slot.set_result(42)

        assert slot.resolved
        assert await slot.get() == 42

    @pytest.mark.asyncio
    async def test_error_is_raised_on_get(self):
        slot = ResultSlot()
        slot.set_error(OperationFailure("boom"))

        with pytest.raises(OperationFailure, match="boom"):
            await slot.get()

    @pytest.mark.asyncio
    async def test_second_result_is_a_concurrency_error(self):
        slot = ResultSlot()
        slot.set_result(1)

        with pytest.raises(ConcurrencyError, match="already resolved"):
            slot.set_result(2)
        assert await slot.get() == 1

    @pytest.mark.asyncio
    async def test_error_after_result_is_a_concurrency_error(self):
        slot = ResultSlot()
        slot.set_result(1)

        with pytest.raises(ConcurrencyError):
            slot.set_error(RuntimeError("late"))

    @pytest.mark.asyncio
    async def test_resolution_from_another_thread(self):
        slot = ResultSlot()

        await asyncio.to_thread(slot.set_result, "from-thread")

        assert await asyncio.wait_for(slot.get(), 1) == "from-thread"

    @pytest.mark.asyncio
    async def test_late_resolution_after_cancellation_is_ignored(self):
        slot = ResultSlot()
        waiter = asyncio.create_task(slot.get())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        slot.set_result("too late")

        assert slot.resolved


class TestLatch:
    """Gate released once."""

    @pytest.mark.asyncio
    async def test_wait_blocks_until_release(self):
        latch = Latch()
        waiter = asyncio.create_task(latch.wait())
        await asyncio.sleep(0.01)
        assert not waiter.done()

        latch.release()
        await asyncio.wait_for(waiter, 1)
        assert not latch.is_locked

    @pytest.mark.asyncio
    async def test_unlocked_latch_does_not_wait(self):
        latch = Latch(locked=False)

        assert not latch.is_locked
        await asyncio.wait_for(latch.wait(), 1)

    @pytest.mark.asyncio
    async def test_release_from_another_thread(self):
        latch = Latch()

        await asyncio.to_thread(latch.release)

        await asyncio.wait_for(latch.wait(), 1)


class TestSubscription:
    """Demand accounting."""

    @pytest.mark.asyncio
    async def test_non_positive_demand_is_rejected(self):
        with pytest.raises(ValueError):
            Subscription().request(0)

    @pytest.mark.asyncio
    async def test_acquire_consumes_bounded_demand(self):
        subscription = Subscription()
        subscription.request(1)

        assert await subscription.acquire()
        pending = asyncio.create_task(subscription.acquire())
        await asyncio.sleep(0.01)
        assert not pending.done()

        subscription.request(1)
        assert await asyncio.wait_for(pending, 1)

    @pytest.mark.asyncio
    async def test_acquire_after_cancel_returns_false(self):
        subscription = Subscription()
        subscription.request(UNBOUNDED_DEMAND)
        subscription.cancel()

        assert subscription.cancelled
        assert not await subscription.acquire()


class TestFindPublisher:
    """Streaming of find results."""

    @pytest.mark.asyncio
    async def test_documents_are_streamed_in_sort_order(self, server):
        collection = server.collection("db", "moves")
        collection.add({"n": 2}, {"n": 3}, {"n": 1})
        subscriber = RecordingSubscriber()

        await FindPublisher(collection, {}, [("n", -1)]).subscribe(subscriber)

        assert [d["n"] for d in subscriber.items] == [3, 2, 1]
        assert subscriber.completed == 1
        assert subscriber.errors == []
        assert collection.cursors[-1].closed

    @pytest.mark.asyncio
    async def test_filter_is_applied(self, server):
        collection = server.collection("db", "moves")
        collection.add({"n": 1, "action": "IN"}, {"n": 2, "action": "OUT"})
        subscriber = RecordingSubscriber()

        await FindPublisher(collection, {"action": "IN"}).subscribe(subscriber)

        assert [d["n"] for d in subscriber.items] == [1]

    @pytest.mark.asyncio
    async def test_driver_error_is_signalled_once(self, server):
        collection = server.collection("db", "moves")
        server.find_error = OperationFailure("boom")
        subscriber = RecordingSubscriber()

        await FindPublisher(collection, {}).subscribe(subscriber)

        assert len(subscriber.errors) == 1
        assert subscriber.completed == 0
        assert collection.cursors[-1].closed

    @pytest.mark.asyncio
    async def test_cancelled_task_sends_no_terminal_signal(self, server):
        collection = server.collection("db", "moves")
        collection.add({"n": 1})
        server.find_gate = asyncio.Event()
        subscriber = RecordingSubscriber()

        task = FindPublisher(collection, {}).subscribe(subscriber)
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert subscriber.subscription.cancelled
        assert subscriber.items == []
        assert subscriber.errors == []
        assert subscriber.completed == 0

    @pytest.mark.asyncio
    async def test_items_wait_for_demand(self, server):
        collection = server.collection("db", "moves")
        collection.add({"n": 1}, {"n": 2})
        subscriber = RecordingSubscriber(demand=0)

        task = FindPublisher(collection, {}).subscribe(subscriber)
        await asyncio.sleep(0.01)
        assert subscriber.items == []

        subscriber.subscription.request(1)
        await asyncio.sleep(0.01)
        assert len(subscriber.items) == 1

        subscriber.subscription.request(1)
        await asyncio.wait_for(task, 1)
        assert len(subscriber.items) == 2
        assert subscriber.completed == 1


class TestInsertManyPublisher:
    """Chunked inserts and their acknowledgements."""

    @pytest.mark.asyncio
    async def test_documents_are_inserted_in_chunks(self, server):
        collection = server.collection("db", "moves")
        subscriber = RecordingSubscriber()

        documents = [{"n": i} for i in range(5)]
        await InsertManyPublisher(collection, documents, chunk_size=2).subscribe(subscriber)

        assert subscriber.items == [InsertAck(2), InsertAck(2), InsertAck(1)]
        assert subscriber.completed == 1
        assert [call[1] for call in server.insert_calls] == [2, 2, 1]
        assert len(collection.documents) == 5

    @pytest.mark.asyncio
    async def test_rejected_documents_are_acknowledged_partially(self, server):
        collection = server.collection("db", "moves")
        subscriber = RecordingSubscriber()

        documents = [{"n": 1}, {"$bad": 2}, {"n": 3}]
        await InsertManyPublisher(collection, documents, chunk_size=10).subscribe(subscriber)

        assert subscriber.items == [InsertAck(inserted_count=2, rejected_count=1)]
        assert subscriber.completed == 1
        assert subscriber.errors == []

    @pytest.mark.asyncio
    async def test_ordered_insert_stops_at_first_rejected_chunk(self, server):
        collection = server.collection("db", "moves")
        subscriber = RecordingSubscriber()

        documents = [{"n": 1}, {"$bad": 2}, {"n": 3}, {"n": 4}]
        await InsertManyPublisher(collection, documents, chunk_size=2, ordered=True).subscribe(
            subscriber
        )

        assert subscriber.items == [InsertAck(inserted_count=1, rejected_count=1)]
        assert len(server.insert_calls) == 1
        assert [d["n"] for d in collection.documents] == [1]

    @pytest.mark.asyncio
    async def test_unreachable_server_is_an_error(self, server):
        collection = server.collection("db", "moves")
        server.unreachable = True
        subscriber = RecordingSubscriber()

        await InsertManyPublisher(collection, [{"n": 1}], chunk_size=10).subscribe(subscriber)

        assert subscriber.items == []
        assert len(subscriber.errors) == 1
        assert subscriber.completed == 0
