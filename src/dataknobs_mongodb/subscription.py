"""Push-based subscriptions over the async MongoDB driver.

The connectors consume query and insert streams through callbacks
(``on_next``/``on_error``/``on_complete``) and reduce them to a single awaited
value with a :class:`ResultSlot` or a :class:`Latch`. Publishers drive the
driver's async cursor on their own task and push each item to the subscriber
as soon as demand allows it.

Example:
    ```python
    slot = ResultSlot()

    class Collect:
        def __init__(self):
            self.items = []

        def on_subscribe(self, subscription):
            subscription.request(UNBOUNDED_DEMAND)

        def on_next(self, item):
            self.items.append(item)

        def on_error(self, error):
            slot.set_error(error)

        def on_complete(self):
            slot.set_result(self.items)

    FindPublisher(collection, {"action": "IN"}, [("timestamp", 1)]).subscribe(Collect())
    documents = await slot.get()
    ```
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from pymongo.errors import BulkWriteError

from .exceptions import ConcurrencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")
T_contra = TypeVar("T_contra", contravariant=True)

UNBOUNDED_DEMAND = sys.maxsize


def _call_in_loop(loop: asyncio.AbstractEventLoop, func: Callable[..., Any], *args: Any) -> None:
    """Run func on the loop thread, directly when already on it."""
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        func(*args)
    else:
        loop.call_soon_threadsafe(func, *args)


class Subscription:
    """Demand and cancellation shared between a publisher and its subscriber."""

    def __init__(self) -> None:
        self._requested = 0
        self._cancelled = False
        self._signal = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def request(self, n: int) -> None:
        if n <= 0:
            raise ValueError("The requested demand must be positive")
        self._requested = min(self._requested + n, UNBOUNDED_DEMAND)
        self._signal.set()

    def cancel(self) -> None:
        self._cancelled = True
        self._signal.set()

    async def acquire(self) -> bool:
        """Wait for one unit of demand; return False once cancelled."""
        while not self._cancelled and self._requested == 0:
            self._signal.clear()
            await self._signal.wait()
        if self._cancelled:
            return False
        if self._requested != UNBOUNDED_DEMAND:
            self._requested -= 1
        return True


class Subscriber(Protocol[T_contra]):
    """Receiver of a publisher's signals."""

    def on_subscribe(self, subscription: Subscription) -> None: ...

    def on_next(self, item: T_contra) -> None: ...

    def on_error(self, error: BaseException) -> None: ...

    def on_complete(self) -> None: ...


class Publisher(ABC, Generic[T]):
    """Streams items to one subscriber from a background task.

    Exactly one terminal signal (``on_error`` or ``on_complete``) is sent,
    unless the subscription was cancelled, in which case nothing more is
    delivered.
    """

    @abstractmethod
    def _items(self) -> AsyncIterator[T]:
        """Produce the items of the stream."""

    def subscribe(self, subscriber: Subscriber[T]) -> asyncio.Task:
        subscription = Subscription()
        return asyncio.create_task(self._run(subscriber, subscription))

    async def _run(self, subscriber: Subscriber[T], subscription: Subscription) -> None:
        try:
            subscriber.on_subscribe(subscription)
            async with aclosing(self._items()) as items:
                async for item in items:
                    if not await subscription.acquire():
                        return
                    subscriber.on_next(item)
        except asyncio.CancelledError:
            subscription.cancel()
            raise
        except Exception as e:
            if subscription.cancelled:
                logger.debug("Ignoring an error of a cancelled subscription: %s", e)
                return
            try:
                subscriber.on_error(e)
            except Exception:
                logger.exception("Error in the error handler of %s", subscriber)
            return

        if not subscription.cancelled:
            try:
                subscriber.on_complete()
            except Exception:
                logger.exception("Error in the completion handler of %s", subscriber)


class FindPublisher(Publisher[dict[str, Any]]):
    """Streams the documents returned by one ``find``."""

    def __init__(
        self,
        collection: Any,
        filter: dict[str, Any],
        sort: Sequence[tuple[str, int]] | None = None,
    ) -> None:
        self._collection = collection
        self._filter = filter
        self._sort = list(sort or [])

    async def _items(self) -> AsyncIterator[dict[str, Any]]:
        cursor = self._collection.find(self._filter)
        if self._sort:
            cursor = cursor.sort(self._sort)
        try:
            async for document in cursor:
                yield document
        finally:
            result = cursor.close()
            if asyncio.iscoroutine(result):
                await result


@dataclass(frozen=True)
class InsertAck:
    """Acknowledgement of one inserted chunk.

    Attributes:
        inserted_count: Number of documents confirmed as inserted
        rejected_count: Number of documents the server refused in the chunk
    """

    inserted_count: int
    rejected_count: int = 0


class InsertManyPublisher(Publisher[InsertAck]):
    """Inserts documents chunk by chunk, acknowledging each chunk.

    A chunk partially rejected by the server (``BulkWriteError``) produces a
    partial acknowledgement; any other driver error ends the stream with an
    error. Ordered inserts stop at the first rejected chunk.
    """

    def __init__(
        self,
        collection: Any,
        documents: Sequence[dict[str, Any]],
        chunk_size: int,
        ordered: bool = False,
    ) -> None:
        self._collection = collection
        self._documents = list(documents)
        self._chunk_size = chunk_size
        self._ordered = ordered

    async def _items(self) -> AsyncIterator[InsertAck]:
        for start in range(0, len(self._documents), self._chunk_size):
            chunk = self._documents[start : start + self._chunk_size]
            try:
                result = await self._collection.insert_many(chunk, ordered=self._ordered)
                ack = InsertAck(len(result.inserted_ids))
            except BulkWriteError as e:
                details = e.details or {}
                ack = InsertAck(
                    inserted_count=details.get("nInserted", 0),
                    rejected_count=len(details.get("writeErrors", [])),
                )
                logger.debug("Chunk partially rejected: %s", details.get("writeErrors"))
            yield ack
            if self._ordered and ack.rejected_count:
                break


class ResultSlot(Generic[T]):
    """Single-assignment slot turning callbacks into an awaitable value.

    The slot can be resolved from any thread, but only once: a second
    resolution raises :class:`ConcurrencyError`. A resolution arriving after
    the awaiting task was cancelled is ignored.
    """

    def __init__(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._future: asyncio.Future[T] = self._loop.create_future()
        self._resolved = False
        self._lock = threading.Lock()

    @property
    def resolved(self) -> bool:
        return self._resolved

    def set_result(self, value: T) -> None:
        self._claim()
        _call_in_loop(self._loop, self._apply, self._future.set_result, value)

    def set_error(self, error: BaseException) -> None:
        self._claim()
        _call_in_loop(self._loop, self._apply, self._future.set_exception, error)

    async def get(self) -> T:
        return await self._future

    def _claim(self) -> None:
        with self._lock:
            if self._resolved:
                raise ConcurrencyError("The result slot is already resolved")
            self._resolved = True

    def _apply(self, setter: Callable[[Any], None], value: Any) -> None:
        if self._future.cancelled():
            logger.debug("Ignoring a late resolution of a cancelled result slot")
            return
        setter(value)


class Latch:
    """Gate that stays closed until released once.

    Args:
        locked: Whether the latch starts closed
    """

    def __init__(self, locked: bool = True) -> None:
        self._loop = asyncio.get_running_loop()
        self._event = asyncio.Event()
        if not locked:
            self._event.set()

    @property
    def is_locked(self) -> bool:
        return not self._event.is_set()

    def release(self) -> None:
        _call_in_loop(self._loop, self._event.set)

    async def wait(self) -> None:
        await self._event.wait()
