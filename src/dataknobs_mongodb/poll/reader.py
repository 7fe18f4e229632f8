"""Iterative reader polling a MongoDB collection in the background."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any, Generic, TypeVar

from ..connection import ClientFactory, close_mongodb_client
from ..context import StepStartStopContext
from ..events import EventsLogger
from ..exceptions import ReaderClosedError, ReaderStateError
from ..meters import CounterMeter, MeterRegistry, TimerMeter
from ..records import DOCUMENT_ID_KEY, QueryMeters, QueryResult
from ..subscription import UNBOUNDED_DEMAND, FindPublisher, Latch, Subscription
from .statement import MongoDbPollStatement

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNSET = object()
_CLOSED = object()


class ClosableQueue(Generic[T]):
    """FIFO hand-off queue that can be closed.

    Closing discards the items not consumed yet; from then on :meth:`get`
    raises :class:`ReaderClosedError`. Unbounded by default.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def put_nowait(self, item: T) -> None:
        if self._closed:
            raise ReaderClosedError("The results queue is closed")
        self._queue.put_nowait(item)

    async def put(self, item: T) -> None:
        if self._closed:
            raise ReaderClosedError("The results queue is closed")
        await self._queue.put(item)

    async def get(self) -> T:
        if self._closed:
            raise ReaderClosedError("The results queue is closed")
        item = await self._queue.get()
        if item is _CLOSED:
            # Wake up the next waiting consumer, if any
            self._queue.put_nowait(_CLOSED)
            raise ReaderClosedError("The results queue is closed")
        return item

    def close(self) -> None:
        """Close the queue, discarding the items not consumed yet."""
        if self._closed:
            return
        self._closed = True
        discarded = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            discarded += 1
        if discarded:
            logger.debug("Discarding %d unconsumed result(s) of the closed queue", discarded)
        self._queue.put_nowait(_CLOSED)


class _PollCycleSubscriber:
    """Collects the documents of one poll cycle."""

    def __init__(self, reader: MongoDbIterativeReader, latch: Latch, request_start: float) -> None:
        self.documents: list[dict[str, Any]] = []
        self.error: BaseException | None = None
        self.duration = timedelta()
        self._reader = reader
        self._latch = latch
        self._request_start = request_start
        self._first = True

    def on_subscribe(self, subscription: Subscription) -> None:
        subscription.request(UNBOUNDED_DEMAND)

    def on_next(self, document: dict[str, Any]) -> None:
        reader = self._reader
        if self._first:
            self._first = False
            duration = reader._elapsed(self._request_start)
            if reader._events_logger:
                reader._events_logger.info(
                    f"{reader.EVENT_PREFIX}.success",
                    (len(self.documents), duration),
                    tags=reader._event_tags,
                )
            if reader._time_to_response:
                reader._time_to_response.record(duration)

        # The last document of the previous poll is skipped, as well as all the previous ones
        if reader._latest_id is not _UNSET and document.get(DOCUMENT_ID_KEY) == reader._latest_id:
            logger.debug("Discarding %d already received document(s)", len(self.documents) + 1)
            self.documents.clear()
        else:
            self.documents.append(document)

    def on_error(self, error: BaseException) -> None:
        reader = self._reader
        self.error = error
        self.duration = reader._elapsed(self._request_start)
        if reader._events_logger:
            reader._events_logger.warn(
                f"{reader.EVENT_PREFIX}.failure", (error, self.duration), tags=reader._event_tags
            )
        if reader._failure_counter:
            reader._failure_counter.increment()
        self._latch.release()

    def on_complete(self) -> None:
        self.duration = self._reader._elapsed(self._request_start)
        self._latch.release()


class MongoDbIterativeReader:
    """Database reader polling MongoDB at a fixed delay.

    The reader runs one background task per start. Each poll executes the
    statement's query, publishes the received documents as one
    :class:`QueryResult` and advances the statement's tie-breaker. Consumers
    pull the results with :meth:`has_next` and :meth:`next`.

    Args:
        client_factory: Supplier of a new MongoDB client, called at each start
        poll_statement: Statement to execute
        poll_delay: Delay between the end of a poll and the start of the next one,
            in seconds or as a timedelta
        events_logger: Sink of the events, None to disable them
        meter_registry: Registry of the meters, None to disable them
        results_queue_factory: Factory of the queue handing the results over

    Example:
        ```python
        reader = MongoDbIterativeReader(
            client_factory=MongoConnectionConfig().client_factory(),
            poll_statement=statement,
            poll_delay=1.0,
        )
        await reader.start(StepStartStopContext(step="poll-in"))
        while await reader.has_next():
            result = await reader.next()
            ...
        await reader.stop(context)
        ```
    """

    EVENT_PREFIX = "mongodb.poll"
    METER_PREFIX = "mongodb-poll"

    def __init__(
        self,
        client_factory: ClientFactory,
        poll_statement: MongoDbPollStatement,
        poll_delay: float | timedelta,
        events_logger: EventsLogger | None = None,
        meter_registry: MeterRegistry | None = None,
        results_queue_factory: Callable[[], ClosableQueue[QueryResult]] = ClosableQueue,
    ) -> None:
        self._client_factory = client_factory
        self._poll_statement = poll_statement
        self._poll_delay = (
            poll_delay.total_seconds() if isinstance(poll_delay, timedelta) else float(poll_delay)
        )
        self._events_logger = events_logger
        self._meter_registry = meter_registry
        self._results_queue_factory = results_queue_factory

        self._running = False
        self._client: Any = None
        self._results: ClosableQueue[QueryResult] | None = None
        self._polling_task: asyncio.Task[None] | None = None
        self._publisher_task: asyncio.Task[None] | None = None
        self._latest_id: Any = _UNSET
        self._event_tags: dict[str, str] = {}

        self._records_count: CounterMeter | None = None
        self._time_to_response: TimerMeter | None = None
        self._success_counter: CounterMeter | None = None
        self._failure_counter: CounterMeter | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def poll_delay(self) -> float:
        return self._poll_delay

    async def start(self, context: StepStartStopContext) -> None:
        """Start polling in a background task.

        Raises:
            ReaderStateError: If the reader is already running
        """
        if self._running:
            raise ReaderStateError("The reader is already running, stop it before starting it again")

        logger.debug("Starting the reader with the context %s", context)
        if self._meter_registry:
            tags = context.to_meters_tags()
            self._records_count = self._meter_registry.counter(
                f"{self.METER_PREFIX}-received-records", tags
            )
            self._time_to_response = self._meter_registry.timer(
                f"{self.METER_PREFIX}-time-to-response", tags
            )
            self._success_counter = self._meter_registry.counter(f"{self.METER_PREFIX}-successes", tags)
            self._failure_counter = self._meter_registry.counter(f"{self.METER_PREFIX}-failures", tags)
        self._event_tags = context.to_event_tags()

        self._init()
        self._running = True
        self._polling_task = asyncio.create_task(self._poll_loop())

    def _init(self) -> None:
        self._client = self._client_factory()
        self._results = self._results_queue_factory()

    async def stop(self, context: StepStartStopContext) -> None:
        """Stop polling and release the resources.

        Every release is attempted even when a previous one failed, and no
        error is raised.
        """
        logger.debug("Stopping the reader with the context %s", context)
        if self._meter_registry:
            for meter in (
                self._records_count,
                self._time_to_response,
                self._success_counter,
                self._failure_counter,
            ):
                try:
                    self._meter_registry.remove(meter)
                except Exception:
                    logger.exception("Error while removing the meter %s", meter)
        self._records_count = None
        self._time_to_response = None
        self._success_counter = None
        self._failure_counter = None

        self._running = False
        if self._polling_task:
            self._polling_task.cancel()
            try:
                await self._polling_task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("The polling task failed")
            self._polling_task = None

        try:
            await close_mongodb_client(self._client)
        except Exception:
            logger.exception("Error while closing the MongoDB client")
        self._client = None

        if self._results:
            self._results.close()
        self._poll_statement.reset()
        self._latest_id = _UNSET

    async def has_next(self) -> bool:
        return self._running

    async def next(self) -> QueryResult:
        """Wait for the next result of a poll.

        Raises:
            ReaderClosedError: If the reader was stopped or never started
        """
        if self._results is None:
            raise ReaderClosedError("The reader was never started")
        return await self._results.get()

    async def _poll_loop(self) -> None:
        logger.debug("Polling job just started")
        try:
            while self._running:
                await self._poll(self._client)
                if self._running:
                    await asyncio.sleep(self._poll_delay)
            logger.debug("Polling job just completed")
        finally:
            if self._results:
                self._results.close()

    async def _poll(self, client: Any) -> None:
        """Execute one poll and wait for its completion."""
        latch = Latch()
        if self._events_logger:
            self._events_logger.trace(f"{self.EVENT_PREFIX}.polling", tags=self._event_tags)

        try:
            statement = self._poll_statement
            find_clause = statement.filter
            logger.debug("Searching documents with the filter: %s", find_clause)
            collection = client[statement.database][statement.collection]

            subscriber = _PollCycleSubscriber(self, latch, time.perf_counter())
            publisher = FindPublisher(collection, find_clause, statement.sorting)
            self._publisher_task = publisher.subscribe(subscriber)
            try:
                await latch.wait()
            finally:
                if not self._publisher_task.done():
                    self._publisher_task.cancel()
                self._publisher_task = None

            if subscriber.error is not None:
                logger.error("The poll failed: %s", subscriber.error)
                return
            await self._complete(subscriber.documents, subscriber.duration)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Error while polling: %s", e)

    async def _complete(self, documents: list[dict[str, Any]], duration: timedelta) -> None:
        if self._events_logger:
            self._events_logger.info(
                f"{self.EVENT_PREFIX}.successful-response",
                (duration, len(documents)),
                tags=self._event_tags,
            )
        if self._success_counter:
            self._success_counter.increment()
        if self._records_count:
            self._records_count.increment(len(documents))

        if not documents:
            logger.debug("No new document was received")
            return

        logger.debug("Received %d documents", len(documents))
        await self._results.put(
            QueryResult(documents=documents, meters=QueryMeters(len(documents), duration))
        )
        latest_document = documents[-1]
        self._latest_id = latest_document.get(DOCUMENT_ID_KEY)
        logger.debug("Latest received id: %s", self._latest_id)
        self._poll_statement.save_tie_breaker_value_for_next_poll(latest_document)

    @staticmethod
    def _elapsed(start: float) -> timedelta:
        return timedelta(seconds=time.perf_counter() - start)
