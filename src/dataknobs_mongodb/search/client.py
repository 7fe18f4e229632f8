"""Client executing one-shot search queries against MongoDB."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from datetime import timedelta
from typing import Any

from ..connection import ClientFactory, close_mongodb_client
from ..context import StepStartStopContext
from ..events import EventsLogger
from ..exceptions import QueryError
from ..meters import CounterMeter, MeterRegistry, TimerMeter
from ..records import QueryMeters, QueryResult, Sorting
from ..subscription import UNBOUNDED_DEMAND, FindPublisher, ResultSlot, Subscription

logger = logging.getLogger(__name__)


def to_sort_clause(sorting: Mapping[str, Sorting] | Sequence[tuple[str, int]]) -> list[tuple[str, int]]:
    """Convert an ordered sort mapping into the driver's list of pairs."""
    if isinstance(sorting, Mapping):
        return [(name, Sorting.parse(order).value) for name, order in sorting.items()]
    return [(name, Sorting.parse(order).value) for name, order in sorting]


class _SearchSubscriber:
    """Accumulates the documents of a search and resolves the slot once."""

    def __init__(
        self,
        client: MongoDbQueryClient,
        slot: ResultSlot[QueryResult],
        tags: dict[str, str],
        request_start: float,
    ) -> None:
        self.documents: list[dict[str, Any]] = []
        self._client = client
        self._slot = slot
        self._tags = tags
        self._request_start = request_start
        self._first = True

    def _elapsed(self) -> timedelta:
        return timedelta(seconds=time.perf_counter() - self._request_start)

    def on_subscribe(self, subscription: Subscription) -> None:
        subscription.request(UNBOUNDED_DEMAND)

    def on_next(self, document: dict[str, Any]) -> None:
        if self._first:
            self._first = False
            time_to_response = self._elapsed()
            if self._client.events_logger:
                self._client.events_logger.info(
                    f"{self._client.EVENT_PREFIX}.time-to-response", time_to_response, tags=self._tags
                )
            if self._client._time_to_response:
                self._client._time_to_response.record(time_to_response)
        self.documents.append(document)

    def on_error(self, error: BaseException) -> None:
        duration = self._elapsed()
        if self._client.events_logger:
            self._client.events_logger.warn(
                f"{self._client.EVENT_PREFIX}.failure", (error, duration), tags=self._tags
            )
        if self._client._failure_counter:
            self._client._failure_counter.increment()
        self._slot.set_error(error)

    def on_complete(self) -> None:
        duration = self._elapsed()
        if self._client.events_logger:
            self._client.events_logger.info(
                f"{self._client.EVENT_PREFIX}.success",
                (duration, len(self.documents)),
                tags=self._tags,
            )
        if self._client._success_counter:
            self._client._success_counter.increment()
        if self._client._records_count:
            self._client._records_count.increment(len(self.documents))
        self._slot.set_result(
            QueryResult(documents=self.documents, meters=QueryMeters(len(self.documents), duration))
        )


class MongoDbQueryClient:
    """Client to query MongoDB.

    The client is created at :meth:`start` and closed at :meth:`stop`; any
    number of :meth:`execute` calls can happen in between.

    Args:
        client_factory: Supplier of the MongoDB client
        events_logger: Sink of the events, None to disable them
        meter_registry: Registry of the meters, None to disable them
    """

    EVENT_PREFIX = "mongodb.search"
    METER_PREFIX = "mongodb-search"

    def __init__(
        self,
        client_factory: ClientFactory,
        events_logger: EventsLogger | None = None,
        meter_registry: MeterRegistry | None = None,
    ) -> None:
        self._client_factory = client_factory
        self.events_logger = events_logger
        self._meter_registry = meter_registry
        self._client: Any = None

        self._records_count: CounterMeter | None = None
        self._time_to_response: TimerMeter | None = None
        self._success_counter: CounterMeter | None = None
        self._failure_counter: CounterMeter | None = None

    async def start(self, context: StepStartStopContext) -> None:
        self._client = self._client_factory()
        if self._meter_registry:
            tags = context.to_meters_tags()
            self._records_count = self._meter_registry.counter(
                f"{self.METER_PREFIX}-received-records", tags
            )
            self._time_to_response = self._meter_registry.timer(
                f"{self.METER_PREFIX}-time-to-response", tags
            )
            self._success_counter = self._meter_registry.counter(f"{self.METER_PREFIX}-success", tags)
            self._failure_counter = self._meter_registry.counter(f"{self.METER_PREFIX}-failure", tags)

    async def execute(
        self,
        database: str,
        collection: str,
        filter: Mapping[str, Any],
        sorting: Mapping[str, Sorting] | Sequence[tuple[str, int]],
        tags: dict[str, str] | None = None,
    ) -> QueryResult:
        """Execute a query and return all the matching documents.

        Raises:
            QueryError: If the query failed
        """
        if self._client is None:
            raise QueryError(database, collection, "the client is not started")
        tags = tags or {}
        slot: ResultSlot[QueryResult] = ResultSlot()

        if self.events_logger:
            self.events_logger.debug(f"{self.EVENT_PREFIX}.searching", tags=tags)
        subscriber = _SearchSubscriber(self, slot, tags, time.perf_counter())
        publisher = FindPublisher(
            self._client[database][collection], dict(filter), to_sort_clause(sorting)
        )
        task = publisher.subscribe(subscriber)
        try:
            return await slot.get()
        except Exception as e:
            raise QueryError(database, collection, str(e)) from e
        finally:
            if not task.done():
                task.cancel()

    async def stop(self, context: StepStartStopContext) -> None:
        if self._meter_registry:
            for meter in (
                self._records_count,
                self._time_to_response,
                self._success_counter,
                self._failure_counter,
            ):
                self._meter_registry.remove(meter)
        self._records_count = None
        self._time_to_response = None
        self._success_counter = None
        self._failure_counter = None
        try:
            await close_mongodb_client(self._client)
        except Exception:
            logger.exception("Error while closing the MongoDB client")
        self._client = None
