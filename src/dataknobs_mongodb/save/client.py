"""Client inserting batches of documents into MongoDB."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import timedelta
from typing import Any

from ..config import DEFAULT_CHUNK_SIZE
from ..connection import ClientFactory, close_mongodb_client
from ..context import StepStartStopContext
from ..events import EventsLogger
from ..exceptions import ConfigurationError, SaveError
from ..meters import CounterMeter, MeterRegistry, TimerMeter
from ..records import SaveOutcome
from ..subscription import (
    UNBOUNDED_DEMAND,
    InsertAck,
    InsertManyPublisher,
    ResultSlot,
    Subscription,
)

logger = logging.getLogger(__name__)


class _SaveSubscriber:
    """Counts the acknowledged documents of a bulk insert."""

    def __init__(
        self,
        client: MongoDbSaveQueryClient,
        slot: ResultSlot[SaveOutcome],
        requested: int,
        tags: dict[str, str],
        request_start: float,
    ) -> None:
        self.saved = 0
        self._client = client
        self._slot = slot
        self._requested = requested
        self._tags = tags
        self._request_start = request_start
        self._first = True

    def _elapsed(self) -> timedelta:
        return timedelta(seconds=time.perf_counter() - self._request_start)

    def on_subscribe(self, subscription: Subscription) -> None:
        subscription.request(UNBOUNDED_DEMAND)

    def on_next(self, ack: InsertAck) -> None:
        client = self._client
        if self._first:
            self._first = False
            time_to_response = self._elapsed()
            if client.events_logger:
                client.events_logger.info(
                    f"{client.EVENT_PREFIX}.time-to-response", time_to_response, tags=self._tags
                )
            if client._time_to_response:
                client._time_to_response.record(time_to_response)
        self.saved += ack.inserted_count

    def on_error(self, error: BaseException) -> None:
        client = self._client
        duration = self._elapsed()
        if client.events_logger:
            client.events_logger.warn(f"{client.EVENT_PREFIX}.failure", (error, duration), tags=self._tags)
        if client._failure_counter:
            client._failure_counter.increment(self._requested)
        self._slot.set_error(error)

    def on_complete(self) -> None:
        client = self._client
        duration = self._elapsed()
        if client.events_logger:
            client.events_logger.info(
                f"{client.EVENT_PREFIX}.saved-records", (duration, self.saved), tags=self._tags
            )
        failed = self._requested - self.saved
        if client._records_counter:
            client._records_counter.increment(self.saved)
        if client._success_counter:
            client._success_counter.increment()
        if failed > 0:
            if client._failure_counter:
                client._failure_counter.increment(failed)
            if client.events_logger:
                client.events_logger.warn(f"{client.EVENT_PREFIX}.failed-records", failed, tags=self._tags)
        self._slot.set_result(SaveOutcome(self.saved, failed, duration))


class MongoDbSaveQueryClient:
    """Client to insert documents into MongoDB.

    A batch is inserted with one bulk operation, sent in chunks of
    ``chunk_size`` documents. Documents rejected by the server are reported in
    the outcome without raising; only a failure of the call itself raises.

    Args:
        client_factory: Supplier of the MongoDB client
        events_logger: Sink of the events, None to disable them
        meter_registry: Registry of the meters, None to disable them
        chunk_size: Maximal number of documents per insert command
        ordered: Whether the server stops at the first rejected document
    """

    EVENT_PREFIX = "mongodb.save"
    METER_PREFIX = "mongodb-save"

    def __init__(
        self,
        client_factory: ClientFactory,
        events_logger: EventsLogger | None = None,
        meter_registry: MeterRegistry | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        ordered: bool = False,
    ) -> None:
        if chunk_size <= 0:
            raise ConfigurationError("chunk_size must be positive", parameter="chunk_size")
        self._client_factory = client_factory
        self.events_logger = events_logger
        self._meter_registry = meter_registry
        self._chunk_size = chunk_size
        self._ordered = ordered
        self._client: Any = None

        self._records_counter: CounterMeter | None = None
        self._time_to_response: TimerMeter | None = None
        self._success_counter: CounterMeter | None = None
        self._failure_counter: CounterMeter | None = None

    async def start(self, context: StepStartStopContext) -> None:
        self._client = self._client_factory()
        if self._meter_registry:
            tags = context.to_meters_tags()
            self._records_counter = self._meter_registry.counter(
                f"{self.METER_PREFIX}-saving-records", tags
            )
            self._time_to_response = self._meter_registry.timer(
                f"{self.METER_PREFIX}-time-to-response", tags
            )
            self._success_counter = self._meter_registry.counter(f"{self.METER_PREFIX}-successes", tags)
            self._failure_counter = self._meter_registry.counter(f"{self.METER_PREFIX}-failures", tags)

    async def execute(
        self,
        database: str,
        collection: str,
        documents: Sequence[dict[str, Any]],
        tags: dict[str, str] | None = None,
    ) -> SaveOutcome:
        """Insert the documents and count the saved and failed ones.

        Raises:
            SaveError: If the insert call failed; the whole batch is then
                considered as failed
        """
        if self._client is None:
            raise SaveError(database, collection, len(documents), "the client is not started")
        tags = tags or {}
        if not documents:
            return SaveOutcome(0, 0, timedelta())

        slot: ResultSlot[SaveOutcome] = ResultSlot()
        if self.events_logger:
            self.events_logger.debug(f"{self.EVENT_PREFIX}.saving-records", len(documents), tags=tags)
        subscriber = _SaveSubscriber(self, slot, len(documents), tags, time.perf_counter())
        publisher = InsertManyPublisher(
            self._client[database][collection], documents, self._chunk_size, self._ordered
        )
        task = publisher.subscribe(subscriber)
        try:
            return await slot.get()
        except Exception as e:
            raise SaveError(database, collection, len(documents), str(e)) from e
        finally:
            if not task.done():
                task.cancel()

    async def stop(self, context: StepStartStopContext) -> None:
        if self._meter_registry:
            for meter in (
                self._records_counter,
                self._time_to_response,
                self._success_counter,
                self._failure_counter,
            ):
                self._meter_registry.remove(meter)
        self._records_counter = None
        self._time_to_response = None
        self._success_counter = None
        self._failure_counter = None
        try:
            await close_mongodb_client(self._client)
        except Exception:
            logger.exception("Error while closing the MongoDB client")
        self._client = None
