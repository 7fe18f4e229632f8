"""Save step: one bulk insert per input."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Generic, TypeVar

from ..config import SaveConfig
from ..connection import ClientFactory
from ..context import StepStartStopContext
from ..events import EventsLogger
from ..meters import MeterRegistry
from ..output import StepOutput
from ..records import SaveResult
from ..steps import InputFunction, resolve_input
from .client import MongoDbSaveQueryClient

I = TypeVar("I")


class MongoDbSaveStep(Generic[I]):
    """Step inserting documents built from each received input.

    Args:
        name: Name of the step
        save_client: Client executing the inserts
        database: Function of the input returning the database name
        collection: Function of the input returning the collection name
        documents: Function of the input returning the documents to insert
    """

    def __init__(
        self,
        name: str,
        save_client: MongoDbSaveQueryClient,
        database: InputFunction[I, str],
        collection: InputFunction[I, str],
        documents: InputFunction[I, Sequence[dict[str, Any]]],
    ) -> None:
        self.name = name
        self.save_client = save_client
        self._database = database
        self._collection = collection
        self._documents = documents

    async def start(self, context: StepStartStopContext) -> None:
        await self.save_client.start(context)

    async def execute(
        self, input: I, output: StepOutput, tags: dict[str, str] | None = None
    ) -> None:
        database = await resolve_input(self._database, input)
        collection = await resolve_input(self._collection, input)
        documents = await resolve_input(self._documents, input)

        meters = await self.save_client.execute(database, collection, documents, tags)
        await output.send(SaveResult(input=input, meters=meters))

    async def stop(self, context: StepStartStopContext) -> None:
        await self.save_client.stop(context)


def build_save_client(
    config: SaveConfig,
    events_logger: EventsLogger | None = None,
    meter_registry: MeterRegistry | None = None,
    client_factory: ClientFactory | None = None,
) -> MongoDbSaveQueryClient:
    """Build a save client from its configuration, honouring the monitoring flags."""
    return MongoDbSaveQueryClient(
        client_factory=client_factory or config.connection.client_factory(),
        events_logger=events_logger if config.monitoring.events else None,
        meter_registry=meter_registry if config.monitoring.meters else None,
        chunk_size=config.chunk_size,
        ordered=config.ordered,
    )
