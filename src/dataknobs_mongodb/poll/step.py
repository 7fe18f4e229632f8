"""Poll step: a reader feeding a converter with the polled documents."""

from __future__ import annotations

import logging

from ..config import PollConfig
from ..connection import ClientFactory
from ..context import StepStartStopContext
from ..converters import DatasourceObjectConverter, build_poll_converter
from ..events import EventsLogger
from ..exceptions import ReaderClosedError
from ..meters import MeterRegistry
from ..output import StepOutput
from ..records import OffsetCounter, QueryResult
from .reader import MongoDbIterativeReader
from .statement import MongoDbPollStatement

logger = logging.getLogger(__name__)


class IterativeDatasourceStep:
    """Step pulling the results of a reader and converting them downstream.

    The offset counter belongs to the step and survives restarts, so record
    offsets keep increasing for the whole life of the step.
    """

    def __init__(
        self,
        name: str,
        reader: MongoDbIterativeReader,
        converter: DatasourceObjectConverter[QueryResult],
        offset: OffsetCounter | None = None,
    ) -> None:
        self.name = name
        self.reader = reader
        self.converter = converter
        self.offset = offset or OffsetCounter()

    async def start(self, context: StepStartStopContext) -> None:
        await self.reader.start(context)

    async def run(self, output: StepOutput) -> None:
        """Forward the results until the reader is stopped."""
        while await self.reader.has_next():
            try:
                value = await self.reader.next()
            except ReaderClosedError:
                logger.debug("The reader of the step %s is closed", self.name)
                break
            await self.converter.supply(self.offset, value, output)

    async def stop(self, context: StepStartStopContext) -> None:
        await self.reader.stop(context)


def build_poll_statement(config: PollConfig) -> MongoDbPollStatement:
    search = config.search
    return MongoDbPollStatement(
        database=search.database,
        collection=search.collection,
        find_clause=search.query,
        sort_clause=search.sort,
        tie_breaker=search.tie_breaker,
    )


def build_poll_step(
    config: PollConfig,
    events_logger: EventsLogger | None = None,
    meter_registry: MeterRegistry | None = None,
    client_factory: ClientFactory | None = None,
) -> IterativeDatasourceStep:
    """Build a poll step from its configuration.

    The events logger and the meter registry are only used when enabled by
    the monitoring configuration.

    Raises:
        ConfigurationError: If the search configuration is not valid for polling
    """
    statement = build_poll_statement(config)
    reader = MongoDbIterativeReader(
        client_factory=client_factory or config.connection.client_factory(),
        poll_statement=statement,
        poll_delay=config.poll_delay,
        events_logger=events_logger if config.monitoring.events else None,
        meter_registry=meter_registry if config.monitoring.meters else None,
    )
    converter = build_poll_converter(
        config.search.database, config.search.collection, config.flatten
    )
    return IterativeDatasourceStep(config.name, reader, converter)
