"""Converters turning MongoDB documents into records sent downstream.

Each converter implements ``supply(offset, value, output)``. Batch converters
send one aggregate per query, single converters send every record on its own.
A failing conversion is logged and its batch dropped, the pipeline goes on.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol, TypeVar

from .output import StepOutput
from .records import (
    MongoDbRecord,
    OffsetCounter,
    PollResults,
    QueryResult,
    SearchResult,
    SearchResults,
)

logger = logging.getLogger(__name__)

V = TypeVar("V", contravariant=True)


def convert_documents(
    offset: OffsetCounter,
    documents: Iterable[Mapping[str, Any]],
    database: str,
    collection: str,
) -> list[MongoDbRecord]:
    """Convert documents into records with increasing offsets."""
    return [
        MongoDbRecord.from_document(
            offset=offset.get_and_increment(),
            document=document,
            database=database,
            collection=collection,
        )
        for document in documents
    ]


class DatasourceObjectConverter(Protocol[V]):
    async def supply(self, offset: OffsetCounter, value: V, output: StepOutput) -> None: ...


class PollBatchConverter:
    """Forwards the documents of a poll as one :class:`PollResults`."""

    def __init__(self, database: str, collection: str) -> None:
        self.database = database
        self.collection = collection

    async def supply(self, offset: OffsetCounter, value: QueryResult, output: StepOutput) -> None:
        try:
            records = convert_documents(offset, value.documents, self.database, self.collection)
        except Exception:
            logger.exception("Failed to convert a batch of %d documents", len(value.documents))
            return
        await output.send(PollResults(records=records, meters=value.meters))


class PollSingleConverter:
    """Forwards each document of a poll as a :class:`MongoDbRecord`."""

    def __init__(self, database: str, collection: str) -> None:
        self.database = database
        self.collection = collection

    async def supply(self, offset: OffsetCounter, value: QueryResult, output: StepOutput) -> None:
        try:
            records = convert_documents(offset, value.documents, self.database, self.collection)
        except Exception:
            logger.exception("Failed to convert a batch of %d documents", len(value.documents))
            return
        for record in records:
            await output.send(record)


class SearchBatchConverter:
    """Forwards the documents of a search as one :class:`SearchResults`."""

    def __init__(self, database: str, collection: str) -> None:
        self.database = database
        self.collection = collection

    async def supply(self, offset: OffsetCounter, value: SearchResult, output: StepOutput) -> None:
        try:
            records = convert_documents(offset, value.documents, self.database, self.collection)
        except Exception:
            logger.exception("Failed to convert the results of a search")
            return
        await output.send(SearchResults(input=value.input, records=records, meters=value.meters))


class SearchSingleConverter:
    """Forwards each document of a search as a :class:`MongoDbRecord`."""

    def __init__(self, database: str, collection: str) -> None:
        self.database = database
        self.collection = collection

    async def supply(self, offset: OffsetCounter, value: SearchResult, output: StepOutput) -> None:
        try:
            records = convert_documents(offset, value.documents, self.database, self.collection)
        except Exception:
            logger.exception("Failed to convert the results of a search")
            return
        for record in records:
            await output.send(record)


def build_poll_converter(
    database: str, collection: str, flatten: bool
) -> PollBatchConverter | PollSingleConverter:
    if flatten:
        return PollSingleConverter(database, collection)
    return PollBatchConverter(database, collection)
