"""Value objects exchanged between the MongoDB connectors and the pipeline."""

from __future__ import annotations

import threading
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Generic, TypeVar, Union

from bson import Decimal128, ObjectId, Timestamp

from .exceptions import ConfigurationError

I = TypeVar("I")

DocumentValue = Union[
    str,
    int,
    float,
    bool,
    Decimal,
    Decimal128,
    datetime,
    ObjectId,
    Timestamp,
    bytes,
    None,
    Mapping[str, Any],
    Sequence[Any],
]
"""Kinds of values a document field can hold once decoded from BSON."""

Document = Mapping[str, DocumentValue]

DOCUMENT_ID_KEY = "_id"


class Sorting(Enum):
    """Direction of a sort clause, with its MongoDB value."""

    ASC = 1
    DESC = -1

    @classmethod
    def parse(cls, value: Any) -> Sorting:
        """Parse a direction from its name or MongoDB value.

        Raises:
            ConfigurationError: If the value is not a known direction
        """
        if isinstance(value, Sorting):
            return value
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized in ("ASC", "ASCENDING"):
                return cls.ASC
            if normalized in ("DESC", "DESCENDING"):
                return cls.DESC
        elif isinstance(value, int) and not isinstance(value, bool) and value in (1, -1):
            return cls(value)
        raise ConfigurationError(f"Unknown sort direction: {value!r}", parameter="sort")


@dataclass(frozen=True)
class QueryMeters:
    """Meters of a performed query.

    Attributes:
        fetched_records: Count of received documents
        time_to_result: Time until the complete successful response
    """

    fetched_records: int
    time_to_result: timedelta


@dataclass(frozen=True)
class QueryResult:
    """Documents received by one query or one poll cycle, with its meters."""

    documents: list[dict[str, Any]]
    meters: QueryMeters


@dataclass(frozen=True)
class SaveOutcome:
    """Result of one bulk insert.

    ``failed_records`` can be positive while the call itself succeeded, when
    the database rejected part of the batch.
    """

    saved_records: int
    failed_records: int
    time_to_result: timedelta


@dataclass(frozen=True)
class MongoDbRecord:
    """Representation of a fetched MongoDB document.

    Attributes:
        value: Fields of the document
        id: Value of the ``_id`` field
        source: Origin of the document, as "<database>.<collection>"
        offset: Process-local sequence number assigned at conversion
        received_at: When the record was built
    """

    value: dict[str, Any]
    id: Any
    source: str
    offset: int
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_document(
        cls,
        offset: int,
        document: Mapping[str, Any],
        database: str,
        collection: str,
        id_field: str = DOCUMENT_ID_KEY,
    ) -> MongoDbRecord:
        return cls(
            value=dict(document),
            id=document.get(id_field),
            source=f"{database}.{collection}",
            offset=offset,
        )


@dataclass(frozen=True)
class PollResults:
    """Batch of records produced by one poll cycle."""

    records: list[MongoDbRecord]
    meters: QueryMeters

    def __iter__(self) -> Iterator[MongoDbRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class SearchResult(Generic[I]):
    """Raw documents returned by a search, with the input that triggered it."""

    input: I
    documents: list[dict[str, Any]]
    meters: QueryMeters


@dataclass(frozen=True)
class SearchResults(Generic[I]):
    """Converted records returned by a search, with the input that triggered it."""

    input: I
    records: list[MongoDbRecord]
    meters: QueryMeters

    def __iter__(self) -> Iterator[MongoDbRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class SaveResult(Generic[I]):
    """Outcome of a save step for one input."""

    input: I
    meters: SaveOutcome


class OffsetCounter:
    """Thread-safe monotonic counter assigning record offsets.

    One counter is shared by all the conversions of a step, so offsets keep
    increasing across batches.
    """

    def __init__(self, initial: int = 0) -> None:
        self._value = initial
        self._lock = threading.Lock()

    def get_and_increment(self) -> int:
        with self._lock:
            current = self._value
            self._value += 1
            return current

    @property
    def value(self) -> int:
        with self._lock:
            return self._value
