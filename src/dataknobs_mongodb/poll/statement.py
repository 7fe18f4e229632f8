"""Statements building the query of each poll from the last polled value."""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from ..exceptions import ConfigurationError
from ..records import Sorting

_UNSET = object()


class PollStatement(ABC):
    """Statement for polling, modified internally when a tie-breaker is set."""

    @property
    @abstractmethod
    def filter(self) -> dict[str, Any]:
        """Find clause of the next poll."""

    @property
    @abstractmethod
    def sorting(self) -> list[tuple[str, int]]:
        """Sort clause of the polls."""

    @abstractmethod
    def save_tie_breaker_value_for_next_poll(self, document: Mapping[str, Any]) -> None:
        """Save the tie-breaker of the last polled document, to compose the next query."""

    @abstractmethod
    def reset(self) -> None:
        """Reset the statement to start a new poll sequence from scratch."""


class MongoDbPollStatement(PollStatement):
    """MongoDB statement for polling.

    The first poll uses the find clause as provided. Each following poll
    restricts the tie-breaker to values at or after (before when sorted
    descending) the tie-breaker of the last polled document. The boundary is
    inclusive: the reader discards the document it already received.

    Args:
        database: Name of the database
        collection: Name of the collection
        find_clause: Find clause of the first poll
        sort_clause: Ordered mapping of field names to sort directions
        tie_breaker: Name of the field limiting the next polls; it must be the
            first sorted field

    Raises:
        ConfigurationError: If the sort clause is empty, or does not start
            with the tie-breaker
    """

    def __init__(
        self,
        database: str,
        collection: str,
        find_clause: Mapping[str, Any],
        sort_clause: Mapping[str, Sorting],
        tie_breaker: str,
    ) -> None:
        if not sort_clause:
            raise ConfigurationError("The provided query has no sort clause", parameter="sort")
        if next(iter(sort_clause)) != tie_breaker:
            raise ConfigurationError(
                "The tie-breaker should be set as the first sorting column", parameter="tie_breaker"
            )

        self.database = database
        self.collection = collection
        self.tie_breaker = tie_breaker
        self._find_clause = copy.deepcopy(dict(find_clause))
        self._sort_clause = {name: Sorting.parse(order) for name, order in sort_clause.items()}
        self._sorting = [(name, order.value) for name, order in self._sort_clause.items()]
        self._tie_breaker_value: Any = _UNSET
        self._lock = threading.Lock()

    @property
    def tie_breaker_value(self) -> Any:
        """Last saved tie-breaker value, or None before the first one."""
        with self._lock:
            return None if self._tie_breaker_value is _UNSET else self._tie_breaker_value

    @property
    def has_tie_breaker_value(self) -> bool:
        with self._lock:
            return self._tie_breaker_value is not _UNSET

    @property
    def filter(self) -> dict[str, Any]:
        with self._lock:
            value = self._tie_breaker_value
        result = copy.deepcopy(self._find_clause)
        if value is _UNSET:
            return result

        operator = "$gte" if self._sort_clause[self.tie_breaker] is Sorting.ASC else "$lte"
        bound = {self.tie_breaker: {operator: value}}
        if self.tie_breaker in result:
            return {"$and": [result, bound]}
        result.update(bound)
        return result

    @property
    def sorting(self) -> list[tuple[str, int]]:
        return list(self._sorting)

    def save_tie_breaker_value_for_next_poll(self, document: Mapping[str, Any]) -> None:
        with self._lock:
            self._tie_breaker_value = document.get(self.tie_breaker)

    def reset(self) -> None:
        with self._lock:
            self._tie_breaker_value = _UNSET
