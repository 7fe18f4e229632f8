"""Exception hierarchy for the dataknobs_mongodb package.

All errors raised by the connectors derive from :class:`DataknobsMongoError`,
which carries an optional context dictionary with details about the failure.

Example:
    ```python
    from dataknobs_mongodb.exceptions import DataknobsMongoError, QueryError

    try:
        result = await client.execute("db", "coll", {"x": 1}, [], tags={})
    except QueryError as e:
        logger.error(f"Search failed: {e}")
        logger.error(f"Context: {e.context}")
    ```
"""

from __future__ import annotations

from typing import Any, Dict


class DataknobsMongoError(Exception):
    """Base exception for the MongoDB connectors.

    Attributes:
        context: Dictionary containing contextual information about the error
        details: Alias for context
    """

    def __init__(
        self,
        message: str,
        context: Dict[str, Any] | None = None,
        details: Dict[str, Any] | None = None,
    ):
        super().__init__(message)
        # Details takes precedence if both are provided
        self.context = details or context or {}
        self.details = self.context


class ConfigurationError(DataknobsMongoError):
    """Raised when configuration is invalid.

    Configuration errors are programmer errors: they are raised synchronously
    while building statements, readers or clients, before anything runs.
    """

    def __init__(self, message: str, parameter: str | None = None):
        self.parameter = parameter
        super().__init__(message, context={"parameter": parameter} if parameter else None)


class ResourceError(DataknobsMongoError):
    """Raised when acquiring or releasing a resource fails."""

    pass


class DatabaseConnectionError(ResourceError):
    """Raised when the MongoDB client cannot be created."""

    def __init__(self, uri: str, message: str):
        self.uri = uri
        super().__init__(f"Failed to connect to MongoDB at {uri}: {message}", context={"uri": uri})


class OperationError(DataknobsMongoError):
    """Raised when an operation fails."""

    pass


class QueryError(OperationError):
    """Raised when a one-shot search query fails."""

    def __init__(self, database: str, collection: str, message: str):
        self.database = database
        self.collection = collection
        super().__init__(
            f"Query on '{database}.{collection}' failed: {message}",
            context={"database": database, "collection": collection},
        )


class SaveError(OperationError):
    """Raised when a bulk insert call fails as a whole.

    Partial failures of a bulk insert are not errors: they are reported through
    the ``failed_records`` of the returned outcome.
    """

    def __init__(self, database: str, collection: str, failed_count: int, message: str):
        self.database = database
        self.collection = collection
        self.failed_count = failed_count
        super().__init__(
            f"Saving {failed_count} document(s) into '{database}.{collection}' failed: {message}",
            context={
                "database": database,
                "collection": collection,
                "failed_count": failed_count,
            },
        )


class ConcurrencyError(DataknobsMongoError):
    """Raised when a concurrency invariant is violated."""

    def __init__(self, message: str):
        super().__init__(f"Concurrency error: {message}")


class ReaderStateError(OperationError):
    """Raised when a reader is used in a state that does not allow it."""

    pass


class ReaderClosedError(OperationError):
    """Raised when pulling from a reader whose results queue is closed."""

    def __init__(self, message: str = "The reader is closed"):
        super().__init__(message)
