"""MongoDB client configuration and lifecycle helpers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pymongo import AsyncMongoClient
from pymongo.errors import ConfigurationError as PyMongoConfigurationError
from pymongo.errors import InvalidURI

from .exceptions import DatabaseConnectionError

logger = logging.getLogger(__name__)

DEFAULT_URI = "mongodb://localhost:27017"

ClientFactory = Callable[[], Any]
"""Zero-argument callable returning a fresh async MongoDB client."""


@dataclass
class MongoConnectionConfig:
    """Configuration of the MongoDB client."""

    uri: str = DEFAULT_URI
    app_name: str | None = None
    server_selection_timeout_ms: int | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def to_connection_string(self) -> str:
        return self.uri

    def to_hash_key(self) -> tuple:
        """Create a hashable key for this configuration."""
        return (self.uri, self.app_name, tuple(sorted(self.options.items())))

    def client_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = dict(self.options)
        if self.app_name:
            kwargs["appname"] = self.app_name
        if self.server_selection_timeout_ms is not None:
            kwargs["serverSelectionTimeoutMS"] = self.server_selection_timeout_ms
        return kwargs

    def client_factory(self) -> ClientFactory:
        """Return a factory creating a new client at each call."""
        return lambda: create_mongodb_client(self)

    @classmethod
    def from_dict(cls, config: dict) -> MongoConnectionConfig:
        """Create from configuration dictionary.

        Supports either a full ``uri`` or ``host``/``port`` entries.
        """
        if "uri" in config:
            uri = config["uri"]
        elif "host" in config:
            host = config["host"]
            port = config.get("port", 27017)
            uri = host if host.startswith("mongodb") else f"mongodb://{host}:{port}"
        else:
            uri = DEFAULT_URI

        return cls(
            uri=uri,
            app_name=config.get("app_name"),
            server_selection_timeout_ms=config.get("server_selection_timeout_ms"),
            options=dict(config.get("options", {})),
        )


def create_mongodb_client(config: MongoConnectionConfig) -> AsyncMongoClient:
    """Create an async MongoDB client.

    The client connects lazily, at its first operation.

    Raises:
        DatabaseConnectionError: If the URI or the options are invalid
    """
    try:
        return AsyncMongoClient(config.to_connection_string(), **config.client_kwargs())
    except (InvalidURI, PyMongoConfigurationError) as e:
        raise DatabaseConnectionError(config.uri, str(e)) from e


async def close_mongodb_client(client: Any) -> None:
    """Close a client, whether its ``close`` is a coroutine or not."""
    if client is None:
        return
    result = client.close()
    if asyncio.iscoroutine(result):
        await result
