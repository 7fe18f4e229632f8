"""Configuration of the MongoDB poll, search and save steps.

Configurations are plain dataclasses validated at construction. They can be
built directly, or from dictionaries loaded with :func:`load_config`, which
reads YAML or JSON files and substitutes environment variables.

Example:
    ```yaml
    # poll.yaml
    name: poll-moves
    connection:
      uri: ${MONGODB_URI:mongodb://localhost:27017}
    search:
      database: the-db
      collection: moves
      query: {action: IN}
      sort: {timestamp: ASC}
      tie_breaker: timestamp
    poll_delay: 1.0
    flatten: true
    ```

    ```python
    from dataknobs_mongodb.config import PollConfig, load_config

    config = PollConfig.from_dict(load_config("poll.yaml"))
    ```
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import yaml

from .connection import MongoConnectionConfig
from .exceptions import ConfigurationError
from .records import Sorting

DEFAULT_POLL_DELAY_SECONDS = 10.0
DEFAULT_CHUNK_SIZE = 1000


class VariableSubstitution:
    """Handles environment variable substitution in configuration values.

    Supports patterns:
    - ${VAR} - Replace with environment variable VAR, error if not found
    - ${VAR:default} - Replace with VAR or use default if not found
    - ${VAR:-default} - Same as above (bash-style)
    """

    VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::(-)?([^}]*))?\}")

    def substitute(self, value: Any) -> Any:
        """Recursively substitute environment variables in a value.

        Raises:
            ConfigurationError: If a required environment variable is not found
        """
        if isinstance(value, str):
            return self._substitute_string(value)
        elif isinstance(value, dict):
            return {key: self.substitute(item) for key, item in value.items()}
        elif isinstance(value, list):
            return [self.substitute(item) for item in value]
        else:
            return value

    def _resolve(self, match: re.Match) -> str:
        var_name = match.group(1)
        has_default = match.group(2) is not None or match.group(3) is not None
        if var_name in os.environ:
            return os.environ[var_name]
        if has_default:
            return match.group(3) or ""
        raise ConfigurationError(f"Environment variable '{var_name}' not found", parameter=var_name)

    def _substitute_string(self, text: str) -> Any:
        # A string made of a single variable can become a non-string value
        match = self.VAR_PATTERN.fullmatch(text)
        if match:
            return self._convert_type(self._resolve(match))
        return self.VAR_PATTERN.sub(self._resolve, text)

    @staticmethod
    def _convert_type(value: str) -> Union[str, int, float, bool]:
        lowered = value.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError:
            return value


def load_config(source: Union[str, Path, dict]) -> dict[str, Any]:
    """Load a configuration dictionary and substitute environment variables.

    Args:
        source: Path to a YAML or JSON file, or a dictionary

    Returns:
        The configuration dictionary
    """
    if isinstance(source, dict):
        data = source
    else:
        path = Path(source)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}", parameter=str(path))
        with open(path) as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            elif path.suffix == ".json":
                data = json.load(f)
            else:
                raise ConfigurationError(
                    f"Unsupported configuration format: {path.suffix}", parameter=str(path)
                )
    if not isinstance(data, dict):
        raise ConfigurationError("The configuration must be a mapping")
    return VariableSubstitution().substitute(data)


def parse_sort(sort: Any) -> dict[str, Sorting]:
    """Build an ordered sort clause from a mapping or a list of pairs."""
    if sort is None:
        return {}
    items = sort.items() if isinstance(sort, dict) else sort
    try:
        return {str(name): Sorting.parse(direction) for name, direction in items}
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid sort clause {sort!r}: {e}", parameter="sort") from e


@dataclass
class MonitoringConfig:
    """Enables the events and the meters of a step."""

    events: bool = False
    meters: bool = False

    @classmethod
    def from_dict(cls, config: dict | None) -> MonitoringConfig:
        config = config or {}
        return cls(events=bool(config.get("events", False)), meters=bool(config.get("meters", False)))


@dataclass
class SearchConfig:
    """Query executed at each poll.

    Attributes:
        database: Name of the database
        collection: Name of the collection
        query: Filter document of the first poll
        sort: Ordered sort clause; its first field must be the tie-breaker
        tie_breaker: Field whose last polled value limits the next poll. Only
            the documents having a tie-breaker greater (or less when sorted
            descending) than or equal to the last polled value are fetched.
    """

    database: str
    collection: str
    query: dict[str, Any] = field(default_factory=dict)
    sort: dict[str, Sorting] = field(default_factory=dict)
    tie_breaker: str = ""

    def __post_init__(self):
        """Validate configuration."""
        if not self.database:
            raise ConfigurationError("The database must not be blank", parameter="database")
        if not self.collection:
            raise ConfigurationError("The collection must not be blank", parameter="collection")
        if not self.tie_breaker:
            raise ConfigurationError("The tie-breaker must not be blank", parameter="tie_breaker")
        self.sort = parse_sort(self.sort)

    @classmethod
    def from_dict(cls, config: dict) -> SearchConfig:
        return cls(
            database=config.get("database", ""),
            collection=config.get("collection", ""),
            query=dict(config.get("query") or {}),
            sort=parse_sort(config.get("sort")),
            tie_breaker=config.get("tie_breaker", ""),
        )


@dataclass
class PollConfig:
    """Configuration of a poll step."""

    search: SearchConfig
    name: str = "mongodb-poll"
    connection: MongoConnectionConfig = field(default_factory=MongoConnectionConfig)
    poll_delay: float = DEFAULT_POLL_DELAY_SECONDS
    flatten: bool = False
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def __post_init__(self):
        """Validate configuration."""
        if self.poll_delay <= 0:
            raise ConfigurationError("poll_delay must be positive", parameter="poll_delay")

    @classmethod
    def from_dict(cls, config: dict) -> PollConfig:
        if "search" not in config:
            raise ConfigurationError("The poll configuration has no search", parameter="search")
        return cls(
            search=SearchConfig.from_dict(config["search"]),
            name=config.get("name", "mongodb-poll"),
            connection=MongoConnectionConfig.from_dict(config.get("connection") or {}),
            poll_delay=float(config.get("poll_delay", DEFAULT_POLL_DELAY_SECONDS)),
            flatten=bool(config.get("flatten", False)),
            monitoring=MonitoringConfig.from_dict(config.get("monitoring")),
        )


@dataclass
class SaveConfig:
    """Configuration of a save step."""

    name: str = "mongodb-save"
    connection: MongoConnectionConfig = field(default_factory=MongoConnectionConfig)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    ordered: bool = False
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def __post_init__(self):
        """Validate configuration."""
        if self.chunk_size <= 0:
            raise ConfigurationError("chunk_size must be positive", parameter="chunk_size")

    @classmethod
    def from_dict(cls, config: dict) -> SaveConfig:
        return cls(
            name=config.get("name", "mongodb-save"),
            connection=MongoConnectionConfig.from_dict(config.get("connection") or {}),
            chunk_size=int(config.get("chunk_size", DEFAULT_CHUNK_SIZE)),
            ordered=bool(config.get("ordered", False)),
            monitoring=MonitoringConfig.from_dict(config.get("monitoring")),
        )
