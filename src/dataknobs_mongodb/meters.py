"""Meters of the MongoDB connectors, backed by prometheus_client.

A :class:`MeterRegistry` hands out counters and timers identified by a name
and the tags of the step that owns them. Tags become Prometheus labels, so two
steps sharing a registry get distinct series of the same metric, whatever
extra tags each of them carries. Components
create their meters when they start and remove them when they stop.

Example:
    ```python
    from prometheus_client import CollectorRegistry
    from dataknobs_mongodb.meters import MeterRegistry

    registry = MeterRegistry(CollectorRegistry())
    counter = registry.counter("mongodb-poll-successes", {"step": "poll-in"})
    counter.increment()
    assert counter.count == 1.0
    registry.remove(counter)
    ```
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import timedelta
from typing import Union

from prometheus_client import CollectorRegistry, Counter, Histogram

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")

STEP_TAG_KEYS = ("campaign", "scenario", "step")
EXTRA_TAGS_LABEL = "tags"
LABEL_NAMES = (*STEP_TAG_KEYS, EXTRA_TAGS_LABEL)

Family = Union[Counter, Histogram]


def to_metric_name(name: str) -> str:
    """Convert a dotted or dashed meter name into a valid Prometheus name."""
    sanitized = _INVALID_NAME_CHARS.sub("_", name)
    if sanitized and sanitized[0].isdigit():
        sanitized = f"_{sanitized}"
    return sanitized


class Meter:
    """A labelled child of a metric family."""

    def __init__(
        self,
        registry: MeterRegistry,
        name: str,
        family: Family,
        tags: dict[str, str],
    ) -> None:
        self.name = name
        self.tags = dict(tags)
        self.labels = registry.labels(self.tags)
        self._registry = registry
        self._family = family
        self._label_values = tuple(self.labels[key] for key in LABEL_NAMES)
        self._child = family.labels(*self._label_values)

    @property
    def metric_name(self) -> str:
        return to_metric_name(self.name)

    def _sample(self, suffix: str) -> float:
        value = self._registry.collector_registry.get_sample_value(
            f"{self.metric_name}{suffix}", self.labels
        )
        return value or 0.0


class CounterMeter(Meter):
    """Monotonic counter."""

    def increment(self, amount: float = 1.0) -> None:
        if amount > 0:
            self._child.inc(amount)

    @property
    def count(self) -> float:
        return self._sample("_total")


class TimerMeter(Meter):
    """Latency timer recording durations in seconds."""

    def record(self, duration: timedelta | float) -> None:
        seconds = duration.total_seconds() if isinstance(duration, timedelta) else duration
        self._child.observe(max(seconds, 0.0))

    @property
    def count(self) -> float:
        return self._sample("_count")

    @property
    def total_time(self) -> float:
        return self._sample("_sum")


class MeterRegistry:
    """Creates and removes the meters of the connectors.

    Every family carries the same labels: the step identity tags
    (:data:`STEP_TAG_KEYS`) plus :data:`EXTRA_TAGS_LABEL`, holding any other
    tag as sorted ``key=value`` pairs. Steps with different extra tags can then
    share a registry, and removing a meter only removes its own series.

    Args:
        collector_registry: Prometheus registry to register the metric
            families into. A private registry is created when omitted.
    """

    def __init__(self, collector_registry: CollectorRegistry | None = None) -> None:
        self.collector_registry = collector_registry or CollectorRegistry()
        self._families: dict[str, Family] = {}
        self._lock = threading.Lock()

    @staticmethod
    def labels(tags: dict[str, str] | None) -> dict[str, str]:
        """Return the Prometheus labels of the series identified by the tags."""
        tags = tags or {}
        labels = {key: str(tags.get(key, "")) for key in STEP_TAG_KEYS}
        extra = sorted((key, value) for key, value in tags.items() if key not in STEP_TAG_KEYS)
        labels[EXTRA_TAGS_LABEL] = ",".join(f"{key}={value}" for key, value in extra)
        return labels

    def counter(self, name: str, tags: dict[str, str] | None = None) -> CounterMeter:
        family = self._family(Counter, name)
        return CounterMeter(self, name, family, tags or {})

    def timer(self, name: str, tags: dict[str, str] | None = None) -> TimerMeter:
        family = self._family(Histogram, name)
        return TimerMeter(self, name, family, tags or {})

    def remove(self, meter: Meter | None) -> None:
        """Remove the series of a meter, leaving the other series untouched."""
        if meter is None:
            return
        with self._lock:
            family = self._families.get(meter.name)
            if family is None:
                return
            try:
                family.remove(*meter._label_values)
            except KeyError:
                logger.debug("Meter %s with tags %s was already removed", meter.name, meter.tags)

    def _family(self, kind: type, name: str) -> Family:
        with self._lock:
            family = self._families.get(name)
            if family is not None:
                if not isinstance(family, kind):
                    raise ConfigurationError(
                        f"Meter '{name}' is already registered with another type", parameter=name
                    )
                return family

            family = kind(
                to_metric_name(name),
                name,
                labelnames=LABEL_NAMES,
                registry=self.collector_registry,
            )
            self._families[name] = family
            return family
