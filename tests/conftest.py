"""Pytest configuration for dataknobs_mongodb tests."""

import asyncio
import sys
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

# Add the package source and the test helpers to path for testing
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))
tests_path = Path(__file__).parent
if str(tests_path) not in sys.path:
    sys.path.insert(0, str(tests_path))

from dataknobs_mongodb import InMemoryEventsLogger, MeterRegistry, StepStartStopContext  # noqa: E402
from fakes import FakeMongoServer  # noqa: E402


async def wait_until(condition, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Wait until condition() is true, failing the test after the timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            pytest.fail("Condition not met before the timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def server():
    """Fresh in-memory MongoDB server."""
    return FakeMongoServer()


@pytest.fixture
def events():
    return InMemoryEventsLogger()


@pytest.fixture
def meter_registry():
    return MeterRegistry(CollectorRegistry())


@pytest.fixture
def context():
    return StepStartStopContext(campaign="campaign-1", scenario="scenario-1", step="step-1")
