"""Outputs through which the steps send their results downstream."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol


class StepOutput(Protocol):
    """Downstream side of a step. ``send`` may suspend under backpressure."""

    async def send(self, item: Any) -> None: ...


class QueueOutput:
    """Output backed by a bounded asyncio queue.

    Args:
        maxsize: Capacity of the queue; ``send`` waits while it is full
    """

    def __init__(self, maxsize: int = 100) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue(maxsize)

    async def send(self, item: Any) -> None:
        await self.queue.put(item)

    async def receive(self) -> Any:
        return await self.queue.get()

    def drain(self) -> list[Any]:
        """Remove and return every item currently buffered."""
        items = []
        while not self.queue.empty():
            items.append(self.queue.get_nowait())
        return items
