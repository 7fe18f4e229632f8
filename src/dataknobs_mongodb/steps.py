"""Helpers shared by the search and save steps."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar, Union

I = TypeVar("I")
R = TypeVar("R")

InputFunction = Callable[[I], Union[R, Awaitable[R]]]
"""Function computing a step parameter from the step input, plain or async."""


async def resolve_input(function: Callable[[Any], Any], value: Any) -> Any:
    result = function(value)
    if inspect.isawaitable(result):
        result = await result
    return result
