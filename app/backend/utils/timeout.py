"""Timeout helper converting asyncio timeouts into `OperationTimeoutError`."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from backend.core.errors import OperationTimeoutError


T = TypeVar("T")


async def with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await `awaitable`, cancelling it after `timeout` seconds.

    Raises:
        OperationTimeoutError: When the bound is exceeded.
    """

    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise OperationTimeoutError(operation, timeout) from exc
