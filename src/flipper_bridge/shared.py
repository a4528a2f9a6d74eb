"""Shared ownership of one physical connection by several users."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger("flipper_bridge.shared")


class SharedConnection(Generic[T]):
    """Connection handle guarded by a lock and an owner count.

    The lock is meant to be held for a single operation only (read a
    characteristic, write a buffer) and never across waits on other events.
    The resource is closed when the last owner releases it.
    """

    def __init__(self, resource: T, closer: Callable[[T], Awaitable[Any]], owners: int = 1):
        self._resource = resource
        self._closer = closer
        self._owners = owners
        self._lock = asyncio.Lock()

    @property
    def owners(self) -> int:
        return self._owners

    @property
    def closed(self) -> bool:
        return self._owners == 0

    @property
    def resource(self) -> T:
        """Direct access for push-driven paths that must not take the lock."""
        return self._resource

    @asynccontextmanager
    async def acquire(self):
        async with self._lock:
            yield self._resource

    def retain(self) -> "SharedConnection[T]":
        if self._owners == 0:
            raise RuntimeError("Connection already closed")
        self._owners += 1
        return self

    async def release(self) -> None:
        if self._owners == 0:
            return
        self._owners -= 1
        if self._owners == 0:
            logger.debug(f"Last owner released, closing {type(self._resource).__name__}")
            async with self._lock:
                await self._closer(self._resource)
