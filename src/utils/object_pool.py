"""Capacity-bounded pool of expensive objects.

Each acquisition creates a fresh object through the constructor and each
release destroys it through the destructor; the pool only bounds how many
objects can be alive at the same time.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Generic, TypeVar

from utils.exceptions import InvalidArgument

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _call(function: Callable, *args):
    result = function(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ObjectPool(Generic[T]):
    """Counting-semaphore pool of at most ``capacity`` live objects.

    Example:
        ```python
        pool = ObjectPool(5, open_connection, lambda c: c.close())
        connection = await pool.acquire()
        if connection is not None:
            try:
                ...
            finally:
                await pool.release(connection)
        ```
    """

    def __init__(
        self,
        capacity: int,
        constructor: Callable[[], T | None | Awaitable[T | None]],
        destructor: Callable[[T], object],
    ):
        """Create the pool.

        Args:
            capacity: Maximum number of simultaneously acquired objects (>= 1)
            constructor: Creates an object; may be a coroutine function. Returning
                None or raising is treated as a failed creation.
            destructor: Destroys an object; may be a coroutine function

        Raises:
            InvalidArgument: If capacity is lower than 1
        """
        if capacity < 1:
            raise InvalidArgument(f"The pool capacity must be at least 1, got {capacity}")

        self.capacity = capacity
        self._constructor = constructor
        self._destructor = destructor
        self._semaphore = asyncio.Semaphore(capacity)
        self._free = capacity

    @property
    def available(self) -> int:
        """Number of objects that can be acquired without waiting."""
        return self._free

    async def acquire(self) -> T | None:
        """Wait for capacity, then create an object.

        Cancelling while waiting consumes no capacity.

        Returns:
            The created object, or None if the constructor failed. None means
            "try again or give up", not a broken pool.
        """
        await self._semaphore.acquire()
        self._free -= 1

        try:
            obj = await _call(self._constructor)
        except asyncio.CancelledError:
            self._give_back()
            raise
        except Exception:
            logger.exception("Error when creating object in pool")
            self._give_back()
            return None

        if obj is None:
            logger.warning("Pool constructor returned no object")
            self._give_back()
            return None

        return obj

    async def release(self, obj: T | None) -> None:
        """Destroy an acquired object and give its capacity back.

        Args:
            obj: Object returned by acquire(). None is ignored.
        """
        if obj is None:
            return

        try:
            await _call(self._destructor, obj)
        except Exception:
            logger.exception("Error when destroying %s", obj)
        finally:
            self._give_back()

    def _give_back(self) -> None:
        self._free += 1
        self._semaphore.release()

    @asynccontextmanager
    async def acquired(self) -> AsyncIterator[T | None]:
        """Acquire an object for the duration of an ``async with`` block."""
        obj = await self.acquire()
        try:
            yield obj
        finally:
            await self.release(obj)
