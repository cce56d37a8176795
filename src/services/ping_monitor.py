"""Keep-alive loop of authenticated sessions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from utils import get_config

logger = logging.getLogger(__name__)


class PingState(Enum):
    HEALTHY = "healthy"
    RETRYING = "retrying"
    RE_AUTHENTICATING = "re_authenticating"
    CLOSING = "closing"


class PingMonitor:
    """Pings a server every interval, escalating on failure.

    One cycle goes ``HEALTHY -> RETRYING(1..max_attempts) -> RE_AUTHENTICATING
    -> CLOSING`` and stops at the first successful ping or re-login. Reaching
    ``CLOSING`` awaits ``on_close`` with the last error and ends the loop.
    """

    def __init__(
        self,
        ping: Callable[[], Awaitable[object]],
        re_login: Callable[[], Awaitable[object]],
        on_close: Callable[[Exception | None], Awaitable[None]],
        interval: float | None = None,
        max_attempts: int | None = None,
        name: str = "",
    ):
        config = get_config()
        self._ping = ping
        self._re_login = re_login
        self._on_close = on_close
        self.interval = interval if interval is not None else config.omero.ping_interval
        self.max_attempts = (
            max_attempts if max_attempts is not None else config.omero.ping_max_attempts
        )
        self.name = name

        self.state = PingState.HEALTHY
        self.attempt = 0
        self.last_error: Exception | None = None
        self._task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"PingMonitor({self.name}, state={self.state.value}, attempt={self.attempt})"

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_cycle(self) -> PingState:
        """Run one ping cycle and return the state it ended in."""
        for attempt in range(1, self.max_attempts + 1):
            self.attempt = attempt
            try:
                await self._ping()
            except Exception as e:
                self.last_error = e
                self.state = PingState.RETRYING
                logger.debug("Ping attempt %d to %s failed: %s", attempt, self.name, e)
            else:
                self.state = PingState.HEALTHY
                self.attempt = 0
                return self.state

        self.state = PingState.RE_AUTHENTICATING
        logger.warning(
            "Ping to %s failed %d times. Attempting to log in again",
            self.name,
            self.max_attempts,
        )
        try:
            await self._re_login()
        except Exception as e:
            self.last_error = e
            logger.error("Cannot log in again to %s: %s", self.name, e)
        else:
            logger.info("Logged in again to %s", self.name)
            self.state = PingState.HEALTHY
            self.attempt = 0
            return self.state

        self.state = PingState.CLOSING
        await self._on_close(self.last_error)
        return self.state

    async def _run(self) -> None:
        while True:
            if await self.run_cycle() is PingState.CLOSING:
                return
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start pinging: first cycle now, then every ``interval`` seconds."""
        if self.is_running:
            return
        logger.debug("Starting ping to %s every %s seconds", self.name, self.interval)
        self._task = asyncio.create_task(self._run(), name=f"ping-{self.name}")

    def stop(self) -> None:
        """Stop pinging. Has no effect when called from the ping loop itself."""
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        logger.debug("Stopping ping to %s", self.name)
        task.cancel()
