"""
Gemchat Stream Watchdog
=======================

Liveness and cancellation primitives for the turn pull loop.

- CancellationToken: the per-orchestrator cancellation flag. Setting it
  also wakes anything awaiting token.wait(), so the orchestrator can abort
  a pending fragment pull instead of waiting for the next fragment.
- StreamWatchdog: a timer re-armed on every fragment. If it expires, it
  cancels the token with reason TIMEOUT.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class CancelReason(Enum):
    USER = "user"
    TIMEOUT = "timeout"


class CancellationToken:
    """Single shared flag; terminal for a turn, reset when a new turn begins."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[CancelReason] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason

    def cancel(self, reason: CancelReason = CancelReason.USER) -> None:
        """Set the flag. The first reason wins."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def reset(self) -> None:
        self._event.clear()
        self._reason = None

    async def wait(self) -> CancelReason:
        await self._event.wait()
        return self._reason


class StreamWatchdog:
    """
    Declares a stream dead when no fragment arrives within `timeout` seconds.

    USAGE:
        watchdog = StreamWatchdog(60.0, token)
        watchdog.start()
        async for fragment in stream:
            watchdog.reset()
            ...
        watchdog.stop()
    """

    def __init__(self, timeout: float, token: CancellationToken):
        if timeout <= 0:
            raise ValueError("watchdog timeout must be positive")
        self.timeout = timeout
        self._token = token
        self._handle: Optional[asyncio.TimerHandle] = None
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def start(self) -> None:
        self._fired = False
        self._arm()

    def reset(self) -> None:
        """Re-arm the timer for a full window."""
        if self._fired:
            return
        self._arm()

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _arm(self) -> None:
        self.stop()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._expire)

    def _expire(self) -> None:
        self._handle = None
        if self._token.is_cancelled:
            return
        self._fired = True
        logger.warning(f"⏱️ Stream inactivity timeout ({self.timeout:.1f}s) reached, aborting")
        self._token.cancel(CancelReason.TIMEOUT)
