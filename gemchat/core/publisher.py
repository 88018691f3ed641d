"""
Gemchat Coalescing Publisher
============================

Delivers turn state to observers at a bounded rate.

The pull loop may mutate state once per fragment; observers (session
record, UI) see at most one update per `interval` seconds. The latest
pending value is always the one delivered, and flush() forces delivery of
the final state when a turn ends.
"""

import asyncio
import logging
from typing import Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PUBLISH_INTERVAL = 1 / 60


class CoalescingPublisher(Generic[T]):
    """
    Rate-limited fan-out of the latest value.

    USAGE:
        publisher = CoalescingPublisher(interval=1 / 60)
        publisher.subscribe(lambda state: render(state))

        publisher.publish(state.snapshot())   # may be delivered later
        publisher.flush()                     # deliver pending now
    """

    def __init__(self, interval: float = DEFAULT_PUBLISH_INTERVAL):
        self.interval = interval
        self._observers: List[Callable[[T], None]] = []
        self._pending: Optional[T] = None
        self._has_pending = False
        self._last_flush: Optional[float] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self.deliveries = 0

    def subscribe(self, observer: Callable[[T], None]) -> Callable[[], None]:
        """Register an observer. Returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, value: T) -> None:
        """Record a new value; deliver now if the interval allows, else schedule."""
        self._pending = value
        self._has_pending = True

        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._last_flush is None or now - self._last_flush >= self.interval:
            self.flush()
            return

        if self._handle is None:
            delay = self.interval - (now - self._last_flush)
            self._handle = loop.call_later(delay, self._scheduled_flush)

    def flush(self) -> None:
        """Deliver the pending value immediately, if any."""
        self._cancel_timer()
        if not self._has_pending:
            return

        value = self._pending
        self._pending = None
        self._has_pending = False
        try:
            self._last_flush = asyncio.get_running_loop().time()
        except RuntimeError:
            self._last_flush = None

        self.deliveries += 1
        for observer in list(self._observers):
            try:
                observer(value)
            except Exception:
                logger.exception("State observer failed")

    def close(self) -> None:
        """Flush and stop any scheduled delivery."""
        self.flush()
        self._cancel_timer()

    def _scheduled_flush(self) -> None:
        self._handle = None
        self.flush()

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
