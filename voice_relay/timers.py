"""Re-armable one-shot timers on the running event loop."""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Watchdog:
    """
    One-shot timer that fires ``callback`` after ``timeout`` seconds.

    ``arm()`` always clears any pending handle before setting a new one, so a
    reset timer never fires for the old deadline and a cancelled timer never
    fires at all.
    """

    def __init__(self, timeout: float, callback: Callable[[], None], name: str = "watchdog"):
        self.timeout = timeout
        self.name = name
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self.fired = 0

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._fire)

    reset = arm

    def cancel(self) -> bool:
        """Cancel the pending deadline. Returns True if one was pending."""
        handle, self._handle = self._handle, None
        if handle is None:
            return False
        handle.cancel()
        return True

    def _fire(self) -> None:
        self._handle = None
        self.fired += 1
        logger.debug(f"[WATCHDOG] {self.name} expired after {self.timeout:.2f}s")
        try:
            self._callback()
        except Exception:
            logger.exception(f"[WATCHDOG] {self.name} callback failed")
