"""
Listener fan-out.

Every encoder chunk and every metadata event goes to all writable
listeners concurrently, each send bounded by ``send_timeout``. A listener
that fails or times out is dropped and the remaining listeners are told the
new count; nothing a single listener does can stall or break delivery to
the others.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Optional, Set, Union

from websockets.protocol import State

from . import messages

if TYPE_CHECKING:
    from .context import PipelineContext

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Listener:
    """One connected push-channel client."""

    connection: Any
    connected_at: float = field(default_factory=time.time)

    @property
    def remote(self) -> str:
        address = getattr(self.connection, "remote_address", None)
        if isinstance(address, tuple) and len(address) >= 2:
            return f"{address[0]}:{address[1]}"
        return str(address)

    def writable(self) -> bool:
        return getattr(self.connection, "state", None) is State.OPEN


class Broadcaster:
    """Audio and metadata fan-out plus keepalive probes."""

    def __init__(self, ctx: "PipelineContext"):
        self.ctx = ctx
        server = ctx.config.server
        self.send_timeout = server.send_timeout
        self.keepalive_interval = server.keepalive_interval
        self.keepalive_timeout = server.keepalive_timeout
        self.listeners: Set[Listener] = set()
        self._keepalive_task: Optional[asyncio.Task] = None

    @property
    def count(self) -> int:
        return len(self.listeners)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def register(self, listener: Listener) -> None:
        """Add a listener and send it the current status snapshot."""
        self.listeners.add(listener)
        self.ctx.stats.listeners_total += 1
        logger.info(
            f"[BROADCAST] Listener connected from {listener.remote} ({self.count} total)",
            extra={"listeners": self.count},
        )
        if not await self._send(listener, messages.encode(self.ctx.status_snapshot())):
            await self._drop([listener])
            return
        await self.broadcast_metadata(messages.user_count_event(self.count))

    async def unregister(self, listener: Listener) -> bool:
        """Remove a listener and announce the new count. Idempotent."""
        if listener not in self.listeners:
            return False
        self.listeners.discard(listener)
        logger.info(
            f"[BROADCAST] Listener {listener.remote} disconnected ({self.count} left)",
            extra={"listeners": self.count},
        )
        await self.broadcast_metadata(messages.user_count_event(self.count))
        return True

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def broadcast_audio(self, chunk: bytes) -> int:
        """Send one binary audio chunk. Returns the number of listeners reached."""
        return await self._fan_out(chunk)

    async def broadcast_metadata(self, event: dict) -> int:
        """Send one JSON metadata event. Returns the number of listeners reached."""
        return await self._fan_out(messages.encode(event))

    async def _fan_out(self, payload: Union[bytes, str]) -> int:
        targets = [listener for listener in list(self.listeners) if listener.writable()]
        if not targets:
            return 0
        results = await asyncio.gather(*(self._send(listener, payload) for listener in targets))
        dead = [listener for listener, ok in zip(targets, results) if not ok]
        if dead:
            await self._drop(dead)
        return len(targets) - len(dead)

    async def _send(self, listener: Listener, payload: Union[bytes, str]) -> bool:
        """Send with a timeout. Returns False if the listener should be dropped."""
        try:
            await asyncio.wait_for(listener.connection.send(payload), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"[BROADCAST] Send to {listener.remote} timed out")
            return False
        except Exception as e:
            logger.debug(f"[BROADCAST] Send to {listener.remote} failed: {e}")
            return False
        return True

    async def _drop(self, dead: Iterable[Listener]) -> None:
        removed = [listener for listener in dead if listener in self.listeners]
        if not removed:
            return
        for listener in removed:
            self.listeners.discard(listener)
            self.ctx.spawn(self._close(listener), name=f"listener-close:{listener.remote}")
        logger.info(
            f"[BROADCAST] Dropped {len(removed)} dead listener(s) ({self.count} left)",
            extra={"listeners": self.count},
        )
        await self.broadcast_metadata(messages.user_count_event(self.count))

    async def _close(self, listener: Listener) -> None:
        try:
            await listener.connection.close(1011, "Listener dropped")
        except Exception as e:
            logger.debug(f"[BROADCAST] Close of {listener.remote} failed: {e}")

    # ------------------------------------------------------------------
    # Keepalive
    # ------------------------------------------------------------------

    async def ping_all(self) -> int:
        """Probe every listener once and drop the unresponsive ones."""
        targets = list(self.listeners)
        if not targets:
            return 0
        results = await asyncio.gather(*(self._probe(listener) for listener in targets))
        dead = [listener for listener, ok in zip(targets, results) if not ok]
        if dead:
            await self._drop(dead)
        return len(dead)

    async def _probe(self, listener: Listener) -> bool:
        try:
            pong_waiter = await listener.connection.ping()
            await asyncio.wait_for(pong_waiter, timeout=self.keepalive_timeout)
        except asyncio.TimeoutError:
            logger.info(f"[BROADCAST] Listener {listener.remote} missed keepalive")
            return False
        except Exception as e:
            logger.debug(f"[BROADCAST] Keepalive to {listener.remote} failed: {e}")
            return False
        return True

    def start(self) -> None:
        if self._keepalive_task is None:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop(), name="keepalive")

    async def stop(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await self.ping_all()
            except Exception as e:
                logger.error(f"[BROADCAST] Keepalive loop error: {e}")
