"""
Full-pipeline restart.

Encoder stalls, encoder exits, empty encoder output, failed encoder spawns
and upstream silence all funnel into ``RestartCoordinator.request``. Only
one restart runs at a time (one shared debounce for every trigger):

- a request while a restart is in flight is ignored, that restart already
  covers it
- a request during the cooldown after a restart is deferred until the
  cooldown ends; further requests in the same window coalesce into it

Restart sequence:
    1. stop every speaker session
    2. detach remaining mixer inputs
    3. kill the encoder
    4. leave the voice room
    5. wait ``restart_settle_delay``
    6. start a new encoder
    7. reconnect to the voice room

A failing step is logged and the sequence carries on.
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Deque, List, Optional

if TYPE_CHECKING:
    from .context import PipelineContext

logger = logging.getLogger(__name__)


@dataclass
class RestartRecord:
    reason: str
    started_at: float
    finished_at: Optional[float] = None
    failed_steps: List[str] = field(default_factory=list)


class RestartCoordinator:
    """Serializes full restarts of mixer inputs, encoder and voice connection."""

    def __init__(self, ctx: "PipelineContext"):
        self.ctx = ctx
        pipeline = ctx.config.pipeline
        self.settle_delay = pipeline.restart_settle_delay
        self.cooldown = pipeline.restart_cooldown
        self.count = 0
        self.ignored = 0
        self.history: Deque[RestartRecord] = deque(maxlen=20)
        self._in_flight = False
        self._task: Optional[asyncio.Task] = None
        self._last_finished: Optional[float] = None
        self._deferred: Optional[asyncio.TimerHandle] = None
        self._closed = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def pending(self) -> bool:
        """A request is waiting for the cooldown to end."""
        return self._deferred is not None

    def cooldown_remaining(self) -> float:
        if self._last_finished is None:
            return 0.0
        return max(0.0, self.cooldown - (time.monotonic() - self._last_finished))

    def cooling_down(self) -> bool:
        return self.cooldown_remaining() > 0

    def request(self, reason: str) -> bool:
        """Schedule a full restart.

        Returns True if a restart was started or deferred to the end of the
        cooldown, False if an in-flight or already deferred restart covers it.
        """
        if self._closed:
            logger.debug(f"[RESTART] Ignoring request ({reason}), shutting down")
            return False
        if self._in_flight or self._deferred is not None:
            self.ignored += 1
            logger.debug(f"[RESTART] Ignoring request ({reason}), restart already handled")
            return False
        remaining = self.cooldown_remaining()
        if remaining > 0:
            logger.info(f"[RESTART] Deferring request ({reason}) for {remaining:.1f}s cooldown")
            loop = asyncio.get_running_loop()
            self._deferred = loop.call_later(remaining, self._run_deferred, reason)
            return True
        self._launch(reason)
        return True

    def _run_deferred(self, reason: str) -> None:
        self._deferred = None
        if self._in_flight:
            self.ignored += 1
            return
        self._launch(reason)

    def _launch(self, reason: str) -> None:
        self._in_flight = True
        self._task = self.ctx.spawn(self._run(reason), name="full-restart")

    def _cancel_deferred(self) -> None:
        handle, self._deferred = self._deferred, None
        if handle is not None:
            handle.cancel()

    async def full_restart(self, reason: str) -> bool:
        """Run a full restart now, unless one is already running.

        An explicit restart skips the cooldown and absorbs any deferred one.
        """
        if self._in_flight:
            self.ignored += 1
            return False
        self._cancel_deferred()
        self._launch(reason)
        await self._task
        return True

    async def wait(self) -> None:
        """Wait for the in-flight restart, if any."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def _run(self, reason: str) -> None:
        self.count += 1
        self.ctx.stats.restarts += 1
        record = RestartRecord(reason=reason, started_at=time.time())
        self.history.append(record)
        logger.warning(f"[RESTART] Full restart #{self.count}: {reason}", extra={"reason": reason})
        ctx = self.ctx
        try:
            await self._step(record, "speaker sessions", ctx.voice.teardown_sessions)
            await self._step(record, "mixer inputs", ctx.mixer.clear)
            await self._step(record, "encoder stop", ctx.encoder.stop)
            await self._step(record, "voice disconnect", ctx.voice.disconnect)
            await asyncio.sleep(self.settle_delay)
            await self._step(record, "encoder start", ctx.encoder.start)
            await self._step(record, "voice reconnect", ctx.voice.reconnect)
        finally:
            record.finished_at = time.time()
            self._last_finished = time.monotonic()
            self._in_flight = False
        if record.failed_steps:
            logger.error(
                f"[RESTART] Restart #{self.count} finished with failed steps: "
                f"{', '.join(record.failed_steps)}"
            )
        else:
            logger.info(f"[RESTART] Restart #{self.count} complete")

    async def _step(self, record: RestartRecord, name: str, step: Callable[[], object]) -> None:
        try:
            result = step()
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            record.failed_steps.append(name)
            logger.exception(f"[RESTART] Step '{name}' failed: {e}")
            return
        errors = getattr(result, "errors", None)
        if errors:
            record.failed_steps.append(name)
            logger.warning(f"[RESTART] Step '{name}' reported: {'; '.join(errors)}")

    async def close(self) -> None:
        self._closed = True
        self._cancel_deferred()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
