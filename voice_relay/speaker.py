"""
Speaker sessions.

A session owns one participant's path from compressed voice packets to a
mixer input:

    subscribe -> queue -> decoder -> MixerInput

Packets are queued and drained by a single task per session, so decode,
mixer push and detach happen in order for that participant. A session
never outlives a decode error or ``speaker_inactivity_timeout`` seconds
without PCM; both end it the same way a speaking-end signal does.
"""

import asyncio
import enum
import logging
import time
from typing import TYPE_CHECKING, Hashable, Optional

from .errors import TeardownResult
from .timers import Watchdog

if TYPE_CHECKING:
    from .context import PipelineContext

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    STARTING = "starting"
    ACTIVE = "active"
    STOPPED = "stopped"


def create_opus_decoder(sample_rate: int = 48000, channels: int = 1):
    """Opus decoder producing s16le PCM at the pipeline format."""
    import opuslib

    return opuslib.Decoder(sample_rate, channels)


class SpeakerSession:
    """Decode/mix binding for one currently speaking participant."""

    def __init__(self, ctx: "PipelineContext", participant_id: Hashable):
        self.ctx = ctx
        self.participant_id = participant_id
        self.display_name: Optional[str] = None
        self.state = SessionState.STARTING
        self.started_at = time.monotonic()
        self.stop_reason: Optional[str] = None

        self.frames = 0
        self.decode_errors = 0

        config = ctx.config.pipeline
        self._frame_samples = config.frame_samples
        self._decoder = None
        self._subscription = None
        self._input = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._inactivity = Watchdog(
            config.speaker_inactivity_timeout,
            self._on_inactive,
            name=f"speaker-inactivity:{participant_id}",
        )

    def __repr__(self) -> str:
        return f"SpeakerSession({self.participant_id!r}, {self.state.value})"

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def mixer_input(self):
        return self._input

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Bring the session up. Returns False if it was stopped meanwhile.

        Mixer capacity and subscribe errors propagate after the session has
        torn itself down.
        """
        self.display_name = await self._resolve_name()
        if self.state is SessionState.STOPPED:
            return False

        try:
            self._decoder = self.ctx.decoder_factory()
            self._input = self.ctx.mixer.add_input(self.participant_id)
            self._subscription = self.ctx.voice.source.subscribe(
                self.participant_id, self._on_packet, self._on_stream_error
            )
        except Exception:
            await self.stop("start_failed")
            raise

        self._task = asyncio.create_task(
            self._pump(), name=f"speaker:{self.participant_id}"
        )
        self._inactivity.arm()
        self.state = SessionState.ACTIVE
        self.ctx.stats.sessions_started += 1
        logger.info(
            f"[SPEAKER] {self.display_name} ({self.participant_id}) started speaking",
            extra={"participant_id": self.participant_id},
        )
        await self.ctx.speaker_started(self)
        return True

    async def _resolve_name(self) -> str:
        placeholder = self.ctx.config.pipeline.placeholder_name
        try:
            name = await self.ctx.voice.source.display_name(self.participant_id)
        except Exception as e:
            logger.warning(
                f"[SPEAKER] Name lookup failed for {self.participant_id}: {e}",
                extra={"participant_id": self.participant_id},
            )
            return placeholder
        return name or placeholder

    # ------------------------------------------------------------------
    # Audio path
    # ------------------------------------------------------------------

    def _on_packet(self, packet: bytes) -> None:
        if self.state is SessionState.STOPPED:
            return
        self._queue.put_nowait(packet)

    def _on_stream_error(self, exc: BaseException) -> None:
        logger.warning(
            f"[SPEAKER] Stream error for {self.participant_id}: {exc}",
            extra={"participant_id": self.participant_id},
        )
        self.ctx.spawn(self.stop("stream_error"), name=f"speaker-stop:{self.participant_id}")

    async def _pump(self) -> None:
        while self.state is not SessionState.STOPPED:
            packet = await self._queue.get()
            try:
                pcm = self._decoder.decode(packet, self._frame_samples)
            except Exception as e:
                self.decode_errors += 1
                self.ctx.stats.decode_errors += 1
                logger.warning(
                    f"[SPEAKER] Decode error for {self.participant_id}: {e}",
                    extra={"participant_id": self.participant_id},
                )
                await self.stop("decode_error")
                return
            self._on_pcm(pcm)

    def _on_pcm(self, pcm: bytes) -> None:
        if not pcm or self._input is None:
            return
        self.frames += 1
        self._input.push(pcm)
        self._inactivity.reset()
        self.ctx.voice.note_audio()

    def _on_inactive(self) -> None:
        logger.info(
            f"[SPEAKER] {self.participant_id} silent for "
            f"{self._inactivity.timeout:.1f}s, ending session",
            extra={"participant_id": self.participant_id},
        )
        self.ctx.spawn(self.stop("inactive"), name=f"speaker-stop:{self.participant_id}")

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self, reason: str = "speaking_end") -> TeardownResult:
        """Release everything the session holds. Safe to call repeatedly."""
        result = TeardownResult()
        if self.state is SessionState.STOPPED:
            result.already_released = True
            return result
        was_active = self.state is SessionState.ACTIVE
        self.state = SessionState.STOPPED
        self.stop_reason = reason

        if self._inactivity.cancel():
            result.record("inactivity_timer")

        if self._input is not None:
            if self.ctx.mixer.remove_input(self._input):
                result.record("mixer_input")
            self._input = None

        if self._decoder is not None:
            self._decoder = None
            result.record("decoder")

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                subscription.close()
                result.record("subscription")
            except Exception as e:
                result.fail("subscription", e)

        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            result.record("pump_task")

        self.ctx.voice.session_stopped(self)
        if was_active:
            logger.info(
                f"[SPEAKER] {self.display_name} ({self.participant_id}) stopped: {reason}",
                extra={"participant_id": self.participant_id, "reason": reason},
            )
            await self.ctx.speaker_stopped(self)
        return result
