"""
Pipeline context.

One object owns all process-wide relay state: the current speaker, the
listener set (through the broadcaster), mixer inputs, the encoder handle,
live speaker sessions and counters. It is built once at startup, components
receive it explicitly, and a full restart rebuilds its contents in place.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Coroutine, Hashable, Optional, Set

from . import messages
from .broadcaster import Broadcaster
from .config import RelayConfig
from .encoder import EncoderSupervisor, SpawnFn
from .errors import EncoderUnavailable, RoomNotFound, TeardownResult
from .mixer import Mixer
from .restart import RestartCoordinator
from .speaker import SpeakerSession, create_opus_decoder
from .voice import VoiceConnectionManager, VoiceSource

logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    chunks_forwarded: int = 0
    bytes_forwarded: int = 0
    encoder_spawns: int = 0
    sessions_started: int = 0
    decode_errors: int = 0
    restarts: int = 0
    listeners_total: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class PipelineContext:
    """Owner of every relay component and of the shared mutable state."""

    def __init__(
        self,
        config: RelayConfig,
        source: VoiceSource,
        spawn: Optional[SpawnFn] = None,
        decoder_factory: Optional[Callable[[], object]] = None,
    ):
        self.config = config
        self.started_at = time.time()
        self.stats = PipelineStats()

        pipeline = config.pipeline
        self.decoder_factory = decoder_factory or (
            lambda: create_opus_decoder(pipeline.sample_rate, pipeline.channels)
        )

        # Current speaker: the session whose name listeners are shown
        self.current_speaker: Optional[SpeakerSession] = None

        self._background: Set[asyncio.Task] = set()

        self.broadcaster = Broadcaster(self)
        self.encoder = EncoderSupervisor(self, spawn=spawn)
        self.mixer = Mixer(pipeline, output=self.encoder.feed)
        self.voice = VoiceConnectionManager(self, source)
        self.restarts = RestartCoordinator(self)

    # ------------------------------------------------------------------
    # Current speaker
    # ------------------------------------------------------------------

    @property
    def current_speaker_name(self) -> Optional[str]:
        if self.current_speaker is None:
            return None
        return self.current_speaker.display_name

    def status_snapshot(self) -> dict:
        return messages.status_event(self.current_speaker_name)

    async def speaker_started(self, session: SpeakerSession) -> None:
        self.current_speaker = session
        await self.broadcaster.broadcast_metadata(messages.speaker_event(session.display_name))

    async def speaker_stopped(self, session: SpeakerSession) -> None:
        """Clear the current speaker if it is ``session``.

        When other speakers are still active the most recently started one
        becomes current; otherwise the speaker is cleared to null.
        """
        if self.current_speaker is not session:
            return
        remaining = [s for s in self.voice.sessions.values() if s.active]
        self.current_speaker = max(remaining, key=lambda s: s.started_at) if remaining else None
        await self.broadcaster.broadcast_metadata(
            messages.speaker_event(self.current_speaker_name)
        )

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Run ``coro`` in the background, keeping a reference until it finishes."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background task {task.get_name()} failed: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def drain(self) -> None:
        """Wait for background tasks spawned so far (and those they spawn)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def session(self, participant_id: Hashable) -> Optional[SpeakerSession]:
        return self.voice.sessions.get(participant_id)

    async def start(self) -> None:
        """Bring up fan-out, encoder, mixer and the voice connection."""
        self.broadcaster.start()
        try:
            await self.encoder.start()
        except EncoderUnavailable:
            logger.error("Encoder unavailable, listeners will receive no audio")
        self.mixer.start()
        try:
            await self.voice.connect()
        except RoomNotFound:
            logger.error("Voice room not found, relay is idle until a restart")

    async def shutdown(self) -> TeardownResult:
        """Stop everything and cancel every outstanding timer and task."""
        result = TeardownResult()
        await self.restarts.close()
        result.merge(await self.voice.teardown_sessions("shutdown"))
        result.merge(self.mixer.clear())
        result.merge(await self.mixer.stop())
        result.merge(await self.encoder.stop())
        result.merge(await self.voice.disconnect())
        await self.broadcaster.stop()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        logger.info("Pipeline shut down")
        return result
