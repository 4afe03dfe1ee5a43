"""
Voice connection management.

``VoiceSource`` is the boundary to the chat platform: it resolves and joins
one voice room, emits speaking-start/speaking-end signals, hands out
per-participant compressed audio subscriptions and looks up display names.
``VoiceConnectionManager`` owns a source, the live speaker sessions and the
global silence watchdog.
"""

import abc
import enum
import logging
import time
from typing import TYPE_CHECKING, Callable, Dict, Hashable, Optional

from .errors import AlreadyActive, RoomNotFound, TeardownResult
from .speaker import SpeakerSession
from .timers import Watchdog

if TYPE_CHECKING:
    from .context import PipelineContext

logger = logging.getLogger(__name__)

SpeakingHandler = Callable[[Hashable], None]
PacketHandler = Callable[[bytes], None]
ErrorHandler = Callable[[BaseException], None]


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DEAD = "dead"


class Subscription(abc.ABC):
    """Handle for one participant's compressed audio stream."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop delivering packets. Closing twice is a no-op."""


class VoiceSource(abc.ABC):
    """A single voice room providing per-participant compressed audio."""

    @abc.abstractmethod
    async def connect(self) -> None:
        """Resolve and join the room. Raises RoomNotFound."""

    @abc.abstractmethod
    async def disconnect(self) -> None:
        """Leave the room."""

    @abc.abstractmethod
    def bind(self, on_speaking_start: SpeakingHandler, on_speaking_end: SpeakingHandler) -> None:
        """Route speaking signals to the given handlers (on the event loop)."""

    @abc.abstractmethod
    def subscribe(
        self,
        participant_id: Hashable,
        on_packet: PacketHandler,
        on_error: Optional[ErrorHandler] = None,
    ) -> Subscription:
        """Start delivering a participant's compressed audio packets."""

    @abc.abstractmethod
    async def display_name(self, participant_id: Hashable) -> str:
        """Look up a participant's display name. May raise."""


class VoiceConnectionManager:
    """Connectivity to the voice source and the set of live speaker sessions."""

    def __init__(self, ctx: "PipelineContext", source: VoiceSource):
        self.ctx = ctx
        self.source = source
        self.state = ConnectionState.DISCONNECTED
        self.sessions: Dict[Hashable, SpeakerSession] = {}
        self.last_audio_at: Optional[float] = None
        self.connects = 0
        self._silence = Watchdog(
            ctx.config.pipeline.global_silence_timeout,
            self._on_global_silence,
            name="global-silence",
        )

    @property
    def silence_watchdog(self) -> Watchdog:
        return self._silence

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Join the room and bind speaking signals. Raises RoomNotFound."""
        try:
            await self.source.connect()
        except RoomNotFound as e:
            self.state = ConnectionState.DEAD
            logger.error(f"[VOICE] Room not found: {e}")
            raise
        self.source.bind(self._on_speaking_start, self._on_speaking_end)
        self.state = ConnectionState.CONNECTED
        self.connects += 1
        logger.info("[VOICE] Connected to voice room")

    async def disconnect(self) -> TeardownResult:
        """Leave the room. Errors from the source are recorded, not raised."""
        result = TeardownResult()
        if self._silence.cancel():
            result.record("global_silence_timer")
        if self.state in (ConnectionState.DISCONNECTED, ConnectionState.DEAD):
            result.already_released = True
        try:
            await self.source.disconnect()
            result.record("voice_connection")
        except Exception as e:
            result.fail("voice_connection", e)
            logger.warning(f"[VOICE] Error while disconnecting: {e}")
        if self.state is not ConnectionState.RECONNECTING:
            self.state = ConnectionState.DISCONNECTED
        return result

    async def reconnect(self) -> None:
        """Destroy any existing connection, then connect and rebind."""
        self.state = ConnectionState.RECONNECTING
        await self.disconnect()
        await self.connect()

    # ------------------------------------------------------------------
    # Speaking signals
    # ------------------------------------------------------------------

    def _on_speaking_start(self, participant_id: Hashable) -> None:
        self.ctx.spawn(
            self._handle_speaking_start(participant_id), name=f"speaking-start:{participant_id}"
        )

    def _on_speaking_end(self, participant_id: Hashable) -> None:
        self.ctx.spawn(self.end_session(participant_id), name=f"speaking-end:{participant_id}")

    async def _handle_speaking_start(self, participant_id: Hashable) -> None:
        try:
            await self.start_session(participant_id)
        except AlreadyActive:
            logger.debug(f"[VOICE] {participant_id} already has a session")
        except Exception as e:
            logger.warning(
                f"[VOICE] Could not start session for {participant_id}: {e}",
                extra={"participant_id": participant_id},
            )

    async def start_session(self, participant_id: Hashable) -> SpeakerSession:
        """Create and start a session. Raises AlreadyActive if one exists."""
        if participant_id in self.sessions:
            raise AlreadyActive(participant_id)
        session = SpeakerSession(self.ctx, participant_id)
        self.sessions[participant_id] = session
        if await session.start() and not self._silence.armed:
            self._silence.arm()
        return session

    async def end_session(self, participant_id: Hashable) -> TeardownResult:
        session = self.sessions.get(participant_id)
        if session is None:
            return TeardownResult(already_released=True)
        return await session.stop("speaking_end")

    def session_stopped(self, session: SpeakerSession) -> None:
        """Drop a stopped session from the registry."""
        if self.sessions.get(session.participant_id) is session:
            del self.sessions[session.participant_id]
        if not self.sessions:
            self._silence.cancel()

    async def teardown_sessions(self, reason: str = "restart") -> TeardownResult:
        result = TeardownResult()
        if not self.sessions:
            result.already_released = True
        for session in list(self.sessions.values()):
            result.merge(await session.stop(reason))
        if self._silence.cancel():
            result.record("global_silence_timer")
        return result

    # ------------------------------------------------------------------
    # Global silence watchdog
    # ------------------------------------------------------------------

    def note_audio(self) -> None:
        """Record PCM from any session and push the silence deadline out."""
        self.last_audio_at = time.monotonic()
        self._silence.reset()

    def _on_global_silence(self) -> None:
        logger.warning(
            f"[VOICE] No audio from {len(self.sessions)} active speaker(s) "
            f"for {self._silence.timeout:.1f}s",
            extra={"reason": "global_silence"},
        )
        self.ctx.restarts.request("global silence")
