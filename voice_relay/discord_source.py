"""
Discord voice source.

Joins one guild voice channel with discord-ext-voice-recv and exposes it as
a ``VoiceSource``: per-member Opus packets, speaking start/stop signals and
display-name lookups. The receive sink is called from the voice-recv packet
router thread, so every call is handed to the event loop before it touches
relay state.
"""

import asyncio
import logging
from typing import Callable, Dict, Hashable, Optional

import discord
from discord.ext import voice_recv

from .errors import RoomNotFound
from .voice import (
    ConnectionState,
    ErrorHandler,
    PacketHandler,
    SpeakingHandler,
    Subscription,
    VoiceSource,
)

logger = logging.getLogger(__name__)


class OpusRouterSink(voice_recv.AudioSink):
    """Passes raw Opus packets and speaking events to the event loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_packet: Callable[[int, bytes], None],
        on_speaking: Callable[[int, bool], None],
    ):
        super().__init__()
        self._loop = loop
        self._on_packet = on_packet
        self._on_speaking = on_speaking

    def wants_opus(self) -> bool:
        return True

    def write(self, user: Optional[discord.abc.User], data: voice_recv.VoiceData) -> None:
        if user is None or user.bot or not data.opus:
            return
        self._loop.call_soon_threadsafe(self._on_packet, user.id, data.opus)

    @voice_recv.AudioSink.listener()
    def on_voice_member_speaking_start(self, member: discord.Member) -> None:
        if not member.bot:
            self._loop.call_soon_threadsafe(self._on_speaking, member.id, True)

    @voice_recv.AudioSink.listener()
    def on_voice_member_speaking_stop(self, member: discord.Member) -> None:
        if not member.bot:
            self._loop.call_soon_threadsafe(self._on_speaking, member.id, False)

    def cleanup(self) -> None:
        pass


class _MemberSubscription(Subscription):
    def __init__(self, source: "DiscordVoiceSource", member_id: int, on_packet, on_error):
        self.member_id = member_id
        self.on_packet = on_packet
        self.on_error = on_error
        self._source = source
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._source._unsubscribe(self)


class DiscordVoiceSource(VoiceSource):
    """One Discord voice channel as a relay voice source."""

    def __init__(self, client: discord.Client, guild_id: Optional[int], channel_id: Optional[int]):
        self.client = client
        self.guild_id = guild_id
        self.channel_id = channel_id
        self.state = ConnectionState.DISCONNECTED
        self._voice_client: Optional[voice_recv.VoiceRecvClient] = None
        self._subscriptions: Dict[int, _MemberSubscription] = {}
        self._on_start: Optional[SpeakingHandler] = None
        self._on_end: Optional[SpeakingHandler] = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _resolve_channel(self) -> discord.VoiceChannel:
        if self.channel_id is None:
            raise RoomNotFound("VOICE_CHANNEL_ID is not set")
        channel = self.client.get_channel(self.channel_id)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(self.channel_id)
            except (discord.NotFound, discord.Forbidden) as e:
                raise RoomNotFound(f"Channel {self.channel_id} unavailable: {e}") from e
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise RoomNotFound(f"Channel {self.channel_id} is not a voice channel")
        if self.guild_id is not None and channel.guild.id != self.guild_id:
            raise RoomNotFound(f"Channel {self.channel_id} is not in guild {self.guild_id}")
        return channel

    async def connect(self) -> None:
        await self.client.wait_until_ready()
        channel = await self._resolve_channel()
        self.guild_id = channel.guild.id

        existing = channel.guild.voice_client
        if existing is not None:
            await existing.disconnect(force=True)

        voice_client = await channel.connect(cls=voice_recv.VoiceRecvClient)
        loop = asyncio.get_running_loop()
        voice_client.listen(OpusRouterSink(loop, self._route_packet, self._route_speaking))
        self._voice_client = voice_client
        self.state = ConnectionState.CONNECTED
        logger.info(f"[DISCORD] Listening in #{channel.name} ({channel.guild.name})")

    async def disconnect(self) -> None:
        voice_client, self._voice_client = self._voice_client, None
        for subscription in list(self._subscriptions.values()):
            subscription.close()
        self.state = ConnectionState.DISCONNECTED
        if voice_client is None:
            return
        if voice_client.is_listening():
            voice_client.stop_listening()
        await voice_client.disconnect(force=True)
        logger.info("[DISCORD] Left voice channel")

    def bind(self, on_speaking_start: SpeakingHandler, on_speaking_end: SpeakingHandler) -> None:
        self._on_start = on_speaking_start
        self._on_end = on_speaking_end

    # ------------------------------------------------------------------
    # Audio routing (event loop thread)
    # ------------------------------------------------------------------

    def _route_packet(self, member_id: int, opus: bytes) -> None:
        subscription = self._subscriptions.get(member_id)
        if subscription is not None:
            subscription.on_packet(opus)

    def _route_speaking(self, member_id: int, speaking: bool) -> None:
        handler = self._on_start if speaking else self._on_end
        if handler is not None:
            handler(member_id)

    def subscribe(
        self,
        participant_id: Hashable,
        on_packet: PacketHandler,
        on_error: Optional[ErrorHandler] = None,
    ) -> Subscription:
        previous = self._subscriptions.get(participant_id)
        if previous is not None:
            previous.close()
        subscription = _MemberSubscription(self, participant_id, on_packet, on_error)
        self._subscriptions[participant_id] = subscription
        return subscription

    def _unsubscribe(self, subscription: _MemberSubscription) -> None:
        if self._subscriptions.get(subscription.member_id) is subscription:
            del self._subscriptions[subscription.member_id]

    async def display_name(self, participant_id: Hashable) -> str:
        guild = self.client.get_guild(self.guild_id) if self.guild_id is not None else None
        if guild is None:
            user = self.client.get_user(participant_id) or await self.client.fetch_user(
                participant_id
            )
            return user.display_name
        member = guild.get_member(participant_id) or await guild.fetch_member(participant_id)
        return member.display_name


class RelayBot(discord.Client):
    """Minimal gateway client: voice states only, no commands."""

    def __init__(self):
        intents = discord.Intents.default()
        intents.voice_states = True
        intents.guilds = True
        super().__init__(intents=intents)

    async def on_ready(self):
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info(f"Connected to {len(self.guilds)} guild(s)")
