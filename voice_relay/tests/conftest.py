"""Shared fakes and fixtures for the relay test suite.

The voice source, listener connections, Opus decoder and ffmpeg process are
replaced with in-memory fakes so the whole pipeline runs on the test event
loop with short timeouts.
"""

from __future__ import annotations

import asyncio
import json
import struct
from typing import Optional

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedError
from websockets.protocol import State

from voice_relay.config import RelayConfig
from voice_relay.context import PipelineContext
from voice_relay.errors import RoomNotFound
from voice_relay.voice import Subscription, VoiceSource

FRAME_SAMPLES = 960
SAMPLE_VALUE = 1000


def pcm_frame(value: int = SAMPLE_VALUE, samples: int = FRAME_SAMPLES) -> bytes:
    return struct.pack("<h", value) * samples


# ---------------------------------------------------------------------------
# Voice source
# ---------------------------------------------------------------------------


class FakeSubscription(Subscription):
    def __init__(self, participant_id, on_packet, on_error):
        self.participant_id = participant_id
        self.on_packet = on_packet
        self.on_error = on_error
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakeVoiceSource(VoiceSource):
    """Scriptable voice room."""

    def __init__(self, names: Optional[dict] = None, room_exists: bool = True):
        self.names = names or {}
        self.room_exists = room_exists
        self.failing_names: set = set()
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.subscriptions: dict = {}
        self.on_start = None
        self.on_end = None

    async def connect(self) -> None:
        self.connect_calls += 1
        if not self.room_exists:
            raise RoomNotFound("channel 42 not found")
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    def bind(self, on_speaking_start, on_speaking_end) -> None:
        self.on_start = on_speaking_start
        self.on_end = on_speaking_end

    def subscribe(self, participant_id, on_packet, on_error=None) -> Subscription:
        subscription = FakeSubscription(participant_id, on_packet, on_error)
        self.subscriptions[participant_id] = subscription
        return subscription

    async def display_name(self, participant_id) -> str:
        if participant_id in self.failing_names:
            raise LookupError(f"unknown member {participant_id}")
        return self.names.get(participant_id, str(participant_id))

    # Test helpers

    def speak(self, participant_id) -> None:
        self.on_start(participant_id)

    def stop_speaking(self, participant_id) -> None:
        self.on_end(participant_id)

    def packet(self, participant_id, payload: bytes = b"opus") -> bool:
        subscription = self.subscriptions.get(participant_id)
        if subscription is None or subscription.closed:
            return False
        subscription.on_packet(payload)
        return True


class FakeDecoder:
    """Turns any packet into one frame of constant PCM; b"bad" fails."""

    def __init__(self, value: int = SAMPLE_VALUE):
        self.value = value
        self.decoded = 0

    def decode(self, packet: bytes, frame_size: int) -> bytes:
        if packet == b"bad":
            raise ValueError("corrupted stream")
        self.decoded += 1
        return pcm_frame(self.value, frame_size)


# ---------------------------------------------------------------------------
# Encoder process
# ---------------------------------------------------------------------------


class FakeStdin:
    def __init__(self):
        self.data = bytearray()
        self.closed = False
        self.broken = False

    def write(self, data: bytes) -> None:
        if self.closed or self.broken:
            raise BrokenPipeError("stdin closed")
        self.data += data

    async def drain(self) -> None:
        if self.broken:
            raise BrokenPipeError("stdin closed")

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    _next_pid = 4000

    def __init__(self, args):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.args = args
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self.killed = False
        self._exited = asyncio.Event()

    def emit(self, chunk: bytes) -> None:
        self.stdout.feed_data(chunk)

    def exit(self, code: int = 1) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def close_stdout(self) -> None:
        self.stdout.feed_eof()

    def kill(self) -> None:
        if self.returncode is not None:
            raise ProcessLookupError(self.pid)
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    def __init__(self):
        self.processes: list = []
        self.fail = False

    async def __call__(self, args):
        if self.fail:
            raise FileNotFoundError(args[0])
        process = FakeProcess(args)
        self.processes.append(process)
        return process

    @property
    def latest(self) -> FakeProcess:
        return self.processes[-1]

    def live(self) -> list:
        return [p for p in self.processes if p.returncode is None]


# ---------------------------------------------------------------------------
# Listener connections
# ---------------------------------------------------------------------------


class FakeConnection:
    """Stand-in for a websockets ServerConnection."""

    _next_port = 50000

    def __init__(self, fail: bool = False, hang: bool = False, answer_pings: bool = True):
        FakeConnection._next_port += 1
        self.remote_address = ("127.0.0.1", FakeConnection._next_port)
        self.state = State.OPEN
        self.sent: list = []
        self.fail = fail
        self.hang = hang
        self.answer_pings = answer_pings
        self.close_code: Optional[int] = None

    async def send(self, payload) -> None:
        if self.state is not State.OPEN or self.fail:
            raise ConnectionClosedError(None, None)
        if self.hang:
            await asyncio.Event().wait()
        self.sent.append(payload)

    async def ping(self):
        if self.state is not State.OPEN:
            raise ConnectionClosedError(None, None)
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.001)
        return waiter

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_code = code
        self.state = State.CLOSED

    def drop(self) -> None:
        """Simulate an abrupt network drop: every later send fails."""
        self.fail = True

    def json_messages(self) -> list:
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    def json_of_type(self, message_type: str) -> list:
        return [m for m in self.json_messages() if m.get("type") == message_type]

    def audio(self) -> list:
        return [m for m in self.sent if isinstance(m, bytes)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> RelayConfig:
    """Relay config with timings shrunk for tests."""
    config = RelayConfig()
    pipeline = config.pipeline
    pipeline.speaker_inactivity_timeout = 0.2
    pipeline.mixer_tick_interval = 0.02
    pipeline.mixer_max_inputs = 3
    pipeline.encoder_idle_timeout = 0.3
    pipeline.global_silence_timeout = 0.3
    pipeline.restart_settle_delay = 0.05
    pipeline.restart_cooldown = 0.0
    config.server.send_timeout = 0.1
    config.server.keepalive_timeout = 0.1
    return config


@pytest.fixture
def source() -> FakeVoiceSource:
    return FakeVoiceSource(names={"alice": "Alice", "bob": "Bob", "carol": "Carol"})


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest_asyncio.fixture
async def ctx(config, source, spawner):
    """Pipeline context wired to fakes; voice connected, encoder not started."""
    ctx = PipelineContext(config, source, spawn=spawner, decoder_factory=FakeDecoder)
    await ctx.voice.connect()
    yield ctx
    await ctx.shutdown()


async def settle(ctx: PipelineContext, delay: float = 0.0) -> None:
    """Let scheduled callbacks and background tasks run to completion."""
    await asyncio.sleep(delay)
    await ctx.drain()
    await asyncio.sleep(0)
