"""
Unit tests for the encoder supervisor.

Tests cover:
- ffmpeg argv for the pipeline PCM format
- Exit, empty output, broken stdin and idle stalls all restarting the pipeline
- Mixer output re-piped to the replacement process
- Exactly one live encoder process at a time

Run with: pytest voice_relay/tests/test_encoder.py -v
"""

import asyncio

import pytest

from conftest import FakeConnection, settle
from voice_relay.broadcaster import Listener
from voice_relay.config import EncoderConfig
from voice_relay.encoder import EncoderState
from voice_relay.errors import EncoderUnavailable


async def wait_for_restarts(ctx, count: int, timeout: float = 2.0) -> None:
    async def poll():
        while ctx.restarts.count < count:
            await asyncio.sleep(0.02)

    await asyncio.wait_for(poll(), timeout)
    await ctx.restarts.wait()


class TestArgs:
    def test_default_args(self):
        args = EncoderConfig().build_args(48000, 1)
        assert args == [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            "s16le",
            "-ar",
            "48000",
            "-ac",
            "1",
            "-i",
            "pipe:0",
            "-af",
            "afftdn",
            "-ac",
            "2",
            "-c:a",
            "libmp3lame",
            "-b:a",
            "128k",
            "-f",
            "mp3",
            "pipe:1",
        ]

    def test_without_noise_filter(self):
        args = EncoderConfig(noise_filter="", bitrate="96k").build_args(48000, 1)
        assert "-af" not in args
        assert args[args.index("-b:a") + 1] == "96k"

    def test_custom_binary(self):
        assert EncoderConfig(ffmpeg_path="/opt/ffmpeg/bin/ffmpeg").build_args(48000, 1)[0] == (
            "/opt/ffmpeg/bin/ffmpeg"
        )


@pytest.mark.asyncio
class TestLifecycle:
    """Spawning, feeding and stopping."""

    async def test_start_spawns_with_args(self, ctx, spawner):
        await ctx.encoder.start()

        assert ctx.encoder.state is EncoderState.RUNNING
        assert spawner.latest.args == ctx.encoder.args
        assert ctx.encoder.live
        assert ctx.stats.encoder_spawns == 1

    async def test_feed_writes_to_stdin(self, ctx, spawner):
        await ctx.encoder.start()
        assert await ctx.encoder.feed(b"\x01\x00" * 4) is True
        assert bytes(spawner.latest.stdin.data) == b"\x01\x00" * 4

    async def test_feed_dropped_when_not_running(self, ctx):
        assert await ctx.encoder.feed(b"\x00\x00") is False

    async def test_spawn_failure(self, ctx, spawner):
        spawner.fail = True
        with pytest.raises(EncoderUnavailable):
            await ctx.encoder.start()
        assert ctx.encoder.state is EncoderState.FAILED
        assert not ctx.encoder.live

    async def test_stop_is_idempotent(self, ctx, spawner):
        await ctx.encoder.start()
        process = spawner.latest

        first = await ctx.encoder.stop()
        second = await ctx.encoder.stop()

        assert process.killed
        assert process.stdin.closed
        assert "process" in first.released
        assert second.already_released is True
        assert ctx.encoder.state is EncoderState.IDLE

    async def test_restart_in_place_keeps_one_process(self, ctx, spawner):
        await ctx.encoder.start()
        await ctx.encoder.start()
        await settle(ctx, 0.01)

        first, second = spawner.processes
        assert first.killed
        assert spawner.live() == [second]
        # The old process dying is not a fault
        assert ctx.restarts.count == 0


@pytest.mark.asyncio
class TestOutput:
    """Chunks from stdout to listeners."""

    async def test_chunks_forwarded_verbatim(self, ctx, spawner):
        connection = FakeConnection()
        await ctx.broadcaster.register(Listener(connection))
        await ctx.encoder.start()

        spawner.latest.emit(b"\xff\xfbframe-1")
        await asyncio.sleep(0.01)

        assert connection.audio() == [b"\xff\xfbframe-1"]
        assert ctx.stats.chunks_forwarded == 1
        assert ctx.stats.bytes_forwarded == len(b"\xff\xfbframe-1")

    async def test_output_keeps_idle_watchdog_quiet(self, ctx, spawner):
        await ctx.encoder.start()
        for _ in range(6):
            spawner.latest.emit(b"frame")
            await asyncio.sleep(0.1)
        assert ctx.encoder.state is EncoderState.RUNNING
        assert ctx.restarts.count == 0


@pytest.mark.asyncio
class TestFaults:
    """Every encoder fault ends in one full restart."""

    async def test_exit_respawns_and_repipes(self, ctx, spawner):
        await ctx.encoder.start()
        ctx.mixer.start()
        first = spawner.latest

        first.exit(1)
        await settle(ctx, 0.01)

        assert ctx.restarts.count == 1
        assert len(spawner.processes) == 2
        second = spawner.latest
        assert spawner.live() == [second]
        assert ctx.encoder.state is EncoderState.RUNNING

        await asyncio.sleep(0.1)
        # Mixer output now lands in the replacement process
        assert len(second.stdin.data) > 0

    async def test_exit_and_eof_restart_once(self, ctx, spawner):
        await ctx.encoder.start()
        # Exit closes stdout too, so both the reader and the exit watcher notice
        spawner.latest.exit(1)
        await settle(ctx, 0.01)
        assert ctx.restarts.count == 1

    async def test_empty_chunk_is_a_fault(self, ctx, spawner):
        await ctx.encoder.start()
        spawner.latest.close_stdout()
        await settle(ctx, 0.01)

        assert ctx.restarts.count == 1
        assert ctx.restarts.history[0].reason == "encoder: empty output chunk"

    async def test_idle_encoder_is_restarted(self, ctx, spawner):
        await ctx.encoder.start()
        await asyncio.sleep(0.35)
        await ctx.restarts.wait()

        assert ctx.restarts.count == 1
        assert ctx.restarts.history[0].reason.startswith("encoder: no output")
        assert spawner.processes[0].killed
        assert spawner.live() == [spawner.latest]

    async def test_broken_stdin_is_a_fault(self, ctx, spawner):
        await ctx.encoder.start()
        spawner.latest.stdin.broken = True

        assert await ctx.encoder.feed(b"\x00\x00") is False
        assert ctx.encoder.state is EncoderState.FAILED
        await settle(ctx)

        assert ctx.restarts.count == 1
        assert ctx.encoder.state is EncoderState.RUNNING

    async def test_never_more_than_one_live_process(self, ctx, spawner):
        await ctx.encoder.start()
        for _ in range(3):
            spawner.latest.exit(1)
            await settle(ctx, 0.01)
            assert len(spawner.live()) == 1
        assert ctx.restarts.count == 3

    async def test_crash_during_cooldown_still_recovers(self, ctx, spawner):
        ctx.restarts.cooldown = 0.5
        await ctx.encoder.start()
        spawner.latest.exit(1)
        await settle(ctx, 0.01)
        assert ctx.restarts.count == 1

        spawner.latest.exit(1)
        await asyncio.sleep(0.01)
        assert ctx.encoder.state is EncoderState.FAILED
        assert ctx.restarts.pending

        await wait_for_restarts(ctx, 2)

        assert len(spawner.processes) == 3
        assert spawner.live() == [spawner.latest]
        assert ctx.encoder.state is EncoderState.RUNNING

    async def test_failed_spawn_is_retried(self, ctx, spawner):
        spawner.fail = True
        with pytest.raises(EncoderUnavailable):
            await ctx.encoder.start()
        spawner.fail = False

        await wait_for_restarts(ctx, 1)

        assert ctx.restarts.history[0].reason.startswith("encoder: spawn failed")
        assert len(spawner.processes) == 1
        assert ctx.encoder.live
        assert ctx.encoder.state is EncoderState.RUNNING

    async def test_spawn_that_keeps_failing_keeps_retrying(self, ctx, spawner):
        spawner.fail = True
        with pytest.raises(EncoderUnavailable):
            await ctx.encoder.start()

        await wait_for_restarts(ctx, 2)

        assert ctx.encoder.state is EncoderState.FAILED
        assert spawner.processes == []
        assert "encoder start" in ctx.restarts.history[-1].failed_steps

    async def test_fault_during_restart_is_retried(self, ctx, spawner, monkeypatch):
        await ctx.encoder.start()
        reconnect = ctx.voice.reconnect

        async def reconnect_after_crash():
            # The replacement dies after its start step has already run
            spawner.latest.exit(1)
            await asyncio.sleep(0.02)
            return await reconnect()

        monkeypatch.setattr(ctx.voice, "reconnect", reconnect_after_crash)
        await ctx.restarts.full_restart("manual")
        assert ctx.restarts.ignored == 1
        assert ctx.encoder.state is EncoderState.FAILED

        monkeypatch.setattr(ctx.voice, "reconnect", reconnect)
        await wait_for_restarts(ctx, 2)

        assert len(spawner.processes) == 3
        assert spawner.live() == [spawner.latest]
        assert ctx.encoder.state is EncoderState.RUNNING
