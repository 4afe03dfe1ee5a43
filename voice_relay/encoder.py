"""
Encoder process supervisor.

Owns exactly one ffmpeg process that turns the mixer's raw PCM into
compressed frames for listeners:

    Mixer --PCM--> stdin [ffmpeg] stdout --chunks--> Broadcaster

The supervisor never keeps going with a dead or stalled encoder. Process
exit, an empty read from stdout, a broken stdin pipe and
``encoder_idle_timeout`` seconds without output all mark it FAILED and hand
recovery to the restart coordinator. A spawn that fails is retried the same
way once the idle window passes, and so is a fault the coordinator refused
because a restart was already under way. Each spawn gets a generation
number, and output or exit notices from an older generation are ignored.
"""

import asyncio
import enum
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

from .errors import EncoderUnavailable, TeardownResult
from .timers import Watchdog

if TYPE_CHECKING:
    from .context import PipelineContext

logger = logging.getLogger(__name__)

SpawnFn = Callable[[List[str]], Awaitable[asyncio.subprocess.Process]]


class EncoderState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


async def spawn_ffmpeg(args: List[str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


class EncoderSupervisor:
    """Lifecycle of the single live encoder process."""

    def __init__(self, ctx: "PipelineContext", spawn: Optional[SpawnFn] = None):
        self.ctx = ctx
        self.config = ctx.config.encoder
        pipeline = ctx.config.pipeline
        self._args = self.config.build_args(pipeline.sample_rate, pipeline.channels)
        self._spawn = spawn or spawn_ffmpeg

        self.state = EncoderState.IDLE
        self.generation = 0
        self.last_fault: Optional[str] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._tasks: List[asyncio.Task] = []
        self._idle = Watchdog(pipeline.encoder_idle_timeout, self._on_idle, name="encoder-idle")

    @property
    def args(self) -> List[str]:
        return list(self._args)

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    @property
    def live(self) -> bool:
        return self._process is not None and self._process.returncode is None

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn a fresh encoder, terminating any previous one first."""
        if self._process is not None:
            await self.stop()

        self.state = EncoderState.STARTING
        self.generation += 1
        generation = self.generation
        try:
            process = await self._spawn(self._args)
        except OSError as e:
            self.state = EncoderState.FAILED
            self.last_fault = f"spawn failed: {e}"
            logger.error(f"[ENCODER] Could not start {self._args[0]}: {e}")
            # No output will arrive; the idle window doubles as the retry delay
            self._idle.arm()
            raise EncoderUnavailable(str(e)) from e

        self._process = process
        self.ctx.stats.encoder_spawns += 1
        self._tasks = [
            asyncio.create_task(self._read_output(process, generation), name="encoder-stdout"),
            asyncio.create_task(self._watch_exit(process, generation), name="encoder-exit"),
        ]
        if process.stderr is not None:
            self._tasks.append(
                asyncio.create_task(self._drain_stderr(process), name="encoder-stderr")
            )
        self._idle.arm()
        self.state = EncoderState.RUNNING
        logger.info(
            f"[ENCODER] Started generation {generation} (pid {process.pid})",
            extra={"generation": generation},
        )

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def feed(self, pcm: bytes) -> bool:
        """Write mixed PCM to the encoder. Dropped unless it is running."""
        process = self._process
        if self.state is not EncoderState.RUNNING or process is None or process.stdin is None:
            return False
        try:
            process.stdin.write(pcm)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._fault(f"stdin closed: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Output and liveness
    # ------------------------------------------------------------------

    async def _read_output(self, process, generation: int) -> None:
        while True:
            chunk = await process.stdout.read(self.config.read_size)
            if generation != self.generation:
                return
            if not chunk:
                self._fault("empty output chunk")
                return
            self._idle.reset()
            self.ctx.stats.chunks_forwarded += 1
            self.ctx.stats.bytes_forwarded += len(chunk)
            await self.ctx.broadcaster.broadcast_audio(chunk)

    async def _watch_exit(self, process, generation: int) -> None:
        returncode = await process.wait()
        if generation != self.generation:
            return
        self._fault(f"process exited with code {returncode}")

    async def _drain_stderr(self, process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            logger.debug(f"[ENCODER] ffmpeg: {line.decode(errors='replace').rstrip()}")

    def _on_idle(self) -> None:
        if self.state is EncoderState.FAILED:
            logger.warning(f"[ENCODER] Still failed ({self.last_fault}), requesting restart")
            self._request_restart(self.last_fault)
            return
        self._fault(f"no output for {self._idle.timeout:.1f}s")

    def _fault(self, reason: str) -> None:
        if self.state is not EncoderState.RUNNING:
            return
        self.state = EncoderState.FAILED
        self.last_fault = reason
        self._idle.cancel()
        logger.warning(
            f"[ENCODER] Generation {self.generation} failed: {reason}",
            extra={"generation": self.generation, "reason": reason},
        )
        self._request_restart(reason)

    def _request_restart(self, reason: str) -> None:
        if not self.ctx.restarts.request(f"encoder: {reason}"):
            # The restart under way may have passed its encoder steps already
            self._idle.arm()

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self) -> TeardownResult:
        """Kill the current process and wait until it has exited."""
        result = TeardownResult()
        self._idle.cancel()
        process, self._process = self._process, None
        tasks, self._tasks = self._tasks, []
        if process is None:
            result.already_released = True
            if self.state is not EncoderState.FAILED:
                self.state = EncoderState.IDLE
            return result

        self.state = EncoderState.STOPPING
        # Outstanding output/exit notices belong to a dead generation now
        self.generation += 1

        current = asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()

        if process.stdin is not None:
            try:
                process.stdin.close()
            except Exception as e:
                result.fail("stdin", e)

        if process.returncode is None:
            try:
                process.kill()
                result.record("process")
            except ProcessLookupError:
                result.already_released = True
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.kill_timeout)
        except asyncio.TimeoutError as e:
            result.fail("process_wait", e)
            logger.error(f"[ENCODER] pid {process.pid} did not exit after kill")

        for task in tasks:
            if task is not current:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    result.fail(task.get_name(), e)

        self.state = EncoderState.IDLE
        logger.info(f"[ENCODER] Stopped pid {process.pid} (returncode {process.returncode})")
        return result
