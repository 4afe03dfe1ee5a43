"""
PCM mixer for all active speakers.

Every input is a buffer of mono s16le PCM at the pipeline sample rate. On
each tick the mixer pulls as many samples as wall-clock time has advanced
from every attached input, sums them in int32 and soft-clips back to int16.
Inputs with nothing buffered contribute silence, and with no inputs at all
the tick still emits silence, so the encoder sees one continuous stream.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Hashable, Optional

import numpy as np

from .config import PipelineConfig
from .errors import CapacityExceeded, TeardownResult

logger = logging.getLogger(__name__)

PCMOutput = Callable[[bytes], Awaitable[None]]


class MixerInput:
    """One speaker's PCM buffer inside the mixer."""

    def __init__(self, key: Hashable, max_bytes: int):
        self.key = key
        self.attached = False
        self.dropped_bytes = 0
        self._max_bytes = max_bytes
        self._buffer = bytearray()

    def __repr__(self) -> str:
        return f"MixerInput({self.key!r}, attached={self.attached}, buffered={len(self._buffer)})"

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def push(self, pcm: bytes) -> None:
        """Append PCM. Oldest bytes are dropped past the buffer limit."""
        if not self.attached or not pcm:
            return
        self._buffer += pcm
        overflow = len(self._buffer) - self._max_bytes
        if overflow > 0:
            # Keep sample alignment when trimming
            overflow += overflow % 2
            del self._buffer[:overflow]
            self.dropped_bytes += overflow

    def take(self, n_bytes: int) -> bytes:
        """Remove and return up to ``n_bytes`` of buffered PCM."""
        chunk = bytes(self._buffer[:n_bytes])
        del self._buffer[:n_bytes]
        return chunk

    def release(self) -> None:
        self.attached = False
        self._buffer.clear()


class Mixer:
    """
    Periodic mixer producing one continuous PCM stream.

    ``add_input``/``remove_input`` only touch the input map, so an attach or
    detach takes effect no later than the next tick.
    """

    def __init__(self, config: PipelineConfig, output: PCMOutput):
        self.config = config
        self.max_inputs = config.mixer_max_inputs
        self.tick_interval = config.mixer_tick_interval
        self._output = output
        self._inputs: Dict[Hashable, MixerInput] = {}
        self._max_input_bytes = int(
            config.sample_rate * config.mixer_input_buffer_seconds
        ) * config.bytes_per_sample

        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_tick: Optional[float] = None
        self._sample_remainder = 0.0

        self.ticks = 0
        self.rejected_inputs = 0

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    @property
    def input_count(self) -> int:
        return len(self._inputs)

    def inputs(self) -> list:
        return list(self._inputs.values())

    def add_input(self, key: Hashable) -> MixerInput:
        """Attach a new input.

        Raises CapacityExceeded when the mixer is full; existing inputs are
        left untouched. Attaching a key that is already present replaces the
        old input.
        """
        existing = self._inputs.get(key)
        if existing is not None:
            self.remove_input(existing)
        if len(self._inputs) >= self.max_inputs:
            self.rejected_inputs += 1
            raise CapacityExceeded(
                f"Mixer full ({self.max_inputs} inputs), rejecting {key!r}"
            )
        mixer_input = MixerInput(key, self._max_input_bytes)
        mixer_input.attached = True
        self._inputs[key] = mixer_input
        logger.debug(f"[MIXER] Attached input {key!r} ({len(self._inputs)}/{self.max_inputs})")
        return mixer_input

    def remove_input(self, mixer_input: Optional[MixerInput]) -> bool:
        """Detach and release an input. Returns False if it was not attached."""
        if mixer_input is None:
            return False
        current = self._inputs.get(mixer_input.key)
        if current is not mixer_input:
            mixer_input.release()
            return False
        del self._inputs[mixer_input.key]
        mixer_input.release()
        logger.debug(f"[MIXER] Detached input {mixer_input.key!r} ({len(self._inputs)} left)")
        return True

    def clear(self) -> TeardownResult:
        """Detach every input."""
        result = TeardownResult()
        if not self._inputs:
            result.already_released = True
        for mixer_input in list(self._inputs.values()):
            if self.remove_input(mixer_input):
                result.record(f"mixer_input:{mixer_input.key}")
        return result

    # ------------------------------------------------------------------
    # Mixing
    # ------------------------------------------------------------------

    def mix(self, n_samples: int) -> bytes:
        """Mix ``n_samples`` samples from every attached input."""
        channels = self.config.channels
        total = n_samples * channels
        if total <= 0:
            return b""

        accumulator = np.zeros(total, dtype=np.int32)
        n_bytes = total * 2
        for mixer_input in list(self._inputs.values()):
            chunk = mixer_input.take(n_bytes)
            if len(chunk) < 2:
                continue
            samples = np.frombuffer(chunk[: len(chunk) - len(chunk) % 2], dtype=np.int16)
            accumulator[: len(samples)] += samples

        # Soft clipping: tanh compression scaled to int16 range
        max_val = int(np.max(np.abs(accumulator)))
        if max_val > 32767:
            normalized = accumulator.astype(np.float64) / max_val
            mixed = (np.tanh(normalized * 1.5) * 32767).astype(np.int16)
        else:
            mixed = accumulator.astype(np.int16)
        return mixed.tobytes()

    def _samples_due(self, now: float) -> int:
        if self._last_tick is None:
            elapsed = self.tick_interval
        else:
            # Bounded so a stalled loop does not produce a burst of silence
            elapsed = min(now - self._last_tick, self.tick_interval * 4)
        self._last_tick = now
        exact = elapsed * self.config.sample_rate + self._sample_remainder
        samples = int(exact)
        self._sample_remainder = exact - samples
        return samples

    async def tick(self) -> bytes:
        """Run one mix step and hand the result to the output."""
        pcm = self.mix(self._samples_due(time.monotonic()))
        self.ticks += 1
        if pcm:
            try:
                await self._output(pcm)
            except Exception as e:
                logger.warning(f"[MIXER] Output failed: {e}")
        return pcm

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._last_tick = None
        self._sample_remainder = 0.0
        self._task = asyncio.create_task(self._run(), name="mixer")
        logger.info(
            f"[MIXER] Started: {self.tick_interval * 1000:.0f} ms ticks, "
            f"max {self.max_inputs} inputs"
        )

    async def stop(self) -> TeardownResult:
        result = TeardownResult()
        self._running = False
        task, self._task = self._task, None
        if task is None:
            result.already_released = True
            return result
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        result.record("mixer_task")
        return result

    async def _run(self) -> None:
        while self._running:
            await asyncio.sleep(self.tick_interval)
            await self.tick()
