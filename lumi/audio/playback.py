"""
Lumi — Playback Scheduler

================================================================================
GAPLESS STREAMED PLAYBACK ON A SAMPLE-ACCURATE OUTPUT CLOCK
================================================================================

Model audio arrives as a stream of small PCM chunks. Each chunk is:

  1. Queued on a single-worker task queue (arrival order == schedule order).
  2. Decoded off the event loop (executor thread).
  3. Given its own attack/release ramp so abutting chunks don't click.
  4. Scheduled at the "next start time" cursor, which then advances by the
     chunk duration. An unset cursor, or one that fell behind the clock, is
     placed at now + buffering delay.

interrupt() stops every active segment, drains the queue, resets the cursor
and invalidates any decode still in flight: late chunks of an interrupted
turn are dropped, never played.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Set, Tuple, Union

import numpy as np

from ..core.config import AudioConfig, audio_cfg
from ..core.interfaces import AudioOutput, PlaybackHandle
from .pcm import decode_pcm16

logger = logging.getLogger("lumi.playback")

Chunk = Union[bytes, str]
Decoder = Callable[[Chunk, int, int], np.ndarray]


@dataclass(eq=False)
class ScheduledSegment:
    """One decoded chunk placed on the output clock."""
    start_time: float
    duration: float
    handle: Optional[PlaybackHandle] = None

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


def apply_envelope(samples: np.ndarray, sample_rate: int, fade_duration: float) -> np.ndarray:
    """Linear attack + release ramps on a (channels, frames) buffer."""
    frames = samples.shape[-1]
    fade = min(int(round(fade_duration * sample_rate)), frames // 2)
    if fade <= 0:
        return samples
    out = samples.copy()
    ramp = np.linspace(0.0, 1.0, fade, endpoint=False, dtype=np.float32)
    out[..., :fade] *= ramp
    out[..., frames - fade:] *= ramp[::-1]
    return out


class PlaybackScheduler:
    """
    Serialized decode-and-schedule of streamed audio chunks.

    Lifecycle:
      enqueue(chunk)* → interrupt()* → close()
    """

    def __init__(
        self,
        output: AudioOutput,
        config: AudioConfig = audio_cfg,
        on_speaking_change: Optional[Callable[[bool], None]] = None,
        decoder: Decoder = decode_pcm16,
        log_prefix: str = "",
    ) -> None:
        self._output = output
        self._cfg = config
        self._on_speaking_change = on_speaking_change
        self._decoder = decoder
        self._log_prefix = log_prefix

        self._queue: "asyncio.Queue[Chunk]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        # None until the first segment of a turn is placed
        self._next_start_time: Optional[float] = None
        self._active: Set[ScheduledSegment] = set()
        self._generation = 0
        self._speaking = False
        self._closed = False

    # ── Read-only state ───────────────────────────────────────────────────

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    @property
    def next_start_time(self) -> Optional[float]:
        return self._next_start_time

    @property
    def active_segments(self) -> Tuple[ScheduledSegment, ...]:
        return tuple(sorted(self._active, key=lambda s: s.start_time))

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Input ─────────────────────────────────────────────────────────────

    def enqueue(self, chunk: Chunk) -> None:
        """Queue one encoded chunk. Must be called from the event loop."""
        if self._closed:
            return
        self._queue.put_nowait(chunk)
        if self._worker is None or self._worker.done():
            self._loop = asyncio.get_running_loop()
            self._worker = self._loop.create_task(self._run())

    async def wait_idle(self) -> None:
        """Wait until every queued chunk has been decoded and scheduled (or dropped)."""
        await self._queue.join()

    # ── Worker ────────────────────────────────────────────────────────────

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            chunk = await self._queue.get()
            generation = self._generation
            try:
                samples = await loop.run_in_executor(
                    None, self._decoder, chunk, self._output.sample_rate, self._cfg.output_channels,
                )
            except Exception as e:
                logger.warning(f"{self._log_prefix}Dropping undecodable audio chunk: {e}")
                self._queue.task_done()
                continue

            try:
                if generation != self._generation or self._closed or self._output.closed:
                    logger.debug(f"{self._log_prefix}Discarding stale audio chunk")
                    continue
                if samples.shape[-1] == 0:
                    continue
                self._schedule(samples)
            except Exception as e:
                logger.error(f"{self._log_prefix}Audio scheduling error: {e}")
            finally:
                self._queue.task_done()

    def _schedule(self, samples: np.ndarray) -> None:
        rate = self._output.sample_rate
        now = self._output.current_time
        if self._next_start_time is None or self._next_start_time < now:
            self._next_start_time = now + self._cfg.buffering_delay

        shaped = apply_envelope(samples, rate, self._cfg.fade_duration)
        segment = ScheduledSegment(
            start_time=self._next_start_time,
            duration=samples.shape[-1] / float(rate),
        )
        generation = self._generation
        segment.handle = self._output.play(
            shaped,
            segment.start_time,
            on_ended=lambda: self._notify_ended(segment, generation),
        )
        self._next_start_time += segment.duration
        self._active.add(segment)
        self._set_speaking(True)

    def _notify_ended(self, segment: ScheduledSegment, generation: int) -> None:
        # Invoked from the output device thread
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._segment_ended, segment, generation)
        except RuntimeError:
            logger.debug(f"{self._log_prefix}Event loop gone; segment end ignored")

    def _segment_ended(self, segment: ScheduledSegment, generation: int) -> None:
        if generation != self._generation:
            return
        self._active.discard(segment)
        if not self._active:
            self._set_speaking(False)

    def _set_speaking(self, speaking: bool) -> None:
        if speaking == self._speaking:
            return
        self._speaking = speaking
        if self._on_speaking_change:
            try:
                self._on_speaking_change(speaking)
            except Exception as e:
                logger.error(f"{self._log_prefix}Speaking callback error: {e}")

    # ── Interruption / teardown ───────────────────────────────────────────

    def interrupt(self) -> None:
        """Hard stop: silence everything, drop pending chunks, reset the cursor."""
        self._generation += 1

        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            dropped += 1

        stopped = list(self._active)
        self._active.clear()
        for segment in stopped:
            if segment.handle is not None:
                try:
                    segment.handle.stop()
                except Exception as e:
                    logger.debug(f"{self._log_prefix}Segment stop error: {e}")

        self._next_start_time = None
        self._set_speaking(False)
        if stopped or dropped:
            logger.info(
                f"{self._log_prefix}Playback interrupted "
                f"(stopped={len(stopped)}, dropped={dropped})"
            )

    async def close(self) -> None:
        if self._closed:
            return
        self.interrupt()
        self._closed = True
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
