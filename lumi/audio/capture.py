"""
Lumi — Capture Pipeline

Microphone → level meter → gate → resample to 16 kHz → PCM16 → transport.

The device callback runs on a PortAudio thread. It only meters, checks the
mute/live gate and hands the block to the event loop; encoding and sending
happen in a fire-and-forget task so the audio thread never blocks.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Set

import numpy as np

from ..core.config import AudioConfig, audio_cfg
from ..core.errors import DeviceUnavailableError
from ..core.interfaces import AudioInput, SendMedia
from .output import LevelMeter
from .pcm import encode_pcm16, resample_linear

logger = logging.getLogger("lumi.capture")


class MicrophoneInput:
    """AudioInput backed by a sounddevice InputStream at the device's native rate."""

    def __init__(self, config: AudioConfig = audio_cfg) -> None:
        self._cfg = config
        self._stream: Any = None
        self._sample_rate = config.capture_sample_rate

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    def open(self, callback: Callable[[np.ndarray], None]) -> None:
        import sounddevice as sd

        def _on_audio(indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
            if status:
                logger.debug(f"Input stream status: {status}")
            callback(indata[:, 0].copy())

        try:
            info = sd.query_devices(self._cfg.input_device, kind="input")
            self._sample_rate = int(info["default_samplerate"])
            self._stream = sd.InputStream(
                samplerate=self._sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self._cfg.capture_block_size,
                device=self._cfg.input_device,
                callback=_on_audio,
            )
        except Exception as e:
            self._stream = None
            raise DeviceUnavailableError(f"Microphone unavailable: {e}") from e
        logger.info(f"Microphone opened ({self._sample_rate} Hz)")

    def start(self) -> None:
        if self._stream is not None:
            self._stream.start()

    def close(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.stop()
            self._stream.close()
        except Exception as e:
            logger.warning(f"Microphone close error: {e}")
        self._stream = None


class CapturePipeline:
    """
    Streams gated microphone frames to the transport.

    Lifecycle:
      open() → start() → close()
    Frames are dropped (never buffered) while muted or before the live flag.
    """

    def __init__(
        self,
        source: AudioInput,
        send: SendMedia,
        is_live: Callable[[], bool],
        is_muted: Callable[[], bool],
        config: AudioConfig = audio_cfg,
        log_prefix: str = "",
    ) -> None:
        self._source = source
        self._send = send
        self._is_live = is_live
        self._is_muted = is_muted
        self._cfg = config
        self._log_prefix = log_prefix

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._started = False

        self.meter = LevelMeter(bins=config.analyser_bins)
        self.frames_sent = 0
        self.frames_dropped = 0

    def open(self) -> None:
        """Acquire the device. Raises DeviceUnavailableError."""
        self._loop = asyncio.get_running_loop()
        self._source.open(self._on_block)

    def start(self) -> None:
        if self._closed or self._started:
            return
        self._source.start()
        self._started = True
        logger.info(f"{self._log_prefix}Microphone streaming started")

    def _on_block(self, block: np.ndarray) -> None:
        # Audio thread: no awaiting, no raising
        if self._closed:
            return
        self.meter.update(block)
        if self._is_muted() or not self._is_live():
            self.frames_dropped += 1
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._submit, np.array(block, dtype=np.float32))
        except RuntimeError:
            self.frames_dropped += 1

    def _submit(self, block: np.ndarray) -> None:
        if self._closed:
            return
        task = asyncio.create_task(self._encode_and_send(block))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _encode_and_send(self, block: np.ndarray) -> None:
        downsampled = resample_linear(block, self._source.sample_rate, self._cfg.capture_sample_rate)
        blob = encode_pcm16(downsampled)
        try:
            await self._send(blob)
            self.frames_sent += 1
        except Exception as e:
            logger.debug(f"{self._log_prefix}Audio frame send failed: {e}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._source.close()
        except DeviceUnavailableError as e:
            logger.warning(f"{self._log_prefix}Microphone release error: {e}")
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.meter.reset()
        logger.info(
            f"{self._log_prefix}Capture closed (sent={self.frames_sent}, dropped={self.frames_dropped})"
        )
