"""
Lumi — Output Clock & Level Meters

SoundDeviceOutput is a tiny software mixer on top of a sounddevice
OutputStream. The number of frames rendered by the stream callback is the
clock: current_time = frames_rendered / sample_rate. Buffers are placed at
absolute clock times, which is what the playback scheduler needs for
gapless stitching.

LevelMeter is the read-only analyser the UI polls for visualization.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from ..core.config import AudioConfig, audio_cfg
from ..core.errors import DeviceUnavailableError

logger = logging.getLogger("lumi.output")


class LevelMeter:
    """RMS level + coarse magnitude spectrum of the most recent block."""

    def __init__(self, bins: int = 32, smoothing: float = 0.8) -> None:
        self._bins = bins
        self._smoothing = smoothing
        self._lock = threading.Lock()
        self._rms = 0.0
        self._spectrum = np.zeros(bins, dtype=np.float32)

    def update(self, block: np.ndarray) -> None:
        mono = np.asarray(block, dtype=np.float32).reshape(-1)
        if mono.size == 0:
            return

        rms = float(np.sqrt(np.mean(mono ** 2)))
        magnitude = np.abs(np.fft.rfft(mono)) / mono.size
        edges = np.linspace(0, magnitude.size, self._bins + 1).astype(int)
        binned = np.array(
            [magnitude[a:b].mean() if b > a else 0.0 for a, b in zip(edges[:-1], edges[1:])],
            dtype=np.float32,
        )

        with self._lock:
            self._rms = rms
            self._spectrum = self._smoothing * self._spectrum + (1 - self._smoothing) * binned

    def reset(self) -> None:
        with self._lock:
            self._rms = 0.0
            self._spectrum = np.zeros(self._bins, dtype=np.float32)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "rms": round(self._rms, 4),
                "spectrum": [round(float(v), 5) for v in self._spectrum],
            }


class _Voice:
    """A buffer placed on the output clock (PlaybackHandle)."""

    def __init__(
        self,
        owner: "SoundDeviceOutput",
        samples: np.ndarray,
        start_frame: int,
        on_ended: Optional[Callable[[], None]],
    ) -> None:
        self._owner = owner
        self.samples = samples
        self.start_frame = start_frame
        self.end_frame = start_frame + samples.shape[-1]
        self.on_ended = on_ended

    @property
    def start_time(self) -> float:
        return self.start_frame / float(self._owner.sample_rate)

    @property
    def duration(self) -> float:
        return self.samples.shape[-1] / float(self._owner.sample_rate)

    def stop(self) -> None:
        self._owner._finish(self)


class SoundDeviceOutput:
    """
    AudioOutput backed by a PortAudio output stream.

    Lifecycle:
      open() → play(...)* → close()
    """

    def __init__(self, config: AudioConfig = audio_cfg) -> None:
        self._cfg = config
        self._sample_rate = config.output_sample_rate
        self._channels = config.output_channels
        self._stream: Any = None
        self._lock = threading.Lock()
        self._voices: List[_Voice] = []
        self._frames_rendered = 0
        self._closed = False
        self.meter = LevelMeter(bins=config.analyser_bins)

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self._sample_rate)

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> None:
        import sounddevice as sd

        try:
            self._stream = sd.OutputStream(
                samplerate=self._sample_rate,
                channels=self._channels,
                dtype="float32",
                device=self._cfg.output_device,
                callback=self._callback,
            )
            self._stream.start()
        except Exception as e:
            self._stream = None
            raise DeviceUnavailableError(f"Audio output unavailable: {e}") from e
        logger.info(f"Audio output started ({self._sample_rate} Hz, {self._channels} ch)")

    def play(
        self,
        samples: np.ndarray,
        start_time: float,
        on_ended: Optional[Callable[[], None]] = None,
    ) -> _Voice:
        buf = np.atleast_2d(np.asarray(samples, dtype=np.float32))
        with self._lock:
            start_frame = max(int(round(start_time * self._sample_rate)), self._frames_rendered)
            voice = _Voice(self, buf, start_frame, on_ended)
            if not self._closed:
                self._voices.append(voice)
        return voice

    def _finish(self, voice: _Voice) -> None:
        with self._lock:
            try:
                self._voices.remove(voice)
            except ValueError:
                return  # Already finished
        if voice.on_ended:
            voice.on_ended()

    def _callback(self, outdata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.debug(f"Output stream status: {status}")
        outdata.fill(0)
        finished: List[_Voice] = []

        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            for voice in self._voices:
                if voice.start_frame >= block_end:
                    continue
                lo = max(voice.start_frame, block_start)
                hi = min(voice.end_frame, block_end)
                if hi > lo:
                    src = voice.samples[:, lo - voice.start_frame:hi - voice.start_frame]
                    dst = outdata[lo - block_start:hi - block_start]
                    if src.shape[0] == dst.shape[1]:
                        dst += src.T
                    else:
                        dst += src.mean(axis=0)[:, None]
                if voice.end_frame <= block_end:
                    finished.append(voice)
            for voice in finished:
                self._voices.remove(voice)
            self._frames_rendered = block_end

        np.clip(outdata, -1.0, 1.0, out=outdata)
        self.meter.update(outdata[:, 0])

        for voice in finished:
            if voice.on_ended:
                try:
                    voice.on_ended()
                except Exception as e:
                    logger.error(f"on_ended callback error: {e}")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning(f"Audio output close error: {e}")
            self._stream = None
        with self._lock:
            self._voices.clear()
        self.meter.reset()
        logger.info("Audio output closed")
