"""
Lumi — PCM Codec & Resampler

Float32 frames in [-1, 1] ⇄ little-endian signed 16-bit PCM.

  • resample_linear — hardware rate → 16 kHz by linear interpolation
  • encode_pcm16    — outbound microphone frames (audio/pcm;rate=16000)
  • decode_pcm16    — inbound model audio (24 kHz mono by default)
"""

from __future__ import annotations

import base64
import binascii
from typing import Union

import numpy as np

from ..core.interfaces import MediaBlob

TARGET_RATE = 16000
PCM_MIME_TYPE = f"audio/pcm;rate={TARGET_RATE}"

_INT16_SCALE = 32768.0


def resample_linear(samples: np.ndarray, from_rate: int, to_rate: int = TARGET_RATE) -> np.ndarray:
    """
    Downsample by linear interpolation.

    Upsampling is not supported: when from_rate < to_rate the input is
    returned unchanged.
    """
    samples = np.asarray(samples, dtype=np.float32)
    if from_rate == to_rate or from_rate < to_rate:
        return samples
    if samples.size == 0:
        return samples.copy()

    ratio = from_rate / to_rate
    out_len = -(-samples.size * to_rate // from_rate)  # ceil(len / ratio)
    offsets = np.arange(out_len, dtype=np.float64) * ratio
    index = np.floor(offsets).astype(np.int64)
    t = (offsets - index).astype(np.float32)

    # Zero-pad past the end so index + 1 is always addressable
    padded = np.concatenate([samples, np.zeros(2, dtype=np.float32)])
    s0 = padded[index]
    s1 = padded[index + 1]
    return (s0 * (1.0 - t) + s1 * t).astype(np.float32)


def encode_pcm16(samples: np.ndarray) -> MediaBlob:
    """Scale to int16 (clamping overflow) and tag as 16 kHz mono PCM."""
    samples = np.asarray(samples, dtype=np.float32)
    scaled = np.clip(samples * _INT16_SCALE, -32768, 32767)
    pcm = scaled.astype("<i2")
    return MediaBlob(data=pcm.tobytes(), mime_type=PCM_MIME_TYPE)


def decode_pcm16(
    data: Union[bytes, bytearray, memoryview, str],
    sample_rate: int = 24000,
    channels: int = 1,
) -> np.ndarray:
    """
    Interleaved int16 bytes → float32 array of shape (channels, frames).

    A base64 string is accepted as well as raw bytes. A trailing odd byte
    (and any incomplete final frame) is ignored. ``sample_rate`` is carried
    by the caller; it does not affect the decoded samples.
    """
    if channels < 1:
        raise ValueError(f"channels must be >= 1, got {channels}")
    if isinstance(data, str):
        try:
            raw = base64.b64decode(data, validate=True)
        except binascii.Error as e:
            raise ValueError(f"Invalid base64 audio payload: {e}") from e
    else:
        raw = bytes(data)

    usable = len(raw) - (len(raw) % 2)
    pcm = np.frombuffer(raw[:usable], dtype="<i2")
    frames = pcm.size // channels
    pcm = pcm[: frames * channels]
    return (pcm.reshape(frames, channels).T.astype(np.float32) / _INT16_SCALE)


def duration_of(samples: np.ndarray, sample_rate: int) -> float:
    """Seconds covered by a (channels, frames) or 1-D buffer."""
    frames = samples.shape[-1] if samples.ndim else 0
    return frames / float(sample_rate)
