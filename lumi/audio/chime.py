"""
Lumi — Feedback Chimes

Short synthesized cues played through the same output clock as the
model's voice:
  • "success"      — sparkle sweep C5 → C6 (image ready)
  • "notification" — A4 → A5 blip (progress updated)
"""

from __future__ import annotations

import numpy as np

CHIME_KINDS = ("success", "notification")


def _sine(freq: np.ndarray, sample_rate: int) -> np.ndarray:
    # Integrate instantaneous frequency so sweeps stay phase-continuous
    phase = 2.0 * np.pi * np.cumsum(freq) / sample_rate
    return np.sin(phase)


def render_chime(kind: str, sample_rate: int = 24000) -> np.ndarray:
    """Render a chime as a (1, frames) float32 buffer."""
    if kind == "success":
        duration = 0.5
        n = int(sample_rate * duration)
        t = np.arange(n) / sample_rate
        freq = np.where(t < 0.1, 523.25 + (1046.50 - 523.25) * (t / 0.1), 1046.50)
        gain = 0.05 * (0.001 / 0.05) ** (t / duration)
    elif kind == "notification":
        duration = 0.15
        n = int(sample_rate * duration)
        t = np.arange(n) / sample_rate
        freq = np.where(t < 0.08, 440.0, 880.0)
        gain = 0.03 + (0.001 - 0.03) * (t / duration)
    else:
        raise ValueError(f"Unknown chime kind: {kind!r}")

    return (gain * _sine(freq, sample_rate)).astype(np.float32)[None, :]
