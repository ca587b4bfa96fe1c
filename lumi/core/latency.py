"""
Lumi — Structured Latency Tracer

Records wall-clock timestamps for critical milestones:
  connect_started → handshake → live → first_transcript → first_audio

Computes and logs latency deltas.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger("lumi.latency")

_MILESTONES = ("connect_started", "handshake", "live", "first_transcript", "first_audio")


@dataclass
class LatencyTrace:
    """Record of session latency milestones (wall-clock seconds)."""

    session_id: str = ""

    connect_started: float = 0.0
    handshake: float = 0.0
    live: float = 0.0
    first_transcript: float = 0.0
    first_audio: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "session_id": self.session_id,
        }
        # Only include milestones that have been recorded
        for name in _MILESTONES:
            ts = getattr(self, name)
            if ts > 0:
                d[name] = ts
        d["deltas"] = self.deltas()
        return d

    def deltas(self) -> Dict[str, Optional[float]]:
        """Compute latency deltas between milestones (milliseconds)."""
        def _delta(a: float, b: float) -> Optional[float]:
            if a > 0 and b > 0:
                return round((b - a) * 1000, 1)
            return None

        return {
            "connect_to_handshake_ms": _delta(self.connect_started, self.handshake),
            "handshake_to_live_ms": _delta(self.handshake, self.live),
            "live_to_first_transcript_ms": _delta(self.live, self.first_transcript),
            "live_to_first_audio_ms": _delta(self.live, self.first_audio),
        }


class LatencyTracer:
    """
    Mutable tracer that records milestones and logs them.

    A new connect attempt starts a new trace; first-occurrence milestones
    are only recorded once per trace.
    """

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._trace = LatencyTrace(session_id=session_id)

    @property
    def trace(self) -> LatencyTrace:
        return self._trace

    def mark_connect_started(self) -> None:
        self._trace = LatencyTrace(session_id=self._session_id, connect_started=time.time())
        logger.info(f"[{self._session_id}] LATENCY connect_started")

    def mark_handshake(self) -> None:
        self._mark("handshake", "connect_to_handshake_ms")

    def mark_live(self) -> None:
        self._mark("live", "handshake_to_live_ms")

    def mark_first_transcript(self) -> None:
        self._mark("first_transcript", "live_to_first_transcript_ms")

    def mark_first_audio(self) -> None:
        self._mark("first_audio", "live_to_first_audio_ms")

    def _mark(self, milestone: str, delta_key: str) -> None:
        if getattr(self._trace, milestone) > 0:
            return  # Already marked
        setattr(self._trace, milestone, time.time())
        delta = self._trace.deltas()
        logger.info(
            f"[{self._session_id}] LATENCY {milestone} ({delta_key}: {delta[delta_key]})"
        )

    def summary(self) -> Dict[str, Any]:
        return self._trace.to_dict()
