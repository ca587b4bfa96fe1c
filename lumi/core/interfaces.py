"""
Lumi — Layer Interfaces

Protocol definitions for the collaborators the session core drives:
  1. Transport — the bidirectional live channel to the model
  2. Media     — output clock, microphone, camera
  3. Tools     — external image endpoint and the host side of tool calls

The session only talks to these protocols, so every collaborator can be
swapped for a fake in tests.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import (
    Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, runtime_checkable,
)

import numpy as np

from .models import LearningStats, Message, ServerEvent, ToolResponse


# ═══════════════════════════════════════════════════════════════════════════
# Transport Layer — live session channel
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MediaBlob:
    """An outbound realtime media payload (raw bytes + mime descriptor)."""
    data: bytes
    mime_type: str

    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass(frozen=True)
class LiveConnectRequest:
    """Everything the transport needs to open a session."""
    model: str
    system_instruction: str
    tools: List[Dict[str, Any]] = field(default_factory=list)
    response_modalities: Sequence[str] = ("AUDIO",)
    voice_name: Optional[str] = None
    input_transcription: bool = True
    output_transcription: bool = True


@runtime_checkable
class TransportHandler(Protocol):
    """Callbacks the transport invokes; each may be sync or async."""

    def on_open(self) -> Any:
        ...

    def on_message(self, event: ServerEvent) -> Any:
        ...

    def on_close(self, reason: str) -> Any:
        ...

    def on_error(self, error: BaseException) -> Any:
        ...


@runtime_checkable
class LiveTransport(Protocol):
    """One session handle: open once, send many times, close once."""

    async def open(self, request: LiveConnectRequest, handler: TransportHandler) -> None:
        """Open the channel. Raises on setup failure; calls handler.on_open on success."""
        ...

    async def send_realtime(self, blob: MediaBlob) -> None:
        """Stream an audio frame or a still image."""
        ...

    async def send_text(self, text: str) -> None:
        """Send a complete user text turn."""
        ...

    async def send_tool_response(self, responses: Sequence[ToolResponse]) -> None:
        ...

    async def close(self) -> None:
        """Best-effort close; must not raise."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Media Layer — output clock, microphone, camera
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class PlaybackHandle(Protocol):
    @property
    def start_time(self) -> float:
        ...

    @property
    def duration(self) -> float:
        ...

    def stop(self) -> None:
        """Silence the segment immediately; on_ended still fires."""
        ...


@runtime_checkable
class AudioOutput(Protocol):
    """A sample-accurate output clock that plays buffers at given times."""

    @property
    def sample_rate(self) -> int:
        ...

    @property
    def current_time(self) -> float:
        """Seconds of audio rendered since the output started."""
        ...

    @property
    def closed(self) -> bool:
        ...

    def play(
        self,
        samples: np.ndarray,
        start_time: float,
        on_ended: Optional[Callable[[], None]] = None,
    ) -> PlaybackHandle:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class AudioInput(Protocol):
    """A microphone delivering float32 mono blocks on its own thread."""

    @property
    def sample_rate(self) -> int:
        ...

    def open(self, callback: Callable[[np.ndarray], None]) -> None:
        """Acquire the device. Raises DeviceUnavailableError."""
        ...

    def start(self) -> None:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class FrameSource(Protocol):
    """A video source read from periodically (BGR frames)."""

    def open(self) -> None:
        """Acquire the device. Raises DeviceUnavailableError."""
        ...

    def read(self) -> Optional[np.ndarray]:
        ...

    def close(self) -> None:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Tool Layer — external endpoints + host callbacks
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str = "image/png"

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


@runtime_checkable
class ImageGenerator(Protocol):
    async def generate(self, prompt: str, aspect_ratio: str) -> GeneratedImage:
        """Raises on failure, including when no image comes back."""
        ...


@runtime_checkable
class ToolHost(Protocol):
    """The side effects a tool executor may perform on the session."""

    def post_message(self, role: str, text: str, image: Optional[str] = None) -> Message:
        ...

    def play_chime(self, kind: str) -> None:
        ...

    def replace_stats(self, stats: LearningStats) -> None:
        ...


SendMedia = Callable[[MediaBlob], Awaitable[None]]
