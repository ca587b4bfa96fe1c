"""
Lumi — Configuration

Centralised settings from environment variables.
All tuneable constants live here — zero magic numbers in other files.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
import certifi

os.environ.setdefault("SSL_CERT_FILE", certifi.where())
os.environ.setdefault("REQUESTS_CA_BUNDLE", certifi.where())

load_dotenv()

# ── Bridge env-var naming: the front-end used API_KEY, the SDK reads GOOGLE_API_KEY ──
_gemini_key = (
    os.getenv("GEMINI_API_KEY")
    or os.getenv("GOOGLE_API_KEY")
    or os.getenv("API_KEY", "")
)


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))
    cors_origins: tuple[str, ...] = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    )
    # Interval between analyser level pushes to the UI
    levels_interval: float = 0.1


# ---------------------------------------------------------------------------
# Models + keys
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelConfig:
    """API key and model identifiers."""
    api_key: str = _gemini_key
    live_model: str = os.getenv(
        "LUMI_LIVE_MODEL", "gemini-2.5-flash-native-audio-preview-09-2025"
    )
    image_model: str = os.getenv("LUMI_IMAGE_MODEL", "gemini-2.5-flash-image")
    voice_name: str = os.getenv("LUMI_VOICE", "Aoede")
    image_aspect_ratio: str = "16:9"

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)


# ---------------------------------------------------------------------------
# Audio tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AudioConfig:
    # Outbound PCM rate expected by the live model
    capture_sample_rate: int = 16000
    # Frames per capture callback
    capture_block_size: int = 4096
    # Inbound PCM from the live model is 24 kHz mono
    output_sample_rate: int = 24000
    output_channels: int = 1
    # Lead time when the playback cursor has fallen behind the clock
    buffering_delay: float = 0.08
    # Attack/release ramp applied to each playback segment
    fade_duration: float = 0.005
    input_device: Optional[str] = _optional("LUMI_INPUT_DEVICE")
    output_device: Optional[str] = _optional("LUMI_OUTPUT_DEVICE")
    # Magnitude bins exposed by the level meters
    analyser_bins: int = 32


# ---------------------------------------------------------------------------
# Session tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionConfig:
    max_retries: int = int(os.getenv("LUMI_MAX_RETRIES", "3"))
    # Fixed (not exponential) delay before a reconnect attempt
    retry_delay: float = float(os.getenv("LUMI_RETRY_DELAY", "2.0"))
    # Time after the transport opens before audio streaming is allowed
    handshake_grace: float = 0.5
    truncation_marker: str = "..."


# ---------------------------------------------------------------------------
# Video tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VideoConfig:
    camera_index: int = int(os.getenv("LUMI_CAMERA_INDEX", "0"))
    frame_interval: float = 0.5
    jpeg_quality: int = 60
    # Frames wider than this are downscaled before encoding
    max_width: int = 640


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
model_cfg = ModelConfig()
audio_cfg = AudioConfig()
session_cfg = SessionConfig()
video_cfg = VideoConfig()
