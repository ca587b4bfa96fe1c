"""
Lumi — Data Models

Dataclasses for every piece of data flowing through the session.
Everything the UI reads is a frozen snapshot; the session replaces
objects instead of mutating them.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def new_message_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Student profile (supplied by the setup UI before connecting)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StudentProfile:
    name: str
    grade: str = ""
    favorite_subject: str = ""
    struggle_topic: str = ""
    learning_style: str = "visual"   # "visual" | "auditory" | "hands-on"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StudentProfile":
        return cls(
            name=str(data.get("name", "")).strip(),
            grade=str(data.get("grade", "")),
            favorite_subject=str(data.get("favorite_subject", data.get("favoriteSubject", ""))),
            struggle_topic=str(data.get("struggle_topic", data.get("struggleTopic", ""))),
            learning_style=str(data.get("learning_style", data.get("learningStyle", "visual"))),
        )


# ---------------------------------------------------------------------------
# Chat messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Message:
    """A committed entry in the conversation history."""
    role: str                      # "user" | "assistant" | "system"
    text: str
    id: str = field(default_factory=new_message_id)
    timestamp: float = field(default_factory=time.time)
    image: Optional[str] = None    # data URL
    is_favorite: bool = False
    is_flagged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=str(data.get("id") or new_message_id()),
            role=str(data.get("role", "system")),
            text=str(data.get("text", "")),
            timestamp=float(data.get("timestamp", time.time())),
            image=data.get("image"),
            is_favorite=bool(data.get("is_favorite", data.get("isFavorite", False))),
            is_flagged=bool(data.get("is_flagged", data.get("isFlagged", False))),
        )


# ---------------------------------------------------------------------------
# Learning progress
# ---------------------------------------------------------------------------

class Difficulty(str, Enum):
    BEGINNER = "Beginner"
    INTERMEDIATE = "Intermediate"
    ADVANCED = "Advanced"


@dataclass(frozen=True)
class LearningStats:
    understanding_score: float = 50.0
    difficulty_level: Difficulty = Difficulty.BEGINNER
    last_update_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "understanding_score": self.understanding_score,
            "difficulty_level": self.difficulty_level.value,
            "last_update_reason": self.last_update_reason,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "LearningStats":
        """Restore persisted stats; anything malformed yields the defaults."""
        if not isinstance(data, dict):
            return cls()
        try:
            score = float(data.get("understanding_score", data.get("understandingScore")))
            level = Difficulty(data.get("difficulty_level", data.get("difficultyLevel")))
        except (TypeError, ValueError):
            return cls()
        reason = data.get("last_update_reason", data.get("lastUpdateReason"))
        return cls(understanding_score=score, difficulty_level=level, last_update_reason=reason)


# ---------------------------------------------------------------------------
# Transport events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FunctionCall:
    """One model-issued tool invocation."""
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResponse:
    """Result returned to the model, correlated by the originating call id."""
    id: str
    name: str
    response: Dict[str, Any]


@dataclass(frozen=True)
class ServerEvent:
    """
    Transport-neutral view of one inbound live message.

    Any combination of fields may be present in a single event.
    """
    audio_chunks: Tuple[bytes, ...] = ()
    input_transcript: Optional[str] = None
    output_transcript: Optional[str] = None
    function_calls: Tuple[FunctionCall, ...] = ()
    turn_complete: bool = False
    interrupted: bool = False

    @property
    def has_model_output(self) -> bool:
        """True when the assistant has started responding (audio or text)."""
        return bool(self.audio_chunks) or bool(self.output_transcript)


# ---------------------------------------------------------------------------
# UI snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    state: str
    messages: Tuple[Message, ...]
    stats: LearningStats
    live_input: str = ""
    live_output: str = ""
    is_ai_speaking: bool = False
    is_muted: bool = False
    is_video_active: bool = False
    reconnect_attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state,
            "messages": [m.to_dict() for m in self.messages],
            "stats": self.stats.to_dict(),
            "live_input": self.live_input,
            "live_output": self.live_output,
            "is_ai_speaking": self.is_ai_speaking,
            "is_muted": self.is_muted,
            "is_video_active": self.is_video_active,
            "reconnect_attempts": self.reconnect_attempts,
        }


def messages_from_dicts(items: Any) -> List[Message]:
    if not isinstance(items, list):
        return []
    return [Message.from_dict(item) for item in items if isinstance(item, dict)]
