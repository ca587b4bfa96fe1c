"""
Lumi — Error Taxonomy

Only permission-class failures and exhausted transient retries reach the
connection state; everything else is absorbed where it happens and
surfaced to the user as a system message.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional


class LumiError(Exception):
    """Base class for errors raised by the session core."""


class MissingCredentialsError(LumiError):
    """No API key is configured."""


class DeviceUnavailableError(LumiError):
    """Microphone, speaker or camera could not be acquired."""


class ToolArgumentError(LumiError):
    """A model-issued tool call carried malformed arguments."""


class ImageGenerationError(LumiError):
    """The image endpoint returned no usable image."""


class ErrorKind(str, Enum):
    PERMISSION = "permission"   # fatal, never retried
    QUOTA = "quota"
    TRANSIENT = "transient"     # retried with fixed backoff


_PERMISSION_CODES = {401, 403}
_QUOTA_CODES = {429}
# Websocket close code the live endpoint uses for rejected credentials
_POLICY_VIOLATION = 1008

_CODE_RE = re.compile(r"\b(401|403|429)\b")


def _status_code(exc: BaseException) -> Optional[int]:
    for attr in ("code", "status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    received = getattr(exc, "rcvd", None)
    code = getattr(received, "code", None)
    if isinstance(code, int):
        return code
    return None


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception onto the permission / quota / transient taxonomy."""
    if isinstance(exc, MissingCredentialsError):
        return ErrorKind.PERMISSION

    code = _status_code(exc)
    if code in _PERMISSION_CODES or code == _POLICY_VIOLATION:
        return ErrorKind.PERMISSION
    if code in _QUOTA_CODES:
        return ErrorKind.QUOTA

    text = str(exc)
    match = _CODE_RE.search(text)
    if match:
        return ErrorKind.QUOTA if match.group(1) == "429" else ErrorKind.PERMISSION
    if "PERMISSION_DENIED" in text:
        return ErrorKind.PERMISSION
    if "RESOURCE_EXHAUSTED" in text:
        return ErrorKind.QUOTA
    return ErrorKind.TRANSIENT
