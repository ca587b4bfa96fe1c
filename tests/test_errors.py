"""
Unit Tests for error classification.
"""

from types import SimpleNamespace

import pytest

from lumi.core.errors import (
    DeviceUnavailableError, ErrorKind, MissingCredentialsError, classify_error,
)

from fakes import StatusError


class ClosedError(Exception):
    def __init__(self, code):
        super().__init__(f"received {code}")
        self.rcvd = SimpleNamespace(code=code)


class TestClassifyError:

    @pytest.mark.parametrize("error, expected", [
        (MissingCredentialsError("no key"), ErrorKind.PERMISSION),
        (StatusError(401), ErrorKind.PERMISSION),
        (StatusError(403, "Forbidden"), ErrorKind.PERMISSION),
        (StatusError(429, "Too Many Requests"), ErrorKind.QUOTA),
        (StatusError(503, "Unavailable"), ErrorKind.TRANSIENT),
        (Exception("got 403 from server"), ErrorKind.PERMISSION),
        (Exception("HTTP 429 while generating"), ErrorKind.QUOTA),
        (Exception("PERMISSION_DENIED: API key not valid"), ErrorKind.PERMISSION),
        (Exception("RESOURCE_EXHAUSTED"), ErrorKind.QUOTA),
        (ClosedError(1008), ErrorKind.PERMISSION),
        (ClosedError(1011), ErrorKind.TRANSIENT),
        (ConnectionResetError("peer reset"), ErrorKind.TRANSIENT),
        (DeviceUnavailableError("mic busy"), ErrorKind.TRANSIENT),
    ])
    def test_taxonomy(self, error, expected):
        assert classify_error(error) is expected

    def test_status_code_outranks_message(self):
        assert classify_error(StatusError(429, "403 mentioned in body")) is ErrorKind.QUOTA

    def test_codes_inside_numbers_are_not_matched(self):
        assert classify_error(Exception("request id 14035 failed")) is ErrorKind.TRANSIENT
