"""
Shared fixtures: a TutorSession wired to fakes with zero retry/grace delays.
"""

from typing import Any, Dict, List, Tuple

import pytest

from lumi.core.config import SessionConfig, VideoConfig
from lumi.core.models import StudentProfile
from lumi.services.session import TutorSession

from fakes import FakeCamera, FakeImageGenerator, FakeMicrophone, FakeOutput, TransportFactory


class Harness:
    """Builds a session and keeps handles to every fake it was given."""

    def __init__(self) -> None:
        self.transports = TransportFactory()
        self.outputs: List[FakeOutput] = []
        self.microphones: List[FakeMicrophone] = []
        self.mic_failures = 0
        self.camera = FakeCamera()
        self.images = FakeImageGenerator()
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.profile = StudentProfile(
            name="Ada", grade="5th Grade", struggle_topic="fractions", learning_style="visual",
        )

    def make_output(self) -> FakeOutput:
        output = FakeOutput()
        self.outputs.append(output)
        return output

    def make_microphone(self) -> FakeMicrophone:
        fail = self.mic_failures > 0
        if fail:
            self.mic_failures -= 1
        mic = FakeMicrophone(fail=fail)
        self.microphones.append(mic)
        return mic

    def build(self, **overrides: Any) -> TutorSession:
        kwargs: Dict[str, Any] = dict(
            session_id="test",
            profile=self.profile,
            transport_factory=self.transports,
            output_factory=self.make_output,
            input_factory=self.make_microphone,
            camera_factory=lambda: self.camera,
            image_generator=self.images,
            api_key="test-key",
            on_event=lambda kind, data: self.events.append((kind, data)),
            config=SessionConfig(max_retries=3, retry_delay=0.0, handshake_grace=0.0),
            video_config=VideoConfig(frame_interval=0.01),
        )
        kwargs.update(overrides)
        return TutorSession(**kwargs)

    def event_types(self) -> List[str]:
        return [kind for kind, _ in self.events]


@pytest.fixture
def harness() -> Harness:
    return Harness()
