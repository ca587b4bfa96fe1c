"""
Unit Tests for the video frame sampler and JPEG encoding.
"""

import asyncio

import cv2
import numpy as np
import pytest

from lumi.core.config import VideoConfig
from lumi.video.sampler import VideoFrameSampler, encode_jpeg

from fakes import FakeCamera, wait_for


class TestEncodeJpeg:

    def test_downscales_wide_frames(self):
        frame = np.zeros((720, 1280, 3), dtype=np.uint8)
        blob = encode_jpeg(frame, quality=60, max_width=640)
        assert blob.mime_type == "image/jpeg"
        assert blob.data[:2] == b"\xff\xd8"
        decoded = cv2.imdecode(np.frombuffer(blob.data, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape[:2] == (360, 640)

    def test_keeps_small_frames(self):
        blob = encode_jpeg(np.zeros((120, 160, 3), dtype=np.uint8), max_width=640)
        decoded = cv2.imdecode(np.frombuffer(blob.data, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape[:2] == (120, 160)


class TestVideoFrameSampler:

    @pytest.fixture
    def gate(self):
        return {"open": True}

    @pytest.fixture
    def sent(self):
        return []

    @pytest.fixture
    def sampler(self, gate, sent):
        async def send(blob):
            sent.append(blob)

        return VideoFrameSampler(
            FakeCamera(), send=send, gate=lambda: gate["open"],
            config=VideoConfig(frame_interval=0.01),
        )

    @pytest.mark.asyncio
    async def test_sends_frames_while_gate_open(self, sampler, sent):
        sampler.refresh()
        assert sampler.running
        await wait_for(lambda: len(sent) >= 2)
        assert all(b.mime_type == "image/jpeg" for b in sent)
        await sampler.stop()

    @pytest.mark.asyncio
    async def test_no_frames_after_gate_closes(self, sampler, gate, sent):
        sampler.refresh()
        await wait_for(lambda: len(sent) >= 1)

        gate["open"] = False
        sampler.refresh()
        assert not sampler.running
        count = len(sent)
        await asyncio.sleep(0.05)
        assert len(sent) == count

    @pytest.mark.asyncio
    async def test_loop_exits_on_its_own_when_gate_closes(self, sampler, gate, sent):
        sampler.refresh()
        await wait_for(lambda: len(sent) >= 1)
        gate["open"] = False
        await wait_for(lambda: not sampler.running)

    @pytest.mark.asyncio
    async def test_does_not_start_with_closed_gate(self, sampler, gate, sent):
        gate["open"] = False
        sampler.refresh()
        assert not sampler.running
        await asyncio.sleep(0.03)
        assert sent == []

    @pytest.mark.asyncio
    async def test_missing_frames_are_skipped(self, gate, sent):
        camera = FakeCamera()
        camera.frame = None

        async def send(blob):
            sent.append(blob)

        sampler = VideoFrameSampler(camera, send=send, gate=lambda: gate["open"],
                                    config=VideoConfig(frame_interval=0.01))
        sampler.refresh()
        await wait_for(lambda: camera.reads >= 2)
        assert sent == []
        await sampler.stop()
