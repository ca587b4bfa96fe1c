"""
Lumi — Video Frame Sampler

While video mode is on, the session is connected and the live flag is
set, grab a frame every `frame_interval` seconds, downscale it, encode it
as JPEG and send it as a still-image realtime input.

The sampler never runs while any gate is false: the session calls
refresh() on every gate change and each tick re-checks the gate before
sending.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import numpy as np

from ..core.config import VideoConfig, video_cfg
from ..core.errors import DeviceUnavailableError
from ..core.interfaces import FrameSource, MediaBlob, SendMedia

logger = logging.getLogger("lumi.video")


def encode_jpeg(frame: np.ndarray, quality: int = 60, max_width: int = 640) -> MediaBlob:
    """Downscale (keeping aspect) and JPEG-encode a BGR frame."""
    import cv2

    h, w = frame.shape[:2]
    if max_width and w > max_width:
        scale = max_width / float(w)
        frame = cv2.resize(frame, (max_width, max(1, int(round(h * scale)))), interpolation=cv2.INTER_AREA)
    ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return MediaBlob(data=encoded.tobytes(), mime_type="image/jpeg")


class OpenCVCamera:
    """FrameSource backed by cv2.VideoCapture."""

    def __init__(self, config: VideoConfig = video_cfg) -> None:
        self._index = config.camera_index
        self._cap: Any = None

    def open(self) -> None:
        import cv2

        cap = cv2.VideoCapture(self._index)
        if not cap.isOpened():
            cap.release()
            raise DeviceUnavailableError(f"Camera {self._index} unavailable")
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self._cap = cap
        logger.info(f"Camera {self._index} opened")

    def read(self) -> Optional[np.ndarray]:
        if self._cap is None:
            return None
        ok, frame = self._cap.read()
        return frame if ok else None

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info(f"Camera {self._index} released")


class VideoFrameSampler:
    """
    Periodic frame → JPEG → transport loop, gated by a predicate.

    Lifecycle:
      refresh()* → stop()
    """

    def __init__(
        self,
        source: FrameSource,
        send: SendMedia,
        gate: Callable[[], bool],
        config: VideoConfig = video_cfg,
        log_prefix: str = "",
    ) -> None:
        self._source = source
        self._send = send
        self._gate = gate
        self._cfg = config
        self._log_prefix = log_prefix
        self._task: Optional[asyncio.Task] = None
        self.frames_sent = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def refresh(self) -> None:
        """Start or stop the loop to match the current gate."""
        if self._gate():
            if not self.running:
                self._task = asyncio.get_running_loop().create_task(self._run())
                logger.info(f"{self._log_prefix}Video sampling started")
        else:
            self.cancel()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info(f"{self._log_prefix}Video sampling stopped")
        self._task = None

    async def stop(self) -> None:
        task = self._task
        self.cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while self._gate():
            await asyncio.sleep(self._cfg.frame_interval)
            if not self._gate():
                break
            try:
                frame = await loop.run_in_executor(None, self._source.read)
                if frame is None or not self._gate():
                    continue
                blob = await loop.run_in_executor(
                    None, encode_jpeg, frame, self._cfg.jpeg_quality, self._cfg.max_width,
                )
                if not self._gate():
                    break
                await self._send(blob)
                self.frames_sent += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"{self._log_prefix}Video frame dropped: {e}")
        self._task = None
