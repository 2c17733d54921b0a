"""
Vision Capture - latest-frame cache for the device camera stream.

The device streams JPEG frames; capture_frame() hands out the most recent
one as a still snapshot, or None when the camera isn't ready.
"""

import base64
import hashlib
import io
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from PIL import Image

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """One decoded still frame."""
    data: bytes  # JPEG bytes as sent by the device
    width: int
    height: int
    captured_at: float
    mime_type: str = "image/jpeg"

    @property
    def ref(self) -> str:
        """Short content hash used to reference the frame in memory/logs."""
        return hashlib.md5(self.data).hexdigest()[:12]


def decode_frame(image_data: str) -> bytes:
    """Decode base64 image, handling data URL prefix."""
    if image_data.startswith("data:"):
        image_data = image_data.split(",", 1)[1]
    return base64.b64decode(image_data)


class VisionCapture:
    """
    Holds the camera stream's latest frame for the coordinator.

    Only the coordinator attaches/releases the camera. Frames pushed while
    released are ignored, and frames older than max_frame_age count as
    "camera not ready".
    """

    def __init__(
        self,
        max_frame_age: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_frame_age = max_frame_age
        self.clock = clock
        self.attached = False
        self.latest: Optional[Frame] = None
        self.frames_received = 0

    def attach(self):
        self.attached = True
        logger.info("📷 Camera attached")

    def release(self):
        self.attached = False
        self.latest = None
        logger.info("📷 Camera released")

    @property
    def ready(self) -> bool:
        return self.capture_frame() is not None

    def update_frame(self, image_data: str) -> Optional[Frame]:
        """
        Store a frame pushed by the device.

        Args:
            image_data: Base64 JPEG, optionally with a data URL prefix

        Returns:
            The stored Frame, or None if the camera is released

        Raises:
            ValueError: If the data is not a decodable image
        """
        if not self.attached:
            return None

        try:
            raw = decode_frame(image_data)
            with Image.open(io.BytesIO(raw)) as image:
                width, height = image.size
        except Exception as e:
            logger.error(f"Error decoding camera frame: {e}")
            raise ValueError(f"Invalid camera frame: {e}") from e

        frame = Frame(data=raw, width=width, height=height, captured_at=self.clock())
        self.latest = frame
        self.frames_received += 1
        return frame

    def capture_frame(self) -> Optional[Frame]:
        """Return the latest fresh frame, or None if the camera isn't ready."""
        if not self.attached or self.latest is None:
            return None
        if self.clock() - self.latest.captured_at > self.max_frame_age:
            return None
        return self.latest
