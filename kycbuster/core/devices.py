"""
OpenCV backed camera source for local capture clients.
"""

import logging
from typing import Optional

import cv2

from .capture import CameraSource
from .exceptions import ResourceError

logger = logging.getLogger(__name__)


class OpenCVCameraSource(CameraSource):
    """Camera source reading from a local video device"""

    def __init__(self, device_index: int = 0, width: int = 640, height: int = 480,
                 jpeg_quality: int = 90):
        self.device_index = device_index
        self.width = width
        self.height = height
        self.jpeg_quality = jpeg_quality
        self._capture: Optional[cv2.VideoCapture] = None

    @property
    def is_active(self) -> bool:
        return self._capture is not None

    def start(self) -> None:
        if self._capture is not None:
            return

        capture = cv2.VideoCapture(self.device_index)
        if not capture.isOpened():
            capture.release()
            raise ResourceError(
                "Camera access denied. Please check your device settings.",
                error_code="CAMERA_UNAVAILABLE",
                details={"device_index": self.device_index}
            )

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._capture = capture
        logger.debug(f"Camera {self.device_index} opened")

    def capture_frame(self) -> bytes:
        if self._capture is None:
            raise ResourceError("Camera is not started", error_code="CAMERA_NOT_STARTED")

        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise ResourceError("Camera stopped delivering frames", error_code="CAMERA_READ_FAILED")

        ok, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not ok:
            raise ResourceError("Could not encode camera frame", error_code="FRAME_ENCODE_FAILED")
        return buffer.tobytes()

    def stop(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.debug(f"Camera {self.device_index} released")
