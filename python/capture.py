"""
Camera capture and capability bundle
====================================
Camera wraps an OpenCV VideoCapture as a scoped resource: ``session()`` opens
it and guarantees every track is released on the way out, whatever happened
inside the block.

Capabilities replaces module-level "model loaded" flags: it is built once at
startup and handed to each session by reference.
"""

import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from errors import CapabilityUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Detection:
    """One detected face.

    landmarks: face_recognition.face_landmarks() style dict
    descriptor: read-only 128-dim embedding
    location: (top, right, bottom, left) at frame resolution
    """

    landmarks: dict
    descriptor: np.ndarray
    location: Optional[Tuple[int, int, int, int]] = None


class Camera:
    """OpenCV webcam capture returning BGR frames."""

    def __init__(self, index=0, width=640, height=480):
        self.index = index
        self.width = width
        self.height = height
        self._cap = None

    @property
    def is_open(self):
        return self._cap is not None

    def start(self):
        if self._cap is not None:
            return self

        # Try DirectShow on Windows for lower-latency capture
        cap = None
        if sys.platform.startswith("win"):
            cap = cv2.VideoCapture(self.index, cv2.CAP_DSHOW)
            if not cap.isOpened():
                cap.release()
                cap = None
        if cap is None:
            cap = cv2.VideoCapture(self.index)
        if not cap.isOpened():
            cap.release()
            raise CapabilityUnavailable(f"Could not open camera {self.index}")

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self._cap = cap
        logger.info("Camera %s started", self.index)
        return self

    def read(self):
        """Grab the latest frame, or None if the camera returned nothing."""
        if self._cap is None:
            raise CapabilityUnavailable("Camera is not started")
        ok, frame = self._cap.read()
        if not ok:
            return None
        return frame

    def stop(self):
        if self._cap is None:
            return
        self._cap.release()
        self._cap = None
        logger.info("Camera %s stopped", self.index)

    @contextmanager
    def session(self):
        self.start()
        try:
            yield self
        finally:
            self.stop()


@dataclass
class Capabilities:
    """Camera + landmark provider, ready once both are initialized."""

    camera: object
    provider: object
    ready: bool = False

    def require_ready(self):
        if not self.ready or self.camera is None or self.provider is None:
            raise CapabilityUnavailable("Camera or face model is not initialized")
