"""
Landmark provider backed by face_recognition (dlib)
===================================================
Given one BGR frame, returns the detected face(s) with 68-point landmarks and
the 128-dim dlib encoding used as the identity descriptor.

Face locations come from one of three detectors:
  - "hog"   dlib HOG (fast, CPU)
  - "cnn"   dlib CNN (slower, more accurate)
  - "mtcnn" MTCNN from facenet-pytorch (optional extra)
"""

import logging

import cv2
import face_recognition
import numpy as np

from capture import Detection
from descriptor_matcher import as_descriptor
from errors import CapabilityUnavailable

logger = logging.getLogger(__name__)

DETECTORS = ("hog", "cnn", "mtcnn")


class FaceRecognitionProvider:
    """LandmarkProvider using face_recognition for landmarks and encodings."""

    def __init__(self, detector="hog", downscale=0.5, min_probability=0.9):
        if detector not in DETECTORS:
            raise ValueError(f"Unknown face detector: {detector}")
        self.detector = detector
        self.downscale = downscale
        self.min_probability = min_probability
        self.mtcnn = None
        if detector == "mtcnn":
            self.mtcnn = self._load_mtcnn()

    @staticmethod
    def _load_mtcnn():
        try:
            from facenet_pytorch import MTCNN
            import torch
        except ImportError as exc:
            raise CapabilityUnavailable(
                "FACE_DETECTOR=mtcnn needs the 'mtcnn' extra (facenet-pytorch)"
            ) from exc

        device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
        logger.info("MTCNN initialized on %s", device)
        return MTCNN(
            image_size=160,
            margin=0,
            min_face_size=20,
            thresholds=[0.6, 0.7, 0.7],
            factor=0.709,
            post_process=False,
            device=device,
            keep_all=True,
        )

    def _locate(self, rgb_frame):
        """Face locations (top, right, bottom, left) on the given RGB frame."""
        if self.mtcnn is None:
            return face_recognition.face_locations(rgb_frame, model=self.detector)

        boxes, probs = self.mtcnn.detect(rgb_frame)
        if boxes is None:
            return []

        h, w = rgb_frame.shape[:2]
        locations = []
        for box, prob in zip(boxes, probs):
            if prob < self.min_probability:
                continue
            x1, y1, x2, y2 = [int(b) for b in box]
            locations.append((max(0, y1), min(w, x2), min(h, y2), max(0, x1)))
        return locations

    def detect_all(self, frame_bgr):
        """Return every face in the frame, largest first."""
        if frame_bgr is None:
            return []

        # Locate on a downscaled copy, then landmarks/encodings at full res
        small = cv2.resize(frame_bgr, (0, 0), fx=self.downscale, fy=self.downscale)
        rgb_small = np.ascontiguousarray(cv2.cvtColor(small, cv2.COLOR_BGR2RGB))
        scale = 1.0 / self.downscale
        locations = [
            tuple(int(round(v * scale)) for v in loc) for loc in self._locate(rgb_small)
        ]
        if not locations:
            return []
        locations.sort(key=lambda loc: (loc[2] - loc[0]) * (loc[1] - loc[3]), reverse=True)

        rgb_full = np.ascontiguousarray(frame_bgr[:, :, ::-1])
        landmark_sets = face_recognition.face_landmarks(rgb_full, face_locations=locations)
        encodings = face_recognition.face_encodings(rgb_full, known_face_locations=locations)

        return [
            Detection(landmarks=lm, descriptor=as_descriptor(enc), location=loc)
            for lm, enc, loc in zip(landmark_sets, encodings, locations)
        ]

    def detect(self, frame_bgr):
        """Return the largest face in the frame, or None."""
        detections = self.detect_all(frame_bgr)
        return detections[0] if detections else None
