"""
Liveness Challenge Engine
=========================
Active challenge-response liveness on dlib 68-point landmarks:
  1. BLINK       eye openness with a two-threshold hysteresis band
  2. TURN_LEFT   horizontal nose offset against a resting baseline
  3. TURN_RIGHT  same, opposite direction
  4. SMILE       mouth aspect ratio against a resting baseline

The engine polls the camera and the landmark provider at a fixed cadence
until the challenge is satisfied or the time budget runs out. Each poll is
independent; nothing survives a call.

Dependencies: numpy
"""

import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from config import DEFAULT_CHALLENGE_CONFIGS, LivenessThresholds

logger = logging.getLogger(__name__)


class Challenge(str, Enum):
    BLINK = "BLINK"
    TURN_LEFT = "TURN_LEFT"
    TURN_RIGHT = "TURN_RIGHT"
    SMILE = "SMILE"

    @property
    def instruction(self):
        return _INSTRUCTIONS[self]


_INSTRUCTIONS = {
    Challenge.BLINK: "Please BLINK once",
    Challenge.TURN_LEFT: "Please turn head LEFT",
    Challenge.TURN_RIGHT: "Please turn head RIGHT",
    Challenge.SMILE: "Please SMILE",
}


def random_challenge():
    """Pick the challenge for a new session."""
    return secrets.choice(list(Challenge))


# =============================================================================
# Landmark metrics
# =============================================================================

def eye_openness(eye_points):
    """Eye openness (EAR) from 6 dlib eye landmark points.

    EAR = (|p2-p6| + |p3-p5|) / (2 * |p1-p4|)
    p1=outer corner, p2=upper-outer, p3=upper-inner,
    p4=inner corner, p5=lower-inner, p6=lower-outer
    """
    pts = [np.array(p, dtype=float) for p in eye_points]
    A = np.linalg.norm(pts[1] - pts[5])
    B = np.linalg.norm(pts[2] - pts[4])
    C = np.linalg.norm(pts[0] - pts[3])
    if C < 1e-6:
        return 0.0
    return float((A + B) / (2.0 * C))


def mouth_ratio(landmarks):
    """Mouth aspect ratio from the outer lip points.

    top_lip[2..4] = dlib 50..52, bottom_lip[4..2] = dlib 58..56
    top_lip[0] = dlib 48 (left corner), top_lip[6] = dlib 54 (right corner)

    MAR = mean(vertical distances) / corner distance
    """
    top_lip = landmarks['top_lip']
    bottom_lip = landmarks['bottom_lip']

    left_corner = np.array(top_lip[0], dtype=float)
    right_corner = np.array(top_lip[6], dtype=float)
    upper_pts = [np.array(top_lip[i], dtype=float) for i in [2, 3, 4]]
    lower_pts = [np.array(bottom_lip[i], dtype=float) for i in [4, 3, 2]]

    vertical = [np.linalg.norm(u - l) for u, l in zip(upper_pts, lower_pts)]
    horizontal = np.linalg.norm(left_corner - right_corner)
    if horizontal < 1e-6:
        return None
    return float(np.mean(vertical) / horizontal)


def nose_offset(landmarks):
    """Nose tip x minus face center x, normalized by jaw width."""
    nose = np.array(landmarks['nose_tip'][2], dtype=float)
    chin = landmarks['chin']
    left_jaw = np.array(chin[0], dtype=float)
    right_jaw = np.array(chin[16], dtype=float)
    face_width = np.linalg.norm(right_jaw - left_jaw)
    if face_width <= 1:
        return None
    face_center_x = (left_jaw[0] + right_jaw[0]) / 2.0
    return float((nose[0] - face_center_x) / face_width)


@dataclass(frozen=True)
class LivenessSample:
    timestamp: float
    left_eye_openness: Optional[float] = None
    right_eye_openness: Optional[float] = None
    mouth_ratio: Optional[float] = None
    nose_offset: Optional[float] = None

    @property
    def eye_openness(self):
        if self.left_eye_openness is None or self.right_eye_openness is None:
            return None
        return (self.left_eye_openness + self.right_eye_openness) / 2.0


def measure(landmarks, timestamp):
    """Derive the scalar metrics for one LandmarkSet; missing parts stay None."""
    left = right = mar = offset = None
    try:
        left = eye_openness(landmarks['left_eye'])
        right = eye_openness(landmarks['right_eye'])
    except (KeyError, IndexError, TypeError, ValueError):
        pass
    try:
        mar = mouth_ratio(landmarks)
    except (KeyError, IndexError, TypeError, ValueError):
        pass
    try:
        offset = nose_offset(landmarks)
    except (KeyError, IndexError, TypeError, ValueError):
        pass
    return LivenessSample(timestamp, left, right, mar, offset)


# =============================================================================
# Per-challenge detectors
# =============================================================================

class BlinkDetector:
    """Counts open -> closed -> open cycles.

    Openness above open_threshold is "open", below closed_threshold is
    "closed"; anything in between keeps the previous state, so jitter around
    a single value cannot register as a blink.
    """

    SEEKING_OPEN = "seeking_open"
    SEEKING_CLOSED = "seeking_closed"
    SEEKING_REOPEN = "seeking_reopen"

    def __init__(self, open_threshold=0.22, closed_threshold=0.12, required_blinks=1):
        self.open_threshold = open_threshold
        self.closed_threshold = closed_threshold
        self.required_blinks = required_blinks
        self.state = self.SEEKING_OPEN
        self.blinks = 0

    def update(self, sample, elapsed=0.0, window=0.0):
        openness = sample.eye_openness
        if openness is None:
            return False

        if openness > self.open_threshold:
            if self.state == self.SEEKING_REOPEN:
                self.blinks += 1
                logger.debug("Blink %d counted", self.blinks)
            self.state = self.SEEKING_CLOSED
        elif openness < self.closed_threshold and self.state == self.SEEKING_CLOSED:
            self.state = self.SEEKING_REOPEN

        return self.blinks >= self.required_blinks


class _BaselineDetector:
    """Two-phase detector: baseline over the first half, then compare."""

    def __init__(self):
        self._baseline_values = []

    def _metric(self, sample):
        raise NotImplementedError

    def _satisfied(self, value, baseline):
        raise NotImplementedError

    @property
    def baseline(self):
        if not self._baseline_values:
            return None
        return float(np.mean(self._baseline_values))

    def update(self, sample, elapsed, window):
        value = self._metric(sample)
        if value is None:
            return False
        if elapsed < window / 2.0:
            self._baseline_values.append(value)
            return False
        baseline = self.baseline
        if baseline is None:
            return False
        return self._satisfied(value, baseline)


class HeadTurnDetector(_BaselineDetector):
    """direction -1 = TURN_LEFT (nose moves toward smaller x), +1 = TURN_RIGHT."""

    def __init__(self, direction, delta=0.12):
        super().__init__()
        self.direction = direction
        self.delta = delta

    def _metric(self, sample):
        return sample.nose_offset

    def _satisfied(self, value, baseline):
        return (value - baseline) * self.direction > self.delta


class SmileDetector(_BaselineDetector):
    def __init__(self, delta=0.12, ceiling=0.36):
        super().__init__()
        self.delta = delta
        self.ceiling = ceiling

    def _metric(self, sample):
        return sample.mouth_ratio

    def _satisfied(self, value, baseline):
        return value - baseline > self.delta or value > self.ceiling


# =============================================================================
# Engine
# =============================================================================

class LivenessEngine:
    """Polls camera + landmark provider until a challenge passes or times out.

    Args:
        camera: object with read() -> frame
        provider: object with detect(frame) -> Detection or None
        thresholds: LivenessThresholds
        clock, sleep: time source, injectable for deterministic tests
    """

    def __init__(self, camera, provider, thresholds=None,
                 clock=time.monotonic, sleep=time.sleep):
        self.camera = camera
        self.provider = provider
        self.thresholds = thresholds or LivenessThresholds()
        self.clock = clock
        self.sleep = sleep

    def detector_for(self, challenge):
        t = self.thresholds
        if challenge == Challenge.BLINK:
            return BlinkDetector(t.open_threshold, t.closed_threshold, t.required_blinks)
        if challenge == Challenge.TURN_LEFT:
            return HeadTurnDetector(-1, t.turn_delta)
        if challenge == Challenge.TURN_RIGHT:
            return HeadTurnDetector(+1, t.turn_delta)
        if challenge == Challenge.SMILE:
            return SmileDetector(t.smile_delta, t.smile_ceiling)
        raise ValueError(f"Unknown challenge: {challenge}")

    def _sample(self, timestamp):
        """One independent poll. Any detection error counts as a missed sample."""
        try:
            frame = self.camera.read()
            if frame is None:
                return None
            detection = self.provider.detect(frame)
            if detection is None:
                return None
            return measure(detection.landmarks, timestamp)
        except Exception:
            logger.debug("Liveness sample failed, skipping", exc_info=True)
            return None

    def run_challenge(self, challenge, config=None):
        """Return True as soon as the challenge is satisfied, False on timeout."""
        challenge = Challenge(challenge)
        config = config or DEFAULT_CHALLENGE_CONFIGS[challenge.value]
        detector = self.detector_for(challenge)
        window = config.timeout

        start = self.clock()
        logger.info("Liveness challenge %s started (%.1fs)", challenge.value, window)
        while True:
            elapsed = self.clock() - start
            if elapsed >= window:
                break

            sample = self._sample(elapsed)
            if sample is not None and detector.update(sample, elapsed, window):
                logger.info("Liveness challenge %s passed after %.2fs",
                            challenge.value, elapsed)
                return True

            remaining = window - (self.clock() - start)
            if remaining <= 0:
                break
            self.sleep(min(config.sample_interval, remaining))

        logger.info("Liveness challenge %s timed out", challenge.value)
        return False
