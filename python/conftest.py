"""Shared fakes for the liveness, capture and session tests."""

from __future__ import annotations

from contextlib import contextmanager

import numpy as np
import pytest

from capture import Capabilities, Detection
from config import Settings
from descriptor_matcher import as_descriptor
from key_derivation import LocalWalletSigner
from liveness import LivenessEngine

OPEN = 0.30
CLOSED = 0.05

KEY_A = "0x" + "11" * 32
KEY_B = "0x" + "22" * 32


def make_landmarks(openness=OPEN, mouth=0.20, offset=0.0):
    """face_recognition-style landmarks with the requested metric values."""

    def eye(x0):
        v = openness * 30.0
        return [
            (x0, 100.0), (x0 + 10, 100.0 - v / 2), (x0 + 20, 100.0 - v / 2),
            (x0 + 30, 100.0), (x0 + 20, 100.0 + v / 2), (x0 + 10, 100.0 + v / 2),
        ]

    half = mouth * 60.0 / 2
    top_lip = [(70.0, 200.0), (80.0, 200.0 - half), (90.0, 200.0 - half),
               (100.0, 200.0 - half), (110.0, 200.0 - half), (120.0, 200.0 - half),
               (130.0, 200.0)] + [(100.0, 200.0)] * 5
    bottom_lip = [(130.0, 200.0), (120.0, 200.0 + half), (110.0, 200.0 + half),
                  (100.0, 200.0 + half), (90.0, 200.0 + half), (80.0, 200.0 + half),
                  (70.0, 200.0)] + [(100.0, 200.0)] * 5

    chin = [(0.0, 150.0)] + [(100.0, 250.0)] * 15 + [(200.0, 150.0)]
    nose_x = 100.0 + offset * 200.0
    nose_tip = [(nose_x - 10, 160.0), (nose_x - 5, 160.0), (nose_x, 160.0),
                (nose_x + 5, 160.0), (nose_x + 10, 160.0)]

    return {
        "left_eye": eye(40.0),
        "right_eye": eye(130.0),
        "top_lip": top_lip,
        "bottom_lip": bottom_lip,
        "chin": chin,
        "nose_tip": nose_tip,
        "nose_bridge": [(100.0, 110.0)] * 4,
    }


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


class FakeCamera:
    """Tracks start/stop so tests can assert the camera was released."""

    def __init__(self):
        self.is_open = False
        self.starts = 0
        self.stops = 0

    def start(self):
        self.is_open = True
        self.starts += 1
        return self

    def read(self):
        if not self.is_open:
            raise RuntimeError("camera is not started")
        return np.zeros((4, 4, 3), dtype=np.uint8)

    def stop(self):
        self.is_open = False
        self.stops += 1

    @contextmanager
    def session(self):
        self.start()
        try:
            yield self
        finally:
            self.stop()


class ScriptedProvider:
    """LandmarkProvider fake.

    detect() serves ``script`` in order (landmark dicts, None for "no face",
    or an exception instance to raise), then ``default`` forever.
    detect_all() returns ``faces`` copies of a detection with ``descriptor``.
    """

    def __init__(self, script=(), default=None, descriptor=None, faces=1):
        self.script = list(script)
        self.default = default
        self.descriptor = as_descriptor(descriptor if descriptor is not None else [0.1] * 128)
        self.faces = faces
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        if item is None:
            return None
        return Detection(landmarks=item, descriptor=self.descriptor)

    def detect_all(self, frame):
        detection = Detection(landmarks=make_landmarks(), descriptor=self.descriptor)
        return [detection] * self.faces


class TimedProvider(ScriptedProvider):
    """detect() returns landmarks_at(clock time)."""

    def __init__(self, clock, landmarks_at, **kwargs):
        super().__init__(**kwargs)
        self.clock = clock
        self.landmarks_at = landmarks_at

    def detect(self, frame):
        self.calls += 1
        landmarks = self.landmarks_at(self.clock.now)
        if landmarks is None:
            return None
        return Detection(landmarks=landmarks, descriptor=self.descriptor)


BLINK_SCRIPT = [make_landmarks(OPEN), make_landmarks(OPEN), make_landmarks(CLOSED),
                make_landmarks(CLOSED), make_landmarks(OPEN)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def camera():
    return FakeCamera()


@pytest.fixture
def settings():
    return Settings(camera_warmup_ms=0)


@pytest.fixture
def signer():
    return LocalWalletSigner(KEY_A)


@pytest.fixture
def other_signer():
    return LocalWalletSigner(KEY_B)


@pytest.fixture
def blink_provider():
    return ScriptedProvider(BLINK_SCRIPT, default=make_landmarks(OPEN))


@pytest.fixture
def capabilities(camera, blink_provider):
    return Capabilities(camera=camera, provider=blink_provider, ready=True)


@pytest.fixture
def engine(camera, blink_provider, clock):
    return LivenessEngine(camera, blink_provider, clock=clock, sleep=clock.sleep)
