"""Tests for the liveness challenge engine."""

from __future__ import annotations

import pytest

from config import ChallengeConfig, LivenessThresholds
from conftest import (
    BLINK_SCRIPT,
    CLOSED,
    OPEN,
    ScriptedProvider,
    TimedProvider,
    make_landmarks,
)
from liveness import (
    BlinkDetector,
    Challenge,
    HeadTurnDetector,
    LivenessEngine,
    LivenessSample,
    SmileDetector,
    eye_openness,
    measure,
    mouth_ratio,
    nose_offset,
)


def _engine(camera, provider, clock, thresholds=None):
    return LivenessEngine(camera, provider, thresholds, clock=clock, sleep=clock.sleep)


class TestMetrics:
    def test_metrics_match_synthetic_geometry(self) -> None:
        lm = make_landmarks(openness=0.25, mouth=0.3, offset=-0.1)

        assert eye_openness(lm["left_eye"]) == pytest.approx(0.25)
        assert mouth_ratio(lm) == pytest.approx(0.3)
        assert nose_offset(lm) == pytest.approx(-0.1)

    def test_degenerate_eye_has_zero_openness(self) -> None:
        assert eye_openness([(5, 5)] * 6) == 0.0

    def test_measure_tolerates_missing_groups(self) -> None:
        lm = make_landmarks()
        del lm["top_lip"]
        del lm["chin"]

        sample = measure(lm, 1.5)

        assert sample.timestamp == 1.5
        assert sample.eye_openness == pytest.approx(OPEN)
        assert sample.mouth_ratio is None
        assert sample.nose_offset is None

    def test_measure_tolerates_malformed_groups(self) -> None:
        lm = make_landmarks()
        lm["chin"] = None
        lm["top_lip"] = [(1.0, 2.0)]

        sample = measure(lm, 0.0)

        assert sample.eye_openness == pytest.approx(OPEN)
        assert sample.mouth_ratio is None
        assert sample.nose_offset is None


class TestBlinkDetector:
    def _feed(self, detector, values):
        return [detector.update(LivenessSample(0.0, v, v)) for v in values]

    def test_open_closed_open_is_one_blink(self) -> None:
        detector = BlinkDetector()
        assert self._feed(detector, [OPEN, CLOSED, OPEN]) == [False, False, True]

    def test_values_inside_the_band_never_count(self) -> None:
        detector = BlinkDetector(open_threshold=0.22, closed_threshold=0.12)
        # jitter around 0.17 crosses neither threshold
        assert not any(self._feed(detector, [0.3, 0.18, 0.16, 0.19, 0.15, 0.3]))

    def test_closed_before_any_open_is_ignored(self) -> None:
        detector = BlinkDetector()
        assert self._feed(detector, [CLOSED, OPEN]) == [False, False]

    def test_alternative_calibration_requires_count(self) -> None:
        detector = BlinkDetector(open_threshold=0.35, closed_threshold=0.30, required_blinks=2)
        results = self._feed(detector, [0.4, 0.25, 0.4, 0.25, 0.4])
        assert results == [False, False, False, False, True]

    def test_thresholds_must_leave_a_band(self) -> None:
        with pytest.raises(ValueError):
            LivenessThresholds(open_threshold=0.2, closed_threshold=0.2)


class TestBaselineDetectors:
    def test_turn_needs_baseline_before_comparing(self) -> None:
        detector = HeadTurnDetector(direction=-1)
        assert not detector.update(LivenessSample(4.0, nose_offset=-0.5), 4.0, 6.0)

    def test_turn_left_and_right_directions(self) -> None:
        left = HeadTurnDetector(direction=-1, delta=0.12)
        right = HeadTurnDetector(direction=+1, delta=0.12)
        for detector in (left, right):
            detector.update(LivenessSample(0.0, nose_offset=0.02), 0.0, 6.0)

        moved = LivenessSample(4.0, nose_offset=-0.15)
        assert left.update(moved, 4.0, 6.0)
        assert not right.update(moved, 4.0, 6.0)

    def test_smile_delta_or_ceiling(self) -> None:
        by_delta = SmileDetector()
        by_delta.update(LivenessSample(0.0, mouth_ratio=0.10), 0.0, 6.0)
        assert by_delta.update(LivenessSample(4.0, mouth_ratio=0.23), 4.0, 6.0)

        by_ceiling = SmileDetector()
        by_ceiling.update(LivenessSample(0.0, mouth_ratio=0.30), 0.0, 6.0)
        assert by_ceiling.update(LivenessSample(4.0, mouth_ratio=0.37), 4.0, 6.0)


class TestLivenessEngine:
    def test_blink_sequence_passes(self, camera, clock) -> None:
        provider = ScriptedProvider(BLINK_SCRIPT, default=make_landmarks(OPEN))
        camera.start()

        assert _engine(camera, provider, clock).run_challenge(Challenge.BLINK)
        assert provider.calls == 5
        assert clock.now < 6.0

    def test_blink_never_closing_times_out(self, camera, clock) -> None:
        provider = ScriptedProvider([make_landmarks(OPEN)] * 3, default=make_landmarks(OPEN))
        camera.start()

        assert not _engine(camera, provider, clock).run_challenge(Challenge.BLINK)
        assert clock.now == pytest.approx(6.0)

    def test_detection_errors_are_missed_samples(self, camera, clock) -> None:
        script = [RuntimeError("model hiccup"), None] + BLINK_SCRIPT
        provider = ScriptedProvider(script, default=make_landmarks(OPEN))
        camera.start()

        assert _engine(camera, provider, clock).run_challenge(Challenge.BLINK)

    def test_malformed_landmarks_are_missed_samples(self, camera, clock) -> None:
        script = [{"left_eye": None, "right_eye": 5}, ["not", "a", "dict"]] + BLINK_SCRIPT
        provider = ScriptedProvider(script, default=make_landmarks(OPEN))
        camera.start()

        assert _engine(camera, provider, clock).run_challenge(Challenge.BLINK)
        assert provider.calls == 7

    def test_sampling_cadence_follows_config(self, camera, clock) -> None:
        provider = ScriptedProvider(default=None)
        camera.start()
        config = ChallengeConfig(timeout_ms=1000, sample_interval_ms=200)

        assert not _engine(camera, provider, clock).run_challenge("BLINK", config)
        assert provider.calls == 5

    @pytest.mark.parametrize(
        ("challenge", "offset", "expected"),
        [
            (Challenge.TURN_LEFT, -0.2, True),
            (Challenge.TURN_RIGHT, -0.2, False),
            (Challenge.TURN_RIGHT, 0.2, True),
            (Challenge.TURN_LEFT, -0.05, False),
        ],
    )
    def test_head_turns(self, camera, clock, challenge, offset, expected) -> None:
        provider = TimedProvider(
            clock, lambda t: make_landmarks(offset=0.0 if t < 3.0 else offset)
        )
        camera.start()

        assert _engine(camera, provider, clock).run_challenge(challenge) is expected

    def test_turn_without_baseline_fails(self, camera, clock) -> None:
        provider = TimedProvider(
            clock, lambda t: None if t < 3.0 else make_landmarks(offset=-0.4)
        )
        camera.start()

        assert not _engine(camera, provider, clock).run_challenge(Challenge.TURN_LEFT)

    @pytest.mark.parametrize(
        ("rest", "smile", "expected"),
        [(0.15, 0.30, True), (0.30, 0.38, True), (0.15, 0.20, False)],
    )
    def test_smile(self, camera, clock, rest, smile, expected) -> None:
        provider = TimedProvider(
            clock, lambda t: make_landmarks(mouth=rest if t < 3.0 else smile)
        )
        camera.start()

        assert _engine(camera, provider, clock).run_challenge(Challenge.SMILE) is expected

    def test_each_call_starts_fresh(self, camera, clock) -> None:
        # Half a blink in the first call must not complete in the second
        provider = ScriptedProvider([make_landmarks(OPEN), make_landmarks(CLOSED)],
                                    default=None)
        camera.start()
        engine = _engine(camera, provider, clock)
        config = ChallengeConfig(timeout_ms=500, sample_interval_ms=50)

        assert not engine.run_challenge(Challenge.BLINK, config)
        provider.script = [make_landmarks(OPEN)]
        assert not engine.run_challenge(Challenge.BLINK, config)
