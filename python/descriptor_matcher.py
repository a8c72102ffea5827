"""
Descriptor matching
===================
Compares a freshly captured face descriptor against the enrolled one.

Two metrics, selected explicitly through MatcherConfig.metric:

  euclidean (default)
      distance   = ||live - stored||
      confidence = max(0, 100 * (1 - distance / max_distance))
      accepted   = distance < max_distance and confidence >= acceptance_floor

  cosine
      similarity = dot(a, b) / (|a| * |b|)
      confidence = similarity * 100
      accepted   = similarity >= cosine_threshold

Malformed input never raises: it degrades to a rejection with confidence 0.
"""

import math
from dataclasses import dataclass

import numpy as np

from config import METRIC_COSINE, MatcherConfig


def as_descriptor(values):
    """Return a read-only float64 vector for a face encoding."""
    descriptor = np.array(values, dtype=np.float64).reshape(-1)
    descriptor.setflags(write=False)
    return descriptor


@dataclass(frozen=True)
class MatchResult:
    """score is the distance (euclidean) or similarity (cosine)."""

    score: float
    confidence: float
    accepted: bool
    metric: str


def euclidean_distance(a, b):
    return float(np.linalg.norm(a - b))


def cosine_similarity(a, b):
    norms = np.linalg.norm(a) * np.linalg.norm(b)
    if norms == 0.0:
        return 0.0
    return float(np.clip(np.dot(a, b) / norms, -1.0, 1.0))


def _coerce_pair(live, stored):
    """Both vectors as float arrays, or None if they cannot be compared."""
    try:
        a = np.asarray(live, dtype=np.float64).reshape(-1)
        b = np.asarray(stored, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError):
        return None
    if a.size == 0 or a.shape != b.shape:
        return None
    if not (np.all(np.isfinite(a)) and np.all(np.isfinite(b))):
        return None
    return a, b


class DescriptorMatcher:
    """Accept/reject decision for a live descriptor against a stored one."""

    def __init__(self, config=None):
        self.config = config or MatcherConfig()

    @property
    def metric(self):
        return self.config.metric

    def compare(self, live, stored):
        if self.config.metric == METRIC_COSINE:
            return self._compare_cosine(live, stored)
        return self._compare_euclidean(live, stored)

    def _compare_euclidean(self, live, stored):
        pair = _coerce_pair(live, stored)
        if pair is None:
            return MatchResult(math.inf, 0.0, False, self.metric)

        distance = euclidean_distance(*pair)
        max_distance = self.config.max_distance
        confidence = round(max(0.0, 100.0 * (1.0 - distance / max_distance)), 2)
        accepted = distance < max_distance and confidence >= self.config.acceptance_floor
        return MatchResult(distance, confidence, accepted, self.metric)

    def _compare_cosine(self, live, stored):
        pair = _coerce_pair(live, stored)
        if pair is None:
            return MatchResult(0.0, 0.0, False, self.metric)

        similarity = cosine_similarity(*pair)
        confidence = round(max(0.0, similarity * 100.0), 2)
        accepted = similarity >= self.config.cosine_threshold
        return MatchResult(similarity, confidence, accepted, self.metric)
