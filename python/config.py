"""Configuration structs and environment-driven settings."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache

from dotenv import load_dotenv


# =============================================================================
# Liveness / matching parameters
# =============================================================================

@dataclass(frozen=True)
class ChallengeConfig:
    """Time budget for one liveness challenge."""

    timeout_ms: int = 6000
    sample_interval_ms: int = 150

    def __post_init__(self):
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if self.sample_interval_ms <= 0:
            raise ValueError("sample_interval_ms must be positive")

    @property
    def timeout(self):
        return self.timeout_ms / 1000.0

    @property
    def sample_interval(self):
        return self.sample_interval_ms / 1000.0


# Blinks are short, so BLINK samples faster than the pose challenges.
DEFAULT_CHALLENGE_CONFIGS = {
    "BLINK": ChallengeConfig(timeout_ms=6000, sample_interval_ms=50),
    "TURN_LEFT": ChallengeConfig(timeout_ms=6000, sample_interval_ms=150),
    "TURN_RIGHT": ChallengeConfig(timeout_ms=6000, sample_interval_ms=150),
    "SMILE": ChallengeConfig(timeout_ms=6000, sample_interval_ms=150),
}


@dataclass(frozen=True)
class LivenessThresholds:
    """Thresholds for the landmark ratios.

    open_threshold / closed_threshold form the blink hysteresis band; an
    openness between them changes nothing. 0.35 / 0.30 is the alternative
    calibration for landmark sets with taller eye contours.
    """

    open_threshold: float = 0.22
    closed_threshold: float = 0.12
    required_blinks: int = 1
    turn_delta: float = 0.12
    smile_delta: float = 0.12
    smile_ceiling: float = 0.36

    def __post_init__(self):
        if self.closed_threshold >= self.open_threshold:
            raise ValueError("closed_threshold must be below open_threshold")
        if self.required_blinks < 1:
            raise ValueError("required_blinks must be at least 1")


METRIC_EUCLIDEAN = "euclidean"
METRIC_COSINE = "cosine"


@dataclass(frozen=True)
class MatcherConfig:
    metric: str = METRIC_EUCLIDEAN
    max_distance: float = 0.5
    acceptance_floor: float = 30.0
    cosine_threshold: float = 0.8

    def __post_init__(self):
        if self.metric not in (METRIC_EUCLIDEAN, METRIC_COSINE):
            raise ValueError(f"Unknown match metric: {self.metric}")
        if self.max_distance <= 0:
            raise ValueError("max_distance must be positive")


# =============================================================================
# Environment settings
# =============================================================================

DEFAULT_GATEWAYS = (
    "http://127.0.0.1:8080",
    "https://ipfs.io",
    "https://cloudflare-ipfs.com",
)


@dataclass(frozen=True)
class Settings:
    """Project settings read from OS environment variables."""

    log_level: str = "INFO"

    camera_index: int = 0
    camera_warmup_ms: int = 1000
    face_detector: str = "hog"

    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    thresholds: LivenessThresholds = field(default_factory=LivenessThresholds)
    cipher_backend: str = "aes-gcm"

    ipfs_api_url: str = "http://127.0.0.1:5001"
    ipfs_gateways: tuple = DEFAULT_GATEWAYS
    ipfs_timeout: float = 8.0

    rpc_url: str = "http://127.0.0.1:8545"
    contract_address: str = ""
    wallet_private_key: str = ""

    max_verify_attempts: int = 3


def _split_list(value):
    return tuple(item.strip().rstrip("/") for item in value.split(",") if item.strip())


def _build_settings() -> Settings:
    load_dotenv()

    matcher = MatcherConfig(
        metric=os.getenv("MATCH_METRIC", METRIC_EUCLIDEAN),
        max_distance=float(os.getenv("MATCH_MAX_DISTANCE", "0.5")),
        acceptance_floor=float(os.getenv("MATCH_ACCEPTANCE_FLOOR", "30")),
        cosine_threshold=float(os.getenv("MATCH_COSINE_THRESHOLD", "0.8")),
    )
    thresholds = LivenessThresholds(
        open_threshold=float(os.getenv("BLINK_OPEN_THRESHOLD", "0.22")),
        closed_threshold=float(os.getenv("BLINK_CLOSED_THRESHOLD", "0.12")),
        required_blinks=int(os.getenv("BLINK_REQUIRED", "1")),
    )
    gateways = os.getenv("IPFS_GATEWAYS")

    return Settings(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        camera_index=int(os.getenv("CAMERA_INDEX", "0")),
        camera_warmup_ms=int(os.getenv("CAMERA_WARMUP_MS", "1000")),
        face_detector=os.getenv("FACE_DETECTOR", "hog"),
        matcher=matcher,
        thresholds=thresholds,
        cipher_backend=os.getenv("CIPHER_BACKEND", "aes-gcm"),
        ipfs_api_url=os.getenv("IPFS_API_URL", "http://127.0.0.1:5001").rstrip("/"),
        ipfs_gateways=_split_list(gateways) if gateways else DEFAULT_GATEWAYS,
        ipfs_timeout=float(os.getenv("IPFS_TIMEOUT", "8")),
        rpc_url=os.getenv("RPC_URL", "http://127.0.0.1:8545"),
        contract_address=os.getenv("CONTRACT_ADDRESS", ""),
        wallet_private_key=os.getenv("WALLET_PRIVATE_KEY", ""),
        max_verify_attempts=int(os.getenv("MAX_VERIFY_ATTEMPTS", "3")),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return _build_settings()


def configure_logging(level=None):
    """Configure the root logger for the CLI."""
    level = level or get_settings().log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
