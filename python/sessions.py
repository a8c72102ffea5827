"""
Enrollment and verification sessions
====================================
Both flows share one forward-only state machine:

  IDLE -> AWAITING_CAPABILITY -> RUNNING_CHALLENGE -> CAPTURED
       -> ENCRYPTING -> PUBLISHING -> REGISTERING -> DONE        (enroll)
       -> FETCHING_STORED -> DECRYPTING -> MATCHING -> DONE      (verify)

Any failure ends in FAILED with a FailureReason. A finished session only
goes back to IDLE through an explicit reset(). The camera is held only for
RUNNING_CHALLENGE and CAPTURED and is released on every way out of them.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from cipher_vault import EncryptedPayload, vault_for
from config import get_settings
from descriptor_matcher import DescriptorMatcher, MatchResult, as_descriptor
from errors import (
    AttemptsExhausted,
    CaptureFailed,
    FailureReason,
    IdentityError,
    IdentityNotFound,
    LivenessTimeout,
    MatchRejected,
    PayloadSchemaError,
    SignerUnavailable,
)
from key_derivation import derive_key
from liveness import Challenge, LivenessEngine, random_challenge

logger = logging.getLogger(__name__)

CAPTURE_ATTEMPTS = 10

# Failures that happen before a face is compared do not use up a login attempt
UNCOUNTED_FAILURES = (IdentityNotFound, LivenessTimeout, CaptureFailed)


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_CAPABILITY = "awaiting_capability"
    RUNNING_CHALLENGE = "running_challenge"
    CAPTURED = "captured"
    ENCRYPTING = "encrypting"
    PUBLISHING = "publishing"
    REGISTERING = "registering"
    FETCHING_STORED = "fetching_stored"
    DECRYPTING = "decrypting"
    MATCHING = "matching"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = (SessionState.DONE, SessionState.FAILED)


# =============================================================================
# Enrollment record
# =============================================================================

def _utc_timestamp(moment):
    """ISO-8601 with milliseconds and a Z suffix, like JavaScript toISOString()."""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class EnrollmentRecord:
    owner_identifier: Optional[str]
    descriptor: object
    created_at: datetime

    def to_payload(self):
        payload = {
            "faceDescriptor": [float(v) for v in self.descriptor],
            "createdAt": _utc_timestamp(self.created_at),
        }
        if self.owner_identifier:
            payload["walletAddress"] = self.owner_identifier
        return payload

    @classmethod
    def from_payload(cls, payload):
        """Parse a decrypted payload; schema problems raise PayloadSchemaError."""
        values = payload.get("faceDescriptor")
        if not isinstance(values, list) or not values:
            raise PayloadSchemaError("Payload has no faceDescriptor")
        if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
            raise PayloadSchemaError("faceDescriptor must contain only numbers")

        created_at = payload.get("createdAt")
        try:
            created = datetime.fromisoformat(str(created_at).replace("Z", "+00:00"))
        except ValueError as exc:
            raise PayloadSchemaError(f"Invalid createdAt: {created_at!r}") from exc

        owner = payload.get("walletAddress")
        if owner is not None and not isinstance(owner, str):
            raise PayloadSchemaError("walletAddress must be a string")
        return cls(owner, as_descriptor(values), created)


@dataclass
class SessionOutcome:
    state: SessionState
    challenge: Optional[Challenge] = None
    reason: Optional[FailureReason] = None
    error: Optional[Exception] = None
    match: Optional[MatchResult] = None
    reference: Optional[str] = None
    user: Optional[object] = None
    receipt: Optional[object] = None

    @property
    def succeeded(self):
        return self.state == SessionState.DONE


# =============================================================================
# Shared state machine
# =============================================================================

class _Session:
    PATH = ()

    def __init__(self, capabilities, signer, blob_store, registry, vault=None,
                 settings=None, challenge=None, engine=None):
        self.settings = settings or get_settings()
        self.capabilities = capabilities
        self.signer = signer
        self.blob_store = blob_store
        self.registry = registry
        self.vault = vault or vault_for(self.settings.cipher_backend)
        self.fixed_challenge = Challenge(challenge) if challenge else None
        self.engine = engine

        self.state = SessionState.IDLE
        self.history = [SessionState.IDLE]
        self.challenge = None
        self.outcome = None

    def _advance(self, state):
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Session already finished in {self.state.value}")
        if state != SessionState.FAILED:
            if state not in self.PATH or self.PATH.index(state) <= self.PATH.index(self.state):
                raise RuntimeError(f"Illegal transition {self.state.value} -> {state.value}")
        logger.info("%s: %s -> %s", type(self).__name__, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _begin(self):
        if self.state != SessionState.IDLE:
            raise RuntimeError("Session must be reset to IDLE before running again")
        self.challenge = self.fixed_challenge or random_challenge()
        self.outcome = SessionOutcome(SessionState.IDLE, challenge=self.challenge)

    def _finish(self):
        self._advance(SessionState.DONE)
        self.outcome.state = self.state
        return self.outcome

    def _fail(self, exc):
        reason = exc.reason if isinstance(exc, IdentityError) else FailureReason.UNEXPECTED
        if isinstance(exc, IdentityError):
            logger.warning("%s failed in %s: %s (%s)", type(self).__name__,
                           self.state.value, reason.value, exc)
        else:
            logger.exception("%s failed unexpectedly in %s", type(self).__name__, self.state.value)
        self._advance(SessionState.FAILED)
        self.outcome.state = self.state
        self.outcome.reason = reason
        self.outcome.error = exc
        if isinstance(exc, MatchRejected) and exc.match is not None:
            self.outcome.match = exc.match
        return self.outcome

    def reset(self):
        """Return a finished session to IDLE."""
        if self.state not in TERMINAL_STATES + (SessionState.IDLE,):
            raise RuntimeError(f"Cannot reset a running session ({self.state.value})")
        self.state = SessionState.IDLE
        self.history = [SessionState.IDLE]
        self.challenge = None
        self.outcome = None

    def _signer_address(self):
        if self.signer is None:
            raise SignerUnavailable("No wallet signer configured")
        return self.signer.get_address()

    def _liveness_engine(self):
        if self.engine is not None:
            return self.engine
        return LivenessEngine(self.capabilities.camera, self.capabilities.provider,
                              self.settings.thresholds)

    def _warm_up(self):
        if self.settings.camera_warmup_ms > 0:
            time.sleep(self.settings.camera_warmup_ms / 1000.0)

    def _gate_and_capture(self):
        """Acquire the camera, run the challenge and capture one descriptor."""
        camera = self.capabilities.camera
        with camera.session():
            self._warm_up()
            self._advance(SessionState.RUNNING_CHALLENGE)
            logger.info("Challenge: %s", self.challenge.instruction)
            if not self._liveness_engine().run_challenge(self.challenge):
                raise LivenessTimeout(f"{self.challenge.value} not performed in time")

            descriptor = self._capture(camera, self.capabilities.provider)
            self._advance(SessionState.CAPTURED)
        return descriptor

    @staticmethod
    def _capture(camera, provider):
        multiple = False
        for _ in range(CAPTURE_ATTEMPTS):
            frame = camera.read()
            if frame is None:
                continue
            detections = provider.detect_all(frame)
            if len(detections) == 1:
                return detections[0].descriptor
            multiple = multiple or len(detections) > 1
        if multiple:
            raise CaptureFailed("More than one face in view")
        raise CaptureFailed("No face found to capture")


# =============================================================================
# Enrollment
# =============================================================================

class EnrollmentSession(_Session):
    PATH = (
        SessionState.IDLE,
        SessionState.AWAITING_CAPABILITY,
        SessionState.RUNNING_CHALLENGE,
        SessionState.CAPTURED,
        SessionState.ENCRYPTING,
        SessionState.PUBLISHING,
        SessionState.REGISTERING,
        SessionState.DONE,
    )

    def run(self, name, email):
        """Enroll the face in front of the camera under the signer's wallet."""
        if not name or not email:
            raise ValueError("name and email are required")
        self._begin()
        try:
            self._advance(SessionState.AWAITING_CAPABILITY)
            self.capabilities.require_ready()
            address = self._signer_address()

            descriptor = self._gate_and_capture()
            record = EnrollmentRecord(address, descriptor, datetime.now(timezone.utc))

            self._advance(SessionState.ENCRYPTING)
            key = derive_key(self.signer)
            payload = self.vault.encrypt(key, record.to_payload())

            self._advance(SessionState.PUBLISHING)
            self.outcome.reference = self.blob_store.put(payload.to_json().encode("utf-8"))

            self._advance(SessionState.REGISTERING)
            self.outcome.receipt = self.registry.register_user(name, email, self.outcome.reference)
            return self._finish()
        except Exception as exc:
            return self._fail(exc)


# =============================================================================
# Verification
# =============================================================================

class VerificationSession(_Session):
    PATH = (
        SessionState.IDLE,
        SessionState.AWAITING_CAPABILITY,
        SessionState.RUNNING_CHALLENGE,
        SessionState.CAPTURED,
        SessionState.FETCHING_STORED,
        SessionState.DECRYPTING,
        SessionState.MATCHING,
        SessionState.DONE,
    )

    def __init__(self, *args, matcher=None, max_attempts=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.matcher = matcher or DescriptorMatcher(self.settings.matcher)
        self.max_attempts = max_attempts or self.settings.max_verify_attempts
        self.failed_attempts = 0

    @property
    def fallback_required(self):
        """True once camera logins are exhausted; offer another login path."""
        return self.failed_attempts >= self.max_attempts

    def reset(self, clear_attempts=False):
        super().reset()
        if clear_attempts:
            self.failed_attempts = 0

    def run(self):
        """Verify that the live face matches the signer's enrolled face."""
        self._begin()
        if self.fallback_required:
            return self._fail(AttemptsExhausted(
                f"{self.failed_attempts} failed attempts, use the fallback login"))

        try:
            self._advance(SessionState.AWAITING_CAPABILITY)
            self.capabilities.require_ready()
            address = self._signer_address()
            self.outcome.user = self.registry.get_user(address)

            live = self._gate_and_capture()

            self._advance(SessionState.FETCHING_STORED)
            raw = self.blob_store.get(self.outcome.user.reference)
            self.outcome.reference = self.outcome.user.reference

            self._advance(SessionState.DECRYPTING)
            key = derive_key(self.signer)
            plaintext = self.vault.decrypt(key, EncryptedPayload.from_json(raw))
            stored = EnrollmentRecord.from_payload(plaintext)

            self._advance(SessionState.MATCHING)
            if stored.owner_identifier and stored.owner_identifier.lower() != address.lower():
                raise MatchRejected("Enrollment is bound to a different wallet")
            match = self.matcher.compare(live, stored.descriptor)
            self.outcome.match = match
            if not match.accepted:
                raise MatchRejected(f"Low confidence ({match.confidence:.2f}%)", match)
            logger.info("Face matched (%.2f%%)", match.confidence)
            return self._finish()
        except Exception as exc:
            if not isinstance(exc, UNCOUNTED_FAILURES):
                self.failed_attempts += 1
            return self._fail(exc)
