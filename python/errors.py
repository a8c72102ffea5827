"""
Error taxonomy for enrollment and verification
==============================================
Expected negative outcomes (liveness timeout, non-matching face) are plain
return values inside the engine and matcher. Everything below is raised for
conditions the sessions have to stop on; each class carries the
FailureReason the session records when it ends in FAILED.
"""

from enum import Enum


class FailureReason(str, Enum):
    CAPABILITY_UNAVAILABLE = "capability_unavailable"
    LIVENESS_TIMEOUT = "liveness_timeout"
    CAPTURE_FAILED = "capture_failed"
    SIGNER_REJECTED = "signer_rejected"
    DECRYPTION_FAILED = "decryption_failed"
    INVALID_PAYLOAD = "invalid_payload"
    IDENTITY_NOT_FOUND = "identity_not_found"
    MATCH_REJECTED = "match_rejected"
    STORAGE_UNREACHABLE = "storage_unreachable"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    UNEXPECTED = "unexpected"


class IdentityError(Exception):
    """Base class for every failure a session maps to a terminal state."""

    reason = FailureReason.UNEXPECTED


class CapabilityUnavailable(IdentityError):
    """No camera, no landmark model, or no signer."""

    reason = FailureReason.CAPABILITY_UNAVAILABLE


class SignerUnavailable(CapabilityUnavailable):
    """No wallet or node is reachable to sign the key message."""


class LivenessTimeout(IdentityError):
    reason = FailureReason.LIVENESS_TIMEOUT


class CaptureFailed(IdentityError):
    """No face found when a descriptor was expected."""

    reason = FailureReason.CAPTURE_FAILED


class SignerRejected(IdentityError):
    """The wallet owner declined the signature request."""

    reason = FailureReason.SIGNER_REJECTED


UserRejectedSignature = SignerRejected


class DecryptionFailed(IdentityError):
    """Authentication failed: wrong key, corrupted or tampered ciphertext."""

    reason = FailureReason.DECRYPTION_FAILED


class PayloadSchemaError(IdentityError):
    """Decryption succeeded but the plaintext is not the enrolled schema."""

    reason = FailureReason.INVALID_PAYLOAD


class IdentityNotFound(IdentityError):
    reason = FailureReason.IDENTITY_NOT_FOUND


class MatchRejected(IdentityError):
    """Decrypted fine, but the live face is not the enrolled one.

    ``match`` holds the MatchResult when a comparison was made, or None when
    the record was rejected before any distance was computed.
    """

    reason = FailureReason.MATCH_REJECTED

    def __init__(self, message, match=None):
        super().__init__(message)
        self.match = match


class StorageUnreachable(IdentityError):
    """Every blob store endpoint failed."""

    reason = FailureReason.STORAGE_UNREACHABLE


class AttemptsExhausted(IdentityError):
    """Too many failed verifications; a fallback login path is required."""

    reason = FailureReason.ATTEMPTS_EXHAUSTED
