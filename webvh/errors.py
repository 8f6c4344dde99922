"""Error taxonomy for did:webvh log construction and verification.

Every failure raised by this package derives from :class:`WebvhError` so a
transport layer can map the concrete type to an explicit response. The
distinction between "not found", "tampered" and "unauthorized" is
security-relevant and must survive up to the caller.
"""

from __future__ import annotations

from typing import Optional


class WebvhError(Exception):
    """Base exception for all did:webvh failures."""

    def __init__(self, message: str, index: Optional[int] = None):
        self.message = message
        self.index = index
        super().__init__(message)


class EncodingError(WebvhError):
    """A value cannot be canonicalized (non-finite number, bad string, unknown type)."""
    pass


class ConfigError(WebvhError):
    """Missing or invalid keys, parameters or configuration."""
    pass


class OrderingError(WebvhError):
    """Version time did not increase, or an entry was appended out of sequence."""
    pass


class ChainBroken(WebvhError):
    """An entry hash, SCID or fixed per-log setting does not match."""
    pass


class ProofInvalid(WebvhError):
    """A proof is malformed or its signature does not verify."""
    pass


class UnauthorizedKey(WebvhError):
    """A signature (or new update key) is not covered by the authorized key set."""
    pass


class ThresholdNotMet(WebvhError):
    """Too few valid proofs (controller or witness) for the entry."""
    pass


class InvalidStateError(WebvhError):
    """Mutation attempted on a deactivated log, or an illegal state change."""
    pass


class SigningFailed(WebvhError):
    """The key registry failed to produce a signature."""
    pass


class VerificationUnavailable(WebvhError):
    """The key registry could not perform a verification (timeout, remote failure)."""
    pass


class VersionNotFound(WebvhError):
    """A requested historical version is not present in an otherwise valid log."""
    pass


class LogCorrupt(WebvhError):
    """Full-chain validation failed at ``index`` (1-based version number).

    ``cause`` holds the underlying :class:`WebvhError`.
    """

    def __init__(self, index: int, cause: WebvhError):
        self.cause = cause
        super().__init__(
            f"log corrupt at entry {index}: {type(cause).__name__}: {cause.message}",
            index=index,
        )
