"""Proof engine: Data Integrity proofs (``eddsa-jcs-2022``) over log entries.

Profile / invariants:
- Proof ``type`` is ``DataIntegrityProof``, cryptosuite ``eddsa-jcs-2022``
- ``verificationMethod`` is ``did:key:<multikey>#<multikey>`` (Ed25519)
- Signing payload is ``SHA256(JCS(proof options)) || SHA256(JCS(entry))``
  where the entry is taken with ``proof`` removed and the proof options are
  the proof with ``proofValue`` removed
- ``proofValue`` is the raw 64-byte signature, multibase base58btc

Because the entry is signed without its ``proof`` member, several parties
can co-sign the same entry independently and proofs can be appended in
any order.
"""

from __future__ import annotations

import hmac
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Collection, Dict, List, Optional, Sequence

from webvh.config import WebvhConfig
from webvh.core import canonical_json_bytes, multibase_decode, multibase_encode, now_utc, rfc3339, sha256_bytes
from webvh.errors import (
    ConfigError,
    ProofInvalid,
    SigningFailed,
    ThresholdNotMet,
    UnauthorizedKey,
    VerificationUnavailable,
    WebvhError,
)
from webvh.keys import KeyRef, KeyRegistry, key_from_verification_method, verification_method_id, verify_signature
from webvh.log import LogEntry, Proof
from webvh.observability import timed_operation

logger = logging.getLogger(__name__)

PROOF_TYPE = "DataIntegrityProof"
CRYPTOSUITE = "eddsa-jcs-2022"
ALLOWED_PROOF_PURPOSES = ("assertionMethod", "authentication")


def signing_input(entry: LogEntry) -> Dict[str, Any]:
    """The entry as signed: wire form with ``proof`` removed."""
    return entry.to_dict(include_proof=False)


def proof_payload(unsigned: Dict[str, Any], proof: Proof) -> bytes:
    """Bytes handed to the signer for ``proof`` over an unsigned entry object."""
    return sha256_bytes(canonical_json_bytes(proof.config())) + sha256_bytes(canonical_json_bytes(unsigned))


def create_proof(
    entry: LogEntry,
    registry: KeyRegistry,
    key_ref: KeyRef,
    created: Optional[datetime] = None,
    purpose: Optional[str] = None,
    config: Optional[WebvhConfig] = None,
) -> Proof:
    """Sign ``entry`` with one registry key and return the proof object.

    ``purpose`` defaults to the configured ``proof_purpose``.
    """
    if purpose is None:
        purpose = (config or WebvhConfig()).proof_purpose.get()
    if purpose not in ALLOWED_PROOF_PURPOSES:
        raise ConfigError(f"unsupported proof purpose {purpose!r}")
    options = Proof(
        id=f"urn:uuid:{uuid.uuid4()}",
        verification_method=verification_method_id(key_ref),
        created=rfc3339(created or now_utc()),
        proof_purpose=purpose,
    )
    payload = proof_payload(signing_input(entry), options)
    try:
        signature = registry.sign(payload, key_ref)
    except SigningFailed:
        raise
    except Exception as ex:
        raise SigningFailed(f"key registry failed to sign with {key_ref}: {ex}") from ex
    if not isinstance(signature, (bytes, bytearray)) or not signature:
        raise SigningFailed(f"key registry returned no signature for {key_ref}")
    return Proof(
        id=options.id,
        verification_method=options.verification_method,
        created=options.created,
        proof_purpose=options.proof_purpose,
        proof_value=multibase_encode(bytes(signature)),
    )


@timed_operation("proof.attach")
def attach(
    entry: LogEntry,
    registry: KeyRegistry,
    keys: Optional[Sequence[KeyRef]] = None,
    created: Optional[datetime] = None,
    purpose: Optional[str] = None,
    config: Optional[WebvhConfig] = None,
) -> LogEntry:
    """Return a copy of ``entry`` with one proof per signing key appended.

    ``keys`` defaults to the registry's current update keys. The input
    entry is not modified; if any signature fails nothing is attached.
    """
    key_refs = list(keys) if keys is not None else list(registry.current_update_keys())
    if not key_refs:
        raise ConfigError("no signing keys supplied")
    proofs = [create_proof(entry, registry, k, created=created, purpose=purpose, config=config) for k in key_refs]
    logger.debug(
        "attached %d proof(s) to %s", len(proofs), entry.version_id,
        extra={"context": {"version_id": entry.version_id}},
    )
    return entry.with_proofs(proofs)


def _validate_proof_object(proof: Proof) -> KeyRef:
    """Check proof shape; return the Multikey it names."""
    # Constant-time comparison for the proof type and suite.
    if not hmac.compare_digest(proof.type, PROOF_TYPE):
        raise ProofInvalid(f"unsupported proof type {proof.type!r} - must be {PROOF_TYPE!r}")
    if not hmac.compare_digest(proof.cryptosuite, CRYPTOSUITE):
        raise ProofInvalid(f"unsupported cryptosuite {proof.cryptosuite!r} - must be {CRYPTOSUITE!r}")
    if proof.proof_purpose not in ALLOWED_PROOF_PURPOSES:
        raise ProofInvalid(f"unsupported proof purpose {proof.proof_purpose!r}")
    if not proof.proof_value:
        raise ProofInvalid("proof value is missing")
    try:
        return key_from_verification_method(proof.verification_method)
    except ValueError as ex:
        raise ProofInvalid(str(ex)) from ex


def verify_proof(
    unsigned: Dict[str, Any],
    proof: Proof,
    verifier: Optional[KeyRegistry] = None,
) -> KeyRef:
    """Verify one proof over an unsigned entry object; return the signer key.

    With a ``verifier`` the registry's ``verify`` is used; otherwise the
    Ed25519 public key is decoded from the Multikey in the proof.
    """
    key_ref = _validate_proof_object(proof)
    try:
        signature = multibase_decode(proof.proof_value or "")
    except ValueError as ex:
        raise ProofInvalid(f"proof value is not multibase base58btc: {ex}") from ex

    payload = proof_payload(unsigned, proof)
    if verifier is None:
        ok = verify_signature(payload, signature, key_ref)
    else:
        try:
            ok = bool(verifier.verify(payload, signature, key_ref))
        except WebvhError:
            raise
        except Exception as ex:
            raise VerificationUnavailable(f"key registry failed to verify {key_ref}: {ex}") from ex
    if not ok:
        raise ProofInvalid(f"signature by {key_ref} does not verify")
    return key_ref


@dataclass
class ProofReport:
    """Outcome of a successful :func:`verify`."""
    version_id: str
    signers: List[KeyRef] = field(default_factory=list)
    threshold: int = 1


@timed_operation("proof.verify")
def verify(
    entry: LogEntry,
    authorized_keys: Collection[KeyRef],
    threshold: int = 1,
    verifier: Optional[KeyRegistry] = None,
) -> ProofReport:
    """Verify every controller proof on ``entry``.

    Every proof must name a key in ``authorized_keys`` (``UnauthorizedKey``)
    and carry a valid signature (``ProofInvalid``); the number of distinct
    signers must reach ``threshold`` (``ThresholdNotMet``).
    """
    if not entry.proof:
        raise ThresholdNotMet(f"log entry {entry.version_id} has no proof")

    unsigned = signing_input(entry)
    authorized = set(authorized_keys)
    signers: List[KeyRef] = []
    for proof in entry.proof:
        key_ref = _validate_proof_object(proof)
        if key_ref not in authorized:
            raise UnauthorizedKey(
                f"verification method {proof.verification_method} is not authorized to sign {entry.version_id}"
            )
        verify_proof(unsigned, proof, verifier)
        if key_ref not in signers:
            signers.append(key_ref)

    if len(signers) < threshold:
        raise ThresholdNotMet(
            f"{len(signers)} authorized signer(s) on {entry.version_id}, {threshold} required"
        )
    return ProofReport(version_id=entry.version_id, signers=signers, threshold=threshold)

