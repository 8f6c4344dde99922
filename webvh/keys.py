"""Key registry capability and a local Ed25519 implementation.

The log machinery never holds private key material itself. It consumes a
*key registry* through four operations:

    current_update_keys()            -> keys authorized to sign the next entry
    next_key_commitments(algorithm)  -> hashes of keys reserved for rotation
    sign(data, key_ref)              -> raw signature bytes
    verify(data, signature, key_ref) -> bool

Any object with these methods is a registry (structural typing); remote
key vaults implement the same protocol. Keys are referenced by their
Multikey encoding: ``z`` + base58btc(0xed01 || 32-byte Ed25519 public key).
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from webvh.core import DEFAULT_HASH_ALGORITHM, b58decode, b58encode, content_hash
from webvh.errors import ConfigError, SigningFailed

logger = logging.getLogger(__name__)

KeyRef = str

# multicodec varint for ed25519-pub
ED25519_MULTICODEC = bytes([0xED, 0x01])


# ---------------------------------------------------------------------------
# Multikey / did:key
# ---------------------------------------------------------------------------


def multikey_from_public_bytes(pub: bytes) -> KeyRef:
    if len(pub) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(pub)}")
    return "z" + b58encode(ED25519_MULTICODEC + pub)


def public_bytes_from_multikey(multikey: KeyRef) -> bytes:
    """Decode an Ed25519 Multikey into the 32 raw public key bytes."""
    if not isinstance(multikey, str) or not multikey.startswith("z"):
        raise ValueError("multikey must be multibase base58btc (z...)")
    decoded = b58decode(multikey[1:])
    if not decoded.startswith(ED25519_MULTICODEC):
        raise ValueError("multikey multicodec prefix not recognized for Ed25519")
    raw = decoded[len(ED25519_MULTICODEC):]
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return raw


def public_key_from_multikey(multikey: KeyRef) -> Ed25519PublicKey:
    return Ed25519PublicKey.from_public_bytes(public_bytes_from_multikey(multikey))


def multikey_from_private_key(private_key: Ed25519PrivateKey) -> KeyRef:
    pub = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return multikey_from_public_bytes(pub)


def did_key(multikey: KeyRef) -> str:
    return f"did:key:{multikey}"


def verification_method_id(multikey: KeyRef) -> str:
    """``did:key:<mk>#<mk>``, the verification method named in proofs."""
    return f"{did_key(multikey)}#{multikey}"


def key_from_verification_method(vm: str) -> KeyRef:
    """Extract the Multikey from a ``did:key:<mk>#<mk>`` verification method."""
    if not isinstance(vm, str) or not vm.startswith("did:key:"):
        raise ValueError("verification method must be a did:key URL")
    parts = vm.split("#")
    if len(parts) != 2 or not parts[1]:
        raise ValueError("verification method id has an unexpected format")
    base = parts[0][len("did:key:"):]
    if base != parts[1]:
        raise ValueError("verification method fragment does not match its did:key")
    return parts[1]


def key_commitment(multikey: KeyRef, algorithm: str = DEFAULT_HASH_ALGORITHM) -> str:
    """Pre-rotation commitment for a key: content hash of its Multikey string."""
    return content_hash(multikey.encode("utf-8"), algorithm)


def verify_signature(data: bytes, signature: bytes, multikey: KeyRef) -> bool:
    """Verify an Ed25519 signature against the public key inside a Multikey."""
    try:
        pub = public_key_from_multikey(multikey)
    except ValueError:
        return False
    if len(signature) != 64:
        return False
    try:
        pub.verify(signature, data)
    except InvalidSignature:
        return False
    return True


# ---------------------------------------------------------------------------
# Registry protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class KeyRegistry(Protocol):
    """Capability set consumed by the builder and proof engine."""

    def current_update_keys(self) -> List[KeyRef]:
        ...

    def next_key_commitments(self, algorithm: str = DEFAULT_HASH_ALGORITHM) -> List[str]:
        ...

    def sign(self, data: bytes, key_ref: KeyRef) -> bytes:
        ...

    def verify(self, data: bytes, signature: bytes, key_ref: KeyRef) -> bool:
        ...


# ---------------------------------------------------------------------------
# JWK helpers
# ---------------------------------------------------------------------------


def _b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def _b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def private_key_to_jwk(private_key: Ed25519PrivateKey, kid: Optional[str] = None) -> Dict[str, Any]:
    """Export an Ed25519 private key as an OKP JWK (includes ``d``)."""
    priv_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    jwk = {
        "kty": "OKP",
        "crv": "Ed25519",
        "x": _b64url_encode(pub_bytes),
        "d": _b64url_encode(priv_bytes),
    }
    if kid:
        jwk["kid"] = kid
    return jwk


def private_key_from_jwk(jwk: Dict[str, Any]) -> Ed25519PrivateKey:
    """Load an Ed25519 private key from an OKP JWK.

    The ``x`` member, when present, must match the public key derived from ``d``.
    """
    if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
        raise ConfigError("Only OKP/Ed25519 JWK is supported")
    d = jwk.get("d")
    if not d:
        raise ConfigError("JWK must include 'd' (private key)")
    try:
        priv = Ed25519PrivateKey.from_private_bytes(_b64url_decode(d))
    except ValueError as ex:
        raise ConfigError(f"invalid Ed25519 private key in JWK: {ex}") from ex
    x = jwk.get("x")
    if x:
        expected = multikey_from_private_key(priv)
        if multikey_from_public_bytes(_b64url_decode(x)) != expected:
            raise ConfigError("JWK 'x' does not match the public key derived from 'd'")
    return priv


# ---------------------------------------------------------------------------
# Local registry
# ---------------------------------------------------------------------------


class LocalKeyRegistry:
    """In-memory Ed25519 key registry.

    Holds two ordered key sets: the current update keys (which sign entries)
    and the reserved next keys (whose hashes are published as the
    pre-rotation commitment). ``rotate()`` promotes the reserved keys.
    Private keys retired by rotation are dropped.
    """

    def __init__(
        self,
        update_keys: Sequence[Ed25519PrivateKey] = (),
        next_keys: Sequence[Ed25519PrivateKey] = (),
    ):
        self._keys: Dict[KeyRef, Ed25519PrivateKey] = {}
        self._update: List[KeyRef] = [self._remember(k) for k in update_keys]
        self._next: List[KeyRef] = [self._remember(k) for k in next_keys]

    def _remember(self, private_key: Ed25519PrivateKey) -> KeyRef:
        ref = multikey_from_private_key(private_key)
        self._keys[ref] = private_key
        return ref

    @classmethod
    def generate(cls, update: int = 1, next: int = 0) -> "LocalKeyRegistry":
        """Create a registry with fresh update keys and reserved next keys."""
        if update < 1:
            raise ConfigError("at least one update key is required")
        return cls(
            update_keys=[Ed25519PrivateKey.generate() for _ in range(update)],
            next_keys=[Ed25519PrivateKey.generate() for _ in range(max(next, 0))],
        )

    @classmethod
    def from_jwks(
        cls,
        update_jwks: Iterable[Dict[str, Any]],
        next_jwks: Iterable[Dict[str, Any]] = (),
    ) -> "LocalKeyRegistry":
        return cls(
            update_keys=[private_key_from_jwk(j) for j in update_jwks],
            next_keys=[private_key_from_jwk(j) for j in next_jwks],
        )

    def to_jwks(self) -> Dict[str, List[Dict[str, Any]]]:
        """Export current and reserved keys as private JWKs (kid = Multikey)."""
        return {
            "update": [private_key_to_jwk(self._keys[r], kid=r) for r in self._update],
            "next": [private_key_to_jwk(self._keys[r], kid=r) for r in self._next],
        }

    def add_key(self, private_key: Ed25519PrivateKey, reserved: bool = False) -> KeyRef:
        """Add a key to the update set (or the reserved next set)."""
        ref = self._remember(private_key)
        target = self._next if reserved else self._update
        if ref not in target:
            target.append(ref)
        return ref

    def rotate(self, next: Optional[int] = None) -> List[KeyRef]:
        """Promote reserved keys to update keys and reserve fresh next keys.

        ``next`` is the number of fresh keys to reserve; it defaults to the
        number of keys promoted. Returns the new update keys.
        """
        if not self._next:
            raise ConfigError("no reserved next keys to rotate to")
        count = len(self._next) if next is None else next
        for ref in self._update:
            self._keys.pop(ref, None)
        self._update = list(self._next)
        self._next = [self._remember(Ed25519PrivateKey.generate()) for _ in range(max(count, 0))]
        logger.info("rotated update keys", extra={"context": {"update_keys": list(self._update)}})
        return list(self._update)

    def current_update_keys(self) -> List[KeyRef]:
        return list(self._update)

    def next_keys(self) -> List[KeyRef]:
        return list(self._next)

    def next_key_commitments(self, algorithm: str = DEFAULT_HASH_ALGORITHM) -> List[str]:
        return [key_commitment(r, algorithm) for r in self._next]

    def sign(self, data: bytes, key_ref: KeyRef) -> bytes:
        private_key = self._keys.get(key_ref)
        if private_key is None:
            raise SigningFailed(f"key {key_ref} is not held by this registry")
        return private_key.sign(data)

    def verify(self, data: bytes, signature: bytes, key_ref: KeyRef) -> bool:
        return verify_signature(data, signature, key_ref)
