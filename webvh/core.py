"""Core primitives for did:webvh logs.

This module provides the foundational utilities used throughout the package:
- Canonical JSON serialization (JCS/RFC 8785)
- Content addressing (configurable hash, multibase base58btc output)
- Base58 / multibase codecs
- RFC 3339 timestamps

Design principles:
- Pure functions, no global mutable state
- Byte-for-byte determinism across implementations
- Explicit failures (EncodingError) instead of lossy coercion
"""

from __future__ import annotations

import hashlib
import json
import math
import os
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List

from webvh.errors import ConfigError, EncodingError


# ---------------------------------------------------------------------------
# Base58 / multibase
# ---------------------------------------------------------------------------

B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}

MULTIBASE_BASE58BTC = "z"


def b58encode(b: bytes) -> str:
    # Count leading zeros
    n_pad = 0
    for c in b:
        if c == 0:
            n_pad += 1
        else:
            break
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii") if isinstance(s, str) else s
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = 0
    for c in s_bytes:
        if c == B58_ALPHABET[0]:
            n_pad += 1
        else:
            break
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def multibase_encode(b: bytes) -> str:
    """Encode bytes as multibase base58btc (``z`` prefix)."""
    return MULTIBASE_BASE58BTC + b58encode(b)


def multibase_decode(s: str) -> bytes:
    """Decode a multibase base58btc string; other bases are rejected."""
    if not isinstance(s, str) or not s.startswith(MULTIBASE_BASE58BTC):
        raise ValueError("unsupported multibase encoding (expected base58btc 'z' prefix)")
    return b58decode(s[1:])


# ---------------------------------------------------------------------------
# Canonical bytes (JCS)
# ---------------------------------------------------------------------------


def _es6_number(value: float, path: str) -> str:
    """Serialize a float the way ECMAScript ``Number.prototype.toString`` does."""
    if not math.isfinite(value):
        raise EncodingError(f"Non-finite number not allowed in canonical JSON at {path or '$'}")
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    # repr() yields the shortest round-tripping digits, as ECMAScript does.
    _, digits_t, exp = Decimal(repr(abs(value))).as_tuple()
    digits = "".join(str(d) for d in digits_t).rstrip("0") or "0"
    trailing = len("".join(str(d) for d in digits_t)) - len(digits)
    k = len(digits)
    n = exp + trailing + k

    if k <= n <= 21:
        out = digits + "0" * (n - k)
    elif 0 < n <= 21:
        out = digits[:n] + "." + digits[n:]
    elif -6 < n <= 0:
        out = "0." + "0" * (-n) + digits
    else:
        e = n - 1
        e_str = ("+" if e >= 0 else "-") + str(abs(e))
        mantissa = digits if k == 1 else digits[0] + "." + digits[1:]
        out = mantissa + "e" + e_str
    return sign + out


def _utf16_key(name: str) -> bytes:
    return name.encode("utf-16-be", "surrogatepass")


def _check_string(s: str, path: str) -> str:
    try:
        s.encode("utf-8")
    except UnicodeEncodeError as ex:
        raise EncodingError(f"String is not valid UTF-8 at {path or '$'}: {ex.reason}") from ex
    return json.dumps(s, ensure_ascii=False)


def _serialize(obj: Any, path: str, out: List[str]) -> None:
    if obj is None:
        out.append("null")
    elif obj is True:
        out.append("true")
    elif obj is False:
        out.append("false")
    elif isinstance(obj, str):
        out.append(_check_string(obj, path))
    elif isinstance(obj, int):
        out.append(str(int(obj)))
    elif isinstance(obj, float):
        out.append(_es6_number(obj, path))
    elif isinstance(obj, datetime):
        out.append(json.dumps(rfc3339(obj)))
    elif isinstance(obj, date):
        out.append(json.dumps(obj.isoformat()))
    elif isinstance(obj, (list, tuple)):
        out.append("[")
        for i, item in enumerate(obj):
            if i:
                out.append(",")
            _serialize(item, f"{path}[{i}]", out)
        out.append("]")
    elif isinstance(obj, dict):
        for k in obj:
            if not isinstance(k, str):
                raise EncodingError(f"Object key {k!r} is not a string at {path or '$'}")
        out.append("{")
        for i, k in enumerate(sorted(obj, key=_utf16_key)):
            if i:
                out.append(",")
            out.append(_check_string(k, path))
            out.append(":")
            _serialize(obj[k], f"{path}.{k}", out)
        out.append("}")
    else:
        raise EncodingError(
            f"Value of type {type(obj).__name__} cannot be canonicalized at {path or '$'}"
        )


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC 8785).

    Properties:
    - Keys sorted by UTF-16 code units
    - No whitespace
    - UTF-8 encoded
    - ECMAScript number formatting; NaN/Infinity rejected

    Two semantically equal values always produce identical bytes,
    independent of dict insertion order.
    """
    out: List[str] = []
    _serialize(obj, "", out)
    return "".join(out).encode("utf-8")


def without(obj: Dict[str, Any], *fields: str) -> Dict[str, Any]:
    """Shallow copy of ``obj`` with ``fields`` removed."""
    return {k: v for k, v in obj.items() if k not in fields}


# ---------------------------------------------------------------------------
# Content hashing
# ---------------------------------------------------------------------------

DEFAULT_HASH_ALGORITHM = "sha2-256"

HASH_ALGORITHMS: Dict[str, Callable[[], Any]] = {
    "sha2-256": hashlib.sha256,
    "sha2-384": hashlib.sha384,
    "sha2-512": hashlib.sha512,
    "sha3-256": hashlib.sha3_256,
}


def digest_bytes(data: bytes, algorithm: str = DEFAULT_HASH_ALGORITHM) -> bytes:
    """Raw digest of ``data`` under a named algorithm."""
    factory = HASH_ALGORITHMS.get(algorithm)
    if factory is None:
        raise ConfigError(
            f"Unsupported hash algorithm {algorithm!r} (expected one of {sorted(HASH_ALGORITHMS)})"
        )
    return factory(data).digest()


def content_hash(data: bytes, algorithm: str = DEFAULT_HASH_ALGORITHM) -> str:
    """Content address of ``data``: multibase base58btc of the raw digest."""
    return multibase_encode(digest_bytes(data, algorithm))


def hash_json(obj: Any, algorithm: str = DEFAULT_HASH_ALGORITHM) -> str:
    """Content address of the canonical JSON bytes of ``obj``."""
    return content_hash(canonical_json_bytes(obj), algorithm)


def sha256_bytes(data: bytes) -> bytes:
    """SHA-256 digest (fixed by the eddsa-jcs-2022 cryptosuite)."""
    return hashlib.sha256(data).digest()


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

_RFC3339_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})$"
)


def rfc3339(dt: datetime) -> str:
    """Format a datetime as RFC 3339 UTC with second precision (``...Z``)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def now_utc() -> datetime:
    """Current UTC time truncated to seconds.

    For deterministic builds set ``SOURCE_DATE_EPOCH`` (seconds since the
    Unix epoch).
    """
    sde = os.environ.get("SOURCE_DATE_EPOCH")
    if sde is not None and str(sde).strip() != "":
        try:
            epoch = int(str(sde).strip(), 10)
        except ValueError as ex:
            raise ConfigError("SOURCE_DATE_EPOCH must be an integer (seconds)") from ex
        return datetime.fromtimestamp(epoch, tz=timezone.utc)
    return datetime.now(timezone.utc).replace(microsecond=0)


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if not isinstance(value, str) or not _RFC3339_RE.match(value):
        raise ValueError(f"not an RFC 3339 timestamp: {value!r}")
    normalized = value.replace("Z", "+00:00")
    # fromisoformat() before 3.11 accepts at most 6 fractional digits.
    m = re.match(r"^(.*T\d{2}:\d{2}:\d{2})(\.\d+)?(.*)$", normalized)
    if m and m.group(2) and len(m.group(2)) > 7:
        normalized = m.group(1) + m.group(2)[:7] + m.group(3)
    return datetime.fromisoformat(normalized).astimezone(timezone.utc)
