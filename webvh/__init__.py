"""webvh: append-only, hash-chained, signed DID logs (did:webvh).

Architecture:
    webvh/
    ├── __init__.py      # Package entry, version, public API
    ├── core.py          # Primitives: JCS canonical JSON, hashing, multibase, time
    ├── errors.py        # Error taxonomy
    ├── keys.py          # Key registry protocol, local Ed25519 registry
    ├── document.py      # DID document helpers and patches
    ├── log.py           # Log entries, parameters, did.jsonl codec, schemas
    ├── builder.py       # create / update / deactivate (unsigned entries)
    ├── proof.py         # eddsa-jcs-2022 Data Integrity proofs
    ├── witness.py       # Witness parameters and witness proofs
    ├── resolver.py      # Validation state machine and resolution
    ├── config.py        # YAML + environment configuration
    └── observability.py # Structured logging

The core performs no file or network I/O: callers pass a log in and get a
new entry, a new log or a verified document state back.
"""

__version__ = "0.5.0"

from webvh.builder import create, deactivate, update
from webvh.config import KeyAuthorization, WebvhConfig, load_config
from webvh.core import canonical_json_bytes, content_hash, hash_json
from webvh.document import DocumentPatch, KeyPurpose, default_did, document_template, verification_method
from webvh.errors import (
    ChainBroken,
    ConfigError,
    EncodingError,
    InvalidStateError,
    LogCorrupt,
    OrderingError,
    ProofInvalid,
    SigningFailed,
    ThresholdNotMet,
    UnauthorizedKey,
    VerificationUnavailable,
    VersionNotFound,
    WebvhError,
)
from webvh.keys import KeyRegistry, LocalKeyRegistry
from webvh.log import DidLog, LogEntry, Parameters, Proof, Witness, WitnessEntry, WitnessWeight
from webvh.proof import attach, verify
from webvh.resolver import LogState, LogValidator, Resolution, append_entry, resolve, validate_log
from webvh.witness import verify_witness, witness_sign

__all__ = [
    "__version__",
    "create",
    "update",
    "deactivate",
    "attach",
    "verify",
    "resolve",
    "validate_log",
    "append_entry",
    "witness_sign",
    "verify_witness",
    "canonical_json_bytes",
    "content_hash",
    "hash_json",
    "default_did",
    "document_template",
    "verification_method",
    "DocumentPatch",
    "KeyPurpose",
    "KeyRegistry",
    "LocalKeyRegistry",
    "DidLog",
    "LogEntry",
    "Parameters",
    "Proof",
    "Witness",
    "WitnessEntry",
    "WitnessWeight",
    "LogState",
    "LogValidator",
    "Resolution",
    "KeyAuthorization",
    "WebvhConfig",
    "load_config",
    "WebvhError",
    "EncodingError",
    "ConfigError",
    "OrderingError",
    "ChainBroken",
    "ProofInvalid",
    "UnauthorizedKey",
    "ThresholdNotMet",
    "InvalidStateError",
    "SigningFailed",
    "VerificationUnavailable",
    "VersionNotFound",
    "LogCorrupt",
]
