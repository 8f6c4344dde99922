"""did:webvh log data model and the ``did.jsonl`` wire format.

A log is an append-only sequence of entries, one JSON object per line:

    {"versionId": "1-z...", "versionTime": "...", "parameters": {...},
     "state": {...}, "proof": [...]}

All types here are immutable; appending returns a new :class:`DidLog`.
Wire objects are checked against the JSON Schemas shipped in
``webvh/schemas`` before they are turned into dataclasses.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from webvh.core import DEFAULT_HASH_ALGORITHM, canonical_json_bytes, content_hash, hash_json, parse_rfc3339
from webvh.document import SCID_PLACEHOLDER
from webvh.errors import EncodingError, LogCorrupt, WebvhError

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"


# ---------------------------------------------------------------------------
# Schema validation
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Registry of the bundled schemas so ``$ref`` resolves across files."""
    resources = []
    for schema_path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        schema_id = schema.get("$id") or f"https://schemas.webvh.dev/{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(name: str) -> Draft202012Validator:
    """Validator for a bundled schema, e.g. ``schema_validator("log-entry")``."""
    schema = json.loads((SCHEMAS_DIR / f"{name}.schema.json").read_text(encoding="utf-8"))
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_against_schema(obj: Any, name: str) -> List[str]:
    """Validation error messages for ``obj`` (empty if valid)."""
    return [
        f"{error.json_path}: {error.message}"
        for error in schema_validator(name).iter_errors(obj)
    ]


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WitnessWeight:
    """A witness (``did:key``) and its contribution toward the threshold."""
    id: str
    weight: int

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "weight": self.weight}


@dataclass(frozen=True)
class Witness:
    """Witness threshold and the weighted witness list."""
    threshold: int
    witnesses: Tuple[WitnessWeight, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threshold": self.threshold,
            "witnesses": [w.to_dict() for w in self.witnesses],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Witness":
        return cls(
            threshold=int(d.get("threshold", 0)),
            witnesses=tuple(
                WitnessWeight(id=str(w["id"]), weight=int(w["weight"]))
                for w in d.get("witnesses") or []
            ),
        )


@dataclass(frozen=True)
class Parameters:
    """Method metadata carried by every log entry.

    Optional fields left as ``None`` are omitted on the wire, so a parsed
    entry re-serializes to exactly the bytes it was hashed over.
    """
    method: str
    scid: str
    update_keys: Tuple[str, ...] = ()
    portable: Optional[bool] = None
    next_key_hashes: Optional[Tuple[str, ...]] = None
    witness: Optional[Witness] = None
    deactivated: Optional[bool] = None
    ttl: Optional[int] = None
    hash_algorithm: Optional[str] = None

    @property
    def is_portable(self) -> bool:
        return bool(self.portable)

    @property
    def is_deactivated(self) -> bool:
        return bool(self.deactivated)

    @property
    def algorithm(self) -> str:
        return self.hash_algorithm or DEFAULT_HASH_ALGORITHM

    @property
    def prerotation(self) -> bool:
        return bool(self.next_key_hashes)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "method": self.method,
            "scid": self.scid,
            "updateKeys": list(self.update_keys),
        }
        if self.portable is not None:
            d["portable"] = self.portable
        if self.next_key_hashes is not None:
            d["nextKeyHashes"] = list(self.next_key_hashes)
        if self.witness is not None:
            d["witness"] = self.witness.to_dict()
        if self.deactivated is not None:
            d["deactivated"] = self.deactivated
        if self.ttl is not None:
            d["ttl"] = self.ttl
        if self.hash_algorithm is not None:
            d["hashAlgorithm"] = self.hash_algorithm
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Parameters":
        nkh = d.get("nextKeyHashes")
        witness = d.get("witness")
        return cls(
            method=str(d["method"]),
            scid=str(d["scid"]),
            update_keys=tuple(d.get("updateKeys") or ()),
            portable=d.get("portable"),
            next_key_hashes=tuple(nkh) if nkh is not None else None,
            witness=Witness.from_dict(witness) if witness is not None else None,
            deactivated=d.get("deactivated"),
            ttl=d.get("ttl"),
            hash_algorithm=d.get("hashAlgorithm"),
        )


# ---------------------------------------------------------------------------
# Proofs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Proof:
    """W3C Data Integrity proof over a log entry."""
    verification_method: str
    created: str
    proof_purpose: str = "assertionMethod"
    type: str = "DataIntegrityProof"
    cryptosuite: str = "eddsa-jcs-2022"
    proof_value: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        if self.id is not None:
            d["id"] = self.id
        d.update({
            "type": self.type,
            "cryptosuite": self.cryptosuite,
            "verificationMethod": self.verification_method,
            "created": self.created,
            "proofPurpose": self.proof_purpose,
        })
        if self.proof_value is not None:
            d["proofValue"] = self.proof_value
        return d

    def config(self) -> Dict[str, Any]:
        """Proof options: the proof without ``proofValue``."""
        d = self.to_dict()
        d.pop("proofValue", None)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Proof":
        return cls(
            id=d.get("id"),
            type=str(d.get("type", "")),
            cryptosuite=str(d.get("cryptosuite", "")),
            verification_method=str(d.get("verificationMethod", "")),
            created=str(d.get("created", "")),
            proof_purpose=str(d.get("proofPurpose", "")),
            proof_value=d.get("proofValue"),
        )


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


def split_version_id(version_id: str) -> Tuple[int, str]:
    """Split ``"<n>-<hash>"`` into ``(n, hash)``."""
    parts = str(version_id).split("-")
    if len(parts) != 2 or not parts[0].isdigit() or not parts[1]:
        raise ValueError(f"version id has an unexpected format: {version_id!r}")
    return int(parts[0]), parts[1]


@dataclass(frozen=True)
class LogEntry:
    """One version of the identity state.

    ``state`` is deep-copied on the way in and out of wire form, so
    callers holding a parsed entry cannot alter history through it.
    """
    version_id: str
    version_time: str
    parameters: Parameters
    state: Dict[str, Any] = field(default_factory=dict)
    proof: Tuple[Proof, ...] = ()

    @property
    def version_number(self) -> int:
        return split_version_id(self.version_id)[0]

    @property
    def entry_hash(self) -> str:
        return split_version_id(self.version_id)[1]

    @property
    def timestamp(self) -> datetime:
        return parse_rfc3339(self.version_time)

    @property
    def did(self) -> str:
        return str(self.state.get("id", ""))

    def to_dict(self, include_proof: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "versionId": self.version_id,
            "versionTime": self.version_time,
            "parameters": self.parameters.to_dict(),
            "state": copy.deepcopy(self.state),
        }
        if include_proof and self.proof:
            d["proof"] = [p.to_dict() for p in self.proof]
        return d

    def unsigned(self) -> "LogEntry":
        return replace(self, proof=())

    def with_proofs(self, proofs: Iterable[Proof]) -> "LogEntry":
        """New entry with ``proofs`` appended to the existing ones."""
        return replace(self, proof=tuple(self.proof) + tuple(proofs))

    def to_json_line(self) -> str:
        return canonical_json_bytes(self.to_dict()).decode("utf-8")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LogEntry":
        errors = validate_against_schema(d, "log-entry")
        if errors:
            raise EncodingError(f"log entry does not match schema: {errors[0]}")
        try:
            parse_rfc3339(d["versionTime"])
        except ValueError as ex:
            raise EncodingError(str(ex)) from ex
        return cls(
            version_id=d["versionId"],
            version_time=d["versionTime"],
            parameters=Parameters.from_dict(d["parameters"]),
            state=copy.deepcopy(d["state"]),
            proof=tuple(Proof.from_dict(p) for p in d.get("proof") or ()),
        )


@dataclass(frozen=True)
class WitnessEntry:
    """Witness proofs for one log entry (an element of ``did-witness.json``)."""
    version_id: str
    proof: Tuple[Proof, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"versionId": self.version_id, "proof": [p.to_dict() for p in self.proof]}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WitnessEntry":
        return cls(
            version_id=str(d["versionId"]),
            proof=tuple(Proof.from_dict(p) for p in d.get("proof") or ()),
        )


def parse_witness_file(text: str) -> List[WitnessEntry]:
    """Parse a ``did-witness.json`` document (JSON array of witness entries)."""
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as ex:
        raise EncodingError(f"witness file is not valid JSON: {ex}") from ex
    errors = validate_against_schema(obj, "witness")
    if errors:
        raise EncodingError(f"witness file does not match schema: {errors[0]}")
    return [WitnessEntry.from_dict(e) for e in obj]


def dump_witness_file(entries: Sequence[WitnessEntry]) -> str:
    return json.dumps([e.to_dict() for e in entries], indent=2, ensure_ascii=False) + "\n"


# ---------------------------------------------------------------------------
# Entry hashing
# ---------------------------------------------------------------------------


def substitute(obj: Any, old: str, new: str) -> Any:
    """Copy of ``obj`` with ``old`` replaced by ``new`` in every string and key."""
    if isinstance(obj, str):
        return obj.replace(old, new)
    if isinstance(obj, dict):
        return {k.replace(old, new): substitute(v, old, new) for k, v in obj.items()}
    if isinstance(obj, list):
        return [substitute(v, old, new) for v in obj]
    return obj


def entry_hash_input(entry: LogEntry, previous_version_id: str) -> bytes:
    """Canonical bytes of ``entry`` without ``proof`` and with ``versionId``
    set to the previous entry's version id (the SCID for the genesis entry).
    """
    body = entry.to_dict(include_proof=False)
    body["versionId"] = previous_version_id
    return canonical_json_bytes(body)


def compute_entry_hash(entry: LogEntry, previous_version_id: str) -> str:
    """Hash of ``entry`` chained to its predecessor."""
    return content_hash(entry_hash_input(entry, previous_version_id), entry.parameters.algorithm)


def compute_scid(entry: LogEntry) -> str:
    """SCID of a genesis entry.

    Every occurrence of the entry's SCID is put back to ``{SCID}`` and the
    version id is set to ``{SCID}`` before hashing, which reproduces the
    placeholder entry the SCID was derived from.
    """
    body = substitute(entry.to_dict(include_proof=False), entry.parameters.scid, SCID_PLACEHOLDER)
    body["versionId"] = SCID_PLACEHOLDER
    return hash_json(body, entry.parameters.algorithm)


# ---------------------------------------------------------------------------
# Log
# ---------------------------------------------------------------------------


class DidLog:
    """Immutable, index-addressed sequence of log entries (genesis first)."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[LogEntry] = ()):
        self._entries: Tuple[LogEntry, ...] = tuple(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self._entries)

    def __getitem__(self, index: Union[int, slice]) -> Any:
        if isinstance(index, slice):
            return DidLog(self._entries[index])
        return self._entries[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DidLog):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        head = self._entries[-1].version_id if self._entries else "empty"
        return f"DidLog(len={len(self._entries)}, head={head})"

    @property
    def entries(self) -> Tuple[LogEntry, ...]:
        return self._entries

    @property
    def genesis(self) -> Optional[LogEntry]:
        return self._entries[0] if self._entries else None

    @property
    def latest(self) -> Optional[LogEntry]:
        return self._entries[-1] if self._entries else None

    def find(self, version_id: str) -> Optional[LogEntry]:
        for entry in self._entries:
            if entry.version_id == version_id:
                return entry
        return None

    def appended(self, entry: LogEntry) -> "DidLog":
        """New log with ``entry`` at the end; this log is unchanged."""
        return DidLog(self._entries + (entry,))

    def to_jsonl(self) -> str:
        return "".join(e.to_json_line() + "\n" for e in self._entries)

    @classmethod
    def from_jsonl(cls, text: str) -> "DidLog":
        """Parse ``did.jsonl`` content.

        A line that is not JSON or does not match the entry schema raises
        :class:`LogCorrupt` carrying its 1-based position.
        """
        entries: List[LogEntry] = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            position = len(entries) + 1
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as ex:
                raise LogCorrupt(position, EncodingError(f"line {lineno} is not valid JSON: {ex}")) from ex
            try:
                entries.append(LogEntry.from_dict(obj))
            except WebvhError as ex:
                raise LogCorrupt(position, ex) from ex
        return cls(entries)
