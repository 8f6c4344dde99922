"""Log validation and resolution.

Validation replays a log from genesis through a small state machine:

    GENESIS --(valid genesis)--> ACTIVE --(deactivated: true)--> DEACTIVATED
       \\________________ any failure _________________/
                              v
                           INVALID

For each entry the validator checks, in order: the log is not already
deactivated, the version number is the next one, the version id hash
chains to the previous entry (and, for genesis, the SCID is self-
consistent), the fixed per-log settings are unchanged, the version time
increases and is not in the future, pre-rotated update keys were
committed, the controller proofs are valid and authorized, and finally
any witness threshold is met.

Resolution never returns a partial result: a failure anywhere before the
requested version raises :class:`LogCorrupt` with the failing index.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from webvh.config import KeyAuthorization, WebvhConfig
from webvh.core import parse_rfc3339
from webvh.document import scid_of
from webvh.errors import (
    ChainBroken,
    ConfigError,
    InvalidStateError,
    LogCorrupt,
    OrderingError,
    UnauthorizedKey,
    VersionNotFound,
    WebvhError,
)
from webvh.keys import KeyRef, KeyRegistry, key_commitment, key_from_verification_method
from webvh.log import DidLog, LogEntry, Parameters, WitnessEntry, compute_entry_hash, compute_scid, split_version_id
from webvh.observability import timed_operation
from webvh.proof import verify as verify_proofs
from webvh.witness import validate_witness, verify_witness

logger = logging.getLogger(__name__)


class LogState(str, Enum):
    GENESIS = "genesis"
    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    INVALID = "invalid"


@dataclass(frozen=True)
class LogContext:
    """Per-log settings fixed by the genesis entry."""
    method: str
    scid: str
    hash_algorithm: str

    @classmethod
    def from_genesis(cls, entry: LogEntry) -> "LogContext":
        params = entry.parameters
        return cls(method=params.method, scid=params.scid, hash_algorithm=params.algorithm)


class LogValidator:
    """Incremental validator; feed entries in log order.

    ``feed`` raises the typed error for the offending entry and leaves the
    validator in ``LogState.INVALID``; wrapping into :class:`LogCorrupt` is
    left to the caller.
    """

    def __init__(
        self,
        config: Optional[WebvhConfig] = None,
        witness_entries: Optional[Iterable[WitnessEntry]] = None,
        verifier: Optional[KeyRegistry] = None,
    ):
        self.config = config or WebvhConfig()
        self.witness_entries: Optional[List[WitnessEntry]] = (
            list(witness_entries) if witness_entries is not None else None
        )
        self.verifier = verifier
        self.state = LogState.GENESIS
        self.context: Optional[LogContext] = None
        self.genesis: Optional[LogEntry] = None
        self.previous: Optional[LogEntry] = None
        self.index = 0

    def feed(self, entry: LogEntry) -> LogState:
        try:
            self._check(entry)
        except WebvhError:
            self.state = LogState.INVALID
            raise
        if self.genesis is None:
            self.genesis = entry
            self.context = LogContext.from_genesis(entry)
        self.previous = entry
        self.index += 1
        self.state = LogState.DEACTIVATED if entry.parameters.is_deactivated else LogState.ACTIVE
        return self.state

    # -- checks ------------------------------------------------------------

    def _check(self, entry: LogEntry) -> None:
        if self.state == LogState.INVALID:
            raise InvalidStateError("validator has already rejected an entry")
        if self.state == LogState.DEACTIVATED:
            raise InvalidStateError(
                f"log was deactivated at entry {self.index}; no further entries are allowed",
                index=self.index + 1,
            )

        position = self.index + 1
        try:
            number, entry_hash = split_version_id(entry.version_id)
        except ValueError as ex:
            raise ChainBroken(str(ex), index=position) from ex
        if number != position:
            raise OrderingError(
                f"version number {number} out of sequence (expected {position})", index=position
            )

        if self.previous is None:
            self._check_genesis(entry, entry_hash)
        else:
            self._check_successor(entry, entry_hash)
        self._check_time(entry)
        self._check_prerotation(entry)
        self._check_proofs(entry)
        self._check_witness(entry)

    def _check_genesis(self, entry: LogEntry, entry_hash: str) -> None:
        params = entry.parameters
        scid = compute_scid(entry)
        if scid != params.scid:
            raise ChainBroken("genesis SCID does not match the hash of the placeholder entry", index=1)
        if compute_entry_hash(entry, params.scid) != entry_hash:
            raise ChainBroken("genesis entry hash does not match its version id", index=1)
        if self._did_scid(entry) != params.scid:
            raise ChainBroken("document id does not carry the log's SCID", index=1)

    def _check_successor(self, entry: LogEntry, entry_hash: str) -> None:
        prev = self.previous
        ctx = self.context
        params = entry.parameters
        position = self.index + 1
        if compute_entry_hash(entry, prev.version_id) != entry_hash:
            raise ChainBroken(f"entry hash does not match version id {entry.version_id}", index=position)
        if params.method != ctx.method:
            raise ChainBroken(f"method changed from {ctx.method} to {params.method}", index=position)
        if params.scid != ctx.scid:
            raise ChainBroken("SCID changed after genesis", index=position)
        if params.algorithm != ctx.hash_algorithm:
            raise ChainBroken(
                f"hash algorithm changed from {ctx.hash_algorithm} to {params.algorithm}", index=position
            )
        if params.is_portable and not prev.parameters.is_portable:
            raise InvalidStateError("portability can only be enabled in the genesis entry", index=position)
        if entry.did != prev.did:
            if not prev.parameters.is_portable:
                raise InvalidStateError("location changed for a non-portable DID", index=position)
            if self._did_scid(entry) != ctx.scid:
                raise ChainBroken("moved DID does not keep its SCID", index=position)

    def _did_scid(self, entry: LogEntry) -> str:
        try:
            return scid_of(entry.did)
        except ConfigError as ex:
            raise ChainBroken(ex.message, index=self.index + 1) from ex

    def _check_time(self, entry: LogEntry) -> None:
        position = self.index + 1
        try:
            ts = parse_rfc3339(entry.version_time)
        except ValueError as ex:
            raise OrderingError(str(ex), index=position) from ex
        skew = timedelta(seconds=self.config.max_clock_skew_seconds.get())
        # Wall clock: SOURCE_DATE_EPOCH only pins generated timestamps.
        if ts > datetime.now(timezone.utc) + skew:
            raise OrderingError(f"version time {entry.version_time} is in the future", index=position)
        if self.previous is not None and ts <= self.previous.timestamp:
            raise OrderingError(
                f"version time {entry.version_time} does not follow {self.previous.version_time}",
                index=position,
            )

    def _check_prerotation(self, entry: LogEntry) -> None:
        if self.previous is None or not self.previous.parameters.prerotation:
            return
        committed = set(self.previous.parameters.next_key_hashes or ())
        for key in entry.parameters.update_keys:
            if key_commitment(key, self.context.hash_algorithm) not in committed:
                raise UnauthorizedKey(
                    f"update key {key} was not committed in the previous entry", index=self.index + 1
                )

    def authorized_keys(self, entry: LogEntry) -> Set[KeyRef]:
        """Keys allowed to sign ``entry`` given the entries validated so far."""
        if self.previous is None:
            return set(entry.parameters.update_keys)
        prev = self.previous.parameters
        if not prev.prerotation:
            return set(prev.update_keys)

        committed = set(prev.next_key_hashes or ())
        keys: Set[KeyRef] = set()
        for proof in entry.proof:
            try:
                key = key_from_verification_method(proof.verification_method)
            except ValueError:
                continue
            if key_commitment(key, self.context.hash_algorithm) in committed:
                keys.add(key)
        if self.config.authorization == KeyAuthorization.UPDATE_KEYS_OR_ROTATION:
            keys.update(prev.update_keys)
        return keys

    def _check_proofs(self, entry: LogEntry) -> None:
        try:
            verify_proofs(entry, self.authorized_keys(entry), verifier=self.verifier)
        except WebvhError as ex:
            if ex.index is None:
                ex.index = self.index + 1
            raise

    def _check_witness(self, entry: LogEntry) -> None:
        witness = entry.parameters.witness
        if witness is None:
            return
        position = self.index + 1
        try:
            validate_witness(witness)
            if self.witness_entries is not None or self.config.require_witness_proofs.get():
                verify_witness(entry, self.witness_entries or [], verifier=self.verifier)
        except WebvhError as ex:
            if ex.index is None:
                ex.index = position
            raise


@dataclass(frozen=True)
class Resolution:
    """A verified document state and its metadata."""
    state: Dict[str, Any]
    deactivated: bool
    version_id: str
    version_time: str
    parameters: Parameters
    metadata: Dict[str, Any] = field(default_factory=dict)
    log_state: LogState = LogState.ACTIVE

    @property
    def version_number(self) -> int:
        return split_version_id(self.version_id)[0]


def _metadata(genesis: LogEntry, entry: LogEntry) -> Dict[str, Any]:
    params = entry.parameters
    md: Dict[str, Any] = {
        "versionId": entry.version_id,
        "versionTime": entry.version_time,
        "created": genesis.version_time,
        "updated": entry.version_time,
        "scid": params.scid,
        "portable": params.is_portable,
        "deactivated": params.is_deactivated,
    }
    if params.ttl is not None:
        md["ttl"] = params.ttl
    if params.witness is not None:
        md["witness"] = params.witness.to_dict()
    return md


def _validate(validator: LogValidator, entry: LogEntry, position: int) -> None:
    try:
        validator.feed(entry)
    except WebvhError as ex:
        logger.warning(
            "log validation failed at entry %d: %s", position, ex.message,
            extra={"context": {"index": position, "version_id": entry.version_id}},
        )
        raise LogCorrupt(position, ex) from ex


def validate_log(
    log: DidLog,
    config: Optional[WebvhConfig] = None,
    witness_entries: Optional[Iterable[WitnessEntry]] = None,
    verifier: Optional[KeyRegistry] = None,
) -> LogValidator:
    """Validate every entry of ``log``; return the validator positioned at its end."""
    validator = LogValidator(config, witness_entries, verifier)
    for position, entry in enumerate(log, start=1):
        _validate(validator, entry, position)
    return validator


def _time_or_none(entry: LogEntry) -> Optional[datetime]:
    try:
        return parse_rfc3339(entry.version_time)
    except ValueError:
        return None


@timed_operation("resolver.resolve")
def resolve(
    log: DidLog,
    version_id: Optional[str] = None,
    version_number: Optional[int] = None,
    version_time: Optional[Union[datetime, str]] = None,
    witness_entries: Optional[Iterable[WitnessEntry]] = None,
    config: Optional[WebvhConfig] = None,
    verifier: Optional[KeyRegistry] = None,
) -> Resolution:
    """Replay ``log`` from genesis and return the selected version.

    At most one selector may be given. Without one the latest entry is
    returned, deactivated or not. ``version_time`` selects the latest entry
    whose time is not after the given instant. Entries after the selected
    version are not validated. A selector that matches no entry of a valid
    log raises :class:`VersionNotFound`.
    """
    selectors = [s for s in (version_id, version_number, version_time) if s is not None]
    if len(selectors) > 1:
        raise ConfigError("at most one of version_id, version_number, version_time may be given")
    if not len(log):
        raise VersionNotFound("log is empty")
    if version_time is not None:
        version_time = parse_rfc3339(version_time) if isinstance(version_time, str) else version_time
        if version_time.tzinfo is None:
            version_time = version_time.replace(tzinfo=timezone.utc)
        genesis_time = _time_or_none(log[0])
        if genesis_time is not None and version_time < genesis_time:
            raise VersionNotFound(f"no version exists at {version_time.isoformat()}")

    validator = LogValidator(config, witness_entries, verifier)
    selected: Optional[LogEntry] = None
    entries = log.entries
    for position, entry in enumerate(entries, start=1):
        _validate(validator, entry, position)
        if version_id is not None:
            if entry.version_id == version_id:
                selected = entry
                break
        elif version_number is not None:
            if entry.version_number == version_number:
                selected = entry
                break
        elif version_time is not None:
            following = entries[position] if position < len(entries) else None
            next_time = _time_or_none(following) if following is not None else None
            if following is None or (next_time is not None and next_time > version_time):
                selected = entry
                break
        else:
            selected = entry

    if selected is None:
        wanted = version_id if version_id is not None else version_number
        raise VersionNotFound(f"version {wanted} not found in log")

    logger.debug(
        "resolved %s", selected.version_id,
        extra={"context": {"version_id": selected.version_id, "state": validator.state.value}},
    )
    return Resolution(
        state=selected.to_dict()["state"],
        deactivated=selected.parameters.is_deactivated,
        version_id=selected.version_id,
        version_time=selected.version_time,
        parameters=selected.parameters,
        metadata=_metadata(validator.genesis, selected),
        log_state=validator.state,
    )


@timed_operation("resolver.append")
def append_entry(
    log: DidLog,
    entry: LogEntry,
    config: Optional[WebvhConfig] = None,
    witness_entries: Optional[Iterable[WitnessEntry]] = None,
    verifier: Optional[KeyRegistry] = None,
) -> DidLog:
    """Validate ``entry`` as the successor of ``log`` and return the extended log.

    Problems with ``log`` itself raise :class:`LogCorrupt`; problems with
    the candidate raise their own error type. ``log`` is never modified.
    """
    try:
        number = entry.version_number
    except ValueError as ex:
        raise ChainBroken(str(ex), index=len(log) + 1) from ex
    if number <= len(log):
        raise OrderingError(f"entry {number} already exists in the log", index=number)
    if number != len(log) + 1:
        raise OrderingError(f"entry {number} does not follow entry {len(log)}", index=number)

    validator = validate_log(log, config, witness_entries, verifier)
    validator.feed(entry)
    logger.info(
        "appended %s", entry.version_id,
        extra={"context": {"version_id": entry.version_id, "state": validator.state.value}},
    )
    return log.appended(entry)
