"""Log entry builder: create, update and deactivate.

All three operations return an *unsigned* :class:`LogEntry`. Sign it with
:func:`webvh.proof.attach` and extend the log with
:func:`webvh.resolver.append_entry`:

    registry = LocalKeyRegistry.generate(update=1, next=1)
    doc = document_template(default_did("https://example.com/dids/alice"))
    genesis = attach(create(doc, registry), registry)
    log = append_entry(DidLog(), genesis)

    registry.rotate()
    entry = update(log, registry, changes=DocumentPatch().add_service(svc))
    log = append_entry(log, attach(entry, registry))

When the latest entry carries a pre-rotation commitment, the registry must
be rotated before the next update so its current keys are the committed
ones.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Sequence

from webvh.config import KeyAuthorization, WebvhConfig
from webvh.core import HASH_ALGORITHMS, now_utc, parse_rfc3339, rfc3339
from webvh.document import METHOD, METHOD_VERSION, SCID_PLACEHOLDER, DocumentPatch, ensure_base_context, scid_of
from webvh.errors import ConfigError, InvalidStateError, OrderingError, UnauthorizedKey
from webvh.keys import KeyRef, KeyRegistry, key_commitment
from webvh.log import DidLog, LogEntry, Parameters, Witness, WitnessEntry, compute_entry_hash, compute_scid, substitute
from webvh.observability import timed_operation
from webvh.resolver import resolve
from webvh.witness import validate_witness

logger = logging.getLogger(__name__)

METHOD_ID = f"did:{METHOD}:{METHOD_VERSION}"

# Marks "carry the previous value forward" where None is itself meaningful.
_KEEP: Any = object()


def _commitments(registry: KeyRegistry, algorithm: str) -> Optional[tuple]:
    hashes = list(registry.next_key_commitments(algorithm))
    return tuple(hashes) if hashes else None


def _next_entry(prior: LogEntry, parameters: Parameters, state: Dict[str, Any], version_time: datetime) -> LogEntry:
    """Successor of ``prior`` with its version id computed."""
    stamp = rfc3339(version_time)
    if parse_rfc3339(stamp) <= prior.timestamp:
        raise OrderingError(
            f"version time {stamp} must be later than {prior.version_time}",
            index=prior.version_number + 1,
        )
    entry = LogEntry(
        version_id=prior.version_id,
        version_time=stamp,
        parameters=parameters,
        state=state,
    )
    entry_hash = compute_entry_hash(entry, prior.version_id)
    return replace(entry, version_id=f"{prior.version_number + 1}-{entry_hash}")


def _prior(
    prior_log: DidLog,
    config: Optional[WebvhConfig],
    verifier: Optional[KeyRegistry],
    witness_entries: Optional[Iterable[WitnessEntry]],
) -> LogEntry:
    """Validate ``prior_log`` and return its latest entry if it can be extended."""
    resolution = resolve(prior_log, witness_entries=witness_entries, config=config, verifier=verifier)
    if resolution.deactivated:
        raise InvalidStateError(
            f"DID was deactivated at {resolution.version_id}; the log is read-only",
            index=resolution.version_number + 1,
        )
    return prior_log.latest


def _check_signers(prior_params: Parameters, keys: Sequence[KeyRef], config: Optional[WebvhConfig]) -> None:
    """Fail early if ``keys`` could not sign the entry after ``prior_params``."""
    if not keys:
        raise ConfigError("the key registry holds no update keys to sign with")
    committed = set(prior_params.next_key_hashes or ())
    allow_update_keys = (
        not prior_params.prerotation
        or (config or WebvhConfig()).authorization == KeyAuthorization.UPDATE_KEYS_OR_ROTATION
    )
    for key in keys:
        if key_commitment(key, prior_params.algorithm) in committed:
            continue
        if allow_update_keys and key in prior_params.update_keys:
            continue
        raise UnauthorizedKey(f"key {key} is not authorized to sign the next entry")


@timed_operation("builder.create")
def create(
    document: Dict[str, Any],
    registry: KeyRegistry,
    portable: bool = False,
    witness: Optional[Witness] = None,
    ttl: int = 0,
    version_time: Optional[datetime] = None,
    hash_algorithm: Optional[str] = None,
    config: Optional[WebvhConfig] = None,
) -> LogEntry:
    """Build the genesis entry for ``document``.

    The document id must be ``did:webvh:{SCID}:<host...>``. The SCID is the
    hash of the entry with ``{SCID}`` still in place (version id included);
    it is then substituted everywhere in the entry.
    """
    update_keys = list(registry.current_update_keys())
    if not update_keys:
        raise ConfigError("at least one update key is required to create a DID")
    did = str(document.get("id", ""))
    if not did.startswith(f"did:{METHOD}:{SCID_PLACEHOLDER}:"):
        raise ConfigError(f"document id must start with 'did:{METHOD}:{SCID_PLACEHOLDER}:' ({did!r})")
    algorithm = hash_algorithm or (config or WebvhConfig()).hash_algorithm.get()
    if algorithm not in HASH_ALGORITHMS:
        raise ConfigError(f"unsupported hash algorithm {algorithm!r}")
    if witness is not None:
        validate_witness(witness)

    placeholder = LogEntry(
        version_id=SCID_PLACEHOLDER,
        version_time=rfc3339(version_time or now_utc()),
        parameters=Parameters(
            method=METHOD_ID,
            scid=SCID_PLACEHOLDER,
            update_keys=tuple(update_keys),
            portable=portable,
            next_key_hashes=_commitments(registry, algorithm),
            witness=witness,
            deactivated=False,
            ttl=ttl,
            hash_algorithm=algorithm,
        ),
        state=ensure_base_context(document),
    )
    scid = compute_scid(placeholder)
    body = substitute(placeholder.to_dict(include_proof=False), SCID_PLACEHOLDER, scid)
    entry = LogEntry(
        version_id=scid,
        version_time=body["versionTime"],
        parameters=Parameters.from_dict(body["parameters"]),
        state=body["state"],
    )
    entry = replace(entry, version_id=f"1-{compute_entry_hash(entry, scid)}")
    logger.info(
        "created genesis entry for %s", entry.did,
        extra={"context": {"scid": scid, "version_id": entry.version_id}},
    )
    return entry


@timed_operation("builder.update")
def update(
    prior_log: DidLog,
    registry: KeyRegistry,
    changes: Optional[DocumentPatch] = None,
    document: Optional[Dict[str, Any]] = None,
    update_keys: Optional[Sequence[KeyRef]] = None,
    portable: Optional[bool] = None,
    witness: Any = _KEEP,
    ttl: Optional[int] = None,
    version_time: Optional[datetime] = None,
    witness_entries: Optional[Iterable[WitnessEntry]] = None,
    config: Optional[WebvhConfig] = None,
    verifier: Optional[KeyRegistry] = None,
) -> LogEntry:
    """Build the entry that follows the latest entry of ``prior_log``.

    The new state is ``document`` (or the previous state) with ``changes``
    applied. Update keys: with a pre-rotation commitment in force they are
    ``update_keys`` or the registry's current keys, and each must have been
    committed; otherwise they are carried forward unless ``update_keys`` is
    given. ``witness=None`` removes witnessing; omitting it keeps the
    current witness parameters. The registry's current keys must be able
    to sign the new entry. Pass ``witness_entries`` when the prior log is
    witnessed and witness proofs are required.
    """
    prior = _prior(prior_log, config, verifier, witness_entries)
    prior_params = prior.parameters
    _check_signers(prior_params, registry.current_update_keys(), config)
    algorithm = prior_params.algorithm

    state = copy.deepcopy(document) if document is not None else prior.to_dict()["state"]
    if changes is not None:
        state = changes.apply(state)
    new_did = str(state.get("id", ""))
    if new_did != prior.did:
        if not prior_params.is_portable:
            raise InvalidStateError(f"location changed for non-portable DID {prior.did}")
        if scid_of(new_did) != prior_params.scid:
            raise InvalidStateError("SCID has changed for portable DID")

    if prior_params.prerotation:
        keys = list(update_keys) if update_keys is not None else list(registry.current_update_keys())
        committed = set(prior_params.next_key_hashes or ())
        for key in keys:
            if key_commitment(key, algorithm) not in committed:
                raise UnauthorizedKey(f"update key {key} was not committed in {prior.version_id}")
    else:
        keys = list(update_keys) if update_keys is not None else list(prior_params.update_keys)
    if not keys:
        raise ConfigError("at least one update key is required")

    if portable and not prior_params.is_portable:
        raise InvalidStateError("portability can only be enabled in the genesis entry")
    if witness is not _KEEP and witness is not None:
        validate_witness(witness)

    parameters = replace(
        prior_params,
        update_keys=tuple(keys),
        next_key_hashes=_commitments(registry, algorithm),
        portable=prior_params.portable if portable is None else portable,
        witness=prior_params.witness if witness is _KEEP else witness,
        ttl=prior_params.ttl if ttl is None else ttl,
        deactivated=False,
    )
    entry = _next_entry(prior, parameters, state, version_time or now_utc())
    logger.info(
        "built update entry %s", entry.version_id,
        extra={"context": {"version_id": entry.version_id, "changes": len(changes or ())}},
    )
    return entry


@timed_operation("builder.deactivate")
def deactivate(
    prior_log: DidLog,
    registry: KeyRegistry,
    version_time: Optional[datetime] = None,
    witness_entries: Optional[Iterable[WitnessEntry]] = None,
    config: Optional[WebvhConfig] = None,
    verifier: Optional[KeyRegistry] = None,
) -> LogEntry:
    """Build the terminal entry: ``deactivated: true`` with no update keys.

    The document state is kept as it was. The entry is signed like any
    update, so after a pre-rotation commitment the registry must hold the
    committed keys.
    """
    prior = _prior(prior_log, config, verifier, witness_entries)
    _check_signers(prior.parameters, registry.current_update_keys(), config)
    parameters = replace(
        prior.parameters,
        update_keys=(),
        next_key_hashes=None,
        deactivated=True,
    )
    entry = _next_entry(prior, parameters, prior.to_dict()["state"], version_time or now_utc())
    logger.info("built deactivation entry %s", entry.version_id, extra={"context": {"version_id": entry.version_id}})
    return entry
