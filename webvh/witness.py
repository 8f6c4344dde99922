"""Witness parameters and witness proof verification.

Witnesses are ``did:key`` identities declared in an entry's ``witness``
parameter, each with a weight. Their proofs are published separately
(``did-witness.json``) and sign the same unsigned entry bytes as the
controller's proof. An entry is witnessed once the summed weight of
witnesses with a valid proof reaches the threshold.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from webvh.errors import ConfigError, ProofInvalid, ThresholdNotMet
from webvh.keys import KeyRef, KeyRegistry, did_key
from webvh.log import LogEntry, Witness, WitnessEntry
from webvh.proof import create_proof, signing_input, verify_proof

logger = logging.getLogger(__name__)


def validate_witness(witness: Witness) -> None:
    """Check witness parameters are structurally usable.

    Fails if the threshold is zero, the list is empty, a witness is not a
    ``did:key``, a weight is zero, an id repeats, or the weights can never
    reach the threshold. Proofs are not examined here.
    """
    if witness.threshold <= 0:
        raise ConfigError("witness threshold must be greater than zero.")
    if not witness.witnesses:
        raise ConfigError("witness list must not be empty.")
    seen = set()
    total_weight = 0
    for w in witness.witnesses:
        if not w.id.startswith("did:key:"):
            raise ConfigError(f"witness id must be a 'did:key:' ({w.id}).")
        if w.weight <= 0:
            raise ConfigError(f"witness weight must be greater than zero ({w.id}).")
        if w.id in seen:
            raise ConfigError(f"witness {w.id} is listed more than once.")
        seen.add(w.id)
        total_weight += w.weight
    if total_weight < witness.threshold:
        raise ConfigError("total witness weight must be greater than or equal to the threshold.")


def witness_sign(
    entry: LogEntry,
    registry: KeyRegistry,
    key_ref: KeyRef,
    created: Optional[datetime] = None,
) -> WitnessEntry:
    """Produce a witness entry holding one witness proof for ``entry``."""
    proof = create_proof(entry, registry, key_ref, created=created, purpose="assertionMethod")
    return WitnessEntry(version_id=entry.version_id, proof=(proof,))


def merge_witness_entries(entries: Iterable[WitnessEntry]) -> List[WitnessEntry]:
    """Combine witness entries per version id, keeping first-seen order."""
    merged: Dict[str, List] = {}
    for e in entries:
        merged.setdefault(e.version_id, []).extend(e.proof)
    return [WitnessEntry(version_id=v, proof=tuple(p)) for v, p in merged.items()]


def verify_witness(
    entry: LogEntry,
    witness_entries: Iterable[WitnessEntry],
    verifier: Optional[KeyRegistry] = None,
) -> int:
    """Summed weight of valid witness proofs for ``entry``.

    A proof that fails to verify, or comes from a key that is not a
    declared witness, contributes nothing; each witness counts once.
    Raises ``ThresholdNotMet`` if the weight stays below the threshold.
    """
    witness = entry.parameters.witness
    if witness is None:
        raise ConfigError(f"log entry {entry.version_id} has no witness parameters")

    weights = {w.id: w.weight for w in witness.witnesses}
    unsigned = signing_input(entry)
    counted = set()
    total_weight = 0
    for we in witness_entries:
        if we.version_id != entry.version_id:
            continue
        for proof in we.proof:
            try:
                key_ref = verify_proof(unsigned, proof, verifier)
            except ProofInvalid as ex:
                logger.debug("ignoring witness proof on %s: %s", entry.version_id, ex.message)
                continue
            witness_id = did_key(key_ref)
            if witness_id in weights and witness_id not in counted:
                counted.add(witness_id)
                total_weight += weights[witness_id]

    if total_weight < witness.threshold:
        raise ThresholdNotMet(
            f"witness weight {total_weight} for {entry.version_id} does not meet threshold {witness.threshold}"
        )
    return total_weight
