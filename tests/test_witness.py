from dataclasses import replace

import pytest

from conftest import at
from webvh.builder import create
from webvh.errors import ConfigError, ThresholdNotMet
from webvh.keys import LocalKeyRegistry, did_key
from webvh.log import Witness, WitnessEntry, WitnessWeight
from webvh.proof import attach
from webvh.witness import merge_witness_entries, validate_witness, verify_witness, witness_sign


@pytest.fixture
def witnesses():
    return [LocalKeyRegistry.generate() for _ in range(3)]


@pytest.fixture
def witnessed_entry(registry, signed_document, witnesses):
    witness = Witness(
        threshold=2,
        witnesses=tuple(WitnessWeight(did_key(w.current_update_keys()[0]), 1) for w in witnesses),
    )
    entry = create(signed_document, registry, witness=witness, version_time=at(0))
    return attach(entry, registry, created=at(0))


def _sign(entry, w):
    return witness_sign(entry, w, w.current_update_keys()[0], created=at(1))


class TestValidateWitness:
    def test_valid(self):
        validate_witness(Witness(threshold=2, witnesses=(WitnessWeight("did:key:z6MkA", 1), WitnessWeight("did:key:z6MkB", 1))))

    @pytest.mark.parametrize(
        "witness",
        [
            Witness(threshold=0, witnesses=(WitnessWeight("did:key:z6MkA", 1),)),
            Witness(threshold=1, witnesses=()),
            Witness(threshold=1, witnesses=(WitnessWeight("did:web:example.com", 1),)),
            Witness(threshold=1, witnesses=(WitnessWeight("did:key:z6MkA", 0),)),
            Witness(threshold=3, witnesses=(WitnessWeight("did:key:z6MkA", 1), WitnessWeight("did:key:z6MkB", 1))),
            Witness(threshold=1, witnesses=(WitnessWeight("did:key:z6MkA", 1), WitnessWeight("did:key:z6MkA", 1))),
        ],
    )
    def test_invalid(self, witness):
        with pytest.raises(ConfigError):
            validate_witness(witness)


class TestVerifyWitness:
    def test_threshold_met(self, witnessed_entry, witnesses):
        proofs = [_sign(witnessed_entry, w) for w in witnesses[:2]]
        assert verify_witness(witnessed_entry, proofs) == 2

    def test_threshold_not_met(self, witnessed_entry, witnesses):
        with pytest.raises(ThresholdNotMet):
            verify_witness(witnessed_entry, [_sign(witnessed_entry, witnesses[0])])

    def test_each_witness_counted_once(self, witnessed_entry, witnesses):
        proof = _sign(witnessed_entry, witnesses[0])
        with pytest.raises(ThresholdNotMet):
            verify_witness(witnessed_entry, [proof, proof])

    def test_unlisted_witness_ignored(self, witnessed_entry, witnesses):
        stranger = LocalKeyRegistry.generate()
        proofs = [_sign(witnessed_entry, witnesses[0]), _sign(witnessed_entry, stranger)]
        with pytest.raises(ThresholdNotMet):
            verify_witness(witnessed_entry, proofs)

    def test_invalid_witness_proof_ignored(self, witnessed_entry, witnesses):
        good = _sign(witnessed_entry, witnesses[0])
        other_entry = replace(witnessed_entry, version_time="2024-01-01T12:30:00Z")
        forged = _sign(other_entry, witnesses[1])
        with pytest.raises(ThresholdNotMet):
            verify_witness(witnessed_entry, [good, forged])
        assert verify_witness(witnessed_entry, [good, forged, _sign(witnessed_entry, witnesses[2])]) == 2

    def test_proofs_for_other_versions_ignored(self, witnessed_entry, witnesses):
        misaddressed = WitnessEntry(version_id="2-zOther", proof=_sign(witnessed_entry, witnesses[0]).proof)
        with pytest.raises(ThresholdNotMet):
            verify_witness(witnessed_entry, [misaddressed, _sign(witnessed_entry, witnesses[1])])

    def test_entry_without_witness_parameters(self, genesis):
        with pytest.raises(ConfigError):
            verify_witness(genesis, [])

    def test_controller_proof_does_not_affect_witness_signature(self, witnessed_entry, witnesses):
        proofs = [_sign(witnessed_entry.unsigned(), w) for w in witnesses[:2]]
        assert verify_witness(witnessed_entry, proofs) == 2


def test_merge_witness_entries(witnessed_entry, witnesses):
    a, b = (_sign(witnessed_entry, w) for w in witnesses[:2])
    merged = merge_witness_entries([a, b])
    assert len(merged) == 1
    assert merged[0].proof == a.proof + b.proof


def test_witness_proofs_ignore_configured_purpose(witnessed_entry, witnesses, monkeypatch):
    monkeypatch.setenv("WEBVH_PROOF_PURPOSE", "authentication")
    assert _sign(witnessed_entry, witnesses[0]).proof[0].proof_purpose == "assertionMethod"
