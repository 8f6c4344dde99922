import json

import pytest

from conftest import at
from webvh.errors import EncodingError, LogCorrupt
from webvh.log import (
    DidLog,
    LogEntry,
    Parameters,
    Proof,
    Witness,
    WitnessEntry,
    WitnessWeight,
    compute_entry_hash,
    compute_scid,
    entry_hash_input,
    dump_witness_file,
    parse_witness_file,
    split_version_id,
    substitute,
    validate_against_schema,
)
from webvh.resolver import resolve
from webvh.witness import witness_sign


def test_split_version_id():
    assert split_version_id("12-zabc") == (12, "zabc")
    for bad in ("zabc", "1-", "x-zabc", "1-a-b"):
        with pytest.raises(ValueError):
            split_version_id(bad)


def test_parameters_omit_unset_optional_fields():
    params = Parameters(method="did:webvh:0.5", scid="zS", update_keys=("z6MkA",))
    assert params.to_dict() == {"method": "did:webvh:0.5", "scid": "zS", "updateKeys": ["z6MkA"]}
    assert Parameters.from_dict(params.to_dict()) == params
    assert params.algorithm == "sha2-256"
    assert not params.prerotation


def test_parameters_roundtrip_with_all_fields():
    params = Parameters(
        method="did:webvh:0.5",
        scid="zS",
        update_keys=("z6MkA",),
        portable=True,
        next_key_hashes=("zH",),
        witness=Witness(threshold=2, witnesses=(WitnessWeight("did:key:z6MkW", 2),)),
        deactivated=False,
        ttl=3600,
        hash_algorithm="sha3-256",
    )
    wire = params.to_dict()
    assert wire["nextKeyHashes"] == ["zH"]
    assert wire["witness"] == {"threshold": 2, "witnesses": [{"id": "did:key:z6MkW", "weight": 2}]}
    assert Parameters.from_dict(wire) == params


def test_proof_config_drops_proof_value():
    proof = Proof(verification_method="did:key:z6MkA#z6MkA", created="2024-01-01T00:00:00Z", proof_value="zSig")
    assert "proofValue" in proof.to_dict()
    assert "proofValue" not in proof.config()
    assert Proof.from_dict(proof.to_dict()) == proof


def test_entry_to_dict_copies_state(genesis):
    d = genesis.to_dict()
    d["state"]["id"] = "did:webvh:changed:example.com"
    assert genesis.state["id"] != "did:webvh:changed:example.com"
    assert "proof" not in genesis.to_dict(include_proof=False)


def test_unsigned_and_with_proofs(genesis):
    bare = genesis.unsigned()
    assert bare.proof == ()
    assert bare.with_proofs(genesis.proof) == genesis


def test_substitute_replaces_in_keys_and_values():
    obj = {"a{X}": ["{X}:b", 1, {"c": "{X}"}]}
    assert substitute(obj, "{X}", "Y") == {"aY": ["Y:b", 1, {"c": "Y"}]}


def test_entry_hash_depends_on_previous_version(genesis):
    assert compute_entry_hash(genesis, genesis.parameters.scid) == genesis.entry_hash
    assert compute_entry_hash(genesis, "1-zOther") != genesis.entry_hash
    assert compute_scid(genesis) == genesis.parameters.scid


def test_entry_hash_input_excludes_proof(genesis):
    data = json.loads(entry_hash_input(genesis, genesis.parameters.scid))
    assert "proof" not in data
    assert data["versionId"] == genesis.parameters.scid
    assert data["state"] == genesis.state


class TestJsonLines:
    def test_roundtrip_is_byte_exact(self, genesis_log):
        text = genesis_log.to_jsonl()
        assert text.endswith("\n")
        parsed = DidLog.from_jsonl(text)
        assert parsed == genesis_log
        assert parsed.to_jsonl() == text

    def test_roundtrip_resolves_identically(self, genesis_log):
        parsed = DidLog.from_jsonl(genesis_log.to_jsonl())
        assert resolve(parsed).state == resolve(genesis_log).state

    def test_blank_lines_ignored(self, genesis_log):
        text = "\n" + genesis_log.to_jsonl() + "\n\n"
        assert len(DidLog.from_jsonl(text)) == 1

    def test_invalid_json_reports_position(self, genesis_log):
        text = genesis_log.to_jsonl() + "{not json\n"
        with pytest.raises(LogCorrupt) as exc:
            DidLog.from_jsonl(text)
        assert exc.value.index == 2
        assert isinstance(exc.value.cause, EncodingError)

    def test_schema_violation_reports_position(self, genesis):
        obj = genesis.to_dict()
        obj["unexpected"] = True
        with pytest.raises(LogCorrupt) as exc:
            DidLog.from_jsonl(json.dumps(obj) + "\n")
        assert exc.value.index == 1
        assert "schema" in exc.value.message

    def test_bad_version_time_rejected(self, genesis):
        obj = genesis.to_dict()
        obj["versionTime"] = "last tuesday"
        with pytest.raises(EncodingError):
            LogEntry.from_dict(obj)

    def test_schema_requires_webvh_state_id(self, genesis):
        obj = genesis.to_dict()
        obj["state"]["id"] = "did:web:example.com"
        assert validate_against_schema(obj, "log-entry")


class TestDidLog:
    def test_is_immutable_and_indexable(self, genesis):
        log = DidLog()
        assert len(log) == 0 and log.genesis is None and log.latest is None
        extended = log.appended(genesis)
        assert len(log) == 0
        assert extended[0] is genesis
        assert extended.latest is genesis
        assert isinstance(extended[0:1], DidLog)
        assert extended.find(genesis.version_id) is genesis
        assert extended.find("9-zNope") is None
        assert "head=" in repr(extended)


class TestWitnessFile:
    def test_roundtrip(self, genesis):
        from webvh.keys import LocalKeyRegistry

        witness_registry = LocalKeyRegistry.generate()
        entry = witness_sign(genesis, witness_registry, witness_registry.current_update_keys()[0], created=at(1))
        text = dump_witness_file([entry])
        assert parse_witness_file(text) == [entry]

    def test_rejects_non_array(self):
        with pytest.raises(EncodingError):
            parse_witness_file('{"versionId": "1-z"}')

    def test_rejects_invalid_json(self):
        with pytest.raises(EncodingError):
            parse_witness_file("[")

    def test_entry_dict_shape(self):
        entry = WitnessEntry(version_id="1-z", proof=())
        assert entry.to_dict() == {"versionId": "1-z", "proof": []}
