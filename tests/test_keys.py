import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from webvh.core import content_hash
from webvh.errors import ConfigError, SigningFailed
from webvh.keys import (
    KeyRegistry,
    LocalKeyRegistry,
    did_key,
    key_commitment,
    key_from_verification_method,
    multikey_from_private_key,
    private_key_from_jwk,
    private_key_to_jwk,
    public_bytes_from_multikey,
    verification_method_id,
    verify_signature,
)


def test_multikey_roundtrips_public_key_bytes():
    priv = Ed25519PrivateKey.generate()
    mk = multikey_from_private_key(priv)
    assert mk.startswith("z6Mk")
    raw = priv.public_key().public_bytes_raw()
    assert public_bytes_from_multikey(mk) == raw


def test_multikey_rejects_other_codecs():
    with pytest.raises(ValueError):
        public_bytes_from_multikey("zQ3shokFTS3brHcDQrn82RUDfCZESWL1ZdCEJwekUDPQiYBme")
    with pytest.raises(ValueError):
        public_bytes_from_multikey("u" + "abc")


def test_verification_method_roundtrip():
    mk = multikey_from_private_key(Ed25519PrivateKey.generate())
    vm = verification_method_id(mk)
    assert vm == f"{did_key(mk)}#{mk}"
    assert key_from_verification_method(vm) == mk


@pytest.mark.parametrize(
    "vm",
    [
        "did:example:123#key-1",
        "did:key:z6MkA",
        "did:key:z6MkA#z6MkB",
        "did:key:z6MkA#z6MkA#z6MkA",
    ],
)
def test_verification_method_must_be_self_referencing_did_key(vm):
    with pytest.raises(ValueError):
        key_from_verification_method(vm)


def test_key_commitment_hashes_multikey_string():
    mk = multikey_from_private_key(Ed25519PrivateKey.generate())
    assert key_commitment(mk) == content_hash(mk.encode("utf-8"))
    assert key_commitment(mk, "sha3-256") != key_commitment(mk)


class TestLocalKeyRegistry:
    def test_satisfies_protocol(self):
        assert isinstance(LocalKeyRegistry.generate(), KeyRegistry)

    def test_generate_requires_an_update_key(self):
        with pytest.raises(ConfigError):
            LocalKeyRegistry.generate(update=0)

    def test_sign_and_verify(self):
        reg = LocalKeyRegistry.generate()
        key = reg.current_update_keys()[0]
        sig = reg.sign(b"payload", key)
        assert len(sig) == 64
        assert reg.verify(b"payload", sig, key)
        assert not reg.verify(b"other", sig, key)
        assert verify_signature(b"payload", sig, key)

    def test_sign_with_unknown_key_fails(self):
        reg = LocalKeyRegistry.generate()
        other = multikey_from_private_key(Ed25519PrivateKey.generate())
        with pytest.raises(SigningFailed):
            reg.sign(b"payload", other)

    def test_commitments_cover_reserved_keys(self):
        reg = LocalKeyRegistry.generate(update=1, next=2)
        commitments = reg.next_key_commitments()
        assert len(commitments) == 2
        assert commitments == [key_commitment(k) for k in reg.next_keys()]

    def test_rotate_promotes_reserved_keys(self):
        reg = LocalKeyRegistry.generate(update=1, next=1)
        old = reg.current_update_keys()
        reserved = reg.next_keys()
        new = reg.rotate()
        assert new == reserved
        assert reg.current_update_keys() == reserved
        assert len(reg.next_keys()) == 1
        assert reg.next_keys() != reserved
        with pytest.raises(SigningFailed):
            reg.sign(b"x", old[0])

    def test_rotate_without_reserved_keys_fails(self):
        reg = LocalKeyRegistry.generate(update=1, next=0)
        with pytest.raises(ConfigError):
            reg.rotate()

    def test_add_key_to_update_and_reserved_sets(self):
        reg = LocalKeyRegistry.generate()
        ref = reg.add_key(Ed25519PrivateKey.generate())
        reserved = reg.add_key(Ed25519PrivateKey.generate(), reserved=True)
        assert ref in reg.current_update_keys()
        assert reserved in reg.next_keys()
        assert reg.sign(b"x", ref)

    def test_jwk_export_and_import(self):
        reg = LocalKeyRegistry.generate(update=2, next=1)
        exported = reg.to_jwks()
        restored = LocalKeyRegistry.from_jwks(exported["update"], exported["next"])
        assert restored.current_update_keys() == reg.current_update_keys()
        assert restored.next_keys() == reg.next_keys()
        assert all(j["kid"] for j in exported["update"])


class TestJwk:
    def test_roundtrip(self):
        priv = Ed25519PrivateKey.generate()
        jwk = private_key_to_jwk(priv)
        assert jwk["kty"] == "OKP" and jwk["crv"] == "Ed25519"
        assert multikey_from_private_key(private_key_from_jwk(jwk)) == multikey_from_private_key(priv)

    def test_wrong_key_type(self):
        with pytest.raises(ConfigError):
            private_key_from_jwk({"kty": "EC", "crv": "P-256", "d": "AA"})

    def test_missing_private_part(self):
        jwk = private_key_to_jwk(Ed25519PrivateKey.generate())
        del jwk["d"]
        with pytest.raises(ConfigError):
            private_key_from_jwk(jwk)

    def test_mismatched_public_part(self):
        jwk = private_key_to_jwk(Ed25519PrivateKey.generate())
        jwk["x"] = private_key_to_jwk(Ed25519PrivateKey.generate())["x"]
        with pytest.raises(ConfigError):
            private_key_from_jwk(jwk)
