import hashlib

import pytest

from backend.crypto import create_message_hash, ecdsa_sign_digest, sign_message
from backend.crypto.key_derivation import SECP256K1_ORDER
from backend.errors import KeyDerivationError, KeyUnavailable, SigningError
from protocol.models import ECPrivateJwk

from conftest import FIXED_TS


def test_hash_uses_fixed_field_order():
    canonical = (
        '{"sender_username":"alice","receiver_username":"bob",'
        '"plaintext_message":"hi","timestamp":"' + FIXED_TS + '"}'
    )
    assert create_message_hash("alice", "bob", "hi", FIXED_TS) == \
        hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def test_hash_is_not_key_sorted():
    sorted_form = (
        '{"plaintext_message":"hi","receiver_username":"bob",'
        '"sender_username":"alice","timestamp":"' + FIXED_TS + '"}'
    )
    assert create_message_hash("alice", "bob", "hi", FIXED_TS) != \
        hashlib.sha256(sorted_form.encode("utf-8")).hexdigest()


def test_signing_is_deterministic(alice_keys):
    a = sign_message("alice", "bob", "hi", alice_keys.private_key, timestamp=FIXED_TS)
    b = sign_message("alice", "bob", "hi", alice_keys.private_key, timestamp=FIXED_TS)
    assert a.signature == b.signature
    assert len(a.signature.r) == 64 and len(a.signature.s) == 64


def test_signature_is_low_s(alice_keys):
    for text in ("one", "two", "three", "four"):
        env = sign_message("alice", "bob", text, alice_keys.private_key, timestamp=FIXED_TS)
        assert 0 < int(env.signature.s, 16) <= SECP256K1_ORDER // 2


def test_envelope_fields(alice_keys):
    env = sign_message("alice", "bob", "hello", alice_keys.private_key)
    assert env.sender_username == "alice"
    assert env.receiver_username == "bob"
    assert env.timestamp.endswith("Z")
    assert env.message_hash == create_message_hash("alice", "bob", "hello", env.timestamp)


def test_missing_private_key():
    with pytest.raises(KeyUnavailable):
        sign_message("alice", "bob", "hi", None)


def test_out_of_range_private_scalar(alice_keys):
    bad = ECPrivateJwk(x=alice_keys.public_key.x, y=alice_keys.public_key.y, d="AA")
    with pytest.raises(KeyDerivationError):
        sign_message("alice", "bob", "hi", bad)


def test_ec_library_rejection_becomes_signing_error():
    with pytest.raises(SigningError):
        ecdsa_sign_digest(bytes(32), hashlib.sha256(b"x").digest())
