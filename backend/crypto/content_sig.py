# backend/crypto/content_sig.py
"""
Canonical message hashing and envelope signing.

The hash covers four fields serialised in a FIXED order (not key-sorted):
sender_username, receiver_username, plaintext_message, timestamp.
"""
from __future__ import annotations

from hashlib import sha256
from typing import Optional

from backend.errors import KeyUnavailable
from protocol.models import ECPrivateJwk, Signature, SignedEnvelope
from .base64url import bytes_to_hex, hex_to_bytes
from .ecdsa_sign import ecdsa_sign_digest
from .json_format import ordered_json, iso_now
from .key_derivation import private_scalar

MESSAGE_FIELDS = ("sender_username", "receiver_username", "plaintext_message", "timestamp")


# ========== Message hashing ==========
def canonical_message(sender: str, receiver: str, plaintext: str, timestamp: str) -> bytes:
    return ordered_json(zip(MESSAGE_FIELDS, (sender, receiver, plaintext, timestamp)))


def message_digest(sender: str, receiver: str, plaintext: str, timestamp: str) -> bytes:
    return sha256(canonical_message(sender, receiver, plaintext, timestamp)).digest()


def create_message_hash(sender: str, receiver: str, plaintext: str, timestamp: str) -> str:
    return bytes_to_hex(message_digest(sender, receiver, plaintext, timestamp))


def envelope_hash(env: SignedEnvelope) -> str:
    """Recompute the hash from the envelope's own fields, ignoring message_hash."""
    return create_message_hash(
        env.sender_username, env.receiver_username, env.plaintext_message, env.timestamp
    )


# ========== Signing ==========
def sign_hash(message_hash: str, private_key: ECPrivateJwk) -> Signature:
    r, s = ecdsa_sign_digest(private_scalar(private_key), hex_to_bytes(message_hash))
    return Signature(r=bytes_to_hex(r), s=bytes_to_hex(s))


def sign_message(
    sender: str,
    receiver: str,
    plaintext: str,
    private_key: Optional[ECPrivateJwk],
    timestamp: Optional[str] = None,
) -> SignedEnvelope:
    if private_key is None:
        raise KeyUnavailable("no private key in the current session")
    ts = timestamp or iso_now()
    msg_hash = create_message_hash(sender, receiver, plaintext, ts)
    return SignedEnvelope(
        sender_username=sender,
        receiver_username=receiver,
        plaintext_message=plaintext,
        timestamp=ts,
        message_hash=msg_hash,
        signature=sign_hash(msg_hash, private_key),
    )
