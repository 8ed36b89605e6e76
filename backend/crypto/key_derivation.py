# backend/crypto/key_derivation.py
"""
Deterministic secp256k1 key pairs from (username, passphrase).

The private key is recomputed at every login and never stored, so the
derivation below must stay byte-for-byte stable across releases.
"""
from __future__ import annotations

import hashlib

from cryptography.hazmat.primitives.asymmetric import ec

from backend.errors import KeyDerivationError
from protocol.models import ECPrivateJwk, ECPublicJwk, KeyPair
from .base64url import base64url_encode, base64url_decode

# ========== Curve constants ==========
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SCALAR_BYTES = 32
MAX_REHASH_ATTEMPTS = 16


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


# ========== Seed derivation ==========
def _mix_bytes(buf: bytearray) -> bytes:
    # left to right; each byte folds in the already-transformed previous byte
    for i in range(len(buf)):
        buf[i] = (buf[i] * buf[i] + buf[i] + 41) % 256
        if i > 0:
            buf[i] = (buf[i] + 7 * buf[i - 1]) % 256
    return bytes(buf)


def derive_seed(username: str, passphrase: str) -> bytes:
    h1 = _sha256(f"{username}:{passphrase}".encode("utf-8"))
    h2 = _sha256(f"{passphrase}:{username}".encode("utf-8"))
    mixed = _mix_bytes(bytearray(a ^ b for a, b in zip(h1, h2)))
    return _sha256(mixed)


def is_valid_scalar(raw: bytes) -> bool:
    if len(raw) != SCALAR_BYTES:
        return False
    return 0 < int.from_bytes(raw, "big") < SECP256K1_ORDER


def scalar_from_seed(seed: bytes, max_attempts: int = MAX_REHASH_ATTEMPTS) -> bytes:
    """Return the first valid scalar among seed, SHA256(seed), SHA256(SHA256(seed)), ..."""
    candidate = seed
    for _ in range(max_attempts):
        if is_valid_scalar(candidate):
            return candidate
        candidate = _sha256(candidate)
    raise KeyDerivationError(f"no valid secp256k1 scalar after {max_attempts} attempts")


# ========== JWK export / import ==========
def _coords(pub: ec.EllipticCurvePublicKey) -> tuple[bytes, bytes]:
    nums = pub.public_numbers()
    return nums.x.to_bytes(SCALAR_BYTES, "big"), nums.y.to_bytes(SCALAR_BYTES, "big")


def key_pair_from_scalar(scalar: bytes) -> KeyPair:
    if not is_valid_scalar(scalar):
        raise KeyDerivationError("scalar out of range for secp256k1")
    priv = ec.derive_private_key(int.from_bytes(scalar, "big"), ec.SECP256K1())
    x, y = _coords(priv.public_key())
    public = ECPublicJwk(x=base64url_encode(x), y=base64url_encode(y))
    private = ECPrivateJwk(x=public.x, y=public.y, d=base64url_encode(scalar))
    return KeyPair(private_key=private, public_key=public)


def derive_key_pair(username: str, passphrase: str) -> KeyPair:
    if not username or not passphrase:
        raise ValueError("username and passphrase must be non-empty")
    return key_pair_from_scalar(scalar_from_seed(derive_seed(username, passphrase)))


def private_scalar(jwk: ECPrivateJwk) -> bytes:
    raw = base64url_decode(jwk.d)
    if not is_valid_scalar(raw):
        raise KeyDerivationError("private key scalar out of range")
    return raw


def load_public_key(jwk: ECPublicJwk) -> ec.EllipticCurvePublicKey:
    """Rebuild the uncompressed point 0x04 || x || y and load it."""
    x = base64url_decode(jwk.x)
    y = base64url_decode(jwk.y)
    if len(x) != SCALAR_BYTES or len(y) != SCALAR_BYTES:
        raise ValueError("EC coordinates must be 32 bytes each")
    return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), b"\x04" + x + y)
