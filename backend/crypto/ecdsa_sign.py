# backend/crypto/ecdsa_sign.py
from __future__ import annotations

import hashlib

import ecdsa
from ecdsa.util import sigencode_strings_canonize
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature

from backend.errors import SigningError
from .key_derivation import SECP256K1_ORDER


def ecdsa_sign_digest(scalar: bytes, digest: bytes) -> tuple[bytes, bytes]:
    """
    Deterministic ECDSA (RFC 6979, HMAC-SHA256 nonce) over a SHA-256 digest.
    Returns 32-byte (r, s) with s normalised to the low half of the order.
    """
    try:
        sk = ecdsa.SigningKey.from_string(scalar, curve=ecdsa.SECP256k1)
        r, s = sk.sign_digest_deterministic(
            digest,
            hashfunc=hashlib.sha256,
            sigencode=sigencode_strings_canonize,
        )
    except (ecdsa.MalformedPointError, ValueError) as exc:
        raise SigningError(f"EC signing rejected the key: {exc}") from exc
    return r, s


def ecdsa_verify_digest(pub: ec.EllipticCurvePublicKey, digest: bytes, r: int, s: int) -> bool:
    """
    Returns True if (r, s) is a valid low-S signature over digest.
    """
    if not (0 < r < SECP256K1_ORDER and 0 < s <= SECP256K1_ORDER // 2):
        return False
    try:
        pub.verify(encode_dss_signature(r, s), digest, ec.ECDSA(Prehashed(hashes.SHA256())))
        return True
    except InvalidSignature:
        return False
