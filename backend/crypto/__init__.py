'''
    Description:
        - Codec helpers (base64url, hex, canonical JSON), deterministic secp256k1
          key derivation, deterministic ECDSA signing and message hashing.
        - Consolidated here for easy import across the client and server.
'''

from .base64url import (
    base64url_encode, base64url_decode, bytes_to_hex, hex_to_bytes,
    hex_to_base64url, base64url_to_hex,
)
from .json_format import stabilise_json, ordered_json, iso_now
from .key_derivation import derive_key_pair, load_public_key, private_scalar
from .ecdsa_sign import ecdsa_sign_digest, ecdsa_verify_digest
from .content_sig import create_message_hash, envelope_hash, sign_message, sign_hash

__all__ = [
    "base64url_encode", "base64url_decode", "bytes_to_hex", "hex_to_bytes",
    "hex_to_base64url", "base64url_to_hex",
    "stabilise_json", "ordered_json", "iso_now",
    "derive_key_pair", "load_public_key", "private_scalar",
    "ecdsa_sign_digest", "ecdsa_verify_digest",
    "create_message_hash", "envelope_hash", "sign_message", "sign_hash",
]
