# ========== Imports ==========
import base64
import binascii


# ========== Base64 URL Encoding ==========
def base64url_encode(raw_url: bytes) -> str:
    postp = base64.urlsafe_b64encode(raw_url).decode("ascii")
    return postp.rstrip("=")


# ========== Base64 URL Decoding ==========
def base64url_decode(postp_url: str) -> bytes:
    remainder = len(postp_url) % 4
    missing = (-remainder) % 4    # how many chars needed to reach multiple of 4
    pad = "=" * missing
    try:
        return base64.urlsafe_b64decode(postp_url + pad)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64url string: {exc}") from exc


# ========== Hex <-> bytes ==========
def bytes_to_hex(raw: bytes) -> str:
    return raw.hex()


def hex_to_bytes(hex_str: str) -> bytes:
    # odd length and non-hex characters are both rejected by fromhex
    if not hex_str or len(hex_str) % 2 != 0:
        raise ValueError("invalid hex string")
    return bytes.fromhex(hex_str)


# ========== Hex <-> Base64 URL (JWK coordinates) ==========
def hex_to_base64url(hex_str: str) -> str:
    return base64url_encode(hex_to_bytes(hex_str))


def base64url_to_hex(postp_url: str) -> str:
    return base64url_decode(postp_url).hex()
