# backend/verify.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from backend.crypto import ecdsa_verify_digest, envelope_hash, hex_to_bytes, load_public_key
from backend.errors import ChatError, HashMismatch, KeyResolutionError, SignatureInvalid
from backend.keycache import PublicKeyCache
from protocol.models import ECPublicJwk, SignedEnvelope

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.valid


def check_envelope(env: SignedEnvelope, public_key: ECPublicJwk) -> None:
    """
    Raises HashMismatch / SignatureInvalid; returns None when the envelope is good.
    """
    try:
        recomputed = envelope_hash(env)
    except UnicodeEncodeError as exc:
        # fields that bypassed model validation can still hold lone surrogates
        raise HashMismatch(f"message fields cannot be hashed: {exc.reason}") from exc
    if env.message_hash.lower() != recomputed:
        raise HashMismatch(f"claimed {env.message_hash} != recomputed {recomputed}")
    try:
        pub = load_public_key(public_key)
        r = int(env.signature.r, 16)
        s = int(env.signature.s, 16)
    except ValueError as exc:
        raise SignatureInvalid(f"undecodable key or signature: {exc}") from exc
    if not ecdsa_verify_digest(pub, hex_to_bytes(recomputed), r, s):
        raise SignatureInvalid("signature does not verify under the sender's key")


class MessageVerifier:
    """Checks envelopes against the sender's current key. Never raises."""

    def __init__(self, keys: PublicKeyCache):
        self.keys = keys

    async def verify_detailed(self, env: SignedEnvelope, force_refresh: bool = False) -> VerificationResult:
        sender = env.sender_username
        try:
            # the snapshot fetched here is the only key used for this check
            public_key = await self.keys.get(sender, force_refresh=force_refresh)
        except KeyResolutionError as exc:
            log.warning("verify %s: key resolution failed: %s", sender, exc)
            return VerificationResult(False, f"key resolution failed: {exc}")
        except (ChatError, OSError, TimeoutError) as exc:
            log.warning("verify %s: key fetch error: %s", sender, exc)
            return VerificationResult(False, f"key fetch error: {exc}")

        try:
            check_envelope(env, public_key)
        except (HashMismatch, SignatureInvalid) as exc:
            log.warning("verify %s: %s: %s", sender, type(exc).__name__, exc)
            return VerificationResult(False, str(exc))
        return VerificationResult(True)

    async def verify(self, env: SignedEnvelope, force_refresh: bool = False) -> bool:
        return (await self.verify_detailed(env, force_refresh)).valid
