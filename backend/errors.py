# backend/errors.py
"""
Error taxonomy shared by the client and the server.

Verification failures (HashMismatch, SignatureInvalid, KeyResolutionError) are
recovered into a status value by the verifier and never cross its boundary.
"""
from __future__ import annotations


class ChatError(Exception):
    """Base class for every error raised by this package."""


class KeyDerivationError(ChatError):
    """The derived scalar is not a usable secp256k1 private key."""


class KeyUnavailable(ChatError):
    """No private key is available in the current session."""


class SigningError(ChatError):
    """The EC library rejected the signing operation."""


class KeyResolutionError(ChatError):
    """A sender's public key could not be fetched or decoded."""


class UserNotFound(KeyResolutionError):
    """The identity directory has no such user (or no active key for them)."""

    def __init__(self, username: str):
        super().__init__(f'User "{username}" not found')
        self.username = username


class VerificationError(ChatError):
    """Base for cryptographic verification failures."""


class HashMismatch(VerificationError):
    """The claimed message_hash differs from the recomputed one."""


class SignatureInvalid(VerificationError):
    """The (r, s) pair does not verify under the sender's key."""


class TransportError(ChatError):
    """The connection is down or not identified."""


class RoutingError(ChatError):
    """The recipient of a message is unknown."""


class PersistenceError(ChatError):
    """A durable store read or write failed."""
