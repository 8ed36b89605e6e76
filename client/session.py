# client/session.py
from __future__ import annotations
from typing import Optional

from backend.crypto import derive_key_pair, sign_message
from backend.errors import KeyUnavailable
from protocol.models import ECPrivateJwk, ECPublicJwk, KeyPair, SignedEnvelope


class Session:
    """
    Holds the logged-in user's key pair in memory only. The pair is
    re-derived from (username, passphrase) at every login.
    """

    def __init__(self):
        self.username: Optional[str] = None
        self._keys: Optional[KeyPair] = None

    def login(self, username: str, passphrase: str) -> KeyPair:
        self._keys = derive_key_pair(username, passphrase)
        self.username = username
        return self._keys

    def logout(self) -> None:
        self._keys = None
        self.username = None

    @property
    def logged_in(self) -> bool:
        return self._keys is not None

    def private_key(self) -> ECPrivateJwk:
        if self._keys is None:
            raise KeyUnavailable("not logged in")
        return self._keys.private_key

    def public_key(self) -> ECPublicJwk:
        if self._keys is None:
            raise KeyUnavailable("not logged in")
        return self._keys.public_key

    def sign(self, receiver: str, plaintext: str) -> SignedEnvelope:
        return sign_message(self.username, receiver, plaintext, self.private_key())
