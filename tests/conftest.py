from __future__ import annotations
import json

import pytest

from backend.crypto import derive_key_pair
from backend.errors import UserNotFound
from persistence.dir_json import IdentityDirectory
from persistence.messages_json import JsonMessageStore
from server.context import ServerContext

FIXED_TS = "2024-05-01T09:30:00.123Z"


class FakeWS:
    """Stands in for a websocket connection; records every frame sent to it."""

    def __init__(self):
        self.sent = []

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    def types(self):
        return [f["type"] for f in self.sent]


class StaticKeys:
    """Async key fetcher backed by a dict; counts lookups."""

    def __init__(self, keys=None):
        self.keys = dict(keys or {})
        self.calls = []

    async def __call__(self, username):
        self.calls.append(username)
        if username not in self.keys:
            raise UserNotFound(username)
        return self.keys[username]


@pytest.fixture(scope="session")
def alice_keys():
    return derive_key_pair("alice", "correct horse battery staple")


@pytest.fixture(scope="session")
def bob_keys():
    return derive_key_pair("bob", "hunter2hunter2")


@pytest.fixture
def directory(tmp_path):
    return IdentityDirectory(tmp_path / "storage")


@pytest.fixture
def store(tmp_path):
    return JsonMessageStore(tmp_path / "storage")


@pytest.fixture
def ctx(directory, store, alice_keys, bob_keys):
    directory.register_user("alice", alice_keys.public_key)
    directory.register_user("bob", bob_keys.public_key)
    return ServerContext(directory=directory, store=store)
