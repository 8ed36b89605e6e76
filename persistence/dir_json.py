# persistence/dir_json.py
from __future__ import annotations
import logging
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Union

from backend.crypto.json_format import iso_now
from backend.errors import UserNotFound
from persistence.json_store import JsonFile
from protocol.models import ECPublicJwk

log = logging.getLogger(__name__)

USERNAME_MIN = 3
USERNAME_MAX = 30


def validate_username(username: str) -> None:
    if not isinstance(username, str) or not (USERNAME_MIN <= len(username) <= USERNAME_MAX):
        raise ValueError(f"username must be {USERNAME_MIN}-{USERNAME_MAX} characters")


class IdentityDirectory:
    """
    users.json: username -> {user_id, created_at, keys: [{key_id, public_key, active, created_at}]}
    Usernames are case-sensitive. At most one key per user is active.
    """

    def __init__(self, base_dir: Union[str, Path]):
        self._users = JsonFile(base_dir, "users.json")

    # Users

    def register_user(self, username: str, public_key: ECPublicJwk) -> str:
        validate_username(username)
        user_id = uuid.uuid4().hex

        def mut(d):
            if username in d:
                raise ValueError("user exists")
            d[username] = {
                "user_id": user_id,
                "created_at": iso_now(),
                "keys": [_key_row(public_key, active=True)],
            }
        self._users.update(mut)
        log.info("registered user %s", username)
        return user_id

    def user_exists(self, username: str) -> bool:
        return username in self._users.read()

    def list_users(self) -> List[str]:
        return sorted(self._users.read().keys())

    def resolve_user_id(self, username: str) -> str:
        row = self._users.read().get(username)
        if row is None:
            raise UserNotFound(username)
        return row["user_id"]

    # Keys

    def add_key(self, username: str, public_key: ECPublicJwk, activate: bool = False) -> str:
        row = _key_row(public_key, active=False)

        def mut(d):
            user = d.get(username)
            if user is None:
                raise UserNotFound(username)
            if activate:
                for k in user["keys"]:
                    k["active"] = False
                row["active"] = True
            user["keys"].append(row)
        self._users.update(mut)
        return row["key_id"]

    def activate_key(self, username: str, key_id: str) -> None:
        def mut(d):
            keys = _keys_of(d, username)
            if not any(k["key_id"] == key_id for k in keys):
                raise ValueError(f"unknown key {key_id}")
            for k in keys:
                k["active"] = k["key_id"] == key_id
        self._users.update(mut)

    def deactivate_key(self, username: str, key_id: str) -> None:
        def mut(d):
            for k in _keys_of(d, username):
                if k["key_id"] == key_id:
                    k["active"] = False
                    return
            raise ValueError(f"unknown key {key_id}")
        self._users.update(mut)

    def list_keys(self, username: str) -> List[Dict]:
        return list(_keys_of(self._users.read(), username))

    def active_key(self, username: str) -> Optional[ECPublicJwk]:
        for k in _keys_of(self._users.read(), username):
            if k["active"]:
                return ECPublicJwk.model_validate(k["public_key"])
        return None

    def resolve_public_key(self, username: str) -> ECPublicJwk:
        key = self.active_key(username)
        if key is None:
            raise UserNotFound(username)
        return key

    def is_active_key(self, username: str, public_key: ECPublicJwk) -> bool:
        try:
            current = self.active_key(username)
        except UserNotFound:
            return False
        return current is not None and (current.x, current.y) == (public_key.x, public_key.y)


def _key_row(public_key: ECPublicJwk, active: bool) -> Dict:
    return {
        "key_id": uuid.uuid4().hex,
        "public_key": public_key.model_dump(),
        "active": active,
        "created_at": iso_now(),
    }


def _keys_of(d: dict, username: str) -> List[Dict]:
    user = d.get(username)
    if user is None:
        raise UserNotFound(username)
    return user["keys"]
