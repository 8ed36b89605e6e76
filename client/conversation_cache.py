# client/conversation_cache.py
"""
Client-resident conversation history.

One entry per unordered pair of usernames, stored under the commutative
key ``chat_<a>_<b>`` (a, b sorted). Verification status is never trusted
from disk: loading resets every received signed message to pending.
"""
from __future__ import annotations
import logging
from pathlib import Path
from typing import List, Union

from pydantic import ValidationError

from persistence.json_store import JsonFile
from protocol.models import ConversationMessage, VerificationStatus

log = logging.getLogger(__name__)

KEY_PREFIX = "chat_"


def conversation_key(user_a: str, user_b: str) -> str:
    first, second = sorted((user_a, user_b))
    return f"{KEY_PREFIX}{first}_{second}"


class ConversationCache:
    def __init__(self, path: Union[str, Path]):
        path = Path(path)
        self._file = JsonFile(path.parent, path.name)

    def save(self, me: str, peer: str, messages: List[ConversationMessage]) -> None:
        if not me or not peer or not messages:
            return
        rows = [m.model_dump(mode="json") for m in messages]
        key = conversation_key(me, peer)

        def mut(d):
            d[key] = rows
        self._file.update(mut)

    def load(self, me: str, peer: str) -> List[ConversationMessage]:
        if not me or not peer:
            return []
        rows = self._file.read().get(conversation_key(me, peer)) or []
        out: List[ConversationMessage] = []
        for row in rows:
            try:
                msg = ConversationMessage.model_validate(row)
            except ValidationError:
                log.warning("skipping unreadable cached message in %s/%s", me, peer)
                continue
            if msg.verifiable:
                msg.verification_status = VerificationStatus.PENDING
            out.append(msg)
        return out

    def delete_conversation(self, me: str, peer: str) -> None:
        if not me or not peer:
            return
        key = conversation_key(me, peer)
        self._file.update(lambda d: d.pop(key, None))

    def conversation_partners(self, me: str) -> List[str]:
        if not me:
            return []
        partners = set()
        for key in self._file.read():
            if not key.startswith(KEY_PREFIX):
                continue
            rest = key[len(KEY_PREFIX):]
            candidates = []
            if rest.startswith(me + "_"):
                candidates.append(rest[len(me) + 1:])
            if rest.endswith("_" + me):
                candidates.append(rest[:-(len(me) + 1)])
            for peer in candidates:
                if peer and conversation_key(me, peer) == key:
                    partners.add(peer)
        return sorted(partners)
