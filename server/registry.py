# server/registry.py
from __future__ import annotations
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import websockets

log = logging.getLogger(__name__)


@dataclass(eq=False)
class Link:
    """One client connection; username is set once identify succeeds."""
    ws: Any
    username: Optional[str] = None
    connected_at: float = field(default_factory=time.time)

    def tag(self) -> str:
        return f"user:{self.username}" if self.username else f"anon:{id(self):x}"


class ConnectionRegistry:
    """
    username -> live Link. One registry per listener, created at start and
    handed to every handler through the server context.
    """

    def __init__(self):
        self._sessions: Dict[str, Link] = {}
        self._held: Set[str] = set()    # users whose pending queue is being flushed

    def attach(self, username: str, link: Link, hold: bool = False) -> bool:
        """
        Register link for username. False if another live link holds it.
        With hold=True, live chat stays queued until release(username).
        """
        current = self._sessions.get(username)
        if current is not None and current is not link:
            return False
        self._sessions[username] = link
        link.username = username
        if hold:
            self._held.add(username)
        return True

    def release(self, username: str) -> None:
        self._held.discard(username)

    def detach(self, link: Link) -> None:
        if link.username and self._sessions.get(link.username) is link:
            self._sessions.pop(link.username, None)
            self._held.discard(link.username)

    def get(self, username: str) -> Optional[Link]:
        return self._sessions.get(username)

    def is_online(self, username: str) -> bool:
        return username in self._sessions

    def online_users(self) -> List[str]:
        return sorted(self._sessions.keys())

    async def send(self, link: Link, obj: dict) -> bool:
        try:
            await link.ws.send(json.dumps(obj))
            return True
        except websockets.ConnectionClosed:
            log.info("send to %s failed: connection closed", link.tag())
            return False

    async def forward_to(self, username: str, obj: dict) -> bool:
        link = self._sessions.get(username)
        if link is None:
            return False
        return await self.send(link, obj)

    async def forward_chat(self, username: str, obj: dict) -> bool:
        """Like forward_to, but a held user counts as offline."""
        if username in self._held:
            return False
        return await self.forward_to(username, obj)
