# client/chat_client.py
from __future__ import annotations
import logging
from typing import Callable, List, Optional

from backend.config import Settings, load_settings
from backend.errors import TransportError
from backend.keycache import KeyFetcher, PublicKeyCache
from backend.verify import MessageVerifier
from client.conversation_cache import ConversationCache
from client.coordinator import ConversationDeleted, MarkedRead, SendFailed, VerificationCoordinator
from client.session import Session
from client.transport import ChatTransport
from protocol.rpc import req_read_receipt, req_signed_chat

log = logging.getLogger(__name__)


class ChatClient:
    """Wires session, transport, key cache, verifier and conversation state together."""

    def __init__(self, session: Session, settings: Optional[Settings] = None, *,
                 key_source: Optional[KeyFetcher] = None,
                 cache: Optional[ConversationCache] = None,
                 on_frame: Optional[Callable[[dict], None]] = None):
        if not session.logged_in:
            raise ValueError("session is not logged in")
        self.settings = settings or load_settings()
        self.session = session
        self.username = session.username
        self.on_frame = on_frame
        self.transport = ChatTransport(
            self.settings.server_url, self.username, self._on_frame,
            reconnect_delay=self.settings.reconnect_delay,
            rpc_timeout=self.settings.rpc_timeout,
            on_connect=self._on_connect,
        )
        self.keys = PublicKeyCache(key_source or self.transport.fetch_public_key,
                                   ttl=self.settings.key_cache_ttl)
        self.verifier = MessageVerifier(self.keys)
        self.conversations = cache or ConversationCache(self.settings.local_storage_path)
        self.coordinator = VerificationCoordinator(self.username, self.verifier, self.conversations)

    def _on_connect(self) -> None:
        # a new connection never trusts keys fetched over the old one
        self.keys.invalidate()

    async def _on_frame(self, frame: dict) -> None:
        await self.coordinator.handle_frame(frame)
        if self.on_frame is not None:
            self.on_frame(frame)

    async def start(self, wait: Optional[float] = None) -> None:
        self.transport.start()
        if wait is not None:
            await self.transport.wait_active(wait)

    async def stop(self) -> None:
        await self.transport.stop()
        await self.coordinator.close()

    # user actions

    async def send(self, peer: str, text: str) -> str:
        """Sign and send text to peer. Returns the local message id."""
        env = self.session.sign(peer, text)
        local_id = self.coordinator.record_sent(env)
        try:
            await self.transport.send(req_signed_chat(env))
        except TransportError as exc:
            self.coordinator.submit(SendFailed(local_id, f"Message not sent: {exc}"))
            raise
        return local_id

    def open(self, peer: str) -> None:
        self.coordinator.open_conversation(peer)

    def reverify(self, local_id: str) -> None:
        self.coordinator.reverify(local_id)

    async def mark_conversation_read(self, peer: str) -> int:
        unread = self.coordinator.unread(peer)
        sent: List[str] = []
        for m in unread:
            await self.transport.send(req_read_receipt(m.server_id, self.username, m.sender))
            sent.append(m.server_id)
        if sent:
            self.coordinator.submit(MarkedRead(peer, sent))
        return len(sent)

    def delete_conversation(self, peer: str) -> None:
        self.coordinator.submit(ConversationDeleted(peer))

    def partners(self) -> List[str]:
        return self.conversations.conversation_partners(self.username)
