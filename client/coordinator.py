# client/coordinator.py
"""
Per-message verification and delivery state for one logged-in user.

Every mutation goes through ``_apply``, which a single reducer task runs
for events taken off one queue. Verification tasks never touch state
directly; they post VerificationStarted / VerificationFinished events.
"""
from __future__ import annotations
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Union

from pydantic import ValidationError

from backend.crypto import iso_now
from backend.errors import PersistenceError
from backend.verify import MessageVerifier
from client.conversation_cache import ConversationCache
from protocol.models import (
    ConversationMessage, DeliveryStatus, MessageKind, SignedEnvelope, VerificationStatus,
)
from protocol.types import DELIVERED, ERROR, PENDING, SAVED, SIGNED_CHAT, STATUS_UPDATE, SYSTEM

log = logging.getLogger(__name__)

MAX_EARLY_STATUS = 256


# ========== Events ==========

@dataclass
class FrameReceived:
    frame: dict


@dataclass
class ConversationOpened:
    peer: str


@dataclass
class ReverifyRequested:
    local_id: str


@dataclass
class SentRecorded:
    message: ConversationMessage


@dataclass
class SendFailed:
    local_id: str
    reason: str


@dataclass
class MarkedRead:
    peer: str
    server_ids: List[str]


@dataclass
class ConversationDeleted:
    peer: str


@dataclass
class VerificationStarted:
    local_id: str
    attempt: int


@dataclass
class VerificationFinished:
    local_id: str
    attempt: int
    valid: bool
    reason: Optional[str] = None


Event = Union[
    FrameReceived, ConversationOpened, ReverifyRequested, SentRecorded, SendFailed,
    MarkedRead, ConversationDeleted, VerificationStarted, VerificationFinished,
]


def new_local_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


@dataclass
class _Conversation:
    peer: str
    messages: List[ConversationMessage] = field(default_factory=list)


class VerificationCoordinator:
    def __init__(self, username: str, verifier: MessageVerifier,
                 cache: Optional[ConversationCache] = None, autosave: bool = True):
        self.username = username
        self.verifier = verifier
        self.cache = cache
        self.autosave = autosave and cache is not None
        self.current_peer: Optional[str] = None
        self.notices: List[ConversationMessage] = []   # system/error with no open conversation
        self._conversations: Dict[str, _Conversation] = {}
        self._attempts: Dict[str, int] = {}
        self._early_status: Dict[str, DeliveryStatus] = {}  # status_update seen before its ack
        self._queue: "asyncio.Queue[Event]" = asyncio.Queue()
        self._reducer: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # ========== Public API ==========

    def submit(self, event: Event) -> None:
        self._queue.put_nowait(event)
        if self._reducer is None or self._reducer.done():
            self._reducer = asyncio.create_task(self._reduce())

    async def handle_frame(self, frame: dict) -> None:
        self.submit(FrameReceived(frame))

    def open_conversation(self, peer: str) -> None:
        self.submit(ConversationOpened(peer))

    def reverify(self, local_id: str) -> None:
        self.submit(ReverifyRequested(local_id))

    def record_sent(self, env: SignedEnvelope) -> str:
        local_id = new_local_id()
        self.submit(SentRecorded(ConversationMessage(
            type=MessageKind.SENT,
            content=env.plaintext_message,
            timestamp=env.timestamp,
            sender=env.sender_username,
            recipient=env.receiver_username,
            signed_message=env,
            id=local_id,
        )))
        return local_id

    def messages(self, peer: str) -> List[ConversationMessage]:
        conv = self._conversations.get(peer)
        return [m.model_copy() for m in conv.messages] if conv else []

    def find(self, local_id: str) -> Optional[ConversationMessage]:
        hit = self._locate(local_id)
        return hit[1].model_copy() if hit else None

    def unread(self, peer: str) -> List[ConversationMessage]:
        """Received messages with a server id that are not READ yet."""
        return [
            m for m in self.messages(peer)
            if m.type == MessageKind.RECEIVED and m.server_id and m.status != DeliveryStatus.READ
        ]

    async def settle(self) -> None:
        """Wait until the queue is drained and no verification is in flight."""
        while True:
            await self._queue.join()
            running = [t for t in self._tasks if not t.done()]
            if not running:
                if self._queue.empty():
                    return
                continue
            await asyncio.gather(*running, return_exceptions=True)

    async def close(self) -> None:
        await self.settle()
        if self._reducer is not None:
            self._reducer.cancel()
            try:
                await self._reducer
            except asyncio.CancelledError:
                pass
            self._reducer = None

    # ========== Reducer ==========

    async def _reduce(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self._apply(event)
            except Exception:
                log.exception("coordinator failed to apply %s", type(event).__name__)
            finally:
                self._queue.task_done()

    def _apply(self, event: Event) -> None:
        if isinstance(event, FrameReceived):
            self._on_frame(event.frame)
        elif isinstance(event, ConversationOpened):
            self._on_open(event.peer)
        elif isinstance(event, ReverifyRequested):
            self._on_reverify(event.local_id)
        elif isinstance(event, SentRecorded):
            self._append(event.message.recipient, event.message)
        elif isinstance(event, SendFailed):
            self._on_send_failed(event)
        elif isinstance(event, MarkedRead):
            self._on_marked_read(event)
        elif isinstance(event, ConversationDeleted):
            self._on_deleted(event.peer)
        elif isinstance(event, VerificationStarted):
            self._on_verification_started(event)
        elif isinstance(event, VerificationFinished):
            self._on_verification_finished(event)

    # inbound frames

    def _on_frame(self, frame: dict) -> None:
        t = frame.get("type")
        if t == SIGNED_CHAT:
            self._on_signed_chat(frame)
        elif t in (DELIVERED, PENDING, SAVED):
            self._on_ack(frame)
        elif t == STATUS_UPDATE:
            self._on_status_update(frame)
        elif t in (SYSTEM, ERROR):
            kind = MessageKind.SYSTEM if t == SYSTEM else MessageKind.ERROR
            text = frame.get("message")
            self._notice(kind, text if isinstance(text, str) else str(text))

    def _on_signed_chat(self, frame: dict) -> None:
        try:
            env = SignedEnvelope.model_validate(frame.get("message"))
        except ValidationError:
            log.warning("dropping malformed signed_chat from %s", frame.get("from"))
            return
        peer = env.sender_username
        conv = self._conversation(peer)
        server_id = frame.get("messageId")
        if server_id and any(m.server_id == server_id for m in conv.messages):
            return      # redelivery of something we already hold
        msg = ConversationMessage(
            type=MessageKind.RECEIVED,
            content=env.plaintext_message,
            timestamp=env.timestamp,
            sender=peer,
            recipient=env.receiver_username,
            signed_message=env,
            verification_status=VerificationStatus.PENDING,
            id=new_local_id(),
            server_id=server_id,
            status=DeliveryStatus.DELIVERED if server_id else None,
        )
        self._append(peer, msg)
        # never check a new message against a key fetched before it arrived
        self.verifier.keys.invalidate(peer)
        self._spawn_verification(msg, force_refresh=True)

    def _on_ack(self, frame: dict) -> None:
        peer = frame.get("to")
        server_id = frame.get("messageId")
        msg_hash = frame.get("message_hash")
        status = DeliveryStatus.DELIVERED if frame.get("type") == DELIVERED else DeliveryStatus.PENDING
        conv = self._conversations.get(peer) if isinstance(peer, str) else None
        if conv is not None and server_id:
            for m in conv.messages:
                if (m.type == MessageKind.SENT and m.server_id is None and m.signed_message
                        and m.signed_message.message_hash == msg_hash):
                    m.server_id = server_id
                    m.status = status
                    early = self._early_status.pop(server_id, None)
                    if early is not None and status.can_advance_to(early):
                        m.status = early
                    break
        kind = MessageKind.DELIVERED if status is DeliveryStatus.DELIVERED else MessageKind.SYSTEM
        content = frame.get("content") or f"{frame.get('type')}: {peer}"
        if conv is not None:
            self._append(peer, ConversationMessage(type=kind, content=content, timestamp=iso_now(),
                                                   recipient=peer))
        else:
            self._notice(kind, content)

    def _on_status_update(self, frame: dict) -> None:
        server_id = frame.get("messageId")
        try:
            status = DeliveryStatus(frame.get("status"))
        except ValueError:
            log.warning("ignoring status_update with status %r", frame.get("status"))
            return
        for conv in self._conversations.values():
            for m in conv.messages:
                if m.server_id == server_id and m.type == MessageKind.SENT:
                    current = m.status or DeliveryStatus.PENDING
                    if m.status is None or current.can_advance_to(status):
                        m.status = status
                        self._save(conv)
                    return
        if isinstance(server_id, str) and server_id:
            self._buffer_status(server_id, status)

    def _buffer_status(self, server_id: str, status: DeliveryStatus) -> None:
        current = self._early_status.get(server_id)
        if current is not None and not current.can_advance_to(status):
            return
        self._early_status[server_id] = status
        while len(self._early_status) > MAX_EARLY_STATUS:
            self._early_status.pop(next(iter(self._early_status)))

    # user actions

    def _on_open(self, peer: str) -> None:
        if self.current_peer and self.current_peer != peer:
            conv = self._conversations.get(self.current_peer)
            if conv is not None:
                self._save(conv)
        self.current_peer = peer
        if self.cache is not None:
            loaded = self.cache.load(self.username, peer)
        else:
            loaded = self._conversations[peer].messages if peer in self._conversations else []
            for m in loaded:
                if m.verifiable:
                    m.verification_status = VerificationStatus.PENDING
        for m in loaded:
            if m.id is None:
                m.id = new_local_id()
        conv = _Conversation(peer, loaded)
        self._conversations[peer] = conv

        verifiable = [m for m in loaded if m.verifiable]
        # one invalidation per distinct sender; the first fetch then serves the rest
        for sender in {m.signed_message.sender_username for m in verifiable}:
            self.verifier.keys.invalidate(sender)
        for m in verifiable:
            self._spawn_verification(m, force_refresh=False)
        if verifiable:
            log.info("re-verifying %d cached message(s) with %s", len(verifiable), peer)

    def _on_reverify(self, local_id: str) -> None:
        hit = self._locate(local_id)
        if hit is None or not hit[1].verifiable:
            return
        conv, msg = hit
        self.verifier.keys.invalidate(msg.signed_message.sender_username)
        msg.verification_status = VerificationStatus.PENDING
        self._save(conv)
        self._spawn_verification(msg, force_refresh=True)

    def _on_send_failed(self, event: SendFailed) -> None:
        hit = self._locate(event.local_id)
        if hit is None:
            self._notice(MessageKind.ERROR, event.reason)
            return
        conv, _ = hit
        self._append(conv.peer, ConversationMessage(
            type=MessageKind.ERROR, content=event.reason, timestamp=iso_now()))

    def _on_marked_read(self, event: MarkedRead) -> None:
        conv = self._conversations.get(event.peer)
        if conv is None:
            return
        wanted = set(event.server_ids)
        for m in conv.messages:
            if m.type == MessageKind.RECEIVED and m.server_id in wanted:
                m.status = DeliveryStatus.READ
        self._save(conv)

    def _on_deleted(self, peer: str) -> None:
        self._conversations.pop(peer, None)
        if self.cache is not None:
            self.cache.delete_conversation(self.username, peer)
        if self.current_peer == peer:
            self.current_peer = None

    # verification

    def _spawn_verification(self, msg: ConversationMessage, force_refresh: bool) -> None:
        attempt = self._attempts.get(msg.id, 0) + 1
        self._attempts[msg.id] = attempt
        task = asyncio.create_task(
            self._verify(msg.id, attempt, msg.signed_message, force_refresh)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _verify(self, local_id: str, attempt: int, env: SignedEnvelope, force_refresh: bool) -> None:
        self.submit(VerificationStarted(local_id, attempt))
        try:
            result = await self.verifier.verify_detailed(env, force_refresh=force_refresh)
            valid, reason = result.valid, result.reason
        except Exception as exc:
            log.exception("verification of %s crashed", local_id)
            valid, reason = False, str(exc)
        self.submit(VerificationFinished(local_id, attempt, valid, reason))

    def _on_verification_started(self, event: VerificationStarted) -> None:
        if self._attempts.get(event.local_id) != event.attempt:
            return
        hit = self._locate(event.local_id)
        if hit is not None and hit[1].verification_status == VerificationStatus.PENDING:
            hit[1].verification_status = VerificationStatus.VERIFYING

    def _on_verification_finished(self, event: VerificationFinished) -> None:
        if self._attempts.get(event.local_id) != event.attempt:
            return  # superseded by a later reverify or reload
        hit = self._locate(event.local_id)
        if hit is None:
            return
        conv, msg = hit
        msg.verification_status = VerificationStatus.VERIFIED if event.valid else VerificationStatus.FAILED
        if not event.valid:
            log.warning("message %s from %s failed verification: %s",
                        event.local_id, msg.sender, event.reason)
        self._save(conv)

    # helpers

    def _conversation(self, peer: str) -> _Conversation:
        conv = self._conversations.get(peer)
        if conv is None:
            loaded = self.cache.load(self.username, peer) if self.cache else []
            for m in loaded:
                if m.id is None:
                    m.id = new_local_id()
            conv = self._conversations[peer] = _Conversation(peer, loaded)
            # history pulled in by an inbound message is re-checked too
            for m in loaded:
                if m.verifiable:
                    self._spawn_verification(m, force_refresh=False)
        return conv

    def _locate(self, local_id: str):
        for conv in self._conversations.values():
            for m in conv.messages:
                if m.id == local_id:
                    return conv, m
        return None

    def _append(self, peer: Optional[str], msg: ConversationMessage) -> None:
        if not peer:
            self.notices.append(msg)
            return
        conv = self._conversation(peer)
        conv.messages.append(msg)
        self._save(conv)

    def _notice(self, kind: MessageKind, text: str) -> None:
        msg = ConversationMessage(type=kind, content=text, timestamp=iso_now())
        if self.current_peer:
            self._append(self.current_peer, msg)
        else:
            self.notices.append(msg)

    def _save(self, conv: _Conversation) -> None:
        if not self.autosave:
            return
        try:
            self.cache.save(self.username, conv.peer, conv.messages)
        except PersistenceError:
            log.exception("could not save conversation with %s", conv.peer)

