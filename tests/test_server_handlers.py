import asyncio
import json

import websockets

from backend.crypto import sign_message
from backend.errors import PersistenceError
from protocol.models import DeliveryStatus
from protocol.rpc import req_get_public_key, req_identify, req_read_receipt, req_signed_chat
from protocol.types import (
    ERR_BAD_FRAME, ERR_INTERNAL, ERR_NOT_IDENTIFIED, ERR_SAVE_FAILED, ERR_SENDER_MISMATCH,
)
from server import handlers_chat
from server.registry import Link
from server.router import ROUTES, handle_frame

from conftest import FakeWS


def run(coro):
    return asyncio.run(coro)


async def frame(ctx, link, obj):
    await handle_frame(ctx, json.dumps(obj), link)


async def connect(ctx, username):
    link = Link(ws=FakeWS())
    await frame(ctx, link, req_identify(username))
    return link


def chat(keys, sender, receiver, text):
    return req_signed_chat(sign_message(sender, receiver, text, keys.private_key))


def test_identify_success_and_unknown_user(ctx):
    async def go():
        ok = await connect(ctx, "alice")
        ghost = await connect(ctx, "ghost")
        return ok, ghost

    ok, ghost = run(go())
    assert ok.ws.sent == [{"type": "system", "message": "Connected as alice"}]
    assert ok.username == "alice"
    assert ghost.ws.types() == ["error"]
    assert ghost.username is None
    assert ctx.registry.online_users() == ["alice"]


def test_second_session_is_rejected_and_stays_unidentified(ctx, alice_keys):
    async def go():
        first = await connect(ctx, "alice")
        second = await connect(ctx, "alice")
        await frame(ctx, second, chat(alice_keys, "alice", "bob", "hi"))
        return first, second

    first, second = run(go())
    assert second.ws.types() == ["error", "error"]
    assert second.ws.sent[1]["message"] == ERR_NOT_IDENTIFIED
    assert ctx.registry.get("alice") is first


def test_chat_before_identify(ctx, alice_keys):
    link = Link(ws=FakeWS())
    run(frame(ctx, link, chat(alice_keys, "alice", "bob", "hi")))
    assert link.ws.sent == [{"type": "error", "message": ERR_NOT_IDENTIFIED}]
    assert ctx.store.count_all() == 0


def test_online_recipient_gets_message_and_sender_gets_delivered(ctx, alice_keys):
    async def go():
        alice = await connect(ctx, "alice")
        bob = await connect(ctx, "bob")
        await frame(ctx, alice, chat(alice_keys, "alice", "bob", "hi"))
        return alice, bob

    alice, bob = run(go())
    fwd = bob.ws.sent[-1]
    assert fwd["type"] == "signed_chat" and fwd["from"] == "alice"
    assert fwd["message"]["plaintext_message"] == "hi"
    ack = alice.ws.sent[-1]
    assert ack["type"] == "delivered" and ack["to"] == "bob"
    assert ack["messageId"] == fwd["messageId"]
    assert ack["message_hash"] == fwd["message"]["message_hash"]
    assert ctx.store.get_message(ack["messageId"]).status is DeliveryStatus.DELIVERED


def test_offline_recipient_is_queued_then_flushed_in_order(ctx, alice_keys):
    async def go():
        alice = await connect(ctx, "alice")
        for text in ("m1", "m2", "m3"):
            await frame(ctx, alice, chat(alice_keys, "alice", "bob", text))
        acks = list(alice.ws.sent[1:])
        bob = await connect(ctx, "bob")
        return alice, bob, acks

    alice, bob, acks = run(go())
    assert [a["type"] for a in acks] == ["pending"] * 3
    assert bob.ws.types() == ["system", "signed_chat", "signed_chat", "signed_chat"]
    assert [f["message"]["plaintext_message"] for f in bob.ws.sent[1:]] == ["m1", "m2", "m3"]
    ids = [a["messageId"] for a in acks]
    assert [f["messageId"] for f in bob.ws.sent[1:]] == ids
    updates = alice.ws.sent[4:]
    assert [(u["type"], u["messageId"], u["status"], u["to"]) for u in updates] == [
        ("status_update", i, "DELIVERED", "bob") for i in ids
    ]
    assert all(ctx.store.get_message(i).status is DeliveryStatus.DELIVERED for i in ids)


def test_pending_flush_with_sender_offline(ctx, alice_keys):
    async def go():
        alice = await connect(ctx, "alice")
        await frame(ctx, alice, chat(alice_keys, "alice", "bob", "later"))
        ctx.registry.detach(alice)
        bob = await connect(ctx, "bob")
        return alice, bob

    alice, bob = run(go())
    assert bob.ws.types() == ["system", "signed_chat"]
    assert alice.ws.types() == ["system", "pending"]


def test_unknown_recipient_is_an_error_not_a_queue(ctx, alice_keys):
    async def go():
        alice = await connect(ctx, "alice")
        await frame(ctx, alice, chat(alice_keys, "alice", "nobody", "hi"))
        return alice

    alice = run(go())
    assert alice.ws.sent[-1] == {"type": "error", "message": 'User "nobody" not found'}
    assert ctx.store.count_all() == 0


def test_sender_must_match_identity(ctx, bob_keys):
    async def go():
        alice = await connect(ctx, "alice")
        await frame(ctx, alice, chat(bob_keys, "bob", "alice", "spoof"))
        return alice

    alice = run(go())
    assert alice.ws.sent[-1]["message"] == ERR_SENDER_MISMATCH


def test_read_receipt_advances_and_notifies_once(ctx, alice_keys):
    async def go():
        alice = await connect(ctx, "alice")
        bob = await connect(ctx, "bob")
        await frame(ctx, alice, chat(alice_keys, "alice", "bob", "hi"))
        mid = bob.ws.sent[-1]["messageId"]
        await frame(ctx, bob, req_read_receipt(mid, "bob", "alice"))
        before = len(alice.ws.sent)
        await frame(ctx, bob, req_read_receipt(mid, "bob", "alice"))
        return alice, bob, mid, before

    alice, bob, mid, before = run(go())
    assert alice.ws.sent[before - 1] == {
        "type": "status_update", "messageId": mid, "status": "READ", "from": "bob",
    }
    assert len(alice.ws.sent) == before
    assert bob.ws.types()[-1] == "signed_chat"
    assert ctx.store.get_message(mid).status is DeliveryStatus.READ


def test_read_receipt_only_from_recipient(ctx, alice_keys):
    async def go():
        alice = await connect(ctx, "alice")
        await frame(ctx, alice, chat(alice_keys, "alice", "bob", "hi"))
        mid = alice.ws.sent[-1]["messageId"]
        await frame(ctx, alice, req_read_receipt(mid, "alice", "alice"))
        return alice, mid

    alice, mid = run(go())
    assert alice.ws.sent[-1]["type"] == "error"
    assert ctx.store.get_message(mid).status is DeliveryStatus.PENDING


def test_malformed_frames_are_dropped(ctx):
    link = Link(ws=FakeWS())

    async def go():
        await handle_frame(ctx, "{not json", link)
        await handle_frame(ctx, "[1, 2]", link)

    run(go())
    assert link.ws.sent == []


def test_unknown_type_gets_error(ctx):
    link = Link(ws=FakeWS())
    run(frame(ctx, link, {"type": "bogus"}))
    assert link.ws.types() == ["error"]


def test_public_key_lookup(ctx, alice_keys):
    link = Link(ws=FakeWS())
    req = req_get_public_key("alice")
    missing = req_get_public_key("ghost")

    async def go():
        await frame(ctx, link, req)
        await frame(ctx, link, missing)

    run(go())
    found, err = link.ws.sent
    assert found["type"] == "public_key" and found["req_id"] == req["req_id"]
    assert found["publicKey"] == alice_keys.public_key.model_dump()
    assert err["type"] == "error" and err["req_id"] == missing["req_id"]


def test_persistence_failure_aborts_only_the_frame(ctx, alice_keys, monkeypatch):
    def broken(*args, **kwargs):
        raise PersistenceError("disk full")

    async def go():
        alice = await connect(ctx, "alice")
        monkeypatch.setattr(ctx.store, "create_message", broken)
        await frame(ctx, alice, chat(alice_keys, "alice", "bob", "hi"))
        monkeypatch.undo()
        await frame(ctx, alice, chat(alice_keys, "alice", "bob", "again"))
        return alice

    alice = run(go())
    assert alice.ws.sent[1] == {"type": "error", "message": ERR_SAVE_FAILED}
    assert alice.ws.sent[2]["type"] == "pending"


def test_unexpected_handler_error_is_reported(ctx, monkeypatch):
    async def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setitem(ROUTES, "identify", explode)
    link = Link(ws=FakeWS())
    run(frame(ctx, link, req_identify("alice")))
    assert link.ws.sent == [{"type": "error", "message": ERR_INTERNAL}]


def test_deliver_pending_stops_when_recipient_drops(ctx, alice_keys):
    class ClosingWS(FakeWS):
        async def send(self, raw):
            raise websockets.ConnectionClosed(None, None)

    async def go():
        alice = await connect(ctx, "alice")
        await frame(ctx, alice, chat(alice_keys, "alice", "bob", "m1"))
        link = Link(ws=ClosingWS(), username="bob")
        return await handlers_chat.deliver_pending(ctx, "bob", link)

    assert run(go()) == 0
    assert len(ctx.store.list_pending(ctx.directory.resolve_user_id("bob"))) == 1


class YieldingWS(FakeWS):
    """A socket whose send gives other handlers a chance to run."""

    async def send(self, raw):
        await asyncio.sleep(0)
        await super().send(raw)


def test_live_message_waits_behind_pending_flush(ctx, alice_keys):
    async def go():
        alice = await connect(ctx, "alice")
        await frame(ctx, alice, chat(alice_keys, "alice", "bob", "M1"))
        bob = Link(ws=YieldingWS())
        await asyncio.gather(
            frame(ctx, bob, req_identify("bob")),
            frame(ctx, alice, chat(alice_keys, "alice", "bob", "M2")),
        )
        # flush is over: the next message goes straight through
        await frame(ctx, alice, chat(alice_keys, "alice", "bob", "M3"))
        return alice, bob

    alice, bob = run(go())
    texts = [f["message"]["plaintext_message"] for f in bob.ws.sent if f["type"] == "signed_chat"]
    assert texts == ["M1", "M2", "M3"]
    assert ctx.store.list_pending(ctx.directory.resolve_user_id("bob")) == []
    assert alice.ws.sent[-1]["type"] == "delivered"


def test_status_write_failure_after_live_delivery_still_acks(ctx, alice_keys, monkeypatch):
    def broken(*args, **kwargs):
        raise PersistenceError("disk full")

    async def go():
        alice = await connect(ctx, "alice")
        bob = await connect(ctx, "bob")
        monkeypatch.setattr(ctx.store, "update_status", broken)
        await frame(ctx, alice, chat(alice_keys, "alice", "bob", "hi"))
        return alice, bob

    alice, bob = run(go())
    assert bob.ws.types() == ["system", "signed_chat"]
    assert alice.ws.sent[-1]["type"] == "delivered"


def test_unencodable_text_is_a_bad_frame(ctx, alice_keys):
    message = sign_message("alice", "bob", "hi", alice_keys.private_key).model_dump()
    message["plaintext_message"] = "\ud800"

    async def go():
        alice = await connect(ctx, "alice")
        await frame(ctx, alice, {"type": "signed_chat", "message": message})
        return alice

    alice = run(go())
    assert alice.ws.sent[-1] == {"type": "error", "message": ERR_BAD_FRAME}
    assert ctx.store.count_all() == 0
