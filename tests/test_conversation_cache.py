from backend.crypto import sign_message
from client.conversation_cache import ConversationCache, conversation_key
from protocol.models import ConversationMessage, DeliveryStatus, MessageKind, VerificationStatus

from conftest import FIXED_TS


def _received(alice_keys, text, status=VerificationStatus.VERIFIED):
    env = sign_message("alice", "bob", text, alice_keys.private_key, timestamp=FIXED_TS)
    return ConversationMessage(
        type=MessageKind.RECEIVED, content=text, timestamp=FIXED_TS, sender="alice",
        recipient="bob", signed_message=env, verification_status=status, id=f"id-{text}",
        server_id=f"srv-{text}", status=DeliveryStatus.DELIVERED,
    )


def test_key_is_commutative():
    assert conversation_key("bob", "alice") == conversation_key("alice", "bob") == "chat_alice_bob"


def test_save_and_load_from_either_side(tmp_path, alice_keys):
    cache = ConversationCache(tmp_path / "local.json")
    cache.save("bob", "alice", [_received(alice_keys, "hi")])
    assert [m.content for m in cache.load("alice", "bob")] == ["hi"]


def test_load_resets_received_signed_messages_to_pending(tmp_path, alice_keys):
    cache = ConversationCache(tmp_path / "local.json")
    sent = ConversationMessage(type=MessageKind.SENT, content="yo", timestamp=FIXED_TS,
                               sender="bob", recipient="alice")
    system = ConversationMessage(type=MessageKind.SYSTEM, content="Connected as bob", timestamp=FIXED_TS)
    cache.save("bob", "alice", [
        _received(alice_keys, "good", VerificationStatus.VERIFIED),
        _received(alice_keys, "bad", VerificationStatus.FAILED),
        sent, system,
    ])
    loaded = cache.load("bob", "alice")
    assert [m.verification_status for m in loaded] == [
        VerificationStatus.PENDING, VerificationStatus.PENDING,
        VerificationStatus.NOT_APPLICABLE, VerificationStatus.NOT_APPLICABLE,
    ]
    # envelope survives verbatim
    assert loaded[0].signed_message == _received(alice_keys, "good").signed_message
    assert loaded[0].server_id == "srv-good"


def test_empty_save_is_skipped(tmp_path, alice_keys):
    cache = ConversationCache(tmp_path / "local.json")
    cache.save("bob", "alice", [_received(alice_keys, "keep")])
    cache.save("bob", "alice", [])
    assert len(cache.load("bob", "alice")) == 1


def test_delete_and_partners(tmp_path, alice_keys):
    cache = ConversationCache(tmp_path / "local.json")
    msg = [_received(alice_keys, "x")]
    cache.save("bob", "alice", msg)
    cache.save("bob", "zed", msg)
    cache.save("bob", "b_side", msg)
    cache.save("carol", "dave", msg)
    assert cache.conversation_partners("bob") == ["alice", "b_side", "zed"]
    assert cache.conversation_partners("alice") == ["bob"]

    cache.delete_conversation("alice", "bob")
    assert cache.load("bob", "alice") == []
    assert cache.conversation_partners("bob") == ["b_side", "zed"]


def test_load_missing_conversation(tmp_path):
    cache = ConversationCache(tmp_path / "local.json")
    assert cache.load("bob", "nobody") == []
    assert cache.load("", "nobody") == []
