from __future__ import annotations
import logging
from typing import Dict, Any, Optional

from pydantic import ValidationError

from backend.errors import PersistenceError, UserNotFound
from protocol.models import DeliveryStatus, SignedEnvelope
from protocol.rpc import (
    ack_delivered, ack_pending, fwd_signed_chat, resp_error, resp_public_key,
    resp_system, status_update,
)
from protocol.types import (
    ERR_BAD_FRAME, ERR_NOT_IDENTIFIED, ERR_SAVE_FAILED, ERR_SENDER_MISMATCH,
)
from server.context import ServerContext
from server.registry import Link

log = logging.getLogger(__name__)

Response = Optional[Dict[str, Any]]


# identify

async def handle_identify(ctx: ServerContext, obj: Dict[str, Any], link: Link) -> Response:
    username = obj.get("username")
    if not isinstance(username, str) or not username:
        return resp_error("Missing username")
    if link.username is not None:
        if link.username == username:
            return resp_system(f"Already connected as {username}")
        return resp_error(f"Already identified as {link.username}")
    if not ctx.directory.user_exists(username):
        return resp_error(str(UserNotFound(username)))
    # held: live chat is queued behind the backlog until the flush is done
    if not ctx.registry.attach(username, link, hold=True):
        log.info("identify %s rejected: already connected", username)
        return resp_error(f"{username} is already connected")

    log.info("identified %s", username)
    await ctx.registry.send(link, resp_system(f"Connected as {username}"))
    await deliver_pending(ctx, username, link)
    return None


async def deliver_pending(ctx: ServerContext, username: str, link: Link) -> int:
    """
    Flush the user's PENDING queue in creation order, then release the
    registry hold. Messages queued while the flush runs are picked up by
    the next pass. Returns how many went out.
    """
    sent = 0
    user_id = ctx.directory.resolve_user_id(username)
    try:
        while True:
            batch = ctx.store.list_pending(user_id)
            if not batch:
                break
            for rec in batch:
                env = rec.envelope
                if not await ctx.registry.send(link, fwd_signed_chat(env.sender_username, env, rec.id)):
                    log.info("flush to %s interrupted after %d message(s)", username, sent)
                    return sent     # recipient dropped; the rest stay PENDING
                sent += 1
                if ctx.store.update_status(rec.id, DeliveryStatus.DELIVERED, expected=DeliveryStatus.PENDING):
                    await ctx.registry.forward_to(
                        env.sender_username, status_update(rec.id, DeliveryStatus.DELIVERED, to=username)
                    )
    finally:
        ctx.registry.release(username)
    if sent:
        log.info("delivered %d pending message(s) to %s", sent, username)
    return sent


# signed chat

async def handle_signed_chat(ctx: ServerContext, obj: Dict[str, Any], link: Link) -> Response:
    if link.username is None:
        return resp_error(ERR_NOT_IDENTIFIED)
    try:
        env = SignedEnvelope.model_validate(obj.get("message"))
    except ValidationError as exc:
        log.warning("signed_chat from %s rejected: %s", link.username, exc.error_count())
        return resp_error(ERR_BAD_FRAME)
    if env.sender_username != link.username:
        return resp_error(ERR_SENDER_MISMATCH)

    recipient = env.receiver_username
    try:
        sender_id = ctx.directory.resolve_user_id(link.username)
        recipient_id = ctx.directory.resolve_user_id(recipient)
    except UserNotFound as exc:
        log.info("route %s -> %s: unknown recipient", link.username, recipient)
        return resp_error(str(exc))

    try:
        record_id = ctx.store.create_message(sender_id, recipient_id, env)
    except PersistenceError:
        log.exception("failed to save message %s -> %s", link.username, recipient)
        return resp_error(ERR_SAVE_FAILED)

    if await ctx.registry.forward_chat(recipient, fwd_signed_chat(link.username, env, record_id)):
        try:
            ctx.store.update_status(record_id, DeliveryStatus.DELIVERED, expected=DeliveryStatus.PENDING)
        except PersistenceError:
            # the recipient has it; only the stored status lags
            log.exception("delivered %s but could not record it", record_id)
        log.info("route %s -> %s: delivered (%s)", link.username, recipient, record_id)
        return ack_delivered(recipient, record_id, env.message_hash)

    log.info("route %s -> %s: recipient offline, queued (%s)", link.username, recipient, record_id)
    return ack_pending(recipient, record_id, env.message_hash)


# read receipts

async def handle_read_receipt(ctx: ServerContext, obj: Dict[str, Any], link: Link) -> Response:
    if link.username is None:
        return resp_error(ERR_NOT_IDENTIFIED)
    message_id = obj.get("messageId")
    if not isinstance(message_id, str) or not message_id:
        return resp_error("Missing messageId")
    rec = ctx.store.get_message(message_id)
    if rec is None:
        return resp_error(f"Unknown message {message_id}")
    if rec.envelope.receiver_username != link.username:
        return resp_error("Only the recipient can mark a message read")

    # already READ is a no-op, not an error
    if ctx.store.advance_status(message_id, DeliveryStatus.READ) is None:
        return None
    await ctx.registry.forward_to(
        rec.envelope.sender_username,
        status_update(message_id, DeliveryStatus.READ, frm=link.username),
    )
    return None


# public key lookup (RPC)

async def handle_get_public_key(ctx: ServerContext, obj: Dict[str, Any], link: Link) -> Response:
    req_id = obj.get("req_id") or ""
    username = obj.get("username")
    if not isinstance(username, str) or not username:
        return resp_error("Missing username", req_id)
    try:
        jwk = ctx.directory.resolve_public_key(username)
    except UserNotFound as exc:
        return resp_error(str(exc), req_id)
    return resp_public_key(req_id, username, jwk)
