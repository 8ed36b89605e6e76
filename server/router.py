from __future__ import annotations
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from protocol.types import (
    IDENTIFY, SIGNED_CHAT, READ_RECEIPT, GET_PUBLIC_KEY, ERR_INTERNAL, ERR_UNKNOWN_TYPE,
)
from protocol.rpc import resp_error
from server.context import ServerContext
from server.handlers_chat import (
    handle_get_public_key, handle_identify, handle_read_receipt, handle_signed_chat,
)
from server.registry import Link

log = logging.getLogger(__name__)

Handler = Callable[[ServerContext, Dict[str, Any], Link], Awaitable[Optional[Dict[str, Any]]]]

ROUTES: Dict[str, Handler] = {
    IDENTIFY: handle_identify,
    SIGNED_CHAT: handle_signed_chat,
    READ_RECEIPT: handle_read_receipt,
    GET_PUBLIC_KEY: handle_get_public_key,
}


async def handle_connection(ctx: ServerContext, ws) -> None:
    """Frames on one connection are handled one at a time, in arrival order."""
    link = Link(ws=ws)
    log.info("connection opened: %s", getattr(ws, "remote_address", None))
    try:
        async for raw in ws:
            await handle_frame(ctx, raw, link)
    except websockets.ConnectionClosed:
        pass
    finally:
        ctx.registry.detach(link)
        log.info("disconnected: %s", link.tag())


async def handle_frame(ctx: ServerContext, raw, link: Link) -> None:
    try:
        obj = json.loads(raw)
    except ValueError:
        log.warning("dropping malformed frame from %s", link.tag())
        return
    if not isinstance(obj, dict):
        log.warning("dropping non-object frame from %s", link.tag())
        return

    t = obj.get("type")
    handler = ROUTES.get(t)
    if handler is None:
        log.warning("unknown frame type %r from %s", t, link.tag())
        await ctx.registry.send(link, resp_error(f"{ERR_UNKNOWN_TYPE}: {t}"))
        return

    try:
        resp = await handler(ctx, obj, link)
    except Exception:
        log.exception("handler error for %s from %s", t, link.tag())
        resp = resp_error(ERR_INTERNAL, obj.get("req_id"))
    if resp is not None:
        await ctx.registry.send(link, resp)
