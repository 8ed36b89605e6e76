# client/transport.py
from __future__ import annotations
import asyncio
import json
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

import websockets
from pydantic import ValidationError
from websockets.asyncio.client import connect

from backend.errors import KeyResolutionError, TransportError
from protocol.models import ECPublicJwk
from protocol.rpc import req_get_public_key, req_identify
from protocol.types import ERROR, SYSTEM

log = logging.getLogger(__name__)

FrameHandler = Callable[[dict], Awaitable[None]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDENTIFYING = "identifying"
    ACTIVE = "active"


class ChatTransport:
    """
    One persistent connection for one user. Identifies on every open,
    becomes ACTIVE on the server's system reply and reconnects after a
    fixed delay whenever the socket drops.
    """

    def __init__(
        self,
        url: str,
        username: str,
        on_frame: FrameHandler,
        *,
        reconnect_delay: float = 3.0,
        rpc_timeout: float = 5.0,
        on_connect: Optional[Callable[[], None]] = None,
    ) -> None:
        self.url = url
        self.username = username
        self._on_frame = on_frame
        self._on_connect = on_connect
        self.reconnect_delay = reconnect_delay
        self.rpc_timeout = rpc_timeout
        self.state = ConnectionState.DISCONNECTED
        self._ws = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._active = asyncio.Event()
        self._closing = False
        self._task: Optional[asyncio.Task] = None

    # lifecycle

    def start(self) -> None:
        self._closing = False
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def wait_active(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._active.wait(), timeout)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        log.info("transport %s: %s -> %s", self.username, self.state.value, state.value)
        self.state = state
        if state is ConnectionState.ACTIVE:
            self._active.set()
        else:
            self._active.clear()

    async def _run(self) -> None:
        while not self._closing:
            self._set_state(ConnectionState.CONNECTING)
            try:
                async with connect(self.url) as ws:
                    self._ws = ws
                    if self._on_connect is not None:
                        self._on_connect()
                    self._set_state(ConnectionState.IDENTIFYING)
                    await ws.send(json.dumps(req_identify(self.username)))
                    async for raw in ws:
                        await self._dispatch(raw)
            except (websockets.ConnectionClosed, websockets.InvalidHandshake, OSError) as exc:
                log.info("transport %s: connection lost: %s", self.username, exc)
            except Exception:
                # connect timeouts, frame handler bugs: none of them end the retry loop
                log.exception("transport %s: connection failed", self.username)
            finally:
                self._ws = None
                self._fail_pending(TransportError("connection closed"))
                self._set_state(ConnectionState.DISCONNECTED)
            if self._closing:
                break
            log.info("transport %s: reconnecting in %.1fs", self.username, self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    def _fail_pending(self, exc: Exception) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(exc)
        self._pending.clear()

    async def _dispatch(self, raw) -> None:
        try:
            obj = json.loads(raw)
        except ValueError:
            log.warning("transport %s: dropping malformed frame", self.username)
            return
        if not isinstance(obj, dict):
            return

        rid = obj.get("req_id")
        if rid and rid in self._pending:
            fut = self._pending.pop(rid)
            if not fut.done():
                fut.set_result(obj)
            return

        if self.state is ConnectionState.IDENTIFYING:
            if obj.get("type") == SYSTEM:
                self._set_state(ConnectionState.ACTIVE)
            elif obj.get("type") == ERROR:
                log.warning("transport %s: identify rejected: %s", self.username, obj.get("message"))

        try:
            await self._on_frame(obj)
        except Exception:
            log.exception("transport %s: frame handler failed", self.username)

    # outbound

    async def send(self, obj: dict) -> None:
        if self.state is not ConnectionState.ACTIVE or self._ws is None:
            raise TransportError(f"cannot send while {self.state.value}")
        try:
            await self._ws.send(json.dumps(obj))
        except websockets.ConnectionClosed as exc:
            raise TransportError("connection closed during send") from exc

    async def rpc(self, obj: dict, timeout: Optional[float] = None) -> dict:
        """Send a frame carrying req_id and wait for the reply with the same req_id."""
        ws = self._ws
        if ws is None or self.state not in (ConnectionState.IDENTIFYING, ConnectionState.ACTIVE):
            raise TransportError(f"cannot send while {self.state.value}")
        rid = obj["req_id"]
        fut = asyncio.get_running_loop().create_future()
        self._pending[rid] = fut
        try:
            await ws.send(json.dumps(obj))
            return await asyncio.wait_for(fut, timeout or self.rpc_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"no reply to {obj.get('type')} within timeout") from exc
        except websockets.ConnectionClosed as exc:
            raise TransportError("connection closed during request") from exc
        finally:
            self._pending.pop(rid, None)

    async def fetch_public_key(self, username: str) -> ECPublicJwk:
        """Key source for the public key cache."""
        try:
            resp = await self.rpc(req_get_public_key(username))
        except TransportError as exc:
            raise KeyResolutionError(f"lookup of {username} failed: {exc}") from exc
        if resp.get("type") == ERROR:
            raise KeyResolutionError(resp.get("message") or f"lookup of {username} failed")
        try:
            return ECPublicJwk.model_validate(resp.get("publicKey"))
        except ValidationError as exc:
            raise KeyResolutionError(f"bad key record for {username}") from exc
