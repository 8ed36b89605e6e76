from __future__ import annotations
import argparse
import asyncio
import getpass
import logging
import sys
from typing import Optional

from websockets.asyncio.server import serve

from backend.config import Settings, load_settings
from backend.crypto import derive_key_pair
from server.bootstrap import init_persistence
from server.context import ServerContext
from server.router import handle_connection

log = logging.getLogger(__name__)


class ChatServer:
    """Store-and-forward WebSocket listener for signed chat messages."""

    def __init__(self, settings: Optional[Settings] = None, ctx: Optional[ServerContext] = None):
        self.settings = settings or load_settings()
        if ctx is None:
            directory, store = init_persistence(self.settings.storage_dir)
            ctx = ServerContext(directory=directory, store=store)
        self.ctx = ctx
        self._server = None

    async def _on_conn(self, ws) -> None:
        await handle_connection(self.ctx, ws)

    async def start(self) -> None:
        self._server = await serve(
            self._on_conn, self.settings.host, self.settings.port,
            max_size=self.settings.max_frame_size,
        )
        log.info("WS server on ws://%s:%d", self.settings.host, self.port)

    @property
    def port(self) -> int:
        if self._server is None:
            return self.settings.port
        return self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()


def _register(settings: Settings, username: str) -> int:
    directory, _ = init_persistence(settings.storage_dir)
    passphrase = getpass.getpass(f"Passphrase for {username}: ")
    if passphrase != getpass.getpass("Repeat passphrase: "):
        print("Passphrases do not match", file=sys.stderr)
        return 1
    pair = derive_key_pair(username, passphrase)
    try:
        directory.register_user(username, pair.public_key)
    except ValueError as exc:
        print(f"Cannot register {username}: {exc}", file=sys.stderr)
        return 1
    print(f"Registered {username}")
    return 0


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(prog="server.ws_server", description="Signed chat delivery server")
    ap.add_argument("--storage", help="storage directory (default from CHAT_STORAGE_DIR)")
    sub = ap.add_subparsers(dest="cmd", required=True)
    p_serve = sub.add_parser("serve", help="run the WebSocket server")
    p_serve.add_argument("--host")
    p_serve.add_argument("--port", type=int)
    p_reg = sub.add_parser("register", help="register a user from username + passphrase")
    p_reg.add_argument("username")
    args = ap.parse_args(argv)

    overrides = {}
    if args.storage:
        overrides["storage_dir"] = args.storage
    if args.cmd == "serve":
        if args.host:
            overrides["host"] = args.host
        if args.port is not None:
            overrides["port"] = args.port
    settings = load_settings(**overrides)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.cmd == "register":
        return _register(settings, args.username)
    try:
        asyncio.run(ChatServer(settings).serve_forever())
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
