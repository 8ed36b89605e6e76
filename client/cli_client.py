import asyncio
import getpass
import logging
import sys
from typing import Optional

from backend.config import load_settings
from backend.errors import ChatError
from client.chat_client import ChatClient
from client.session import Session
from protocol.models import ConversationMessage, MessageKind, VerificationStatus
from protocol.types import SIGNED_CHAT

log = logging.getLogger(__name__)

MARKERS = {
    VerificationStatus.PENDING: "[?]",
    VerificationStatus.VERIFYING: "[~]",
    VerificationStatus.VERIFIED: "[ok]",
    VerificationStatus.FAILED: "[FAILED]",
    VerificationStatus.NOT_APPLICABLE: "",
}

HELP = "Commands: /open <user>, <text> to send, /reverify <id>, /read, /partners, /delete, /show, /quit"


def render(msg: ConversationMessage) -> str:
    if msg.type == MessageKind.RECEIVED:
        marker = MARKERS[msg.verification_status]
        return f"{msg.id} {msg.timestamp} <{msg.sender}> {msg.content} {marker}".rstrip()
    if msg.type == MessageKind.SENT:
        status = msg.status.value if msg.status else "sending"
        return f"{msg.timestamp} <me> {msg.content} ({status})"
    return f"-- {msg.type.value}: {msg.content}"


async def _readline(prompt: str = "") -> Optional[str]:
    if prompt:
        print(prompt, end="", flush=True)
    line = await asyncio.get_running_loop().run_in_executor(None, sys.stdin.readline)
    return line if line else None


async def main_loop() -> None:
    settings = load_settings()
    username = (await _readline("username: ") or "").strip()
    passphrase = getpass.getpass("passphrase: ")
    if not username or not passphrase:
        print("username and passphrase are required")
        return

    session = Session()
    session.login(username, passphrase)

    def on_frame(frame: dict) -> None:
        if frame.get("type") == SIGNED_CHAT:
            print(f"\n[new message from {frame.get('from')}]")

    client = ChatClient(session, settings, on_frame=on_frame)
    await client.start()
    print(HELP)
    peer: Optional[str] = None
    try:
        while True:
            line = await _readline()
            if line is None:
                break
            line = line.strip()
            if not line:
                continue
            try:
                if line == "/quit":
                    break
                elif line.startswith("/open "):
                    peer = line.split(" ", 1)[1].strip()
                    client.open(peer)
                elif line.startswith("/reverify "):
                    client.reverify(line.split(" ", 1)[1].strip())
                elif line == "/read":
                    if peer:
                        n = await client.mark_conversation_read(peer)
                        print(f"marked {n} message(s) read")
                elif line == "/partners":
                    print(", ".join(client.partners()) or "(none)")
                elif line == "/delete":
                    if peer:
                        client.delete_conversation(peer)
                        peer = None
                elif line == "/show":
                    pass
                elif line.startswith("/"):
                    print("unknown command", line)
                    print(HELP)
                    continue
                elif peer is None:
                    print("open a conversation first: /open <user>")
                    continue
                else:
                    await client.send(peer, line)
            except ChatError as exc:
                print(f"error: {exc}")
            await client.coordinator.settle()
            if peer:
                for msg in client.coordinator.messages(peer):
                    print(render(msg))
    finally:
        await client.stop()
        session.logout()


if __name__ == "__main__":
    logging.basicConfig(
        level=load_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(main_loop())
    except KeyboardInterrupt:
        pass
