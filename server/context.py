# server/context.py
from __future__ import annotations
from dataclasses import dataclass, field

from persistence.dir_json import IdentityDirectory
from persistence.messages_json import JsonMessageStore
from server.registry import ConnectionRegistry


@dataclass
class ServerContext:
    directory: IdentityDirectory
    store: JsonMessageStore
    registry: ConnectionRegistry = field(default_factory=ConnectionRegistry)
