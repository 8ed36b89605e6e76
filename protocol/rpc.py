from __future__ import annotations
import uuid
from typing import Dict, Any, Optional
from .types import *
from .models import DeliveryStatus, ECPublicJwk, SignedEnvelope

def new_req_id() -> str:
    return uuid.uuid4().hex

# client side builders
def req_identify(username: str) -> Dict[str, Any]:
    return {"type": IDENTIFY, "username": username}

def req_signed_chat(env: SignedEnvelope) -> Dict[str, Any]:
    return {"type": SIGNED_CHAT, "message": env.model_dump()}

def req_read_receipt(message_id: str, reader: str, original_sender: str) -> Dict[str, Any]:
    return {"type": READ_RECEIPT, "messageId": message_id, "from": reader, "to": original_sender}

def req_get_public_key(username: str) -> Dict[str, Any]:
    return {"type": GET_PUBLIC_KEY, "req_id": new_req_id(), "username": username}

# server side builders
def resp_system(message: str) -> Dict[str, Any]:
    return {"type": SYSTEM, "message": message}

def resp_error(message: str, req_id: Optional[str] = None) -> Dict[str, Any]:
    out = {"type": ERROR, "message": message}
    if req_id:
        out["req_id"] = req_id
    return out

def fwd_signed_chat(sender: str, env: SignedEnvelope, message_id: str) -> Dict[str, Any]:
    return {"type": SIGNED_CHAT, "from": sender, "message": env.model_dump(), "messageId": message_id}

def ack_delivered(to: str, message_id: str, message_hash: str) -> Dict[str, Any]:
    return {"type": DELIVERED, "to": to, "messageId": message_id,
            "message_hash": message_hash, "content": f"Message delivered to {to}"}

def ack_pending(to: str, message_id: str, message_hash: str) -> Dict[str, Any]:
    return {"type": PENDING, "to": to, "messageId": message_id,
            "message_hash": message_hash, "content": f"{to} is offline; message saved for later delivery"}

def status_update(message_id: str, status: DeliveryStatus, *, to: Optional[str] = None,
                  frm: Optional[str] = None) -> Dict[str, Any]:
    out = {"type": STATUS_UPDATE, "messageId": message_id, "status": status.value}
    if to is not None:
        out["to"] = to
    if frm is not None:
        out["from"] = frm
    return out

def resp_public_key(req_id: str, username: str, jwk: ECPublicJwk) -> Dict[str, Any]:
    return {"type": PUBLIC_KEY, "req_id": req_id, "username": username, "publicKey": jwk.model_dump()}
