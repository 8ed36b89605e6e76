# protocol/types.py
from __future__ import annotations

# ---- Frame types (client -> server) ----
IDENTIFY = "identify"
SIGNED_CHAT = "signed_chat"
READ_RECEIPT = "read_receipt"
GET_PUBLIC_KEY = "get_public_key"

# ---- Frame types (server -> client) ----
SYSTEM = "system"
ERROR = "error"
DELIVERED = "delivered"
PENDING = "pending"
SAVED = "saved"              # legacy alias of PENDING, accepted by the client
STATUS_UPDATE = "status_update"
PUBLIC_KEY = "public_key"
# SIGNED_CHAT is also forwarded server -> client with a "from" field

# ---- Error messages ----
ERR_BAD_FRAME = "Malformed frame"
ERR_UNKNOWN_TYPE = "Unknown message type"
ERR_NOT_IDENTIFIED = "Identify before sending messages"
ERR_SENDER_MISMATCH = "Sender does not match the identified user"
ERR_SAVE_FAILED = "Failed to save message"
ERR_INTERNAL = "Internal server error"

# Minimal shape docs (for human readers)
# Client: {"type":"identify","username":...}
#         {"type":"signed_chat","message":<SignedEnvelope>}
#         {"type":"read_receipt","messageId":...,"from":<reader>,"to":<original sender>}
#         {"type":"get_public_key","req_id":...,"username":...}
# Server: {"type":"system","message":...}            {"type":"error","message":...,"req_id"?}
#         {"type":"signed_chat","from":...,"message":<SignedEnvelope>,"messageId":...}
#         {"type":"delivered","to":...,"messageId":...,"message_hash":...,"content":...}
#         {"type":"pending","to":...,"messageId":...,"message_hash":...,"content":...}
#         {"type":"status_update","messageId":...,"status":...,"from"|"to":...}
#         {"type":"public_key","req_id":...,"username":...,"publicKey":<EC JWK>}
