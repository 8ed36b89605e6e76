# protocol/models.py
from __future__ import annotations

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

HEX_32_BYTES = r"^[0-9a-fA-F]{64}$"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    READ = "READ"

    @property
    def rank(self) -> int:
        return _DELIVERY_RANK[self]

    def can_advance_to(self, other: "DeliveryStatus") -> bool:
        """Statuses only move forward: PENDING -> DELIVERED -> READ."""
        return other.rank > self.rank


_DELIVERY_RANK = {
    DeliveryStatus.PENDING: 0,
    DeliveryStatus.DELIVERED: 1,
    DeliveryStatus.READ: 2,
}


class MessageKind(str, Enum):
    SENT = "sent"
    RECEIVED = "received"
    SYSTEM = "system"
    ERROR = "error"
    DELIVERED = "delivered"


# ---- Key records (EC JWK) ----

class ECPublicJwk(BaseModel):
    kty: Literal["EC"] = "EC"
    crv: Literal["secp256k1"] = "secp256k1"
    x: str
    y: str
    ext: bool = True


class ECPrivateJwk(ECPublicJwk):
    d: str

    def public(self) -> ECPublicJwk:
        return ECPublicJwk(x=self.x, y=self.y)


class KeyPair(BaseModel):
    private_key: ECPrivateJwk
    public_key: ECPublicJwk


# ---- Signed envelope ----

class Signature(BaseModel):
    r: str = Field(pattern=HEX_32_BYTES)
    s: str = Field(pattern=HEX_32_BYTES)


class SignedEnvelope(BaseModel):
    """A message plus the sender's signature over its canonical hash."""
    model_config = ConfigDict(extra="ignore")

    sender_username: str = Field(min_length=1)
    receiver_username: str = Field(min_length=1)
    plaintext_message: str
    timestamp: str = Field(min_length=1)
    message_hash: str = Field(pattern=HEX_32_BYTES)
    signature: Signature

    @field_validator("sender_username", "receiver_username", "plaintext_message", "timestamp")
    @classmethod
    def must_encode_as_utf8(cls, v: str) -> str:
        # lone surrogates survive JSON decoding but cannot be hashed
        try:
            v.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise ValueError("text is not valid UTF-8") from exc
        return v


# ---- Client-local conversation entry ----

class ConversationMessage(BaseModel):
    type: MessageKind
    content: str
    timestamp: str
    sender: Optional[str] = None
    recipient: Optional[str] = None
    signed_message: Optional[SignedEnvelope] = None
    verification_status: VerificationStatus = VerificationStatus.NOT_APPLICABLE
    id: Optional[str] = None            # locally unique
    server_id: Optional[str] = None     # durable store record id
    status: Optional[DeliveryStatus] = None

    @property
    def verifiable(self) -> bool:
        return self.type == MessageKind.RECEIVED and self.signed_message is not None


# ---- Server-side durable record ----

class StoredMessage(BaseModel):
    id: str
    sender_id: str
    recipient_id: str
    envelope: SignedEnvelope
    status: DeliveryStatus = DeliveryStatus.PENDING
    created_at: str
