# persistence/messages_json.py
from __future__ import annotations
import logging
import uuid
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from backend.crypto.json_format import iso_now
from persistence.json_store import JsonFile
from protocol.models import DeliveryStatus, SignedEnvelope, StoredMessage

log = logging.getLogger(__name__)


class JsonMessageStore:
    """
    Durable message records, kept in creation order in messages.json.
    The store is the single source of truth for delivery status; every
    transition is a compare-and-set on the expected prior status.
    """

    def __init__(self, base_dir: Union[str, Path]):
        self._file = JsonFile(base_dir, "messages.json")

    def _records(self) -> List[dict]:
        return self._file.read().get("messages", [])

    def create_message(self, sender_id: str, recipient_id: str, envelope: SignedEnvelope) -> str:
        record_id = uuid.uuid4().hex
        row = {
            "id": record_id,
            "sender_id": sender_id,
            "recipient_id": recipient_id,
            "envelope": envelope.model_dump(),
            "status": DeliveryStatus.PENDING.value,
            "created_at": iso_now(),
        }
        self._file.update(lambda d: d.setdefault("messages", []).append(row))
        return record_id

    def update_status(self, record_id: str, status: DeliveryStatus, expected: DeliveryStatus) -> bool:
        """Set status iff the record currently holds `expected`. Returns True on change."""
        if not expected.can_advance_to(status):
            raise ValueError(f"illegal transition {expected.value} -> {status.value}")

        def mut(d):
            for row in d.get("messages", []):
                if row["id"] == record_id:
                    if row["status"] != expected.value:
                        return False
                    row["status"] = status.value
                    return True
            return False
        return self._file.update(mut)

    def advance_status(self, record_id: str, status: DeliveryStatus) -> Optional[DeliveryStatus]:
        """
        Move forward to `status` from whatever the record holds. Returns the
        prior status when it changed, None when missing or already at/after it.
        """
        def mut(d):
            for row in d.get("messages", []):
                if row["id"] == record_id:
                    current = DeliveryStatus(row["status"])
                    if not current.can_advance_to(status):
                        return None
                    row["status"] = status.value
                    return current
            return None
        return self._file.update(mut)

    def get_message(self, record_id: str) -> Optional[StoredMessage]:
        for row in self._records():
            if row["id"] == record_id:
                return StoredMessage.model_validate(row)
        return None

    def list_pending(self, recipient_id: str) -> List[StoredMessage]:
        return [
            StoredMessage.model_validate(row)
            for row in self._records()
            if row["recipient_id"] == recipient_id and row["status"] == DeliveryStatus.PENDING.value
        ]

    def conversation_history(self, user_a: str, user_b: str,
                             limit: int = 50, offset: int = 0) -> Tuple[List[StoredMessage], bool]:
        pair = {user_a, user_b}
        rows = [
            row for row in self._records()
            if {row["sender_id"], row["recipient_id"]} == pair
        ]
        page = rows[offset:offset + limit]
        return [StoredMessage.model_validate(r) for r in page], offset + limit < len(rows)

    def mark_read(self, record_ids: Iterable[str]) -> int:
        wanted = set(record_ids)

        def mut(d):
            n = 0
            for row in d.get("messages", []):
                if row["id"] in wanted and row["status"] == DeliveryStatus.DELIVERED.value:
                    row["status"] = DeliveryStatus.READ.value
                    n += 1
            return n
        return self._file.update(mut)

    def count_all(self) -> int:
        return len(self._records())
