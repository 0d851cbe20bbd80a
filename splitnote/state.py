from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from .config import utc_now
from .errors import KeyNotFound, ParticipantNotFound, RequestNotFound
from .models import (
    AppSettings,
    AuditAction,
    AuditEntry,
    Participant,
    PaymentRequest,
    StoredKey,
    SyncStatus,
)


def receipt_image_name(receipt_id: str) -> str:
    return f"receipt_{receipt_id}.png"


def published_image_name(event_id: str) -> str:
    return f"rcpt_{event_id}.png"


class StateStore:
    """In-memory persistence for receipts, images, audit entries, settings and keys.

    Every method holds the lock for the whole read-modify-write, so each call
    is atomic per record. Records are copied on the way in and on the way
    out; callers never share a mutable object with the store.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._lock = Lock()
        self.clock = clock
        self.receipts: Dict[str, PaymentRequest] = {}
        self.images: Dict[str, bytes] = {}
        self.audit_log: List[AuditEntry] = []
        self.settings: Optional[AppSettings] = None
        self.keys: Dict[str, StoredKey] = {}

    def save_receipt(self, receipt: PaymentRequest) -> None:
        with self._lock:
            self.receipts[receipt.id] = receipt.model_copy(deep=True)

    def get_receipt(self, receipt_id: str) -> PaymentRequest:
        with self._lock:
            return self._receipt(receipt_id).model_copy(deep=True)

    def get_all_receipts(self) -> List[PaymentRequest]:
        with self._lock:
            receipts = sorted(self.receipts.values(), key=lambda r: r.created_at, reverse=True)
            return [receipt.model_copy(deep=True) for receipt in receipts]

    def update_receipt_status(self, receipt_id: str, status: SyncStatus) -> PaymentRequest:
        with self._lock:
            receipt = self._receipt(receipt_id)
            receipt.sync_status = status
            return receipt.model_copy(deep=True)

    def update_receipt_event_id(self, receipt_id: str, event_id: str) -> PaymentRequest:
        with self._lock:
            receipt = self._receipt(receipt_id)
            receipt.note_event_id = event_id
            receipt.sync_status = SyncStatus.PUBLISHED
            return receipt.model_copy(deep=True)

    def rename_receipt_image(self, receipt_id: str, event_id: str) -> str:
        with self._lock:
            receipt = self._receipt(receipt_id)
            new_name = published_image_name(event_id)
            old_name = receipt.image_uri
            if old_name and old_name in self.images:
                self.images[new_name] = self.images.pop(old_name)
            receipt.image_uri = new_name
            return new_name

    def update_participant_payment(
        self, receipt_id: str, pubkey: str, paid_units: int
    ) -> Tuple[int, Participant]:
        with self._lock:
            receipt = self._receipt(receipt_id)
            participant = receipt.participant(pubkey)
            if participant is None:
                raise ParticipantNotFound(
                    f"Participant {pubkey} not found in receipt {receipt_id}"
                )
            previous = participant.paid_units
            participant.paid_units = paid_units
            return previous, participant.model_copy()

    def save_image(self, name: str, data: bytes) -> None:
        with self._lock:
            self.images[name] = bytes(data)

    def get_image(self, name: str) -> Optional[bytes]:
        with self._lock:
            return self.images.get(name)

    def add_audit_entry(
        self,
        action: AuditAction,
        receipt_id: str,
        event_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            id=uuid4().hex,
            timestamp=self.clock(),
            action=action,
            receipt_id=receipt_id,
            event_id=event_id,
            details=dict(details or {}),
        )
        with self._lock:
            self.audit_log.append(entry)
        return entry

    def get_audit_log(self, receipt_id: Optional[str] = None) -> List[AuditEntry]:
        with self._lock:
            entries = [
                entry
                for entry in self.audit_log
                if receipt_id is None or entry.receipt_id == receipt_id
            ]
        # equal timestamps come back latest-added first
        return list(reversed(sorted(entries, key=lambda e: e.timestamp)))

    def get_settings(self) -> Optional[AppSettings]:
        with self._lock:
            return self.settings.model_copy(deep=True) if self.settings else None

    def save_settings(self, app_settings: AppSettings) -> None:
        with self._lock:
            self.settings = app_settings.model_copy(deep=True)

    def save_key(self, key: StoredKey) -> None:
        with self._lock:
            self.keys[key.pubkey] = key.model_copy()

    def get_key(self, pubkey: str) -> StoredKey:
        with self._lock:
            key = self.keys.get(pubkey)
            if key is None:
                raise KeyNotFound(f"No stored key for {pubkey}")
            return key.model_copy()

    def list_keys(self) -> List[StoredKey]:
        with self._lock:
            return [key.model_copy() for key in self.keys.values()]

    def delete_key(self, pubkey: str) -> None:
        with self._lock:
            if self.keys.pop(pubkey, None) is None:
                raise KeyNotFound(f"No stored key for {pubkey}")

    def touch_key(self, pubkey: str) -> None:
        with self._lock:
            key = self.keys.get(pubkey)
            if key is None:
                raise KeyNotFound(f"No stored key for {pubkey}")
            self.keys[pubkey] = key.model_copy(update={"last_used": self.clock()})

    def _receipt(self, receipt_id: str) -> PaymentRequest:
        receipt = self.receipts.get(receipt_id)
        if receipt is None:
            raise RequestNotFound(f"Receipt {receipt_id} not found")
        return receipt
