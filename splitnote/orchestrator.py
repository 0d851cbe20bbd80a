import asyncio
from datetime import datetime
import hashlib
import json
import logging
from typing import Callable, List, Optional
from uuid import uuid4

from .config import settings, utc_now
from .errors import (
    InvalidPublicKey,
    InvalidSplit,
    ParticipantNotFound,
    RequestNotPublished,
    SplitNoteError,
)
from .events import EventForge
from .models import (
    AuditAction,
    CreateRequestResult,
    ExchangeRate,
    MarkPaidResult,
    NoticeFailure,
    NoticeReport,
    Participant,
    PaymentMethod,
    PaymentRequest,
    PublishResult,
    RequestDraft,
    StoredKey,
    SyncStatus,
)
from .nostr import finalize_event, is_valid_pubkey
from .publisher import RelayPublisher
from .rates import RateProvider, convert_to_units
from .relays import RelayRegistry
from .split import allocate, check_allocation, validate_split
from .state import StateStore, receipt_image_name
from .vault import KeyVault


logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    digits = ""
    while True:
        value, rem = divmod(value, 36)
        digits = _BASE36[rem] + digits
        if value == 0:
            return digits


def new_request_id(now: datetime) -> str:
    """Millisecond timestamp in base 36, then 16 random hex chars; sorts by creation."""
    return f"{_base36(int(now.timestamp() * 1000))}_{uuid4().hex[:16]}"


def receipt_hash(image: Optional[bytes]) -> str:
    if image:
        return hashlib.sha256(image).hexdigest()
    return str(uuid4())


def split_json(request_flow: str, participants: List[Participant]) -> str:
    return json.dumps(
        {
            "flow": request_flow,
            "participants": [
                {"pubkey": p.pubkey, "shareSats": p.share_units} for p in participants
            ],
        }
    )


class RequestOrchestrator:
    def __init__(
        self,
        store: StateStore,
        rates: RateProvider,
        registry: RelayRegistry,
        publisher: RelayPublisher,
        vault: KeyVault,
        forge: Optional[EventForge] = None,
        clock: Callable[[], datetime] = utc_now,
        notice_concurrency: int = settings.notice_concurrency,
    ) -> None:
        self.store = store
        self.rates = rates
        self.registry = registry
        self.publisher = publisher
        self.vault = vault
        self.forge = forge or EventForge(clock=clock)
        self.clock = clock
        self.notice_concurrency = notice_concurrency

    async def create_request(
        self, draft: RequestDraft, password: str, stored_key: StoredKey
    ) -> CreateRequestResult:
        self._check_participants(draft.participants)
        check_allocation(len(draft.participants), draft.flow, draft.weights)
        rate = await self.rates.get_rate(draft.currency)

        total_units = convert_to_units(draft.amount_fiat, rate)
        shares = allocate(total_units, len(draft.participants), draft.flow, draft.weights)
        if not validate_split(total_units, shares):
            raise InvalidSplit(
                f"Shares {sum(shares)} must be above zero and at most the total {total_units}"
            )

        receipt_id = str(uuid4())
        created_at = draft.created_at or self.clock()
        participants = [
            Participant(pubkey=pubkey, share_units=share)
            for pubkey, share in zip(draft.participants, shares)
        ]
        request = PaymentRequest(
            id=receipt_id,
            request_id=new_request_id(created_at),
            created_at=created_at,
            amount_fiat=draft.amount_fiat,
            currency=rate.currency,
            amount_units=total_units,
            fx_rate=rate.rate,
            fx_source=rate.source,
            fx_timestamp=rate.timestamp,
            meal_type=draft.meal_type,
            flow=draft.flow,
            participants=participants,
            rhash=receipt_hash(draft.image),
            image_uri=receipt_image_name(receipt_id),
            split_json=split_json(draft.flow.value, participants),
        )
        self.store.save_receipt(request)
        if draft.image:
            self.store.save_image(request.image_uri, draft.image)
        self.store.add_audit_entry(
            AuditAction.CREATE,
            receipt_id,
            details={
                "totalFiat": str(draft.amount_fiat),
                "currency": request.currency,
                "totalSats": total_units,
                "participantCount": len(participants),
                "flow": draft.flow.value,
            },
        )
        logger.info(
            "Created request %s: %s %s -> %d units",
            request.request_id,
            draft.amount_fiat,
            request.currency,
            total_units,
        )
        return await self._publish_request(request, rate, password, stored_key)

    async def republish(
        self, receipt_id: str, password: str, stored_key: StoredKey
    ) -> CreateRequestResult:
        request = self.store.get_receipt(receipt_id)
        rate = ExchangeRate(
            currency=request.currency,
            rate=request.fx_rate,
            source=request.fx_source,
            timestamp=request.fx_timestamp,
        )
        if request.sync_status == SyncStatus.PUBLISHED:
            return CreateRequestResult(
                success=True,
                receipt_id=request.id,
                request_id=request.request_id,
                event_id=request.note_event_id,
                fx_rate=rate,
            )
        return await self._publish_request(request, rate, password, stored_key)

    async def _publish_request(
        self,
        request: PaymentRequest,
        rate: ExchangeRate,
        password: str,
        stored_key: StoredKey,
    ) -> CreateRequestResult:
        async with self.vault.unlocking(stored_key.encrypted_secret, password) as secret:
            unsigned = self.forge.payment_request(request, stored_key.pubkey)
            event = finalize_event(unsigned, bytes(secret))
            result = await self.publisher.publish(event, self.registry.write_urls())

            if not result.success:
                self.store.update_receipt_status(request.id, SyncStatus.FAILED)
                self.store.add_audit_entry(
                    AuditAction.UPDATE,
                    request.id,
                    event_id=event.id,
                    details={"syncStatus": SyncStatus.FAILED.value, "error": result.error},
                )
                logger.warning("Request %s not published: %s", request.request_id, result.error)
                return CreateRequestResult(
                    success=False,
                    receipt_id=request.id,
                    request_id=request.request_id,
                    error=result.error or "Failed to publish event",
                    fx_rate=rate,
                    publish=result,
                )

            self.store.update_receipt_event_id(request.id, event.id)
            self.store.rename_receipt_image(request.id, event.id)
            self.store.add_audit_entry(
                AuditAction.PUBLISH,
                request.id,
                event_id=event.id,
                details={"relayResults": [o.model_dump() for o in result.per_relay]},
            )
            self._touch(stored_key.pubkey)
            notices = await self._send_notices(
                request, event.id, bytes(secret), stored_key.pubkey
            )

        return CreateRequestResult(
            success=True,
            receipt_id=request.id,
            request_id=request.request_id,
            event_id=event.id,
            fx_rate=rate,
            publish=result,
            notices=notices,
        )

    async def _send_notices(
        self,
        request: PaymentRequest,
        request_event_id: str,
        secret: bytes,
        sender_pubkey: str,
    ) -> NoticeReport:
        recipients = [p for p in request.participants if p.pubkey != sender_pubkey]
        report = NoticeReport(attempted=len(recipients))
        semaphore = asyncio.Semaphore(self.notice_concurrency)
        urls = self.registry.write_urls()

        async def notify(recipient: Participant) -> None:
            async with semaphore:
                try:
                    unsigned = self.forge.recipient_notice(
                        recipient, request, request_event_id, secret, sender_pubkey
                    )
                    await self.publisher.publish_or_raise(finalize_event(unsigned, secret), urls)
                except (SplitNoteError, ValueError) as exc:
                    logger.warning("Failed to send notice to %s: %s", recipient.pubkey, exc)
                    report.failures.append(NoticeFailure(pubkey=recipient.pubkey, error=str(exc)))
                else:
                    report.delivered.append(recipient.pubkey)

        await asyncio.gather(*(notify(recipient) for recipient in recipients))
        return report

    async def mark_participant_paid(
        self,
        receipt_id: str,
        pubkey: str,
        paid_units: int,
        method: PaymentMethod,
        password: str,
        stored_key: StoredKey,
    ) -> MarkPaidResult:
        if paid_units < 0:
            raise ValueError("paid_units must not be negative")
        request = self.store.get_receipt(receipt_id)
        if not request.note_event_id:
            raise RequestNotPublished(f"Receipt {receipt_id} has not been published")
        if request.participant(pubkey) is None:
            raise ParticipantNotFound(f"Participant {pubkey} not found in receipt {receipt_id}")

        previous, participant = self.store.update_participant_payment(
            receipt_id, pubkey, paid_units
        )
        self.store.add_audit_entry(
            AuditAction.MARK_PAID,
            receipt_id,
            details={
                "pubkey": pubkey,
                "oldPaidSats": previous,
                "newPaidSats": paid_units,
                "method": method.value,
            },
        )

        async with self.vault.unlocking(stored_key.encrypted_secret, password) as secret:
            unsigned = self.forge.paid_reply(
                request.note_event_id, request.request_id, participant, method, stored_key.pubkey
            )
            event = finalize_event(unsigned, bytes(secret))
        result: PublishResult = await self.publisher.publish(event, self.registry.write_urls())

        if result.success:
            self.store.add_audit_entry(
                AuditAction.PUBLISH,
                receipt_id,
                event_id=event.id,
                details={"reply": "paid", "pubkey": pubkey, "paidSats": paid_units},
            )
            self._touch(stored_key.pubkey)
        else:
            self.store.add_audit_entry(
                AuditAction.UPDATE,
                receipt_id,
                event_id=event.id,
                details={"reply": "paid", "pubkey": pubkey, "error": result.error},
            )
            logger.warning("Paid reply for %s not published: %s", pubkey, result.error)

        return MarkPaidResult(
            success=result.success,
            receipt_id=receipt_id,
            participant=participant,
            event_id=event.id if result.success else None,
            error=result.error,
            publish=result,
        )

    def _check_participants(self, pubkeys: List[str]) -> None:
        if len(set(pubkeys)) != len(pubkeys):
            raise InvalidSplit("Participants must be unique")
        for pubkey in pubkeys:
            if not is_valid_pubkey(pubkey):
                raise InvalidPublicKey(f"Invalid public key: {pubkey}")

    def _touch(self, pubkey: str) -> None:
        # the signing key may be supplied without being stored locally
        if any(key.pubkey == pubkey for key in self.store.list_keys()):
            self.store.touch_key(pubkey)
