"""
Tests for splitnote.orchestrator request lifecycle.

Relays and price feeds are faked; the key vault, signing and event
construction are real.
"""
from decimal import Decimal
import hashlib

import httpx
import pytest

from conftest import FakeNetwork, FakeRelay
from splitnote.config import DEFAULT_RELAYS, MIN_KDF_ITERATIONS
from splitnote.errors import (
    AllRateSourcesUnavailable,
    DecryptionFailed,
    InvalidPublicKey,
    InvalidSplit,
    ParticipantNotFound,
    RequestNotFound,
    RequestNotPublished,
)
from splitnote.events import EventForge, parse_payment_request
from splitnote.models import (
    AuditAction,
    Event,
    MealType,
    ParticipantStatus,
    PaymentFlow,
    PaymentMethod,
    RequestDraft,
    SyncStatus,
)
from splitnote.nostr import ProtocolError, verify_event
from splitnote.orchestrator import RequestOrchestrator, new_request_id
from splitnote.publisher import RelayPublisher
from splitnote.rates import RateProvider
from splitnote.relay_client import RelayQuery
from splitnote.relays import RelayRegistry
from splitnote.state import StateStore, published_image_name
from splitnote.vault import KeyVault


DAMUS = DEFAULT_RELAYS[0][0]
PASSWORD = "hunter2"


class Harness:
    def __init__(self, clock, payer_secret, price=400, forge=None):
        self.clock = clock
        self.relay = FakeRelay(DAMUS, "accept")
        self.network = FakeNetwork(self.relay)
        self.price = price
        self.price_calls = 0
        self.store = StateStore(clock)
        self.vault = KeyVault(iterations=MIN_KDF_ITERATIONS)
        self.key = self.vault.seal_key(payer_secret.hex(), PASSWORD, clock)
        self.store.save_key(self.key)

        client = httpx.AsyncClient(transport=httpx.MockTransport(self._prices))
        self.registry = RelayRegistry(
            self.store, RelayQuery(connect=self.network.connect, timeout=0.05)
        )
        self.orchestrator = RequestOrchestrator(
            store=self.store,
            rates=RateProvider(client=client, clock=clock),
            registry=self.registry,
            publisher=RelayPublisher(
                connect=self.network.connect, connect_timeout=0.1, ack_timeout=0.05
            ),
            vault=self.vault,
            forge=forge or EventForge(clock),
            clock=clock,
        )

    def _prices(self, request: httpx.Request) -> httpx.Response:
        self.price_calls += 1
        if self.price is None:
            return httpx.Response(503)
        if request.url.host == "api.coingecko.com":
            return httpx.Response(200, json={"bitcoin": {"usd": self.price}})
        return httpx.Response(200, json={"bpi": {"USD": {"rate": str(self.price)}}})

    def draft(self, participants, amount="10.00", **extra):
        return RequestDraft(
            amount_fiat=Decimal(amount),
            currency="USD",
            meal_type=MealType.LUNCH,
            participants=participants,
            created_at=self.clock.now,
            **extra,
        )

    async def create(self, participants, password=PASSWORD, **extra):
        return await self.orchestrator.create_request(
            self.draft(participants, **extra), password, self.key
        )


@pytest.fixture
def harness(clock, payer_secret):
    return Harness(clock, payer_secret)


@pytest.fixture
def everyone(payer_pubkey, friend_pubkeys):
    return [payer_pubkey] + friend_pubkeys


class TestCreateRequest:
    """Tests for RequestOrchestrator.create_request."""

    @pytest.mark.asyncio
    async def test_publishes_and_persists(self, harness, everyone, friend_pubkeys):
        """Should convert, split, sign, publish and record the request."""
        image = b"\x89PNG fake receipt"
        result = await harness.create(everyone, image=image)

        assert result.success
        assert result.fx_rate.rate == 250_000
        stored = harness.store.get_receipt(result.receipt_id)
        assert stored.amount_units == 2_500_000
        assert [p.share_units for p in stored.participants] == [833_334, 833_333, 833_333]
        assert stored.sync_status == SyncStatus.PUBLISHED
        assert stored.note_event_id == result.event_id
        assert stored.rhash == hashlib.sha256(image).hexdigest()
        assert stored.image_uri == published_image_name(result.event_id)
        assert harness.store.get_image(stored.image_uri) == image

        actions = [e.action for e in harness.store.get_audit_log(result.receipt_id)]
        assert actions == [AuditAction.PUBLISH, AuditAction.CREATE]

        published = [Event(**raw) for raw in harness.relay.published()]
        request_event = published[0]
        assert verify_event(request_event)
        assert request_event.id == result.event_id
        assert parse_payment_request(request_event).amount_units == 2_500_000
        assert sorted(e.kind for e in published[1:]) == [4, 4]
        assert sorted(result.notices.delivered) == sorted(friend_pubkeys)
        assert result.notices.failures == []

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_request(self, harness, everyone):
        """Should mark the request failed but keep it retrievable."""
        harness.relay.mode = "silent"
        result = await harness.create(everyone)

        assert not result.success
        assert result.event_id is None
        assert len(result.publish.per_relay) == len(DEFAULT_RELAYS)
        stored = harness.store.get_receipt(result.receipt_id)
        assert stored.sync_status == SyncStatus.FAILED
        latest = harness.store.get_audit_log(result.receipt_id)[0]
        assert latest.action == AuditAction.UPDATE
        assert latest.details["syncStatus"] == "failed"

    @pytest.mark.asyncio
    async def test_republish_after_failure(self, harness, everyone):
        """Should publish a failed request once a relay is back."""
        harness.relay.mode = "silent"
        failed = await harness.create(everyone)
        harness.relay.mode = "accept"

        result = await harness.orchestrator.republish(failed.receipt_id, PASSWORD, harness.key)
        assert result.success
        assert result.request_id == failed.request_id
        assert harness.store.get_receipt(failed.receipt_id).sync_status == SyncStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_wrong_password_leaves_local_record(self, harness, everyone):
        """Should abort before signing and keep the request local."""
        with pytest.raises(DecryptionFailed):
            await harness.create(everyone, password="wrong")

        [stored] = harness.store.get_all_receipts()
        assert stored.sync_status == SyncStatus.LOCAL
        assert harness.relay.published() == []

    @pytest.mark.asyncio
    async def test_rate_failure_stores_nothing(self, clock, payer_secret, everyone):
        """Should fail fast without creating a receipt."""
        harness = Harness(clock, payer_secret, price=None)
        with pytest.raises(AllRateSourcesUnavailable):
            await harness.create(everyone)
        assert harness.store.get_all_receipts() == []

    @pytest.mark.asyncio
    async def test_zero_total_is_invalid(self, harness, everyone):
        """Should reject an allocation that sums to zero before storing."""
        with pytest.raises(InvalidSplit):
            await harness.create(everyone, amount="0")
        assert harness.store.get_all_receipts() == []

    @pytest.mark.asyncio
    async def test_bad_participant_checked_before_rate(self, harness, payer_pubkey):
        """Should reject a malformed participant key without any network call."""
        with pytest.raises(InvalidPublicKey):
            await harness.create([payer_pubkey, "f" * 64])
        assert harness.price_calls == 0

    @pytest.mark.asyncio
    async def test_prefixed_hex_participant_rejected(self, harness, payer_pubkey):
        """Should refuse 0x-prefixed keys even when int() would parse them."""
        for i in range(1, 40):
            with pytest.raises(InvalidPublicKey):
                await harness.create([payer_pubkey, "0x" + format(i, "062x")])
        assert harness.price_calls == 0
        assert harness.store.get_all_receipts() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "flow, weights",
        [
            (PaymentFlow.SPLIT, [Decimal(1)]),
            (PaymentFlow.SPLIT, [Decimal(1), Decimal(-1), Decimal(1)]),
            (PaymentFlow.OTHERS_COVER_ALL, [Decimal(1), Decimal(0), Decimal(0)]),
        ],
    )
    async def test_bad_split_shape_checked_before_rate(self, harness, everyone, flow, weights):
        """Should reject impossible weights without fetching a rate."""
        with pytest.raises(InvalidSplit):
            await harness.create(everyone, flow=flow, weights=weights)
        assert harness.price_calls == 0

    @pytest.mark.asyncio
    async def test_others_cover_all_alone_checked_before_rate(self, harness, payer_pubkey):
        """Should reject others-cover-all with only the payer before any network call."""
        with pytest.raises(InvalidSplit):
            await harness.create([payer_pubkey], flow=PaymentFlow.OTHERS_COVER_ALL)
        assert harness.price_calls == 0

    @pytest.mark.asyncio
    async def test_duplicate_participants(self, harness, payer_pubkey):
        """Should refuse the same participant twice."""
        with pytest.raises(InvalidSplit):
            await harness.create([payer_pubkey, payer_pubkey])

    @pytest.mark.asyncio
    async def test_others_cover_all(self, harness, everyone):
        """Should leave the payer's share at zero."""
        result = await harness.create(everyone, flow=PaymentFlow.OTHERS_COVER_ALL)
        stored = harness.store.get_receipt(result.receipt_id)
        assert [p.share_units for p in stored.participants] == [0, 1_250_000, 1_250_000]

    @pytest.mark.asyncio
    async def test_notice_failure_is_isolated(self, clock, payer_secret, everyone, friend_pubkeys):
        """Should collect a failing notice without failing the request."""
        broken = friend_pubkeys[0]

        class FlakyForge(EventForge):
            def recipient_notice(self, recipient, *args, **kwargs):
                if recipient.pubkey == broken:
                    raise ProtocolError("cannot encrypt")
                return super().recipient_notice(recipient, *args, **kwargs)

        harness = Harness(clock, payer_secret, forge=FlakyForge(clock))
        result = await harness.create(everyone)

        assert result.success
        assert result.notices.attempted == 2
        assert result.notices.delivered == [friend_pubkeys[1]]
        assert [(f.pubkey, f.error) for f in result.notices.failures] == [
            (broken, "cannot encrypt")
        ]


class TestMarkParticipantPaid:
    """Tests for RequestOrchestrator.mark_participant_paid."""

    @pytest.mark.asyncio
    async def test_paid_and_overpaid(self, harness, everyone, friend_pubkeys):
        """Should move a participant to paid, then overpaid, publishing a reply each time."""
        created = await harness.create(everyone)
        friend = friend_pubkeys[0]

        paid = await harness.orchestrator.mark_participant_paid(
            created.receipt_id, friend, 833_333, PaymentMethod.MANUAL, PASSWORD, harness.key
        )
        assert paid.success
        assert paid.participant.status == ParticipantStatus.PAID

        over = await harness.orchestrator.mark_participant_paid(
            created.receipt_id, friend, 900_000, PaymentMethod.ZAP, PASSWORD, harness.key
        )
        assert over.participant.status == ParticipantStatus.OVERPAID
        stored = harness.store.get_receipt(created.receipt_id)
        assert stored.participant(friend).paid_units == 900_000

        reply = Event(**harness.relay.published()[-1])
        assert reply.id == over.event_id
        assert reply.tags[0] == ["e", created.event_id, "reply"]
        assert reply.tags[1] == ["rid", created.request_id]
        assert reply.tags[2] == ["paid", friend, "900000"]
        assert reply.tags[3] == ["method", "zap"]

        audit = harness.store.get_audit_log(created.receipt_id)
        marks = [e for e in audit if e.action == AuditAction.MARK_PAID]
        assert len(marks) == 2
        assert {m.details["newPaidSats"] for m in marks} == {833_333, 900_000}

    @pytest.mark.asyncio
    async def test_partial(self, harness, everyone, friend_pubkeys):
        """Should report partial payment."""
        created = await harness.create(everyone)
        result = await harness.orchestrator.mark_participant_paid(
            created.receipt_id, friend_pubkeys[1], 1, PaymentMethod.MANUAL, PASSWORD, harness.key
        )
        assert result.participant.status == ParticipantStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_unpublished_request(self, harness, everyone, friend_pubkeys):
        """Should refuse to confirm payments on a request that never went out."""
        harness.relay.mode = "silent"
        created = await harness.create(everyone)
        with pytest.raises(RequestNotPublished):
            await harness.orchestrator.mark_participant_paid(
                created.receipt_id, friend_pubkeys[0], 1, PaymentMethod.MANUAL, PASSWORD, harness.key
            )
        stored = harness.store.get_receipt(created.receipt_id)
        assert stored.participant(friend_pubkeys[0]).paid_units == 0

    @pytest.mark.asyncio
    async def test_unknown_ids(self, harness, everyone):
        """Should raise for unknown receipts and participants."""
        created = await harness.create(everyone)
        with pytest.raises(RequestNotFound):
            await harness.orchestrator.mark_participant_paid(
                "missing", everyone[1], 1, PaymentMethod.MANUAL, PASSWORD, harness.key
            )
        with pytest.raises(ParticipantNotFound):
            await harness.orchestrator.mark_participant_paid(
                created.receipt_id, "c" * 64, 1, PaymentMethod.MANUAL, PASSWORD, harness.key
            )

    @pytest.mark.asyncio
    async def test_reply_publish_failure(self, harness, everyone, friend_pubkeys):
        """Should keep the local payment but report the failed reply."""
        created = await harness.create(everyone)
        harness.relay.mode = "reject"
        result = await harness.orchestrator.mark_participant_paid(
            created.receipt_id, friend_pubkeys[0], 5, PaymentMethod.MANUAL, PASSWORD, harness.key
        )
        assert not result.success
        assert result.event_id is None
        stored = harness.store.get_receipt(created.receipt_id)
        assert stored.participant(friend_pubkeys[0]).paid_units == 5
        assert harness.store.get_audit_log(created.receipt_id)[0].action == AuditAction.UPDATE


class TestRequestId:
    """Tests for request id generation."""

    def test_sortable_prefix(self, clock):
        """Should prefix ids with a base-36 millisecond timestamp."""
        first = new_request_id(clock.now)
        clock.advance(1)
        second = new_request_id(clock.now)
        prefix, suffix = first.split("_")
        assert int(prefix, 36) == int(clock.now.timestamp() * 1000) - 1000
        assert len(suffix) == 16
        assert first < second
