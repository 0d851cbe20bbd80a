import base64
from dataclasses import dataclass
from datetime import datetime
import json
from typing import Callable, Dict, List, Sequence, Union

from .config import KIND_ENCRYPTED_DM, KIND_TEXT_NOTE, to_iso_millis, utc_now
from .models import (
    Event,
    Participant,
    PaymentFlow,
    PaymentMethod,
    PaymentRequest,
    RequestSummary,
    UnsignedEvent,
)
from .nostr import ProtocolError, encrypt_dm


PRIVACY_MARKER = "no-location"


@dataclass(frozen=True)
class RequestIdTag:
    request_id: str

    def to_wire(self) -> List[str]:
        return ["rid", self.request_id]


@dataclass(frozen=True)
class ReceiptHashTag:
    rhash: str

    def to_wire(self) -> List[str]:
        return ["rhash", self.rhash]


@dataclass(frozen=True)
class AmountTag:
    units: int

    def to_wire(self) -> List[str]:
        return ["amount", str(self.units)]


@dataclass(frozen=True)
class CurrencyTag:
    currency: str

    def to_wire(self) -> List[str]:
        return ["ccy", self.currency]


@dataclass(frozen=True)
class FxTag:
    rate: int
    source: str
    timestamp: datetime

    def to_wire(self) -> List[str]:
        return ["fx", str(self.rate), self.source, to_iso_millis(self.timestamp)]


@dataclass(frozen=True)
class SplitTag:
    flow: PaymentFlow
    encoded: str

    def to_wire(self) -> List[str]:
        return ["split", self.flow.value, self.encoded]


@dataclass(frozen=True)
class MealTag:
    meal: str

    def to_wire(self) -> List[str]:
        return ["meal", self.meal]


@dataclass(frozen=True)
class PrivacyTag:
    marker: str = PRIVACY_MARKER

    def to_wire(self) -> List[str]:
        return ["privacy", self.marker]


@dataclass(frozen=True)
class FlowTag:
    flow: PaymentFlow

    def to_wire(self) -> List[str]:
        return ["flow", self.flow.value]


@dataclass(frozen=True)
class RecipientTag:
    pubkey: str

    def to_wire(self) -> List[str]:
        return ["p", self.pubkey]


@dataclass(frozen=True)
class ReplyTag:
    event_id: str

    def to_wire(self) -> List[str]:
        return ["e", self.event_id, "reply"]


@dataclass(frozen=True)
class PaidTag:
    pubkey: str
    units: int

    def to_wire(self) -> List[str]:
        return ["paid", self.pubkey, str(self.units)]


@dataclass(frozen=True)
class MethodTag:
    method: PaymentMethod

    def to_wire(self) -> List[str]:
        return ["method", self.method.value]


Tag = Union[
    RequestIdTag,
    ReceiptHashTag,
    AmountTag,
    CurrencyTag,
    FxTag,
    SplitTag,
    MealTag,
    PrivacyTag,
    FlowTag,
    RecipientTag,
    ReplyTag,
    PaidTag,
    MethodTag,
]


def encode_split(flow: PaymentFlow, participants: Sequence[Participant]) -> str:
    payload = {
        "participants": [
            {"pubkey": p.pubkey, "shareSats": p.share_units} for p in participants
        ],
        "flow": flow.value,
    }
    return base64.b64encode(
        json.dumps(payload, separators=(",", ":")).encode("utf-8")
    ).decode("ascii")


def decode_split(encoded: str) -> Dict[str, int]:
    payload = json.loads(base64.b64decode(encoded))
    return {row["pubkey"]: int(row["shareSats"]) for row in payload["participants"]}


class EventForge:
    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self.clock = clock

    def _build(self, pubkey: str, kind: int, content: str, tags: Sequence[Tag]) -> UnsignedEvent:
        return UnsignedEvent(
            pubkey=pubkey,
            created_at=int(self.clock().timestamp()),
            kind=kind,
            tags=[tag.to_wire() for tag in tags],
            content=content,
        )

    def request_tags(self, request: PaymentRequest) -> List[Tag]:
        tags: List[Tag] = [
            RequestIdTag(request.request_id),
            ReceiptHashTag(request.rhash),
            AmountTag(request.amount_units),
            CurrencyTag(request.currency),
            FxTag(request.fx_rate, request.fx_source, request.fx_timestamp),
            SplitTag(request.flow, encode_split(request.flow, request.participants)),
            MealTag(request.meal_type.value),
            PrivacyTag(),
            FlowTag(request.flow),
        ]
        tags.extend(RecipientTag(p.pubkey) for p in request.participants)
        return tags

    def payment_request(self, request: PaymentRequest, pubkey: str) -> UnsignedEvent:
        # only the generic meal label goes public
        content = f"{request.meal_type.value} request"
        return self._build(pubkey, KIND_TEXT_NOTE, content, self.request_tags(request))

    def recipient_notice(
        self,
        recipient: Participant,
        request: PaymentRequest,
        request_event_id: str,
        sender_secret: bytes,
        sender_pubkey: str,
    ) -> UnsignedEvent:
        body = json.dumps(
            {
                "type": "payment_request",
                "requestId": request.request_id,
                "mealType": request.meal_type.value,
                "yourShare": recipient.share_units,
                "totalAmount": request.amount_units,
                "currency": request.currency,
                "requestEventId": request_event_id,
                "message": (
                    f"You have a payment request for {request.meal_type.value}: "
                    f"{recipient.share_units} sats"
                ),
            }
        )
        content = encrypt_dm(bytes(sender_secret), recipient.pubkey, body)
        tags: List[Tag] = [RecipientTag(recipient.pubkey), RequestIdTag(request.request_id)]
        return self._build(sender_pubkey, KIND_ENCRYPTED_DM, content, tags)

    def paid_reply(
        self,
        original_event_id: str,
        request_id: str,
        participant: Participant,
        method: PaymentMethod,
        pubkey: str,
    ) -> UnsignedEvent:
        content = f"Payment received: {participant.paid_units} sats"
        tags: List[Tag] = [
            ReplyTag(original_event_id),
            RequestIdTag(request_id),
            PaidTag(participant.pubkey, participant.paid_units),
            MethodTag(method),
        ]
        return self._build(pubkey, KIND_TEXT_NOTE, content, tags)


def parse_payment_request(event: Union[Event, UnsignedEvent]) -> RequestSummary:
    """Read a public request event back from its wire tags."""
    names = ["rid", "rhash", "amount", "ccy", "fx", "split", "meal", "privacy", "flow"]
    if len(event.tags) < len(names):
        raise ProtocolError("payment request is missing required tags")
    for position, name in enumerate(names):
        if event.tags[position][0] != name:
            raise ProtocolError(f"expected tag {name!r} at position {position}")
    rid, rhash, amount, ccy, fx, split, meal, _privacy, flow = event.tags[: len(names)]
    return RequestSummary(
        request_id=rid[1],
        rhash=rhash[1],
        amount_units=int(amount[1]),
        currency=ccy[1],
        fx_rate=int(fx[1]),
        fx_source=fx[2],
        fx_timestamp=fx[3],
        flow=PaymentFlow(flow[1]),
        meal_type=meal[1],
        shares=decode_split(split[2]),
        recipients=[tag[1] for tag in event.tags[len(names) :] if tag[0] == "p"],
    )
