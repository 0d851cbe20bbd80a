from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class PaymentFlow(str, Enum):
    SPLIT = "split"
    PAYER_COVERS_ALL = "payer-covers-all"
    OTHERS_COVER_ALL = "others-cover-all"


class ParticipantStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERPAID = "overpaid"


class SyncStatus(str, Enum):
    LOCAL = "local"
    PUBLISHED = "published"
    FAILED = "failed"


class MealType(str, Enum):
    BREAKFAST = "Breakfast"
    LUNCH = "Lunch"
    DINNER = "Dinner"
    OTHER = "Other"


class PaymentMethod(str, Enum):
    ZAP = "zap"
    MANUAL = "manual"


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    PUBLISH = "publish"
    MARK_PAID = "mark_paid"


def derive_status(share_units: int, paid_units: int) -> ParticipantStatus:
    if paid_units == 0:
        return ParticipantStatus.PENDING
    if paid_units < share_units:
        return ParticipantStatus.PARTIAL
    if paid_units == share_units:
        return ParticipantStatus.PAID
    return ParticipantStatus.OVERPAID


class Participant(BaseModel):
    pubkey: str
    share_units: int = Field(ge=0)
    paid_units: int = Field(default=0, ge=0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> ParticipantStatus:
        return derive_status(self.share_units, self.paid_units)


class ExchangeRate(BaseModel):
    model_config = ConfigDict(frozen=True)

    currency: str
    rate: int = Field(ge=0)
    source: str
    timestamp: datetime


class PaymentRequest(BaseModel):
    id: str
    request_id: str
    created_at: datetime
    amount_fiat: Decimal
    currency: str
    amount_units: int = Field(ge=0)
    fx_rate: int
    fx_source: str
    fx_timestamp: datetime
    meal_type: MealType = MealType.OTHER
    flow: PaymentFlow = PaymentFlow.SPLIT
    participants: List[Participant]
    rhash: str
    image_uri: Optional[str] = None
    split_json: str
    note_event_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.LOCAL

    @model_validator(mode="after")
    def _never_over_allocated(self) -> "PaymentRequest":
        allocated = sum(p.share_units for p in self.participants)
        if allocated > self.amount_units:
            raise ValueError(
                f"participant shares ({allocated}) exceed request total ({self.amount_units})"
            )
        return self

    def participant(self, pubkey: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.pubkey == pubkey:
                return participant
        return None


class Relay(BaseModel):
    url: str
    read: bool = True
    write: bool = True


class StoredKey(BaseModel):
    pubkey: str
    encrypted_secret: str
    created_at: datetime
    last_used: datetime


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    action: AuditAction
    receipt_id: str
    event_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class Profile(BaseModel):
    pubkey: str
    name: Optional[str] = None
    display_name: Optional[str] = None
    picture: Optional[str] = None
    nip05: Optional[str] = None
    about: Optional[str] = None
    following: bool = False
    added_manually: bool = False
    last_seen: Optional[datetime] = None


class AppSettings(BaseModel):
    relays: List[Relay] = Field(default_factory=list)
    default_meal_type: MealType = MealType.LUNCH
    default_currency: str = "USD"


class UnsignedEvent(BaseModel):
    pubkey: str
    created_at: int
    kind: int
    tags: List[List[str]]
    content: str


class Event(UnsignedEvent):
    id: str
    sig: str


class RelayOutcome(BaseModel):
    url: str
    accepted: bool
    error: Optional[str] = None


class PublishResult(BaseModel):
    success: bool
    event_id: Optional[str] = None
    per_relay: List[RelayOutcome] = Field(default_factory=list)
    error: Optional[str] = None


class NoticeFailure(BaseModel):
    pubkey: str
    error: str


class NoticeReport(BaseModel):
    attempted: int = 0
    delivered: List[str] = Field(default_factory=list)
    failures: List[NoticeFailure] = Field(default_factory=list)


class RequestDraft(BaseModel):
    amount_fiat: Decimal = Field(ge=0)
    currency: str
    meal_type: MealType = MealType.OTHER
    flow: PaymentFlow = PaymentFlow.SPLIT
    participants: List[str] = Field(min_length=1)
    weights: Optional[List[Decimal]] = None
    image: Optional[bytes] = None
    created_at: Optional[datetime] = None


class CreateRequestResult(BaseModel):
    success: bool
    receipt_id: str
    request_id: str
    event_id: Optional[str] = None
    error: Optional[str] = None
    fx_rate: ExchangeRate
    publish: Optional[PublishResult] = None
    notices: Optional[NoticeReport] = None


class MarkPaidResult(BaseModel):
    success: bool
    receipt_id: str
    participant: Participant
    event_id: Optional[str] = None
    error: Optional[str] = None
    publish: Optional[PublishResult] = None


class RequestSummary(BaseModel):
    request_id: str
    rhash: str
    amount_units: int
    currency: str
    fx_rate: int
    fx_source: str
    fx_timestamp: str
    flow: PaymentFlow
    meal_type: str
    shares: Dict[str, int]
    recipients: List[str]


class CreateRequestPayload(BaseModel):
    pubkey: str
    password: str
    amount_fiat: Decimal = Field(ge=0)
    currency: str = "USD"
    meal_type: MealType = MealType.OTHER
    flow: PaymentFlow = PaymentFlow.SPLIT
    participants: List[str] = Field(min_length=1)
    weights: Optional[List[Decimal]] = None
    image_base64: Optional[str] = None


class MarkPaidPayload(BaseModel):
    pubkey: str
    password: str
    paid_units: int = Field(ge=0)
    method: PaymentMethod = PaymentMethod.MANUAL


class PasswordPayload(BaseModel):
    pubkey: str
    password: str


class ImportKeyPayload(BaseModel):
    secret: str
    password: str


class AddRelayPayload(BaseModel):
    url: str
    read: bool = True
    write: bool = True


class UpdateRelayPayload(BaseModel):
    url: str
    read: Optional[bool] = None
    write: Optional[bool] = None


class AddContactPayload(BaseModel):
    value: str


class AppInfo(BaseModel):
    app_name: str
    supported_currencies: List[str]
    default_currency: str
    max_relays: int
    rate_cache_ttl_seconds: int
