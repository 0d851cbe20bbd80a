import asyncio
import base64
import binascii
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import SUPPORTED_CURRENCIES, settings
from .contacts import ContactDirectory
from .errors import (
    AllRateSourcesUnavailable,
    DecryptionFailed,
    KeyNotFound,
    NoRelaysAccepted,
    ParticipantNotFound,
    RelayTimeout,
    RequestNotFound,
    SplitNoteError,
)
from .events import EventForge
from .models import (
    AddContactPayload,
    AddRelayPayload,
    AppInfo,
    AuditEntry,
    CreateRequestPayload,
    CreateRequestResult,
    ExchangeRate,
    ImportKeyPayload,
    MarkPaidPayload,
    MarkPaidResult,
    PasswordPayload,
    PaymentRequest,
    Profile,
    Relay,
    RequestDraft,
    StoredKey,
    UpdateRelayPayload,
)
from .nostr import ProtocolError, npub_encode
from .orchestrator import RequestOrchestrator
from .publisher import RelayPublisher
from .rates import RateProvider
from .relay_client import RelayQuery
from .relays import RelayRegistry
from .state import StateStore
from .vault import KeyVault


logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: StateStore
    rates: RateProvider
    registry: RelayRegistry
    contacts: ContactDirectory
    publisher: RelayPublisher
    vault: KeyVault
    orchestrator: RequestOrchestrator

    @classmethod
    def build(cls) -> "Services":
        store = StateStore()
        rates = RateProvider()
        registry = RelayRegistry(store, RelayQuery())
        publisher = RelayPublisher()
        vault = KeyVault()
        return cls(
            store=store,
            rates=rates,
            registry=registry,
            contacts=ContactDirectory(registry),
            publisher=publisher,
            vault=vault,
            orchestrator=RequestOrchestrator(
                store, rates, registry, publisher, vault, EventForge()
            ),
        )


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (RequestNotFound, ParticipantNotFound, KeyNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, DecryptionFailed):
        return HTTPException(status_code=401, detail="Unable to unlock signing key")
    if isinstance(exc, (AllRateSourcesUnavailable, NoRelaysAccepted, RelayTimeout)):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def require_api_key(x_api_key: str = Header(default="")) -> None:
    if settings.api_key and x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


def key_view(key: StoredKey) -> Dict[str, Any]:
    return {
        "pubkey": key.pubkey,
        "npub": npub_encode(key.pubkey),
        "created_at": key.created_at,
        "last_used": key.last_used,
    }


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or Services.build()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        relays = services.registry.load()
        logger.info("Loaded %d relays", len(relays))
        yield
        await services.rates.aclose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services

    def signing_key(pubkey: str) -> StoredKey:
        try:
            return services.store.get_key(pubkey)
        except KeyNotFound as exc:
            raise http_error(exc) from exc

    @app.get("/api/info", response_model=AppInfo)
    async def info() -> AppInfo:
        return AppInfo(
            app_name=settings.app_name,
            supported_currencies=list(SUPPORTED_CURRENCIES),
            default_currency=settings.default_currency,
            max_relays=services.registry.max_relays,
            rate_cache_ttl_seconds=settings.rate_cache_ttl_seconds,
        )

    @app.get("/api/rates/{currency}", response_model=ExchangeRate)
    async def get_rate(currency: str) -> ExchangeRate:
        try:
            return await services.rates.get_rate(currency)
        except SplitNoteError as exc:
            raise http_error(exc) from exc

    @app.post("/api/keys")
    async def import_key(payload: ImportKeyPayload, _: None = Depends(require_api_key)):
        try:
            stored = await asyncio.to_thread(
                services.vault.seal_key, payload.secret, payload.password
            )
        except (ProtocolError, SplitNoteError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        services.store.save_key(stored)
        return key_view(stored)

    @app.get("/api/keys")
    async def list_keys():
        return [key_view(key) for key in services.store.list_keys()]

    @app.delete("/api/keys/{pubkey}")
    async def delete_key(pubkey: str, _: None = Depends(require_api_key)):
        try:
            services.store.delete_key(pubkey)
        except KeyNotFound as exc:
            raise http_error(exc) from exc
        return {"deleted": pubkey}

    @app.post("/api/requests", response_model=CreateRequestResult)
    async def create_request(
        payload: CreateRequestPayload, _: None = Depends(require_api_key)
    ):
        stored_key = signing_key(payload.pubkey)
        try:
            image = (
                base64.b64decode(payload.image_base64, validate=True)
                if payload.image_base64
                else None
            )
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(status_code=400, detail="image_base64 is not valid base64") from exc

        draft = RequestDraft(
            amount_fiat=payload.amount_fiat,
            currency=payload.currency,
            meal_type=payload.meal_type,
            flow=payload.flow,
            participants=payload.participants,
            weights=payload.weights,
            image=image,
        )
        try:
            result = await services.orchestrator.create_request(
                draft, payload.password, stored_key
            )
        except (ProtocolError, SplitNoteError) as exc:
            raise http_error(exc) from exc
        if not result.success:
            return JSONResponse(status_code=502, content=result.model_dump(mode="json"))
        return result

    @app.get("/api/requests", response_model=List[PaymentRequest])
    async def list_requests() -> List[PaymentRequest]:
        return services.store.get_all_receipts()

    @app.get("/api/requests/{receipt_id}", response_model=PaymentRequest)
    async def get_request(receipt_id: str) -> PaymentRequest:
        try:
            return services.store.get_receipt(receipt_id)
        except RequestNotFound as exc:
            raise http_error(exc) from exc

    @app.post("/api/requests/{receipt_id}/publish", response_model=CreateRequestResult)
    async def republish(
        receipt_id: str, payload: PasswordPayload, _: None = Depends(require_api_key)
    ):
        stored_key = signing_key(payload.pubkey)
        try:
            result = await services.orchestrator.republish(
                receipt_id, payload.password, stored_key
            )
        except (ProtocolError, SplitNoteError) as exc:
            raise http_error(exc) from exc
        if not result.success:
            return JSONResponse(status_code=502, content=result.model_dump(mode="json"))
        return result

    @app.post(
        "/api/requests/{receipt_id}/participants/{pubkey}/paid",
        response_model=MarkPaidResult,
    )
    async def mark_paid(
        receipt_id: str,
        pubkey: str,
        payload: MarkPaidPayload,
        _: None = Depends(require_api_key),
    ):
        stored_key = signing_key(payload.pubkey)
        try:
            result = await services.orchestrator.mark_participant_paid(
                receipt_id,
                pubkey,
                payload.paid_units,
                payload.method,
                payload.password,
                stored_key,
            )
        except (ProtocolError, SplitNoteError) as exc:
            raise http_error(exc) from exc
        if not result.success:
            return JSONResponse(status_code=502, content=result.model_dump(mode="json"))
        return result

    @app.get("/api/audit", response_model=List[AuditEntry])
    async def audit_log(receipt_id: Optional[str] = None) -> List[AuditEntry]:
        return services.store.get_audit_log(receipt_id)

    @app.get("/api/relays", response_model=List[Relay])
    async def list_relays() -> List[Relay]:
        return services.registry.relays()

    @app.post("/api/relays", response_model=List[Relay])
    async def add_relay(payload: AddRelayPayload, _: None = Depends(require_api_key)):
        try:
            return await services.registry.add(
                Relay(url=payload.url, read=payload.read, write=payload.write)
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.patch("/api/relays", response_model=List[Relay])
    async def update_relay(payload: UpdateRelayPayload, _: None = Depends(require_api_key)):
        return await services.registry.update(payload.url, payload.read, payload.write)

    @app.delete("/api/relays", response_model=List[Relay])
    async def remove_relay(url: str, _: None = Depends(require_api_key)):
        return await services.registry.remove(url)

    @app.post("/api/relays/discover", response_model=List[Relay])
    async def discover_relays(pubkey: str, _: None = Depends(require_api_key)):
        return await services.registry.discover(pubkey)

    @app.post("/api/relays/test")
    async def probe_relay(url: str):
        return await services.registry.test_relay(url)

    @app.get("/api/contacts", response_model=List[Profile])
    async def list_contacts() -> List[Profile]:
        return services.contacts.all_contacts()

    @app.post("/api/contacts", response_model=Profile)
    async def add_contact(payload: AddContactPayload, _: None = Depends(require_api_key)):
        try:
            return await services.contacts.add_from_qr(payload.value)
        except SplitNoteError as exc:
            raise http_error(exc) from exc

    @app.post("/api/contacts/follows", response_model=List[Profile])
    async def load_follows(pubkey: str, _: None = Depends(require_api_key)):
        return await services.contacts.load_follow_list(pubkey)

    @app.get("/api/contacts/search", response_model=List[Profile])
    async def search_contacts(q: str) -> List[Profile]:
        return services.contacts.search(q)

    return app


app = create_app()
