"""
Tests for the HTTP surface in splitnote.main.
"""
import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import FakeNetwork, FakeRelay
from splitnote.config import DEFAULT_RELAYS, MIN_KDF_ITERATIONS, SUPPORTED_CURRENCIES
from splitnote.contacts import ContactDirectory
from splitnote.main import Services, create_app
from splitnote.orchestrator import RequestOrchestrator
from splitnote.publisher import RelayPublisher
from splitnote.rates import RateProvider
from splitnote.relay_client import RelayQuery
from splitnote.relays import RelayRegistry
from splitnote.state import StateStore
from splitnote.vault import KeyVault


DAMUS = DEFAULT_RELAYS[0][0]
PASSWORD = "hunter2"


def prices(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"bitcoin": {"usd": 400}})


@pytest.fixture
def relay():
    return FakeRelay(DAMUS)


@pytest.fixture
def services(clock, relay):
    network = FakeNetwork(relay)
    store = StateStore(clock)
    rates = RateProvider(
        client=httpx.AsyncClient(transport=httpx.MockTransport(prices)), clock=clock
    )
    registry = RelayRegistry(store, RelayQuery(connect=network.connect, timeout=0.05))
    publisher = RelayPublisher(connect=network.connect, connect_timeout=0.1, ack_timeout=0.05)
    vault = KeyVault(iterations=MIN_KDF_ITERATIONS)
    return Services(
        store=store,
        rates=rates,
        registry=registry,
        contacts=ContactDirectory(registry, clock=clock),
        publisher=publisher,
        vault=vault,
        orchestrator=RequestOrchestrator(store, rates, registry, publisher, vault, clock=clock),
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as client:
        yield client


@pytest.fixture
def imported(client, payer_secret):
    response = client.post("/api/keys", json={"secret": payer_secret.hex(), "password": PASSWORD})
    assert response.status_code == 200
    return response.json()


class TestInfoAndRates:
    """Tests for read-only endpoints."""

    def test_info(self, client):
        """Should describe supported currencies and limits."""
        body = client.get("/api/info").json()
        assert body["supported_currencies"] == list(SUPPORTED_CURRENCIES)
        assert body["max_relays"] == 10

    def test_rate(self, client):
        """Should return the converted rate."""
        body = client.get("/api/rates/usd").json()
        assert body["rate"] == 250_000
        assert body["source"] == "CoinGecko"

    def test_unsupported_rate(self, client):
        """Should map an unsupported currency to 400."""
        assert client.get("/api/rates/JPY").status_code == 400


class TestKeys:
    """Tests for key import and listing."""

    def test_import_and_list(self, client, imported, payer_pubkey):
        """Should store the sealed key and expose only public data."""
        assert imported["pubkey"] == payer_pubkey
        assert imported["npub"].startswith("npub1")
        listed = client.get("/api/keys").json()
        assert [k["pubkey"] for k in listed] == [payer_pubkey]
        assert "encrypted_secret" not in listed[0]

    def test_import_garbage(self, client):
        """Should reject an unparseable secret."""
        response = client.post("/api/keys", json={"secret": "nope", "password": PASSWORD})
        assert response.status_code == 400

    def test_delete(self, client, imported):
        """Should forget a key and 404 the second time."""
        assert client.delete(f"/api/keys/{imported['pubkey']}").status_code == 200
        assert client.delete(f"/api/keys/{imported['pubkey']}").status_code == 404


class TestRequests:
    """Tests for the request endpoints."""

    def payload(self, pubkey, participants, password=PASSWORD):
        return {
            "pubkey": pubkey,
            "password": password,
            "amount_fiat": "10.00",
            "currency": "USD",
            "meal_type": "Dinner",
            "participants": participants,
        }

    def test_create_and_fetch(self, client, imported, friend_pubkeys):
        """Should publish a request and expose it afterwards."""
        response = client.post(
            "/api/requests",
            json=self.payload(imported["pubkey"], [imported["pubkey"]] + friend_pubkeys),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"]

        stored = client.get(f"/api/requests/{body['receipt_id']}").json()
        assert stored["amount_units"] == 2_500_000
        assert stored["sync_status"] == "published"
        audit = client.get("/api/audit", params={"receipt_id": body["receipt_id"]}).json()
        assert [entry["action"] for entry in audit] == ["publish", "create"]

    def test_wrong_password(self, client, imported, friend_pubkeys):
        """Should answer 401 when the key cannot be unlocked."""
        response = client.post(
            "/api/requests",
            json=self.payload(imported["pubkey"], friend_pubkeys, password="wrong"),
        )
        assert response.status_code == 401

    def test_unknown_signing_key(self, client, friend_pubkeys):
        """Should 404 when the signing key was never imported."""
        response = client.post("/api/requests", json=self.payload("a" * 64, friend_pubkeys))
        assert response.status_code == 404

    def test_publish_failure_is_502(self, client, imported, relay, friend_pubkeys):
        """Should return the failed result with a 502."""
        relay.mode = "reject"
        response = client.post(
            "/api/requests", json=self.payload(imported["pubkey"], friend_pubkeys)
        )
        assert response.status_code == 502
        assert response.json()["success"] is False

    def test_missing_request(self, client):
        """Should 404 unknown receipts."""
        assert client.get("/api/requests/missing").status_code == 404

    def test_mark_paid(self, client, imported, friend_pubkeys):
        """Should record a payment on a published request."""
        created = client.post(
            "/api/requests",
            json=self.payload(imported["pubkey"], [imported["pubkey"]] + friend_pubkeys),
        ).json()
        response = client.post(
            f"/api/requests/{created['receipt_id']}/participants/{friend_pubkeys[0]}/paid",
            json={"pubkey": imported["pubkey"], "password": PASSWORD, "paid_units": 833_333},
        )
        assert response.status_code == 200
        assert response.json()["participant"]["status"] == "paid"


class TestRelays:
    """Tests for relay management endpoints."""

    def test_crud(self, client):
        """Should add, update and remove relays."""
        added = client.post("/api/relays", json={"url": "wss://extra.example"}).json()
        assert added[-1]["url"] == "wss://extra.example"

        updated = client.patch(
            "/api/relays", json={"url": "wss://extra.example", "write": False}
        ).json()
        assert updated[-1]["write"] is False

        remaining = client.delete("/api/relays", params={"url": "wss://extra.example"}).json()
        assert "wss://extra.example" not in [r["url"] for r in remaining]

    def test_probe(self, client):
        """Should report reachability."""
        assert client.post("/api/relays/test", params={"url": DAMUS}).json()["success"]
