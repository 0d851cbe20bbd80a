"""
Shared fakes for splitnote tests: a frozen clock, an in-memory relay network
and deterministic key material.
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Dict, List, Optional

import pytest

from splitnote.nostr import public_key_hex


class FrozenClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeRelay:
    """Scripted relay.

    mode: "accept" acks events, "reject" refuses them, "silent" never answers,
    "down" refuses the connection, "hang" times out while connecting.
    """

    def __init__(self, url: str, mode: str = "accept", events: Optional[List[Dict]] = None):
        self.url = url
        self.mode = mode
        self.events = list(events or [])
        self.received: List[List[Any]] = []

    def respond(self, frame: List[Any]) -> List[List[Any]]:
        self.received.append(frame)
        if self.mode == "silent":
            return []
        if frame[0] == "EVENT":
            event = frame[1]
            if self.mode == "reject":
                return [["NOTICE", "slow down"], ["OK", event["id"], False, "blocked: spam"]]
            return [["OK", "0" * 64, True, ""], ["OK", event["id"], True, ""]]
        if frame[0] == "REQ":
            sub_id, filters = frame[1], frame[2]
            matches = [
                ["EVENT", sub_id, event]
                for event in self.events
                if event["kind"] in filters.get("kinds", [event["kind"]])
                and event["pubkey"] in filters.get("authors", [event["pubkey"]])
            ]
            return matches + [["EOSE", sub_id]]
        return []

    def published(self) -> List[Dict[str, Any]]:
        return [frame[1] for frame in self.received if frame[0] == "EVENT"]


class FakeSocket:
    def __init__(self, relay: FakeRelay) -> None:
        self.relay = relay
        self.inbox: "asyncio.Queue[str]" = asyncio.Queue()

    async def send(self, raw: str) -> None:
        for reply in self.relay.respond(json.loads(raw)):
            self.inbox.put_nowait(json.dumps(reply))

    async def recv(self) -> str:
        return await self.inbox.get()


class FakeNetwork:
    def __init__(self, *relays: FakeRelay) -> None:
        self.relays: Dict[str, FakeRelay] = {relay.url: relay for relay in relays}
        self.connections: List[str] = []

    def add(self, relay: FakeRelay) -> FakeRelay:
        self.relays[relay.url] = relay
        return relay

    @asynccontextmanager
    async def connect(self, url: str, open_timeout: float = 5):
        self.connections.append(url)
        relay = self.relays.get(url)
        if relay is None or relay.mode == "down":
            raise ConnectionRefusedError(f"connection to {url} refused")
        if relay.mode == "hang":
            raise asyncio.TimeoutError()
        yield FakeSocket(relay)


def make_secret(seed: int) -> bytes:
    return bytes([seed]) * 32


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def payer_secret() -> bytes:
    return make_secret(0x11)


@pytest.fixture
def payer_pubkey(payer_secret: bytes) -> str:
    return public_key_hex(payer_secret)


@pytest.fixture
def friend_secrets() -> List[bytes]:
    return [make_secret(0x22), make_secret(0x33)]


@pytest.fixture
def friend_pubkeys(friend_secrets: List[bytes]) -> List[str]:
    return [public_key_hex(secret) for secret in friend_secrets]
