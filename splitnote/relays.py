import asyncio
import logging
from typing import Any, Dict, List, Optional

from .config import DEFAULT_RELAYS, KIND_RELAY_LIST, settings
from .models import AppSettings, Relay
from .relay_client import RELAY_ERRORS, RelayQuery
from .state import StateStore


logger = logging.getLogger(__name__)


def default_relays() -> List[Relay]:
    return [Relay(url=url, read=read, write=write) for url, read, write in DEFAULT_RELAYS]


def parse_relay_list(event: Dict[str, Any]) -> List[Relay]:
    """Read ``r`` tags from a relay-list event; no marker means read and write."""
    relays: List[Relay] = []
    for tag in event.get("tags") or []:
        if not isinstance(tag, list) or len(tag) < 2 or tag[0] != "r":
            continue
        if not isinstance(tag[1], str) or not tag[1]:
            logger.warning("Skipping malformed relay tag %r", tag)
            continue
        marker = tag[2] if len(tag) > 2 and isinstance(tag[2], str) else None
        relays.append(
            Relay(
                url=tag[1],
                read=not marker or marker == "read",
                write=not marker or marker == "write",
            )
        )
    return relays


def dedupe_relays(relays: List[Relay]) -> List[Relay]:
    seen = set()
    unique: List[Relay] = []
    for relay in relays:
        if relay.url in seen:
            continue
        seen.add(relay.url)
        unique.append(relay)
    return unique


class RelayRegistry:
    def __init__(
        self,
        store: StateStore,
        query: Optional[RelayQuery] = None,
        max_relays: int = settings.max_relays,
    ) -> None:
        self.store = store
        self.query = query or RelayQuery()
        self.max_relays = max_relays
        self._relays: List[Relay] = default_relays()
        self._lock = asyncio.Lock()

    def load(self) -> List[Relay]:
        saved = self.store.get_settings()
        if saved and saved.relays:
            self._relays = [relay.model_copy() for relay in saved.relays]
        else:
            self._relays = default_relays()
        return self.relays()

    def relays(self) -> List[Relay]:
        return [relay.model_copy() for relay in self._relays]

    def read_relays(self) -> List[Relay]:
        return [relay.model_copy() for relay in self._relays if relay.read]

    def write_relays(self) -> List[Relay]:
        return [relay.model_copy() for relay in self._relays if relay.write]

    def write_urls(self) -> List[str]:
        return [relay.url for relay in self._relays if relay.write]

    async def discover(self, pubkey: str) -> List[Relay]:
        async with self._lock:
            for url in self.write_urls():
                try:
                    events = await self.query.fetch(
                        url, {"kinds": [KIND_RELAY_LIST], "authors": [pubkey], "limit": 1}
                    )
                except RELAY_ERRORS as exc:
                    logger.warning("Failed to fetch relay list from %s: %s", url, exc)
                    continue
                found = dedupe_relays(
                    [relay for event in events for relay in parse_relay_list(event)]
                )
                if not found:
                    continue
                added = self._merge(found)
                logger.info("Merged %d relays published by %s (via %s)", added, pubkey, url)
                self._save()
                break
            else:
                logger.info("No relay list found for %s, keeping current relays", pubkey)
        return self.relays()

    def _merge(self, found: List[Relay]) -> int:
        known = {relay.url for relay in self._relays}
        before = len(self._relays)
        self._relays.extend(relay for relay in found if relay.url not in known)
        self._relays = self._relays[: self.max_relays]
        return max(len(self._relays) - before, 0)

    async def add(self, relay: Relay) -> List[Relay]:
        async with self._lock:
            if not any(existing.url == relay.url for existing in self._relays):
                if len(self._relays) >= self.max_relays:
                    raise ValueError(f"At most {self.max_relays} relays can be configured")
                self._relays.append(relay.model_copy())
                self._save()
        return self.relays()

    async def remove(self, url: str) -> List[Relay]:
        async with self._lock:
            self._relays = [relay for relay in self._relays if relay.url != url]
            self._save()
        return self.relays()

    async def update(
        self, url: str, read: Optional[bool] = None, write: Optional[bool] = None
    ) -> List[Relay]:
        changes = {
            key: value for key, value in (("read", read), ("write", write)) if value is not None
        }
        async with self._lock:
            self._relays = [
                relay.model_copy(update=changes) if relay.url == url else relay
                for relay in self._relays
            ]
            self._save()
        return self.relays()

    async def save(self) -> None:
        async with self._lock:
            self._save()

    def _save(self) -> None:
        current = self.store.get_settings() or AppSettings(
            default_currency=settings.default_currency
        )
        self.store.save_settings(current.model_copy(update={"relays": self.relays()}))

    async def test_relay(self, url: str) -> Dict[str, Any]:
        try:
            async with self.query.connect(url, open_timeout=self.query.connect_timeout):
                pass
        except RELAY_ERRORS as exc:
            logger.info("Relay %s unreachable: %s", url, exc)
            return {"url": url, "success": False, "error": str(exc) or "Connection failed"}
        return {"url": url, "success": True, "error": None}
