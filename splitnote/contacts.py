from datetime import datetime
import json
import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .config import KIND_CONTACTS, KIND_METADATA, utc_now
from .errors import InvalidPublicKey
from .models import Profile
from .nostr import ProtocolError, npub_decode
from .relay_client import RELAY_ERRORS, RelayQuery
from .relays import RelayRegistry


logger = logging.getLogger(__name__)

_HEX_PUBKEY = re.compile(r"^[0-9a-fA-F]{64}$")
_NOSTR_URI = re.compile(r"nostr:(npub1[a-z0-9]+)")


def short_pubkey(pubkey: str) -> str:
    return f"{pubkey[:8]}...{pubkey[-8:]}"


def _sort_name(profile: Profile) -> str:
    return (profile.name or profile.display_name or "").lower()


class ContactDirectory:
    """Lookup cache of profiles, filled from relays on demand."""

    def __init__(
        self,
        registry: RelayRegistry,
        query: Optional[RelayQuery] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.query = query or registry.query
        self.clock = clock
        self._contacts: Dict[str, Profile] = {}
        self._following: Set[str] = set()

    async def load_follow_list(self, pubkey: str) -> List[Profile]:
        for url in self.registry.write_urls():
            try:
                events = await self.query.fetch(
                    url, {"kinds": [KIND_CONTACTS], "authors": [pubkey], "limit": 1}
                )
            except RELAY_ERRORS as exc:
                logger.warning("Failed to fetch follows from %s: %s", url, exc)
                continue
            follows = [
                tag[1]
                for event in events
                for tag in event.get("tags") or []
                if isinstance(tag, list) and len(tag) >= 2 and tag[0] == "p" and tag[1]
            ]
            if not follows:
                continue
            self._following.update(follows)
            for followed in follows:
                if followed in self._contacts:
                    self._contacts[followed] = self._contacts[followed].model_copy(
                        update={"following": True}
                    )
            await self.fetch_profiles(follows)
            break
        return self.follow_list()

    async def fetch_profiles(self, pubkeys: Iterable[str]) -> List[Profile]:
        wanted = list(dict.fromkeys(pubkeys))
        if not wanted:
            return []
        for url in self.registry.write_urls():
            try:
                events = await self.query.fetch(
                    url, {"kinds": [KIND_METADATA], "authors": wanted}, partial_ok=True
                )
            except RELAY_ERRORS as exc:
                logger.warning("Failed to fetch profiles from %s: %s", url, exc)
                continue
            profiles = [p for p in (self._parse_profile(e) for e in events) if p is not None]
            for profile in profiles:
                existing = self._contacts.get(profile.pubkey)
                self._contacts[profile.pubkey] = profile.model_copy(
                    update={
                        "following": profile.pubkey in self._following,
                        "added_manually": bool(existing and existing.added_manually),
                        "last_seen": self.clock(),
                    }
                )
            if profiles:
                return [self._contacts[p.pubkey].model_copy() for p in profiles]
        return []

    def _parse_profile(self, event: Dict[str, Any]) -> Optional[Profile]:
        pubkey = event.get("pubkey")
        if not isinstance(pubkey, str):
            return None
        try:
            data = json.loads(event.get("content") or "{}")
        except (TypeError, ValueError) as exc:
            logger.warning("Failed to parse profile content for %s: %s", pubkey, exc)
            return None
        if not isinstance(data, dict):
            return None
        try:
            return Profile(
                pubkey=pubkey,
                name=data.get("name"),
                display_name=data.get("display_name") or data.get("displayName"),
                picture=data.get("picture"),
                nip05=data.get("nip05"),
                about=data.get("about"),
            )
        except ValueError as exc:
            logger.warning("Ignoring malformed profile for %s: %s", pubkey, exc)
            return None

    async def add_by_pubkey(self, pubkey: str) -> Profile:
        if not _HEX_PUBKEY.match(pubkey):
            raise InvalidPublicKey("Invalid pubkey format")
        pubkey = pubkey.lower()
        existing = self._contacts.get(pubkey)
        if existing is not None:
            return existing.model_copy()

        await self.fetch_profiles([pubkey])
        contact = self._contacts.get(pubkey)
        if contact is not None:
            contact = contact.model_copy(update={"added_manually": True})
        else:
            contact = Profile(
                pubkey=pubkey,
                following=pubkey in self._following,
                added_manually=True,
                last_seen=self.clock(),
            )
        self._contacts[pubkey] = contact
        return contact.model_copy()

    async def add_from_qr(self, value: str) -> Profile:
        """Accepts a hex key, an ``npub1`` string or a ``nostr:npub1`` URI."""
        value = value.strip()
        try:
            if value.startswith("npub1"):
                pubkey = npub_decode(value)
            elif _HEX_PUBKEY.match(value):
                pubkey = value.lower()
            elif value.startswith("nostr:"):
                match = _NOSTR_URI.match(value)
                if not match:
                    raise InvalidPublicKey("Invalid nostr URI format")
                pubkey = npub_decode(match.group(1))
            else:
                raise InvalidPublicKey("Unrecognized QR code format")
        except ProtocolError as exc:
            raise InvalidPublicKey("Invalid npub format") from exc
        return await self.add_by_pubkey(pubkey)

    def follow_list(self) -> List[Profile]:
        follows = [contact for contact in self._contacts.values() if contact.following]
        return [contact.model_copy() for contact in sorted(follows, key=_sort_name)]

    def all_contacts(self) -> List[Profile]:
        ordered = sorted(
            self._contacts.values(), key=lambda c: (not c.following, _sort_name(c))
        )
        return [contact.model_copy() for contact in ordered]

    def get(self, pubkey: str) -> Optional[Profile]:
        contact = self._contacts.get(pubkey)
        return contact.model_copy() if contact else None

    def search(self, query: str) -> List[Profile]:
        needle = query.lower()
        matches = []
        for contact in self._contacts.values():
            fields = [contact.name, contact.display_name, contact.nip05, contact.pubkey]
            if any(field and needle in field.lower() for field in fields):
                matches.append(contact.model_copy())
        return matches

    def display_name(self, pubkey: str) -> str:
        contact = self._contacts.get(pubkey)
        if contact is None:
            return short_pubkey(pubkey)
        return contact.display_name or contact.name or contact.nip05 or short_pubkey(pubkey)

    def clear(self) -> None:
        self._contacts.clear()
        self._following.clear()
