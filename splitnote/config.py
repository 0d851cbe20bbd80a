from dataclasses import dataclass
from datetime import datetime, timezone
import os
from typing import Dict, List, Tuple

from dotenv import load_dotenv


load_dotenv()

BASE_UNITS_PER_WHOLE = 100_000_000
MIN_KDF_ITERATIONS = 100_000

KDF_DOMAIN_SALT = b"splitnote/key-vault/v1"

KIND_METADATA = 0
KIND_TEXT_NOTE = 1
KIND_CONTACTS = 3
KIND_ENCRYPTED_DM = 4
KIND_RELAY_LIST = 10002

# (url, read, write)
DEFAULT_RELAYS: List[Tuple[str, bool, bool]] = [
    ("wss://relay.damus.io", True, True),
    ("wss://nos.lol", True, True),
    ("wss://relay.nostr.band", True, True),
    ("wss://nostr.wine", True, True),
    ("wss://relay.snort.social", True, True),
]

SUPPORTED_CURRENCIES: Tuple[str, ...] = ("USD", "EUR", "AUD", "HKD", "SGD")

CURRENCY_SYMBOLS: Dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "AUD": "A$",
    "HKD": "HK$",
    "SGD": "S$",
}

CURRENCY_NAMES: Dict[str, str] = {
    "USD": "US Dollar",
    "EUR": "Euro",
    "AUD": "Australian Dollar",
    "HKD": "Hong Kong Dollar",
    "SGD": "Singapore Dollar",
}


@dataclass(frozen=True)
class Settings:
    app_name: str = "splitnote"
    base_units_per_whole: int = BASE_UNITS_PER_WHOLE
    rate_cache_ttl_seconds: int = int(os.getenv("RATE_CACHE_TTL_SECONDS", "600"))
    rate_http_timeout_seconds: float = float(
        os.getenv("RATE_HTTP_TIMEOUT_SECONDS", "10")
    )
    relay_connect_timeout_seconds: float = float(
        os.getenv("RELAY_CONNECT_TIMEOUT_SECONDS", "5")
    )
    relay_ack_timeout_seconds: float = float(os.getenv("RELAY_ACK_TIMEOUT_SECONDS", "10"))
    relay_query_timeout_seconds: float = float(
        os.getenv("RELAY_QUERY_TIMEOUT_SECONDS", "10")
    )
    reauth_timeout_seconds: int = int(os.getenv("REAUTH_TIMEOUT_SECONDS", "300"))
    max_relays: int = int(os.getenv("MAX_RELAYS", "10"))
    kdf_iterations: int = int(os.getenv("KDF_ITERATIONS", "210000"))
    notice_concurrency: int = int(os.getenv("NOTICE_CONCURRENCY", "4"))
    default_currency: str = os.getenv("DEFAULT_CURRENCY", "USD")
    api_key: str = os.getenv("API_KEY", "")

    def __post_init__(self) -> None:
        if self.kdf_iterations < MIN_KDF_ITERATIONS:
            raise ValueError(f"kdf_iterations must be >= {MIN_KDF_ITERATIONS}")
        if self.max_relays < 1:
            raise ValueError("max_relays must be >= 1")
        if self.notice_concurrency < 1:
            raise ValueError("notice_concurrency must be >= 1")


settings = Settings()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso_millis(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + (
        f"{dt.microsecond // 1000:03d}Z"
    )
