"""Password-based protection of the signing key at rest.

Salt policy: every ``encrypt`` call draws a fresh 16-byte random salt, and the
PBKDF2 salt input is ``KDF_DOMAIN_SALT || random_salt``. The domain prefix
scopes derivations to this application; the random part guarantees a new key
(and with it a new nonce space) per token. The random salt and the 96-bit GCM
nonce travel inside the token, so decryption needs only the password.
"""

import asyncio
import base64
import binascii
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timedelta
import logging
import secrets
from typing import AsyncIterator, Callable, Iterator, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import KDF_DOMAIN_SALT, MIN_KDF_ITERATIONS, settings, utc_now
from .errors import DecryptionFailed
from .models import StoredKey
from .nostr import decode_secret, public_key_hex


logger = logging.getLogger(__name__)

TOKEN_VERSION = 1
SALT_BYTES = 16
NONCE_BYTES = 12
KEY_BYTES = 32
TAG_BYTES = 16


def _wipe(buffer: bytearray) -> None:
    for index in range(len(buffer)):
        buffer[index] = 0


class KeyVault:
    def __init__(self, iterations: int = settings.kdf_iterations) -> None:
        if iterations < MIN_KDF_ITERATIONS:
            raise ValueError(f"iterations must be >= {MIN_KDF_ITERATIONS}")
        self.iterations = iterations

    def _derive(self, password: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_BYTES,
            salt=KDF_DOMAIN_SALT + salt,
            iterations=self.iterations,
        )
        return kdf.derive(password.encode("utf-8"))

    def encrypt(self, secret: bytes, password: str) -> str:
        salt = secrets.token_bytes(SALT_BYTES)
        nonce = secrets.token_bytes(NONCE_BYTES)
        key = self._derive(password, salt)
        ciphertext = AESGCM(key).encrypt(nonce, bytes(secret), KDF_DOMAIN_SALT)
        blob = bytes([TOKEN_VERSION]) + salt + nonce + ciphertext
        return base64.b64encode(blob).decode("ascii")

    def decrypt(self, token: str, password: str) -> bytes:
        try:
            blob = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionFailed("Unable to decrypt secret") from exc
        header = 1 + SALT_BYTES + NONCE_BYTES
        if len(blob) < header + TAG_BYTES or blob[0] != TOKEN_VERSION:
            raise DecryptionFailed("Unable to decrypt secret")
        salt = blob[1 : 1 + SALT_BYTES]
        nonce = blob[1 + SALT_BYTES : header]
        key = self._derive(password, salt)
        try:
            return AESGCM(key).decrypt(nonce, blob[header:], KDF_DOMAIN_SALT)
        except InvalidTag as exc:
            raise DecryptionFailed("Unable to decrypt secret") from exc

    @contextmanager
    def unlocked(self, token: str, password: str) -> Iterator[bytearray]:
        """Yield the decrypted secret and wipe the buffer on exit."""
        buffer = bytearray(self.decrypt(token, password))
        try:
            yield buffer
        finally:
            _wipe(buffer)

    @asynccontextmanager
    async def unlocking(self, token: str, password: str) -> AsyncIterator[bytearray]:
        """Async form of :meth:`unlocked`; key derivation runs in a worker thread."""
        buffer = bytearray(await asyncio.to_thread(self.decrypt, token, password))
        try:
            yield buffer
        finally:
            _wipe(buffer)

    def seal_key(
        self,
        secret: str,
        password: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> StoredKey:
        raw = decode_secret(secret)
        now = clock()
        stored = StoredKey(
            pubkey=public_key_hex(raw),
            encrypted_secret=self.encrypt(raw, password),
            created_at=now,
            last_used=now,
        )
        logger.info("Sealed signing key for %s", stored.pubkey)
        return stored


class ReauthSession:
    def __init__(
        self,
        timeout_seconds: int = settings.reauth_timeout_seconds,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.timeout = timedelta(seconds=timeout_seconds)
        self.clock = clock
        self.last_auth: Optional[datetime] = None

    def record_success(self) -> None:
        self.last_auth = self.clock()

    def lock(self) -> None:
        self.last_auth = None

    def needs_reauth(self) -> bool:
        if self.last_auth is None:
            return True
        return self.clock() - self.last_auth > self.timeout
