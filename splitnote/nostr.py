import base64
import hashlib
import json
import re
import secrets
from typing import List, Optional, Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from ecdsa import SECP256k1
from ecdsa.ellipticcurve import INFINITY, PointJacobi

from .errors import InvalidPublicKey
from .models import Event, UnsignedEvent


G = SECP256k1.generator
N = SECP256k1.order
P = SECP256k1.curve.p()

_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_HEX_PUBKEY = re.compile(r"[0-9a-f]{64}")


class ProtocolError(ValueError):
    pass


def generate_secret() -> bytes:
    while True:
        candidate = secrets.token_bytes(32)
        if 1 <= int.from_bytes(candidate, "big") < N:
            return candidate


def public_key_hex(secret: bytes) -> str:
    d = _secret_scalar(secret)
    point = d * G
    return int(point.x()).to_bytes(32, "big").hex()


def is_valid_pubkey(pubkey: str) -> bool:
    if not isinstance(pubkey, str) or not _HEX_PUBKEY.fullmatch(pubkey):
        return False
    return _lift_x(int(pubkey, 16)) is not None


def _secret_scalar(secret: bytes) -> int:
    if len(secret) != 32:
        raise ProtocolError("secret key must be 32 bytes")
    d = int.from_bytes(secret, "big")
    if not 1 <= d < N:
        raise ProtocolError("secret key out of range")
    return d


def _lift_x(x: int) -> Optional[PointJacobi]:
    if not 0 <= x < P:
        return None
    c = (pow(x, 3, P) + 7) % P
    y = pow(c, (P + 1) // 4, P)
    if (y * y) % P != c:
        return None
    if y & 1:
        y = P - y
    return PointJacobi(SECP256k1.curve, x, y, 1, N)


def _tagged_hash(tag: str, data: bytes) -> bytes:
    tag_hash = hashlib.sha256(tag.encode("ascii")).digest()
    return hashlib.sha256(tag_hash + tag_hash + data).digest()


def schnorr_sign(message: bytes, secret: bytes, aux: Optional[bytes] = None) -> bytes:
    if len(message) != 32:
        raise ProtocolError("message must be a 32-byte digest")
    d0 = _secret_scalar(secret)
    point = d0 * G
    d = N - d0 if point.y() & 1 else d0
    px = int(point.x()).to_bytes(32, "big")

    aux = aux if aux is not None else secrets.token_bytes(32)
    t = bytes(a ^ b for a, b in zip(d.to_bytes(32, "big"), _tagged_hash("BIP0340/aux", aux)))
    k0 = int.from_bytes(_tagged_hash("BIP0340/nonce", t + px + message), "big") % N
    if k0 == 0:
        raise ProtocolError("nonce generation failed")

    nonce_point = k0 * G
    k = N - k0 if nonce_point.y() & 1 else k0
    rx = int(nonce_point.x()).to_bytes(32, "big")
    e = int.from_bytes(_tagged_hash("BIP0340/challenge", rx + px + message), "big") % N
    return rx + ((k + e * d) % N).to_bytes(32, "big")


def schnorr_verify(message: bytes, pubkey: bytes, signature: bytes) -> bool:
    if len(message) != 32 or len(pubkey) != 32 or len(signature) != 64:
        return False
    point = _lift_x(int.from_bytes(pubkey, "big"))
    if point is None:
        return False
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")
    if r >= P or s >= N:
        return False
    e = int.from_bytes(
        _tagged_hash("BIP0340/challenge", signature[:32] + pubkey + message), "big"
    ) % N
    candidate = G.mul_add(s, point, (N - e) % N)
    if candidate == INFINITY:
        return False
    return not (candidate.y() & 1) and candidate.x() == r


def serialize_for_id(event: UnsignedEvent) -> str:
    return json.dumps(
        [0, event.pubkey, event.created_at, event.kind, event.tags, event.content],
        separators=(",", ":"),
        ensure_ascii=False,
    )


def event_id(event: UnsignedEvent) -> str:
    return hashlib.sha256(serialize_for_id(event).encode("utf-8")).hexdigest()


def finalize_event(event: UnsignedEvent, secret: bytes) -> Event:
    if public_key_hex(secret) != event.pubkey:
        raise ProtocolError("secret key does not match event pubkey")
    digest = event_id(event)
    sig = schnorr_sign(bytes.fromhex(digest), secret)
    return Event(**event.model_dump(), id=digest, sig=sig.hex())


def verify_event(event: Event) -> bool:
    if event_id(event) != event.id:
        return False
    try:
        return schnorr_verify(
            bytes.fromhex(event.id), bytes.fromhex(event.pubkey), bytes.fromhex(event.sig)
        )
    except ValueError:
        return False


def _shared_secret(secret: bytes, pubkey: str) -> bytes:
    point = _lift_x(int(pubkey, 16)) if len(pubkey) == 64 else None
    if point is None:
        raise InvalidPublicKey(f"Invalid public key: {pubkey}")
    shared = _secret_scalar(secret) * point
    return int(shared.x()).to_bytes(32, "big")


def encrypt_dm(secret: bytes, recipient_pubkey: str, plaintext: str) -> str:
    key = _shared_secret(secret, recipient_pubkey)
    iv = secrets.token_bytes(16)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return (
        base64.b64encode(ciphertext).decode("ascii")
        + "?iv="
        + base64.b64encode(iv).decode("ascii")
    )


def decrypt_dm(secret: bytes, sender_pubkey: str, payload: str) -> str:
    try:
        encoded, iv_part = payload.split("?iv=", 1)
        ciphertext = base64.b64decode(encoded, validate=True)
        iv = base64.b64decode(iv_part, validate=True)
    except ValueError as exc:
        raise ProtocolError("malformed encrypted payload") from exc
    key = _shared_secret(secret, sender_pubkey)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(128).unpadder()
    return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")


def _bech32_polymod(values: List[int]) -> int:
    generator = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= generator[i] if ((top >> i) & 1) else 0
    return chk


def _hrp_expand(hrp: str) -> List[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_bits(data: bytes, from_bits: int, to_bits: int, pad: bool) -> List[int]:
    acc = 0
    bits = 0
    out: List[int] = []
    maxv = (1 << to_bits) - 1
    for value in data:
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            out.append((acc >> bits) & maxv)
    if pad and bits:
        out.append((acc << (to_bits - bits)) & maxv)
    elif not pad and (bits >= from_bits or ((acc << (to_bits - bits)) & maxv)):
        raise ProtocolError("invalid bech32 padding")
    return out


def bech32_encode(hrp: str, payload: bytes) -> str:
    data = _convert_bits(payload, 8, 5, True)
    polymod = _bech32_polymod(_hrp_expand(hrp) + data + [0] * 6) ^ 1
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(_BECH32_CHARSET[d] for d in data + checksum)


def bech32_decode(value: str) -> Tuple[str, bytes]:
    if value.lower() != value and value.upper() != value:
        raise ProtocolError("mixed-case bech32 string")
    value = value.lower()
    pos = value.rfind("1")
    if pos < 1 or pos + 7 > len(value):
        raise ProtocolError("invalid bech32 separator position")
    hrp = value[:pos]
    try:
        data = [_BECH32_CHARSET.index(c) for c in value[pos + 1 :]]
    except ValueError as exc:
        raise ProtocolError("invalid bech32 character") from exc
    if _bech32_polymod(_hrp_expand(hrp) + data) != 1:
        raise ProtocolError("invalid bech32 checksum")
    return hrp, bytes(_convert_bits(bytes(data[:-6]), 5, 8, False))


def npub_encode(pubkey: str) -> str:
    return bech32_encode("npub", bytes.fromhex(pubkey))


def npub_decode(npub: str) -> str:
    hrp, payload = bech32_decode(npub)
    if hrp != "npub" or len(payload) != 32:
        raise InvalidPublicKey("Invalid npub format")
    return payload.hex()


def nsec_decode(nsec: str) -> bytes:
    hrp, payload = bech32_decode(nsec)
    if hrp != "nsec" or len(payload) != 32:
        raise ProtocolError("Invalid nsec format")
    return payload


def decode_secret(value: str) -> bytes:
    """Accept a 64-char hex secret or an ``nsec1`` string."""
    value = value.strip()
    if value.startswith("nsec1"):
        secret = nsec_decode(value)
    else:
        try:
            secret = bytes.fromhex(value)
        except ValueError as exc:
            raise ProtocolError("secret key must be hex or nsec") from exc
    _secret_scalar(secret)
    return secret
