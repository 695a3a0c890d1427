from __future__ import annotations

import base64
import hashlib
import json
import os
from typing import Any, Mapping

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from authgate.logging import get_logger

logger = get_logger(__name__)

GCM_NONCE_BYTES = 12
GCM_TAG_BYTES = 16
TRANSPORT_FIELDS = ("iv", "authTag", "ciphertext")


class DecryptionError(Exception):
    """Ciphertext could not be authenticated or decoded with the configured key."""


def _key_from_hex(hex_key: str, *, name: str) -> bytes:
    try:
        key = bytes.fromhex(hex_key)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be hex encoded") from exc
    if len(key) != 32:
        raise ValueError(f"{name} must decode to 32 bytes")
    return key


class PasswordHasher:
    """argon2id password hashing with tunable cost."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, hashed: str) -> bool:
        try:
            return self._hasher.verify(hashed, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False


class FieldCipher:
    """Reversible encryption for fields stored at rest (phone numbers)."""

    def __init__(self, hex_key: str) -> None:
        key = _key_from_hex(hex_key, name="FIELD_ENCRYPTION_KEY")
        self._fernet = Fernet(base64.urlsafe_b64encode(key))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, AttributeError) as exc:
            raise DecryptionError("stored field could not be decrypted") from exc


class TransportCipher:
    """AES-256-GCM envelope for request and response bodies.

    Payloads travel as ``{"iv", "authTag", "ciphertext"}`` with each value hex
    encoded. A fresh 96-bit nonce is drawn for every message.
    """

    def __init__(self, hex_key: str) -> None:
        self._aead = AESGCM(_key_from_hex(hex_key, name="TRANSPORT_ENCRYPTION_KEY"))

    def encrypt(self, payload: Any) -> dict[str, str]:
        if isinstance(payload, str):
            plaintext = payload
        else:
            plaintext = json.dumps(payload, separators=(",", ":"))
        nonce = os.urandom(GCM_NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-GCM_TAG_BYTES], sealed[-GCM_TAG_BYTES:]
        return {
            "iv": nonce.hex(),
            "authTag": tag.hex(),
            "ciphertext": ciphertext.hex(),
        }

    def decrypt(self, payload: Any) -> str:
        if not isinstance(payload, Mapping):
            raise DecryptionError("transport payload must be an object")
        missing = [name for name in TRANSPORT_FIELDS if not payload.get(name)]
        if missing:
            raise DecryptionError(f"transport payload missing {', '.join(missing)}")
        try:
            nonce = bytes.fromhex(payload["iv"])
            tag = bytes.fromhex(payload["authTag"])
            ciphertext = bytes.fromhex(payload["ciphertext"])
        except (TypeError, ValueError) as exc:
            raise DecryptionError("transport payload is not hex encoded") from exc
        if len(nonce) != GCM_NONCE_BYTES or len(tag) != GCM_TAG_BYTES:
            raise DecryptionError("transport payload has malformed nonce or tag")
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError) as exc:
            raise DecryptionError("transport payload failed authentication") from exc


def parse_decrypted_payload(text: str) -> Any:
    """Turn decrypted transport text into a value: ``{}``, JSON, or the raw text."""
    stripped = text.strip()
    if not stripped:
        return {}
    try:
        return json.loads(stripped)
    except ValueError:
        return text


def is_transport_payload(value: Any) -> bool:
    return isinstance(value, Mapping) and all(
        isinstance(value.get(name), str) for name in TRANSPORT_FIELDS
    )


def hash_token_identifier(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
