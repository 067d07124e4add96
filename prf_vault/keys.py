"""Derivation of blob encryption keys from WebAuthn PRF output.

``derive_key`` runs HKDF-SHA256 over the 32-byte PRF output, salted with the
user's stored PRF salt, and yields a ``DerivedKey`` wrapping an AES-256-GCM
cipher. The same ``(prf_output, salt)`` pair always yields the same key, which
is what lets a later authentication decrypt an earlier blob.

Raw key bytes never leave a ``DerivedKey``: there is no accessor for them, the
repr is redacted, and pickling or copying is refused.
"""

from __future__ import annotations

import enum
import hmac
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import DecryptionFailed, InvalidKeyMaterial

PRF_OUTPUT_SIZE = 32
SALT_SIZE = 32
KEY_SIZE = 32
NONCE_SIZE = 12
HKDF_INFO = b"prf-vault aes-256-gcm v1"
SESSION_TOKEN_BYTES = 32


class KeyLifetime(str, enum.Enum):
    EPHEMERAL = "ephemeral"
    SESSION = "session"


class DerivedKey:
    """AES-256-GCM key that can encrypt and decrypt but not be exported."""

    __slots__ = ("_material", "_aead")

    def __init__(self, material: bytes) -> None:
        if len(material) != KEY_SIZE:
            raise InvalidKeyMaterial(f"Derived key must be {KEY_SIZE} bytes")
        self._material = bytes(material)
        self._aead = AESGCM(self._material)

    def encrypt(self, nonce: bytes, plaintext: bytes, associated_data: bytes | None = None) -> bytes:
        if len(nonce) != NONCE_SIZE:
            raise InvalidKeyMaterial(f"Nonce must be {NONCE_SIZE} bytes")
        return self._aead.encrypt(nonce, plaintext, associated_data)

    def decrypt(self, nonce: bytes, ciphertext: bytes, associated_data: bytes | None = None) -> bytes:
        if len(nonce) != NONCE_SIZE:
            raise InvalidKeyMaterial(f"Nonce must be {NONCE_SIZE} bytes")
        try:
            return self._aead.decrypt(nonce, ciphertext, associated_data)
        except InvalidTag as exc:
            raise DecryptionFailed() from exc

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DerivedKey):
            return NotImplemented
        return hmac.compare_digest(self._material, other._material)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return "DerivedKey(aes-256-gcm, <redacted>)"

    def __reduce_ex__(self, protocol):
        raise TypeError("DerivedKey cannot be serialized")


def _require_length(name: str, value: bytes, size: int) -> bytes:
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise InvalidKeyMaterial(f"{name} must be bytes")
    value = bytes(value)
    if len(value) != size:
        raise InvalidKeyMaterial(f"{name} must be {size} bytes, got {len(value)}")
    return value


def derive_key(prf_output: bytes, salt: bytes, info: bytes = HKDF_INFO) -> DerivedKey:
    ikm = _require_length("PRF output", prf_output, PRF_OUTPUT_SIZE)
    hkdf_salt = _require_length("PRF salt", salt, SALT_SIZE)
    hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=hkdf_salt, info=info)
    return DerivedKey(hkdf.derive(ikm))


class SessionKeyCache:
    """Derived keys held in memory for ``KeyLifetime.SESSION``.

    Each entry belongs to one authenticated session and is looked up by the
    opaque token handed out when the session was opened. A token only unlocks
    the key for the username it was issued to. Entries expire after ``ttl``
    seconds.
    """

    def __init__(self, ttl: float = 600, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, Tuple[str, DerivedKey, float]] = {}
        self._lock = threading.Lock()

    def issue(self, username: str, key: DerivedKey) -> str:
        token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
        now = self._clock()
        with self._lock:
            self._purge_locked(now)
            self._sessions[token] = (username, key, now + self.ttl)
        return token

    def get(self, token: str, username: str) -> Optional[DerivedKey]:
        with self._lock:
            entry = self._sessions.get(token)
            if entry is None:
                return None
            owner, key, expires_at = entry
            if self._clock() >= expires_at:
                del self._sessions[token]
                return None
            if not hmac.compare_digest(owner.encode("utf-8"), username.encode("utf-8")):
                return None
            return key

    def discard(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(token, None)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _purge_locked(self, now: float) -> None:
        expired = [token for token, (_, _, expires_at) in self._sessions.items() if now >= expires_at]
        for token in expired:
            del self._sessions[token]
