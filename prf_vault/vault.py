"""Encrypted blob lifecycle: one AES-GCM protected blob per user."""

from __future__ import annotations

import logging
import secrets

from .blobs import BlobStore, blob_key_for
from .credentials import get_blob_reference, require_user, save_blob_reference
from .database import Database
from .errors import BlobNotFound, DecryptionFailed, NoBlob, SaltMissing
from .keys import NONCE_SIZE, DerivedKey, derive_key

LOGGER = logging.getLogger(__name__)


class BlobVault:
    """Stores and recovers a user's blob using a caller-supplied derived key.

    Writes go blob first, record second. A failure between the two on a first
    write leaves an unreferenced object behind and ``check_exists`` stays
    false. On an overwrite the record keeps the previous nonce, so a later
    read fails GCM authentication instead of returning stale plaintext.
    """

    def __init__(self, db: Database, store: BlobStore) -> None:
        self.db = db
        self.store = store

    def user_key(self, username: str, prf_output: bytes) -> DerivedKey:
        """Derive ``username``'s blob key from a PRF output and the stored salt."""
        with self.db.session() as session:
            user = require_user(session, username)
            salt = user.prf_salt
        if salt is None:
            raise SaltMissing(f"No PRF salt stored for {username!r}")
        return derive_key(prf_output, salt)

    def encrypt_and_store(self, username: str, key: DerivedKey, plaintext: bytes) -> str:
        with self.db.session() as session:
            user = require_user(session, username)
            storage_key = blob_key_for(user.id)
            nonce = secrets.token_bytes(NONCE_SIZE)
            ciphertext = key.encrypt(nonce, plaintext, storage_key.encode("utf-8"))
            self.store.put(storage_key, ciphertext)
            save_blob_reference(session, user, storage_key, nonce)
        LOGGER.info("Stored %d byte blob for user id=%s at %s", len(ciphertext), user.id, storage_key)
        return storage_key

    def check_exists(self, username: str) -> bool:
        with self.db.session() as session:
            user = require_user(session, username)
            return get_blob_reference(session, user) is not None

    def retrieve_and_decrypt(self, username: str, key: DerivedKey) -> bytes:
        with self.db.session() as session:
            user = require_user(session, username)
            reference = get_blob_reference(session, user)
            user_id = user.id
        if reference is None:
            raise NoBlob(f"No blob stored for {username!r}")
        storage_key, nonce = reference
        ciphertext = self.store.get(storage_key)
        if ciphertext is None:
            LOGGER.error(
                "Inconsistent vault state: user id=%s references missing blob %s",
                user_id,
                storage_key,
            )
            raise BlobNotFound(f"Blob {storage_key} referenced for {username!r} is missing")
        try:
            plaintext = key.decrypt(nonce, ciphertext, storage_key.encode("utf-8"))
        except DecryptionFailed:
            LOGGER.warning("Authentication tag mismatch for user id=%s; PRF salt or key drifted", user_id)
            raise
        LOGGER.debug("Decrypted blob for user id=%s", user_id)
        return plaintext
