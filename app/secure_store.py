"""Encrypted key/value storage for credentials and sync cursors."""

import logging
from typing import Optional

import aiosqlite

from app.encryption import EncryptionManager
from app.errors import LocalDataError, UnauthorizedError
from app.models import to_db_time, utcnow

logger = logging.getLogger(__name__)


class SecureStore:
    """``get/set/delete(key) -> bytes`` over the ``secure_items`` table.

    Values are sealed with AES-GCM and bound to their key.
    """

    def __init__(self, db: aiosqlite.Connection, encryption: EncryptionManager):
        self.db = db
        self.encryption = encryption

    async def get(self, key: str) -> Optional[bytes]:
        """Return the decrypted value, or None when the key is absent.

        Raises ``DecryptionError`` when the stored value cannot be opened.
        """
        try:
            cursor = await self.db.execute(
                "SELECT value_encrypted FROM secure_items WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise LocalDataError(f"read secure item {key}", e) from e
        if row is None:
            return None
        return self.encryption.decrypt_bytes(row["value_encrypted"], key.encode("utf-8"))

    async def set(self, key: str, value: bytes) -> None:
        sealed = self.encryption.encrypt(value, key.encode("utf-8"))
        try:
            await self.db.execute(
                """INSERT INTO secure_items (key, value_encrypted, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                   value_encrypted = excluded.value_encrypted,
                   updated_at = excluded.updated_at""",
                (key, sealed, to_db_time(utcnow())),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise LocalDataError(f"write secure item {key}", e) from e

    async def delete(self, key: str) -> None:
        try:
            await self.db.execute("DELETE FROM secure_items WHERE key = ?", (key,))
            await self.db.commit()
        except aiosqlite.Error as e:
            raise LocalDataError(f"delete secure item {key}", e) from e


class StoredAccessTokenProvider:
    """Access-token provider reading a bearer token placed in secure storage.

    Acquiring and refreshing the token is someone else's job; this only hands
    out whatever is currently stored.
    """

    def __init__(self, secure_store: SecureStore, key: str):
        self.secure_store = secure_store
        self.key = key

    async def get_access_token(self) -> str:
        value = await self.secure_store.get(self.key)
        if not value:
            raise UnauthorizedError("No access token available")
        return value.decode("utf-8")

    async def set_access_token(self, token: str) -> None:
        await self.secure_store.set(self.key, token.encode("utf-8"))
