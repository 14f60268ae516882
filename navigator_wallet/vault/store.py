"""
Key Record Stores — persistence of EncryptedKeyRecord, one per wallet.

``KeyRecordStore`` is the interface the vault depends on; backends only
move records in and out and never see plaintext key material.

Every backend must present ``update`` as a single atomic replace of the
whole record, and must raise ``StorageError`` for backend failures.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any

from .exceptions import StorageError, ValidationError
from .models import EncryptedKeyRecord

logger = logging.getLogger("navigator.wallet")


class KeyRecordStore(ABC):
    """Persistence interface for wallet key records."""

    @abstractmethod
    async def get_by_wallet_id(self, wallet_id: str) -> EncryptedKeyRecord | None:
        """Return the record of ``wallet_id`` or None."""

    @abstractmethod
    async def get_by_field(self, field: str, value: Any) -> list[EncryptedKeyRecord]:
        """Return every record whose ``field`` equals ``value``."""

    @abstractmethod
    async def create(self, record: EncryptedKeyRecord) -> EncryptedKeyRecord:
        """Persist a new record."""

    @abstractmethod
    async def update(self, wallet_id: str, record: EncryptedKeyRecord) -> EncryptedKeyRecord:
        """Atomically replace the record of ``wallet_id``."""

    @abstractmethod
    async def delete(self, wallet_id: str) -> bool:
        """Remove the record of ``wallet_id``; return whether one existed."""


def _check_field(field: str, allowed) -> None:
    if field not in allowed:
        raise ValidationError(f"Cannot look up wallet keys by field: {field}")


class MemoryKeyRecordStore(KeyRecordStore):
    """Dict-backed store for tests and single-process deployments.

    Records are copied on the way in and out so callers never share
    instances with the store.
    """

    def __init__(self):
        self._records: dict[str, EncryptedKeyRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def get_by_wallet_id(self, wallet_id: str) -> EncryptedKeyRecord | None:
        record = self._records.get(wallet_id)
        return record.model_copy() if record is not None else None

    async def get_by_field(self, field: str, value: Any) -> list[EncryptedKeyRecord]:
        _check_field(field, EncryptedKeyRecord.model_fields)
        return [
            record.model_copy()
            for record in self._records.values()
            if getattr(record, field) == value
        ]

    async def create(self, record: EncryptedKeyRecord) -> EncryptedKeyRecord:
        if not record.wallet_id:
            raise StorageError("Wallet key record has no wallet_id")
        if record.wallet_id in self._records:
            raise StorageError(f"Wallet {record.wallet_id} already has a key record")
        self._records[record.wallet_id] = record.model_copy()
        return record

    async def update(self, wallet_id: str, record: EncryptedKeyRecord) -> EncryptedKeyRecord:
        if wallet_id not in self._records:
            raise StorageError(f"No key record for wallet {wallet_id}")
        self._records[wallet_id] = record.model_copy(update={"wallet_id": wallet_id})
        return record

    async def delete(self, wallet_id: str) -> bool:
        return self._records.pop(wallet_id, None) is not None


# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_COLUMNS = (
    "id, wallet_id, ciphertext_key, wrapped_data_key, master_key_id, "
    "data_key_id, algorithm, kdf_iterations, pin_salt, pin_nonce, "
    "data_key_nonce, master_nonce, created_at, updated_at"
)

_SELECT_BY_WALLET = f"""
SELECT {_COLUMNS}
FROM wallet.wallet_keys
WHERE wallet_id = $1
"""

_SELECT_BY_FIELD = """
SELECT {columns}
FROM wallet.wallet_keys
WHERE {field} = $1
ORDER BY created_at
"""

_INSERT_KEY = f"""
INSERT INTO wallet.wallet_keys ({_COLUMNS})
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
"""

_UPDATE_KEY = """
UPDATE wallet.wallet_keys
SET ciphertext_key = $2, wrapped_data_key = $3, master_key_id = $4,
    data_key_id = $5, algorithm = $6, kdf_iterations = $7, pin_salt = $8,
    pin_nonce = $9, data_key_nonce = $10, master_nonce = $11, updated_at = $12
WHERE wallet_id = $1
"""

_DELETE_KEY = """
DELETE FROM wallet.wallet_keys
WHERE wallet_id = $1
"""

# Columns usable in get_by_field; never interpolate anything else.
_LOOKUP_FIELDS = frozenset({"wallet_id", "master_key_id", "data_key_id", "algorithm"})


class PgKeyRecordStore(KeyRecordStore):
    """Store backed by an asyncpg-compatible connection pool.

    Args:
        db_pool: Pool exposing ``acquire()`` as an async context manager
            whose connections provide ``fetchrow``, ``fetch`` and ``execute``.
    """

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def get_by_wallet_id(self, wallet_id: str) -> EncryptedKeyRecord | None:
        try:
            async with self._db.acquire() as conn:
                row = await conn.fetchrow(_SELECT_BY_WALLET, wallet_id)
        except Exception as err:
            logger.error("Failed to fetch wallet key for wallet=%s: %s", wallet_id, err)
            raise StorageError("Failed to fetch wallet key") from err
        return EncryptedKeyRecord.from_row(row) if row is not None else None

    async def get_by_field(self, field: str, value: Any) -> list[EncryptedKeyRecord]:
        _check_field(field, _LOOKUP_FIELDS)
        sql = _SELECT_BY_FIELD.format(columns=_COLUMNS, field=field)
        try:
            async with self._db.acquire() as conn:
                rows = await conn.fetch(sql, value)
        except Exception as err:
            logger.error("Failed to fetch wallet keys by %s: %s", field, err)
            raise StorageError("Failed to fetch wallet keys") from err
        return [EncryptedKeyRecord.from_row(row) for row in rows]

    async def create(self, record: EncryptedKeyRecord) -> EncryptedKeyRecord:
        try:
            async with self._db.acquire() as conn:
                await conn.execute(
                    _INSERT_KEY,
                    record.id, record.wallet_id, record.ciphertext_key,
                    record.wrapped_data_key, record.master_key_id,
                    record.data_key_id, record.algorithm, record.kdf_iterations,
                    record.pin_salt, record.pin_nonce, record.data_key_nonce,
                    record.master_nonce, record.created_at, record.updated_at,
                )
        except Exception as err:
            logger.error("Failed to store wallet key for wallet=%s: %s", record.wallet_id, err)
            raise StorageError("Failed to store wallet key") from err
        return record

    async def update(self, wallet_id: str, record: EncryptedKeyRecord) -> EncryptedKeyRecord:
        try:
            async with self._db.acquire() as conn:
                status = await conn.execute(
                    _UPDATE_KEY,
                    wallet_id, record.ciphertext_key, record.wrapped_data_key,
                    record.master_key_id, record.data_key_id, record.algorithm,
                    record.kdf_iterations, record.pin_salt, record.pin_nonce,
                    record.data_key_nonce, record.master_nonce, record.updated_at,
                )
        except Exception as err:
            logger.error("Failed to update wallet key for wallet=%s: %s", wallet_id, err)
            raise StorageError("Failed to update wallet key") from err
        if status == "UPDATE 0":
            raise StorageError(f"No key record for wallet {wallet_id}")
        return record

    async def delete(self, wallet_id: str) -> bool:
        try:
            async with self._db.acquire() as conn:
                status = await conn.execute(_DELETE_KEY, wallet_id)
        except Exception as err:
            logger.error("Failed to delete wallet key for wallet=%s: %s", wallet_id, err)
            raise StorageError("Failed to delete wallet key") from err
        return status != "DELETE 0"
