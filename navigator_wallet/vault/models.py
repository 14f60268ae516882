"""
Wallet Key Models — persisted key records and rotation reports.

Binary values (ciphertexts, nonces, salts) are kept as lowercase hex
strings so records survive JSON and any transport unchanged.
"""
import re
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import orjson
from pydantic import (
    BaseModel,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from .crypto import (
    KEY_LENGTH,
    NONCE_SIZE,
    SALT_SIZE,
    TAG_SIZE,
    SUPPORTED_ALGORITHMS,
    DEFAULT_ALGORITHM,
    PBKDF2_ITERATIONS,
)
from .exceptions import ValidationError

_HEX_PATTERN = re.compile(r"(?:[0-9a-fA-F]{2})*")

# Exact decoded sizes of the fixed-width binary fields.
_FIXED_SIZES = {
    "pin_salt": SALT_SIZE,
    "pin_nonce": NONCE_SIZE,
    "data_key_nonce": NONCE_SIZE,
    "master_nonce": NONCE_SIZE,
    "wrapped_data_key": KEY_LENGTH + TAG_SIZE,
}

# Fields replaced whenever a record is re-wrapped.
ENVELOPE_FIELDS = (
    "ciphertext_key",
    "wrapped_data_key",
    "master_key_id",
    "data_key_id",
    "algorithm",
    "kdf_iterations",
    "pin_salt",
    "pin_nonce",
    "data_key_nonce",
    "master_nonce",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EncryptedKeyRecord(BaseModel):
    """Encrypted private key of one wallet.

    ``ciphertext_key`` is the PIN-layer ciphertext sealed again under the
    wallet data key; ``wrapped_data_key`` is that data key sealed under
    the master key identified by ``master_key_id``.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    wallet_id: str = ""
    ciphertext_key: str
    wrapped_data_key: str
    master_key_id: str = Field(min_length=1)
    data_key_id: str = Field(min_length=1)
    algorithm: str = DEFAULT_ALGORITHM
    kdf_iterations: int = Field(default=PBKDF2_ITERATIONS, ge=1)
    pin_salt: str
    pin_nonce: str
    data_key_nonce: str
    master_nonce: str
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator(
        "ciphertext_key",
        "wrapped_data_key",
        "pin_salt",
        "pin_nonce",
        "data_key_nonce",
        "master_nonce",
    )
    @classmethod
    def validate_hex(cls, v: str) -> str:
        """Ensure binary fields are valid hex."""
        if not _HEX_PATTERN.fullmatch(v):
            raise ValueError("must be a hex-encoded string")
        return v.lower()

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        if v not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported encryption algorithm: {v}")
        return v

    @model_validator(mode="after")
    def validate_sizes(self) -> "EncryptedKeyRecord":
        """Reject truncated or padded fixed-width fields."""
        for name, size in _FIXED_SIZES.items():
            actual = len(getattr(self, name)) // 2
            if actual != size:
                raise ValueError(
                    f"{name} must decode to {size} bytes, got {actual}"
                )
        if len(self.ciphertext_key) // 2 < 2 * TAG_SIZE:
            raise ValueError("ciphertext_key is too short")
        return self

    def raw(self, name: str) -> bytes:
        """Return a hex field decoded to bytes."""
        return bytes.fromhex(getattr(self, name))

    def rewrapped(self, fresh: "EncryptedKeyRecord") -> "EncryptedKeyRecord":
        """Return this record carrying the envelope of ``fresh``.

        Identity fields (``id``, ``wallet_id``, ``created_at``) are kept.
        """
        update = {name: getattr(fresh, name) for name in ENVELOPE_FIELDS}
        update["updated_at"] = _utcnow()
        return self.model_copy(update=update)

    # ------------------------------------------------------------------
    # Storage format
    # ------------------------------------------------------------------

    def to_storage(self) -> bytes:
        """Serialize to orjson-encoded bytes."""
        return orjson.dumps(self.model_dump(mode="json"))

    @classmethod
    def from_storage(cls, data: bytes | str) -> "EncryptedKeyRecord":
        """Parse a record produced by :meth:`to_storage`.

        Raises:
            ValidationError: If the data is not a well-formed record.
        """
        try:
            parsed = orjson.loads(data)
        except orjson.JSONDecodeError:
            raise ValidationError("Malformed wallet key record") from None
        if not isinstance(parsed, dict):
            raise ValidationError("Malformed wallet key record")
        return cls.from_row(parsed)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EncryptedKeyRecord":
        """Build a record from a mapping such as a database row.

        Raises:
            ValidationError: If required fields are missing or malformed.
        """
        try:
            return cls.model_validate(dict(row))
        except PydanticValidationError as err:
            fields = sorted({str(e["loc"][0]) for e in err.errors() if e["loc"]})
            raise ValidationError(
                f"Malformed wallet key record (fields: {', '.join(fields) or '-'})"
            ) from None


class RotationReport(BaseModel):
    """Outcome of a batch master-key rotation, for operators only."""

    old_master_key_id: str
    new_master_key_id: str
    total: int = 0
    success_count: int = 0
    already_migrated: int = 0
    failed_wallet_ids: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
    deferred_wallet_ids: list[str] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def failure_count(self) -> int:
        return len(self.failed_wallet_ids)

    @property
    def pending(self) -> int:
        """Records not visited because the batch was cancelled."""
        return self.total - (
            self.success_count
            + self.already_migrated
            + len(self.failed_wallet_ids)
            + len(self.deferred_wallet_ids)
        )

    def record_failure(self, wallet_id: str, err: BaseException) -> None:
        self.failed_wallet_ids.append(wallet_id)
        self.errors[wallet_id] = type(err).__name__

    def merge(self, other: "RotationReport") -> None:
        """Fold the report of another source master key into this one."""
        self.total += other.total
        self.success_count += other.success_count
        self.already_migrated += other.already_migrated
        self.failed_wallet_ids.extend(other.failed_wallet_ids)
        self.errors.update(other.errors)
        self.deferred_wallet_ids.extend(other.deferred_wallet_ids)
        self.cancelled = self.cancelled or other.cancelled
