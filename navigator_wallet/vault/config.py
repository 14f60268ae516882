"""
Wallet Vault Configuration — Master key loading and validated settings.

Reads master keys from environment variables in the format:
    WALLET_MASTER_KEY_{id} = <base64-encoded 32-byte key>
    WALLET_ACTIVE_MASTER_KEY_ID = <id>

Optional settings:
    WALLET_CIPHER_ALGORITHM = AES-256-GCM | ChaCha20-Poly1305
    WALLET_KDF_ITERATIONS = <int>
    WALLET_CRYPTO_WORKERS = <int>

Security Note:
    Never log key material. Only log key IDs.
"""
import os
import re
import base64
import binascii
import secrets
import logging
from collections.abc import Mapping

from pydantic import (
    BaseModel,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from .crypto import KEY_LENGTH, PBKDF2_ITERATIONS, DEFAULT_ALGORITHM, SUPPORTED_ALGORITHMS
from .exceptions import ConfigurationError

logger = logging.getLogger("navigator.wallet")

_KEY_ENV_PATTERN = re.compile(r"^WALLET_MASTER_KEY_(\w+)$")


def load_master_keys(environ: Mapping[str, str] | None = None) -> dict[str, bytes]:
    """Load master keys from WALLET_MASTER_KEY_{id} environment variables.

    Each value must be base64-encoded and decode to exactly 32 bytes.

    Args:
        environ: Mapping to read instead of ``os.environ``.

    Returns:
        Mapping of master key id to raw 32-byte key.

    Raises:
        ConfigurationError: If no key is found or a key is malformed.
    """
    environ = os.environ if environ is None else environ
    keys: dict[str, bytes] = {}
    for name, value in environ.items():
        match = _KEY_ENV_PATTERN.match(name)
        if match:
            key_id = match.group(1)
            try:
                key_bytes = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError):
                raise ConfigurationError(f"{name} is not valid base64") from None
            if len(key_bytes) != KEY_LENGTH:
                raise ConfigurationError(
                    f"{name} must decode to exactly {KEY_LENGTH} bytes, "
                    f"got {len(key_bytes)}"
                )
            keys[key_id] = key_bytes
    if not keys:
        raise ConfigurationError(
            "No wallet master keys found in environment. "
            "Set WALLET_MASTER_KEY_v1=<base64-encoded-32-byte-key>"
        )
    logger.debug("Loaded %d master key version(s): %s", len(keys), sorted(keys))
    return keys


def get_active_key_id(environ: Mapping[str, str] | None = None) -> str:
    """Read the active master key id from WALLET_ACTIVE_MASTER_KEY_ID.

    Raises:
        ConfigurationError: If the variable is not set.
    """
    environ = os.environ if environ is None else environ
    raw = environ.get("WALLET_ACTIVE_MASTER_KEY_ID")
    if not raw:
        raise ConfigurationError(
            "WALLET_ACTIVE_MASTER_KEY_ID environment variable is not set"
        )
    return raw


def generate_master_key() -> str:
    """Generate a random 32-byte master key and return as base64 string.

    This is a utility for operators to generate new keys.
    """
    return base64.b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


class VaultConfig(BaseModel):
    """Validated wallet vault configuration."""

    master_keys: dict[str, bytes]
    active_key_id: str
    algorithm: str = Field(default=DEFAULT_ALGORITHM)
    kdf_iterations: int = Field(default=PBKDF2_ITERATIONS, ge=10_000)
    crypto_workers: int = Field(default=4, ge=1, le=64)

    model_config = {"arbitrary_types_allowed": True}

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        """Validate the AEAD algorithm is supported."""
        if v not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported cipher algorithm: {v}")
        return v

    @field_validator("master_keys")
    @classmethod
    def validate_key_lengths(cls, v: dict[str, bytes]) -> dict[str, bytes]:
        for key_id, key in v.items():
            if len(key) != KEY_LENGTH:
                raise ValueError(
                    f"master key {key_id} must be {KEY_LENGTH} bytes"
                )
        return v

    @model_validator(mode="after")
    def validate_active_key_exists(self) -> "VaultConfig":
        """Ensure active_key_id is present in master_keys."""
        if self.active_key_id not in self.master_keys:
            raise ValueError(
                f"active_key_id {self.active_key_id} not found in "
                f"master_keys (available: {sorted(self.master_keys)})"
            )
        return self

    @property
    def active_master_key(self) -> tuple[str, bytes]:
        """Return the active ``(key_id, key_bytes)`` tuple."""
        return self.active_key_id, self.master_keys[self.active_key_id]

    @classmethod
    def build(cls, **kwargs) -> "VaultConfig":
        """Validate settings, turning any failure into ConfigurationError."""
        try:
            return cls(**kwargs)
        except PydanticValidationError as err:
            problems = "; ".join(e["msg"] for e in err.errors())
            raise ConfigurationError(
                f"Invalid wallet vault configuration: {problems}"
            ) from None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Raises:
            ConfigurationError: If any setting is missing or invalid.
        """
        environ = os.environ if environ is None else environ
        settings = {
            "master_keys": load_master_keys(environ),
            "active_key_id": get_active_key_id(environ),
            "algorithm": environ.get("WALLET_CIPHER_ALGORITHM", DEFAULT_ALGORITHM),
        }
        for field, var in (
            ("kdf_iterations", "WALLET_KDF_ITERATIONS"),
            ("crypto_workers", "WALLET_CRYPTO_WORKERS"),
        ):
            raw = environ.get(var)
            if raw is None:
                continue
            try:
                settings[field] = int(raw)
            except ValueError:
                raise ConfigurationError(f"{var} must be an integer") from None
        return cls.build(**settings)
