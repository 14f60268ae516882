"""Wallet Vault — PIN-protected envelope encryption of custodial wallet keys.

Security Note (Threat Model):
    Unwrapped data keys are cached in process memory and private keys are
    decrypted in process memory while a caller signs with them. A memory
    dump of the application process could expose both. Keeping keys out of
    process memory needs an HSM or secure enclave, which this package does
    not integrate.
"""

from .key_vault import WalletKeyVault
from .service import WalletEncryptionService, validate_pin
from .cache import DataKeyCache
from .models import EncryptedKeyRecord, RotationReport
from .store import KeyRecordStore, MemoryKeyRecordStore, PgKeyRecordStore
from .key_rotation import rotate_master_key, rotate_all_master_keys
from .config import VaultConfig, load_master_keys, generate_master_key
from .exceptions import (
    WalletVaultError,
    ValidationError,
    AuthenticationFailure,
    InvalidKeyLength,
    NotFound,
    StorageError,
    ConfigurationError,
)

__all__ = [
    "WalletKeyVault",
    "WalletEncryptionService",
    "validate_pin",
    "DataKeyCache",
    "EncryptedKeyRecord",
    "RotationReport",
    "KeyRecordStore",
    "MemoryKeyRecordStore",
    "PgKeyRecordStore",
    "rotate_master_key",
    "rotate_all_master_keys",
    "VaultConfig",
    "load_master_keys",
    "generate_master_key",
    "WalletVaultError",
    "ValidationError",
    "AuthenticationFailure",
    "InvalidKeyLength",
    "NotFound",
    "StorageError",
    "ConfigurationError",
]
