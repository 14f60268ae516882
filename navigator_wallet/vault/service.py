"""
WalletEncryptionService — three-layer envelope encryption of wallet keys.

    private key --PIN key--> pin ciphertext --data key--> ciphertext_key
    data key --master key--> wrapped_data_key

The service owns one master key and its Data-Key Cache. Rotating the
master key means building a new service (fresh cache) and re-wrapping
records with it; see ``key_rotation``.

Security Note:
    Never log PINs, keys, plaintext or ciphertext. Only log wallet ids,
    data key ids and master key ids.
"""
import re
import hmac
import uuid
import asyncio
import logging
import functools
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any

from .cache import DataKeyCache
from .crypto import (
    KEY_LENGTH,
    PBKDF2_ITERATIONS,
    DEFAULT_ALGORITHM,
    SUPPORTED_ALGORITHMS,
    derive_key,
    encrypt,
    decrypt,
    generate_data_key,
    generate_nonce,
    generate_salt,
)
from .exceptions import (
    AuthenticationFailure,
    ConfigurationError,
    InvalidKeyLength,
    ValidationError,
)
from .models import EncryptedKeyRecord

logger = logging.getLogger("navigator.wallet")

_PIN_PATTERN = re.compile(r"[0-9]{6}")


def validate_pin(pin: Any) -> None:
    """Validate a wallet PIN.

    Raises:
        ValidationError: If the PIN is not exactly six ASCII digits.
    """
    if not isinstance(pin, str) or not _PIN_PATTERN.fullmatch(pin):
        raise ValidationError("PIN must be exactly 6 digits")


def validate_private_key(private_key: Any) -> bytes:
    if isinstance(private_key, str):
        private_key = private_key.encode("utf-8")
    if not isinstance(private_key, (bytes, bytearray)) or not private_key:
        raise ValidationError("Private key must be non-empty bytes")
    return bytes(private_key)


def _data_layer_aad(data_key_id: str, wrapped_data_key: bytes, master_nonce: bytes) -> bytes:
    # binds ciphertext_key to its own data key and wrapping
    return data_key_id.encode("utf-8") + b"|" + wrapped_data_key + master_nonce


def _master_layer_aad(master_key_id: str, data_key_id: str) -> bytes:
    return master_key_id.encode("utf-8") + b"|" + data_key_id.encode("utf-8")


class WalletEncryptionService:
    """Wraps and unwraps wallet private keys under one master key.

    Args:
        master_key_id: Identifier stored in every record this service wraps.
        master_key: Raw 32-byte master key.
        cache: Data-Key Cache owned by this service; a new one by default.
        algorithm: AEAD algorithm for new records.
        kdf_iterations: PBKDF2 work factor for new records.
        executor: Worker pool for KDF and AEAD calls. ``None`` uses the
            event loop's default executor.

    Raises:
        ConfigurationError: If the master key, its id or the algorithm is
            invalid.
    """

    def __init__(
        self,
        master_key_id: str,
        master_key: bytes,
        *,
        cache: DataKeyCache | None = None,
        algorithm: str = DEFAULT_ALGORITHM,
        kdf_iterations: int = PBKDF2_ITERATIONS,
        executor: Executor | None = None,
    ):
        if not master_key_id:
            raise ConfigurationError("Master key id is required")
        if not isinstance(master_key, (bytes, bytearray)) or len(master_key) != KEY_LENGTH:
            raise ConfigurationError(
                f"Master key {master_key_id} must be {KEY_LENGTH} bytes"
            )
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigurationError(f"Unsupported cipher algorithm: {algorithm}")
        if kdf_iterations < 1:
            raise ConfigurationError("kdf_iterations must be positive")
        self._master_key_id = master_key_id
        self._master_key = bytes(master_key)
        self._cache = cache if cache is not None else DataKeyCache()
        self._algorithm = algorithm
        self._kdf_iterations = kdf_iterations
        self._executor = executor
        self._owns_executor = False

    def __repr__(self) -> str:
        return (
            f"<WalletEncryptionService master_key_id={self._master_key_id!r} "
            f"algorithm={self._algorithm!r} cached={len(self._cache)}>"
        )

    @property
    def master_key_id(self) -> str:
        return self._master_key_id

    @property
    def algorithm(self) -> str:
        return self._algorithm

    @property
    def cache(self) -> DataKeyCache:
        return self._cache

    @property
    def executor(self) -> Executor | None:
        return self._executor

    def holds_key(self, master_key: bytes) -> bool:
        """Return whether this service wraps with exactly ``master_key``."""
        if not isinstance(master_key, (bytes, bytearray)):
            return False
        return hmac.compare_digest(self._master_key, bytes(master_key))

    def same_master_key(self, other: "WalletEncryptionService") -> bool:
        return other.holds_key(self._master_key)

    def close(self) -> None:
        """Shut down the crypto pool if this service created it."""
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            logger.debug("Closed crypto pool of master key %s", self._master_key_id)

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config,
        executor: Executor | None = None,
        master_key_id: str | None = None,
    ) -> "WalletEncryptionService":
        """Build a service for one master key of a ``VaultConfig``.

        Args:
            config: Validated ``VaultConfig``.
            executor: Shared crypto pool; a dedicated pool is created if
                omitted and shut down by ``close()``.
            master_key_id: Key version to use; the active one by default.
        """
        key_id = master_key_id or config.active_key_id
        if key_id not in config.master_keys:
            raise ConfigurationError(f"Master key {key_id} is not configured")
        owned = executor is None
        if owned:
            executor = ThreadPoolExecutor(
                max_workers=config.crypto_workers,
                thread_name_prefix="wallet-crypto",
            )
        service = cls(
            key_id,
            config.master_keys[key_id],
            algorithm=config.algorithm,
            kdf_iterations=config.kdf_iterations,
            executor=executor,
        )
        service._owns_executor = owned
        return service

    def successor(self, master_key_id: str, master_key: bytes) -> "WalletEncryptionService":
        """Return a service for a new master key with a fresh cache.

        Algorithm, work factor and worker pool are inherited.
        """
        return type(self)(
            master_key_id,
            master_key,
            algorithm=self._algorithm,
            kdf_iterations=self._kdf_iterations,
            executor=self._executor,
        )

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(func, *args)
        )

    # ------------------------------------------------------------------
    # Wrap
    # ------------------------------------------------------------------

    def _seal(self, private_key: bytes, pin: str, data_key_id: str) -> tuple[dict, bytes]:
        algorithm = self._algorithm
        pin_salt = generate_salt()
        pin_key = derive_key(pin, pin_salt, self._kdf_iterations)
        pin_nonce = generate_nonce()
        pin_ciphertext = encrypt(private_key, pin_key, pin_nonce, algorithm=algorithm)

        data_key = generate_data_key()
        master_nonce = generate_nonce()
        wrapped_data_key = encrypt(
            data_key,
            self._master_key,
            master_nonce,
            _master_layer_aad(self._master_key_id, data_key_id),
            algorithm=algorithm,
        )
        data_key_nonce = generate_nonce()
        ciphertext_key = encrypt(
            pin_ciphertext,
            data_key,
            data_key_nonce,
            _data_layer_aad(data_key_id, wrapped_data_key, master_nonce),
            algorithm=algorithm,
        )
        fields = {
            "ciphertext_key": ciphertext_key.hex(),
            "wrapped_data_key": wrapped_data_key.hex(),
            "master_key_id": self._master_key_id,
            "data_key_id": data_key_id,
            "algorithm": algorithm,
            "kdf_iterations": self._kdf_iterations,
            "pin_salt": pin_salt.hex(),
            "pin_nonce": pin_nonce.hex(),
            "data_key_nonce": data_key_nonce.hex(),
            "master_nonce": master_nonce.hex(),
        }
        return fields, data_key

    async def encrypt_private_key(
        self,
        private_key: bytes,
        pin: str,
        wallet_id: str = "",
    ) -> EncryptedKeyRecord:
        """Wrap a private key under the PIN, a new data key and the master key.

        The new data key is written through to the cache.

        Args:
            private_key: Plaintext private key.
            pin: Six-digit PIN.
            wallet_id: Owning wallet, if already known.

        Returns:
            Fully populated record, not yet persisted.

        Raises:
            ValidationError: If the PIN or private key is malformed.
        """
        validate_pin(pin)
        private_key = validate_private_key(private_key)
        data_key_id = uuid.uuid4().hex
        fields, data_key = await self._run(self._seal, private_key, pin, data_key_id)
        self._cache.set(data_key_id, data_key)
        logger.debug(
            "Wrapped wallet key: wallet=%s master_key_id=%s data_key_id=%s",
            wallet_id or "-", self._master_key_id, data_key_id,
        )
        return EncryptedKeyRecord(wallet_id=wallet_id, **fields)

    # ------------------------------------------------------------------
    # Unwrap
    # ------------------------------------------------------------------

    def _unwrap_sync(self, record: EncryptedKeyRecord) -> bytes:
        return decrypt(
            record.raw("wrapped_data_key"),
            self._master_key,
            record.raw("master_nonce"),
            _master_layer_aad(record.master_key_id, record.data_key_id),
            algorithm=record.algorithm,
        )

    async def _unwrap_data_key(self, record: EncryptedKeyRecord) -> bytes:
        """Decrypt ``wrapped_data_key`` with the master key."""
        return await self._run(self._unwrap_sync, record)

    def _open(self, record: EncryptedKeyRecord, pin: str, data_key: bytes | None) -> bytes:
        pin_ciphertext = None
        if data_key is not None:
            try:
                pin_ciphertext = decrypt(
                    record.raw("ciphertext_key"),
                    data_key,
                    record.raw("data_key_nonce"),
                    _data_layer_aad(
                        record.data_key_id,
                        record.raw("wrapped_data_key"),
                        record.raw("master_nonce"),
                    ),
                    algorithm=record.algorithm,
                )
            except (AuthenticationFailure, InvalidKeyLength, ValidationError):
                pin_ciphertext = None
        # the KDF always runs so the failing layer is not visible in timing
        pin_key = derive_key(pin, record.raw("pin_salt"), record.kdf_iterations)
        if pin_ciphertext is None:
            raise AuthenticationFailure()
        try:
            return decrypt(
                pin_ciphertext,
                pin_key,
                record.raw("pin_nonce"),
                algorithm=record.algorithm,
            )
        except (InvalidKeyLength, ValidationError):
            raise AuthenticationFailure() from None

    async def decrypt_private_key(self, record: EncryptedKeyRecord, pin: str) -> bytes:
        """Unwrap a record back to the plaintext private key.

        Raises:
            ValidationError: If the PIN is malformed or the record was
                wrapped under a different master key.
            AuthenticationFailure: Wrong PIN or tampered record; the two
                are deliberately indistinguishable.
        """
        validate_pin(pin)
        if record.master_key_id != self._master_key_id:
            raise ValidationError("Invalid master key identifier")
        try:
            data_key = await self._cache.get_or_load(
                record.data_key_id,
                functools.partial(self._unwrap_data_key, record),
            )
        except (AuthenticationFailure, InvalidKeyLength, ValidationError):
            data_key = None
        return await self._run(self._open, record, pin, data_key)

    async def verify_pin(self, record: EncryptedKeyRecord, pin: str) -> bool:
        """Return whether ``pin`` unlocks ``record``, discarding the key."""
        try:
            await self.decrypt_private_key(record, pin)
        except (AuthenticationFailure, ValidationError):
            return False
        return True
