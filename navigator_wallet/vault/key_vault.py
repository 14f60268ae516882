"""
WalletKeyVault — PIN-protected custodial wallet keys.

Provides the public API for wallet key storage:
- ``create_wallet_key(wallet_id, private_key, pin)`` — wrap and persist a key
- ``sign_or_decrypt(wallet_id, pin)`` — unwrap a key for transient use
- ``verify_pin`` / ``change_pin`` — PIN checks and PIN changes
- ``rotate_master_key`` / ``rotate_master_key_batch`` — master key rotation
- ``from_config()`` — factory building services for every configured key

One WalletEncryptionService is registered per master key id, so records
wrapped under a retired master key stay readable while rotation is in
progress. New keys are always wrapped by the active service.

Security Note:
    Never log PINs or key material. Only log wallet ids and key ids.
    Decrypted keys exist in process memory only while the caller uses them.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import asynccontextmanager

from .config import VaultConfig
from .exceptions import (
    ConfigurationError,
    NotFound,
    ValidationError,
    WalletVaultError,
)
from .key_rotation import PinProvider, rotate_all_master_keys, rotate_master_key
from .models import EncryptedKeyRecord, RotationReport
from .service import WalletEncryptionService, validate_pin
from .store import KeyRecordStore

logger = logging.getLogger("navigator.wallet")

WalletLinker = Callable[[str, str], Awaitable[None]]


class _WalletLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class WalletKeyVault:
    """Encrypted wallet key storage bound to a Key Record Store.

    Args:
        store: Persistence backend for key records.
        service: Encryption service of the active master key.
        wallet_linker: Optional ``await wallet_linker(wallet_id, record_id)``
            called after a key is created, to store the back-reference on
            the wallet.
        rewrap_on_unlock: Re-wrap records still under a retired master key
            after the user unlocks them successfully.
    """

    def __init__(
        self,
        store: KeyRecordStore,
        service: WalletEncryptionService,
        *,
        wallet_linker: WalletLinker | None = None,
        rewrap_on_unlock: bool = True,
    ):
        self._store = store
        self._active = service
        self._services: dict[str, WalletEncryptionService] = {
            service.master_key_id: service
        }
        self._locks: dict[str, _WalletLock] = {}
        self._executor: Executor | None = None
        self._linker = wallet_linker
        self._rewrap_on_unlock = rewrap_on_unlock

    @property
    def store(self) -> KeyRecordStore:
        return self._store

    @property
    def active_service(self) -> WalletEncryptionService:
        return self._active

    # ------------------------------------------------------------------
    # Master key epochs
    # ------------------------------------------------------------------

    def register_service(self, service: WalletEncryptionService) -> None:
        """Make ``service`` available for records under its master key.

        Raises:
            ConfigurationError: If a different master key is already
                registered under the same id; replacing it would orphan
                every record still wrapped by it.
        """
        current = self._services.get(service.master_key_id)
        if current is service:
            return
        if current is not None and not current.same_master_key(service):
            raise ConfigurationError(
                f"Master key {service.master_key_id} is already registered with different key material"
            )
        self._services[service.master_key_id] = service
        if current is self._active:
            self._active = service
        logger.debug("Registered master key %s", service.master_key_id)

    def activate(self, service: WalletEncryptionService) -> None:
        """Register ``service`` and wrap all new keys with it."""
        self.register_service(service)
        previous = self._active.master_key_id
        self._active = service
        logger.info("Active master key changed from %s to %s", previous, service.master_key_id)

    def service_for(self, master_key_id: str) -> WalletEncryptionService:
        """Return the service registered for ``master_key_id``.

        Raises:
            ValidationError: If no service holds that master key.
        """
        try:
            return self._services[master_key_id]
        except KeyError:
            raise ValidationError("Invalid master key identifier") from None

    @asynccontextmanager
    async def wallet_lock(self, wallet_id: str):
        """Serialize writes to one wallet's key record.

        Locks are reference counted and dropped once no task holds or
        waits on them.
        """
        entry = self._locks.get(wallet_id)
        if entry is None:
            entry = self._locks[wallet_id] = _WalletLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[wallet_id]

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    async def fetch_record(self, wallet_id: str) -> EncryptedKeyRecord:
        """Return the key record of ``wallet_id``.

        Raises:
            NotFound: If the wallet has no key record.
        """
        record = await self._store.get_by_wallet_id(wallet_id)
        if record is None:
            raise NotFound(f"No key found for wallet {wallet_id}")
        return record

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_wallet_key(self, wallet_id: str, private_key: bytes, pin: str) -> str:
        """Wrap and persist the private key of a new wallet.

        Args:
            wallet_id: Owning wallet.
            private_key: Plaintext private key from wallet generation.
            pin: Six-digit PIN chosen by the user.

        Returns:
            Identifier of the stored key record.

        Raises:
            ValidationError: If inputs are malformed or the wallet already
                has a key.
            StorageError: If the record cannot be stored.
        """
        if not wallet_id:
            raise ValidationError("Wallet id is required")
        validate_pin(pin)
        async with self.wallet_lock(wallet_id):
            if await self._store.get_by_wallet_id(wallet_id) is not None:
                raise ValidationError(f"Wallet {wallet_id} already has a key")
            record = await self._active.encrypt_private_key(
                private_key, pin, wallet_id=wallet_id,
            )
            await self._store.create(record)
        if self._linker is not None:
            await self._linker(wallet_id, record.id)
        logger.info(
            "Stored wallet key: wallet=%s record=%s master_key_id=%s",
            wallet_id, record.id, record.master_key_id,
        )
        return record.id

    async def sign_or_decrypt(self, wallet_id: str, pin: str) -> bytes:
        """Unwrap the private key of ``wallet_id`` for transient use.

        Raises:
            NotFound: If the wallet has no key record.
            ValidationError: Malformed PIN or unknown master key.
            AuthenticationFailure: Invalid PIN or wallet.
        """
        validate_pin(pin)
        record = await self.fetch_record(wallet_id)
        service = self.service_for(record.master_key_id)
        private_key = await service.decrypt_private_key(record, pin)
        if self._rewrap_on_unlock and service is not self._active:
            await self._rewrap_after_unlock(wallet_id, pin)
        return private_key

    async def _rewrap_after_unlock(self, wallet_id: str, pin: str) -> None:
        try:
            await rotate_master_key(self, wallet_id, pin, self._active)
        except WalletVaultError as err:
            # the caller already has its key; the record stays on the old epoch
            logger.warning(
                "Deferred re-wrap failed for wallet %s: %s", wallet_id, type(err).__name__,
            )

    async def verify_pin(self, wallet_id: str, pin: str) -> bool:
        """Return whether ``pin`` unlocks the wallet key.

        Raises:
            NotFound: If the wallet has no key record.
        """
        record = await self.fetch_record(wallet_id)
        try:
            service = self.service_for(record.master_key_id)
        except ValidationError:
            return False
        return await service.verify_pin(record, pin)

    async def change_pin(self, wallet_id: str, old_pin: str, new_pin: str) -> None:
        """Re-wrap the wallet key under a new PIN and the active master key.

        Raises:
            NotFound: If the wallet has no key record.
            ValidationError: If either PIN is malformed.
            AuthenticationFailure: If ``old_pin`` is wrong.
            StorageError: If the record cannot be updated.
        """
        validate_pin(old_pin)
        validate_pin(new_pin)
        async with self.wallet_lock(wallet_id):
            record = await self.fetch_record(wallet_id)
            service = self.service_for(record.master_key_id)
            private_key = await service.decrypt_private_key(record, old_pin)
            fresh = await self._active.encrypt_private_key(
                private_key, new_pin, wallet_id=wallet_id,
            )
            await self._store.update(wallet_id, record.rewrapped(fresh))
        logger.info("Changed PIN for wallet %s", wallet_id)

    async def delete_wallet_key(self, wallet_id: str) -> bool:
        """Delete the key record of a deleted wallet."""
        async with self.wallet_lock(wallet_id):
            deleted = await self._store.delete(wallet_id)
        if deleted:
            logger.info("Deleted wallet key for wallet %s", wallet_id)
        return deleted

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    async def rotate_master_key(
        self,
        wallet_id: str,
        pin: str,
        new_service: WalletEncryptionService,
    ) -> bool:
        """Re-wrap one wallet key under ``new_service``; see ``key_rotation``."""
        validate_pin(pin)
        return await rotate_master_key(self, wallet_id, pin, new_service)

    async def rotate_all_master_keys(
        self,
        new_service: WalletEncryptionService,
        pin_provider: PinProvider,
        *,
        old_master_key_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RotationReport:
        return await rotate_all_master_keys(
            self,
            new_service,
            pin_provider,
            old_master_key_id=old_master_key_id,
            cancel_event=cancel_event,
        )

    async def rotate_master_key_batch(
        self,
        new_master_key_id: str,
        new_master_key: bytes,
        pin_provider: PinProvider,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> RotationReport:
        """Rotate every wallet key onto a new master key and activate it.

        Records under any registered master key other than the target are
        visited, so wallets left behind by earlier batches are picked up
        too. Calling it again with the same id and key resumes a cancelled
        or partially failed batch; migrated records are skipped.

        The new master key becomes active once the batch has visited every
        record, even if some wallets failed; those stay readable through
        their retired service and are listed in the report. A cancelled
        batch leaves the active master key unchanged.

        Raises:
            ConfigurationError: If the new master key is invalid, or its id
                is already registered with different key material.
        """
        new_service = self._services.get(new_master_key_id)
        if new_service is None:
            new_service = self._active.successor(new_master_key_id, new_master_key)
        elif not new_service.holds_key(new_master_key):
            raise ConfigurationError(
                f"Master key {new_master_key_id} is already registered with different key material"
            )
        else:
            logger.info("Resuming rotation onto master key %s", new_master_key_id)

        sources = [self._active.master_key_id] + [
            key_id for key_id in self._services if key_id != self._active.master_key_id
        ]
        report = RotationReport(
            old_master_key_id=self._active.master_key_id,
            new_master_key_id=new_master_key_id,
        )
        for key_id in sources:
            if key_id == new_master_key_id:
                continue
            report.merge(
                await self.rotate_all_master_keys(
                    new_service,
                    pin_provider,
                    old_master_key_id=key_id,
                    cancel_event=cancel_event,
                )
            )
            if report.cancelled:
                break

        if report.cancelled:
            logger.warning(
                "Master key %s not activated: rotation cancelled with %d wallet keys pending",
                new_master_key_id, report.pending,
            )
        elif self._active is not new_service:
            self.activate(new_service)
        return report

    def close(self) -> None:
        """Shut down the crypto worker pools owned by this vault."""
        for service in self._services.values():
            service.close()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    async def __aenter__(self) -> "WalletKeyVault":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        store: KeyRecordStore,
        config: VaultConfig | None = None,
        **kwargs,
    ) -> "WalletKeyVault":
        """Build a vault with one service per configured master key.

        All services share one crypto worker pool, shut down by
        ``close()``. Raises ``ConfigurationError`` when the configuration
        is unusable, so a misconfigured process fails at startup.
        """
        config = config or VaultConfig.from_env()
        executor = ThreadPoolExecutor(
            max_workers=config.crypto_workers,
            thread_name_prefix="wallet-crypto",
        )
        active = WalletEncryptionService.from_config(config, executor=executor)
        vault = cls(store, active, **kwargs)
        vault._executor = executor
        for key_id in config.master_keys:
            if key_id != active.master_key_id:
                vault.register_service(
                    WalletEncryptionService.from_config(
                        config, executor=executor, master_key_id=key_id,
                    )
                )
        logger.info(
            "Wallet vault ready: active master key %s, %d key version(s)",
            active.master_key_id, len(config.master_keys),
        )
        return vault
