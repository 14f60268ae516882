"""
Wallet Key Rotation — Re-wrapping wallet keys under a new master key.

Each wallet is rotated read → decrypt → re-encrypt → single update, under
that wallet's lock, so a record is either fully on the old master key or
fully on the new one. The operation is idempotent: records already on the
target master key are left untouched.

Unwrapping needs the user's PIN, which a batch job must not hold. The
caller supplies a ``pin_provider``; returning ``None`` defers the wallet
to re-encryption on the user's next successful unlock.

Security Note:
    Plaintext exists in memory only during re-encryption of each wallet.
    Never log PINs, plaintext or ciphertext values.
"""
import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Union

from .models import RotationReport
from .service import WalletEncryptionService

if TYPE_CHECKING:
    from .key_vault import WalletKeyVault

logger = logging.getLogger("navigator.wallet")

PinProvider = Callable[[str], Union[Awaitable[str | None], str | None]]


async def rotate_master_key(
    vault: "WalletKeyVault",
    wallet_id: str,
    pin: str,
    new_service: WalletEncryptionService,
) -> bool:
    """Re-wrap one wallet key under ``new_service``'s master key.

    Args:
        vault: Vault holding the store and the service of every epoch.
        wallet_id: Wallet whose key is rotated.
        pin: The wallet PIN.
        new_service: Service for the target master key.

    Returns:
        True if the record was re-wrapped, False if it was already on
        the target master key. Both outcomes are success.

    Raises:
        NotFound: If the wallet has no key record.
        ValidationError: If no service is registered for the record's key.
        AuthenticationFailure: Wrong PIN or tampered record.
        StorageError: If the store fails; the old record is left intact.
    """
    vault.register_service(new_service)
    async with vault.wallet_lock(wallet_id):
        record = await vault.fetch_record(wallet_id)
        if record.master_key_id == new_service.master_key_id:
            logger.debug(
                "Wallet %s already on master key %s", wallet_id, new_service.master_key_id,
            )
            return False
        current = vault.service_for(record.master_key_id)
        private_key = await current.decrypt_private_key(record, pin)
        fresh = await new_service.encrypt_private_key(private_key, pin, wallet_id=wallet_id)
        await vault.store.update(wallet_id, record.rewrapped(fresh))
    logger.info(
        "Rotated wallet %s from master key %s to %s",
        wallet_id, record.master_key_id, new_service.master_key_id,
    )
    return True


async def _resolve_pin(pin_provider: PinProvider, wallet_id: str) -> str | None:
    pin = pin_provider(wallet_id)
    if inspect.isawaitable(pin):
        pin = await pin
    return pin


async def rotate_all_master_keys(
    vault: "WalletKeyVault",
    new_service: WalletEncryptionService,
    pin_provider: PinProvider,
    *,
    old_master_key_id: str | None = None,
    cancel_event: asyncio.Event | None = None,
) -> RotationReport:
    """Re-wrap every wallet key under ``old_master_key_id`` with ``new_service``.

    A failing wallet is recorded and the batch moves on. Cancellation is
    checked between wallets only, never in the middle of one.

    Args:
        vault: Vault holding the store and current services.
        new_service: Service for the target master key.
        pin_provider: ``pin_provider(wallet_id)`` returning the PIN, or an
            awaitable of it; ``None`` defers the wallet.
        old_master_key_id: Source master key; the vault's active one by
            default.
        cancel_event: Stops the batch before the next wallet once set.

    Returns:
        RotationReport with counts and failed wallet ids.

    Raises:
        StorageError: If the records to rotate cannot be listed.
    """
    old_id = old_master_key_id or vault.active_service.master_key_id
    vault.register_service(new_service)
    records = await vault.store.get_by_field("master_key_id", old_id)
    report = RotationReport(
        old_master_key_id=old_id,
        new_master_key_id=new_service.master_key_id,
        total=len(records),
    )
    logger.info(
        "Starting master key rotation from %s to %s (%d wallet keys)",
        old_id, new_service.master_key_id, report.total,
    )

    for record in records:
        if cancel_event is not None and cancel_event.is_set():
            report.cancelled = True
            logger.warning(
                "Master key rotation cancelled with %d wallet keys pending",
                report.pending,
            )
            break
        wallet_id = record.wallet_id
        try:
            pin = await _resolve_pin(pin_provider, wallet_id)
            if pin is None:
                report.deferred_wallet_ids.append(wallet_id)
                logger.info("Rotation deferred for wallet %s: no PIN available", wallet_id)
                continue
            rotated = await rotate_master_key(vault, wallet_id, pin, new_service)
        except Exception as err:
            logger.error(
                "Failed to rotate key for wallet %s: %s", wallet_id, type(err).__name__,
            )
            report.record_failure(wallet_id, err)
            continue
        if rotated:
            report.success_count += 1
        else:
            report.already_migrated += 1

    logger.info(
        "Master key rotation completed: %d successful, %d failed, %d deferred",
        report.success_count, report.failure_count, len(report.deferred_wallet_ids),
    )
    return report
