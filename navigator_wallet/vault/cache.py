"""
Data-Key Cache — in-memory map of unwrapped wallet data keys.

Each WalletEncryptionService owns its own cache, so master-key epochs
never share entries and tests never leak state into each other.

Security Note:
    Only data keys live here, never private keys. Entries are not
    persisted and disappear with the owning service.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable

from .crypto import KEY_LENGTH
from .exceptions import InvalidKeyLength

logger = logging.getLogger("navigator.wallet")


class DataKeyCache:
    """Map of ``data_key_id`` to raw data key bytes.

    Reads are plain dict lookups and never wait. Loading on a miss is
    serialized per ``data_key_id`` only, so unrelated wallets never
    contend. Must be used from the event loop thread.
    """

    def __init__(self):
        self._keys: dict[str, bytes] = {}
        self._loading: dict[str, asyncio.Lock] = {}

    def __contains__(self, data_key_id: str) -> bool:
        return data_key_id in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def get(self, data_key_id: str) -> bytes | None:
        return self._keys.get(data_key_id)

    def set(self, data_key_id: str, data_key: bytes) -> None:
        """Store a data key.

        Raises:
            InvalidKeyLength: If ``data_key`` is not 32 bytes.
        """
        if len(data_key) != KEY_LENGTH:
            raise InvalidKeyLength(
                f"Data key must be {KEY_LENGTH} bytes, got {len(data_key)}"
            )
        self._keys[data_key_id] = bytes(data_key)

    async def get_or_load(
        self,
        data_key_id: str,
        loader: Callable[[], Awaitable[bytes]],
    ) -> bytes:
        """Return the cached key, awaiting ``loader`` once on a miss.

        Concurrent callers missing on the same id wait for the first
        loader instead of unwrapping again. A failing loader stores
        nothing and its exception propagates.

        Args:
            data_key_id: Cache key taken from the record being unwrapped.
            loader: Zero-argument coroutine function producing the key.

        Returns:
            Raw 32-byte data key.
        """
        data_key = self._keys.get(data_key_id)
        if data_key is not None:
            return data_key
        lock = self._loading.setdefault(data_key_id, asyncio.Lock())
        async with lock:
            data_key = self._keys.get(data_key_id)
            if data_key is None:
                data_key = await loader()
                self.set(data_key_id, data_key)
                logger.debug("Data key cache populated: data_key_id=%s", data_key_id)
        if not lock.locked():
            self._loading.pop(data_key_id, None)
        return data_key
