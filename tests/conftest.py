"""Shared fixtures for the wallet vault tests."""
import os

import pytest

from navigator_wallet.vault import (
    MemoryKeyRecordStore,
    WalletEncryptionService,
    WalletKeyVault,
)

# Keeps PBKDF2 fast in tests; production uses PBKDF2_ITERATIONS.
TEST_ITERATIONS = 1_000

PIN = "123456"
WRONG_PIN = "000000"


def make_service(master_key_id: str = "v1", master_key: bytes | None = None, **kwargs):
    return WalletEncryptionService(
        master_key_id,
        master_key if master_key is not None else os.urandom(32),
        kdf_iterations=kwargs.pop("kdf_iterations", TEST_ITERATIONS),
        **kwargs,
    )


@pytest.fixture
def master_key():
    return os.urandom(32)


@pytest.fixture
def private_key():
    """32-byte secp256k1-sized private key."""
    return os.urandom(32)


@pytest.fixture
def service(master_key):
    return make_service("v1", master_key)


@pytest.fixture
def store():
    return MemoryKeyRecordStore()


@pytest.fixture
def vault(store, service):
    return WalletKeyVault(store, service)
