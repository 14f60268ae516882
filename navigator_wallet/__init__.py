"""Navigator Wallet.

Custodial wallet key protection for Navigator services.
"""
from .version import __version__
from .vault import WalletKeyVault, WalletEncryptionService, VaultConfig

__all__ = ("__version__", "WalletKeyVault", "WalletEncryptionService", "VaultConfig")
