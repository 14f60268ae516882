"""
Wallet Vault Exceptions.

Security Note:
    Messages are shown to callers. Never put PINs, key material or
    ciphertext in an exception message.
"""


class WalletVaultError(Exception):
    """Base class for every error raised by the wallet vault."""

    default_message: str = "Wallet vault error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(WalletVaultError):
    """Bad PIN format, master key mismatch or malformed stored record."""

    default_message = "Invalid wallet key data"


class AuthenticationFailure(WalletVaultError):
    """Wrong PIN or tampered ciphertext.

    Both causes share one message so callers cannot tell them apart.
    """

    default_message = "Invalid PIN or wallet"


class InvalidKeyLength(WalletVaultError, ValueError):
    """An AEAD key does not have the expected length."""

    default_message = "Invalid encryption key length"


class NotFound(WalletVaultError):
    """No key record exists for the wallet."""

    default_message = "Wallet key not found"


class StorageError(WalletVaultError):
    """The key record store failed. Callers may retry."""

    default_message = "Wallet key storage failure"
    retryable: bool = True


class ConfigurationError(WalletVaultError):
    """Master key unavailable or misconfigured. Fatal at startup."""

    default_message = "Wallet vault is misconfigured"
