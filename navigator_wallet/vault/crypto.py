"""
Vault Crypto Core — PIN key derivation and AEAD primitives.

Implements the building blocks of the three-layer wallet envelope:
- PIN layer: PBKDF2-HMAC-SHA512(pin, salt) → AEAD → pin ciphertext
- Data-key layer: random 32-byte data key → AEAD → ciphertext_key
- Master layer: MASTER_KEY_vN → AEAD → wrapped_data_key

Security Note:
    Never log plaintext, keys or ciphertext values.
    Nonces are random 96-bit values drawn for every encryption; callers
    must never reuse or derive them.
"""
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from .exceptions import AuthenticationFailure, InvalidKeyLength, ValidationError

NONCE_SIZE = 12  # 96-bit nonce
SALT_SIZE = 16
KEY_LENGTH = 32  # 256-bit keys for every layer
TAG_SIZE = 16

# OWASP 2023 recommendation for PBKDF2-HMAC-SHA512.
PBKDF2_ITERATIONS = 210_000

ALGORITHM_AES_GCM = "AES-256-GCM"
ALGORITHM_CHACHA20 = "ChaCha20-Poly1305"
DEFAULT_ALGORITHM = ALGORITHM_AES_GCM

SUPPORTED_ALGORITHMS: dict[str, type] = {
    ALGORITHM_AES_GCM: AESGCM,
    ALGORITHM_CHACHA20: ChaCha20Poly1305,
}


def get_cipher(algorithm: str) -> type:
    """Return the AEAD cipher class registered for ``algorithm``.

    Raises:
        ValidationError: If the algorithm is not supported.
    """
    try:
        return SUPPORTED_ALGORITHMS[algorithm]
    except KeyError:
        raise ValidationError(
            f"Unsupported encryption algorithm: {algorithm}"
        ) from None


# ---------------------------------------------------------------------------
# Random material
# ---------------------------------------------------------------------------

def generate_nonce() -> bytes:
    return os.urandom(NONCE_SIZE)


def generate_salt() -> bytes:
    return os.urandom(SALT_SIZE)


def generate_data_key() -> bytes:
    return os.urandom(KEY_LENGTH)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(pin: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive a 32-byte key from a PIN using PBKDF2-HMAC-SHA512.

    Deliberately slow; run it on a worker thread, not the event loop.

    Args:
        pin: User PIN.
        salt: Per-record random salt.
        iterations: PBKDF2 work factor.

    Returns:
        32-byte derived key.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(pin.encode("utf-8"))


# ---------------------------------------------------------------------------
# Authenticated encryption
# ---------------------------------------------------------------------------

def _build_cipher(key: bytes, nonce: bytes, algorithm: str):
    if len(key) != KEY_LENGTH:
        raise InvalidKeyLength(
            f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}"
        )
    if len(nonce) != NONCE_SIZE:
        raise ValidationError(
            f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}"
        )
    return get_cipher(algorithm)(key)


def encrypt(
    plaintext: bytes,
    key: bytes,
    nonce: bytes,
    associated_data: bytes | None = None,
    algorithm: str = DEFAULT_ALGORITHM,
) -> bytes:
    """Encrypt plaintext with an AEAD cipher.

    Format: [encrypted_payload][tag 16B]

    Args:
        plaintext: Data to encrypt.
        key: 32-byte key.
        nonce: Fresh 12-byte nonce, never reused with the same key.
        associated_data: Optional data authenticated but not encrypted.
        algorithm: AEAD algorithm name.

    Returns:
        Ciphertext with the authentication tag appended.
    """
    cipher = _build_cipher(key, nonce, algorithm)
    return cipher.encrypt(nonce, plaintext, associated_data)


def decrypt(
    ciphertext: bytes,
    key: bytes,
    nonce: bytes,
    associated_data: bytes | None = None,
    algorithm: str = DEFAULT_ALGORITHM,
) -> bytes:
    """Decrypt and authenticate an AEAD ciphertext.

    Raises:
        AuthenticationFailure: If the tag does not verify. No partial
            plaintext is ever returned.
        InvalidKeyLength: If ``key`` is not 32 bytes.
    """
    cipher = _build_cipher(key, nonce, algorithm)
    if len(ciphertext) < TAG_SIZE:
        raise AuthenticationFailure()
    try:
        return cipher.decrypt(nonce, ciphertext, associated_data)
    except InvalidTag:
        raise AuthenticationFailure() from None
