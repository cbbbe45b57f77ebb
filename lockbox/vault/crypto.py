"""
AES-256-GCM encryption and Argon2id key derivation for vault secrets.

Each encryption draws a fresh 12-byte nonce, returned alongside the ciphertext
(the store keeps them in separate columns). Associated data binds a ciphertext
to its context (for secrets, the key name) so it cannot be relabeled.

Security Note:
    Never log plaintext, ciphertext or key material.
    Every authentication failure surfaces as the same InvalidCredentialError.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from lockbox.errors import InvalidCredentialError, InvalidKeyMaterialError

KEY_LENGTH = 32  # AES-256
NONCE_LENGTH = 12  # 96-bit nonce
SALT_LENGTH = 16


@dataclass(frozen=True)
class KdfParams:
    """Argon2id cost parameters. Defaults are the interactive-login profile."""

    time_cost: int = 3
    memory_kib: int = 64 * 1024
    parallelism: int = 4


DEFAULT_KDF = KdfParams()


def generate_key() -> bytes:
    return secrets.token_bytes(KEY_LENGTH)


def generate_salt() -> bytes:
    return secrets.token_bytes(SALT_LENGTH)


def generate_nonce() -> bytes:
    return secrets.token_bytes(NONCE_LENGTH)


def _check_key(key: bytes) -> None:
    if len(key) != KEY_LENGTH:
        raise InvalidKeyMaterialError(f"invalid key length: must be {KEY_LENGTH} bytes")


def encrypt(key: bytes, plaintext: bytes, aad: bytes | None = None) -> tuple[bytes, bytes]:
    """Encrypt plaintext with AES-256-GCM. Returns (ciphertext + tag, nonce)."""
    _check_key(key)
    nonce = generate_nonce()
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, aad)
    return ciphertext, nonce


def decrypt(key: bytes, ciphertext: bytes, nonce: bytes, aad: bytes | None = None) -> bytes:
    """Decrypt and authenticate. The aad must match what was used to encrypt."""
    _check_key(key)
    if len(nonce) != NONCE_LENGTH:
        raise InvalidKeyMaterialError(f"invalid nonce length: must be {NONCE_LENGTH} bytes")
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, aad)
    except InvalidTag:
        raise InvalidCredentialError("decryption failed: wrong key or corrupted data") from None


def encrypt_string(key: bytes, plaintext: str, aad: bytes | None = None) -> tuple[bytes, bytes]:
    return encrypt(key, plaintext.encode("utf-8"), aad)


def decrypt_string(key: bytes, ciphertext: bytes, nonce: bytes, aad: bytes | None = None) -> str:
    return decrypt(key, ciphertext, nonce, aad).decode("utf-8")


def derive_key(password: str, salt: bytes, params: KdfParams = DEFAULT_KDF) -> bytes:
    """Derive a 256-bit key from a password with Argon2id.

    Deterministic for the same (password, salt, params); memory-hard so that
    offline guessing against a stolen vault file stays expensive.
    """
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_kib,
        parallelism=params.parallelism,
        hash_len=KEY_LENGTH,
        type=Type.ID,
    )
