"""Encryption helpers for merchant credentials stored at rest."""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from loyalty_engine_api.core.settings import settings


class TokenEncryptionError(RuntimeError):
    """Raised when a stored credential cannot be encrypted or decrypted."""


def _cipher(key: str | None = None) -> Fernet:
    secret = key if key is not None else settings.token_encryption_key
    if not secret:
        raise TokenEncryptionError("token_encryption_key is not configured")
    try:
        return Fernet(secret.encode("utf-8"))
    except ValueError as exc:
        raise TokenEncryptionError("token_encryption_key is not a valid Fernet key") from exc


def encrypt_token(plaintext: str, *, key: str | None = None) -> str:
    return _cipher(key).encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_token(ciphertext: str, *, key: str | None = None) -> str:
    try:
        return _cipher(key).decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise TokenEncryptionError("Stored token could not be decrypted") from exc


__all__ = ["TokenEncryptionError", "decrypt_token", "encrypt_token"]
