from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from crmcopilot.core.config import get_settings
from crmcopilot.core.errors import CredentialError


# Stored layout: salt(16) | nonce(12) | tag(16) | ciphertext, base64 encoded.
_SALT_LENGTH = 16
_NONCE_LENGTH = 12
_TAG_LENGTH = 16
_KEY_LENGTH = 32
_ITERATIONS = 100_000
_HEADER_LENGTH = _SALT_LENGTH + _NONCE_LENGTH + _TAG_LENGTH


def _secret(secret: str | None) -> bytes:
    resolved = secret if secret is not None else get_settings().ai_encryption_key
    if not resolved:
        raise CredentialError("AI_ENCRYPTION_KEY 環境變數未設定。")
    return resolved.encode("utf-8")


def _derive_key(secret: bytes, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_KEY_LENGTH,
        salt=salt,
        iterations=_ITERATIONS,
    )
    return kdf.derive(secret)


def encrypt_credential(plaintext: str, *, secret: str | None = None) -> str:
    salt = os.urandom(_SALT_LENGTH)
    nonce = os.urandom(_NONCE_LENGTH)
    key = _derive_key(_secret(secret), salt)
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag; the stored layout keeps it ahead of the ciphertext.
    cipher_text, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
    return base64.b64encode(salt + nonce + tag + cipher_text).decode("ascii")


def decrypt_credential(encoded: str, *, secret: str | None = None) -> str:
    try:
        combined = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise CredentialError() from exc
    if len(combined) < _HEADER_LENGTH:
        raise CredentialError()
    salt = combined[:_SALT_LENGTH]
    nonce = combined[_SALT_LENGTH : _SALT_LENGTH + _NONCE_LENGTH]
    tag = combined[_SALT_LENGTH + _NONCE_LENGTH : _HEADER_LENGTH]
    cipher_text = combined[_HEADER_LENGTH:]
    key = _derive_key(_secret(secret), salt)
    try:
        plaintext = AESGCM(key).decrypt(nonce, cipher_text + tag, None)
    except InvalidTag as exc:
        raise CredentialError() from exc
    return plaintext.decode("utf-8")


def mask_credential(value: str) -> str:
    # Only this masked form may leave the core.
    if len(value) <= 8:
        return "****"
    return f"{value[:3]}****...{value[-4:]}"
