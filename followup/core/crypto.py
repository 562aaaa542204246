"""
Symmetric encryption for tenant database credentials (Fernet).
"""

from __future__ import annotations

import base64
import hashlib
import os

from cryptography.fernet import Fernet, InvalidToken

from .config import get_app_env
from .errors import ConfigurationError


def _derived_dev_key() -> bytes:
    seed = (os.getenv("FOLLOWUP_JWT_SECRET") or "dev-credential-key-change-me").strip()
    return base64.urlsafe_b64encode(hashlib.sha256(seed.encode("utf-8")).digest())


def _fernet() -> Fernet:
    key = (os.getenv("FOLLOWUP_ENCRYPTION_KEY") or "").strip()
    if not key:
        if get_app_env() == "prod":
            raise ConfigurationError("FOLLOWUP_ENCRYPTION_KEY is required in prod")
        return Fernet(_derived_dev_key())
    try:
        return Fernet(key.encode("utf-8"))
    except ValueError as exc:
        raise ConfigurationError(f"FOLLOWUP_ENCRYPTION_KEY is not a valid Fernet key: {exc}") from exc


def generate_key() -> str:
    return Fernet.generate_key().decode("ascii")


def encrypt_secret(plaintext: str) -> str:
    return _fernet().encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_secret(ciphertext: str) -> str:
    try:
        return _fernet().decrypt(ciphertext.encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        raise ConfigurationError("Stored credential cannot be decrypted with the configured key") from exc
