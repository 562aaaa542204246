import pytest

from followup.core import crypto
from followup.core.errors import ConfigurationError


def test_encrypt_roundtrip_with_configured_key(monkeypatch):
    monkeypatch.setenv("FOLLOWUP_ENCRYPTION_KEY", crypto.generate_key())
    token = crypto.encrypt_secret("tenant-db-password")
    assert token != "tenant-db-password"
    assert crypto.decrypt_secret(token) == "tenant-db-password"


def test_rotated_key_cannot_decrypt(monkeypatch):
    monkeypatch.setenv("FOLLOWUP_ENCRYPTION_KEY", crypto.generate_key())
    token = crypto.encrypt_secret("pw")
    monkeypatch.setenv("FOLLOWUP_ENCRYPTION_KEY", crypto.generate_key())
    with pytest.raises(ConfigurationError):
        crypto.decrypt_secret(token)


def test_invalid_key_is_a_configuration_error(monkeypatch):
    monkeypatch.setenv("FOLLOWUP_ENCRYPTION_KEY", "not-a-fernet-key")
    with pytest.raises(ConfigurationError):
        crypto.encrypt_secret("pw")


def test_dev_falls_back_to_derived_key(monkeypatch):
    monkeypatch.delenv("FOLLOWUP_ENCRYPTION_KEY", raising=False)
    monkeypatch.setenv("FOLLOWUP_ENV", "dev")
    assert crypto.decrypt_secret(crypto.encrypt_secret("pw")) == "pw"


def test_prod_requires_key(monkeypatch):
    monkeypatch.delenv("FOLLOWUP_ENCRYPTION_KEY", raising=False)
    monkeypatch.setenv("FOLLOWUP_ENV", "prod")
    with pytest.raises(ConfigurationError):
        crypto.encrypt_secret("pw")
