"""
Tests for stored-credential encryption.
"""
import base64

import pytest

from core.exceptions import AccountConfigurationError
from infra.credentials import IV_LEN, SALT_LEN, TAG_LEN, decrypt_secret, encrypt_secret, load_secret

SECRET = "correct horse battery staple"


def test_round_trip():
    blob = encrypt_secret("api-key-123", SECRET)
    assert decrypt_secret(blob, SECRET) == "api-key-123"


def test_blob_layout_and_fresh_salt():
    first = encrypt_secret("same", SECRET)
    second = encrypt_secret("same", SECRET)

    assert first != second
    raw = base64.b64decode(first)
    assert len(raw) == SALT_LEN + IV_LEN + TAG_LEN + len("same")


def test_wrong_secret_rejected():
    blob = encrypt_secret("api-key-123", SECRET)
    with pytest.raises(AccountConfigurationError, match="decryption failed"):
        decrypt_secret(blob, "other secret", "acct-1")


def test_tampered_blob_rejected():
    raw = bytearray(base64.b64decode(encrypt_secret("api-key-123", SECRET)))
    raw[-1] ^= 0x01
    with pytest.raises(AccountConfigurationError):
        decrypt_secret(base64.b64encode(bytes(raw)).decode(), SECRET)


@pytest.mark.parametrize("blob", ["not base64 !!", base64.b64encode(b"short").decode()])
def test_malformed_blob_rejected(blob):
    with pytest.raises(AccountConfigurationError):
        decrypt_secret(blob, SECRET)


def test_empty_blob_is_none():
    assert decrypt_secret(None, SECRET) is None
    assert decrypt_secret("", SECRET) is None


def test_load_secret_from_env(monkeypatch):
    monkeypatch.setenv("RISKWATCH_SECRET", "s3cret")
    assert load_secret("RISKWATCH_SECRET") == "s3cret"


def test_load_secret_missing(monkeypatch):
    monkeypatch.delenv("RISKWATCH_SECRET", raising=False)
    with pytest.raises(AccountConfigurationError, match="RISKWATCH_SECRET"):
        load_secret("RISKWATCH_SECRET", "acct-1")
