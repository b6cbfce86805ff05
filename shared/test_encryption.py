"""
Unit tests for encryption utilities.

Covers the module-level AES-GCM gateway, the string-level EncryptionService
and the in-memory KeyVault.
"""

import os
import pytest
from unittest.mock import patch

from shared.encryption import (
    EncryptionService,
    KeyVault,
    NONCE_SIZE,
    _b64decode,
    _b64encode,
    decrypt,
    encrypt,
)
from shared.errors import DecryptError


@pytest.fixture
def key():
    return os.urandom(32)


class TestGateway:
    """Test suite for encrypt/decrypt of raw payloads."""

    @pytest.mark.parametrize("payload", [b"", b"a", b"hello world", os.urandom(4096)])
    def test_round_trip(self, key, payload):
        assert decrypt(key, encrypt(key, payload)) == payload

    def test_token_is_urlsafe_without_padding(self, key):
        token = encrypt(key, b"some content that needs padding")
        assert "=" not in token
        assert "+" not in token
        assert "/" not in token

    def test_fresh_nonce_per_call(self, key):
        first = encrypt(key, b"same")
        second = encrypt(key, b"same")
        assert first != second
        assert _b64decode(first)[:NONCE_SIZE] != _b64decode(second)[:NONCE_SIZE]

    def test_tampered_ciphertext_fails(self, key):
        token = encrypt(key, b"pay the invoice")
        raw = bytearray(_b64decode(token))
        raw[-1] ^= 0x01
        tampered = _b64encode(bytes(raw))

        with pytest.raises(DecryptError):
            decrypt(key, tampered)

    def test_wrong_key_fails(self, key):
        token = encrypt(key, b"secret")
        with pytest.raises(DecryptError):
            decrypt(os.urandom(32), token)

    def test_malformed_token_fails(self, key):
        with pytest.raises(DecryptError):
            decrypt(key, "not base64 at all!!")

    def test_short_token_fails(self, key):
        with pytest.raises(DecryptError):
            decrypt(key, "AAAA")


class TestEncryptionService:
    """Test suite for EncryptionService."""

    def test_initialization_with_provided_key(self):
        test_key = EncryptionService.generate_key()
        service = EncryptionService(encryption_key=test_key)
        assert service.key == _b64decode(test_key)

    def test_initialization_with_env_key(self):
        test_key = EncryptionService.generate_key()
        with patch.dict(os.environ, {"NOTEPAD_VAULT_KEY": test_key}):
            service = EncryptionService()
            assert service.key == _b64decode(test_key)

    def test_initialization_generates_key_if_none_provided(self):
        with patch.dict(os.environ, {}, clear=True):
            service = EncryptionService()
            assert len(service.key) == 32

    def test_rejects_short_key(self):
        with pytest.raises(ValueError):
            EncryptionService(encryption_key="c2hvcnQ")

    def test_encrypt_decrypt_unicode(self):
        service = EncryptionService()
        plaintext = "Meeting with Jörg at 3pm ☕"
        ciphertext = service.encrypt(plaintext)
        assert ciphertext != plaintext
        assert service.decrypt(ciphertext) == plaintext

    def test_empty_string_passthrough(self):
        service = EncryptionService()
        assert service.encrypt("") == ""
        assert service.decrypt("") == ""

    def test_decrypt_with_other_service_fails(self):
        first = EncryptionService()
        second = EncryptionService()
        with pytest.raises(DecryptError):
            second.decrypt(first.encrypt("private note"))


class TestKeyVault:
    """Test suite for KeyVault."""

    def test_starts_locked(self):
        vault = KeyVault()
        assert vault.is_unlocked() is False
        assert vault.cipher is None

    def test_unlock_and_lock(self):
        vault = KeyVault()
        vault.unlock(EncryptionService.generate_key())
        assert vault.is_unlocked() is True
        assert vault.cipher is not None

        vault.lock()
        assert vault.is_unlocked() is False
        assert vault.cipher is None

    def test_unlocked_on_construction(self):
        vault = KeyVault(EncryptionService.generate_key())
        assert vault.is_unlocked()
