"""Authenticated encryption for page content and the in-memory key vault."""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shared.errors import DecryptError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
KEY_SIZE = 32


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(token: str) -> bytes:
    padding = "=" * (-len(token) % 4)
    return base64.urlsafe_b64decode(token + padding)


def encrypt(key: bytes, plaintext: bytes) -> str:
    """
    Encrypt a payload with AES-GCM.

    A fresh random nonce is generated per call and prepended to the
    ciphertext; the result is URL-safe base64 without padding.

    Args:
        key: 32-byte symmetric key
        plaintext: Bytes to encrypt

    Returns:
        Transport-safe ciphertext token
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    return _b64encode(nonce + sealed)


def decrypt(key: bytes, token: str) -> bytes:
    """
    Decrypt a token produced by :func:`encrypt`.

    Args:
        key: 32-byte symmetric key
        token: Ciphertext token

    Returns:
        The original plaintext bytes

    Raises:
        DecryptError: If the token cannot be decoded or fails authentication
    """
    try:
        payload = _b64decode(token)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptError(f"Malformed ciphertext token: {e}") from e

    if len(payload) <= NONCE_SIZE:
        raise DecryptError("Ciphertext token is too short")

    nonce, sealed = payload[:NONCE_SIZE], payload[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, sealed, None)
    except InvalidTag as e:
        raise DecryptError("Ciphertext failed authentication") from e


class EncryptionService:
    """Encrypts and decrypts page content with a single symmetric key."""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Initialize encryption service.

        Args:
            encryption_key: URL-safe base64 encoded 32-byte key. If not provided,
                          will attempt to load from NOTEPAD_VAULT_KEY env var
                          or generate a new key (not recommended for production)
        """
        if encryption_key:
            self.key = _b64decode(encryption_key)
        else:
            env_key = os.getenv("NOTEPAD_VAULT_KEY")
            if env_key:
                self.key = _b64decode(env_key)
            else:
                # Development only: content encrypted with this key is lost on restart
                self.key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)

        if len(self.key) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes, got {len(self.key)}")

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext string.

        Args:
            plaintext: The string to encrypt

        Returns:
            Ciphertext token, or an empty string for empty input
        """
        if not plaintext:
            return ""

        return encrypt(self.key, plaintext.encode("utf-8"))

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt an encrypted string.

        Args:
            ciphertext: Ciphertext token

        Returns:
            Decrypted plaintext string

        Raises:
            DecryptError: If authentication or decoding fails
        """
        if not ciphertext:
            return ""

        plaintext = decrypt(self.key, ciphertext)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptError("Decrypted payload is not valid UTF-8") from e

    @staticmethod
    def generate_key() -> str:
        """
        Generate a new encryption key.

        Returns:
            URL-safe base64 encoded key
        """
        return _b64encode(AESGCM.generate_key(bit_length=KEY_SIZE * 8))


class KeyVault:
    """Holds the current content key in process memory.

    The key can be revoked at any time by :meth:`lock`; callers must fetch
    :attr:`cipher` right before each use instead of caching it.
    """

    def __init__(self, encryption_key: Optional[str] = None):
        self._cipher: Optional[EncryptionService] = None
        if encryption_key:
            self.unlock(encryption_key)

    def unlock(self, encryption_key: str) -> None:
        self._cipher = EncryptionService(encryption_key)
        logger.info("Vault unlocked")

    def lock(self) -> None:
        self._cipher = None
        logger.info("Vault locked")

    def is_unlocked(self) -> bool:
        return self._cipher is not None

    @property
    def cipher(self) -> Optional[EncryptionService]:
        return self._cipher
