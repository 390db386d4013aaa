"""
Cryptographic operations for the authenticator vault.

Keys are derived with PBKDF2-HMAC-SHA256 and vault contents are sealed with
AES-256-GCM. Every encryption draws a fresh random nonce; the nonce is
prepended to the ciphertext and the GCM tag appended, so a sealed blob is
``nonce || ciphertext || tag``.
"""

import os
import logging
from typing import Optional, Union

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.backends import default_backend
from cryptography.exceptions import InvalidTag

from . import config
from .exceptions import AuthenticationError

logger = logging.getLogger(__name__)

BytesLike = Union[bytes, bytearray, memoryview]


class CryptoManager:
    """Handles all cryptographic operations for the vault."""

    # Constants
    SALT_SIZE = config.SALT_SIZE    # 256 bits
    KEY_SIZE = config.KEY_SIZE      # 256 bits for AES-256
    NONCE_SIZE = config.NONCE_SIZE  # 96 bits for GCM
    TAG_SIZE = config.TAG_SIZE      # 128 bits

    # KDF parameters
    PBKDF2_ITERATIONS = config.PBKDF2_ITERATIONS
    LEGACY_SALT = config.LEGACY_SALT

    def __init__(self):
        """Initialize the crypto manager."""
        self.backend = default_backend()

    def generate_salt(self) -> bytes:
        """Generate a cryptographically secure random salt."""
        return os.urandom(self.SALT_SIZE)

    def derive_key(self, password: Union[str, BytesLike], salt: Optional[BytesLike] = None) -> bytes:
        """
        Derive an encryption key from a password using PBKDF2-HMAC-SHA256.

        Args:
            password: The vault password, as text or raw UTF-8 bytes
            salt: Salt for key derivation. When omitted the hard-coded legacy
                salt is used, which only exists to read pre-migration vaults.

        Returns:
            32-byte encryption key
        """
        if salt is None:
            salt = self.LEGACY_SALT
        if isinstance(password, str):
            password = password.encode('utf-8')
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_SIZE,
            salt=bytes(salt),
            iterations=self.PBKDF2_ITERATIONS,
            backend=self.backend
        )
        return kdf.derive(password)

    def encrypt(self, plaintext: BytesLike, key: BytesLike) -> bytes:
        """
        Encrypt data using AES-256-GCM with a fresh random nonce.

        Args:
            plaintext: Data to encrypt
            key: 32-byte encryption key

        Returns:
            nonce || ciphertext || tag
        """
        if len(key) != self.KEY_SIZE:
            raise ValueError(f"Encryption key must be {self.KEY_SIZE} bytes, got {len(key)}")
        nonce = os.urandom(self.NONCE_SIZE)
        cipher = Cipher(
            algorithms.AES(bytes(key)),
            modes.GCM(nonce),
            backend=self.backend
        )
        encryptor = cipher.encryptor()
        ciphertext = encryptor.update(bytes(plaintext)) + encryptor.finalize()
        return nonce + ciphertext + encryptor.tag

    def decrypt(self, blob: BytesLike, key: BytesLike) -> bytes:
        """
        Decrypt data sealed by encrypt().

        Args:
            blob: nonce || ciphertext || tag
            key: 32-byte encryption key

        Returns:
            Decrypted plaintext

        Raises:
            AuthenticationError: If the key has the wrong size, the blob is
                truncated, or the tag does not verify
        """
        if len(key) != self.KEY_SIZE:
            raise AuthenticationError("Invalid key size")
        if len(blob) < self.NONCE_SIZE + self.TAG_SIZE:
            raise AuthenticationError("Encrypted data is too short")

        blob = bytes(blob)
        nonce = blob[:self.NONCE_SIZE]
        ciphertext = blob[self.NONCE_SIZE:-self.TAG_SIZE]
        tag = blob[-self.TAG_SIZE:]

        cipher = Cipher(
            algorithms.AES(bytes(key)),
            modes.GCM(nonce, tag),
            backend=self.backend
        )
        decryptor = cipher.decryptor()
        try:
            return decryptor.update(ciphertext) + decryptor.finalize()
        except InvalidTag:
            logger.debug("Decrypt: authentication tag did not verify")
            raise AuthenticationError("Couldn't decrypt the data") from None
