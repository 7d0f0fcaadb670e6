# presence_common/secure_channel.py

import os
import base64
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
KEY_SIZE = 32


class SecureChannel:
    """
    AES-256-GCM encryption for one connection.
    Both ends hold the same key once the handshake has completed.
    """
    def __init__(self, aes_key: bytes):
        if len(aes_key) != KEY_SIZE:
            raise ValueError("AES key must be 32 bytes for AES-256")
        self.aesgcm = AESGCM(aes_key)

    @staticmethod
    def generate_key() -> bytes:
        return os.urandom(KEY_SIZE)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypts a plaintext string.
        Returns a base64-encoded string containing 'nonce:ciphertext'.
        """
        # A 12-byte nonce is required and must be unique per encryption
        nonce = os.urandom(NONCE_SIZE)
        ciphertext_bytes = self.aesgcm.encrypt(nonce, plaintext.encode('utf-8'), None)
        return base64.b64encode(nonce + ciphertext_bytes).decode('utf-8')

    def decrypt(self, encrypted_blob: str) -> str:
        """
        Decrypts a base64-encoded string containing 'nonce:ciphertext'.
        Raises ValueError if the blob is malformed, tampered with or was
        encrypted under another key.
        """
        try:
            encrypted_bytes = base64.b64decode(encrypted_blob, validate=True)
            nonce = encrypted_bytes[:NONCE_SIZE]
            ciphertext = encrypted_bytes[NONCE_SIZE:]
            decrypted_bytes = self.aesgcm.decrypt(nonce, ciphertext, None)
            return decrypted_bytes.decode('utf-8')
        except (InvalidTag, TypeError, ValueError) as e:
            logger.debug("Decryption failed: %r", e)
            raise ValueError("Failed to decrypt or authenticate message") from e
