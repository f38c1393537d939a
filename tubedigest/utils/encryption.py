#!/usr/bin/env python3
"""
Encryption utilities for secrets at rest
Fernet symmetric encryption for API keys, passwords and OAuth tokens
"""

import os
import base64
import hashlib
import logging
import platform
import socket
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


logger = logging.getLogger(__name__)

MASTER_KEY_ENV = 'TUBEDIGEST_MASTER_KEY'


class SecretCipher:
    """
    Encrypts sensitive values stored in the database.

    The Fernet key is derived (PBKDF2) from:
    1. An explicit master key argument
    2. TUBEDIGEST_MASTER_KEY environment variable
    3. A machine-specific identifier (fallback)
    """

    SALT = b'tubedigest-secrets-salt-v1'
    ITERATIONS = 100000

    def __init__(self, master_key: Optional[str] = None):
        self._cipher = Fernet(self._resolve_key(master_key))

    def _resolve_key(self, master_key: Optional[str]) -> bytes:
        if master_key:
            return self._derive_key(master_key)

        env_key = os.environ.get(MASTER_KEY_ENV)
        if env_key:
            return self._derive_key(env_key)

        logger.debug(f"{MASTER_KEY_ENV} not set, deriving key from machine identifier")
        return self._derive_key(self._get_machine_id())

    @staticmethod
    def _get_machine_id() -> str:
        """Hostname, or a stable combination of platform facts"""
        hostname = socket.gethostname()
        if hostname and hostname != 'localhost':
            return hostname

        factors = [
            platform.node(),
            platform.system(),
            platform.machine(),
            'tubedigest-default-key-v1'
        ]
        return '-'.join(factors)

    def _derive_key(self, password: str) -> bytes:
        kdf_key = hashlib.pbkdf2_hmac(
            'sha256',
            password.encode('utf-8'),
            self.SALT,
            iterations=self.ITERATIONS,
            dklen=32
        )
        # Fernet requires base64-encoded key
        return base64.urlsafe_b64encode(kdf_key)

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ''
        return self._cipher.encrypt(plaintext.encode('utf-8')).decode('utf-8')

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value. Returns '' when the key changed or the data is corrupt,
        so a stale secret reads as "not configured" instead of crashing.
        """
        if not ciphertext:
            return ''

        try:
            return self._cipher.decrypt(ciphertext.encode('utf-8')).decode('utf-8')
        except InvalidToken:
            logger.warning("Decryption failed: master key changed or value corrupted")
            return ''


_cipher_instance = None


def get_cipher() -> SecretCipher:
    """Process-wide cipher (lazy singleton)"""
    global _cipher_instance
    if _cipher_instance is None:
        _cipher_instance = SecretCipher()
    return _cipher_instance


def reset_cipher():
    """Drop the cached cipher so the next call re-reads the master key"""
    global _cipher_instance
    _cipher_instance = None
