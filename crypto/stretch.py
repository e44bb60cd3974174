"""
Key stretching using PBKDF2-HMAC-SHA256.

Turns low-entropy key material (an identity digest or a legacy passphrase)
into a 256-bit AES key. A fresh salt is generated for every encryption;
decryption re-derives the key from the salt stored in the envelope.
"""

import os

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from errors import EncryptionUnavailable


class KeyStretcher:
    """Derives AES-256 keys from key material using PBKDF2."""
    
    MIN_ITERATIONS = 100_000
    KEY_LEN = 32  # 256 bits for AES-256
    SALT_LEN = 16  # 128 bits
    
    def __init__(self, iterations: int = MIN_ITERATIONS):
        if iterations < self.MIN_ITERATIONS:
            raise ValueError(f"PBKDF2 iterations must be at least {self.MIN_ITERATIONS}, got {iterations}")
        self.iterations = iterations
    
    def new_salt(self) -> bytes:
        return os.urandom(self.SALT_LEN)
    
    def derive_key(self, secret: bytes, salt: bytes | None = None) -> tuple[bytes, bytes]:
        """
        Derive a 256-bit key from key material.
        
        Args:
            secret: The key material bytes
            salt: Optional salt bytes. If None, generates a random salt.
            
        Returns:
            Tuple of (derived_key, salt)
        """
        if salt is None:
            salt = self.new_salt()
        
        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=self.KEY_LEN,
                salt=salt,
                iterations=self.iterations,
            )
            derived_key = kdf.derive(secret)
        except UnsupportedAlgorithm as e:
            raise EncryptionUnavailable(f"PBKDF2-HMAC-SHA256 is not available: {e}") from e
        
        return derived_key, salt
