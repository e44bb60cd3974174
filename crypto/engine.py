"""
Envelope encryption for credential values.

Every value is encrypted with AES-256-GCM under a key stretched from the
caller's key material with a per-call random salt. The ciphertext (with its
GCM tag), the nonce and the salt travel together as an Envelope.
"""

import os
import base64
import binascii
import hashlib
import secrets
import string
from typing import Any
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import DecryptionFailed, EncryptionUnavailable
from .key_manager import KeyMaterial
from .stretch import KeyStretcher


@dataclass(frozen=True)
class Envelope:
    """The base64 triple that makes a stored value decryptable."""
    ciphertext: str
    iv: str
    salt: str
    
    @property
    def is_complete(self) -> bool:
        return bool(self.ciphertext and self.iv and self.salt)
    
    def to_dict(self) -> dict[str, str]:
        """Convert to JSON-serializable dictionary."""
        return {
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "salt": self.salt,
        }
    
    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Envelope":
        """Reconstruct from dictionary. Missing fields become empty strings."""
        return cls(
            ciphertext=data.get("ciphertext") or "",
            iv=data.get("iv") or "",
            salt=data.get("salt") or "",
        )


class EncryptionEngine:
    """Encrypts and decrypts credential values."""
    
    NONCE_LEN = 12  # 96 bits for AES-GCM
    PASSWORD_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits + "!@#$%^&*()_+-=[]{}|;:,.<>?"
    
    # Not recorded in the envelope; must match every stored record,
    # including those written by the web client.
    ITERATIONS = 100_000
    
    def __init__(self):
        self.stretcher = KeyStretcher(self.ITERATIONS)
    
    @staticmethod
    def is_supported() -> bool:
        """Check that the cryptography backend provides AES-GCM."""
        try:
            AESGCM(bytes(32))
        except UnsupportedAlgorithm:
            return False
        return True
    
    def _cipher(self, key: bytes) -> AESGCM:
        try:
            return AESGCM(key)
        except UnsupportedAlgorithm as e:
            raise EncryptionUnavailable(f"AES-256-GCM is not available: {e}") from e
    
    def encrypt(self, plaintext: str, key_material: KeyMaterial) -> Envelope:
        """
        Encrypt a value under fresh salt and nonce.
        
        Args:
            plaintext: The value to protect
            key_material: Output of KeyManager
            
        Returns:
            Envelope with base64 ciphertext (including GCM tag), iv and salt
        """
        key, salt = self.stretcher.derive_key(key_material.secret)
        nonce = os.urandom(self.NONCE_LEN)
        ciphertext = self._cipher(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        
        return Envelope(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(nonce).decode("ascii"),
            salt=base64.b64encode(salt).decode("ascii"),
        )
    
    def decrypt(self, envelope: Envelope, key_material: KeyMaterial) -> str:
        """
        Decrypt an envelope.
        
        Raises:
            DecryptionFailed: Wrong key, tampered or corrupted data, or a partial envelope
        """
        if not envelope.is_complete:
            raise DecryptionFailed()
        
        try:
            ciphertext = base64.b64decode(envelope.ciphertext, validate=True)
            nonce = base64.b64decode(envelope.iv, validate=True)
            salt = base64.b64decode(envelope.salt, validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionFailed() from None
        
        if len(nonce) != self.NONCE_LEN or not salt:
            raise DecryptionFailed()
        
        key, _ = self.stretcher.derive_key(key_material.secret, salt)
        
        try:
            plaintext = self._cipher(key).decrypt(nonce, ciphertext, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            raise DecryptionFailed() from None
    
    def generate_secure_password(self, length: int = 32) -> str:
        """Generate a random password from upper/lower/digit/symbol characters."""
        if length < 1:
            raise ValueError("Password length must be at least 1")
        return "".join(secrets.choice(self.PASSWORD_ALPHABET) for _ in range(length))
    
    @staticmethod
    def hash(value: str) -> str:
        """One-way SHA-256 digest, base64-encoded."""
        return base64.b64encode(hashlib.sha256(value.encode("utf-8")).digest()).decode("ascii")
