"""
Cryptographic module for the Credential Vault client.

Handles:
- Key material derivation (identity digest, legacy passphrase)
- Key stretching (PBKDF2-HMAC-SHA256)
- Envelope encryption (AES-256-GCM)
"""

from .key_manager import KeyManager, KeyMaterial
from .stretch import KeyStretcher
from .engine import EncryptionEngine, Envelope

__all__ = ["KeyManager", "KeyMaterial", "KeyStretcher", "EncryptionEngine", "Envelope"]
