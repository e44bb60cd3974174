"""
Key material derivation.

Two strategies produce the input that the encryption engine stretches into
an AES key:

- identity: a SHA-256 digest over the authenticated user's stable attributes,
  so the same user always gets the same material on any session.
- passphrase (legacy): the user's passphrase itself. Records encrypted before
  identity-derived keys existed can only be opened this way.
"""

import base64
import hashlib
from dataclasses import dataclass, field
from typing import Optional

from auth import Identity
from errors import AuthenticationRequired, ValidationError


IDENTITY_STRATEGY = "identity"
PASSPHRASE_STRATEGY = "passphrase"


@dataclass(frozen=True)
class KeyMaterial:
    """Input to key stretching. Never the raw AES key."""
    secret: bytes = field(repr=False)
    strategy: str = IDENTITY_STRATEGY


class KeyManager:
    """Derives key material from an identity or a legacy passphrase."""
    
    def derive_identity_key(self, identity: Optional[Identity]) -> KeyMaterial:
        """
        Derive deterministic key material for an identity.
        
        The digest covers "<user id>:<email>:<creation time>" and is
        base64-encoded, matching the material existing records were
        encrypted with.
        
        Raises:
            AuthenticationRequired: If no identity is available
        """
        if identity is None:
            raise AuthenticationRequired("User not authenticated - cannot derive encryption key")
        
        tuple_str = f"{identity.user_id}:{identity.email}:{identity.created_at or ''}"
        digest = hashlib.sha256(tuple_str.encode("utf-8")).digest()
        return KeyMaterial(
            secret=base64.b64encode(digest),
            strategy=IDENTITY_STRATEGY,
        )
    
    def derive_from_passphrase(self, passphrase: str) -> KeyMaterial:
        """Key material for records created with the legacy passphrase scheme."""
        if not passphrase:
            raise ValidationError("passphrase", "passphrase is required")
        return KeyMaterial(
            secret=passphrase.encode("utf-8"),
            strategy=PASSPHRASE_STRATEGY,
        )
