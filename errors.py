"""
Error taxonomy for the credential vault.

Every layer (crypto, store, repository, HTTP) raises these so callers can
react to the failure class without inspecting messages.
"""

from typing import Optional


class VaultError(Exception):
    """Base class for all vault errors."""


class AuthenticationRequired(VaultError):
    """No authenticated identity is available for the operation."""

    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)


class ValidationError(VaultError):
    """A field failed validation. Raised before any network or crypto call."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class NotFound(VaultError):
    """The record does not exist or is not owned by the caller."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")


class NotEmpty(VaultError):
    """A container still has dependent credentials."""

    def __init__(self, kind: str, record_id: str, dependents: list[str]):
        self.kind = kind
        self.record_id = record_id
        self.dependents = dependents
        super().__init__(
            f"Cannot delete {kind} {record_id} because it contains "
            f"{', '.join(dependents)}. Move or delete them first."
        )


class DecryptionFailed(VaultError):
    """Wrong key or corrupted data. The two causes are deliberately indistinguishable."""

    def __init__(self):
        super().__init__("Failed to decrypt data - invalid key or corrupted data")


class EncryptionUnavailable(VaultError):
    """The platform lacks AES-GCM / PBKDF2 support."""


class StoreError(VaultError):
    """Backend or transport failure, passed through to the caller."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
