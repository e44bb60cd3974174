"""
Vault records.

A Credential is the metadata row plus its envelope; it never carries
plaintext. DecryptedCredential pairs a record with its value and is only ever
handed back to the caller of a read.
"""

from datetime import datetime
from typing import Any, Optional
from dataclasses import dataclass, field

from crypto.engine import Envelope
from .kinds import (
    CONTAINER_KINDS,
    DESCRIPTORS,
    IV_COLUMN,
    OWNER_COLUMN,
    SALT_COLUMN,
    Kind,
    KindDescriptor,
)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the store; datetimes pass through."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class Credential:
    """One stored item (metadata + envelope)."""
    id: str
    owner_id: str
    kind: Kind
    name: str
    envelope: Optional[Envelope] = None
    description: Optional[str] = None
    tags: frozenset[str] = frozenset()
    url: Optional[str] = None
    username: Optional[str] = None
    service: Optional[str] = None
    environment: Optional[str] = None
    expires_at: Optional[datetime] = None
    access_count: int = 0
    container_id: Optional[str] = None
    container_kind: Optional[Kind] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    
    @classmethod
    def from_row(cls, descriptor: KindDescriptor, row: dict[str, Any]) -> "Credential":
        """Build a record from a store row."""
        envelope = None
        if descriptor.value_column is not None:
            envelope = Envelope.from_dict({
                "ciphertext": row.get(descriptor.value_column),
                "iv": row.get(IV_COLUMN),
                "salt": row.get(SALT_COLUMN),
            })
        
        container_id, container_kind = None, None
        for candidate in CONTAINER_KINDS:
            column = DESCRIPTORS[candidate].reference_column
            if row.get(column):
                container_id, container_kind = str(row[column]), candidate
                break
        
        return cls(
            id=str(row["id"]),
            owner_id=str(row[OWNER_COLUMN]),
            kind=descriptor.kind,
            name=row["name"],
            envelope=envelope,
            description=row.get("description"),
            tags=frozenset(row.get("tags") or ()),
            url=row.get("url"),
            username=row.get("username"),
            service=row.get("service"),
            environment=row.get("environment"),
            expires_at=parse_timestamp(row.get("expires_at")),
            access_count=row.get("access_count") or 0,
            container_id=container_id,
            container_kind=container_kind,
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )
    
    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        now = datetime.now(self.expires_at.tzinfo)
        return self.expires_at <= now
    
    def metadata(self) -> dict[str, Any]:
        """Redacted snapshot for audit events: no envelope, no value."""
        snapshot = {
            "name": self.name,
            "description": self.description,
            "container_id": self.container_id,
        }
        for optional in ("url", "username", "service", "environment"):
            value = getattr(self, optional)
            if value is not None:
                snapshot[optional] = value
        if self.tags:
            snapshot["tags"] = sorted(self.tags)
        if self.expires_at is not None:
            snapshot["expires_at"] = format_timestamp(self.expires_at)
        return snapshot
    
    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable form (envelope included, never plaintext)."""
        data = {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            **self.metadata(),
            "access_count": self.access_count,
            "expired": self.is_expired,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }
        if self.container_kind is not None:
            data["container_kind"] = self.container_kind.value
        if self.envelope is not None:
            data["envelope"] = self.envelope.to_dict()
        return data


@dataclass(frozen=True)
class DecryptedCredential:
    """A record together with its decrypted value."""
    record: Credential
    value: str = field(repr=False)
    
    def to_dict(self) -> dict[str, Any]:
        data = self.record.to_dict()
        data.pop("envelope", None)
        data["value"] = self.value
        return data
