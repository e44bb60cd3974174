"""
Audit trail for vault mutations.

Events carry metadata only (names, descriptions, containers), never values
or envelopes. Delivery failures are the repository's concern: it logs and
swallows them so a broken audit sink cannot fail a mutation.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional
from dataclasses import dataclass, field

from errors import ValidationError
from .kinds import OWNER_COLUMN
from .remote import RemoteStore

logger = logging.getLogger(__name__)

ACTIONS = ("CREATE", "UPDATE", "DELETE")


@dataclass(frozen=True)
class AuditEvent:
    """A single audited mutation."""
    resource_kind: str
    resource_id: str
    action: str
    owner_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    
    def to_row(self) -> dict[str, Any]:
        return {
            OWNER_COLUMN: self.owner_id,
            "resource_type": self.resource_kind,
            "resource_id": self.resource_id,
            "action": self.action,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }


class AuditSink(ABC):
    """Receives audit events."""
    
    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Deliver one event. May raise; callers decide how to handle failure."""


class LoggingAuditSink(AuditSink):
    """Writes events to the application log."""
    
    async def record(self, event: AuditEvent) -> None:
        logger.info(
            "audit %s %s %s owner=%s",
            event.action,
            event.resource_kind,
            event.resource_id,
            event.owner_id,
        )


class StoreAuditSink(AuditSink):
    """Persists events to the audit_logs table of the remote store."""
    
    TABLE = "audit_logs"
    
    def __init__(self, store: RemoteStore):
        self.store = store
    
    async def record(self, event: AuditEvent) -> None:
        await self.store.insert(self.TABLE, event.to_row())
    
    async def query(
        self,
        owner_id: str,
        *,
        resource_kind: Optional[str] = None,
        resource_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Get the owner's audit rows, newest first."""
        equals = {}
        if resource_kind:
            equals["resource_type"] = resource_kind
        if resource_id:
            equals["resource_id"] = resource_id
        if action:
            if action not in ACTIONS:
                raise ValidationError("action", f"must be one of {', '.join(ACTIONS)}")
            equals["action"] = action
        return await self.store.select(self.TABLE, OWNER_COLUMN, owner_id, equals=equals, limit=limit)
