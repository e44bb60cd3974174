"""
Storage layer for the Credential Vault client.

Handles:
- Kind descriptors (secrets, API keys, environment variables, containers)
- Remote store access (PostgREST or in-memory)
- Query caching with TTL and invalidation
- Audit events
- The credential repository tying them together
"""

from .kinds import Kind, KindDescriptor, descriptor_for
from .models import Credential, DecryptedCredential
from .cache import QueryCache, CacheEntry, CacheKeys, with_cache
from .remote import RemoteStore, RestStore, InMemoryStore
from .audit import AuditEvent, AuditSink, LoggingAuditSink, StoreAuditSink
from .repository import CredentialRepository

__all__ = [
    "Kind",
    "KindDescriptor",
    "descriptor_for",
    "Credential",
    "DecryptedCredential",
    "QueryCache",
    "CacheEntry",
    "CacheKeys",
    "with_cache",
    "RemoteStore",
    "RestStore",
    "InMemoryStore",
    "AuditEvent",
    "AuditSink",
    "LoggingAuditSink",
    "StoreAuditSink",
    "CredentialRepository",
]
