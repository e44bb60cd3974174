"""
Credential repository.

One generic CRUD/search surface over every kind. Values are encrypted on the
client before they reach the store; reads are owner-scoped so a record that
belongs to someone else resolves as NotFound and is never decrypted.
List and search results (metadata only) go through the query cache, which is
invalidated by every mutation for the affected owner and kind.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from auth import RequestContext
from crypto import EncryptionEngine, Envelope, KeyManager
from errors import DecryptionFailed, NotEmpty, NotFound, ValidationError
from .audit import AuditEvent, AuditSink
from .cache import CacheKeys, QueryCache
from .kinds import (
    CONTAINER_KINDS,
    CREDENTIAL_KINDS,
    DESCRIPTORS,
    IV_COLUMN,
    OWNER_COLUMN,
    SALT_COLUMN,
    Kind,
    KindDescriptor,
    descriptor_for,
)
from .models import Credential, DecryptedCredential, format_timestamp
from .remote import RemoteStore

logger = logging.getLogger(__name__)

DEPENDENT_LABELS = {
    Kind.SECRET: "secrets",
    Kind.API_KEY: "API keys",
    Kind.ENV_VAR: "environment variables",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialRepository:
    """Encrypting, caching, auditing repository over the remote store."""
    
    def __init__(
        self,
        store: RemoteStore,
        cache: QueryCache,
        *,
        key_manager: Optional[KeyManager] = None,
        engine: Optional[EncryptionEngine] = None,
        audit_sink: Optional[AuditSink] = None,
        list_ttl: Optional[float] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the repository.
        
        Args:
            store: Remote store holding metadata and envelopes
            cache: Query cache for list/search results (owned by the caller)
            key_manager: Key material derivation
            engine: Envelope encryption
            audit_sink: Receives CREATE/UPDATE/DELETE events
            list_ttl: TTL for cached listings; cache default if None
            now: Clock used for expiry validation and updated_at
        """
        self.store = store
        self.cache = cache
        self.key_manager = key_manager or KeyManager()
        self.engine = engine or EncryptionEngine()
        self.audit_sink = audit_sink
        self._now = now
        
        self._cached_list = cache.wrap(
            self._load_list,
            lambda d, owner_id, container_id: CacheKeys.listing(d.kind.value, owner_id, container_id),
            list_ttl,
        )
        self._cached_search = cache.wrap(
            self._load_search,
            lambda d, owner_id, query: CacheKeys.search(d.kind.value, owner_id, query),
            list_ttl,
        )
        self._cached_tags = cache.wrap(
            self._load_tags,
            lambda d, owner_id, tags: CacheKeys.tags(d.kind.value, owner_id, tags),
            list_ttl,
        )
    
    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    
    def _validate(self, descriptor: KindDescriptor, fields: dict[str, Any], *, partial: bool) -> dict[str, Any]:
        """Check and normalize fields. Raises ValidationError before any I/O."""
        unknown = sorted(set(fields) - descriptor.allowed_fields)
        if unknown:
            raise ValidationError(unknown[0], f"not supported for {descriptor.label}")
        
        if partial and not fields:
            raise ValidationError("fields", "at least one field is required")
        
        values: dict[str, Any] = {}
        
        if not partial or "name" in fields:
            values["name"] = self._validate_name(descriptor, fields.get("name"))
        
        if not descriptor.is_container and (not partial or "value" in fields):
            values["value"] = self._validate_value(descriptor, fields.get("value"))
        
        if "description" in fields:
            values["description"] = self._optional_text(
                "description", fields["description"], descriptor.description_max_length
            )
        
        for extra, max_length in descriptor.extra_fields.items():
            if extra in fields:
                values[extra] = self._optional_text(extra, fields[extra], max_length)
        
        if "tags" in fields:
            values["tags"] = self._validate_tags(fields["tags"])
        
        if "expires_at" in fields:
            values["expires_at"] = self._validate_expiry(fields["expires_at"])
        
        if "container_id" in fields:
            container_id = fields["container_id"]
            if container_id is not None and (not isinstance(container_id, str) or not container_id.strip()):
                raise ValidationError("container_id", "must be a non-empty string or null")
            values["container_id"] = container_id.strip() if container_id else None
        
        return values
    
    @staticmethod
    def _validate_name(descriptor: KindDescriptor, name: Any) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name", f"{descriptor.label} name is required")
        name = name.strip()
        if len(name) > descriptor.name_max_length:
            raise ValidationError("name", f"must be less than {descriptor.name_max_length} characters")
        if descriptor.name_pattern is not None and not descriptor.name_pattern.match(name):
            raise ValidationError("name", descriptor.name_pattern_message)
        return name
    
    @staticmethod
    def _validate_value(descriptor: KindDescriptor, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("value", f"{descriptor.label} value is required")
        if descriptor.value_max_length is not None and len(value) > descriptor.value_max_length:
            raise ValidationError("value", f"must be less than {descriptor.value_max_length} characters")
        return value
    
    @staticmethod
    def _optional_text(field: str, value: Any, max_length: Optional[int]) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValidationError(field, "must be a string")
        value = value.strip()
        if not value:
            return None
        if max_length is not None and len(value) > max_length:
            raise ValidationError(field, f"must be less than {max_length} characters")
        return value
    
    @staticmethod
    def _validate_tags(tags: Any) -> list[str]:
        if tags is None:
            return []
        if isinstance(tags, str) or not isinstance(tags, Iterable):
            raise ValidationError("tags", "must be a collection of strings")
        cleaned = set()
        for tag in tags:
            if not isinstance(tag, str) or not tag.strip():
                raise ValidationError("tags", "tags must be non-empty strings")
            cleaned.add(tag.strip())
        return sorted(cleaned)
    
    def _validate_expiry(self, expires_at: Any) -> Optional[datetime]:
        if expires_at is None:
            return None
        if isinstance(expires_at, str):
            try:
                expires_at = datetime.fromisoformat(expires_at)
            except ValueError:
                raise ValidationError("expires_at", "invalid date format") from None
        if not isinstance(expires_at, datetime):
            raise ValidationError("expires_at", "must be a datetime or ISO-8601 string")
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= self._now():
            raise ValidationError("expires_at", "expiry date must be in the future")
        return expires_at
    
    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    
    @staticmethod
    def _credential_descriptor(kind: "Kind | str") -> KindDescriptor:
        descriptor = descriptor_for(kind)
        if descriptor.is_container:
            raise ValidationError("kind", f"{descriptor.label} has no encrypted value")
        return descriptor
    
    @staticmethod
    def _columns(descriptor: KindDescriptor, values: dict[str, Any]) -> dict[str, Any]:
        """Map validated fields (without value) to store columns."""
        row: dict[str, Any] = {}
        for field_name, value in values.items():
            if field_name in ("value", "container_id"):
                continue
            if field_name == "expires_at":
                row["expires_at"] = format_timestamp(value)
            else:
                row[field_name] = value
        return row
    
    @staticmethod
    def _envelope_columns(descriptor: KindDescriptor, envelope: Envelope) -> dict[str, str]:
        return {
            descriptor.value_column: envelope.ciphertext,
            IV_COLUMN: envelope.iv,
            SALT_COLUMN: envelope.salt,
        }
    
    async def _fetch_owned(self, descriptor: KindDescriptor, owner_id: str, record_id: str) -> Credential:
        row = await self.store.fetch(descriptor.table, OWNER_COLUMN, owner_id, record_id)
        if row is None:
            raise NotFound(descriptor.kind.value, record_id)
        return Credential.from_row(descriptor, row)
    
    async def _find_container(self, owner_id: str, container_id: str) -> Optional[KindDescriptor]:
        """Descriptor of the owner's project or folder with this id, or None."""
        for kind in CONTAINER_KINDS:
            descriptor = DESCRIPTORS[kind]
            if await self.store.fetch(descriptor.table, OWNER_COLUMN, owner_id, container_id) is not None:
                return descriptor
        return None
    
    async def _resolve_container(self, owner_id: str, container_id: str) -> KindDescriptor:
        container = await self._find_container(owner_id, container_id)
        if container is None:
            raise ValidationError("container_id", "unknown project or folder")
        return container
    
    async def _container_patch(self, owner_id: str, before: Credential, container_id: Optional[str]) -> dict[str, Any]:
        """Columns that move a record into container_id (or out of any container)."""
        patch: dict[str, Any] = {}
        if before.container_kind is not None:
            patch[DESCRIPTORS[before.container_kind].reference_column] = None
        if container_id:
            container = await self._resolve_container(owner_id, container_id)
            patch[container.reference_column] = container_id
        return patch
    
    def _invalidate(self, descriptor: KindDescriptor, owner_id: str) -> None:
        removed = self.cache.invalidate_pattern(CacheKeys.owner_kind_pattern(descriptor.kind.value, owner_id))
        if removed:
            logger.debug("Invalidated %d cached %s listing(s)", removed, descriptor.kind.value)
    
    async def _audit(self, record: Credential, action: str, metadata: dict[str, Any]) -> None:
        if self.audit_sink is None:
            return
        event = AuditEvent(
            resource_kind=record.kind.value,
            resource_id=record.id,
            action=action,
            owner_id=record.owner_id,
            metadata=metadata,
        )
        try:
            await self.audit_sink.record(event)
        except Exception:
            logger.exception("Failed to record audit event %s %s %s", action, record.kind.value, record.id)
    
    def _decrypt_record(self, record: Credential, ctx: RequestContext) -> str:
        if record.envelope is None:
            raise DecryptionFailed()
        
        key_material = self.key_manager.derive_identity_key(ctx.identity)
        try:
            return self.engine.decrypt(record.envelope, key_material)
        except DecryptionFailed:
            if ctx.legacy_passphrase is None:
                raise
        
        logger.debug("Retrying %s %s with legacy passphrase key", record.kind.value, record.id)
        legacy_material = self.key_manager.derive_from_passphrase(ctx.legacy_passphrase)
        return self.engine.decrypt(record.envelope, legacy_material)
    
    # ------------------------------------------------------------------
    # Loaders behind the cache
    # ------------------------------------------------------------------
    
    async def _load_list(self, descriptor: KindDescriptor, owner_id: str, container_id: Optional[str]) -> tuple[Credential, ...]:
        equals = None
        if container_id:
            container = await self._find_container(owner_id, container_id)
            if container is None:
                return ()
            equals = {container.reference_column: container_id}
        rows = await self.store.select(descriptor.table, OWNER_COLUMN, owner_id, equals=equals)
        return tuple(Credential.from_row(descriptor, row) for row in rows)
    
    async def _load_search(self, descriptor: KindDescriptor, owner_id: str, query: str) -> tuple[Credential, ...]:
        rows = await self.store.select(
            descriptor.table, OWNER_COLUMN, owner_id, search=(query, descriptor.search_fields)
        )
        return tuple(Credential.from_row(descriptor, row) for row in rows)
    
    async def _load_tags(self, descriptor: KindDescriptor, owner_id: str, tags: list[str]) -> tuple[Credential, ...]:
        rows = await self.store.select(descriptor.table, OWNER_COLUMN, owner_id, overlaps=("tags", tags))
        return tuple(Credential.from_row(descriptor, row) for row in rows)
    
    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    
    async def create(self, kind: "Kind | str", ctx: RequestContext, fields: dict[str, Any]) -> Credential:
        """
        Validate, encrypt and store a new item.
        
        The plaintext value is only passed to the encryption engine; the
        returned record carries the envelope, never the value.
        """
        descriptor = descriptor_for(kind)
        values = self._validate(descriptor, fields, partial=False)
        identity = ctx.require_identity()
        owner_id = identity.user_id
        
        row = {OWNER_COLUMN: owner_id, **self._columns(descriptor, values)}
        if not descriptor.is_container:
            if values.get("container_id"):
                container = await self._resolve_container(owner_id, values["container_id"])
                row[container.reference_column] = values["container_id"]
            key_material = self.key_manager.derive_identity_key(identity)
            envelope = self.engine.encrypt(values.pop("value"), key_material)
            row.update(self._envelope_columns(descriptor, envelope))
        if descriptor.has_access_count:
            row["access_count"] = 0
        
        stored = await self.store.insert(descriptor.table, row)
        record = Credential.from_row(descriptor, stored)
        
        self._invalidate(descriptor, owner_id)
        await self._audit(record, "CREATE", record.metadata())
        logger.info("Created %s %s", descriptor.kind.value, record.id)
        return record
    
    async def get(self, kind: "Kind | str", ctx: RequestContext, record_id: str) -> Credential:
        """Fetch one owned record's metadata without decrypting."""
        descriptor = descriptor_for(kind)
        return await self._fetch_owned(descriptor, ctx.owner_id, record_id)
    
    async def read(self, kind: "Kind | str", ctx: RequestContext, record_id: str) -> DecryptedCredential:
        """
        Fetch and decrypt one owned record.
        
        Raises:
            NotFound: The record does not exist or belongs to another owner
            DecryptionFailed: Neither the identity key nor the legacy passphrase opens it
        """
        descriptor = self._credential_descriptor(kind)
        record = await self._fetch_owned(descriptor, ctx.owner_id, record_id)
        return DecryptedCredential(record=record, value=self._decrypt_record(record, ctx))
    
    async def decrypt(self, kind: "Kind | str", ctx: RequestContext, record: Credential) -> str:
        """Decrypt a record previously returned by list or search."""
        descriptor = self._credential_descriptor(kind)
        if record.kind is not descriptor.kind or record.owner_id != ctx.owner_id:
            raise NotFound(descriptor.kind.value, record.id)
        return self._decrypt_record(record, ctx)
    
    async def list(self, kind: "Kind | str", ctx: RequestContext, container_id: Optional[str] = None) -> list[Credential]:
        """Metadata-only listing, newest first, optionally within one container."""
        descriptor = descriptor_for(kind)
        records = await self._cached_list(descriptor, ctx.owner_id, container_id)
        return list(records)
    
    async def search(self, kind: "Kind | str", ctx: RequestContext, query: str) -> list[Credential]:
        """Case-insensitive substring search over the kind's search fields."""
        descriptor = descriptor_for(kind)
        query = (query or "").strip()
        if not query:
            return await self.list(descriptor.kind, ctx)
        records = await self._cached_search(descriptor, ctx.owner_id, query)
        return list(records)
    
    async def by_tags(self, kind: "Kind | str", ctx: RequestContext, tags: Iterable[str]) -> list[Credential]:
        """Records carrying any of the given tags."""
        descriptor = descriptor_for(kind)
        if not descriptor.supports_tags:
            raise ValidationError("tags", f"not supported for {descriptor.label}")
        wanted = self._validate_tags(tags)
        if not wanted:
            return []
        records = await self._cached_tags(descriptor, ctx.owner_id, wanted)
        return list(records)
    
    async def update(
        self,
        kind: "Kind | str",
        ctx: RequestContext,
        record_id: str,
        fields: dict[str, Any],
    ) -> Credential:
        """
        Patch an owned record.
        
        A supplied value is always re-encrypted under a new salt and iv.
        """
        descriptor = descriptor_for(kind)
        values = self._validate(descriptor, fields, partial=True)
        identity = ctx.require_identity()
        owner_id = identity.user_id
        
        before = await self._fetch_owned(descriptor, owner_id, record_id)
        patch = self._columns(descriptor, values)
        if "container_id" in values:
            patch.update(await self._container_patch(owner_id, before, values["container_id"]))
        value_changed = "value" in values
        if value_changed:
            key_material = self.key_manager.derive_identity_key(identity)
            envelope = self.engine.encrypt(values.pop("value"), key_material)
            patch.update(self._envelope_columns(descriptor, envelope))
        patch["updated_at"] = self._now().isoformat()
        
        stored = await self.store.update(descriptor.table, OWNER_COLUMN, owner_id, record_id, patch)
        if stored is None:
            # Deleted between the ownership check and the write
            self._invalidate(descriptor, owner_id)
            raise NotFound(descriptor.kind.value, record_id)
        after = Credential.from_row(descriptor, stored)
        
        self._invalidate(descriptor, owner_id)
        await self._audit(after, "UPDATE", {
            "before": before.metadata(),
            "after": after.metadata(),
            "value_changed": value_changed,
        })
        logger.info("Updated %s %s", descriptor.kind.value, record_id)
        return after
    
    async def delete(self, kind: "Kind | str", ctx: RequestContext, record_id: str) -> None:
        """
        Delete an owned record.
        
        Raises:
            NotEmpty: A project or folder still contains credentials
        """
        descriptor = descriptor_for(kind)
        owner_id = ctx.owner_id
        record = await self._fetch_owned(descriptor, owner_id, record_id)
        
        if descriptor.is_container:
            counts = await self._dependent_counts(owner_id, descriptor, record_id)
            dependents = [DEPENDENT_LABELS[k] for k, count in counts.items() if count]
            if dependents:
                raise NotEmpty(descriptor.kind.value, record_id, dependents)
        
        if not await self.store.delete(descriptor.table, OWNER_COLUMN, owner_id, record_id):
            self._invalidate(descriptor, owner_id)
            raise NotFound(descriptor.kind.value, record_id)
        
        self._invalidate(descriptor, owner_id)
        await self._audit(record, "DELETE", record.metadata())
        logger.info("Deleted %s %s", descriptor.kind.value, record_id)
    
    async def _dependent_counts(self, owner_id: str, container: KindDescriptor, container_id: str) -> dict[Kind, int]:
        counts = {}
        for kind in CREDENTIAL_KINDS:
            descriptor = DESCRIPTORS[kind]
            counts[kind] = await self.store.count(
                descriptor.table, OWNER_COLUMN, owner_id, equals={container.reference_column: container_id}
            )
        return counts
    
    async def container_stats(self, kind: "Kind | str", ctx: RequestContext, container_id: str) -> dict[str, int]:
        """Number of credentials of each kind inside a project or folder."""
        descriptor = descriptor_for(kind)
        if not descriptor.is_container:
            raise ValidationError("kind", f"{descriptor.label} is not a container")
        await self._fetch_owned(descriptor, ctx.owner_id, container_id)
        counts = await self._dependent_counts(ctx.owner_id, descriptor, container_id)
        return {k.value: count for k, count in counts.items()}
