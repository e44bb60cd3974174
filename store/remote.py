"""
Remote store access.

The store is trusted for storage only: every call is scoped by the owner
column, and authorization is enforced on the client side as well.

- RestStore talks to a PostgREST endpoint over httpx.
- InMemoryStore keeps rows in process (local mode and tests).
"""

import uuid
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from errors import StoreError

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class RemoteStore(ABC):
    """Row-oriented persistence keyed by (owner, id)."""
    
    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row:
        """Insert a row and return it as stored (with id and timestamps)."""
    
    @abstractmethod
    async def fetch(self, table: str, owner_column: str, owner_id: str, record_id: str) -> Optional[Row]:
        """Return the owner's row with this id, or None."""
    
    @abstractmethod
    async def select(
        self,
        table: str,
        owner_column: str,
        owner_id: str,
        *,
        equals: Optional[dict[str, Any]] = None,
        search: Optional[tuple[str, tuple[str, ...]]] = None,
        overlaps: Optional[tuple[str, list[str]]] = None,
        limit: Optional[int] = None,
    ) -> list[Row]:
        """
        Return the owner's rows, newest first.
        
        Args:
            equals: Column -> value equality filters (None matches NULL)
            search: (query, columns) case-insensitive substring match on any column
            overlaps: (column, values) array-overlap filter
            limit: Maximum number of rows
        """
    
    @abstractmethod
    async def update(self, table: str, owner_column: str, owner_id: str, record_id: str, patch: Row) -> Optional[Row]:
        """Apply a patch; return the updated row or None if it does not exist."""
    
    @abstractmethod
    async def delete(self, table: str, owner_column: str, owner_id: str, record_id: str) -> bool:
        """Delete a row; return False if it did not exist."""
    
    @abstractmethod
    async def count(self, table: str, owner_column: str, owner_id: str, *, equals: Optional[dict[str, Any]] = None) -> int:
        """Count the owner's rows matching the filters."""
    
    async def close(self) -> None:
        """Release any transport resources."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryStore(RemoteStore):
    """Process-local store with the same contract as the remote one."""
    
    def __init__(self):
        self._tables: dict[str, dict[str, Row]] = {}
    
    def _table(self, table: str) -> dict[str, Row]:
        return self._tables.setdefault(table, {})
    
    def _owned(self, table: str, owner_column: str, owner_id: str) -> list[Row]:
        return [row for row in self._table(table).values() if row.get(owner_column) == owner_id]
    
    async def insert(self, table: str, row: Row) -> Row:
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))
        now = _now_iso()
        stored.setdefault("created_at", now)
        stored.setdefault("updated_at", now)
        self._table(table)[stored["id"]] = stored
        return dict(stored)
    
    async def fetch(self, table: str, owner_column: str, owner_id: str, record_id: str) -> Optional[Row]:
        row = self._table(table).get(record_id)
        if row is None or row.get(owner_column) != owner_id:
            return None
        return dict(row)
    
    async def select(
        self,
        table: str,
        owner_column: str,
        owner_id: str,
        *,
        equals: Optional[dict[str, Any]] = None,
        search: Optional[tuple[str, tuple[str, ...]]] = None,
        overlaps: Optional[tuple[str, list[str]]] = None,
        limit: Optional[int] = None,
    ) -> list[Row]:
        rows = self._owned(table, owner_column, owner_id)
        
        for column, value in (equals or {}).items():
            rows = [row for row in rows if row.get(column) == value]
        
        if search is not None:
            query, columns = search
            needle = query.lower()
            rows = [
                row for row in rows
                if any(needle in (row.get(column) or "").lower() for column in columns)
            ]
        
        if overlaps is not None:
            column, values = overlaps
            wanted = set(values)
            rows = [row for row in rows if wanted & set(row.get(column) or ())]
        
        rows.sort(key=lambda row: row.get("created_at") or "", reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [dict(row) for row in rows]
    
    async def update(self, table: str, owner_column: str, owner_id: str, record_id: str, patch: Row) -> Optional[Row]:
        row = self._table(table).get(record_id)
        if row is None or row.get(owner_column) != owner_id:
            return None
        row.update(patch)
        return dict(row)
    
    async def delete(self, table: str, owner_column: str, owner_id: str, record_id: str) -> bool:
        rows = self._table(table)
        row = rows.get(record_id)
        if row is None or row.get(owner_column) != owner_id:
            return False
        del rows[record_id]
        return True
    
    async def count(self, table: str, owner_column: str, owner_id: str, *, equals: Optional[dict[str, Any]] = None) -> int:
        rows = await self.select(table, owner_column, owner_id, equals=equals)
        return len(rows)


def _quote(value: str) -> str:
    """Quote a value for use inside a PostgREST logical/array filter."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _eq(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"is.{str(value).lower()}"
    return f"eq.{value}"


class RestStore(RemoteStore):
    """Remote store backed by a PostgREST API."""
    
    def __init__(
        self,
        base_url: str,
        api_key: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the REST store.
        
        Args:
            base_url: PostgREST base URL (e.g. https://x.supabase.co/rest/v1)
            api_key: Public API key sent as the apikey header
            token_provider: Returns the current user's bearer token, if any
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._token_provider = token_provider
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
    
    def _get_headers(self) -> dict[str, str]:
        """Get headers for API requests."""
        token = self._token_provider() if self._token_provider else None
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {token or self.api_key}",
            "Content-Type": "application/json",
        }
    
    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, transport=self._transport)
        return self._client
    
    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
    
    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: list[tuple[str, str]],
        json: Optional[Row] = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        client = await self._get_client()
        headers = self._get_headers()
        if prefer:
            headers["Prefer"] = prefer
        
        try:
            response = await client.request(method, f"/{table}", params=params, json=json, headers=headers)
        except httpx.RequestError as e:
            logger.warning("%s /%s network error: %s", method, table, e)
            raise StoreError(f"Network error: {str(e)}") from e
        
        if response.status_code >= 400:
            detail = ""
            try:
                error_data = response.json()
                detail = error_data.get("message") or error_data.get("details") or ""
            except ValueError:
                detail = response.text
            logger.warning("%s /%s failed: %s %s", method, table, response.status_code, detail)
            raise StoreError(
                f"{method} {table} failed: {response.status_code}" + (f" - {detail}" if detail else ""),
                status_code=response.status_code,
            )
        
        return response
    
    @staticmethod
    def _owner_params(owner_column: str, owner_id: str, record_id: Optional[str] = None) -> list[tuple[str, str]]:
        params = [(owner_column, _eq(owner_id))]
        if record_id is not None:
            params.insert(0, ("id", _eq(record_id)))
        return params
    
    async def insert(self, table: str, row: Row) -> Row:
        response = await self._request(
            "POST", table, params=[("select", "*")], json=row, prefer="return=representation"
        )
        rows = response.json()
        if not rows:
            raise StoreError(f"POST {table} returned no row")
        return rows[0]
    
    async def fetch(self, table: str, owner_column: str, owner_id: str, record_id: str) -> Optional[Row]:
        params = [("select", "*"), *self._owner_params(owner_column, owner_id, record_id), ("limit", "1")]
        response = await self._request("GET", table, params=params)
        rows = response.json()
        return rows[0] if rows else None
    
    async def select(
        self,
        table: str,
        owner_column: str,
        owner_id: str,
        *,
        equals: Optional[dict[str, Any]] = None,
        search: Optional[tuple[str, tuple[str, ...]]] = None,
        overlaps: Optional[tuple[str, list[str]]] = None,
        limit: Optional[int] = None,
    ) -> list[Row]:
        params = [("select", "*"), *self._owner_params(owner_column, owner_id)]
        for column, value in (equals or {}).items():
            params.append((column, _eq(value)))
        if search is not None:
            query, columns = search
            pattern = _quote(f"*{_escape_like(query)}*")
            params.append(("or", "(" + ",".join(f"{column}.ilike.{pattern}" for column in columns) + ")"))
        if overlaps is not None:
            column, values = overlaps
            params.append((column, "ov.{" + ",".join(_quote(v) for v in values) + "}"))
        params.append(("order", "created_at.desc"))
        if limit is not None:
            params.append(("limit", str(limit)))
        
        response = await self._request("GET", table, params=params)
        return response.json() or []
    
    async def update(self, table: str, owner_column: str, owner_id: str, record_id: str, patch: Row) -> Optional[Row]:
        params = [("select", "*"), *self._owner_params(owner_column, owner_id, record_id)]
        response = await self._request("PATCH", table, params=params, json=patch, prefer="return=representation")
        rows = response.json()
        return rows[0] if rows else None
    
    async def delete(self, table: str, owner_column: str, owner_id: str, record_id: str) -> bool:
        params = [("select", "id"), *self._owner_params(owner_column, owner_id, record_id)]
        response = await self._request("DELETE", table, params=params, prefer="return=representation")
        return bool(response.json())
    
    async def count(self, table: str, owner_column: str, owner_id: str, *, equals: Optional[dict[str, Any]] = None) -> int:
        params = [("select", "id"), *self._owner_params(owner_column, owner_id)]
        for column, value in (equals or {}).items():
            params.append((column, _eq(value)))
        params.append(("limit", "1"))
        response = await self._request("GET", table, params=params, prefer="count=exact")
        
        # Content-Range: 0-0/42 or */0
        content_range = response.headers.get("content-range", "")
        total = content_range.rpartition("/")[2]
        if total.isdigit():
            return int(total)
        return len(response.json() or [])
