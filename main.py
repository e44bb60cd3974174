"""
Credential Vault client - Main Entry Point

A local FastAPI application exposing the encrypted credential repository.
Runs on http://127.0.0.1:18422. Values are encrypted on this machine before
they are sent to the remote store.
"""

import logging
from typing import Optional
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from config import VERSION, Config, config
from auth import AuthManager, RequestContext
from crypto import EncryptionEngine, KeyManager
from errors import (
    AuthenticationRequired,
    DecryptionFailed,
    EncryptionUnavailable,
    NotEmpty,
    NotFound,
    StoreError,
    ValidationError,
    VaultError,
)
from store import (
    AuditSink,
    CredentialRepository,
    InMemoryStore,
    Kind,
    LoggingAuditSink,
    QueryCache,
    RemoteStore,
    RestStore,
    StoreAuditSink,
    descriptor_for,
)

logger = logging.getLogger(__name__)

__version__ = VERSION


class AppState:
    """Application state container (the composition root)."""
    
    def __init__(self):
        self.config: Optional[Config] = None
        self.auth_manager: Optional[AuthManager] = None
        self.store: Optional[RemoteStore] = None
        self.cache: Optional[QueryCache] = None
        self.audit_sink: Optional[AuditSink] = None
        self.repository: Optional[CredentialRepository] = None
        self.activity_logs: list[dict] = []
    
    def configure(
        self,
        cfg: Config,
        *,
        store: Optional[RemoteStore] = None,
        auth_manager: Optional[AuthManager] = None,
    ) -> None:
        """Wire every component from configuration."""
        self.config = cfg
        self.auth_manager = auth_manager or AuthManager(cfg.auth_url, cfg.STORE_API_KEY)
        
        if store is None:
            if cfg.uses_remote_store:
                store = RestStore(cfg.rest_url, cfg.STORE_API_KEY, token_provider=self.auth_manager.access_token)
            else:
                store = InMemoryStore()
        self.store = store
        
        self.cache = QueryCache(default_ttl=cfg.CACHE_TTL, max_size=cfg.CACHE_MAX_SIZE)
        self.audit_sink = StoreAuditSink(store) if cfg.uses_remote_store else LoggingAuditSink()
        self.repository = CredentialRepository(
            store,
            self.cache,
            key_manager=KeyManager(),
            engine=EncryptionEngine(),
            audit_sink=self.audit_sink,
        )
    
    async def start(self) -> None:
        self.cache.start_sweep(self.config.CACHE_SWEEP_INTERVAL)
    
    async def stop(self) -> None:
        if self.cache:
            await self.cache.stop_sweep()
            self.cache.clear()
        if self.store:
            await self.store.close()
    
    def add_log(self, level: str, message: str, details: str = ""):
        """Add an activity entry."""
        self.activity_logs.append({
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "message": message,
            "details": details,
        })
        # Keep only last 100 logs
        if len(self.activity_logs) > 100:
            self.activity_logs = self.activity_logs[-100:]


app_state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    if app_state.repository is None:
        app_state.configure(config)
    if not EncryptionEngine.is_supported():
        raise EncryptionUnavailable("AES-256-GCM is not available on this platform")
    await app_state.start()
    app_state.add_log("info", "Credential Vault started", f"Server running on http://{app_state.config.HOST}:{app_state.config.PORT}")
    
    yield
    
    # Shutdown - stop the cache sweep and release the store client
    await app_state.stop()
    if app_state.auth_manager:
        app_state.auth_manager.logout()
    app_state.add_log("info", "Credential Vault stopped", "Cache cleared, session closed")


app = FastAPI(
    title="Credential Vault",
    description="Local client for client-side encrypted secrets, API keys and environment variables",
    version=__version__,
    lifespan=lifespan,
)


ERROR_STATUS = {
    ValidationError: 400,
    AuthenticationRequired: 401,
    NotFound: 404,
    NotEmpty: 409,
    DecryptionFailed: 422,
    StoreError: 502,
    EncryptionUnavailable: 503,
}


@app.exception_handler(VaultError)
async def vault_error_handler(request: Request, exc: VaultError):
    """Translate vault errors into JSON responses."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        500,
    )
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, ValidationError):
        body["field"] = exc.field
    return JSONResponse(status_code=status_code, content=body)


async def request_context(legacy_passphrase: Optional[str] = None) -> RequestContext:
    """Context for the current session, refreshing an expired access token first."""
    await app_state.auth_manager.ensure_fresh_session()
    return app_state.auth_manager.context(legacy_passphrase=legacy_passphrase)


async def read_json_object(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


# ============================================================================
# Authentication API
# ============================================================================

@app.post("/api/auth/login")
async def api_login(request: Request):
    """Handle login request."""
    data = await read_json_object(request)
    email = data.get("email", "")
    password = data.get("password", "")
    
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password required")
    
    success, message = await app_state.auth_manager.login(email, password)
    
    if success:
        app_state.add_log("info", "Login successful", f"User: {email}")
        return {"success": True, "message": message}
    else:
        app_state.add_log("warning", "Login failed", message)
        raise HTTPException(status_code=401, detail=message)


@app.post("/api/auth/logout")
async def api_logout():
    """Handle logout request."""
    app_state.auth_manager.logout()
    app_state.cache.clear()
    app_state.add_log("info", "Logout successful", "Session and cache cleared")
    return {"success": True, "message": "Logged out"}


# ============================================================================
# Status & Tools API
# ============================================================================

@app.get("/api/status")
async def get_status():
    """Get client status."""
    session = app_state.auth_manager.current_session
    return {
        "version": __version__,
        "authenticated": app_state.auth_manager.is_authenticated,
        "user": session.identity.email if session else None,
        "remote_store": app_state.config.uses_remote_store,
        "encryption_supported": EncryptionEngine.is_supported(),
        "cache": app_state.cache.stats(),
    }


@app.get("/api/logs")
async def get_logs():
    """Get recent activity."""
    return {"logs": app_state.activity_logs}


@app.get("/api/tools/password")
async def generate_password(length: int = 32):
    """Generate a random password."""
    if length < 1 or length > 256:
        raise HTTPException(status_code=400, detail="Length must be between 1 and 256")
    return {"password": app_state.repository.engine.generate_secure_password(length)}


@app.get("/api/audit")
async def get_audit_logs(resource_kind: Optional[str] = None, action: Optional[str] = None, limit: int = 100):
    """Get the current user's audit trail."""
    if not isinstance(app_state.audit_sink, StoreAuditSink):
        raise HTTPException(status_code=404, detail="Audit trail is only kept with a remote store")
    ctx = await request_context()
    rows = await app_state.audit_sink.query(
        ctx.owner_id, resource_kind=resource_kind, action=action, limit=min(limit, 1000)
    )
    return {"logs": rows}


# ============================================================================
# Vault API
# ============================================================================

@app.get("/api/{kind}")
async def list_items(kind: Kind, container_id: Optional[str] = None, q: Optional[str] = None, tag: Optional[list[str]] = Query(default=None)):
    """List, search or filter items of a kind (metadata only)."""
    ctx = await request_context()
    repository = app_state.repository
    
    if tag:
        records = await repository.by_tags(kind, ctx, tag)
    elif q:
        records = await repository.search(kind, ctx, q)
    else:
        records = await repository.list(kind, ctx, container_id)
    
    return {"items": [record.to_dict() for record in records]}


@app.post("/api/{kind}", status_code=201)
async def create_item(kind: Kind, request: Request):
    """Create an item; the value is encrypted before it leaves this process."""
    data = await read_json_object(request)
    record = await app_state.repository.create(kind, await request_context(), data)
    app_state.add_log("info", f"Created {descriptor_for(kind).label}", record.name)
    return record.to_dict()


@app.get("/api/{kind}/{record_id}")
async def read_item(
    kind: Kind,
    record_id: str,
    x_vault_legacy_passphrase: Optional[str] = Header(default=None),
):
    """Read an item. Credential values are decrypted; containers return metadata."""
    ctx = await request_context(legacy_passphrase=x_vault_legacy_passphrase)
    if descriptor_for(kind).is_container:
        record = await app_state.repository.get(kind, ctx, record_id)
        return record.to_dict()
    
    decrypted = await app_state.repository.read(kind, ctx, record_id)
    return decrypted.to_dict()


@app.get("/api/{kind}/{record_id}/stats")
async def item_stats(kind: Kind, record_id: str):
    """Count the credentials inside a project or folder."""
    counts = await app_state.repository.container_stats(kind, await request_context(), record_id)
    return {"counts": counts}


@app.patch("/api/{kind}/{record_id}")
async def update_item(kind: Kind, record_id: str, request: Request):
    """Update an item; a new value is re-encrypted with fresh salt and iv."""
    data = await read_json_object(request)
    record = await app_state.repository.update(kind, await request_context(), record_id, data)
    app_state.add_log("info", f"Updated {descriptor_for(kind).label}", record.name)
    return record.to_dict()


@app.delete("/api/{kind}/{record_id}")
async def delete_item(kind: Kind, record_id: str):
    """Delete an item."""
    await app_state.repository.delete(kind, await request_context(), record_id)
    app_state.add_log("info", f"Deleted {descriptor_for(kind).label}", record_id)
    return {"success": True}


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    
    uvicorn.run(
        app,
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower(),
    )
