"""
Tests for the local HTTP API.

The FastAPI app is driven in-process through httpx's ASGITransport; the
composition root is wired to an in-memory store and a pre-authenticated
session.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from auth import AuthManager, UserSession
from config import Config
from main import app, app_state
from store import InMemoryStore


REFRESHED = {
    "access_token": "access-2",
    "refresh_token": "refresh-2",
    "expires_in": 3600,
    "user": {"id": "user-1", "email": "alice@example.com", "created_at": "2024-01-15T10:00:00+00:00"},
}


@pytest.fixture
def token_requests():
    return []


@pytest_asyncio.fixture
async def auth_manager(identity, token_requests):
    def handler(request):
        token_requests.append(request)
        if json.loads(request.content).get("refresh_token") == "refresh":
            return httpx.Response(200, json=REFRESHED)
        return httpx.Response(400, json={"error_description": "Invalid Refresh Token"})
    
    manager = AuthManager("https://vault.example.com/auth/v1", transport=httpx.MockTransport(handler))
    expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
    manager.set_session(UserSession("access", "refresh", identity, expires_at=expires_at))
    return manager


@pytest_asyncio.fixture
async def client(auth_manager):
    app_state.configure(Config(STORE_URL=""), store=InMemoryStore(), auth_manager=auth_manager)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app_state.stop()
    app_state.activity_logs.clear()


class TestStatus:
    @pytest.mark.asyncio
    async def test_status(self, client):
        response = await client.get("/api/status")
        assert response.status_code == 200
        data = response.json()
        assert data["authenticated"] is True
        assert data["user"] == "alice@example.com"
        assert data["remote_store"] is False
        assert data["encryption_supported"] is True
        assert data["cache"]["max_size"] == Config().CACHE_MAX_SIZE
    
    @pytest.mark.asyncio
    async def test_password_tool(self, client):
        response = await client.get("/api/tools/password", params={"length": 24})
        assert response.status_code == 200
        assert len(response.json()["password"]) == 24
        
        response = await client.get("/api/tools/password", params={"length": 0})
        assert response.status_code == 400


class TestVaultApi:
    @pytest.mark.asyncio
    async def test_crud_flow(self, client):
        response = await client.post("/api/secret", json={"name": "DB", "value": "p@ss", "tags": ["prod"]})
        assert response.status_code == 201
        created = response.json()
        assert "value" not in created
        assert created["expired"] is False
        assert set(created["envelope"]) == {"ciphertext", "iv", "salt"}
        secret_id = created["id"]
        
        response = await client.get(f"/api/secret/{secret_id}")
        assert response.status_code == 200
        assert response.json()["value"] == "p@ss"
        assert "envelope" not in response.json()
        
        response = await client.patch(f"/api/secret/{secret_id}", json={"value": "p@ss2"})
        assert response.status_code == 200
        assert response.json()["envelope"]["salt"] != created["envelope"]["salt"]
        
        response = await client.get("/api/secret")
        assert [item["name"] for item in response.json()["items"]] == ["DB"]
        
        response = await client.delete(f"/api/secret/{secret_id}")
        assert response.status_code == 200
        
        response = await client.get(f"/api/secret/{secret_id}")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"
    
    @pytest.mark.asyncio
    async def test_search_and_tags(self, client):
        await client.post("/api/api_key", json={"name": "Stripe", "value": "sk_1", "url": "https://stripe.com"})
        await client.post("/api/api_key", json={"name": "GitHub", "value": "ghp_1"})
        await client.post("/api/secret", json={"name": "A", "value": "v", "tags": ["prod"]})
        
        response = await client.get("/api/api_key", params={"q": "stripe"})
        assert [item["name"] for item in response.json()["items"]] == ["Stripe"]
        
        response = await client.get("/api/secret", params=[("tag", "prod"), ("tag", "dev")])
        assert [item["name"] for item in response.json()["items"]] == ["A"]
    
    @pytest.mark.asyncio
    async def test_validation_error(self, client):
        response = await client.post("/api/environment_variable", json={"name": "1FOO", "value": "x"})
        assert response.status_code == 400
        assert response.json()["field"] == "name"
    
    @pytest.mark.asyncio
    async def test_past_expiry(self, client):
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        response = await client.post("/api/secret", json={"name": "DB", "value": "v", "expires_at": past})
        assert response.status_code == 400
        assert response.json()["field"] == "expires_at"
    
    @pytest.mark.asyncio
    async def test_non_object_body(self, client):
        response = await client.post("/api/secret", json=["not", "an", "object"])
        assert response.status_code == 400
    
    @pytest.mark.asyncio
    async def test_unknown_kind(self, client):
        response = await client.get("/api/passwords")
        assert response.status_code == 422
    
    @pytest.mark.asyncio
    async def test_containers(self, client):
        response = await client.post("/api/folder", json={"name": "Production"})
        assert response.status_code == 201
        folder_id = response.json()["id"]
        
        await client.post("/api/secret", json={"name": "DB", "value": "v", "container_id": folder_id})
        
        response = await client.get(f"/api/folder/{folder_id}")
        assert response.json()["name"] == "Production"
        
        response = await client.get(f"/api/folder/{folder_id}/stats")
        assert response.json()["counts"]["secret"] == 1
        
        response = await client.delete(f"/api/folder/{folder_id}")
        assert response.status_code == 409
        assert "secrets" in response.json()["detail"]
    
    @pytest.mark.asyncio
    async def test_activity_log_has_no_values(self, client):
        await client.post("/api/secret", json={"name": "DB", "value": "hunter2"})
        response = await client.get("/api/logs")
        logs = response.json()["logs"]
        assert logs[-1]["message"] == "Created secret"
        assert "hunter2" not in repr(logs)


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_requires_session(self, client, auth_manager):
        auth_manager.logout()
        
        response = await client.get("/api/secret")
        assert response.status_code == 401
        assert response.json()["error"] == "AuthenticationRequired"
        
        response = await client.post("/api/secret", json={"name": "DB", "value": "v"})
        assert response.status_code == 401
    
    @pytest.mark.asyncio
    async def test_logout_clears_cache(self, client):
        await client.get("/api/secret")
        assert len(app_state.cache) == 1
        
        response = await client.post("/api/auth/logout")
        assert response.status_code == 200
        assert len(app_state.cache) == 0
        assert (await client.get("/api/status")).json()["authenticated"] is False
    
    @pytest.mark.asyncio
    async def test_login_requires_fields(self, client):
        response = await client.post("/api/auth/login", json={"email": "alice@example.com"})
        assert response.status_code == 400
    
    @pytest.mark.asyncio
    async def test_audit_needs_remote_store(self, client):
        response = await client.get("/api/audit")
        assert response.status_code == 404


class TestSessionRefresh:
    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_before_the_call(self, client, auth_manager, identity, token_requests):
        expired = datetime.now(timezone.utc) - timedelta(minutes=1)
        auth_manager.set_session(UserSession("access", "refresh", identity, expires_at=expired))
        
        response = await client.get("/api/secret")
        
        assert response.status_code == 200
        assert len(token_requests) == 1
        assert token_requests[0].url.params["grant_type"] == "refresh_token"
        assert auth_manager.access_token() == "access-2"
    
    @pytest.mark.asyncio
    async def test_valid_token_is_used_as_is(self, client, auth_manager, token_requests):
        response = await client.get("/api/secret")
        assert response.status_code == 200
        assert token_requests == []
        assert auth_manager.access_token() == "access"
    
    @pytest.mark.asyncio
    async def test_failed_refresh_requires_login(self, client, auth_manager, identity):
        expired = datetime.now(timezone.utc) - timedelta(minutes=1)
        auth_manager.set_session(UserSession("access", "revoked", identity, expires_at=expired))
        
        response = await client.get("/api/secret")
        
        assert response.status_code == 401
        assert not auth_manager.is_authenticated


class TestLegacyPassphraseHeader:
    @staticmethod
    async def _legacy_record(identity, passphrase):
        from crypto import EncryptionEngine, KeyManager
        
        envelope = EncryptionEngine().encrypt("legacy-value", KeyManager().derive_from_passphrase(passphrase))
        return await app_state.store.insert("secrets", {
            "user_id": identity.user_id,
            "name": "Legacy",
            "encrypted_value": envelope.ciphertext,
            "encryption_iv": envelope.iv,
            "encryption_salt": envelope.salt,
        })
    
    @pytest.mark.asyncio
    async def test_passphrase_header_opens_legacy_record(self, client, identity):
        row = await self._legacy_record(identity, "old master")
        response = await client.get(f"/api/secret/{row['id']}", headers={"X-Vault-Legacy-Passphrase": "old master"})
        assert response.status_code == 200
        assert response.json()["value"] == "legacy-value"
    
    @pytest.mark.asyncio
    async def test_empty_header_is_a_decryption_failure(self, client, identity):
        row = await self._legacy_record(identity, "old master")
        response = await client.get(f"/api/secret/{row['id']}", headers={"X-Vault-Legacy-Passphrase": ""})
        assert response.status_code == 422
        assert response.json()["error"] == "DecryptionFailed"


class TestLifespan:
    @pytest.mark.asyncio
    async def test_startup_log_uses_configured_address(self, auth_manager):
        from main import lifespan
        
        app_state.configure(Config(STORE_URL="", HOST="10.0.0.5", PORT=9999), store=InMemoryStore(), auth_manager=auth_manager)
        try:
            async with lifespan(app):
                assert app_state.cache.is_sweeping
                assert app_state.activity_logs[-1]["details"] == "Server running on http://10.0.0.5:9999"
        finally:
            app_state.activity_logs.clear()
        assert not app_state.cache.is_sweeping
