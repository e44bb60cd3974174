"""
Shared test fixtures for the Credential Vault test suite.
"""

import pytest

from auth import Identity, RequestContext
from crypto import EncryptionEngine, KeyManager
from store import AuditSink, CredentialRepository, InMemoryStore, QueryCache


class FakeClock:
    """Manually advanced monotonic clock."""
    
    def __init__(self, start: float = 1000.0):
        self.now = start
    
    def __call__(self) -> float:
        return self.now
    
    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAuditSink(AuditSink):
    """Keeps every event in memory."""
    
    def __init__(self):
        self.events = []
    
    async def record(self, event):
        self.events.append(event)


class FailingAuditSink(AuditSink):
    """Always fails to deliver."""
    
    async def record(self, event):
        raise RuntimeError("audit backend down")


class CountingStore(InMemoryStore):
    """In-memory store that counts list queries and inserts."""
    
    def __init__(self):
        super().__init__()
        self.select_calls = 0
        self.insert_calls = 0
    
    async def insert(self, *args, **kwargs):
        self.insert_calls += 1
        return await super().insert(*args, **kwargs)
    
    async def select(self, *args, **kwargs):
        self.select_calls += 1
        return await super().select(*args, **kwargs)


@pytest.fixture
def identity():
    return Identity(user_id="user-1", email="alice@example.com", created_at="2024-01-15T10:00:00+00:00")


@pytest.fixture
def other_identity():
    return Identity(user_id="user-2", email="bob@example.com", created_at="2024-02-01T08:30:00+00:00")


@pytest.fixture
def ctx(identity):
    return RequestContext(identity=identity)


@pytest.fixture
def other_ctx(other_identity):
    return RequestContext(identity=other_identity)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return QueryCache(default_ttl=180, max_size=50, clock=clock)


@pytest.fixture
def store():
    return CountingStore()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def engine():
    return EncryptionEngine()


@pytest.fixture
def key_manager():
    return KeyManager()


@pytest.fixture
def repository(store, cache, key_manager, engine, audit_sink):
    return CredentialRepository(
        store,
        cache,
        key_manager=key_manager,
        engine=engine,
        audit_sink=audit_sink,
    )
