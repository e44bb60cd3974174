"""
Configuration for the Credential Vault client.
"""

import os
from dataclasses import dataclass

# Application version - update this for each release
VERSION = "0.3.0"


@dataclass
class Config:
    """Application configuration."""
    
    # Local server settings
    HOST: str = os.getenv("VAULT_HOST", "127.0.0.1")
    PORT: int = int(os.getenv("VAULT_PORT", "18422"))
    
    # Remote store (PostgREST) and identity provider (GoTrue) settings.
    # Without a store URL the client keeps everything in memory.
    STORE_URL: str = os.getenv("VAULT_STORE_URL", "")
    STORE_API_KEY: str = os.getenv("VAULT_STORE_API_KEY", "")
    AUTH_URL: str = os.getenv("VAULT_AUTH_URL", "")
    
    # Query cache settings (seconds)
    CACHE_TTL: float = float(os.getenv("VAULT_CACHE_TTL", "180"))
    CACHE_MAX_SIZE: int = int(os.getenv("VAULT_CACHE_MAX_SIZE", "50"))
    CACHE_SWEEP_INTERVAL: float = float(os.getenv("VAULT_CACHE_SWEEP_INTERVAL", "300"))
    
    LOG_LEVEL: str = os.getenv("VAULT_LOG_LEVEL", "INFO")
    
    @property
    def rest_url(self) -> str:
        """Base URL of the PostgREST endpoint."""
        return f"{self.STORE_URL.rstrip('/')}/rest/v1"
    
    @property
    def auth_url(self) -> str:
        """Base URL of the identity provider; defaults to the store's GoTrue endpoint."""
        if self.AUTH_URL:
            return self.AUTH_URL.rstrip("/")
        return f"{self.STORE_URL.rstrip('/')}/auth/v1"
    
    @property
    def uses_remote_store(self) -> bool:
        return bool(self.STORE_URL)


# Global config instance
config = Config()
