"""
Identity handling for the Credential Vault client.

Manages:
- Password login against the identity provider (GoTrue-style API)
- Access token refresh
- The explicit identity/request context handed to every vault call
"""

import logging
from typing import Optional
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass

import httpx

from errors import AuthenticationRequired

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """The stable attributes of an authenticated user."""
    user_id: str
    email: str
    created_at: Optional[str] = None
    
    @classmethod
    def from_user_payload(cls, user: dict) -> "Identity":
        """Build an identity from the provider's user object."""
        return cls(
            user_id=user["id"],
            email=user.get("email") or "",
            created_at=user.get("created_at"),
        )


@dataclass(frozen=True)
class RequestContext:
    """
    Per-call context for repository operations.
    
    The identity determines ownership and the key material. A legacy
    passphrase may be supplied to read records encrypted before
    identity-derived keys existed.
    """
    identity: Optional[Identity]
    legacy_passphrase: Optional[str] = None
    
    def __post_init__(self):
        # An empty passphrase means none was supplied
        if not self.legacy_passphrase:
            object.__setattr__(self, "legacy_passphrase", None)
    
    def require_identity(self) -> Identity:
        if self.identity is None:
            raise AuthenticationRequired()
        return self.identity
    
    @property
    def owner_id(self) -> str:
        return self.require_identity().user_id
    
    def __repr__(self) -> str:
        has_legacy = self.legacy_passphrase is not None
        return f"RequestContext(identity={self.identity!r}, legacy_passphrase={'***' if has_legacy else None})"


@dataclass
class UserSession:
    """Represents an authenticated user session."""
    access_token: str
    refresh_token: str
    identity: Identity
    expires_at: Optional[datetime] = None


class AuthManager:
    """Manages authentication with the identity provider."""
    
    def __init__(self, auth_base_url: str, api_key: str = "", transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the auth manager.
        
        Args:
            auth_base_url: Base URL of the identity provider (e.g. https://x.supabase.co/auth/v1)
            api_key: Public API key sent with every request
            transport: Optional httpx transport (used by tests)
        """
        self.auth_base_url = auth_base_url.rstrip("/")
        self.api_key = api_key
        self._transport = transport
        self._session: Optional[UserSession] = None
    
    @property
    def is_authenticated(self) -> bool:
        """Check if user is currently authenticated."""
        return self._session is not None
    
    @property
    def current_session(self) -> Optional[UserSession]:
        """Get the current session."""
        return self._session
    
    def set_session(self, session: Optional[UserSession]) -> None:
        """Install a session obtained elsewhere (or clear it with None)."""
        self._session = session
    
    def current_identity(self) -> Identity:
        """Return the authenticated identity or raise AuthenticationRequired."""
        if self._session is None:
            raise AuthenticationRequired()
        return self._session.identity
    
    def context(self, legacy_passphrase: Optional[str] = None) -> RequestContext:
        """Build a request context for the current session."""
        return RequestContext(identity=self.current_identity(), legacy_passphrase=legacy_passphrase)
    
    def access_token(self) -> Optional[str]:
        """Current bearer token, used by the remote store."""
        if self._session is None:
            return None
        return self._session.access_token
    
    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport)
    
    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        return headers
    
    def _session_from_payload(self, data: dict) -> UserSession:
        expires_at = None
        if data.get("expires_at"):
            expires_at = datetime.fromtimestamp(data["expires_at"], tz=timezone.utc)
        elif data.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=data["expires_in"])
        
        return UserSession(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            identity=Identity.from_user_payload(data["user"]),
            expires_at=expires_at,
        )
    
    async def login(self, email: str, password: str) -> tuple[bool, str]:
        """
        Login with email and password.
        
        Args:
            email: User's email address
            password: User's password
            
        Returns:
            Tuple of (success, message)
        """
        url = f"{self.auth_base_url}/token"
        logger.info("Attempting login to %s", url)
        
        try:
            async with self._client() as client:
                response = await client.post(
                    url,
                    params={"grant_type": "password"},
                    headers=self._headers(),
                    json={"email": email, "password": password},
                )
        except httpx.RequestError as e:
            logger.warning("Login network error: %s", e)
            return False, f"Network error: {str(e)}"
        
        if response.status_code == 200:
            self._session = self._session_from_payload(response.json())
            logger.info("Login successful for user %s", self._session.identity.user_id)
            return True, "Login successful"
        
        if response.status_code in (400, 401):
            try:
                error_data = response.json()
                detail = error_data.get("error_description") or error_data.get("msg") or "Invalid email or password"
            except ValueError:
                detail = "Invalid email or password"
            logger.warning("Login rejected: %s", detail)
            return False, detail
        
        logger.warning("Login failed with status %s", response.status_code)
        return False, f"Login failed: {response.status_code}"
    
    async def refresh_token(self) -> bool:
        """
        Refresh the access token.
        
        Returns:
            True if successful, False otherwise
        """
        if not self._session:
            return False
        
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.auth_base_url}/token",
                    params={"grant_type": "refresh_token"},
                    headers=self._headers(),
                    json={"refresh_token": self._session.refresh_token},
                )
        except httpx.RequestError as e:
            logger.warning("Token refresh network error: %s", e)
            return False
        
        if response.status_code != 200:
            logger.warning("Token refresh failed with status %s", response.status_code)
            return False
        
        self._session = self._session_from_payload(response.json())
        return True
    
    async def ensure_fresh_session(self) -> None:
        """
        Refresh the access token when it is expired or about to expire.
        
        Raises:
            AuthenticationRequired: No session, or the refresh was rejected
        """
        if self._session is None:
            raise AuthenticationRequired()
        if not self.is_token_expired():
            return
        
        logger.info("Access token expired, refreshing")
        if not await self.refresh_token():
            self.logout()
            raise AuthenticationRequired("Session expired - please log in again")
    
    def logout(self):
        """Logout and clear session."""
        self._session = None
    
    def is_token_expired(self) -> bool:
        """Check if the current token is expired or about to expire."""
        if not self._session or not self._session.expires_at:
            return True
        
        # Consider expired if less than 5 minutes remaining
        return datetime.now(timezone.utc) >= self._session.expires_at - timedelta(minutes=5)
    
