"""OAuth token schemas for the accounting provider."""

from typing import List, Optional

from pydantic import Field

from .base import UpdateModel, WireModel, now_ms


REFRESH_BUFFER_MS = 60 * 1000


class OAuthTokens(WireModel):
    """Stored credentials for one (user, provider) pair."""
    user_id: str = Field(min_length=1)
    provider: str = Field("xero", min_length=1)
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_at: int
    scopes: List[str] = Field(default_factory=list)
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None
    created_at: int
    updated_at: int

    def needs_refresh(self, buffer_ms: int = REFRESH_BUFFER_MS, now: Optional[int] = None) -> bool:
        """True when the access token expires within `buffer_ms`."""
        return self.expires_at < (now if now is not None else now_ms()) + buffer_ms


class OAuthTokensUpdate(UpdateModel):
    """Partial token update, applied as a single atomic write."""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[int] = None
    scopes: Optional[List[str]] = None
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None
