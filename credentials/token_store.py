"""OAuth credential storage for the accounting provider."""

import logging
from typing import List, Optional

from database.base import DatabaseProvider
from database.errors import InvalidRequestError
from schemas.base import now_ms
from schemas.credentials import REFRESH_BUFFER_MS, OAuthTokens, OAuthTokensUpdate

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "xero"


class CredentialStore:
    """Stores and atomically refreshes OAuth tokens.

    The authorization-code exchange and token endpoint calls belong to
    the OAuth front door; this class only persists their results.
    """

    def __init__(self, provider: DatabaseProvider, refresh_buffer_ms: int = REFRESH_BUFFER_MS):
        self.provider = provider
        self.refresh_buffer_ms = refresh_buffer_ms

    async def save_tokens(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: int,
        provider: str = DEFAULT_PROVIDER,
        scopes: Optional[List[str]] = None,
        token_type: str = "Bearer",
        tenant_id: Optional[str] = None,
        tenant_name: Optional[str] = None
    ) -> OAuthTokens:
        """Store tokens from a completed authorization, replacing any previous set."""
        timestamp = now_ms()
        tokens = OAuthTokens(
            user_id=user_id,
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            token_type=token_type,
            expires_at=expires_at,
            scopes=scopes or [],
            tenant_id=tenant_id,
            tenant_name=tenant_name,
            created_at=timestamp,
            updated_at=timestamp,
        )
        await self.provider.save_oauth_tokens(tokens)
        logger.info(f"Saved {provider} tokens for user {user_id}")
        return tokens

    async def get_tokens(self, user_id: str, provider: str = DEFAULT_PROVIDER) -> Optional[OAuthTokens]:
        return await self.provider.get_oauth_tokens(user_id, provider)

    async def refresh_tokens(
        self,
        user_id: str,
        provider: str = DEFAULT_PROVIDER,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[int] = None
    ) -> OAuthTokens:
        """
        Replace the token triple in one atomic write.

        Args:
            user_id: User ID
            provider: OAuth provider name
            access_token: New access token
            refresh_token: New (rotated) refresh token
            expires_at: New access token expiry in Unix ms

        Returns:
            The updated token record

        Raises:
            InvalidRequestError: If any of the three fields is missing
            RecordNotFoundError: If no tokens are stored for the user
        """
        if not access_token or not refresh_token or expires_at is None:
            raise InvalidRequestError(
                "access_token, refresh_token and expires_at must be refreshed together"
            )

        tokens = await self.provider.update_oauth_tokens(
            user_id,
            provider,
            OAuthTokensUpdate(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at),
        )
        logger.info(f"Refreshed {provider} tokens for user {user_id}")
        return tokens

    async def disconnect(self, user_id: str, provider: str = DEFAULT_PROVIDER) -> None:
        """Forget the user's tokens for a provider."""
        await self.provider.delete_oauth_tokens(user_id, provider)
        logger.info(f"Disconnected {provider} for user {user_id}")

    async def get_valid_tokens(
        self,
        user_id: str,
        provider: str = DEFAULT_PROVIDER
    ) -> Optional[OAuthTokens]:
        """
        Tokens for an API call, or None if the user never connected.

        A record close to expiry is still returned; check
        `needs_refresh()` and call `refresh_tokens` first.
        """
        tokens = await self.provider.get_oauth_tokens(user_id, provider)
        if tokens is None:
            return None
        if tokens.needs_refresh(self.refresh_buffer_ms):
            logger.info(f"{provider} tokens for user {user_id} need refresh")
        return tokens
