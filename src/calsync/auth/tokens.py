"""Token manager for provider connections.

Owns the OAuth lifecycle of a `CalendarConnection`:

1. `build_authorization_url()` - consent URL with a remembered state token
2. `complete_authorization()` - exchange the code, create/update the connection
3. `ensure_fresh_token()` - refresh shortly before the access token expires
4. `refresh()` - unconditional refresh, used after a provider 401
5. `clear_tokens()` - forget the credentials of a disconnected connection

Token fields of a connection are only ever written here.

Example:
    ```python
    async with get_db() as db:
        tokens = TokenManager(db, http_client=client)
        connection = await tokens.ensure_fresh_token(connection)
    ```
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from calsync.auth.oauth import OAuthStateStore, get_oauth_config
from calsync.config import Settings, get_settings
from calsync.database.models import (
    CalendarConnection,
    CalendarProvider,
    ConnectionStatus,
)
from calsync.errors import AuthExchangeError, ReauthorizationRequiredError

logger = logging.getLogger(__name__)

_state_store = OAuthStateStore()


def get_state_store() -> OAuthStateStore:
    """Process-wide store of outstanding authorization states."""
    return _state_store


@dataclass
class AuthorizationRequest:
    """Consent URL to redirect the user to, and the state it carries."""

    url: str
    state: str


@dataclass
class ProviderTokens:
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None


def _expires_at(data: dict[str, Any]) -> datetime | None:
    expires_in = data.get("expires_in")
    if not expires_in:
        return None
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


class TokenManager:
    """OAuth token lifecycle for calendar connections.

    Args:
        db: Session that owns the connections passed to this manager
        settings: Application settings (defaults to cached settings)
        http_client: Shared HTTP client (a short-lived one is used otherwise)
        state_store: Store for authorization states (defaults to process-wide)
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        state_store: OAuthStateStore | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self._http_client = http_client
        self._state_store = state_store or get_state_store()

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds
        ) as client:
            yield client

    # -------------------------------------------------------------------------
    # Authorization code flow
    # -------------------------------------------------------------------------

    def build_authorization_url(
        self, provider: str, user_id: uuid.UUID
    ) -> AuthorizationRequest:
        """Build the provider consent URL for a user.

        Raises:
            ValueError: If the provider is unknown
        """
        config = get_oauth_config(provider, self.settings)
        configured = (
            self.settings.google_oauth_configured
            if provider == CalendarProvider.GOOGLE.value
            else self.settings.microsoft_oauth_configured
        )
        if not configured:
            logger.warning(f"OAuth client for {provider} is not configured")
        state = self._state_store.issue(user_id, provider)
        return AuthorizationRequest(url=config.authorization_url(state), state=state)

    def verify_state(self, state: str, provider: str) -> uuid.UUID | None:
        """User that started the authorization carrying `state`, or None."""
        return self._state_store.consume(state, provider)

    async def complete_authorization(
        self,
        provider: str,
        code: str,
        user_id: uuid.UUID,
    ) -> CalendarConnection:
        """Exchange an authorization code and store the resulting connection.

        An existing connection for (user, provider) is reactivated with the new
        tokens. Its refresh token is kept when the provider sends none.

        Raises:
            AuthExchangeError: If the code exchange or user lookup fails
        """
        logger.info(f"Completing {provider} authorization for user {user_id}")

        tokens = await self._exchange_code(provider, code)
        provider_user_id = await self._fetch_provider_user_id(
            provider, tokens.access_token
        )

        result = await self.db.execute(
            select(CalendarConnection).where(
                CalendarConnection.user_id == user_id,
                CalendarConnection.provider == provider,
            )
        )
        connection = result.scalar_one_or_none()

        if connection is not None:
            logger.info(f"Updating existing connection {connection.id}")
            connection.access_token = tokens.access_token
            if tokens.refresh_token:
                connection.refresh_token = tokens.refresh_token
            connection.token_expires_at = tokens.expires_at
            connection.status = ConnectionStatus.ACTIVE.value
            if provider_user_id:
                connection.provider_user_id = provider_user_id
        else:
            connection = CalendarConnection(
                user_id=user_id,
                provider=provider,
                provider_user_id=provider_user_id,
                token_expires_at=tokens.expires_at,
                status=ConnectionStatus.ACTIVE.value,
            )
            connection.access_token = tokens.access_token
            connection.refresh_token = tokens.refresh_token
            self.db.add(connection)

        await self.db.commit()
        logger.info(f"{provider} authorization completed for user {user_id}")
        return connection

    async def _exchange_code(self, provider: str, code: str) -> ProviderTokens:
        config = get_oauth_config(provider, self.settings)
        form = {
            "code": code,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "redirect_uri": config.redirect_uri,
            "grant_type": "authorization_code",
        }
        if config.scope_on_refresh:
            form["scope"] = config.scope

        try:
            async with self._client() as client:
                response = await client.post(config.token_url, data=form)
        except httpx.HTTPError as e:
            raise AuthExchangeError(
                f"Token exchange with {provider} failed: {e}", provider
            ) from e

        if response.status_code != 200:
            logger.error(f"Token exchange failed: {response.text}")
            raise AuthExchangeError(
                f"Token exchange failed: {response.status_code}",
                provider,
                status_code=response.status_code,
            )

        data = response.json()
        if not data.get("access_token"):
            raise AuthExchangeError("Token response has no access token", provider)

        return ProviderTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=_expires_at(data),
        )

    async def _fetch_provider_user_id(self, provider: str, access_token: str) -> str | None:
        config = get_oauth_config(provider, self.settings)
        try:
            async with self._client() as client:
                response = await client.get(
                    config.userinfo_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as e:
            raise AuthExchangeError(
                f"User info request to {provider} failed: {e}", provider
            ) from e

        if response.status_code != 200:
            logger.error(f"User info request failed: {response.text}")
            raise AuthExchangeError(
                f"User info request failed: {response.status_code}",
                provider,
                status_code=response.status_code,
            )

        user_id = response.json().get("id")
        return str(user_id) if user_id else None

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def ensure_fresh_token(
        self, connection: CalendarConnection
    ) -> CalendarConnection:
        """Refresh the access token when it expires within the refresh margin.

        Raises:
            ReauthorizationRequiredError: If the refresh token was revoked
        """
        if connection.token_expires_at is None:
            return connection

        margin = timedelta(seconds=self.settings.token_refresh_margin_seconds)
        if connection.token_expires_at - datetime.now(timezone.utc) > margin:
            return connection

        if not connection.refresh_token_encrypted:
            logger.warning(f"Missing refresh token for connection {connection.id}")
            return connection

        return await self.refresh(connection)

    async def refresh(self, connection: CalendarConnection) -> CalendarConnection:
        """Exchange the refresh token for a new access token.

        Failures other than a revoked refresh token are logged and leave the
        connection unchanged; the caller will see the provider's 401.

        Raises:
            ReauthorizationRequiredError: If the provider answers invalid_grant
        """
        refresh_token = connection.refresh_token
        if not refresh_token:
            return connection

        config = get_oauth_config(connection.provider, self.settings)
        form = {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if config.scope_on_refresh:
            form["scope"] = config.scope

        try:
            async with self._client() as client:
                response = await client.post(config.token_url, data=form)
        except httpx.HTTPError as e:
            logger.error(f"Token refresh for connection {connection.id} failed: {e}")
            return connection

        if response.status_code != 200:
            if response.status_code == 400 and "invalid_grant" in response.text:
                logger.error(f"Refresh token revoked for connection {connection.id}")
                raise ReauthorizationRequiredError(connection.id, connection.provider)
            logger.error(
                f"Failed to refresh tokens for connection {connection.id}: "
                f"{response.status_code} - {response.text}"
            )
            return connection

        data = response.json()
        if not data.get("access_token"):
            logger.error(
                f"Missing access token in refresh response for connection {connection.id}"
            )
            return connection

        connection.access_token = data["access_token"]
        if data.get("refresh_token"):
            connection.refresh_token = data["refresh_token"]
        expires_at = _expires_at(data)
        if expires_at is not None:
            connection.token_expires_at = expires_at

        await self.db.commit()
        logger.debug(f"Refreshed access token for connection {connection.id}")
        return connection

    def clear_tokens(self, connection: CalendarConnection) -> None:
        """Forget the credentials of a connection. The caller commits."""
        connection.access_token = None
        connection.refresh_token = None
        connection.token_expires_at = None
