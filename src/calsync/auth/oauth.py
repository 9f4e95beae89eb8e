"""OAuth client configuration for the calendar providers.

## Endpoints

Google:
- Authorization: https://accounts.google.com/o/oauth2/v2/auth
- Token: https://oauth2.googleapis.com/token
- User Info: https://www.googleapis.com/oauth2/v1/userinfo?alt=json

Microsoft identity platform:
- Authorization: https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize
- Token: https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token
- User Info: https://graph.microsoft.com/v1.0/me

## State

Authorization requests carry a random state token. The token is remembered
with the requesting user and provider for ten minutes so the callback can be
matched back to its user.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from calsync.config import Settings
from calsync.database.models import CalendarProvider

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v1/userinfo?alt=json"
GOOGLE_SCOPE = (
    "https://www.googleapis.com/auth/calendar "
    "https://www.googleapis.com/auth/userinfo.profile"
)

MICROSOFT_AUTHORIZE_URL = (
    "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize"
)
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MICROSOFT_USERINFO_URL = "https://graph.microsoft.com/v1.0/me"
MICROSOFT_SCOPE = "https://graph.microsoft.com/calendars.readwrite offline_access"

STATE_TTL = timedelta(minutes=10)


@dataclass(frozen=True)
class ProviderOAuthConfig:
    """Everything needed to run the authorization code flow for one provider."""

    provider: str
    client_id: str
    client_secret: str
    redirect_uri: str
    authorize_url: str
    token_url: str
    userinfo_url: str
    scope: str
    extra_authorize_params: dict[str, str] = field(default_factory=dict)
    # Microsoft requires the scope to be repeated on refresh
    scope_on_refresh: bool = False

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "response_type": "code",
            **self.extra_authorize_params,
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"


def get_oauth_config(provider: str, settings: Settings) -> ProviderOAuthConfig:
    """Build the OAuth configuration for a provider from settings.

    Raises:
        ValueError: If the provider is unknown
    """
    if provider == CalendarProvider.GOOGLE.value:
        return ProviderOAuthConfig(
            provider=provider,
            client_id=settings.google_client_id or "",
            client_secret=settings.google_client_secret or "",
            redirect_uri=settings.google_redirect_uri,
            authorize_url=GOOGLE_AUTHORIZE_URL,
            token_url=GOOGLE_TOKEN_URL,
            userinfo_url=GOOGLE_USERINFO_URL,
            scope=GOOGLE_SCOPE,
            extra_authorize_params={"access_type": "offline", "prompt": "consent"},
        )

    if provider == CalendarProvider.MICROSOFT.value:
        tenant = settings.microsoft_tenant_id or "common"
        return ProviderOAuthConfig(
            provider=provider,
            client_id=settings.microsoft_client_id or "",
            client_secret=settings.microsoft_client_secret or "",
            redirect_uri=settings.microsoft_redirect_uri,
            authorize_url=MICROSOFT_AUTHORIZE_URL.format(tenant=tenant),
            token_url=MICROSOFT_TOKEN_URL.format(tenant=tenant),
            userinfo_url=MICROSOFT_USERINFO_URL,
            scope=MICROSOFT_SCOPE,
            extra_authorize_params={"response_mode": "query"},
            scope_on_refresh=True,
        )

    raise ValueError(f"Unsupported provider: {provider}")


@dataclass
class PendingAuthorization:
    user_id: uuid.UUID
    provider: str
    expires_at: datetime


class OAuthStateStore:
    """In-memory store of outstanding authorization states."""

    def __init__(self, ttl: timedelta = STATE_TTL):
        self._ttl = ttl
        self._pending: dict[str, PendingAuthorization] = {}

    def issue(self, user_id: uuid.UUID, provider: str) -> str:
        self._purge_expired()
        state = f"calendar-sync-{secrets.token_urlsafe(24)}"
        self._pending[state] = PendingAuthorization(
            user_id=user_id,
            provider=provider,
            expires_at=datetime.now(timezone.utc) + self._ttl,
        )
        return state

    def consume(self, state: str, provider: str) -> uuid.UUID | None:
        """Return the user that issued `state` for `provider`, at most once."""
        pending = self._pending.pop(state, None)
        if pending is None:
            logger.warning("Unknown OAuth state received")
            return None
        if pending.expires_at < datetime.now(timezone.utc):
            logger.warning(f"Expired OAuth state for user {pending.user_id}")
            return None
        if pending.provider != provider:
            logger.warning(
                f"OAuth state issued for {pending.provider} used with {provider}"
            )
            return None
        return pending.user_id

    def _purge_expired(self) -> None:
        now = datetime.now(timezone.utc)
        for state in [s for s, p in self._pending.items() if p.expires_at < now]:
            del self._pending[state]
