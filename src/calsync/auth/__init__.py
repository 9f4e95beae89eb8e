"""Authorization for calendar providers and API sessions.

## OAuth Flow

1. User asks for a provider connection (`GET /api/calendar-sync/auth/{provider}`)
2. Redirect to the provider consent screen with a remembered state token
3. Provider redirects back with an authorization code
4. Exchange the code for access and refresh tokens
5. Create or update the user's connection

## Security

- Provider tokens are encrypted at rest
- API sessions use signed cookies
"""

from calsync.auth.session import (
    SessionData,
    create_session_token,
    verify_session_token,
)
from calsync.auth.tokens import AuthorizationRequest, TokenManager

__all__ = [
    "SessionData",
    "create_session_token",
    "verify_session_token",
    "AuthorizationRequest",
    "TokenManager",
]
