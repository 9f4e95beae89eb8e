"""Exception hierarchy for the calendar sync engine.

```
CalendarSyncError
├── AuthExchangeError             OAuth code exchange rejected
├── ReauthorizationRequiredError  refresh token revoked, user must reconnect
├── NotConnectedError             no active connection for the user/provider
└── ProviderError                 provider request failed
    └── ProviderAuthError         401 after a refresh-and-retry
```

Per-item provider failures are not exceptions: the adapter logs them and
returns None.
"""

from __future__ import annotations

import uuid


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""


class AuthExchangeError(CalendarSyncError):
    """Raised when the provider rejects an authorization code."""

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ReauthorizationRequiredError(CalendarSyncError):
    """Raised when the provider reports the refresh token as revoked."""

    def __init__(self, connection_id: uuid.UUID, provider: str):
        super().__init__(
            f"Connection {connection_id} to {provider} must be re-authorized"
        )
        self.connection_id = connection_id
        self.provider = provider


class NotConnectedError(CalendarSyncError):
    """Raised when an operation needs an active connection the user lacks."""

    def __init__(self, user_id: uuid.UUID, provider: str | None = None):
        target = provider or "any provider"
        super().__init__(f"User {user_id} has no active connection to {target}")
        self.user_id = user_id
        self.provider = provider


class ProviderError(CalendarSyncError):
    """Raised when a whole provider request fails."""

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.response_body = response_body


class ProviderAuthError(ProviderError):
    """Raised when the provider keeps answering 401 after a token refresh."""

    def __init__(
        self,
        provider: str,
        connection_id: uuid.UUID,
        status_code: int | None = 401,
    ):
        super().__init__(
            f"Authentication with {provider} failed for connection {connection_id}",
            provider=provider,
            status_code=status_code,
        )
        self.connection_id = connection_id
