"""Provider adapter.

Translates the engine's logical operations into provider HTTP calls.

Every call goes through `authenticated_request()`:

1. Make sure the access token is fresh (`TokenManager.ensure_fresh_token`)
2. Send the request, retrying transport failures with exponential backoff
3. On 401, force one refresh and retry once
4. A second 401, or a 401 with no refresh token, raises `ProviderAuthError`

Whole-request failures (e.g. a 5xx on the delta feed) raise `ProviderError`.
Single-item failures on push are logged and reported as None so a sync run
can move on to the next event.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from calsync.auth.tokens import TokenManager
from calsync.config import Settings, get_settings
from calsync.database.models import CalendarConnection, Event
from calsync.errors import (
    ProviderAuthError,
    ReauthorizationRequiredError,
)
from calsync.providers import google, microsoft
from calsync.providers.base import (
    CalendarListEntry,
    EventDelta,
    ProviderVariant,
    PushOperation,
    PushResult,
    SyncWindow,
)
from calsync.sync.mapper import get_external_last_modified, to_external_payload
from calsync.sync.timezones import UTC

logger = logging.getLogger(__name__)

VARIANTS: dict[str, ProviderVariant] = {
    google.VARIANT.provider: google.VARIANT,
    microsoft.VARIANT.provider: microsoft.VARIANT,
}


def get_variant(provider: str) -> ProviderVariant:
    """Select the variant for a provider tag.

    Raises:
        ValueError: If the provider is unknown
    """
    try:
        return VARIANTS[provider]
    except KeyError:
        raise ValueError(f"Unsupported provider: {provider}") from None


class ProviderAdapter:
    """Uniform access to Google and Microsoft calendars.

    Example:
        ```python
        adapter = ProviderAdapter(TokenManager(db, http_client=client), client)
        delta = await adapter.fetch_event_delta(connection, "primary", cursor)
        ```
    """

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: httpx.AsyncClient,
        settings: Settings | None = None,
    ):
        self.tokens = token_manager
        self.http_client = http_client
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Authenticated transport
    # -------------------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _send(
        self,
        method: str,
        url: str,
        access_token: str | None,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        request_headers = {"Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        request_headers["Authorization"] = f"Bearer {access_token or ''}"
        return await self.http_client.request(
            method, url, params=params, headers=request_headers, json=json
        )

    async def authenticated_request(
        self,
        connection: CalendarConnection,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send a request with the connection's token, refreshing on 401.

        Raises:
            ProviderAuthError: If the provider still answers 401 after a refresh
            ReauthorizationRequiredError: If the refresh token was revoked
        """
        connection = await self.tokens.ensure_fresh_token(connection)
        kwargs = {"params": params, "headers": headers, "json": json}

        response = await self._send(method, url, connection.access_token, **kwargs)
        if response.status_code != 401:
            return response

        if not connection.refresh_token_encrypted:
            logger.warning(
                f"Received 401 with no refresh token for connection {connection.id}"
            )
            raise ProviderAuthError(connection.provider, connection.id)

        connection = await self.tokens.refresh(connection)
        response = await self._send(method, url, connection.access_token, **kwargs)
        if response.status_code == 401:
            logger.warning(f"Received 401 after refresh for connection {connection.id}")
            raise ProviderAuthError(connection.provider, connection.id)

        return response

    def _bind(self, connection: CalendarConnection):
        return partial(self.authenticated_request, connection)

    # -------------------------------------------------------------------------
    # Calendars
    # -------------------------------------------------------------------------

    async def fetch_calendar_list(
        self, connection: CalendarConnection
    ) -> list[CalendarListEntry]:
        """List the account's calendars. Any failure yields an empty list."""
        variant = get_variant(connection.provider)
        try:
            response = await self.authenticated_request(
                connection, "GET", variant.calendar_list_url
            )
            if response.is_error:
                logger.error(
                    f"Failed to fetch {connection.provider} calendars: "
                    f"{response.status_code}"
                )
                return []
            return variant.parse_calendar_list(response.json())
        except Exception as e:
            logger.exception(f"Error fetching external calendars: {e}")
            return []

    async def fetch_calendar_name(
        self, connection: CalendarConnection, calendar_id: str
    ) -> str:
        """Display name of an external calendar, with a generic fallback."""
        variant = get_variant(connection.provider)
        try:
            response = await self.authenticated_request(
                connection, "GET", variant.calendar_url(calendar_id)
            )
            if response.is_success:
                name = variant.parse_calendar_name(response.json())
                if name:
                    return name
        except Exception as e:
            logger.exception(f"Error fetching calendar name: {e}")
        return f"External Calendar {calendar_id}"

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def local_window(self) -> SyncWindow:
        """Configured look-back/look-ahead window, used to select local events to push."""
        now = datetime.now(timezone.utc)
        return SyncWindow(
            start=now - timedelta(days=self.settings.calendar_sync_lookback_days),
            end=now + timedelta(days=self.settings.calendar_sync_lookahead_days),
        )

    def sync_window(self, provider: str) -> SyncWindow:
        """Full-sync window for a provider, honouring its window limit."""
        variant = get_variant(provider)
        lookback = self.settings.calendar_sync_lookback_days
        lookahead = self.settings.calendar_sync_lookahead_days
        cap = variant.max_window_days
        if cap:
            lookahead = min(lookahead, cap)

        now = datetime.now(timezone.utc)
        start = now - timedelta(days=lookback)
        end = now + timedelta(days=lookahead)
        if cap and end - start > timedelta(days=cap):
            start = end - timedelta(days=cap)
        return SyncWindow(start=start, end=end)

    async def fetch_event_delta(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        cursor: str | None = None,
        user_timezone: str = UTC,
    ) -> EventDelta:
        """Fetch changes since `cursor`, or everything in the window without one.

        Expired or malformed cursors fall back to a full fetch.

        Raises:
            ProviderError: If the feed cannot be read
            ProviderAuthError: If the provider rejects the credentials
        """
        variant = get_variant(connection.provider)
        return await variant.fetch_delta(
            self._bind(connection),
            calendar_id,
            cursor,
            self.sync_window(connection.provider),
            user_timezone,
        )

    async def fetch_event_details(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        event_id: str,
        user_timezone: str = UTC,
    ) -> dict[str, Any] | None:
        """Fetch the full representation of one event, where the provider needs it."""
        variant = get_variant(connection.provider)
        if variant.fetch_details is None:
            return None
        try:
            return await variant.fetch_details(
                self._bind(connection), calendar_id, event_id, user_timezone
            )
        except (ProviderAuthError, ReauthorizationRequiredError):
            raise
        except Exception as e:
            logger.exception(f"Error fetching event {event_id}: {e}")
            return None

    async def push_event(
        self,
        connection: CalendarConnection,
        calendar_id: str,
        operation: PushOperation,
        local_event: Event | None = None,
        *,
        external_event_id: str | None = None,
        user_timezone: str = UTC,
    ) -> PushResult | None:
        """Create, update or delete one event on the provider.

        Returns None when the provider refused the item or the event could
        not be expressed in the provider's format. Deleting an event that is
        already gone counts as success.
        """
        variant = get_variant(connection.provider)

        if operation is PushOperation.DELETE:
            if not external_event_id:
                raise ValueError("Deleting a remote event requires its external id")
            response = await self.authenticated_request(
                connection, "DELETE", variant.event_url(calendar_id, external_event_id)
            )
            if response.is_success or response.status_code in (404, 410):
                return PushResult(
                    external_id=external_event_id,
                    last_modified=datetime.now(timezone.utc),
                )
            logger.warning(
                f"Failed to delete remote event {external_event_id}: "
                f"{response.status_code} - {response.text}"
            )
            return None

        if local_event is None:
            raise ValueError(f"{operation.value} requires a local event")

        payload = to_external_payload(connection.provider, local_event, user_timezone)
        if payload is None:
            logger.warning(f"Skipping push of event {local_event.id}: invalid dates")
            return None

        if operation is PushOperation.CREATE:
            response = await self.authenticated_request(
                connection, "POST", variant.events_url(calendar_id), json=payload
            )
        else:
            if not external_event_id:
                raise ValueError("Updating a remote event requires its external id")
            response = await self.authenticated_request(
                connection,
                "PATCH",
                variant.event_url(calendar_id, external_event_id),
                json=payload,
            )

        if response.is_error:
            logger.error(
                f"Failed to {operation.value} remote event for {local_event.id}: "
                f"{response.status_code} - {response.text}"
            )
            return None

        data = response.json() if response.content else {}
        external_id = data.get("id") or external_event_id
        if not external_id:
            logger.error(f"Provider returned no id for event {local_event.id}")
            return None

        return PushResult(
            external_id=external_id,
            last_modified=get_external_last_modified(data),
        )
