"""Calendar sync routes.

Connect providers, choose which provider calendars to sync, and trigger or
tear down syncs.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from calsync.auth.dependencies import get_current_user
from calsync.auth.tokens import TokenManager
from calsync.config import get_settings
from calsync.database.connection import get_db_session
from calsync.database.models import CalendarProvider, User
from calsync.errors import (
    AuthExchangeError,
    NotConnectedError,
    ProviderAuthError,
    ReauthorizationRequiredError,
)
from calsync.sync.orchestrator import ConnectionSyncResult, SyncOrchestrator
from calsync.sync.service import CalendarSyncRequest, CalendarSyncService

logger = logging.getLogger(__name__)

router = APIRouter()

PROVIDERS = {p.value for p in CalendarProvider}


# =============================================================================
# Schemas
# =============================================================================


class ExternalCalendarResponse(BaseModel):
    """Calendar offered by the provider."""

    id: str
    name: str
    is_primary: bool
    description: str | None
    access_role: str | None


class SyncedCalendarResponse(BaseModel):
    """Pairing of a provider calendar with a local calendar."""

    id: str
    local_calendar_id: str
    local_name: str | None
    external_id: str
    external_name: str | None
    provider: str
    last_sync: str
    bidirectional_sync: bool


class ProviderStatusResponse(BaseModel):
    provider: str
    is_connected: bool
    calendars: list[ExternalCalendarResponse]
    synced_calendars: list[SyncedCalendarResponse]


class SyncStatusResponse(BaseModel):
    providers: list[ProviderStatusResponse]


class AuthUrlResponse(BaseModel):
    auth_url: str


class CalendarSelection(BaseModel):
    """One provider calendar to sync."""

    external_id: str = Field(min_length=1)
    local_name: str | None = None
    bidirectional_sync: bool | None = None
    trigger_automation_rules: bool = False
    selected_rule_ids: list[Any] = Field(default_factory=list)


class SyncCalendarsRequest(BaseModel):
    provider: str
    calendars: list[CalendarSelection] = Field(min_length=1)


class SyncRunResponse(BaseModel):
    """Outcome of a sync run for one connection."""

    connection_id: str
    provider: str
    skipped: bool
    changes: int
    errors: list[str]
    synced_at: datetime

    @classmethod
    def from_result(cls, result: ConnectionSyncResult) -> "SyncRunResponse":
        errors = list(result.errors)
        for pairing in result.pairings:
            errors.extend(pairing.errors)
        return cls(
            connection_id=str(result.connection_id),
            provider=result.provider,
            skipped=result.skipped,
            changes=result.mutations,
            errors=errors,
            synced_at=result.synced_at,
        )


class DisconnectResponse(BaseModel):
    disconnected: int


# =============================================================================
# Dependencies
# =============================================================================


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def get_sync_service(
    db: AsyncSession = Depends(get_db_session),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> CalendarSyncService:
    return CalendarSyncService(db, orchestrator, http_client)


def _check_provider(provider: str) -> str:
    if provider not in PROVIDERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported provider: {provider}",
        )
    return provider


def _reauthorization_required(e: ReauthorizationRequiredError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"{e.provider} connection must be re-authorized",
    )


def _provider_rejected(e: ProviderAuthError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"{e.provider} rejected the connection credentials",
    )


# =============================================================================
# Routes
# =============================================================================


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_sync_service),
) -> SyncStatusResponse:
    """Connection state, provider calendars and pairings per provider."""
    try:
        statuses = await service.get_status(user.id)
    except ReauthorizationRequiredError as e:
        raise _reauthorization_required(e)

    return SyncStatusResponse(
        providers=[
            ProviderStatusResponse(
                provider=s.provider,
                is_connected=s.is_connected,
                calendars=[
                    ExternalCalendarResponse(
                        id=c.id,
                        name=c.name,
                        is_primary=c.is_primary,
                        description=c.description,
                        access_role=c.access_role,
                    )
                    for c in s.calendars
                ],
                synced_calendars=[
                    SyncedCalendarResponse(
                        id=str(sc.id),
                        local_calendar_id=str(sc.local_calendar_id),
                        local_name=sc.local_name,
                        external_id=sc.external_id,
                        external_name=sc.external_name,
                        provider=sc.provider,
                        last_sync=sc.last_sync_at.isoformat() if sc.last_sync_at else "Never",
                        bidirectional_sync=sc.bidirectional_sync,
                    )
                    for sc in s.synced_calendars
                ],
            )
            for s in statuses
        ]
    )


@router.get("/auth/{provider}", response_model=AuthUrlResponse)
async def get_auth_url(
    provider: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> AuthUrlResponse:
    """Consent URL for connecting a provider."""
    _check_provider(provider)
    request = TokenManager(db, http_client=http_client).build_authorization_url(
        provider, user.id
    )
    return AuthUrlResponse(auth_url=request.url)


@router.get("/callback/{provider}")
async def oauth_callback(
    provider: str,
    code: str,
    state: str,
    db: AsyncSession = Depends(get_db_session),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> RedirectResponse:
    """Complete the provider authorization and return to the frontend."""
    _check_provider(provider)
    tokens = TokenManager(db, http_client=http_client)

    user_id = tokens.verify_state(state, provider)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired state token",
        )

    try:
        await tokens.complete_authorization(provider, code, user_id)
    except AuthExchangeError as e:
        logger.error(f"{provider} authorization failed for user {user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Failed to exchange authorization code",
        )

    query = urlencode({"connected": provider})
    return RedirectResponse(url=f"{get_settings().frontend_url}/calendar-sync?{query}")


@router.post("/calendars", response_model=SyncRunResponse)
async def sync_calendars(
    data: SyncCalendarsRequest,
    user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_sync_service),
) -> SyncRunResponse:
    """Start syncing the selected provider calendars and run an initial sync."""
    _check_provider(data.provider)
    requests = [
        CalendarSyncRequest(
            external_id=c.external_id,
            local_name=c.local_name,
            bidirectional_sync=c.bidirectional_sync,
            trigger_automation_rules=c.trigger_automation_rules,
            selected_rule_ids=c.selected_rule_ids,
        )
        for c in data.calendars
    ]

    try:
        result = await service.sync_calendars(user.id, data.provider, requests)
    except NotConnectedError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active sync connection found",
        )
    except ReauthorizationRequiredError as e:
        raise _reauthorization_required(e)
    except ProviderAuthError as e:
        raise _provider_rejected(e)

    return SyncRunResponse.from_result(result)


@router.delete("/calendars/{pairing_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_synced_calendar(
    pairing_id: uuid.UUID,
    user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_sync_service),
) -> Response:
    """Stop syncing one calendar and remove its local copy."""
    if not await service.remove_pairing(user.id, pairing_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Synced calendar not found",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sync", response_model=list[SyncRunResponse])
async def force_sync(
    user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_sync_service),
) -> list[SyncRunResponse]:
    """Sync every active connection now."""
    try:
        results = await service.force_sync(user.id)
    except NotConnectedError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active sync connection found",
        )
    except ReauthorizationRequiredError as e:
        raise _reauthorization_required(e)
    except ProviderAuthError as e:
        raise _provider_rejected(e)

    return [SyncRunResponse.from_result(r) for r in results]


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect_all(
    user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_sync_service),
) -> DisconnectResponse:
    """Disconnect every provider."""
    return DisconnectResponse(disconnected=await service.disconnect(user.id))


@router.post("/disconnect/{provider}", response_model=DisconnectResponse)
async def disconnect_provider(
    provider: str,
    user: User = Depends(get_current_user),
    service: CalendarSyncService = Depends(get_sync_service),
) -> DisconnectResponse:
    """Disconnect one provider."""
    _check_provider(provider)
    return DisconnectResponse(disconnected=await service.disconnect(user.id, provider))
