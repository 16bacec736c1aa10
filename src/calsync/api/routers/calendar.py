"""Calendar endpoints: aggregated events, sync control, accounts and files.

All responses use the standard ``ApiResponse`` envelope.  Errors raised by
the service are mapped to status codes by :mod:`calsync.api.middleware`.
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from calsync.api.deps import get_calendar_service
from calsync.api.models import (
    AddAccountRequest,
    ApiMeta,
    ApiResponse,
    AuthorizationUrl,
    CacheInvalidated,
    ImportedFile,
    ImportFileRequest,
    OAuthCallbackRequest,
    RemovedAccount,
)
from calsync.models import (
    AccountPublic,
    AccountState,
    AggregationResult,
    CalendarMetadata,
    SyncResult,
    SyncStatus,
    TimeRange,
)
from calsync.service import CalendarService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])


def _window(start: datetime | None, end: datetime | None) -> TimeRange | None:
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="start and end must be given together")
    if start.tzinfo is None or end.tzinfo is None:
        raise HTTPException(status_code=400, detail="start and end must include a UTC offset")
    if end < start:
        raise HTTPException(status_code=400, detail="end must not be before start")
    return TimeRange(start=start, end=end)


# ---------------------------------------------------------------------------
# Events and sync
# ---------------------------------------------------------------------------


@router.get("/events", response_model=ApiResponse[AggregationResult])
async def get_events(
    start: datetime | None = Query(None, description="Window start (ISO-8601 with offset)"),
    end: datetime | None = Query(None, description="Window end (ISO-8601 with offset)"),
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[AggregationResult]:
    result = await service.get_aggregated_events(_window(start, end))
    return ApiResponse[AggregationResult](
        data=result,
        meta=ApiMeta(count=len(result.events), fromCache=result.from_cache),
    )


@router.get("/sync/status", response_model=ApiResponse[SyncStatus])
async def get_sync_status(
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[SyncStatus]:
    return ApiResponse[SyncStatus](data=service.get_sync_status())


@router.post("/sync", response_model=ApiResponse[SyncResult])
async def trigger_sync(
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[SyncResult]:
    """Run a sync now; 409 when one is already in flight."""
    return ApiResponse[SyncResult](data=await service.trigger_manual_sync())


@router.post("/cache/invalidate", response_model=ApiResponse[CacheInvalidated])
async def invalidate_cache(
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[CacheInvalidated]:
    service.invalidate_cache()
    return ApiResponse[CacheInvalidated](data=CacheInvalidated())


# ---------------------------------------------------------------------------
# Cloud accounts
# ---------------------------------------------------------------------------


@router.get("/accounts", response_model=ApiResponse[AccountState])
async def list_accounts(
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[AccountState]:
    return ApiResponse[AccountState](data=await service.get_account_state())


@router.post("/accounts", response_model=ApiResponse[AccountPublic], status_code=201)
async def add_account(
    request: AddAccountRequest,
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[AccountPublic]:
    account = await service.add_account(
        request.refresh_token,
        user_info=request.user_info,
        token_expiry=request.token_expiry,
    )
    return ApiResponse[AccountPublic](data=account.public())


@router.get("/accounts/oauth/url", response_model=ApiResponse[AuthorizationUrl])
async def get_authorization_url(
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[AuthorizationUrl]:
    url, state = service.authorization_url()
    return ApiResponse[AuthorizationUrl](data=AuthorizationUrl(url=url, state=state))


@router.post("/accounts/oauth/callback", response_model=ApiResponse[AccountPublic], status_code=201)
async def oauth_callback(
    request: OAuthCallbackRequest,
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[AccountPublic]:
    account = await service.connect_account(request.code, state=request.state)
    return ApiResponse[AccountPublic](data=account.public())


@router.delete("/accounts/{email}", response_model=ApiResponse[RemovedAccount])
async def remove_account(
    email: str,
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[RemovedAccount]:
    """Disconnect an account. Removing an unknown account is not an error."""
    removed = await service.remove_account(email)
    return ApiResponse[RemovedAccount](data=RemovedAccount(email=email, removed=removed))


# ---------------------------------------------------------------------------
# Local sources
# ---------------------------------------------------------------------------


@router.post("/files", response_model=ApiResponse[ImportedFile], status_code=201)
async def import_file(
    request: ImportFileRequest,
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[ImportedFile]:
    resolved = service.import_calendar_file(request.path)
    return ApiResponse[ImportedFile](data=ImportedFile(path=str(resolved), name=resolved.name))


@router.get("/native/calendars", response_model=ApiResponse[list[CalendarMetadata]])
async def list_native_calendars(
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[list[CalendarMetadata]]:
    calendars = await service.discover_native_calendars()
    return ApiResponse[list[CalendarMetadata]](data=calendars, meta=ApiMeta(count=len(calendars)))
