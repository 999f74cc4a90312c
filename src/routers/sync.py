"""Whoop sync triggers.

``POST /sync/whoop`` lets a trainer (or the user themself) pull a client's
recent Whoop history.  ``POST /sync/whoop/scheduled`` is called by cron with
a shared secret and sweeps every connected user.
"""

from __future__ import annotations

import hmac
import logging

import httpx
from fastapi import APIRouter, Header, HTTPException
from fastapi.responses import JSONResponse

from src.dependencies import AppSettings, CurrentUser, Orchestrator, Scheduler, Store
from src.models.base import ErrorDetail
from src.models.sync import (
    ScheduledSyncResponse,
    ScheduledUserResult,
    SyncRequest,
    SyncResponse,
)
from src.wearables.errors import (
    ProviderAPIError,
    ReauthorizationRequired,
    TokenNotFoundError,
)

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("pulsebridge.sync")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorDetail(error=message).model_dump())


@router.post("/whoop", response_model=SyncResponse)
async def sync_whoop(
    user: CurrentUser,
    body: SyncRequest,
    store: Store,
    orchestrator: Orchestrator,
) -> SyncResponse | JSONResponse:
    """Sync a user's Whoop data for the last ``days_back`` days.

    Errors:
        403 — caller has no trainer relationship with the target user
        404 — target user has no active Whoop connection
        409 — the connection must be re-authorized
        502 — Whoop API failure
    """
    target = body.target_user_id
    if user.user_id != target and not await store.has_trainer_access(user.user_id, target):
        logger.warning("User %s denied sync of %s", user.user_id, target)
        return _error(403, "Not authorized to sync this user")

    try:
        result = await orchestrator.sync_user(target, body.days_back)
    except TokenNotFoundError:
        return _error(404, "No active Whoop connection for this user")
    except ReauthorizationRequired:
        return _error(409, "Whoop connection must be re-authorized")
    except (ProviderAPIError, httpx.HTTPError) as exc:
        logger.error("Whoop sync for %s failed upstream: %s", target, exc)
        return _error(502, "Whoop API request failed")

    return SyncResponse(
        status=result.status,
        metrics_count=result.metrics_count,
        workouts_count=result.workouts_count,
        failed_types=result.failed_types,
    )


@router.post("/whoop/scheduled", response_model=ScheduledSyncResponse)
async def sync_whoop_scheduled(
    settings: AppSettings,
    scheduler: Scheduler,
    force: bool = False,
    x_cron_secret: str | None = Header(default=None, alias="x-cron-secret"),
) -> ScheduledSyncResponse:
    """Sync every connected Whoop user that is due."""
    if not settings.cron_secret or not hmac.compare_digest(
        (x_cron_secret or "").encode(), settings.cron_secret.encode()
    ):
        raise HTTPException(status_code=401, detail="Invalid cron secret")

    outcomes = await scheduler.run(force=force)
    return ScheduledSyncResponse(
        processed=sum(1 for o in outcomes if o.status in ("success", "partial")),
        skipped=sum(1 for o in outcomes if o.status == "skipped"),
        errors=sum(1 for o in outcomes if o.status == "error"),
        results=[
            ScheduledUserResult(
                user_id=o.user_id,
                status=o.status,
                metrics_count=o.metrics_count,
                workouts_count=o.workouts_count,
                error=o.error,
            )
            for o in outcomes
        ],
    )
