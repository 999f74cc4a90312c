"""Resolved unified metrics: one value per (metric, day), chosen by source priority."""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import CurrentUser, Policy, Store
from src.models.metrics import ResolvedMetricRead

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("", response_model=list[ResolvedMetricRead])
async def list_resolved_metrics(
    user: CurrentUser,
    store: Store,
    policy: Policy,
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    metric_name: str | None = Query(default=None),
) -> Any:
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    rows = await store.list_metrics(user.user_id, start_date, end_date, metric_name)
    return policy.resolve_all(rows)
