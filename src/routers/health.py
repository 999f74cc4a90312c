"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from src.config import get_settings
from src.services.supabase import get_pool

router = APIRouter(tags=["system"])
logger = logging.getLogger("pulsebridge.health")


@router.get("/health")
async def health_check() -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight DB probe, counts active provider
    connections and reports whether webhook signatures are enforced.
    """
    settings = get_settings()
    db_ok = False
    active_tokens: dict[str, int] = {}
    try:
        pool = get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT provider, count(*) AS n FROM oauth_tokens WHERE is_active GROUP BY provider"
            )
        active_tokens = {r["provider"]: r["n"] for r in rows}
        db_ok = True
    except Exception as exc:
        logger.warning("Health check DB probe failed: %s", exc)

    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "active_tokens": active_tokens,
        "signature_validation": {
            "whoop": "enabled" if settings.whoop_client_secret else "disabled",
            "terra": "enabled" if settings.terra_signing_secret else "disabled",
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
