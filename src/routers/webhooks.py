"""Provider webhook handlers.

Whoop sends thin notifications (``{user_id, id, type, trace_id}``); the
record is fetched back from the API before it is stored.  Terra pushes full
records, which are normalized directly.

Both endpoints verify the signature over the raw body before parsing it.
Once a delivery is authenticated and its user is known, it is always
acknowledged with 200 ``OK``: failures are written to
``webhook_dead_letters`` instead of being surfaced to the provider, which
would otherwise retry indefinitely.
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from src.dependencies import AppSettings, Events, Store
from src.models.webhooks import TerraWebhookPayload, WhoopWebhookPayload
from src.wearables.adapters import TerraAdapter
from src.wearables.base import DeadLetter, WebhookEvent
from src.wearables.errors import UnknownProviderUser
from src.wearables.signature import verify, verify_terra
from src.wearables.store import IngestStore

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("pulsebridge.webhooks")

ACK = "OK"


async def _dead_letter(store: IngestStore, dead_letter: DeadLetter) -> None:
    """Record a failed delivery; a failing write is logged, never raised."""
    try:
        await store.record_dead_letter(dead_letter)
    except Exception as exc:
        logger.error(
            "Could not record dead letter for %s %s: %s",
            dead_letter.provider,
            dead_letter.event_type,
            exc,
        )


def _body_text(body: bytes) -> str:
    return body.decode("utf-8", errors="replace")


# ---------- Whoop ----------

@router.post("/whoop", response_class=PlainTextResponse)
async def whoop_webhook(
    request: Request,
    settings: AppSettings,
    store: Store,
    events: Events,
    x_whoop_signature: str | None = Header(default=None, alias="x-whoop-signature"),
    x_whoop_signature_timestamp: str | None = Header(
        default=None, alias="x-whoop-signature-timestamp"
    ),
) -> PlainTextResponse:
    """Handle Whoop ``<type>.updated`` / ``<type>.deleted`` notifications.

    Returns:
        200 ``OK`` once authenticated (including failures, which are
        dead-lettered); 401 on a bad signature; 404 for an unknown Whoop user.
    """
    body = await request.body()

    if not verify(body, x_whoop_signature, x_whoop_signature_timestamp, settings.whoop_client_secret):
        logger.warning(
            "Whoop webhook signature verification failed (signature=%s, timestamp=%s)",
            bool(x_whoop_signature),
            bool(x_whoop_signature_timestamp),
        )
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = WhoopWebhookPayload.model_validate_json(body)
    except ValidationError as exc:
        logger.warning("Malformed Whoop webhook body: %s", exc.errors(include_url=False))
        await _dead_letter(
            store,
            DeadLetter(provider="whoop", event_type=None, error=str(exc), payload=_body_text(body)),
        )
        return PlainTextResponse(ACK)

    logger.info(
        "Whoop webhook received: type=%s id=%s user=%s trace=%s",
        payload.type,
        payload.id,
        payload.user_id,
        payload.trace_id,
    )

    if payload.is_test:
        logger.info("Acknowledging Whoop test delivery")
        return PlainTextResponse(ACK)

    dead_letter = DeadLetter(
        provider="whoop",
        event_type=payload.type,
        error="",
        payload=_body_text(body),
        record_id=payload.id,
        provider_user_id=payload.user_id,
        trace_id=payload.trace_id,
    )

    try:
        user_id = await events.resolve_user("whoop", payload.user_id)
    except UnknownProviderUser:
        logger.warning("No user mapped to Whoop user %s", payload.user_id)
        raise HTTPException(status_code=404, detail="Unknown Whoop user")
    except Exception as exc:
        logger.exception("Whoop user lookup failed for %s", payload.user_id)
        dead_letter.error = f"user lookup failed: {exc}"
        await _dead_letter(store, dead_letter)
        return PlainTextResponse(ACK)

    event = WebhookEvent(
        provider="whoop",
        event_type=payload.type,
        record_id=payload.id,
        provider_user_id=payload.user_id,
        trace_id=payload.trace_id,
        raw=payload.model_dump(),
    )

    try:
        outcome = await events.handle(event, user_id)
    except Exception as exc:
        logger.exception("Failed to process Whoop %s %s for user %s", payload.type, payload.id, user_id)
        dead_letter.user_id = user_id
        dead_letter.error = f"{type(exc).__name__}: {exc}"
        await _dead_letter(store, dead_letter)
        return PlainTextResponse(ACK)

    logger.info("Whoop %s %s → %s", payload.type, payload.id, outcome.status)
    return PlainTextResponse(ACK)


# ---------- Terra ----------

@router.post("/terra", response_class=PlainTextResponse)
async def terra_webhook(
    request: Request,
    settings: AppSettings,
    store: Store,
    events: Events,
    terra_signature: str | None = Header(default=None, alias="terra-signature"),
) -> PlainTextResponse:
    """Handle Terra ``auth`` and data pushes (sleep, daily, activity, body).

    ``auth`` links Terra's user id to our user via ``reference_id``.  Data
    pushes are normalized and upserted.  Other types are acknowledged.
    """
    body = await request.body()

    if not verify_terra(body, terra_signature, settings.terra_signing_secret):
        logger.warning("Terra webhook signature verification failed (header=%s)", bool(terra_signature))
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = TerraWebhookPayload.model_validate_json(body)
    except ValidationError as exc:
        logger.warning("Malformed Terra webhook body: %s", exc.errors(include_url=False))
        await _dead_letter(
            store,
            DeadLetter(provider="terra", event_type=None, error=str(exc), payload=_body_text(body)),
        )
        return PlainTextResponse(ACK)

    terra_user = payload.user
    logger.info(
        "Terra webhook received: type=%s provider=%s user=%s items=%d",
        payload.type,
        terra_user.provider if terra_user else None,
        terra_user.user_id if terra_user else None,
        len(payload.data),
    )

    if payload.type == "auth":
        await _terra_auth(store, payload, body)
        return PlainTextResponse(ACK)

    if payload.type not in TerraAdapter.RECORD_TYPES:
        logger.info("Ignoring Terra event type %r", payload.type)
        return PlainTextResponse(ACK)

    dead_letter = DeadLetter(
        provider="terra",
        event_type=payload.type,
        error="",
        payload=_body_text(body),
        provider_user_id=terra_user.user_id if terra_user else None,
    )

    if terra_user is None:
        logger.warning("Terra %s push has no user", payload.type)
        dead_letter.error = "payload has no user"
        await _dead_letter(store, dead_letter)
        return PlainTextResponse(ACK)

    try:
        user_id = await events.resolve_user("terra", terra_user.user_id)
    except UnknownProviderUser:
        logger.warning("No user mapped to Terra user %s", terra_user.user_id)
        raise HTTPException(status_code=404, detail="Unknown Terra user")
    except Exception as exc:
        logger.exception("Terra user lookup failed for %s", terra_user.user_id)
        dead_letter.error = f"user lookup failed: {exc}"
        await _dead_letter(store, dead_letter)
        return PlainTextResponse(ACK)

    try:
        outcome = await events.handle_push(
            "terra", user_id, payload.type, payload.data, source=terra_user.provider
        )
    except Exception as exc:
        logger.exception("Failed to process Terra %s push for user %s", payload.type, user_id)
        dead_letter.user_id = user_id
        dead_letter.error = f"{type(exc).__name__}: {exc}"
        await _dead_letter(store, dead_letter)
        return PlainTextResponse(ACK)

    logger.info("Terra %s push → %s (%d metrics)", payload.type, outcome.status, outcome.metrics_written)
    return PlainTextResponse(ACK)


async def _terra_auth(store: IngestStore, payload: TerraWebhookPayload, body: bytes) -> None:
    """Map Terra's user id to the internal user named by ``reference_id``."""
    terra_user = payload.user
    dead_letter = DeadLetter(
        provider="terra",
        event_type="auth",
        error="",
        payload=_body_text(body),
        provider_user_id=terra_user.user_id if terra_user else None,
    )

    try:
        if terra_user is None or not terra_user.reference_id:
            raise ValueError("auth event has no user or reference_id")
        user_id = uuid.UUID(terra_user.reference_id)
        source = (terra_user.provider or "unknown").lower()
        await store.upsert_provider_user("terra", terra_user.user_id, user_id, source=source)
    except Exception as exc:
        logger.exception("Failed to link Terra user")
        dead_letter.error = f"{type(exc).__name__}: {exc}"
        await _dead_letter(store, dead_letter)
        return

    logger.info("Linked Terra user %s (%s) to %s", terra_user.user_id, source, user_id)
