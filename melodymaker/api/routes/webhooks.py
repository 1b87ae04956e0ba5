"""Replicate prediction callbacks.

Replicate POSTs a prediction object to this endpoint for every event in the
webhook filter.  The body is read raw because the HMAC signature covers the
exact bytes sent; it is parsed only after verification.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from melodymaker.db import get_db
from melodymaker.models.tracks import WebhookAck
from melodymaker.services import track_repository
from melodymaker.services.errors import (
    TrackNotFoundError,
    WebhookAuthenticationError,
    WebhookValidationError,
)
from melodymaker.services.replicate_webhook import (
    SIGNATURE_HEADER,
    handle_replicate_webhook,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/webhooks/replicate",
    response_model=WebhookAck,
    response_model_by_alias=True,
    responses={
        400: {"description": "Malformed body or missing prediction id"},
        401: {"description": "Signature missing or invalid"},
        404: {"description": "No track for this prediction"},
        500: {"description": "Audio relocation failed or internal error"},
    },
)
async def replicate_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> WebhookAck | JSONResponse:
    """Apply one Replicate prediction event to its track."""
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        outcome = await handle_replicate_webhook(db, raw_body, signature)
    except WebhookAuthenticationError as exc:
        logger.warning(f"⚠️ Rejected Replicate webhook: {exc}")
        raise HTTPException(
            status_code=401,
            detail={"error": "invalid_signature", "message": str(exc)},
        )
    except WebhookValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_payload", "message": str(exc)},
        )
    except TrackNotFoundError as exc:
        logger.warning(f"⚠️ {exc}")
        raise HTTPException(
            status_code=404,
            detail={"error": "track_not_found", "message": str(exc)},
        )
    except Exception:
        logger.exception("❌ Webhook processing error")
        await db.rollback()
        raise HTTPException(
            status_code=500,
            detail={"error": "internal_error", "message": "Internal server error"},
        )

    await db.commit()
    if outcome.transition is not None:
        track_repository.announce(outcome.transition)

    if outcome.relocation_failed:
        return JSONResponse(
            status_code=500,
            content={
                "detail": {
                    "error": "relocation_failed",
                    "message": outcome.message,
                    "trackId": outcome.track_id,
                }
            },
        )
    return outcome.to_ack()


@router.get("/webhooks/replicate")
async def replicate_webhook_info() -> dict[str, str]:
    """Liveness probe for the callback URL."""
    return {"message": "Replicate webhook endpoint is active"}
