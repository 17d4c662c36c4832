"""Ledger gateway webhook — receives transaction confirmations."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Request, status
from pydantic import BaseModel
from starlette.responses import JSONResponse

from cacm.signing.hmac import verify_body_signature

router = APIRouter()

__all__ = ["router"]

logger = logging.getLogger(__name__)


class WebhookResponse(BaseModel):
    status: str
    message: str


@router.post(
    "/webhook/ledger",
    response_model=WebhookResponse,
    status_code=status.HTTP_200_OK,
    summary="Receive ledger transaction confirmations",
    operation_id="ledger_webhook",
)
async def ledger_webhook(
    request: Request,
    x_ledger_signature: str = Header(default=""),
    x_ledger_delivery: str = Header(default=""),
) -> JSONResponse:
    """Activate a consent once the ledger gateway confirms its transaction.

    Flow:
    1. Verify X-Ledger-Signature
    2. Parse and validate the payload
    3. Claim X-Ledger-Delivery so redeliveries are processed once
    4. Activate the consent with the confirmed transaction id
    """
    settings = request.app.state.settings
    body = await request.body()

    # ── 1. Signature verification (fail-closed) ────────────────
    if not settings.ledger_webhook_secret:
        logger.error("LEDGER_WEBHOOK_SECRET not set — rejecting webhook (fail-closed)")
        raise HTTPException(status_code=503, detail="Webhook signature verification not configured")
    if not verify_body_signature(body, settings.ledger_webhook_secret, x_ledger_signature):
        raise HTTPException(status_code=401, detail="Invalid signature")

    # ── 2. Parse payload ───────────────────────────────────────
    try:
        payload: dict[str, Any] = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid JSON") from None
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be an object")

    consent_id = payload.get("consent_id", "")
    transaction_id = payload.get("transaction_id", "")
    if not isinstance(consent_id, str) or not isinstance(transaction_id, str):
        raise HTTPException(status_code=400, detail="consent_id and transaction_id must be strings")
    if not consent_id or not transaction_id:
        raise HTTPException(status_code=400, detail="consent_id and transaction_id are required")

    if payload.get("status") != "confirmed":
        return JSONResponse(
            status_code=202,
            content={"status": "ignored", "message": f"Transaction status '{payload.get('status')}' ignored"},
        )

    # ── 3. Idempotency gate ────────────────────────────────────
    gate = getattr(request.app.state, "delivery_gate", None)
    claimed = gate is not None and bool(x_ledger_delivery)
    if claimed and not gate.claim(x_ledger_delivery):
        logger.info("Duplicate delivery %s, skipping", x_ledger_delivery)
        return JSONResponse(
            status_code=200,
            content={"status": "duplicate", "message": "Already processed"},
        )

    # ── 4. Activate ────────────────────────────────────────────
    manager = request.app.state.manager
    try:
        consent = await manager.activate_consent(consent_id, transaction_id)
    except Exception:
        # Let the gateway redeliver after a failure.
        if claimed:
            gate.release(x_ledger_delivery)
        raise

    logger.info("Consent %s activated by ledger tx %s", consent.id, transaction_id)
    return JSONResponse(
        status_code=200,
        content={"status": "activated", "message": f"Consent {consent.id} is active"},
    )
