from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from riahunter.api.deps import get_settings, get_webhook_processor
from riahunter.core.settings import Settings
from riahunter.services.billing import StripeWebhookProcessor, WebhookSignatureError, verify_stripe_signature


router = APIRouter()


@router.post("/billing/stripe-webhook")
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    processor: StripeWebhookProcessor = Depends(get_webhook_processor),
) -> dict:
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=500, detail="STRIPE_WEBHOOK_SECRET is not configured")

    raw_body = await request.body()
    try:
        verify_stripe_signature(
            raw_body,
            request.headers.get("stripe-signature"),
            settings.stripe_webhook_secret,
            tolerance_s=settings.stripe_webhook_tolerance_s,
        )
    except WebhookSignatureError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        event = json.loads(raw_body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise HTTPException(status_code=400, detail="Invalid event")

    return await run_in_threadpool(processor.process, event)
