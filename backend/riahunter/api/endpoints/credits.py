from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, ConfigDict, Field

from riahunter.api.deps import get_engine, get_resolver, get_settings, get_webhook_processor
from riahunter.core.security import get_bearer_token
from riahunter.core.settings import Settings
from riahunter.services.billing import StripeWebhookProcessor
from riahunter.services.identity import IdentityResolver, mint_anonymous_cookie
from riahunter.services.metering import MeteringEngine


router = APIRouter()


class DeductRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: int
    ref_type: str = Field(alias="refType", min_length=1)
    ref_id: str = Field(alias="refId", min_length=1)
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey")
    metadata: dict[str, Any] | None = None


def _set_anon_cookie(response: Response, settings: Settings, value: str) -> None:
    response.set_cookie(
        key=settings.anon_cookie_name,
        value=value,
        max_age=settings.anon_cookie_max_age_days * 24 * 3600,
        path="/",
        samesite="strict",
        secure=settings.is_production,
        httponly=True,
    )


@router.get("/credits/balance")
def credits_balance(
    request: Request,
    response: Response,
    resolver: IdentityResolver = Depends(get_resolver),
    engine: MeteringEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> dict:
    token = get_bearer_token(request)
    anon_cookie = request.cookies.get(settings.anon_cookie_name)
    minted = False
    if token is None and not anon_cookie:
        anon_cookie = mint_anonymous_cookie()
        _set_anon_cookie(response, settings, anon_cookie)
        minted = True

    identity = resolver.resolve(token, anon_cookie)
    if minted:
        engine.ensure_initial_credits(identity.account_id, settings.initial_free_credits)

    status = engine.status(identity.account_id)
    return {
        "credits": status.balance,
        "balance": status.balance,
        "isSubscriber": status.is_subscriber,
        "unlimited": status.unlimited,
        "userId": identity.account_id if identity.is_authenticated else None,
    }


@router.post("/credits/deduct")
def credits_deduct(
    body: DeductRequest,
    request: Request,
    resolver: IdentityResolver = Depends(get_resolver),
    engine: MeteringEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> dict:
    identity = resolver.resolve(get_bearer_token(request), request.cookies.get(settings.anon_cookie_name))

    # Without a caller key, one logical action is the account's reference; keys are global.
    idempotency_key = (body.idempotency_key or "").strip() or f"{identity.account_id}_{body.ref_type}_{body.ref_id}"
    result = engine.debit(
        identity.account_id,
        body.amount,
        ref_type=body.ref_type,
        ref_id=body.ref_id,
        idempotency_key=idempotency_key,
        metadata=body.metadata,
    )
    if result.subscriber_noop:
        return {
            "success": True,
            "deducted": 0,
            "credits": result.balance,
            "remaining": result.balance,
            "isSubscriber": True,
            "replayed": False,
        }
    return {
        "success": True,
        "deducted": result.charged,
        "credits": result.balance,
        "remaining": result.balance,
        "isSubscriber": False,
        "replayed": result.replayed,
    }


@router.get("/credits/debug")
def credits_debug(
    request: Request,
    limit: int = 20,
    resolver: IdentityResolver = Depends(get_resolver),
    engine: MeteringEngine = Depends(get_engine),
    processor: StripeWebhookProcessor = Depends(get_webhook_processor),
    settings: Settings = Depends(get_settings),
) -> dict:
    token = get_bearer_token(request)
    if settings.is_production and token is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    identity = resolver.resolve(token, request.cookies.get(settings.anon_cookie_name))
    limit = max(1, min(int(limit or 20), 200))
    info = engine.debug_info(identity.account_id, limit=limit)
    info["stripeEvents"] = processor.recent_events(limit=50)
    return info
