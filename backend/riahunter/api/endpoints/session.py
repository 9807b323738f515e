from __future__ import annotations

import time

from fastapi import APIRouter, Depends, Request, Response

from riahunter.api.deps import get_demo_counter, get_engine, get_settings
from riahunter.core.errors import DemoLimitReached
from riahunter.core.security import AuthVerifier, CurrentUser, get_bearer_token, get_verifier
from riahunter.core.settings import Settings
from riahunter.services.demo_session import DemoQuotaCounter, DemoStatus
from riahunter.services.metering import UNLIMITED, MeteringEngine


router = APIRouter()


def _optional_user(request: Request, verifier: AuthVerifier) -> CurrentUser | None:
    token = get_bearer_token(request)
    if token is None:
        return None
    return verifier.verify(token)


def _set_demo_cookie(response: Response, settings: Settings, value: str, expires_at: int) -> None:
    response.set_cookie(
        key=settings.demo_cookie_name,
        value=value,
        max_age=max(1, expires_at - int(time.time())),
        path="/",
        samesite="lax",
        secure=settings.is_production,
        httponly=True,
    )


def _unlimited(user: CurrentUser | None) -> dict:
    return {
        "allowed": True,
        "searchesRemaining": UNLIMITED,
        "searchesUsed": 0,
        "totalAllowed": UNLIMITED,
        "isSubscriber": True,
        "isAuthenticated": user is not None,
    }


def _payload(status: DemoStatus, user: CurrentUser | None) -> dict:
    return {**status.to_dict(), "isSubscriber": False, "isAuthenticated": user is not None}


@router.get("/session/status")
def session_status(
    request: Request,
    response: Response,
    verifier: AuthVerifier = Depends(get_verifier),
    engine: MeteringEngine = Depends(get_engine),
    counter: DemoQuotaCounter = Depends(get_demo_counter),
    settings: Settings = Depends(get_settings),
) -> dict:
    user = _optional_user(request, verifier)
    if user is not None and engine.subscriptions.is_active_subscriber(user.id):
        return _unlimited(user)

    status = counter.check(request.cookies.get(settings.demo_cookie_name))
    if status.is_new:
        _set_demo_cookie(response, settings, counter.encode(0, status.expires_at), status.expires_at)
    return _payload(status, user)


@router.post("/session/consume")
def session_consume(
    request: Request,
    response: Response,
    verifier: AuthVerifier = Depends(get_verifier),
    engine: MeteringEngine = Depends(get_engine),
    counter: DemoQuotaCounter = Depends(get_demo_counter),
    settings: Settings = Depends(get_settings),
) -> dict:
    user = _optional_user(request, verifier)
    if user is not None and engine.subscriptions.is_active_subscriber(user.id):
        return _unlimited(user)

    cookie = request.cookies.get(settings.demo_cookie_name)
    current = counter.check(cookie)
    if not current.allowed:
        raise DemoLimitReached(current.used, current.limit)

    value, status = counter.increment(cookie)
    _set_demo_cookie(response, settings, value, status.expires_at)
    return _payload(status, user)
