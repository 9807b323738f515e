"""Cookie-resident demo search counter for unauthenticated and free traffic.

This is a courtesy limiter, not billing truth: no server-side storage, no ledger
rows, no idempotency. The cookie is an HS256 token holding ``used`` and ``exp``.
A session keeps its original expiry when incremented; the window only resets
once the token expires.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import jwt


DEMO_TOKEN_TYPE = "rh_demo"


@dataclass(frozen=True)
class DemoStatus:
    allowed: bool
    used: int
    remaining: int
    limit: int
    expires_at: int
    is_new: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "searchesUsed": self.used,
            "searchesRemaining": self.remaining,
            "totalAllowed": self.limit,
            "expiresAt": self.expires_at,
        }


class DemoQuotaCounter:
    def __init__(self, secret: str, *, allowed: int = 5, ttl_s: int = 24 * 3600) -> None:
        if not secret:
            raise ValueError("secret is required")
        self._secret = secret
        self.allowed = max(0, int(allowed))
        self.ttl_s = max(1, int(ttl_s))

    def _decode(self, cookie: str | None, now: int) -> tuple[int, int] | None:
        if not cookie:
            return None
        try:
            # exp is checked below against the caller's clock.
            payload = jwt.decode(
                cookie,
                self._secret,
                algorithms=["HS256"],
                options={"verify_exp": False, "require": ["exp"]},
            )
        except jwt.PyJWTError:
            return None
        if payload.get("type") != DEMO_TOKEN_TYPE:
            return None
        try:
            used = int(payload.get("used", 0))
            expires_at = int(payload["exp"])
        except (TypeError, ValueError):
            return None
        if expires_at <= now:
            return None
        return (max(0, used), expires_at)

    def _status(self, used: int, expires_at: int, is_new: bool) -> DemoStatus:
        return DemoStatus(
            allowed=used < self.allowed,
            used=used,
            remaining=max(0, self.allowed - used),
            limit=self.allowed,
            expires_at=expires_at,
            is_new=is_new,
        )

    def check(self, cookie: str | None, now: float | None = None) -> DemoStatus:
        current = int(now if now is not None else time.time())
        session = self._decode(cookie, current)
        if session is None:
            return self._status(0, current + self.ttl_s, is_new=True)
        used, expires_at = session
        return self._status(used, expires_at, is_new=False)

    def encode(self, used: int, expires_at: int) -> str:
        return jwt.encode(
            {"type": DEMO_TOKEN_TYPE, "used": int(used), "exp": int(expires_at)},
            self._secret,
            algorithm="HS256",
        )

    def increment(self, cookie: str | None, now: float | None = None) -> tuple[str, DemoStatus]:
        status = self.check(cookie, now=now)
        used = status.used + 1
        return self.encode(used, status.expires_at), self._status(used, status.expires_at, is_new=status.is_new)
