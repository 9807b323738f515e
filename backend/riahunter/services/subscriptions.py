from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from riahunter.core.errors import StoreUnavailable
from riahunter.models.subscription import Subscription
from riahunter.services.cache import TTLCache


logger = logging.getLogger(__name__)

ACTIVE_STATUSES: set[str] = {"active", "trialing"}


class SubscriptionChecker(Protocol):
    def is_active_subscriber(self, account_id: str) -> bool: ...


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_subscription_active(sub: Subscription | None, now: datetime | None = None) -> bool:
    if sub is None:
        return False
    status = str(sub.status or "").strip().lower()
    if status not in ACTIVE_STATUSES:
        return False
    period_end = _as_utc(sub.current_period_end)
    now = now or datetime.now(timezone.utc)
    return period_end is None or period_end > now


class DbSubscriptionChecker:
    """Reads the billing-owned ``subscriptions`` table, with a short per-account cache."""

    def __init__(self, session_factory: sessionmaker, cache_ttl_s: int = 30) -> None:
        self._session_factory = session_factory
        self._cache = TTLCache(max_items=20000, ttl_s=cache_ttl_s)

    def is_active_subscriber(self, account_id: str) -> bool:
        cached = self._cache.get(account_id)
        if isinstance(cached, bool):
            return cached
        try:
            with self._session_factory() as db:
                sub = db.query(Subscription).filter(Subscription.user_id == account_id).first()
                active = is_subscription_active(sub)
        except OperationalError as exc:
            logger.exception("subscriptions.lookup.error account=%s", account_id)
            raise StoreUnavailable("Subscription status is temporarily unavailable") from exc
        self._cache.set(account_id, active)
        return active

    def invalidate(self, account_id: str) -> None:
        self._cache.invalidate(account_id)

