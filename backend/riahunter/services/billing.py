"""Stripe webhook handling: subscription state and ledger credit grants."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from riahunter.core.errors import StoreUnavailable
from riahunter.core.settings import Settings
from riahunter.models.credit_ledger import CreditSource
from riahunter.models.stripe_event import StripeEvent
from riahunter.models.subscription import Subscription
from riahunter.services.metering import MeteringEngine
from riahunter.services.subscriptions import DbSubscriptionChecker


logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS: set[str] = {"customer.subscription.created", "customer.subscription.updated"}
RENEWAL_WINDOW_S = 3600


class WebhookSignatureError(Exception):
    pass


def verify_stripe_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str,
    tolerance_s: int = 300,
    now: float | None = None,
) -> None:
    """Checks a ``Stripe-Signature`` header (``t=...,v1=...``) against the raw body."""
    header = (signature_header or "").strip()
    if not header:
        raise WebhookSignatureError("Missing Stripe-Signature")

    timestamp: str | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    if not timestamp or not signatures:
        raise WebhookSignatureError("Malformed Stripe-Signature")

    try:
        ts = int(timestamp)
    except ValueError as exc:
        raise WebhookSignatureError("Malformed Stripe-Signature timestamp") from exc
    current = int(now if now is not None else time.time())
    if abs(current - ts) > tolerance_s:
        raise WebhookSignatureError("Timestamp outside the tolerance zone")

    signed = f"{timestamp}.".encode("utf-8") + payload
    expected = hmac.new(key=secret.encode("utf-8"), msg=signed, digestmod=hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Invalid signature")


def _from_epoch(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _customer_id(obj: dict[str, Any]) -> str | None:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return str(customer) if customer else None


class StripeWebhookProcessor:
    def __init__(
        self,
        engine: MeteringEngine,
        session_factory: sessionmaker,
        settings: Settings,
        subscriptions: DbSubscriptionChecker | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory
        self._settings = settings
        self._subscriptions = subscriptions

    def _write_record(self, event_id: str, event_type: str, processed: bool | None, error: str | None) -> None:
        with self._session_factory.begin() as db:
            row = db.get(StripeEvent, event_id)
            if row is None:
                row = StripeEvent(event_id=event_id, type=event_type)
                db.add(row)
            if processed is not None:
                row.processed_ok = processed
                row.processed_at = datetime.now(timezone.utc) if processed else None
            row.error = error

    def _record(self, event_id: str, event_type: str, processed: bool | None = None, error: str | None = None) -> None:
        try:
            self._write_record(event_id, event_type, processed, error)
        except IntegrityError:
            # A concurrent delivery of the same event inserted the row first.
            logger.info("billing.webhook.record.retry event_id=%s", event_id)
            self._write_record(event_id, event_type, processed, error)

    def _is_processed(self, event_id: str) -> bool:
        with self._session_factory() as db:
            row = db.get(StripeEvent, event_id)
            return bool(row and row.processed_ok)

    def recent_events(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recently received webhook events, for the debug view."""
        try:
            with self._session_factory() as db:
                rows = (
                    db.query(StripeEvent)
                    .order_by(StripeEvent.received_at.desc(), StripeEvent.event_id.desc())
                    .limit(max(0, int(limit)))
                    .all()
                )
        except OperationalError as exc:
            raise StoreUnavailable() from exc
        return [
            {
                "eventId": row.event_id,
                "type": row.type,
                "receivedAt": row.received_at.isoformat() if row.received_at else None,
                "processedOk": row.processed_ok,
                "processedAt": row.processed_at.isoformat() if row.processed_at else None,
                "error": row.error,
            }
            for row in rows
        ]

    def _credits_for_subscription(self, subscription: dict[str, Any]) -> int:
        items = ((subscription.get("items") or {}).get("data")) or []
        if items and isinstance(items[0], dict):
            price = items[0].get("price") or {}
            product = price.get("product")
            if isinstance(product, dict):
                product = product.get("id")
            credits = self._settings.stripe_product_credits.get(str(product or ""))
            if credits:
                return int(credits)
        return int(self._settings.stripe_default_subscription_credits)

    def _upsert_subscription(self, user_id: str, subscription: dict[str, Any]) -> None:
        with self._session_factory.begin() as db:
            sub = db.query(Subscription).filter(Subscription.user_id == user_id).first()
            if sub is None:
                sub = Subscription(user_id=user_id)
                db.add(sub)
            sub.status = str(subscription.get("status") or "") or sub.status
            sub.stripe_subscription_id = str(subscription.get("id") or "") or sub.stripe_subscription_id
            sub.stripe_customer_id = _customer_id(subscription) or sub.stripe_customer_id
            sub.current_period_start = _from_epoch(subscription.get("current_period_start"))
            sub.current_period_end = _from_epoch(subscription.get("current_period_end"))
            sub.trial_end = _from_epoch(subscription.get("trial_end"))
        self._invalidate(user_id)

    def _invalidate(self, user_id: str) -> None:
        if self._subscriptions is not None:
            self._subscriptions.invalidate(user_id)

    def _handle_subscription(self, event: dict[str, Any], subscription: dict[str, Any]) -> str | None:
        user_id = str((subscription.get("metadata") or {}).get("user_id") or "").strip()
        if not user_id:
            logger.error("billing.webhook.subscription.no_user subscription_id=%s", subscription.get("id"))
            return "No user_id in metadata"

        self._upsert_subscription(user_id, subscription)
        if str(subscription.get("status") or "") not in {"active", "trialing"}:
            return None

        period_start = subscription.get("current_period_start")
        is_renewal = (
            event.get("type") == "customer.subscription.updated"
            and bool(period_start)
            and time.time() - int(period_start) < RENEWAL_WINDOW_S
        )
        ref_type = "subscription_renewal" if is_renewal else "subscription_created"
        ref_id = f"{subscription.get('id')}_{period_start}" if is_renewal else str(subscription.get("id"))
        credits = self._credits_for_subscription(subscription)
        if credits > 0:
            self._engine.credit(
                user_id,
                credits,
                source=CreditSource.SUBSCRIPTION,
                ref_type=ref_type,
                ref_id=ref_id,
                idempotency_key=f"{event['id']}_{ref_type}_{ref_id}",
                metadata={"subscriptionId": subscription.get("id"), "eventId": event["id"], "creditsAmount": credits},
            )
        return None

    def _handle_subscription_deleted(self, subscription: dict[str, Any]) -> str | None:
        user_id = str((subscription.get("metadata") or {}).get("user_id") or "").strip()
        if not user_id:
            return "No user_id in metadata"
        with self._session_factory.begin() as db:
            sub = db.query(Subscription).filter(Subscription.user_id == user_id).first()
            if sub is not None:
                sub.status = "cancelled"
                sub.cancelled_at = datetime.now(timezone.utc)
        self._invalidate(user_id)
        return None

    def _handle_checkout(self, event: dict[str, Any], session: dict[str, Any]) -> str | None:
        user_id = str(session.get("client_reference_id") or (session.get("metadata") or {}).get("user_id") or "").strip()
        if not user_id:
            return "No user_id in session"
        if session.get("mode") != "payment" or session.get("subscription"):
            return "Handled by subscription events"
        try:
            credits = int((session.get("metadata") or {}).get("credits_amount") or 0)
        except (TypeError, ValueError):
            credits = 0
        if credits <= 0:
            return "No credits amount determined"
        self._engine.credit(
            user_id,
            credits,
            source=CreditSource.PURCHASE,
            ref_type="checkout_credits",
            ref_id=str(session.get("id")),
            idempotency_key=f"checkout_{session.get('id')}",
            metadata={"checkoutId": session.get("id"), "eventId": event["id"], "creditsAmount": credits},
        )
        return None

    def process(self, event: dict[str, Any]) -> dict[str, Any]:
        event_id = str(event.get("id") or "").strip()
        event_type = str(event.get("type") or "").strip()
        if not event_id or not event_type:
            raise ValueError("Event is missing id or type")

        logger.info("billing.webhook.received event_id=%s type=%s", event_id, event_type)
        self._record(event_id, event_type)
        if self._is_processed(event_id):
            return {"received": True, "status": "already_processed"}

        obj = ((event.get("data") or {}).get("object")) or {}
        try:
            if event_type in SUBSCRIPTION_EVENTS:
                note = self._handle_subscription(event, obj)
            elif event_type == "customer.subscription.deleted":
                note = self._handle_subscription_deleted(obj)
            elif event_type == "checkout.session.completed":
                note = self._handle_checkout(event, obj)
            elif event_type == "invoice.payment_failed":
                note = "Payment failed"
            elif event_type == "invoice.payment_succeeded":
                note = None
            else:
                note = "Unhandled event type"
        except Exception as exc:
            logger.exception("billing.webhook.error event_id=%s type=%s", event_id, event_type)
            self._record(event_id, event_type, processed=False, error=str(exc))
            raise

        ok = note is None or not note.startswith("No user_id")
        self._record(event_id, event_type, processed=ok, error=note)
        return {"received": True}
