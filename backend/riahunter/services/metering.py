from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from riahunter.core.errors import (
    DuplicateIdempotencyKey,
    IdempotencyKeyConflict,
    InsufficientCredits,
    InvalidAmount,
    InvalidSource,
)
from riahunter.models.credit_ledger import CreditSource
from riahunter.services.ledger_store import LedgerEntry, LedgerStore, NewLedgerEntry
from riahunter.services.subscriptions import SubscriptionChecker


logger = logging.getLogger(__name__)

UNLIMITED = -1


@dataclass(frozen=True)
class CreditsStatus:
    balance: int
    is_subscriber: bool

    @property
    def unlimited(self) -> bool:
        return self.balance == UNLIMITED


@dataclass(frozen=True)
class MeteringResult:
    balance: int
    charged: int = 0
    replayed: bool = False
    subscriber_noop: bool = False
    entry_id: int | None = None


def coerce_source(source: Any) -> CreditSource:
    try:
        return CreditSource(source)
    except ValueError:
        raise InvalidSource(source) from None


def require_positive_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(amount)
    return amount


class MeteringEngine:
    """Credit/debit/status decisions over a ledger store and a subscription checker."""

    def __init__(self, store: LedgerStore, subscriptions: SubscriptionChecker) -> None:
        self.store = store
        self.subscriptions = subscriptions

    def status(self, account_id: str) -> CreditsStatus:
        if self.subscriptions.is_active_subscriber(account_id):
            return CreditsStatus(balance=UNLIMITED, is_subscriber=True)
        return CreditsStatus(balance=self.store.balance_of(account_id), is_subscriber=False)

    def _replay(self, account_id: str, entry: LedgerEntry, balance: int) -> MeteringResult:
        if entry.account_id != account_id:
            logger.warning(
                "metering.replay.conflict account=%s key_owner=%s key=%s",
                account_id,
                entry.account_id,
                entry.idempotency_key,
            )
            raise IdempotencyKeyConflict()
        logger.info("metering.replay account=%s key=%s balance=%s", account_id, entry.idempotency_key, balance)
        return MeteringResult(
            balance=balance,
            charged=max(0, -entry.amount),
            replayed=True,
            entry_id=entry.id,
        )

    def _append(self, account_id: str, new_entry: NewLedgerEntry) -> MeteringResult:
        try:
            result = self.store.append(new_entry)
        except DuplicateIdempotencyKey as dup:
            return self._replay(account_id, dup.entry, dup.balance)
        return MeteringResult(
            balance=result.balance,
            charged=max(0, -result.entry.amount),
            entry_id=result.entry.id,
        )

    def credit(
        self,
        account_id: str,
        amount: int,
        source: CreditSource,
        ref_type: str,
        ref_id: str,
        idempotency_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> MeteringResult:
        amount = require_positive_amount(amount)
        source = coerce_source(source)
        if source is CreditSource.USAGE:
            raise InvalidSource(source.value)

        result = self._append(
            account_id,
            NewLedgerEntry(
                account_id=account_id,
                amount=amount,
                source=source,
                ref_type=ref_type,
                ref_id=ref_id,
                idempotency_key=idempotency_key,
                metadata=dict(metadata or {}),
            ),
        )
        if not result.replayed:
            logger.info(
                "metering.credit.applied account=%s amount=%s source=%s balance=%s",
                account_id,
                amount,
                source.value,
                result.balance,
            )
        return result

    def debit(
        self,
        account_id: str,
        amount: int,
        ref_type: str,
        ref_id: str,
        idempotency_key: str,
        metadata: dict[str, Any] | None = None,
        *,
        source: CreditSource = CreditSource.USAGE,
    ) -> MeteringResult:
        amount = require_positive_amount(amount)
        source = coerce_source(source)

        # A retry must observe the original outcome, whatever has happened since.
        existing = self.store.find_by_idempotency_key(idempotency_key)
        if existing is not None:
            return self._replay(account_id, existing, existing.balance_after)

        if source is CreditSource.USAGE and self.subscriptions.is_active_subscriber(account_id):
            logger.info("metering.debit.subscriber_noop account=%s amount=%s", account_id, amount)
            return MeteringResult(balance=self.store.balance_of(account_id), subscriber_noop=True)

        balance = self.store.balance_of(account_id)
        if balance < amount:
            logger.info("metering.debit.insufficient account=%s balance=%s requested=%s", account_id, balance, amount)
            raise InsufficientCredits(balance, amount)

        try:
            result = self._append(
                account_id,
                NewLedgerEntry(
                    account_id=account_id,
                    amount=-amount,
                    source=source,
                    ref_type=ref_type,
                    ref_id=ref_id,
                    idempotency_key=idempotency_key,
                    metadata=dict(metadata or {}),
                ),
            )
        except InsufficientCredits as exc:
            # Lost the race to a concurrent debit between the read and the guarded write.
            logger.info(
                "metering.debit.insufficient account=%s balance=%s requested=%s", account_id, exc.balance, amount
            )
            raise InsufficientCredits(exc.balance, amount) from None
        if not result.replayed:
            logger.info(
                "metering.debit.applied account=%s amount=%s source=%s balance=%s",
                account_id,
                amount,
                source.value,
                result.balance,
            )
        return result

    def ensure_initial_credits(self, account_id: str, amount: int) -> MeteringResult | None:
        if amount <= 0:
            return None
        return self.credit(
            account_id,
            amount,
            source=CreditSource.MIGRATION,
            ref_type="user_initialization",
            ref_id=account_id,
            idempotency_key=f"init_{account_id}",
            metadata={"note": "Initial credits for new user"},
        )

    def debug_info(self, account_id: str, limit: int = 20) -> dict[str, Any]:
        is_subscriber = self.subscriptions.is_active_subscriber(account_id)
        entries = self.store.entries_of(account_id, limit=limit)
        return {
            "userId": account_id,
            "balance": self.store.balance_of(account_id),
            "ledgerBalance": self.store.recalculate_balance(account_id),
            "isSubscriber": is_subscriber,
            "ledgerEntries": [e.to_dict() for e in entries],
        }
