"""Append-only credit ledger storage.

Balance is derived from entries. Stores keep a materialized running total per
account that is updated in the same atomic step as the entry insert, and every
append is guarded so the balance can never go below zero.
"""

from __future__ import annotations

import abc
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from riahunter.core.errors import DuplicateIdempotencyKey, InsufficientCredits, StoreUnavailable
from riahunter.models.credit_account import CreditAccount
from riahunter.models.credit_ledger import CreditLedger, CreditSource


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NewLedgerEntry:
    account_id: str
    amount: int
    source: CreditSource
    ref_type: str
    ref_id: str
    idempotency_key: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    account_id: str
    amount: int
    source: CreditSource
    ref_type: str
    ref_id: str
    idempotency_key: str
    metadata: dict[str, Any]
    balance_after: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.account_id,
            "delta": self.amount,
            "source": self.source.value,
            "refType": self.ref_type,
            "refId": self.ref_id,
            "balanceAfter": self.balance_after,
            "metadata": dict(self.metadata),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class AppendResult:
    entry: LedgerEntry
    balance: int


class LedgerStore(abc.ABC):
    @abc.abstractmethod
    def append(self, entry: NewLedgerEntry) -> AppendResult:
        """Insert ``entry`` and return the post-insert balance.

        Raises ``DuplicateIdempotencyKey`` (carrying the original entry and its
        resulting balance) when the key was already applied, and
        ``InsufficientCredits`` when the entry would take the balance below zero.
        Nothing is written in either case.
        """

    @abc.abstractmethod
    def balance_of(self, account_id: str) -> int: ...

    @abc.abstractmethod
    def entries_of(self, account_id: str, limit: int | None = None) -> list[LedgerEntry]:
        """Most recent first. Audit/debug only."""

    @abc.abstractmethod
    def find_by_idempotency_key(self, idempotency_key: str) -> LedgerEntry | None: ...

    @abc.abstractmethod
    def recalculate_balance(self, account_id: str) -> int:
        """Sum of entry amounts, computed from the entries themselves."""


class InMemoryLedgerStore(LedgerStore):
    """Process-local store; serializes appends per account with a keyed lock."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._entries: dict[str, list[LedgerEntry]] = {}
        self._balances: dict[str, int] = {}
        self._by_key: dict[str, LedgerEntry] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._keys_lock = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def append(self, entry: NewLedgerEntry) -> AppendResult:
        with self._lock_for(entry.account_id):
            current = self._balances.get(entry.account_id, 0)
            new_balance = current + int(entry.amount)
            with self._keys_lock:
                existing = self._by_key.get(entry.idempotency_key)
                if existing is not None:
                    raise DuplicateIdempotencyKey(existing, existing.balance_after)
                if new_balance < 0:
                    raise InsufficientCredits(current, -int(entry.amount))
                stored = LedgerEntry(
                    id=next(self._ids),
                    account_id=entry.account_id,
                    amount=int(entry.amount),
                    source=CreditSource(entry.source),
                    ref_type=entry.ref_type,
                    ref_id=entry.ref_id,
                    idempotency_key=entry.idempotency_key,
                    metadata=dict(entry.metadata or {}),
                    balance_after=new_balance,
                    created_at=utcnow(),
                )
                self._by_key[entry.idempotency_key] = stored
            self._entries.setdefault(entry.account_id, []).append(stored)
            self._balances[entry.account_id] = new_balance
            return AppendResult(entry=stored, balance=new_balance)

    def balance_of(self, account_id: str) -> int:
        with self._lock_for(account_id):
            return self._balances.get(account_id, 0)

    def entries_of(self, account_id: str, limit: int | None = None) -> list[LedgerEntry]:
        with self._lock_for(account_id):
            rows = list(reversed(self._entries.get(account_id, [])))
        return rows if limit is None else rows[: max(0, int(limit))]

    def find_by_idempotency_key(self, idempotency_key: str) -> LedgerEntry | None:
        with self._keys_lock:
            return self._by_key.get(idempotency_key)

    def recalculate_balance(self, account_id: str) -> int:
        with self._lock_for(account_id):
            return sum(e.amount for e in self._entries.get(account_id, []))


class _GuardRejected(Exception):
    pass


def _to_entry(row: CreditLedger) -> LedgerEntry:
    return LedgerEntry(
        id=int(row.id),
        account_id=row.user_id,
        amount=int(row.delta),
        source=CreditSource(row.source),
        ref_type=row.ref_type,
        ref_id=row.ref_id,
        idempotency_key=row.idempotency_key,
        metadata=dict(row.entry_metadata or {}),
        balance_after=int(row.balance_after),
        created_at=row.created_at,
    )


class SqlLedgerStore(LedgerStore):
    """SQLAlchemy-backed store.

    The balance check and the balance update are one conditional UPDATE on the
    account row (``balance + delta >= 0``), executed in the same transaction as
    the entry insert. Postgres holds the row lock until commit and SQLite holds
    the database write lock, so concurrent appends to one account serialize.
    The UNIQUE index on ``idempotency_key`` rolls back the whole transaction on
    a replay.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _ensure_account(self, account_id: str) -> None:
        with self._session_factory() as db:
            if db.get(CreditAccount, account_id) is not None:
                return
            db.add(CreditAccount(user_id=account_id, balance=0))
            try:
                db.commit()
                logger.info("ledger.account.created account=%s", account_id)
            except IntegrityError:
                # Created concurrently by another request.
                db.rollback()

    def append(self, entry: NewLedgerEntry) -> AppendResult:
        delta = int(entry.amount)
        try:
            self._ensure_account(entry.account_id)
            with self._session_factory.begin() as db:
                result = db.execute(
                    update(CreditAccount)
                    .where(CreditAccount.user_id == entry.account_id)
                    .where(CreditAccount.balance + delta >= 0)
                    .values(balance=CreditAccount.balance + delta, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise _GuardRejected()
                balance = int(
                    db.execute(
                        select(CreditAccount.balance).where(CreditAccount.user_id == entry.account_id)
                    ).scalar_one()
                )
                row = CreditLedger(
                    user_id=entry.account_id,
                    delta=delta,
                    source=CreditSource(entry.source).value,
                    ref_type=entry.ref_type,
                    ref_id=entry.ref_id,
                    idempotency_key=entry.idempotency_key,
                    balance_after=balance,
                    entry_metadata=dict(entry.metadata or {}),
                    created_at=utcnow(),
                )
                db.add(row)
                db.flush()
                stored = _to_entry(row)
        except _GuardRejected:
            existing = self.find_by_idempotency_key(entry.idempotency_key)
            if existing is not None:
                raise DuplicateIdempotencyKey(existing, existing.balance_after)
            raise InsufficientCredits(self.balance_of(entry.account_id), -delta)
        except IntegrityError:
            existing = self.find_by_idempotency_key(entry.idempotency_key)
            if existing is None:
                raise
            raise DuplicateIdempotencyKey(existing, existing.balance_after)
        except OperationalError as exc:
            logger.exception("ledger.append.error account=%s", entry.account_id)
            raise StoreUnavailable() from exc
        return AppendResult(entry=stored, balance=balance)

    def balance_of(self, account_id: str) -> int:
        try:
            with self._session_factory() as db:
                value = db.execute(
                    select(CreditAccount.balance).where(CreditAccount.user_id == account_id)
                ).scalar_one_or_none()
        except OperationalError as exc:
            raise StoreUnavailable() from exc
        return int(value or 0)

    def entries_of(self, account_id: str, limit: int | None = None) -> list[LedgerEntry]:
        try:
            with self._session_factory() as db:
                query = db.query(CreditLedger).filter(CreditLedger.user_id == account_id).order_by(CreditLedger.id.desc())
                if limit is not None:
                    query = query.limit(max(0, int(limit)))
                return [_to_entry(row) for row in query.all()]
        except OperationalError as exc:
            raise StoreUnavailable() from exc

    def find_by_idempotency_key(self, idempotency_key: str) -> LedgerEntry | None:
        try:
            with self._session_factory() as db:
                row = db.query(CreditLedger).filter(CreditLedger.idempotency_key == idempotency_key).first()
                return _to_entry(row) if row is not None else None
        except OperationalError as exc:
            raise StoreUnavailable() from exc

    def recalculate_balance(self, account_id: str) -> int:
        try:
            with self._session_factory() as db:
                total = (
                    db.query(func.coalesce(func.sum(CreditLedger.delta), 0))
                    .filter(CreditLedger.user_id == account_id)
                    .scalar()
                )
        except OperationalError as exc:
            raise StoreUnavailable() from exc
        return int(total or 0)
