"""Error taxonomy for identity, metering and admin adjustments.

Every error carries a machine readable ``code`` and the HTTP status the API
layer renders it with. ``extra`` holds fields that are safe to show the caller.
"""

from __future__ import annotations

from typing import Any


class MeteringError(Exception):
    code = "METERING_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    @property
    def extra(self) -> dict[str, Any]:
        return {}

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.extra}


class NoIdentity(MeteringError):
    code = "NO_ANON_ID"
    status_code = 400

    def __init__(self, message: str = "No anonymous ID found") -> None:
        super().__init__(message)


class AuthError(MeteringError):
    code = "INVALID_TOKEN"
    status_code = 401

    def __init__(self, message: str = "Invalid bearer token") -> None:
        super().__init__(message)


class InvalidAmount(MeteringError):
    code = "INVALID_AMOUNT"
    status_code = 400

    def __init__(self, amount: Any) -> None:
        super().__init__("Amount must be a positive integer")
        self.amount = amount


class InvalidAction(MeteringError):
    code = "INVALID_ACTION"
    status_code = 400

    def __init__(self, action: Any) -> None:
        super().__init__("Action must be 'add' or 'deduct'")
        self.action = action


class InvalidReason(MeteringError):
    code = "INVALID_REASON"
    status_code = 400

    def __init__(self) -> None:
        super().__init__("A reason is required for admin adjustments")


class Forbidden(MeteringError):
    code = "FORBIDDEN"
    status_code = 403

    def __init__(self, message: str = "Admin access required") -> None:
        super().__init__(message)


class InsufficientCredits(MeteringError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, balance: int, requested: int) -> None:
        super().__init__(f"Insufficient credits: current={balance}, requested={requested}")
        self.balance = int(balance)
        self.requested = int(requested)

    @property
    def extra(self) -> dict[str, Any]:
        return {"balance": self.balance, "credits": self.balance, "requested": self.requested}


class DemoLimitReached(MeteringError):
    code = "DEMO_LIMIT_REACHED"
    status_code = 402

    def __init__(self, used: int, limit: int) -> None:
        super().__init__("Demo search limit reached")
        self.used = int(used)
        self.limit = int(limit)

    @property
    def extra(self) -> dict[str, Any]:
        return {"searchesUsed": self.used, "searchesRemaining": 0, "totalAllowed": self.limit}


class DuplicateIdempotencyKey(MeteringError):
    """Raised by a ledger store when the key was already applied.

    Not a business failure: the metering engine turns it into a replay of the
    original result.
    """

    code = "DUPLICATE_IDEMPOTENCY_KEY"
    status_code = 200

    def __init__(self, entry: Any, balance: int) -> None:
        super().__init__("Idempotency key already applied")
        self.entry = entry
        self.balance = int(balance)


class IdempotencyKeyConflict(MeteringError):
    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409

    def __init__(self) -> None:
        super().__init__("Idempotency key was already used by another account")


class StoreUnavailable(MeteringError):
    code = "STORE_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: str = "Ledger store is temporarily unavailable") -> None:
        super().__init__(message)


class InvalidTarget(MeteringError):
    code = "INVALID_TARGET"
    status_code = 400

    def __init__(self) -> None:
        super().__init__("A target account id is required")


class InvalidSource(MeteringError):
    code = "INVALID_SOURCE"
    status_code = 400

    def __init__(self, source: Any) -> None:
        super().__init__(f"Source {source!r} is not valid for this movement")
        self.source = source
