from __future__ import annotations

import logging
from uuid import uuid4

from riahunter.core.errors import Forbidden, InvalidAction, InvalidReason, InvalidTarget
from riahunter.core.security import ADMIN_ROLE, AuthVerifier, CurrentUser
from riahunter.models.credit_ledger import CreditSource
from riahunter.services.metering import MeteringEngine, MeteringResult, require_positive_amount


logger = logging.getLogger(__name__)

ACTIONS: set[str] = {"add", "deduct"}


class AdminAdjustmentGate:
    """Operator credit adjustments with mandatory audit metadata.

    Every call is a new intentional movement and gets its own idempotency key.
    """

    def __init__(self, engine: MeteringEngine, authz: AuthVerifier) -> None:
        self._engine = engine
        self._authz = authz

    def adjust(
        self,
        caller: CurrentUser,
        action: str,
        amount: int,
        target_account_id: str,
        reason: str,
    ) -> MeteringResult:
        if not self._authz.has_role(caller.id, ADMIN_ROLE):
            logger.warning("admin.adjust.forbidden caller=%s", caller.id)
            raise Forbidden()

        action = str(action or "").strip().lower()
        if action not in ACTIONS:
            raise InvalidAction(action)
        amount = require_positive_amount(amount)
        reason = str(reason or "").strip()
        if not reason:
            raise InvalidReason()
        target = str(target_account_id or "").strip()
        if not target:
            raise InvalidTarget()

        key = f"admin_{uuid4()}"
        metadata = {"reason": reason, "admin_user_id": caller.id, "action": action}
        if action == "add":
            result = self._engine.credit(
                target,
                amount,
                source=CreditSource.ADMIN_ADJUST,
                ref_type="admin_adjustment",
                ref_id=key,
                idempotency_key=key,
                metadata=metadata,
            )
        else:
            result = self._engine.debit(
                target,
                amount,
                ref_type="admin_adjustment",
                ref_id=key,
                idempotency_key=key,
                metadata=metadata,
                source=CreditSource.ADMIN_ADJUST,
            )
        logger.info(
            "admin.adjust.applied caller=%s target=%s action=%s amount=%s balance=%s",
            caller.id,
            target,
            action,
            amount,
            result.balance,
        )
        return result
