from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from riahunter.api.deps import get_admin_gate
from riahunter.core.security import CurrentUser, get_current_user
from riahunter.services.admin_gate import AdminAdjustmentGate


router = APIRouter(dependencies=[Depends(get_current_user)])


class CreditAdjustRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str
    amount: int
    target_user_id: str = Field(alias="targetUserId")
    reason: str = ""


@router.post("/admin/credits/adjust")
def admin_adjust_credits(
    body: CreditAdjustRequest,
    current_user: CurrentUser = Depends(get_current_user),
    gate: AdminAdjustmentGate = Depends(get_admin_gate),
) -> dict:
    result = gate.adjust(
        current_user,
        action=body.action,
        amount=body.amount,
        target_account_id=body.target_user_id,
        reason=body.reason,
    )
    return {
        "ok": True,
        "action": body.action.strip().lower(),
        "amount": body.amount,
        "targetUserId": body.target_user_id.strip(),
        "balance": result.balance,
    }
