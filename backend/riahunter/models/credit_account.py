from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from riahunter.core.database import Base


class CreditAccount(Base):
    __tablename__ = "credits_account"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_credits_account_balance_non_negative"),)

    user_id = Column(String, primary_key=True, index=True)
    # Materialized running total; always equals the sum of credits_ledger.delta.
    balance = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
