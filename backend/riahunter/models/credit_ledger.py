import enum

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from riahunter.core.database import Base


class CreditSource(str, enum.Enum):
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"
    USAGE = "usage"
    ADMIN_ADJUST = "admin_adjust"
    REFUND = "refund"
    MIGRATION = "migration"


class CreditLedger(Base):
    __tablename__ = "credits_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, index=True, nullable=False)
    delta = Column(Integer, nullable=False)
    source = Column(String, index=True, nullable=False)
    ref_type = Column(String, nullable=False)
    ref_id = Column(String, nullable=False)
    idempotency_key = Column(String, unique=True, index=True, nullable=False)
    balance_after = Column(Integer, nullable=False)
    entry_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
