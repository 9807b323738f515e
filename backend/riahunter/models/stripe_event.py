from sqlalchemy import Boolean, Column, DateTime, String, Text
from sqlalchemy.sql import func

from riahunter.core.database import Base


class StripeEvent(Base):
    __tablename__ = "stripe_events"

    event_id = Column(String, primary_key=True)
    type = Column(String, nullable=False, index=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_ok = Column(Boolean, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
