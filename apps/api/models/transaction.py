"""Transaction model for checkout attempts."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_PENDING = "pending"
TRANSACTION_COMPLETED = "completed"


class Transaction(Base):
    """One checkout session; status only moves pending -> completed."""

    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    stripe_session_id = Column(String, unique=True, nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    plan_type = Column(String, nullable=False, default="one-time")
    credits = Column(Integer, nullable=True)
    amount_total = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="brl")
    status = Column(String, nullable=False, default=TRANSACTION_PENDING, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="transactions")
