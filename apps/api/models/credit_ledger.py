"""Append-only history of balance mutations."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditLedger(Base):
    """One signed balance change and the balance it produced.

    ``billing_reference`` holds the processor id (checkout session or invoice)
    that paid for a grant. It is unique, so one payment can credit at most once.
    """

    __tablename__ = "credit_ledger"
    __table_args__ = (
        CheckConstraint("delta_credits <> 0", name="ck_credit_ledger_nonzero_delta"),
        Index("uq_credit_ledger_billing_reference", "billing_reference", unique=True),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    entry_type = Column(String, nullable=False)
    delta_credits = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=True)
    reason = Column(String, nullable=True)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    billing_provider = Column(String, nullable=True)
    billing_reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_entries")

    def __repr__(self) -> str:
        return f"<CreditLedger {self.entry_type} {self.delta_credits:+d} user={self.user_id}>"
