"""Per identity and endpoint request counter."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class RateLimitCounter(Base):
    __tablename__ = "rate_limits"

    user_id = Column(String, primary_key=True)
    endpoint = Column(String, primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    reset_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
