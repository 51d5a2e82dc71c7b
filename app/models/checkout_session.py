from sqlalchemy import Column, String, DateTime, ForeignKey, Enum, Numeric
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.models.plan import PlanTier
from datetime import datetime
import enum


class CheckoutStatus(str, enum.Enum):
    OPEN = "open"
    PAID = "paid"
    FAILED = "failed"


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"

    token = Column(String, primary_key=True, index=True)  # Provider checkout token
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    plan_tier = Column(Enum(PlanTier), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(Enum(CheckoutStatus), nullable=False, default=CheckoutStatus.OPEN, index=True)
    transaction_id = Column(String, nullable=True)
    last_checked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User")
