from sqlalchemy import (CheckConstraint, Column, DateTime, Enum, ForeignKey,
                        Index, Numeric, String, text)
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.models.plan import PlanTier
from datetime import datetime
import enum


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


LIVE_STATUSES = (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_subscriptions_window"),
        # At most one PENDING or ACTIVE subscription per user
        Index(
            "uq_subscriptions_user_live",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'ACTIVE')"),
            sqlite_where=text("status IN ('PENDING', 'ACTIVE')"),
        ),
    )

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    plan_tier = Column(Enum(PlanTier), nullable=False, index=True)
    status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.PENDING, index=True)
    # Idempotency key for payment events; admin-created rows carry a synthetic one
    external_transaction_id = Column(String, nullable=True, unique=True)
    amount = Column(Numeric(10, 2), nullable=True)
    start_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    end_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="subscriptions")
