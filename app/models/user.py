from sqlalchemy import Column, String, DateTime, Boolean, Enum
from sqlalchemy.orm import relationship
from app.core.database import Base
from datetime import datetime
import enum


class UserSubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    PENDING = "pending"
    INACTIVE = "inactive"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)  # Firebase UID
    email = Column(String, unique=True, index=True, nullable=True)
    display_name = Column(String, nullable=True)
    # Cached aggregate of the user's subscriptions, recomputed on every transition
    subscription_status = Column(
        Enum(UserSubscriptionStatus),
        nullable=False,
        default=UserSubscriptionStatus.INACTIVE,
        index=True
    )
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    is_active = Column(Boolean, default=True)

    # Relationships
    subscriptions = relationship("Subscription", back_populates="user")
    downloads = relationship("Download", back_populates="user", cascade="all, delete-orphan")
