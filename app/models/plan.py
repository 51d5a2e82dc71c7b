from sqlalchemy import Column, String, DateTime, Boolean, Numeric, JSON, Enum
from app.core.database import Base
from datetime import datetime
import enum


class PlanTier(str, enum.Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    FAMILY = "family"


class Plan(Base):
    __tablename__ = "plans"

    tier = Column(Enum(PlanTier), primary_key=True)
    name = Column(String, nullable=False)
    price_monthly = Column(Numeric(10, 2), nullable=False)
    limits = Column(JSON, nullable=False)  # max_downloads, download_retention_days, streaming
    features = Column(JSON, nullable=False)  # Store as array
    active = Column(Boolean, default=True, nullable=False)
    recommended = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
