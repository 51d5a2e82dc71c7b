from sqlalchemy import (BigInteger, Boolean, Column, DateTime, ForeignKey,
                        Index, String, text)
from sqlalchemy.orm import relationship
from app.core.database import Base
from datetime import datetime


class Download(Base):
    __tablename__ = "downloads"
    __table_args__ = (
        # A media can only be held once per user while the copy is still valid
        Index(
            "uq_downloads_user_media_live",
            "user_id",
            "media_id",
            unique=True,
            postgresql_where=text("is_expired = false"),
            sqlite_where=text("is_expired = 0"),
        ),
    )

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    media_id = Column(String, ForeignKey("media.id"), nullable=False, index=True)
    storage_path = Column(String, nullable=False)  # Relative to settings.downloads_root
    original_title = Column(String, nullable=False)
    file_size = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    is_expired = Column(Boolean, default=False, nullable=False, index=True)

    # Relationships
    user = relationship("User", back_populates="downloads")
    media = relationship("Media")
