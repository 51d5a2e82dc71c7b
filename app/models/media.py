from sqlalchemy import Column, String, DateTime
from app.core.database import Base
from datetime import datetime


class Media(Base):
    __tablename__ = "media"

    id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=False)
    file_path = Column(String, nullable=False)  # Relative to settings.media_root
    content_type = Column(String, nullable=False, default="video/mp4")
    created_at = Column(DateTime, default=datetime.utcnow)
