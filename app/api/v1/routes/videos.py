import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.middleware import AuthContext, get_current_user
from app.services.media_service import MediaService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_media_service() -> MediaService:
    """Dependency to get media service instance"""
    return MediaService()


@router.get("/{media_id}")
async def stream_video(
    media_id: str,
    range_header: Optional[str] = Header(None, alias="Range"),
    db: Session = Depends(get_db),
    current_user: AuthContext = Depends(get_current_user),
    media_service: MediaService = Depends(get_media_service)
):
    """
    Stream a video with HTTP range support.
    The token may be sent as a `token` query parameter for <video> elements.
    """
    logger.info(f"stream_video: Entry - user: {current_user.uid}, media: {media_id}")

    stream = media_service.open_stream(db, current_user, media_id, range_header)
    return StreamingResponse(
        stream.body(),
        status_code=stream.status_code,
        headers=stream.headers,
        media_type=stream.content_type,
    )
