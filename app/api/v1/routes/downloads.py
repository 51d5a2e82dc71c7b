import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.exceptions import ServiceError
from app.core.middleware import AuthContext, get_current_user
from app.services.download_service import DownloadService
from app.services.subscription_service import SubscriptionService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_download_service() -> DownloadService:
    """Dependency to get download service instance"""
    return DownloadService()


def get_subscription_service() -> SubscriptionService:
    return SubscriptionService()


class CreateDownloadRequest(BaseModel):
    media_id: str


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_download(
    request: CreateDownloadRequest,
    db: Session = Depends(get_db),
    current_user: AuthContext = Depends(get_current_user),
    download_service: DownloadService = Depends(get_download_service),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Create an offline download of a video.
    Fails with `upgrade_required`, `already_exists` or `limit_reached` in the detail.
    """
    logger.info(f"create_download: Entry - user: {current_user.uid}, media: {request.media_id}")

    try:
        subscription_service.ensure_user(db, current_user)
        download = download_service.request_download(db, current_user, request.media_id)
        logger.info(f"create_download: Success - download: {download['id']}")
        return {"success": True, "message": f"{download['title']} downloaded", "download": download}
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"create_download: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("")
async def list_downloads(
    db: Session = Depends(get_db),
    current_user: AuthContext = Depends(get_current_user),
    download_service: DownloadService = Depends(get_download_service)
):
    logger.info(f"list_downloads: Entry - user: {current_user.uid}")

    try:
        result = download_service.list_downloads(db, current_user)
        logger.info(f"list_downloads: Success - user: {current_user.uid}")
        return {"success": True, **result}
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"list_downloads: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/{download_id}")
async def get_download(
    download_id: str,
    db: Session = Depends(get_db),
    current_user: AuthContext = Depends(get_current_user),
    download_service: DownloadService = Depends(get_download_service)
):
    logger.info(f"get_download: Entry - user: {current_user.uid}, download: {download_id}")

    try:
        download = download_service.get_download(db, current_user, download_id)
        logger.info(f"get_download: Success - download: {download_id}")
        return {"success": True, "download": download}
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"get_download: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.delete("/{download_id}")
async def delete_download(
    download_id: str,
    db: Session = Depends(get_db),
    current_user: AuthContext = Depends(get_current_user),
    download_service: DownloadService = Depends(get_download_service)
):
    """
    Delete a download and its file.
    A `warning` is included when the file could not be removed.
    """
    logger.info(f"delete_download: Entry - user: {current_user.uid}, download: {download_id}")

    try:
        result = download_service.delete_download(db, current_user, download_id)
        logger.info(f"delete_download: Success - download: {download_id}")
        return result
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"delete_download: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )
