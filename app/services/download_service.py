import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (DownloadLimitError, DuplicateDownloadError,
                                 NotFoundError, ServiceError,
                                 UpgradeRequiredError)
from app.core.middleware import AuthContext
from app.core.redis_cache import get_cache
from app.core.storage import LocalStorage, get_storage
from app.models.download import Download
from app.models.media import Media
from app.models.user import User
from app.services.analytics_service import AnalyticsService
from app.services.subscription_service import (PlanConfiguration,
                                               SubscriptionService)

logger = logging.getLogger(__name__)

EXPIRING_SOON_DAYS = 3


class DownloadService:
    def __init__(self, storage: Optional[LocalStorage] = None):
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)
        self.storage = storage or get_storage()
        self.subscriptions = SubscriptionService()

    def request_download(self, db: Session, auth: AuthContext, media_id: str) -> dict:
        """
        Admit and create an offline download of `media_id`.

        Admission is serialised per user: a Redis lock across processes and
        a row lock on the user inside the transaction, taken before the
        allowance is re-counted. The partial unique index on
        (user_id, media_id) catches whatever slips past both.
        """
        user_id = auth.uid
        self.logger.info(f"request_download: Entry - user: {user_id}, media: {media_id}")

        now = datetime.utcnow()
        self.sweep_expired(db, user_id, now)

        cache = get_cache()
        lock_key = f"download_lock:{user_id}"
        lock_acquired = cache.acquire_lock(
            lock_key, timeout_seconds=settings.download_lock_timeout_seconds, block_seconds=5)

        artifact = None
        try:
            if not lock_acquired:
                # The row lock below still serialises admission
                self.logger.warning(f"request_download: Could not acquire lock - {user_id}")

            user = db.query(User).filter(User.id == user_id).with_for_update().first()
            if not user:
                raise NotFoundError("User not found")

            subscription = self.subscriptions.get_active_subscription(db, user_id, now)
            if subscription is None:
                raise UpgradeRequiredError("An active Premium or Family subscription is required to download")

            max_downloads = PlanConfiguration.get_download_limit(db, subscription.plan_tier)
            if max_downloads <= 0:
                raise UpgradeRequiredError(
                    "Downloads are only available on Premium and Family plans",
                    plan_tier=subscription.plan_tier.value,
                )

            media = db.query(Media).filter(Media.id == media_id).first()
            if not media:
                raise NotFoundError("Video not found")

            existing = db.query(Download).filter(
                Download.user_id == user_id,
                Download.media_id == media_id,
                Download.is_expired == False
            ).first()
            if existing:
                raise DuplicateDownloadError("This title is already downloaded", download_id=existing.id)

            active_count = db.query(Download).filter(
                Download.user_id == user_id,
                Download.is_expired == False
            ).count()
            if active_count >= max_downloads:
                raise DownloadLimitError(
                    f"Download limit reached ({max_downloads} max for your plan)",
                    max_downloads=max_downloads,
                )

            source = self.storage.media_path(media.file_path)
            if not source.is_file():
                raise NotFoundError("Video file not found on the server")

            artifact, file_size = self.storage.materialize_download(source)
            retention_days = PlanConfiguration.get_limit(
                db, subscription.plan_tier, 'download_retention_days') or settings.download_retention_days

            download = Download(
                id=str(uuid.uuid4()),
                user_id=user_id,
                media_id=media.id,
                storage_path=artifact,
                original_title=media.title,
                file_size=file_size,
                created_at=now,
                expires_at=now + timedelta(days=retention_days),
                is_expired=False,
            )
            db.add(download)
            db.commit()
            db.refresh(download)

            self.analytics.log_success(
                action='request_download',
                user_id=user_id,
                parameters={
                    'media_id': media_id,
                    'plan_tier': subscription.plan_tier.value,
                    'count': active_count + 1,
                    'max_downloads': max_downloads,
                }
            )
            self.logger.info(
                f"request_download: Success - user: {user_id}, download: {download.id}, "
                f"count: {active_count + 1}/{max_downloads}")
            return self._serialize(download, now)
        except IntegrityError:
            db.rollback()
            self._discard_artifact(artifact)
            self.logger.info(f"request_download: Concurrent duplicate - user: {user_id}, media: {media_id}")
            raise DuplicateDownloadError("This title is already downloaded")
        except ServiceError as e:
            db.rollback()
            self._discard_artifact(artifact)
            self.logger.info(f"request_download: Rejected - user: {user_id}, reason: {e.reason}")
            raise
        except Exception as e:
            db.rollback()
            self._discard_artifact(artifact)
            self.analytics.log_failure(
                action='request_download',
                error=str(e),
                user_id=user_id,
                parameters={'media_id': media_id}
            )
            self.logger.error(f"request_download: Failure - {e}")
            raise
        finally:
            if lock_acquired:
                cache.release_lock(lock_key)

    def list_downloads(self, db: Session, auth: AuthContext) -> dict:
        user_id = auth.uid
        self.logger.info(f"list_downloads: Entry - user: {user_id}")

        try:
            now = datetime.utcnow()
            self.sweep_expired(db, user_id, now)

            downloads = db.query(Download).filter(
                Download.user_id == user_id,
                Download.is_expired == False
            ).order_by(Download.created_at.desc()).all()

            subscription = self.subscriptions.get_active_subscription(db, user_id, now)
            max_downloads = (PlanConfiguration.get_download_limit(db, subscription.plan_tier)
                             if subscription else 0)

            result = {
                'downloads': [self._serialize(download, now) for download in downloads],
                'stats': {
                    'total': len(downloads),
                    'max': max_downloads,
                    'remaining': max(0, max_downloads - len(downloads)),
                    'total_size': sum(download.file_size for download in downloads),
                    'plan_tier': subscription.plan_tier.value if subscription else None,
                },
            }

            self.logger.info(f"list_downloads: Success - user: {user_id}, count: {len(downloads)}")
            return result
        except Exception as e:
            self.analytics.log_failure(action='list_downloads', error=str(e), user_id=user_id)
            self.logger.error(f"list_downloads: Failure - {e}")
            raise

    def get_download(self, db: Session, auth: AuthContext, download_id: str) -> dict:
        self.logger.info(f"get_download: Entry - user: {auth.uid}, download: {download_id}")

        now = datetime.utcnow()
        self.sweep_expired(db, auth.uid, now)
        download = self._get_owned(db, auth.uid, download_id)

        self.logger.info(f"get_download: Success - download: {download_id}")
        return self._serialize(download, now)

    def delete_download(self, db: Session, auth: AuthContext, download_id: str) -> dict:
        """
        Remove a download's artifact and row.

        If the artifact cannot be removed the row is still deleted so the
        slot is freed, and the response carries a warning instead of
        pretending everything went fine.
        """
        user_id = auth.uid
        self.logger.info(f"delete_download: Entry - user: {user_id}, download: {download_id}")

        download = self._get_owned(db, user_id, download_id)
        title = download.original_title
        storage_path = download.storage_path

        warning = None
        try:
            self.storage.remove_download(storage_path)
        except Exception as e:
            warning = "The downloaded file could not be removed from storage"
            self.analytics.log_failure(
                action='delete_download_artifact',
                error=str(e),
                user_id=user_id,
                parameters={'download_id': download_id, 'storage_path': storage_path}
            )
            self.logger.error(f"delete_download: Artifact removal failed - {storage_path}: {e}")

        try:
            db.delete(download)
            db.commit()
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(
                action='delete_download',
                error=str(e),
                user_id=user_id,
                parameters={'download_id': download_id}
            )
            self.logger.error(f"delete_download: Failure - {e}")
            raise

        self.analytics.log_success(
            action='delete_download',
            user_id=user_id,
            parameters={'download_id': download_id, 'artifact_removed': warning is None}
        )
        self.logger.info(f"delete_download: Success - download: {download_id}")

        result = {'success': True, 'message': f'"{title}" removed from your downloads'}
        if warning:
            result['warning'] = warning
        return result

    def sweep_expired(self, db: Session, user_id: str, now: Optional[datetime] = None) -> int:
        """Flag a user's downloads whose retention has ended and try to drop their artifacts"""
        now = now or datetime.utcnow()

        try:
            expired = db.query(Download).filter(
                Download.user_id == user_id,
                Download.is_expired == False,
                Download.expires_at < now
            ).all()
            if not expired:
                return 0

            for download in expired:
                download.is_expired = True
            db.commit()
        except Exception as e:
            db.rollback()
            self.logger.error(f"sweep_expired: Failure - {e}")
            raise

        for download in expired:
            try:
                self.storage.remove_download(download.storage_path)
            except Exception as e:
                # purge_expired picks it up later
                self.logger.warning(f"sweep_expired: Could not remove artifact {download.storage_path} - {e}")

        self.logger.info(f"sweep_expired: Success - user: {user_id}, expired: {len(expired)}")
        return len(expired)

    def purge_expired(self, db: Session, now: Optional[datetime] = None) -> dict:
        """
        Remove artifacts and rows of every expired download.
        Rows whose artifact could not be removed are kept for the next run.
        """
        self.logger.info("purge_expired: Entry")
        now = now or datetime.utcnow()

        db.query(Download).filter(
            Download.is_expired == False,
            Download.expires_at < now
        ).update({Download.is_expired: True}, synchronize_session=False)
        db.commit()

        purged = 0
        failed = 0
        for download in db.query(Download).filter(Download.is_expired == True).all():
            try:
                self.storage.remove_download(download.storage_path)
            except Exception as e:
                failed += 1
                self.logger.error(f"purge_expired: Could not remove {download.storage_path} - {e}")
                continue
            db.delete(download)
            purged += 1
        db.commit()

        self.analytics.log_success(action='purge_expired_downloads', parameters={'purged': purged, 'failed': failed})
        self.logger.info(f"purge_expired: Success - purged: {purged}, failed: {failed}")
        return {'purged': purged, 'failed': failed}

    def _get_owned(self, db: Session, user_id: str, download_id: str) -> Download:
        # Someone else's download is reported exactly like a missing one
        download = db.query(Download).filter(
            Download.id == download_id,
            Download.user_id == user_id
        ).first()
        if not download:
            raise NotFoundError("Download not found")
        return download

    def _discard_artifact(self, artifact: Optional[str]):
        if artifact is None:
            return
        try:
            self.storage.remove_download(artifact)
        except Exception as e:
            self.logger.error(f"_discard_artifact: Orphaned artifact {artifact} - {e}")

    def _serialize(self, download: Download, now: datetime) -> dict:
        seconds_left = (download.expires_at - now).total_seconds()
        days_left = math.ceil(seconds_left / 86400)
        return {
            'id': download.id,
            'media_id': download.media_id,
            'title': download.original_title,
            'file_size': download.file_size,
            'created_at': download.created_at.isoformat(),
            'expires_at': download.expires_at.isoformat(),
            'is_expired': download.is_expired,
            'days_remaining': max(0, days_left),
            'is_expiring_soon': days_left <= EXPIRING_SOON_DAYS,
        }
