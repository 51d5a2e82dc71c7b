import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

import aiofiles
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (NotFoundError, RangeNotSatisfiableError,
                                 UpgradeRequiredError)
from app.core.middleware import AuthContext
from app.core.storage import LocalStorage, get_storage
from app.models.media import Media
from app.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def parse_range_header(range_header: Optional[str], file_size: int) -> Optional[ByteRange]:
    """
    Resolve a `Range` header against a file of `file_size` bytes.

    Returns None when there is no header (serve the whole file). Supports a
    single `bytes=start-end`, open-ended `bytes=start-` and suffix
    `bytes=-N` range; an end past the file is clamped to the last byte.
    Anything else raises RangeNotSatisfiableError, including multi-range
    requests.
    """
    if range_header is None or not range_header.strip():
        return None

    unit, _, byte_ranges = range_header.strip().partition("=")
    if unit.strip().lower() != "bytes" or not byte_ranges:
        raise RangeNotSatisfiableError(f"Unsupported range: {range_header}", file_size)
    if "," in byte_ranges:
        raise RangeNotSatisfiableError("Multiple ranges are not supported", file_size)

    first, dash, last = byte_ranges.strip().partition("-")
    first, last = first.strip(), last.strip()
    if not dash or (first and not first.isdigit()) or (last and not last.isdigit()) or not (first or last):
        raise RangeNotSatisfiableError(f"Malformed range: {range_header}", file_size)

    if not first:
        suffix = int(last)
        if suffix == 0 or file_size == 0:
            raise RangeNotSatisfiableError(f"Range not satisfiable: {range_header}", file_size)
        return ByteRange(start=max(0, file_size - suffix), end=file_size - 1)

    start = int(first)
    end = int(last) if last else file_size - 1
    if start >= file_size or start > end:
        raise RangeNotSatisfiableError(f"Range not satisfiable: {range_header}", file_size)
    return ByteRange(start=start, end=min(end, file_size - 1))


async def iter_file_range(path: Path, start: int, end: int, chunk_size: int) -> AsyncIterator[bytes]:
    """
    Yield bytes [start, end] of `path`.

    The file is closed as soon as the consumer stops iterating, which is
    what happens when the client disconnects mid-stream.
    """
    remaining = end - start + 1
    async with aiofiles.open(path, "rb") as f:
        await f.seek(start)
        while remaining > 0:
            chunk = await f.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


@dataclass
class MediaStream:
    path: Path
    file_size: int
    status_code: int
    start: int
    end: int
    headers: Dict[str, str] = field(default_factory=dict)
    content_type: str = "video/mp4"

    def body(self, chunk_size: Optional[int] = None) -> AsyncIterator[bytes]:
        return iter_file_range(self.path, self.start, self.end, chunk_size or settings.stream_chunk_size)


class MediaService:
    def __init__(self, storage: Optional[LocalStorage] = None):
        self.logger = logging.getLogger(__name__)
        self.storage = storage or get_storage()
        self.subscriptions = SubscriptionService()

    def open_stream(
        self,
        db: Session,
        auth: AuthContext,
        media_id: str,
        range_header: Optional[str] = None,
    ) -> MediaStream:
        """Authorize the caller and resolve what part of which file to send"""
        self.logger.info(f"open_stream: Entry - user: {auth.uid}, media: {media_id}, range: {range_header}")

        if self.subscriptions.get_active_subscription(db, auth.uid) is None:
            self.logger.info(f"open_stream: No entitlement - user: {auth.uid}")
            raise UpgradeRequiredError("An active subscription is required to watch this video")

        media = db.query(Media).filter(Media.id == media_id).first()
        if not media:
            raise NotFoundError("Video not found")

        try:
            path = self.storage.media_path(media.file_path)
        except ValueError:
            self.logger.error(f"open_stream: Media {media_id} points outside the media root")
            raise NotFoundError("Video file not found")
        if not path.is_file():
            self.logger.error(f"open_stream: Missing file for media {media_id} - {path}")
            raise NotFoundError("Video file not found")

        file_size = path.stat().st_size
        byte_range = parse_range_header(range_header, file_size)

        headers = {
            "Accept-Ranges": "bytes",
            "Cache-Control": "no-store",
            "X-Content-Type-Options": "nosniff",
            "Content-Disposition": "inline",
        }
        if byte_range is None:
            headers["Content-Length"] = str(file_size)
            stream = MediaStream(path, file_size, 200, 0, file_size - 1, headers, media.content_type)
        else:
            headers["Content-Length"] = str(byte_range.length)
            headers["Content-Range"] = f"bytes {byte_range.start}-{byte_range.end}/{file_size}"
            stream = MediaStream(path, file_size, 206, byte_range.start, byte_range.end, headers, media.content_type)

        self.logger.info(
            f"open_stream: Success - media: {media_id}, status: {stream.status_code}, "
            f"bytes: {stream.start}-{stream.end}/{file_size}")
        return stream
