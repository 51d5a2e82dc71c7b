import logging
import secrets
import shutil
from pathlib import Path
from typing import Tuple

from app.core.config import settings

logger = logging.getLogger(__name__)


class LocalStorage:
    """
    Local filesystem storage for source videos and offline download artifacts.

    Paths stored in the database are relative to the respective root so the
    roots can move without a data migration.
    """

    def __init__(self, media_root: Path, downloads_root: Path):
        self.media_root = media_root
        self.downloads_root = downloads_root

    def _safe_join(self, root: Path, relative: str) -> Path:
        base = root.resolve()
        candidate = (base / relative).resolve()
        if candidate != base and base not in candidate.parents:
            raise ValueError(f"Path escapes storage root: {relative}")
        return candidate

    def media_path(self, relative: str) -> Path:
        return self._safe_join(self.media_root, relative)

    def download_path(self, relative: str) -> Path:
        return self._safe_join(self.downloads_root, relative)

    def materialize_download(self, source: Path) -> Tuple[str, int]:
        """
        Copy a source video to a new opaque artifact.
        Returns the artifact path relative to the downloads root and its size.
        """
        self.downloads_root.mkdir(parents=True, exist_ok=True)
        filename = f"{secrets.token_hex(32)}.enc"
        destination = self.download_path(filename)

        with source.open("rb") as src, destination.open("wb") as dst:
            shutil.copyfileobj(src, dst)

        size = destination.stat().st_size
        logger.info(f"materialize_download: Created {filename} ({size} bytes)")
        return filename, size

    def remove_download(self, relative: str):
        """Remove an artifact; a missing file counts as removed, anything else raises OSError"""
        path = self.download_path(relative)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.info(f"remove_download: Already gone - {relative}")


def get_storage() -> LocalStorage:
    return LocalStorage(Path(settings.media_root), Path(settings.downloads_root))
