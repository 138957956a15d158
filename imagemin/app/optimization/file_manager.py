"""Filesystem side of the pipeline: temp download, backup and swap-in."""
from __future__ import annotations

import enum
import logging
import os
import shutil
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from ..core.config import Settings
from ..models import ImageFormat

logger = logging.getLogger(__name__)


class SaveOutcome(str, enum.Enum):
    REPLACED = "replaced"
    KEPT_ORIGINAL = "kept_original"
    CREATED = "created"


class FileManagerError(Exception):
    """Raised when an optimized image cannot be put in place."""

    def __init__(self, code: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data or {}


class FileManager:
    def __init__(self, content_dir: str | Path, content_url: str, download_dir: str | Path, backup_dir: str | Path) -> None:
        self.content_dir = Path(content_dir)
        self.content_url = content_url
        self.download_dir = Path(download_dir)
        self.backup_dir = Path(backup_dir)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FileManager":
        return cls(settings.CONTENT_DIR, settings.CONTENT_URL, settings.DOWNLOAD_DIR, settings.BACKUP_DIR)

    # Directories

    def create_dirs(self) -> None:
        for path in (self.backup_dir, self.download_dir):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.warning("Unable to create directory %s: %s", path, exc)

    def backup_dir_available(self) -> bool:
        return self.backup_dir.is_dir() and os.access(self.backup_dir, os.W_OK)

    def download_dir_available(self) -> bool:
        return self.download_dir.is_dir() and os.access(self.download_dir, os.W_OK)

    def dirs_available(self) -> bool:
        return self.backup_dir_available() and self.download_dir_available()

    # Paths

    def relative_path(self, url: str) -> str:
        """Path of ``url`` relative to the content directory."""

        path = urlparse(url).path
        prefix = urlparse(self.content_url).path.rstrip("/")
        if path.startswith(prefix + "/"):
            path = path[len(prefix):]
        return path.lstrip("/")

    def original_path(self, url: str) -> Path:
        return self.content_dir / self._checked(self.relative_path(url))

    def original_file_exists(self, url: str) -> bool:
        return self.original_path(url).is_file()

    # Saving

    def save_image(self, url: str, format: str, content: bytes) -> SaveOutcome:
        """Swap the optimized ``content`` in for the image behind ``url``.

        The original is moved to the backup tree first and both files keep the
        original mtime, so the scanner does not pick the result up again. A
        download larger than the original is discarded.
        """

        relative = self._checked(self.relative_path(url))
        if format != ImageFormat.ORIGINAL.value:
            relative = f"{relative}.{format.lower()}"

        downloaded = self.download_dir / relative
        target = self.content_dir / relative
        backup = self.backup_dir / relative

        self._mkdir(downloaded.parent, "image_minification_temp_folder_creation_failure")
        try:
            downloaded.write_bytes(content)
        except OSError as exc:
            raise FileManagerError(
                "image_minification_file_save_failure",
                "Unable to save the minified image in temporary folder.",
                {"path": str(downloaded), "error": str(exc)},
            ) from exc

        if not target.exists():
            self._mkdir(target.parent, "image_minification_uploads_folder_creation_failure")
            self._move(downloaded, target, "image_minification_replace_failure")
            return SaveOutcome.CREATED

        stat = target.stat()
        if downloaded.stat().st_size > stat.st_size:
            logger.debug(
                "Original image %s (%d bytes) is smaller than the minified one (%d bytes); skipping",
                target,
                stat.st_size,
                downloaded.stat().st_size,
            )
            downloaded.unlink()
            return SaveOutcome.KEPT_ORIGINAL

        self._mkdir(backup.parent, "image_minification_backup_folder_creation_failure")
        self._move(target, backup, "image_minification_backup_failure")
        self._keep_mtime(backup, stat, "image_minification_backup_failure")

        try:
            self._move(downloaded, target, "image_minification_replace_failure")
        except FileManagerError:
            logger.warning("Restoring %s from backup after a failed replace", target)
            self._move(backup, target, "image_minification_restore_failure")
            raise
        self._keep_mtime(target, stat, "image_minification_replace_failure")
        return SaveOutcome.REPLACED

    def _checked(self, relative: str) -> str:
        if ".." in PurePosixPath(relative).parts:
            raise FileManagerError(
                "image_minification_invalid_path",
                "The image path points outside of the content directory.",
                {"path": relative},
            )
        return relative

    def _mkdir(self, path: Path, code: str) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FileManagerError(code, "The destination folder could not be created.", {"dir": str(path)}) from exc

    def _keep_mtime(self, path: Path, stat: os.stat_result, code: str) -> None:
        try:
            os.utime(path, (stat.st_atime, stat.st_mtime))
        except OSError as exc:
            raise FileManagerError(
                code, "Unable to preserve the image modification time.", {"path": str(path), "error": str(exc)}
            ) from exc

    def _move(self, source: Path, destination: Path, code: str) -> None:
        try:
            shutil.move(str(source), str(destination))
        except OSError as exc:
            raise FileManagerError(
                code,
                "Unable to move the image into place.",
                {"source": str(source), "destination": str(destination), "error": str(exc)},
            ) from exc
