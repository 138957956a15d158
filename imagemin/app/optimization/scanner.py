"""Incremental discovery of changed images under the content directory."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from itertools import groupby
from pathlib import Path
from typing import Dict, Iterator, List, Tuple

from .control_state import ScanCheckpoint

logger = logging.getLogger(__name__)

IMAGE_PATTERN = re.compile(r"\.(jpg|jpeg|jpe|gif|png)$", re.IGNORECASE)
DEFAULT_LIMIT = 100


@dataclass
class ScanBatch:
    files: List[Tuple[str, str]] = field(default_factory=list)  # (url, relative path)
    checkpoint: ScanCheckpoint = field(default_factory=ScanCheckpoint)
    finished: bool = True
    candidates: int = 0


def _image_mtimes(directory: Path) -> Dict[str, int]:
    """Map file names to integer mtimes for the images directly inside ``directory``."""

    files: Dict[str, int] = {}
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                if not entry.is_file() or not IMAGE_PATTERN.search(entry.name):
                    continue
                try:
                    files[entry.name] = int(entry.stat().st_mtime)
                except OSError:
                    files[entry.name] = 0
    except OSError as exc:
        logger.warning("Skipping unreadable directory %s: %s", directory, exc)
    return files


def _walk(root: Path) -> Iterator[Path]:
    def on_error(exc: OSError) -> None:
        logger.warning("Skipping unreadable directory %s: %s", exc.filename, exc)

    for dirpath, _dirnames, _filenames in os.walk(root, onerror=on_error):
        yield Path(dirpath)


class FileScanner:
    """Compares the source tree with the backup tree to find work."""

    def __init__(
        self,
        source_root: str | Path,
        backup_root: str | Path,
        folder: str,
        content_url: str,
    ) -> None:
        self.source_root = Path(source_root)
        self.backup_root = Path(backup_root)
        self.folder = folder.strip("/")
        self.content_url = content_url.rstrip("/")

    def diff(self, since_mtime: int = 0, create_backup_folders: bool = False) -> Dict[str, int]:
        """Return ``{relative_path: mtime}`` of images that need optimizing.

        A file qualifies when it changed after ``since_mtime`` and has no
        backup copy or one older than itself.
        """

        files: Dict[str, int] = {}
        start = self.source_root / self.folder
        if not start.is_dir():
            logger.warning("Source folder %s does not exist", start)
            return files

        for directory in _walk(start):
            relative_dir = directory.relative_to(self.source_root)
            source_files = {
                name: mtime for name, mtime in _image_mtimes(directory).items() if mtime > since_mtime
            }

            backup_dir = self.backup_root / relative_dir
            if backup_dir.is_dir():
                backup_files = _image_mtimes(backup_dir)
            else:
                backup_files = {}
                if create_backup_folders:
                    try:
                        backup_dir.mkdir(parents=True, exist_ok=True)
                    except OSError as exc:
                        logger.warning("Unable to create backup folder %s: %s", backup_dir, exc)

            for name, mtime in source_files.items():
                backup_mtime = backup_files.get(name)
                if backup_mtime is None or mtime > backup_mtime:
                    files[(relative_dir / name).as_posix()] = mtime

        return files

    def url_for(self, relative_path: str) -> str:
        return f"{self.content_url}/{relative_path}"

    def scan(self, checkpoint: ScanCheckpoint, limit: int = DEFAULT_LIMIT) -> ScanBatch:
        """Emit at most ``limit`` candidates after ``checkpoint``.

        Candidates are ordered by mtime, then by path. An unfinished batch
        returns a checkpoint one second before the last emitted mtime together
        with the last emitted path, which the next call skips past.
        """

        limit = max(limit, 1)
        candidates = self.diff(checkpoint.last_mtime, create_backup_folders=True)
        ordered = sorted(candidates.items(), key=lambda item: (item[1], item[0]))

        batch = ScanBatch(checkpoint=checkpoint, candidates=len(ordered))
        last_mtime = None
        last_path = ""

        for mtime, group in groupby(ordered, key=lambda item: item[1]):
            paths = [path for path, _ in group]
            if (
                checkpoint.last_relative_path
                and mtime == checkpoint.last_mtime + 1
                and checkpoint.last_relative_path in paths
            ):
                paths = paths[paths.index(checkpoint.last_relative_path) + 1:]

            for path in paths:
                if len(batch.files) >= limit:
                    batch.checkpoint = ScanCheckpoint(last_mtime=last_mtime - 1, last_relative_path=last_path)
                    batch.finished = False
                    return batch
                batch.files.append((self.url_for(path), path))
                last_mtime = mtime
                last_path = path

        if last_mtime is not None:
            batch.checkpoint = ScanCheckpoint(last_mtime=last_mtime, last_relative_path="")
        return batch
