"""
Archive a local directory tree into the staging directory.

Archives are named ``backup-YYYYmmdd-HHMMSS.zip`` and hold every regular file
of the source tree under its path relative to the tree root.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional
from zipfile import ZIP_DEFLATED, ZipFile


ARCHIVE_PREFIX = "backup-"
ARCHIVE_SUFFIX = ".zip"
ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
UPLOAD_STATE_SUFFIX = ".upload.json"
UPLOAD_STATE_TEMP_SUFFIX = UPLOAD_STATE_SUFFIX + ".tmp"

logger = logging.getLogger(__name__)


class LocalIOError(Exception):
    """Raised when the source tree or the staging directory cannot be used."""


def archive_name(timestamp: Optional[datetime] = None) -> str:
    stamp = (timestamp or datetime.now()).strftime(ARCHIVE_TIMESTAMP_FORMAT)
    return f"{ARCHIVE_PREFIX}{stamp}{ARCHIVE_SUFFIX}"


def iter_source_files(source_dir: Path) -> Iterable[Path]:
    for root, dirs, files in os.walk(source_dir):
        dirs.sort()
        for filename in sorted(files):
            path = Path(root) / filename
            if path.is_file():
                yield path


def create_archive(
    source_dir: Path,
    staging_dir: Path,
    timestamp: Optional[datetime] = None,
) -> Path:
    """Zip ``source_dir`` into ``staging_dir`` and return the archive path.

    A partially written archive is removed before the error is raised.
    """
    source_dir = source_dir.expanduser().resolve()
    if not source_dir.is_dir():
        raise LocalIOError(f"Source directory {source_dir} does not exist.")

    try:
        staging_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise LocalIOError(
            f"Could not create staging directory {staging_dir}: {error}"
        ) from error

    zip_path = staging_dir / archive_name(timestamp)
    logger.info("Archiving %s into %s", source_dir, zip_path)

    file_count = 0
    try:
        with ZipFile(
            zip_path, mode="w", compression=ZIP_DEFLATED, strict_timestamps=False
        ) as zip_file:
            for path in iter_source_files(source_dir):
                zip_file.write(path, path.relative_to(source_dir).as_posix())
                file_count += 1
    except (OSError, ValueError) as error:
        zip_path.unlink(missing_ok=True)
        raise LocalIOError(f"Failed to archive {source_dir}: {error}") from error

    logger.info(
        "Archived %d file(s) into %s (%d bytes)",
        file_count,
        zip_path.name,
        zip_path.stat().st_size,
    )
    return zip_path


def staged_archives(staging_dir: Path) -> List[Path]:
    if not staging_dir.is_dir():
        return []
    return sorted(
        path
        for path in staging_dir.glob(f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}")
        if path.is_file()
    )


def find_staged_archive(staging_dir: Path, name: str) -> Optional[Path]:
    candidate = staging_dir / name
    if candidate.is_file():
        return candidate
    return None


def clear_staging(staging_dir: Path) -> List[Path]:
    """Delete staged archives and upload state files, returning what was removed."""
    removed: List[Path] = []
    if not staging_dir.is_dir():
        return removed

    candidates = staged_archives(staging_dir)
    for suffix in (UPLOAD_STATE_SUFFIX, UPLOAD_STATE_TEMP_SUFFIX):
        candidates.extend(sorted(staging_dir.glob(f"*{suffix}")))
    for path in candidates:
        logger.debug("Removing staged file %s", path)
        try:
            path.unlink(missing_ok=True)
        except OSError as error:
            raise LocalIOError(f"Could not remove staged file {path}: {error}") from error
        removed.append(path)
    return removed
