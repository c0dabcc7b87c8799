from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
import logging
import os
import re
import tarfile

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "kubebackup_"
ARCHIVE_SUFFIX = ".tar.gz"
ARCHIVE_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
_ARCHIVE_NAME_PATTERN = re.compile(r"^kubebackup_(\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2})\.tar\.gz$")


class ArchiveError(RuntimeError):
    """Raised when the backup tree cannot be archived."""


def archive_name(timestamp: datetime | None = None) -> str:
    moment = timestamp or datetime.now(tz=UTC)
    return f"{ARCHIVE_PREFIX}{moment.strftime(ARCHIVE_TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def parse_archive_timestamp(name: str) -> datetime | None:
    match = _ARCHIVE_NAME_PATTERN.match(Path(name).name)
    if match is None:
        return None
    return datetime.strptime(match.group(1), ARCHIVE_TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def create_archive(src_dir: Path, archive_path: Path) -> Path:
    """Write ``src_dir`` to a gzip-compressed tarball at ``archive_path``.

    Entries are added in lexical path order, directories included, named by
    their path relative to ``src_dir``. The archive never contains itself.
    Any failure removes the partial file: an incomplete archive is never left
    behind for upload.
    """
    if not src_dir.is_dir():
        raise ArchiveError(f"backup tree does not exist: {src_dir}")

    logger.info("Creating tarball at: %s", archive_path)
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    resolved_archive = archive_path.resolve()
    try:
        with tarfile.open(archive_path, mode="w:gz") as tar:
            for path in _walk_sorted(src_dir):
                if path.resolve() == resolved_archive:
                    continue
                arcname = path.relative_to(src_dir).as_posix()
                tar.add(path, arcname=arcname, recursive=False)
    except Exception as error:
        archive_path.unlink(missing_ok=True)
        raise ArchiveError(f"error creating tarball from {src_dir}: {error}") from error

    logger.info("Successfully created tarball: %s", archive_path)
    return archive_path


def _walk_sorted(root: Path) -> list[Path]:
    entries: list[Path] = []

    def _raise(error: OSError) -> None:
        raise error

    for current, dirnames, filenames in os.walk(root, onerror=_raise):
        dirnames.sort()
        current_path = Path(current)
        entries.extend(current_path / name for name in dirnames)
        entries.extend(current_path / name for name in filenames)
    return sorted(entries, key=lambda item: item.relative_to(root).as_posix())
