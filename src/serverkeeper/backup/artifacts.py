"""Backup artifact naming, enumeration and sizing."""

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

PREFIX = "backup_"
ARCHIVE_SUFFIX = ".zip"
PARTIAL_SUFFIX = ".partial"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

ARTIFACT_PATTERN = re.compile(r"^backup_(?P<id>\d{8}_\d{6}(?:_\d+)?)(?P<zip>\.zip)?$")


@dataclass(frozen=True)
class BackupArtifact:
    """One finished backup on disk (archive file or directory)."""
    id: str
    path: Path
    size_bytes: int
    compressed: bool
    created_at: datetime

    @property
    def name(self) -> str:
        return self.path.name


def new_artifact_id(root: Path, now: Optional[datetime] = None) -> str:
    """Timestamp id unique within ``root``."""
    base = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    candidate = base
    n = 1
    while any((root / f"{PREFIX}{candidate}{suffix}").exists()
              for suffix in ("", ARCHIVE_SUFFIX, ARCHIVE_SUFFIX + PARTIAL_SUFFIX)):
        candidate = f"{base}_{n}"
        n += 1
    return candidate


def path_size(path: Path) -> int:
    """Size of a file, or total size of files below a directory."""
    if path.is_file():
        return path.stat().st_size
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for filename in filenames:
            try:
                total += os.path.getsize(os.path.join(dirpath, filename))
            except OSError:
                continue
    return total


def artifact_from_path(path: Path) -> Optional[BackupArtifact]:
    """BackupArtifact for a path following the naming convention, else None."""
    match = ARTIFACT_PATTERN.match(path.name)
    if not match:
        return None
    compressed = bool(match.group("zip"))
    if compressed and not path.is_file():
        return None
    if not compressed and not path.is_dir():
        return None
    stat = path.stat()
    return BackupArtifact(
        id=match.group("id"),
        path=path,
        size_bytes=path_size(path),
        compressed=compressed,
        created_at=datetime.fromtimestamp(stat.st_mtime)
    )


def list_artifacts(root: Path) -> List[BackupArtifact]:
    """Artifacts under ``root``, newest first.

    Raises:
        OSError: If the root cannot be listed
    """
    artifacts = []
    for entry in Path(root).iterdir():
        try:
            artifact = artifact_from_path(entry)
        except OSError as e:
            # Vanished or unreadable between listing and stat
            logger.debug(f"[artifacts] Skipping {entry}: {e}")
            continue
        if artifact is not None:
            artifacts.append(artifact)
    artifacts.sort(key=lambda a: (a.created_at, a.id), reverse=True)
    return artifacts


def human_size(num_bytes: float) -> str:
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(num_bytes) < 1024 or unit == "TB":
            return f"{num_bytes:.0f} {unit}" if unit == "B" else f"{num_bytes:.2f} {unit}"
        num_bytes /= 1024
    return f"{num_bytes:.2f} TB"
