"""Read-only sanity check of a finished backup."""

import logging
import os
import zipfile
import zlib
from pathlib import Path
from typing import Union

from .artifacts import BackupArtifact

logger = logging.getLogger(__name__)


class IntegrityVerifier:
    """Checks that an archive opens and holds entries, or a directory is non-empty."""

    def verify(self, target: Union[BackupArtifact, Path, str]) -> bool:
        path = Path(target.path if isinstance(target, BackupArtifact) else target)

        if path.is_dir():
            return self._verify_directory(path)
        if path.is_file():
            return self._verify_archive(path)

        logger.error(f"[verify] {path} does not exist")
        return False

    def _verify_archive(self, path: Path) -> bool:
        try:
            with zipfile.ZipFile(path, "r") as archive:
                entries = len(archive.infolist())
                bad = archive.testzip()
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError, ValueError, zlib.error) as e:
            logger.error(f"[verify] {path.name} is unreadable: {e}")
            return False

        if bad is not None:
            logger.error(f"[verify] {path.name}: corrupt entry {bad}")
            return False
        if entries == 0:
            logger.error(f"[verify] {path.name} contains no entries")
            return False

        logger.info(f"[verify] {path.name} OK ({entries} entries)")
        return True

    def _verify_directory(self, path: Path) -> bool:
        items = 0
        for _dirpath, dirnames, filenames in os.walk(path):
            items += len(dirnames) + len(filenames)
        if items == 0:
            logger.error(f"[verify] {path.name} is empty")
            return False
        logger.info(f"[verify] {path.name} OK ({items} items)")
        return True
