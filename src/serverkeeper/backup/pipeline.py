"""
Tiered backup of a live game-server data directory.

The server keeps writing while we copy, so files vanish or stay locked
mid-run. Each tier assumes less about the source than the last:

  1. Snapshot the file list, copy into staging, skip files that vanish or
     are locked, then zip the staging directory.
  2. Let rsync copy the tree (it tolerates vanished files itself), then zip.
  3. Copy top-level entries one by one, suppressing any per-entry error,
     then zip whatever arrived.

A tier that collects nothing, or fails outright, hands over to the next one.
"""

import errno
import logging
import os
import shutil
import subprocess
import tempfile
import time
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from ..events import BACKUP_COMPLETED, BACKUP_FAILED, mk_event
from . import lock
from .artifacts import (
    ARCHIVE_SUFFIX, PARTIAL_SUFFIX, PREFIX, BackupArtifact, artifact_from_path,
    human_size, new_artifact_id,
)
from .integrity import IntegrityVerifier
from .retention import RetentionManager

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".staging-"
RSYNC_TIMEOUT_S = 3600
# rsync exit 24: some source files vanished before they could be transferred
RSYNC_OK_CODES = (0, 24)

_TRANSIENT_ERRNOS = {errno.ENOENT, errno.EACCES, errno.EPERM, errno.EBUSY, errno.EAGAIN, errno.ETXTBSY}
_TRANSIENT_TYPES = (FileNotFoundError, PermissionError, BlockingIOError)


class TierFailed(Exception):
    """A backup tier could not produce an artifact."""


@dataclass
class BackupResult:
    success: bool
    artifact: Optional[BackupArtifact] = None
    tier: Optional[int] = None
    files: int = 0
    duration_s: float = 0.0
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.success


def _count_files(root: Path) -> int:
    return sum(len(filenames) for _dirpath, _dirnames, filenames in os.walk(root))


class BackupPipeline:
    """Produces one backup artifact per run, degrading through tiers."""

    def __init__(
        self,
        source_path: Path,
        backup_root: Path,
        exclude: Iterable[str] = (),
        notifier=None,
        retention: Optional[RetentionManager] = None,
        verifier: Optional[IntegrityVerifier] = None,
        compress_default: bool = True,
        bulk_copy_command: str = "rsync",
        copy_file: Callable = shutil.copy2,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize pipeline.

        Args:
            source_path: Live data directory to back up
            backup_root: Directory receiving artifacts
            exclude: Paths relative to source_path to skip (the live log)
            notifier: Notifier receiving backup.completed / backup.failed
            retention: RetentionManager for backup_root
            verifier: IntegrityVerifier run on each new archive
            compress_default: Mode used when run() is not told otherwise
            bulk_copy_command: rsync binary for tier 2
            copy_file: Single-file copy function
            clock: Monotonic clock for durations
        """
        self.source = Path(source_path)
        self.backup_root = Path(backup_root)
        self.exclude = {Path(p).as_posix().strip("/") for p in exclude}
        self.notifier = notifier
        self.retention = retention or RetentionManager(self.backup_root)
        self.verifier = verifier or IntegrityVerifier()
        self.compress_default = compress_default
        self.bulk_copy_command = bulk_copy_command
        self.copy_file = copy_file
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, compress: Optional[bool] = None, max_backups: Optional[int] = None) -> BackupResult:
        """Run one backup. Never raises.

        Args:
            compress: Zip through staging (True) or copy the tree directly
                (False); None uses compress_default
            max_backups: Apply retention after success when > 0
        """
        started = self._clock()
        compress = self.compress_default if compress is None else compress

        if max_backups is not None and max_backups < 0:
            return self._fail(f"max_backups must be >= 0, got {max_backups}", started)

        if not self.source.is_dir():
            return self._fail(f"source directory {self.source} does not exist", started)

        try:
            gate = lock.acquire(self.backup_root)
        except lock.BackupInProgress as e:
            logger.warning(f"[backup] Skipping: {e}")
            return BackupResult(success=False, error=str(e), duration_s=self._clock() - started)
        except OSError as e:
            return self._fail(f"cannot prepare backup root {self.backup_root}: {e}", started)

        with gate:
            logger.info(f"[backup] Starting {'compressed' if compress else 'uncompressed'} backup of {self.source}")
            if compress:
                result = self._run_tiers(started)
            else:
                result = self._run_uncompressed(started)

        if not result.success:
            return self._fail(result.error or "unknown error", started)

        artifact = result.artifact
        logger.info(
            f"[backup] Backup complete: {artifact.name} ({human_size(artifact.size_bytes)}, "
            f"{result.files} files, tier {result.tier}, {result.duration_s:.1f}s)"
        )
        self._notify(mk_event(
            "backup", BACKUP_COMPLETED,
            path=str(artifact.path),
            size_bytes=artifact.size_bytes,
            size_human=human_size(artifact.size_bytes),
            files=result.files,
            tier=result.tier,
            compressed=artifact.compressed,
            duration_s=round(result.duration_s, 1)
        ))

        if max_backups:
            try:
                self.retention.enforce(max_backups)
            except (ValueError, OSError) as e:
                logger.warning(f"[backup] Retention after {artifact.name} failed: {e}")
        return result

    # ------------------------------------------------------------------
    # Compressed mode
    # ------------------------------------------------------------------

    def _run_tiers(self, started: float) -> BackupResult:
        tiers = [
            (1, self._tier_snapshot_copy),
            (2, self._tier_bulk_copy),
            (3, self._tier_per_entry_copy),
        ]
        errors: List[str] = []
        for number, collect in tiers:
            try:
                with tempfile.TemporaryDirectory(prefix=STAGING_PREFIX, dir=self.backup_root) as staging:
                    staging_path = Path(staging)
                    collect(staging_path)
                    files = _count_files(staging_path)
                    if files == 0:
                        raise TierFailed("no files collected")
                    artifact = self._compress(staging_path)
            except Exception as e:
                logger.warning(f"[backup] Tier {number} failed: {e}")
                errors.append(f"tier {number}: {e}")
                continue

            return BackupResult(
                success=True,
                artifact=artifact,
                tier=number,
                files=files,
                duration_s=self._clock() - started
            )

        return BackupResult(success=False, error="all tiers failed (" + "; ".join(errors) + ")")

    def _tier_snapshot_copy(self, staging: Path) -> None:
        """Tier 1: list every file up front, then copy, skipping vanished/locked files."""
        files = [p for p in self.source.rglob("*") if not self._is_excluded(p) and p.is_file()]
        skipped = 0
        for src in files:
            dest = staging / src.relative_to(self.source)
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                self.copy_file(src, dest)
            except OSError as e:
                if not isinstance(e, _TRANSIENT_TYPES) and e.errno not in _TRANSIENT_ERRNOS:
                    raise
                skipped += 1
                logger.warning(f"[backup] Skipped {src.relative_to(self.source)}: {e.strerror or e}")
        if skipped:
            logger.info(f"[backup] Tier 1 skipped {skipped} of {len(files)} files")

    def _tier_bulk_copy(self, staging: Path) -> None:
        """Tier 2: rsync the tree in one pass, no retries."""
        cmd = [self.bulk_copy_command, "-a", "--no-whole-file"]
        for rel in sorted(self.exclude):
            cmd += ["--exclude", "/" + rel]
        try:
            nested = self.backup_root.relative_to(self.source).as_posix()
            cmd += ["--exclude", "/" + nested]
        except ValueError:
            pass
        cmd += [f"{self.source}/", f"{staging}/"]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=RSYNC_TIMEOUT_S)
        except FileNotFoundError:
            raise TierFailed(f"{self.bulk_copy_command} not installed")
        except subprocess.TimeoutExpired:
            raise TierFailed(f"{self.bulk_copy_command} timed out after {RSYNC_TIMEOUT_S}s")

        if result.returncode not in RSYNC_OK_CODES:
            raise TierFailed(f"{self.bulk_copy_command} exited {result.returncode}: {result.stderr.strip()[:200]}")
        if result.returncode == 24:
            logger.info("[backup] Tier 2: some files vanished during copy")

    def _tier_per_entry_copy(self, staging: Path) -> None:
        """Tier 3: copy each top-level entry on its own, never aborting on one."""
        self._copy_entries(self.source, staging)

    def _copy_entries(self, source: Path, dest_root: Path) -> None:
        with os.scandir(source) as entries:
            names = [entry.name for entry in entries]

        for name in names:
            src = source / name
            dest = dest_root / name
            if self._is_excluded(src):
                continue
            try:
                if src.is_dir():
                    shutil.copytree(src, dest, ignore=self._ignore, copy_function=self.copy_file,
                                    dirs_exist_ok=True)
                else:
                    self.copy_file(src, dest)
            except shutil.Error as e:
                # copytree copied what it could and collected per-file errors
                logger.warning(f"[backup] {name}: {len(e.args[0]) if e.args else 0} entries failed to copy")
            except Exception as e:
                logger.warning(f"[backup] Skipped {name}: {e}")

    def _compress(self, staging: Path) -> BackupArtifact:
        artifact_id = new_artifact_id(self.backup_root, datetime.now())
        final = self.backup_root / f"{PREFIX}{artifact_id}{ARCHIVE_SUFFIX}"
        partial = final.with_name(final.name + PARTIAL_SUFFIX)

        try:
            with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for dirpath, _dirnames, filenames in os.walk(staging):
                    for filename in sorted(filenames):
                        full = Path(dirpath) / filename
                        archive.write(full, full.relative_to(staging).as_posix())
            if not self.verifier.verify(partial):
                raise TierFailed("archive failed verification")
            os.replace(partial, final)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        artifact = artifact_from_path(final)
        if artifact is None:
            raise TierFailed(f"archive {final.name} missing after write")
        return artifact

    # ------------------------------------------------------------------
    # Uncompressed mode
    # ------------------------------------------------------------------

    def _run_uncompressed(self, started: float) -> BackupResult:
        artifact_id = new_artifact_id(self.backup_root, datetime.now())
        final = self.backup_root / f"{PREFIX}{artifact_id}"
        partial = final.with_name(final.name + PARTIAL_SUFFIX)

        try:
            partial.mkdir(parents=True)
            self._copy_entries(self.source, partial)
            files = _count_files(partial)
            if files == 0:
                raise TierFailed("no files collected")
            os.replace(partial, final)
        except Exception as e:
            shutil.rmtree(partial, ignore_errors=True)
            return BackupResult(success=False, error=f"direct copy failed: {e}")

        artifact = artifact_from_path(final)
        return BackupResult(
            success=artifact is not None,
            artifact=artifact,
            tier=0,
            files=files,
            duration_s=self._clock() - started,
            error=None if artifact else f"{final.name} missing after copy"
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_excluded(self, path: Path) -> bool:
        try:
            rel = path.relative_to(self.source).as_posix()
        except ValueError:
            return False
        if rel in self.exclude:
            return True
        # Backup root nested inside the source tree
        try:
            path.relative_to(self.backup_root)
            return True
        except ValueError:
            return False

    def _ignore(self, directory: str, names: List[str]) -> List[str]:
        return [name for name in names if self._is_excluded(Path(directory) / name)]

    def _fail(self, error: str, started: float) -> BackupResult:
        duration = self._clock() - started
        logger.error(f"[backup] Backup failed after {duration:.1f}s: {error}")
        self._notify(mk_event(
            "backup", BACKUP_FAILED, severity="error",
            error=error,
            duration_s=round(duration, 1)
        ))
        return BackupResult(success=False, error=error, duration_s=duration)

    def _notify(self, event) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event)
        except Exception as e:
            logger.warning(f"[backup] Notification {event.kind} failed: {e}")
