"""Retention: keep the newest N backups, delete the rest."""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .artifacts import BackupArtifact, human_size, list_artifacts

logger = logging.getLogger(__name__)


@dataclass
class RetentionReport:
    kept: int
    removed: List[BackupArtifact] = field(default_factory=list)
    failed: List[BackupArtifact] = field(default_factory=list)
    freed_bytes: int = 0
    enumerated: bool = True


@dataclass(frozen=True)
class BackupStatistics:
    count: int
    total_bytes: int
    total_human: str
    newest: Optional[BackupArtifact]
    oldest: Optional[BackupArtifact]


class RetentionManager:
    """Enforces a maximum backup count in one backup root."""

    def __init__(self, backup_root: Path):
        self.backup_root = Path(backup_root)

    def list_artifacts(self) -> List[BackupArtifact]:
        """Artifacts sorted newest first. Raises OSError if the root is unreadable."""
        return list_artifacts(self.backup_root)

    def enforce(self, max_backups: int) -> RetentionReport:
        """Delete all but the newest ``max_backups`` artifacts.

        Deletion failures are logged and skipped. Nothing is deleted if the
        root could not be enumerated.
        """
        if max_backups < 0:
            raise ValueError(f"max_backups must be >= 0, got {max_backups}")

        try:
            artifacts = self.list_artifacts()
        except OSError as e:
            logger.error(f"[retention] Cannot list {self.backup_root}: {e}")
            return RetentionReport(kept=0, enumerated=False)

        if len(artifacts) <= max_backups:
            logger.debug(f"[retention] {len(artifacts)} backups, limit {max_backups}: nothing to do")
            return RetentionReport(kept=len(artifacts))

        report = RetentionReport(kept=max_backups)
        for artifact in artifacts[max_backups:]:
            try:
                if artifact.path.is_dir():
                    shutil.rmtree(artifact.path)
                else:
                    artifact.path.unlink()
            except OSError as e:
                logger.warning(f"[retention] Could not delete {artifact.name}: {e}")
                report.failed.append(artifact)
                continue
            report.removed.append(artifact)
            report.freed_bytes += artifact.size_bytes

        report.kept += len(report.failed)
        logger.info(
            f"[retention] Removed {len(report.removed)} backups, freed {report.freed_bytes} bytes. "
            f"({human_size(report.freed_bytes)}, {len(report.failed)} failed)"
        )
        return report

    def statistics(self) -> BackupStatistics:
        try:
            artifacts = self.list_artifacts()
        except OSError as e:
            logger.warning(f"[retention] Cannot list {self.backup_root}: {e}")
            artifacts = []
        total = sum(a.size_bytes for a in artifacts)
        return BackupStatistics(
            count=len(artifacts),
            total_bytes=total,
            total_human=human_size(total),
            newest=artifacts[0] if artifacts else None,
            oldest=artifacts[-1] if artifacts else None
        )
