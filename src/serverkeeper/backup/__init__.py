"""Backups of the live save directory: tiered pipeline, retention, verification."""

from .artifacts import BackupArtifact, list_artifacts, human_size
from .pipeline import BackupPipeline, BackupResult
from .retention import RetentionManager, RetentionReport, BackupStatistics
from .integrity import IntegrityVerifier
from .lock import BackupInProgress

__all__ = [
    "BackupArtifact",
    "list_artifacts",
    "human_size",
    "BackupPipeline",
    "BackupResult",
    "RetentionManager",
    "RetentionReport",
    "BackupStatistics",
    "IntegrityVerifier",
    "BackupInProgress",
]
