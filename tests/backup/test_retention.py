"""
Tests for backup/retention.py and artifact enumeration.
"""

import logging
import os
import time
import zipfile
from pathlib import Path
from unittest.mock import patch

import pytest

from serverkeeper.backup.artifacts import human_size, list_artifacts, new_artifact_id
from serverkeeper.backup.retention import RetentionManager


def make_artifacts(root: Path, count: int, compressed: bool = True):
    """``count`` artifacts with strictly ascending mtimes (index 0 is oldest)."""
    root.mkdir(parents=True, exist_ok=True)
    base = time.time() - count * 3600
    paths = []
    for i in range(count):
        artifact_id = f"20240101_{i:06d}"
        if compressed:
            path = root / f"backup_{artifact_id}.zip"
            with zipfile.ZipFile(path, "w") as archive:
                archive.writestr("saves/level.dat", b"x" * (100 + i))
        else:
            path = root / f"backup_{artifact_id}"
            (path / "saves").mkdir(parents=True)
            (path / "saves" / "level.dat").write_bytes(b"x" * (100 + i))
        stamp = base + i * 3600
        os.utime(path, (stamp, stamp))
        paths.append(path)
    return paths


@pytest.fixture
def backup_root(tmp_path):
    return tmp_path / "backups"


def test_removes_oldest_beyond_limit(backup_root, caplog):
    paths = make_artifacts(backup_root, 12)
    oldest_two = paths[:2]
    expected_freed = sum(p.stat().st_size for p in oldest_two)

    with caplog.at_level(logging.INFO, logger="serverkeeper.backup.retention"):
        report = RetentionManager(backup_root).enforce(10)

    assert sorted(a.path for a in report.removed) == sorted(oldest_two)
    assert not any(p.exists() for p in oldest_two)
    assert all(p.exists() for p in paths[2:])
    assert report.kept == 10
    assert report.freed_bytes == expected_freed
    assert f"Removed 2 backups, freed {expected_freed} bytes." in caplog.text


def test_within_limit_is_noop(backup_root):
    paths = make_artifacts(backup_root, 5)

    report = RetentionManager(backup_root).enforce(10)

    assert report.removed == []
    assert report.kept == 5
    assert all(p.exists() for p in paths)


def test_zero_removes_everything(backup_root):
    make_artifacts(backup_root, 3)
    report = RetentionManager(backup_root).enforce(0)
    assert len(report.removed) == 3
    assert list_artifacts(backup_root) == []


def test_negative_limit_rejected(backup_root):
    backup_root.mkdir()
    with pytest.raises(ValueError):
        RetentionManager(backup_root).enforce(-1)


def test_directory_artifacts_are_removed(backup_root):
    paths = make_artifacts(backup_root, 3, compressed=False)
    report = RetentionManager(backup_root).enforce(1)
    assert len(report.removed) == 2
    assert paths[2].is_dir()
    assert not paths[0].exists()


def test_failed_deletion_is_skipped(backup_root):
    paths = make_artifacts(backup_root, 4)
    real_unlink = Path.unlink

    def flaky_unlink(self, *args, **kwargs):
        if self == paths[0]:
            raise PermissionError(13, "Permission denied", str(self))
        return real_unlink(self, *args, **kwargs)

    with patch.object(Path, "unlink", flaky_unlink):
        report = RetentionManager(backup_root).enforce(2)

    assert [a.path for a in report.failed] == [paths[0]]
    assert [a.path for a in report.removed] == [paths[1]]
    assert paths[0].exists()
    assert report.kept == 3


def test_unlistable_root_deletes_nothing(tmp_path):
    report = RetentionManager(tmp_path / "missing").enforce(1)
    assert report.enumerated is False
    assert report.removed == []


def test_non_artifacts_are_ignored(backup_root):
    make_artifacts(backup_root, 2)
    (backup_root / "notes.txt").write_text("keep me")
    (backup_root / ".serverkeeper-backup.lock").write_text("{}")
    (backup_root / "backup_20240101_000009.zip.partial").write_bytes(b"half")

    RetentionManager(backup_root).enforce(0)

    assert (backup_root / "notes.txt").exists()
    assert (backup_root / "backup_20240101_000009.zip.partial").exists()


def test_statistics(backup_root):
    paths = make_artifacts(backup_root, 3)

    stats = RetentionManager(backup_root).statistics()

    assert stats.count == 3
    assert stats.total_bytes == sum(p.stat().st_size for p in paths)
    assert stats.newest.path == paths[-1]
    assert stats.oldest.path == paths[0]
    assert stats.total_human == human_size(stats.total_bytes)


def test_statistics_empty_root(tmp_path):
    stats = RetentionManager(tmp_path / "missing").statistics()
    assert stats.count == 0
    assert stats.newest is None


def test_new_artifact_id_is_unique(backup_root):
    from datetime import datetime

    backup_root.mkdir()
    now = datetime(2024, 5, 14, 3, 0, 0)
    (backup_root / "backup_20240514_030000.zip").write_bytes(b"")
    (backup_root / "backup_20240514_030000_1").mkdir()

    assert new_artifact_id(backup_root, now) == "20240514_030000_2"


@pytest.mark.parametrize("size,expected", [
    (512, "512 B"),
    (2048, "2.00 KB"),
    (5 * 1024 ** 3, "5.00 GB"),
])
def test_human_size(size, expected):
    assert human_size(size) == expected
