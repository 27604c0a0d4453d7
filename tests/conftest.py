"""Pytest configuration for serverkeeper tests.

Puts ``src/`` on the import path. Fakes for systemd, the process table and
the journal live in tests/fixtures/fakes.py so no test touches real services
or processes.
"""

import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from serverkeeper.service.process_tree import ProcessRecord  # noqa: E402
from tests.fixtures.fakes import FakeController, FakeProcessTable  # noqa: E402


@pytest.fixture
def fake_controller():
    return FakeController()


@pytest.fixture
def wrapped_table():
    """screen (100) hosting the game server (101) plus an unrelated helper."""
    return FakeProcessTable([
        ProcessRecord(pid=100, name="screen", ppid=1),
        ProcessRecord(pid=101, name="PalServer-Linux", ppid=100),
        ProcessRecord(pid=102, name="logger", ppid=100),
    ])


@pytest.fixture
def data_dir(tmp_path):
    """A small live save directory with a primary log."""
    root = tmp_path / "server"
    (root / "saves" / "world").mkdir(parents=True)
    (root / "logs").mkdir()
    (root / "saves" / "world" / "level.dat").write_bytes(b"level" * 100)
    (root / "saves" / "world" / "players.dat").write_bytes(b"players" * 50)
    (root / "saves" / "settings.ini").write_text("[server]\nname=test\n")
    (root / "server.cfg").write_text("port=8211\n")
    (root / "banlist.txt").write_text("")
    (root / "logs" / "server.log").write_text("Server started\n")
    return root


def pytest_configure(config):
    os.environ.setdefault("SKR_CONFIG", "/nonexistent/serverkeeper.yaml")
