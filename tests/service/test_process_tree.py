"""
Tests for service/process_tree.py - wrapper-aware workload resolution.
"""

import logging
from unittest.mock import MagicMock, Mock, patch

import psutil

from serverkeeper.service.process_tree import ProcessRecord, ProcessTable, ProcessTreeResolver
from tests.fixtures.fakes import FakeController, FakeProcessTable

WRAPPERS = ["screen", "tmux: server", "bash"]
WORKLOADS = ["*Server*", "java"]


def make_resolver(table, controller=None):
    return ProcessTreeResolver(
        controller or FakeController(main_pid=100),
        wrapper_names=WRAPPERS,
        workload_names=WORKLOADS,
        table=table
    )


def test_wrapper_resolves_to_workload_child(wrapped_table):
    resolver = make_resolver(wrapped_table)

    resolution = resolver.resolve_tree("palworld")

    assert resolution.service_pid == 100
    assert resolution.wrapper.name == "screen"
    assert resolution.leaf == ProcessRecord(pid=101, name="PalServer-Linux", ppid=100)
    assert resolver.resolve("palworld").pid == 101


def test_non_wrapper_main_process_is_the_leaf():
    table = FakeProcessTable([ProcessRecord(pid=100, name="PalServer-Linux", ppid=1)])
    resolution = make_resolver(table).resolve_tree("palworld")

    assert resolution.wrapper is None
    assert resolution.leaf.pid == 100


def test_ambiguous_children_resolve_to_none(caplog):
    table = FakeProcessTable([
        ProcessRecord(pid=100, name="screen", ppid=1),
        ProcessRecord(pid=101, name="PalServer-Linux", ppid=100),
        ProcessRecord(pid=102, name="java", ppid=100),
    ])
    resolver = make_resolver(table)

    with caplog.at_level(logging.WARNING):
        resolution = resolver.resolve_tree("palworld")

    assert resolution.leaf is None
    assert resolution.wrapper.pid == 100
    assert "Ambiguous workload" in caplog.text


def test_wrapper_without_workload_child():
    table = FakeProcessTable([
        ProcessRecord(pid=100, name="bash", ppid=1),
        ProcessRecord(pid=103, name="sleep", ppid=100),
    ])
    assert make_resolver(table).resolve("palworld") is None


def test_child_that_vanished_after_enumeration():
    table = FakeProcessTable([
        ProcessRecord(pid=100, name="screen", ppid=1),
        ProcessRecord(pid=101, name="PalServer-Linux", ppid=100),
    ])
    table.get = Mock(side_effect=lambda pid: table.records.get(pid) if pid == 100 else None)

    resolution = make_resolver(table).resolve_tree("palworld")

    assert resolution.wrapper is not None
    assert resolution.leaf is None


def test_no_main_pid_when_stopped(wrapped_table):
    from serverkeeper.service.control import ServiceStatus

    resolver = make_resolver(wrapped_table, FakeController(status=ServiceStatus.STOPPED))
    resolution = resolver.resolve_tree("palworld")

    assert resolution.service_pid is None
    assert resolution.leaf is None


def test_name_matching_is_case_insensitive():
    table = FakeProcessTable([
        ProcessRecord(pid=100, name="SCREEN", ppid=1),
        ProcessRecord(pid=101, name="palserver-linux", ppid=100),
    ])
    assert make_resolver(table).resolve("palworld").pid == 101


def test_logs_only_when_leaf_changes(wrapped_table, caplog):
    resolver = make_resolver(wrapped_table)

    with caplog.at_level(logging.INFO, logger="serverkeeper.service.process_tree"):
        resolver.resolve("palworld")
        resolver.resolve("palworld")
        resolver.resolve("palworld")

    found = [r for r in caplog.records if "workload is PalServer-Linux" in r.getMessage()]
    assert len(found) == 1

    caplog.clear()
    wrapped_table.records.pop(101)
    with caplog.at_level(logging.INFO, logger="serverkeeper.service.process_tree"):
        resolver.resolve("palworld")
    assert "workload process not found" in caplog.text


class TestProcessTable:

    def test_get_returns_snapshot(self):
        proc = MagicMock()
        proc.pid = 55
        proc.name.return_value = "java"
        proc.ppid.return_value = 1
        with patch("serverkeeper.service.process_tree.psutil.Process", return_value=proc):
            assert ProcessTable().get(55) == ProcessRecord(pid=55, name="java", ppid=1)

    def test_get_missing_process(self):
        with patch("serverkeeper.service.process_tree.psutil.Process",
                   side_effect=psutil.NoSuchProcess(55)):
            assert ProcessTable().get(55) is None

    def test_children_of_filters_by_parent(self):
        procs = [
            Mock(info={'pid': 10, 'name': 'screen', 'ppid': 1}),
            Mock(info={'pid': 11, 'name': 'PalServer', 'ppid': 10}),
            Mock(info={'pid': 12, 'name': None, 'ppid': 10}),
        ]
        with patch("serverkeeper.service.process_tree.psutil.process_iter", return_value=procs):
            children = ProcessTable().children_of(10)
        assert [c.pid for c in children] == [11, 12]
        assert children[1].name == ""

    def test_kill_already_gone_counts_as_killed(self):
        with patch("serverkeeper.service.process_tree.psutil.Process",
                   side_effect=psutil.NoSuchProcess(55)):
            assert ProcessTable().kill(55) is True

    def test_kill_access_denied(self):
        proc = Mock()
        proc.kill.side_effect = psutil.AccessDenied(55)
        with patch("serverkeeper.service.process_tree.psutil.Process", return_value=proc):
            assert ProcessTable().kill(55) is False
