"""
Tests for service/control.py - systemctl wrapper.
"""

import subprocess
from unittest.mock import Mock, patch

import pytest

from serverkeeper.service.control import (
    ControlResult, FailureKind, ServiceController, ServiceStatus, classify_failure,
)


def completed(stdout="", stderr="", returncode=0):
    return Mock(stdout=stdout, stderr=stderr, returncode=returncode)


def systemctl_stub(active="active", load_state="loaded", main_pid="4242", mutate=None):
    """Answer systemctl queries from canned values; mutating calls go to ``mutate``."""
    def run(cmd, **kwargs):
        args = cmd[cmd.index("systemctl") + 1:]
        verb = args[0]
        if verb == "is-active":
            return completed(stdout=active + "\n", returncode=0 if active == "active" else 3)
        if verb == "show":
            prop = args[2].split("=", 1)[1]
            return completed(stdout={"LoadState": load_state, "MainPID": main_pid}[prop] + "\n")
        if mutate is not None:
            return mutate(cmd)
        return completed()
    return run


@pytest.fixture
def controller():
    return ServiceController(use_sudo=True)


class TestStatus:

    def test_running(self, controller):
        with patch("serverkeeper.service.control.subprocess.run", side_effect=systemctl_stub()):
            assert controller.status("palworld") == ServiceStatus.RUNNING
            assert controller.is_running("palworld") is True

    def test_stopped_unit(self, controller):
        with patch("serverkeeper.service.control.subprocess.run", side_effect=systemctl_stub(active="inactive")):
            assert controller.status("palworld") == ServiceStatus.STOPPED

    def test_unknown_unit_is_not_running(self, controller):
        stub = systemctl_stub(active="inactive", load_state="not-found", main_pid="0")
        with patch("serverkeeper.service.control.subprocess.run", side_effect=stub):
            assert controller.status("no-such-unit") == ServiceStatus.NOT_FOUND
            assert controller.is_running("no-such-unit") is False
            assert controller.exists("no-such-unit") is False

    def test_transitional_state_is_unknown(self, controller):
        with patch("serverkeeper.service.control.subprocess.run", side_effect=systemctl_stub(active="activating")):
            assert controller.status("palworld") == ServiceStatus.UNKNOWN

    def test_missing_systemctl_is_not_running(self, controller):
        with patch("serverkeeper.service.control.subprocess.run", side_effect=FileNotFoundError("systemctl")):
            assert controller.is_running("palworld") is False

    def test_timeout_is_unknown(self, controller):
        with patch("serverkeeper.service.control.subprocess.run",
                   side_effect=subprocess.TimeoutExpired("systemctl", 5)):
            assert controller.status("palworld") == ServiceStatus.UNKNOWN

    def test_main_pid(self, controller):
        with patch("serverkeeper.service.control.subprocess.run", side_effect=systemctl_stub(main_pid="4242")):
            assert controller.main_pid("palworld") == 4242

    def test_main_pid_zero_is_none(self, controller):
        with patch("serverkeeper.service.control.subprocess.run", side_effect=systemctl_stub(main_pid="0")):
            assert controller.main_pid("palworld") is None


class TestStartStop:

    def test_start_is_noop_when_running(self, controller):
        mutate = Mock(return_value=completed())
        with patch("serverkeeper.service.control.subprocess.run", side_effect=systemctl_stub(mutate=mutate)):
            result = controller.start("palworld")
        assert result.ok and result.noop
        mutate.assert_not_called()

    def test_stop_is_noop_when_stopped(self, controller):
        mutate = Mock(return_value=completed())
        with patch("serverkeeper.service.control.subprocess.run",
                   side_effect=systemctl_stub(active="inactive", mutate=mutate)):
            result = controller.stop("palworld")
        assert result.ok and result.noop
        mutate.assert_not_called()

    def test_start_uses_sudo(self, controller):
        mutate = Mock(return_value=completed())
        with patch("serverkeeper.service.control.subprocess.run",
                   side_effect=systemctl_stub(active="inactive", mutate=mutate)):
            result = controller.start("palworld")
        assert result.ok and not result.noop
        cmd = mutate.call_args[0][0]
        assert cmd[:2] == ["sudo", "-n"]
        assert cmd[-2:] == ["start", "palworld"]

    def test_start_without_sudo(self):
        controller = ServiceController(use_sudo=False)
        mutate = Mock(return_value=completed())
        with patch("serverkeeper.service.control.subprocess.run",
                   side_effect=systemctl_stub(active="inactive", mutate=mutate)):
            controller.start("palworld")
        assert mutate.call_args[0][0][0] == "systemctl"

    def test_start_unknown_unit_fails_without_calling_systemctl(self, controller):
        mutate = Mock(return_value=completed())
        stub = systemctl_stub(active="inactive", load_state="not-found", mutate=mutate)
        with patch("serverkeeper.service.control.subprocess.run", side_effect=stub):
            result = controller.start("no-such-unit")
        assert not result
        assert result.failure == FailureKind.NOT_FOUND
        assert result.retryable is False
        mutate.assert_not_called()

    def test_access_denied_is_not_retryable(self, controller):
        mutate = Mock(return_value=completed(stderr="sudo: a password is required", returncode=1))
        with patch("serverkeeper.service.control.subprocess.run",
                   side_effect=systemctl_stub(active="inactive", mutate=mutate)):
            result = controller.start("palworld")
        assert not result
        assert result.failure == FailureKind.ACCESS_DENIED
        assert result.retryable is False

    def test_force_stop_kills_then_stops(self, controller):
        mutate = Mock(return_value=completed())
        with patch("serverkeeper.service.control.subprocess.run", side_effect=systemctl_stub(mutate=mutate)):
            result = controller.stop("palworld", force=True)
        assert result.ok
        verbs = [call[0][0][3] for call in mutate.call_args_list]
        assert verbs == ["kill", "stop"]
        assert "--signal=SIGKILL" in mutate.call_args_list[0][0][0]

    def test_mutation_timeout(self, controller):
        def mutate(cmd):
            raise subprocess.TimeoutExpired(cmd, 30)

        with patch("serverkeeper.service.control.subprocess.run", side_effect=systemctl_stub(mutate=mutate)):
            result = controller.stop("palworld")
        assert not result
        assert result.failure == FailureKind.TIMEOUT
        assert result.retryable is True


class TestClassifyFailure:

    @pytest.mark.parametrize("stderr,returncode,expected", [
        ("Failed to start x.service: Unit x.service not found.", 5, FailureKind.NOT_FOUND),
        ("", 4, FailureKind.NOT_FOUND),
        ("Failed to stop x.service: Access denied", 1, FailureKind.ACCESS_DENIED),
        ("Interactive authentication required.", 1, FailureKind.ACCESS_DENIED),
        ("Job for x.service canceled.", 1, FailureKind.INVALID_STATE),
        ("something odd", 1, FailureKind.UNKNOWN),
    ])
    def test_classification(self, stderr, returncode, expected):
        assert classify_failure(stderr, returncode) == expected

    def test_successful_result_is_not_retryable(self):
        assert ControlResult(True, "start", "x").retryable is False


class TestRestart:

    def test_restart_stops_then_starts(self):
        controller = ServiceController(use_sudo=False)
        state = {"active": "active"}
        verbs = []

        def run(cmd, **kwargs):
            verb = cmd[1]
            if verb == "is-active":
                return completed(stdout=state["active"] + "\n")
            if verb == "show":
                return completed(stdout="loaded\n")
            verbs.append(verb)
            state["active"] = "inactive" if verb == "stop" else "active"
            return completed()

        with patch("serverkeeper.service.control.subprocess.run", side_effect=run):
            result = controller.restart("palworld")

        assert result.ok
        assert result.action == "restart"
        assert verbs == ["stop", "start"]

    def test_restart_reports_stop_failure(self):
        controller = ServiceController(use_sudo=False)
        mutate = Mock(return_value=completed(stderr="Access denied", returncode=1))
        with patch("serverkeeper.service.control.subprocess.run", side_effect=systemctl_stub(mutate=mutate)):
            result = controller.restart("palworld")

        assert not result
        assert result.failure == FailureKind.ACCESS_DENIED
        assert mutate.call_count == 1
