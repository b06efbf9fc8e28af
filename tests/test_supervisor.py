"""Tests for tunnel process supervision against fake FRP binaries."""

import json
import os
import signal
import time

import pytest

from frp_fleet.common.deadline import Deadline
from frp_fleet.exceptions import (
    BinaryNotFoundError,
    ConfigValidationError,
    NotFoundError,
    OperationTimeoutError,
    ProcessError,
)
from frp_fleet.models import ProcessRecord, ProcessState
from frp_fleet.process import is_alive, spawn
from frp_fleet.render import ConfigBuilder


def wait_for_state(supervisor, name, state, timeout=5.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        record = supervisor.status(name)
        if record.state == state:
            return record
        time.sleep(0.05)
    return supervisor.status(name)


@pytest.fixture
def fleet(populated_store, supervisor):
    return supervisor


class TestStart:
    """Test starting tunnels"""

    def test_start_reaches_running(self, fleet):
        """start should record a running process"""
        record = fleet.start("web-a")

        assert record.state == ProcessState.RUNNING
        assert is_alive(record.pid)
        assert record.config_path == str(fleet.config_path("web-a"))
        assert "serverPort = 7000" in fleet.config_path("web-a").read_text()

        on_disk = json.loads(fleet.record_path("web-a").read_text())
        assert on_disk["state"] == "running"
        assert on_disk["pid"] == record.pid

    def test_start_is_idempotent(self, fleet):
        """start should not spawn twice"""
        first = fleet.start("web-a")
        second = fleet.start("web-a")

        assert second.pid == first.pid
        assert len(fleet._children) == 1

    def test_server_role_uses_server_binary(self, fleet):
        """start should run frps for server tunnels"""
        record = fleet.start("edge")
        assert record.binary.endswith("frps")

    def test_unknown_tunnel(self, fleet):
        """start should raise NotFoundError for an unknown tunnel"""
        with pytest.raises(NotFoundError):
            fleet.start("ghost")

    def test_invalid_tunnel_is_not_started(self, fleet, make_client):
        """start should refuse a tunnel that fails validation"""
        registry = fleet.store.load()
        registry.tunnels["broken"] = make_client("broken", connection={"server_addr": None})
        fleet.store.save(registry)

        with pytest.raises(ConfigValidationError):
            fleet.start("broken")
        assert fleet.status("broken").state == ProcessState.STOPPED
        assert not fleet.config_path("broken").exists()

    def test_missing_binary(self, fleet):
        """start should raise BinaryNotFoundError without a binary"""
        (fleet.settings.frp_dir / "frpc").unlink()

        with pytest.raises(BinaryNotFoundError):
            fleet.start("web-a")
        assert fleet.status("web-a").state == ProcessState.STOPPED

    def test_early_exit_is_recorded_as_crash(self, fleet, install_frpc):
        """A process that dies during the startup grace period fails the start."""
        install_frpc("crash")

        with pytest.raises(ProcessError, match="address already in use"):
            fleet.start("web-a")

        record = fleet.status("web-a")
        assert record.state == ProcessState.CRASHED
        assert record.pid is None
        assert record.last_exit_code == 1
        assert "address already in use" in record.last_exit_reason

    def test_start_deadline_kills_unconfirmed_process(self, fleet):
        """start should kill the process when the deadline expires"""
        fleet.settings.startup_grace = 5

        with pytest.raises(OperationTimeoutError):
            fleet.start("web-a", deadline=Deadline(0.3))

        assert fleet.status("web-a").state == ProcessState.STOPPED
        assert fleet._children == {}


class TestCrashRecovery:
    """Test crash detection and recovery"""

    def test_out_of_band_kill_is_detected_and_restartable(self, fleet):
        """status should detect a killed process and start should recover"""
        first = fleet.start("web-a")
        os.killpg(first.pid, signal.SIGKILL)

        crashed = wait_for_state(fleet, "web-a", ProcessState.CRASHED)
        assert crashed.state == ProcessState.CRASHED
        assert crashed.last_exit_reason == "process disappeared"
        assert crashed.last_exit_code == -signal.SIGKILL

        again = fleet.start("web-a")
        assert again.state == ProcessState.RUNNING
        assert again.pid != first.pid

    def test_acknowledge_clears_crash(self, fleet, install_frpc):
        """acknowledge should move crashed to stopped"""
        install_frpc("crash")
        with pytest.raises(ProcessError):
            fleet.start("web-a")

        assert fleet.acknowledge("web-a").state == ProcessState.STOPPED
        assert not fleet.record_path("web-a").exists()

    def test_undecodable_record_is_ignored(self, fleet):
        """A record file that is not UTF-8 should read as stopped"""
        fleet.settings.run_dir.mkdir(parents=True, exist_ok=True)
        fleet.record_path("web-a").write_bytes(b"\xff\xfe")

        assert fleet.status("web-a").state == ProcessState.STOPPED
        assert fleet.start("web-a").state == ProcessState.RUNNING

    def test_recycled_pid_is_not_trusted(self, fleet):
        """A record whose pid now belongs to another process counts as crashed."""
        record = ProcessRecord(
            tunnel_name="web-a",
            state=ProcessState.RUNNING,
            pid=os.getpid(),
            config_path=str(fleet.config_path("web-a")),
        )
        fleet._save_record(record)

        assert fleet.status("web-a").state == ProcessState.CRASHED


class TestStop:
    """Test stopping tunnels"""

    def test_graceful_stop(self, fleet):
        """stop should end the process and clear the record"""
        pid = fleet.start("web-a").pid

        record = fleet.stop("web-a")

        assert record.state == ProcessState.STOPPED
        assert not is_alive(pid)
        assert not fleet.record_path("web-a").exists()
        assert not fleet.config_path("web-a").exists()
        assert "stopping" in fleet.log_path("web-a").read_text()

    def test_stop_stopped_tunnel_succeeds(self, fleet):
        """stop should succeed for a stopped tunnel"""
        assert fleet.stop("web-b").state == ProcessState.STOPPED

    def test_stop_clears_running_record_without_pid(self, fleet):
        """stop should clear a running record that has no pid instead of signalling"""
        fleet.settings.run_dir.mkdir(parents=True, exist_ok=True)
        fleet._save_record(ProcessRecord(tunnel_name="web-b", state=ProcessState.RUNNING))

        assert fleet.stop("web-b").state == ProcessState.STOPPED
        assert not fleet.record_path("web-b").exists()

    def test_stubborn_process_is_killed(self, fleet, install_frpc):
        """stop should SIGKILL a process that ignores SIGTERM"""
        install_frpc("stubborn")
        fleet.settings.stop_timeout = 0.3
        pid = fleet.start("web-a").pid

        assert fleet.stop("web-a").state == ProcessState.STOPPED
        assert not is_alive(pid)

    def test_force_stop_skips_sigterm(self, fleet, install_frpc):
        """A forced stop should SIGKILL directly"""
        install_frpc("stubborn")
        pid = fleet.start("web-a").pid

        started = time.monotonic()
        assert fleet.stop("web-a", graceful=False).state == ProcessState.STOPPED
        assert time.monotonic() - started < fleet.settings.stop_timeout
        assert not is_alive(pid)

    def test_unconfirmed_stop_times_out_and_stays_stopping(self, fleet, install_frpc):
        """An unconfirmed stop should time out and stay stopping"""
        install_frpc("stubborn")
        pid = fleet.start("web-a").pid

        with pytest.raises(OperationTimeoutError):
            fleet.stop("web-a", deadline=Deadline(0.3))

        record = fleet.status("web-a")
        assert record.state == ProcessState.STOPPING
        assert record.pid == pid
        with pytest.raises(ProcessError, match="stopping"):
            fleet.start("web-a")

        fleet.settings.stop_timeout = 0.3
        assert fleet.stop("web-a").state == ProcessState.STOPPED

    def test_restart_replaces_process(self, fleet):
        """restart should replace the process"""
        first = fleet.start("web-a")
        second = fleet.restart("web-a")

        assert second.state == ProcessState.RUNNING
        assert second.pid != first.pid
        assert not is_alive(first.pid)

    def test_forget_refuses_live_tunnel(self, fleet):
        """forget should refuse a live tunnel"""
        fleet.start("web-a")
        with pytest.raises(ProcessError):
            fleet.forget("web-a")

        fleet.stop("web-a")
        fleet.forget("web-a")
        assert not fleet.lock_path("web-a").exists()


class TestReconcile:
    """Reconciliation rebuilds records from the OS process table."""

    def test_adopts_unrecorded_process(self, fleet):
        """reconcile should adopt a process without a record"""
        tunnel = fleet.store.load().require("web-a")
        config = ConfigBuilder(tunnel).write(fleet.config_path("web-a"))
        child = spawn(str(fleet.settings.frp_dir / "frpc"), config, fleet.log_path("web-a"))
        try:
            records = fleet.reconcile()

            assert records["web-a"].state == ProcessState.RUNNING
            assert records["web-a"].pid == child.pid
            assert records["web-b"].state == ProcessState.STOPPED
            assert fleet.status("web-a").pid == child.pid
        finally:
            os.killpg(child.pid, signal.SIGKILL)
            child.wait(timeout=5)

    def test_dead_record_becomes_crashed(self, fleet):
        """reconcile should mark dead records crashed"""
        pid = fleet.start("web-a").pid
        os.killpg(pid, signal.SIGKILL)
        fleet._children["web-a"].wait(timeout=5)

        records = fleet.reconcile()
        assert records["web-a"].state == ProcessState.CRASHED

    def test_status_all_follows_registry_order(self, fleet):
        """status_all should follow registry order"""
        fleet.start("web-b")
        states = [(r.tunnel_name, r.state) for r in fleet.status_all()]

        assert states == [
            ("web-a", ProcessState.STOPPED),
            ("web-b", ProcessState.RUNNING),
            ("edge", ProcessState.STOPPED),
        ]


class TestOrphans:
    """Test orphan detection and cleanup"""

    def test_scan_finds_leftovers(self, fleet, make_client):
        """scan_orphans should find records, processes and files of unknown tunnels"""
        fleet.start("web-a")
        run_dir = fleet.settings.run_dir
        (run_dir / "ghost.json").write_text("{}")
        (run_dir / "old.toml").write_text("")
        (run_dir / "old.lock").write_text("")

        stray = make_client("stray")
        config = ConfigBuilder(stray).write(fleet.config_path("stray"))
        child = spawn(str(fleet.settings.frp_dir / "frpc"), config, fleet.log_path("stray"))
        try:
            scan = fleet.scan_orphans({"web-a", "web-b", "edge"})

            assert scan.orphan_records == ["ghost"]
            assert [p.pid for p in scan.orphan_processes] == [child.pid]
            assert sorted(p.name for p in scan.stale_files) == ["old.lock", "old.toml"]

            assert fleet.kill_orphan(scan.orphan_processes[0])
            child.wait(timeout=5)
        finally:
            if child.poll() is None:
                os.killpg(child.pid, signal.SIGKILL)
                child.wait(timeout=5)

    def test_drop_record(self, fleet):
        """drop_record should delete an orphan record"""
        fleet._save_record(ProcessRecord(tunnel_name="ghost"))
        fleet.lock_path("ghost").write_text("")

        fleet.drop_record("ghost")

        assert not fleet.record_path("ghost").exists()
        assert not fleet.lock_path("ghost").exists()
