"""Tests for start/stop/suspend/resume over fake process, monitor and storage."""

import json
import os
import socket
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from tests.conftest import (
    VMID,
    FakeAgent,
    FakeCgroup,
    FakeClock,
    FakeLauncher,
    FakeMonitor,
    FakeVolumeManager,
    InMemoryConfigStore,
)
from vmctl.exceptions import (
    AlreadyRunningError,
    LockBusyError,
    MonitorCommandError,
    MonitorNotRunningError,
    NotRunningError,
    StartError,
    StopError,
    VmLockedError,
)
from vmctl.lifecycle import DaemonLauncher, GuestAgent, LifecycleManager
from vmctl.locking import ConfigLock
from vmctl.settings import Settings

MakeLifecycle = Callable[..., LifecycleManager]

BASIC = """\
memory: 1024
net0: virtio=AA:BB:CC:DD:EE:FF,bridge=vmbr0
scsi0: mytank:vm-100-disk-0
"""

MB = 1024 * 1024


# ============================================================================
# Start
# ============================================================================


class TestStart:
    """Tests for LifecycleManager.start."""

    def test_start(
        self,
        make_lifecycle: MakeLifecycle,
        launcher: FakeLauncher,
        volumes: FakeVolumeManager,
        cgroup: FakeCgroup,
    ) -> None:
        vm = make_lifecycle(BASIC)
        compiled = vm.start()
        assert launcher.launches == [list(compiled.argv)]
        assert compiled.argv[0] == "/usr/bin/kvm"
        assert volumes.activated == ["mytank:vm-100-disk-0"]
        assert cgroup.attached == [4242]
        assert vm.is_running()
        assert vm.status() == "running"

    def test_already_running(self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher) -> None:
        vm = make_lifecycle(BASIC)
        launcher.running()
        with pytest.raises(AlreadyRunningError, match="already running"):
            vm.start()
        assert launcher.launches == []

    def test_locked(self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher) -> None:
        vm = make_lifecycle(BASIC + "lock: backup\n")
        with pytest.raises(VmLockedError) as exc_info:
            vm.start()
        assert exc_info.value.lock == "backup"
        assert launcher.launches == []

    def test_skip_lock(self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher) -> None:
        make_lifecycle(BASIC + "lock: backup\n").start(skip_lock=True)
        assert len(launcher.launches) == 1

    def test_config_lock_held_elsewhere(self, make_lifecycle: MakeLifecycle, settings: Settings) -> None:
        vm = make_lifecycle(BASIC)
        with ConfigLock(settings.lock_dir, VMID), pytest.raises(LockBusyError):
            vm.start()

    def test_pending_folded_in(self, make_lifecycle: MakeLifecycle, store: InMemoryConfigStore) -> None:
        vm = make_lifecycle(BASIC + "\n[PENDING]\ncores: 2\n")
        compiled = vm.start()
        assert "2,sockets=1,cores=2,maxcpus=2" in compiled.argv
        config = store.read(VMID)
        assert config.values["cores"] == "2"
        assert config.pending.is_empty()

    def test_nic_mac_persisted_before_launch(self, make_lifecycle: MakeLifecycle, store: InMemoryConfigStore) -> None:
        """A NIC stored without a MAC runs with the one written back to the config."""
        compiled = make_lifecycle("memory: 1024\nnet0: virtio,bridge=vmbr0\n").start()
        net0 = store.read(VMID).values["net0"]
        mac = net0.split(",")[0].split("=")[1]
        assert net0 == f"virtio={mac},bridge=vmbr0"
        assert any(arg.startswith(f"virtio-net-pci,mac={mac},") for arg in compiled.argv)

    def test_resource_limits(self, make_lifecycle: MakeLifecycle, cgroup: FakeCgroup) -> None:
        make_lifecycle(BASIC + "cpuunits: 2048\ncpulimit: 1.5\n").start()
        assert cgroup.units == [2048]
        assert cgroup.limits == [1.5]

    def test_post_start_fixups(self, make_lifecycle: MakeLifecycle, monitor: FakeMonitor) -> None:
        raw = "memory: 2048\nballoon: 1024\nnet0: virtio=AA:BB:CC:DD:EE:FF,bridge=vmbr0,link_down=1\n"
        make_lifecycle(raw).start()
        assert monitor.arguments("set_link") == [{"name": "net0", "up": False}]
        assert monitor.arguments("balloon") == [{"value": 1024 * MB}]

    def test_launch_failure_deactivates(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, volumes: FakeVolumeManager
    ) -> None:
        launcher.fail = StartError("start failed: exit code 1")
        with pytest.raises(StartError, match="exit code 1"):
            make_lifecycle(BASIC).start()
        assert volumes.deactivated == ["mytank:vm-100-disk-0"]

    def test_process_vanished(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, volumes: FakeVolumeManager
    ) -> None:
        launcher.exits_immediately = True
        with pytest.raises(StartError, match="hypervisor exited after launch"):
            make_lifecycle(BASIC).start()
        assert volumes.deactivated == ["mytank:vm-100-disk-0"]

    def test_post_start_failure_tears_down(
        self,
        make_lifecycle: MakeLifecycle,
        launcher: FakeLauncher,
        monitor: FakeMonitor,
        volumes: FakeVolumeManager,
        settings: Settings,
    ) -> None:
        """A failure after launch kills the process and removes run files."""
        monitor.failures["set_link"] = MonitorCommandError("set_link failed", command="set_link")
        vm = make_lifecycle("net0: virtio=AA:BB:CC:DD:EE:FF,link_down=1\nscsi0: mytank:vm-100-disk-0\n")
        settings.run_dir.mkdir(parents=True)
        (settings.run_dir / "100.qmp").touch()
        with pytest.raises(MonitorCommandError):
            vm.start()
        assert launcher.process is not None
        assert launcher.process.signals == ["SIGTERM"]
        assert not vm.is_running()
        assert volumes.deactivated == ["mytank:vm-100-disk-0"]
        assert not (settings.run_dir / "100.qmp").exists()

    def test_efivars_copied(self, make_lifecycle: MakeLifecycle, settings: Settings) -> None:
        settings.ovmf_code.write_bytes(b"code")
        settings.ovmf_vars.write_bytes(b"vars")
        settings.run_dir.mkdir(parents=True)
        make_lifecycle("bios: ovmf\n").start()
        assert (settings.run_dir / "100-ovmf.fd").read_bytes() == b"vars"

    def test_showcmd(self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher) -> None:
        vm = make_lifecycle(BASIC)
        assert vm.showcmd().startswith("/usr/bin/kvm -id 100 -name vm100 ")
        assert launcher.launches == []


class TestResumeFromState:
    """Tests for start with a saved state file."""

    RAW = "lock: suspended\nmemory: 1024\nvmstate: mytank:vm-100-state-suspend\n\n[PENDING]\ncores: 2\n"

    def test_resume(
        self,
        make_lifecycle: MakeLifecycle,
        launcher: FakeLauncher,
        volumes: FakeVolumeManager,
        store: InMemoryConfigStore,
    ) -> None:
        vm = make_lifecycle(self.RAW)
        vm.start(statefile="mytank:vm-100-state-suspend")
        assert launcher.launches[0][-2:] == ["-incoming", "exec:cat /var/lib/vmctl/mytank/vm-100-state-suspend"]
        assert "mytank:vm-100-state-suspend" in volumes.activated
        assert volumes.freed == ["mytank:vm-100-state-suspend"]
        config = store.read(VMID)
        assert config.lock is None
        assert "vmstate" not in config.values
        assert config.pending.values == {"cores": "2"}

    def test_state_path_quoted(self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher) -> None:
        make_lifecycle("memory: 1024\n").start(statefile="/var/tmp/state file")
        assert launcher.launches[0][-1] == "exec:cat '/var/tmp/state file'"

    def test_suspended_needs_statefile(self, make_lifecycle: MakeLifecycle) -> None:
        with pytest.raises(VmLockedError):
            make_lifecycle(self.RAW).start()


# ============================================================================
# Stop
# ============================================================================


class TestStop:
    """Tests for the stop escalation."""

    def test_not_running(self, make_lifecycle: MakeLifecycle, settings: Settings) -> None:
        settings.run_dir.mkdir(parents=True)
        (settings.run_dir / "100.pid").write_text("4242")
        assert make_lifecycle(BASIC).stop() is None
        assert not (settings.run_dir / "100.pid").exists()

    def test_quit(
        self,
        make_lifecycle: MakeLifecycle,
        launcher: FakeLauncher,
        monitor: FakeMonitor,
        volumes: FakeVolumeManager,
        clock: FakeClock,
    ) -> None:
        vm = make_lifecycle(BASIC)
        launcher.running()
        assert vm.stop() == "graceful"
        assert monitor.commands() == ["quit"]
        assert volumes.deactivated == ["mytank:vm-100-disk-0"]
        assert clock.sleeps == []

    def test_keep_active(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, volumes: FakeVolumeManager
    ) -> None:
        vm = make_lifecycle(BASIC)
        launcher.running()
        vm.stop(keep_active=True)
        assert volumes.deactivated == []

    def test_escalates_to_terminate(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor, clock: FakeClock
    ) -> None:
        monitor.hooks["quit"] = lambda _args: None
        vm = make_lifecycle(BASIC)
        process = launcher.running()
        assert vm.stop(timeout=5) == "terminate"
        assert process.signals == ["SIGTERM"]
        assert clock.now == 5.0

    def test_escalates_to_kill(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor, clock: FakeClock
    ) -> None:
        """Each tier waits its own bound: terminate_timeout twice, then SIGKILL."""
        monitor.hooks["quit"] = lambda _args: None
        vm = make_lifecycle(BASIC)
        process = launcher.running(dies_on=("kill",))
        assert vm.stop() == "kill"
        assert process.signals == ["SIGTERM", "SIGKILL"]
        assert clock.now == 20.0

    def test_survives_kill(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor
    ) -> None:
        monitor.hooks["quit"] = lambda _args: None
        vm = make_lifecycle(BASIC)
        launcher.running(dies_on=())
        with pytest.raises(StopError, match="survived SIGKILL") as exc_info:
            vm.stop(timeout=1)
        assert exc_info.value.tier == "kill"

    def test_monitor_gone_still_escalates(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor
    ) -> None:
        monitor.failures["quit"] = MonitorNotRunningError("monitor socket does not exist")
        vm = make_lifecycle(BASIC)
        launcher.running()
        assert vm.stop(timeout=1) == "terminate"

    def test_stop_applies_pending(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, store: InMemoryConfigStore
    ) -> None:
        vm = make_lifecycle(BASIC + "\n[PENDING]\ncores: 4\n")
        launcher.running()
        vm.stop()
        config = store.read(VMID)
        assert config.values["cores"] == "4"
        assert config.pending.is_empty()

    def test_locked(self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher) -> None:
        vm = make_lifecycle(BASIC + "lock: migrate\n")
        launcher.running()
        with pytest.raises(VmLockedError):
            vm.stop()
        assert vm.stop(skip_lock=True) == "graceful"


class TestShutdown:
    """Tests for graceful shutdown through ACPI or the guest agent."""

    def test_acpi(self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor) -> None:
        vm = make_lifecycle(BASIC)
        launcher.running()
        assert vm.shutdown() == "graceful"
        assert monitor.commands() == ["system_powerdown"]

    def test_agent(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor, agent: FakeAgent
    ) -> None:
        vm = make_lifecycle(BASIC + "agent: 1\n")
        launcher.running()
        assert vm.shutdown() == "graceful"
        assert agent.shutdowns == 1
        assert monitor.commands() == []

    def test_unresponsive_agent_falls_back(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor, agent: FakeAgent
    ) -> None:
        agent.responsive = False
        vm = make_lifecycle(BASIC + "agent: 1\n")
        launcher.running()
        vm.shutdown()
        assert agent.shutdowns == 0
        assert monitor.commands() == ["system_powerdown"]

    def test_timeout_without_force(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor, clock: FakeClock
    ) -> None:
        """Without force the guest is left running after the wait."""
        monitor.hooks["system_powerdown"] = lambda _args: None
        vm = make_lifecycle(BASIC)
        process = launcher.running()
        with pytest.raises(StopError, match="did not stop within 60") as exc_info:
            vm.shutdown()
        assert exc_info.value.tier == "graceful"
        assert process.signals == []
        assert clock.now == 60.0

    def test_timeout_with_force(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor
    ) -> None:
        monitor.hooks["system_powerdown"] = lambda _args: None
        vm = make_lifecycle(BASIC)
        launcher.running()
        assert vm.shutdown(timeout=3, force=True) == "terminate"


# ============================================================================
# Suspend / resume / reset / status
# ============================================================================


class TestRuntimeControl:
    """Tests for suspend, resume, reset and status."""

    def test_suspend(self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor) -> None:
        vm = make_lifecycle(BASIC)
        launcher.running()
        vm.suspend()
        assert monitor.commands() == ["stop"]

    @pytest.mark.parametrize(("status", "command"), [("paused", "cont"), ("suspended", "system_wakeup")])
    def test_resume(
        self,
        make_lifecycle: MakeLifecycle,
        launcher: FakeLauncher,
        monitor: FakeMonitor,
        status: str,
        command: str,
    ) -> None:
        monitor.status = status
        vm = make_lifecycle(BASIC)
        launcher.running()
        vm.resume()
        assert monitor.commands() == ["query-status", command]

    def test_reset(self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor) -> None:
        vm = make_lifecycle(BASIC)
        launcher.running()
        vm.reset()
        assert monitor.commands() == ["system_reset"]

    @pytest.mark.parametrize("operation", ["suspend", "resume", "reset"])
    def test_requires_running(self, make_lifecycle: MakeLifecycle, operation: str) -> None:
        vm = make_lifecycle(BASIC)
        with pytest.raises(NotRunningError, match="not running"):
            getattr(vm, operation)()

    def test_status(self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, monitor: FakeMonitor) -> None:
        vm = make_lifecycle(BASIC)
        assert vm.status() == "stopped"
        launcher.running()
        monitor.status = "paused"
        assert vm.status() == "paused"
        monitor.status = "shutdown"
        assert vm.status() == "running"
        monitor.failures["query-status"] = MonitorNotRunningError("gone")
        assert vm.status() == "running"


class TestApplyPending:
    """Tests for LifecycleManager.apply_pending."""

    def test_stopped_folds_in(self, make_lifecycle: MakeLifecycle, store: InMemoryConfigStore) -> None:
        result = make_lifecycle(BASIC + "\n[PENDING]\ncores: 2\n").apply_pending()
        assert result.applied == ["cores"]
        assert store.read(VMID).values["cores"] == "2"

    def test_running_hotplugs(
        self, make_lifecycle: MakeLifecycle, launcher: FakeLauncher, store: InMemoryConfigStore
    ) -> None:
        vm = make_lifecycle(BASIC + "\n[PENDING]\ncores: 2\nname: web\n")
        launcher.running()
        result = vm.apply_pending()
        assert result.applied == ["name"]
        assert result.skipped == ["cores"]
        config = store.read(VMID)
        assert config.values["name"] == "web"
        assert config.pending.values == {"cores": "2"}


# ============================================================================
# Process boundary
# ============================================================================


class TestDaemonLauncher:
    """Tests for DaemonLauncher error mapping."""

    def test_missing_binary(self, settings: Settings, tmp_path: Path) -> None:
        launcher = DaemonLauncher(settings)
        with pytest.raises(StartError, match="binary not found"):
            launcher.launch(VMID, [str(tmp_path / "no-such-kvm")], {})

    def test_nonzero_exit(self, settings: Settings) -> None:
        launcher = DaemonLauncher(settings)
        with pytest.raises(StartError, match="exit code 1") as exc_info:
            launcher.launch(VMID, ["false"], {"PATH": os.environ.get("PATH", "/usr/bin:/bin")})
        assert exc_info.value.context["returncode"] == 1

    def test_find_without_pid_file(self, settings: Settings) -> None:
        assert DaemonLauncher(settings).find(VMID) is None


class TestGuestAgent:
    """Tests for the guest agent socket client."""

    def test_ping_missing_socket(self, tmp_path: Path) -> None:
        assert not GuestAgent(tmp_path / "100.qga", timeout=0.5).ping()

    def test_ping_and_shutdown(self, tmp_path: Path) -> None:
        path = tmp_path / "100.qga"
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        server.bind(str(path))
        server.listen(2)
        received: list[dict[str, object]] = []

        def serve() -> None:
            for _ in range(2):
                conn, _addr = server.accept()
                with conn:
                    request = json.loads(conn.makefile("rb").readline())
                    received.append(request)
                    if request["execute"] == "guest-ping":
                        conn.sendall(b'{"return": {}}\n')

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        try:
            agent = GuestAgent(path, timeout=2)
            assert agent.ping()
            agent.shutdown()
            thread.join(timeout=2)
        finally:
            server.close()
        assert [request["execute"] for request in received] == ["guest-ping", "guest-shutdown"]
        assert received[1]["arguments"] == {"mode": "powerdown"}
