"""Shared pytest fixtures for vmctl tests.

Every external collaborator (monitor socket, volume manager, config store,
hypervisor process, cgroup, tap bridge, guest agent) has an in-process fake
here, so the compiler, hotplug engine and lifecycle state machines run
without QEMU, root or a real host.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Callable

import psutil
import pytest

from vmctl.config_file import parse_config, write_config
from vmctl.exceptions import ConfigError, MonitorCommandError, SnapshotError
from vmctl.lifecycle import LifecycleManager
from vmctl.machine import QemuVersion
from vmctl.models import VmConfig
from vmctl.settings import Settings
from vmctl.system_probes import HostFacts

VMID = 100

# ============================================================================
# Monitor
# ============================================================================


def not_found(command: str, device_id: str) -> MonitorCommandError:
    desc = f"Device '{device_id}' not found"
    return MonitorCommandError(f"{command} failed - {desc}", command=command, error_class="DeviceNotFound", desc=desc)


class FakeMonitor:
    """In-memory QMP peer with just enough device bookkeeping for verify loops.

    Attributes:
        calls: Every ``execute`` call as ``(command, arguments)``
        human_calls: Every human monitor command line
        devices: qdev ids reported by ``query-pci``
        drives: Block backends reported by ``query-block`` (without ``drive-``)
        cpus: vCPU count reported by ``query-cpus-fast``
        dimms: Memory modules reported by ``query-memory-devices``
        failures: Command -> exception raised instead of running it
        hooks: Command -> callable(arguments) replacing the built-in handler
        human_failures: Human command word -> error text returned
        ignore_device_add: ids whose ``device_add`` is accepted but never shows up
        ignore_device_del: ids whose ``device_del`` is accepted but never goes away
    """

    def __init__(self, machine: str = "pc-i440fx-8.2", status: str = "running"):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.human_calls: list[str] = []
        self.devices: set[str] = set()
        self.drives: set[str] = set()
        self.objects: set[str] = set()
        self.netdevs: set[str] = set()
        self.dimms: set[str] = set()
        self.cpus = 1
        self.tablet = False
        self.machine = machine
        self.status = status
        self.migrate_status = "completed"
        self.failures: dict[str, Exception] = {}
        self.hooks: dict[str, Callable[[dict[str, Any]], Any]] = {}
        self.human_failures: dict[str, str] = {}
        self.ignore_device_add: set[str] = set()
        self.ignore_device_del: set[str] = set()

    def commands(self) -> list[str]:
        return [command for command, _ in self.calls]

    def arguments(self, command: str) -> list[dict[str, Any]]:
        return [args for name, args in self.calls if name == command]

    def execute(self, command: str, arguments: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        arguments = arguments or {}
        self.calls.append((command, arguments))
        if command in self.failures:
            raise self.failures[command]
        if command in self.hooks:
            return self.hooks[command](arguments)
        handler = getattr(self, "_" + command.replace("-", "_"), None)
        return handler(arguments) if handler is not None else {}

    def human_command(self, command_line: str) -> str:
        self.human_calls.append(command_line)
        word = command_line.split()[0]
        if word in self.human_failures:
            return self.human_failures[word]
        if word == "drive_add":
            match = re.search(r"id=drive-([a-z]+\d+)", command_line)
            assert match is not None
            self.drives.add(match.group(1))
            return "OK\r\n"
        if word == "drive_del":
            name = command_line.split()[1][len("drive-") :]
            if name not in self.drives:
                return f"Device 'drive-{name}' not found\r\n"
            self.drives.discard(name)
            return ""
        return ""

    # Devices --------------------------------------------------------------

    def _device_add(self, args: dict[str, Any]) -> None:
        device_id = args.get("id", "")
        driver = args["driver"]
        if device_id in self.ignore_device_add:
            return
        if driver.endswith("-x86_64-cpu"):
            self.cpus += 1
        elif driver == "pc-dimm":
            self.dimms.add(device_id)
        elif driver == "usb-tablet":
            self.tablet = True
            return
        self.devices.add(device_id)

    def _device_del(self, args: dict[str, Any]) -> None:
        device_id = args["id"]
        if device_id in self.ignore_device_del:
            return
        if re.fullmatch(r"cpu\d+", device_id):
            self.cpus -= 1
            self.devices.discard(device_id)
            return
        if device_id == "tablet":
            if not self.tablet:
                raise not_found("device_del", device_id)
            self.tablet = False
            return
        if device_id not in self.devices and device_id not in self.dimms:
            raise not_found("device_del", device_id)
        # unplugging a disk releases its block backend too
        self.devices.discard(device_id)
        self.dimms.discard(device_id)
        self.drives.discard(device_id)

    def _object_add(self, args: dict[str, Any]) -> None:
        self.objects.add(args["id"])

    def _object_del(self, args: dict[str, Any]) -> None:
        if args["id"] not in self.objects:
            raise not_found("object-del", args["id"])
        self.objects.discard(args["id"])

    def _netdev_add(self, args: dict[str, Any]) -> None:
        self.netdevs.add(args["id"])

    def _netdev_del(self, args: dict[str, Any]) -> None:
        if args["id"] not in self.netdevs:
            raise not_found("netdev_del", args["id"])
        self.netdevs.discard(args["id"])

    # Queries --------------------------------------------------------------

    def _query_pci(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"bus": 0, "devices": [{"qdev_id": device_id} for device_id in sorted(self.devices)]}]

    def _query_block(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"device": f"drive-{name}"} for name in sorted(self.drives)]

    def _query_mice(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"name": "QEMU HID Tablet", "index": 2}] if self.tablet else []

    def _qom_list(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        return []

    def _query_cpus_fast(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"cpu-index": index} for index in range(self.cpus)]

    def _query_memory_devices(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"type": "dimm", "data": {"id": name}} for name in sorted(self.dimms)]

    def _query_machines(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"name": "pc-i440fx-2.3"}, {"name": self.machine, "is-current": True}]

    def _query_status(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"status": self.status, "running": self.status == "running"}

    def _query_migrate(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"status": self.migrate_status}


# ============================================================================
# Storage
# ============================================================================


class FakeVolumeManager:
    """Records every volume operation; ``fail_on`` volids raise SnapshotError."""

    def __init__(self) -> None:
        self.fail_on: set[str] = set()
        self.formats: dict[str, str] = {}
        self.snapshots: list[tuple[str, str]] = []
        self.snapshot_deletes: list[tuple[str, str]] = []
        self.rollbacks: list[tuple[str, str]] = []
        self.freed: list[str] = []
        self.activated: list[str] = []
        self.deactivated: list[str] = []
        self.allocated: list[tuple[str, int]] = []

    def resolve_path(self, volid: str) -> str:
        store, _, name = volid.partition(":")
        return f"/var/lib/vmctl/{store}/{name}"

    def volume_format(self, volid: str) -> str:
        if volid in self.formats:
            return self.formats[volid]
        return "qcow2" if volid.endswith(".qcow2") else "raw"

    def allocate(self, store: str, vmid: int, fmt: str, size_kb: int, name: str | None = None) -> str:
        volid = f"{store}:{name or f'vm-{vmid}-disk-{len(self.allocated) + 10}.{fmt}'}"
        self.allocated.append((volid, size_kb))
        return volid

    def free(self, volid: str) -> None:
        self.freed.append(volid)

    def activate(self, volids: list[str]) -> None:
        self.activated.extend(volids)

    def deactivate(self, volids: list[str]) -> None:
        self.deactivated.extend(volids)

    def snapshot(self, volid: str, snapname: str) -> None:
        self._check(volid, "snapshot")
        self.snapshots.append((volid, snapname))

    def snapshot_delete(self, volid: str, snapname: str) -> None:
        self._check(volid, "snapshot delete")
        self.snapshot_deletes.append((volid, snapname))

    def snapshot_rollback(self, volid: str, snapname: str) -> None:
        self._check(volid, "rollback")
        self.rollbacks.append((volid, snapname))

    def _check(self, volid: str, operation: str) -> None:
        if volid in self.fail_on:
            raise SnapshotError(f"{operation} of {volid} failed: storage offline", context={"volid": volid})


class InMemoryConfigStore:
    """Config records kept as rendered text, so every write goes through the codec."""

    def __init__(self) -> None:
        self.records: dict[int, str] = {}
        self.writes = 0

    def read(self, vmid: int) -> VmConfig:
        if vmid not in self.records:
            raise ConfigError(f"configuration file for VM {vmid} does not exist")
        return parse_config(self.records[vmid], vmid=vmid)

    def write(self, vmid: int, config: VmConfig) -> None:
        self.records[vmid] = write_config(config)
        self.writes += 1

    def exists(self, vmid: int) -> bool:
        return vmid in self.records


# ============================================================================
# Process boundary
# ============================================================================


class FakeProcess:
    """Stand-in for ``psutil.Process`` of a daemonized hypervisor.

    ``dies_on`` lists the signals ("terminate", "kill") the process obeys.
    """

    def __init__(self, pid: int = 4242, dies_on: tuple[str, ...] = ("terminate", "kill")):
        self.pid = pid
        self.alive = True
        self.dies_on = set(dies_on)
        self.signals: list[str] = []

    def is_running(self) -> bool:
        return self.alive

    def status(self) -> str:
        return psutil.STATUS_SLEEPING if self.alive else psutil.STATUS_ZOMBIE

    def terminate(self) -> None:
        self.signals.append("SIGTERM")
        if "terminate" in self.dies_on:
            self.alive = False

    def kill(self) -> None:
        self.signals.append("SIGKILL")
        if "kill" in self.dies_on:
            self.alive = False


class FakeLauncher:
    """Launcher that "starts" a FakeProcess per launch.

    Attributes:
        launches: argv of every launch
        fail: Exception raised by ``launch`` instead of starting
        exits_immediately: Process is gone before the first lookup
        dies_on: Signals the next spawned process obeys
    """

    def __init__(self) -> None:
        self.launches: list[list[str]] = []
        self.process: FakeProcess | None = None
        self.fail: Exception | None = None
        self.exits_immediately = False
        self.dies_on: tuple[str, ...] = ("terminate", "kill")

    def launch(self, vmid: int, argv: list[str], env: dict[str, str]) -> None:
        self.launches.append(list(argv))
        if self.fail is not None:
            raise self.fail
        self.process = FakeProcess(dies_on=self.dies_on)
        if self.exits_immediately:
            self.process.alive = False

    def find(self, vmid: int) -> FakeProcess | None:
        if self.process is not None and self.process.alive:
            return self.process
        return None

    def running(self, dies_on: tuple[str, ...] = ("terminate", "kill")) -> FakeProcess:
        """Pretend the VM was started by an earlier invocation."""
        self.process = FakeProcess(dies_on=dies_on)
        return self.process

    def exit(self, _arguments: dict[str, Any] | None = None) -> None:
        if self.process is not None:
            self.process.alive = False


class FakeClock:
    """Monotonic clock advanced only by its own ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ============================================================================
# Host-side collaborators
# ============================================================================


class FakeCgroup:
    def __init__(self, path: Path):
        self.path = path
        self.attached: list[int] = []
        self.units: list[int | None] = []
        self.limits: list[float | None] = []

    def attach(self, pid: int) -> None:
        self.attached.append(pid)

    def set_cpu_units(self, units: int | None) -> None:
        self.units.append(units)

    def set_cpu_limit(self, limit: float | None) -> None:
        self.limits.append(limit)


class FakeTap:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []

    def unplug(self, iface: str) -> None:
        self.calls.append(("unplug", iface))

    def plug(self, iface: str, bridge: str, tag: int | None, firewall: bool, trunks: str | None) -> None:
        self.calls.append(("plug", iface, bridge, tag))

    def rate_limit(self, iface: str, rate: float | None) -> None:
        self.calls.append(("rate_limit", iface, rate))


class FakeAgent:
    def __init__(self, responsive: bool = True):
        self.responsive = responsive
        self.shutdowns = 0
        self.on_shutdown: Callable[[], None] | None = None

    def ping(self) -> bool:
        return self.responsive

    def shutdown(self) -> None:
        self.shutdowns += 1
        if self.on_shutdown is not None:
            self.on_shutdown()


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in tmp_path with fast lock and verify loops."""
    return Settings(
        run_dir=tmp_path / "run",
        lock_dir=tmp_path / "lock",
        config_dir=tmp_path / "conf",
        storage_dir=tmp_path / "images",
        cgroup_root=tmp_path / "cgroup",
        qemu_bin=Path("/usr/bin/kvm"),
        ovmf_code=tmp_path / "OVMF_CODE.fd",
        ovmf_vars=tmp_path / "OVMF_VARS.fd",
        lock_timeout=0.2,
        hotplug_verify_attempts=3,
        hotplug_verify_interval=0.5,
    )


@pytest.fixture
def host() -> HostFacts:
    return HostFacts(cpu_count=8, kvm_version=QemuVersion(8, 2))


@pytest.fixture
def monitor() -> FakeMonitor:
    return FakeMonitor()


@pytest.fixture
def volumes() -> FakeVolumeManager:
    return FakeVolumeManager()


@pytest.fixture
def store() -> InMemoryConfigStore:
    return InMemoryConfigStore()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cgroup(tmp_path: Path) -> FakeCgroup:
    return FakeCgroup(tmp_path / "cgroup" / "100.scope")


@pytest.fixture
def tap() -> FakeTap:
    return FakeTap()


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def make_lifecycle(
    settings: Settings,
    host: HostFacts,
    store: InMemoryConfigStore,
    volumes: FakeVolumeManager,
    monitor: FakeMonitor,
    launcher: FakeLauncher,
    clock: FakeClock,
    cgroup: FakeCgroup,
    tap: FakeTap,
    agent: FakeAgent,
) -> Callable[..., LifecycleManager]:
    """Build a LifecycleManager over the fakes for a raw config record.

    ``quit`` and ``system_powerdown`` end the fake process, like a guest that
    reacts; tests override ``monitor.hooks`` for one that does not.
    """

    def build(raw: str, vmid: int = VMID) -> LifecycleManager:
        store.records[vmid] = raw
        monitor.hooks.setdefault("quit", launcher.exit)
        monitor.hooks.setdefault("system_powerdown", launcher.exit)
        agent.on_shutdown = launcher.exit
        return LifecycleManager(
            vmid,
            settings,
            store,
            volumes,
            host=host,
            monitor_factory=lambda _vmid: monitor,
            launcher=launcher,
            cgroup=cgroup,  # type: ignore[arg-type]
            tap=tap,
            agent=agent,  # type: ignore[arg-type]
            sleep=clock.sleep,
            clock=clock,
            spice_port_allocator=lambda: 61000,
        )

    return build
