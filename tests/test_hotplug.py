"""Tests for live device reconciliation against a fake monitor."""

import re
from typing import Any

import pytest

from tests.conftest import VMID, FakeCgroup, FakeMonitor, FakeTap, FakeVolumeManager, InMemoryConfigStore
from vmctl.descriptors import Drive
from vmctl.exceptions import ConfigError
from vmctl.hotplug import (
    HotplugEngine,
    HotplugResult,
    apply_pending_cold,
    delete_or_detach_drive,
    device_arguments,
    netdev_arguments,
    object_arguments,
    vm_devices,
)
from vmctl.models import PendingChanges, SnapshotEntry, VmConfig
from vmctl.settings import Settings
from vmctl.system_probes import HostFacts

MB = 1024 * 1024
MAC = "AA:BB:CC:DD:EE:FF"


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def engine(
    settings: Settings,
    host: HostFacts,
    monitor: FakeMonitor,
    store: InMemoryConfigStore,
    volumes: FakeVolumeManager,
    cgroup: FakeCgroup,
    tap: FakeTap,
    sleeps: list[float],
) -> HotplugEngine:
    return HotplugEngine(
        VMID,
        settings,
        monitor,
        store,
        volumes,
        host,
        cgroup=cgroup,  # type: ignore[arg-type]
        tap=tap,
        sleep=sleeps.append,
    )


def _config(values: dict[str, str], pending: dict[str, str] | None = None, **deletions: bool) -> VmConfig:
    return VmConfig(values=dict(values), pending=PendingChanges(values=dict(pending or {}), deletions=deletions))


# ============================================================================
# Argument helpers
# ============================================================================


class TestArgumentHelpers:
    """Tests for converting command-line device strings to monitor arguments."""

    def test_device_arguments(self) -> None:
        assert device_arguments("virtio-net-pci,mac=AA:BB:CC:DD:EE:FF,netdev=net0,id=net0") == {
            "driver": "virtio-net-pci",
            "mac": MAC,
            "netdev": "net0",
            "id": "net0",
        }
        assert device_arguments("usb-tablet") == {"driver": "usb-tablet"}

    def test_netdev_arguments(self) -> None:
        args = netdev_arguments("type=tap,id=net0,ifname=tap100i0,script=/up,downscript=/down,vhost=on,queues=4")
        assert args == {
            "type": "tap",
            "id": "net0",
            "ifname": "tap100i0",
            "script": "/up",
            "downscript": "/down",
            "vhost": True,
            "queues": 4,
        }

    def test_object_arguments_size_in_bytes(self) -> None:
        assert object_arguments("memory-backend-ram,id=mem-dimm0,size=512M") == {
            "qom-type": "memory-backend-ram",
            "id": "mem-dimm0",
            "size": 512 * MB,
        }

    def test_vm_devices_merges_sources(self, monitor: FakeMonitor) -> None:
        """PCI (through bridges), block backends and the tablet all count."""
        monitor.hooks["query-pci"] = lambda _args: [
            {
                "bus": 0,
                "devices": [
                    {"qdev_id": "net0"},
                    {"qdev_id": "pci.1", "pci_bridge": {"devices": [{"qdev_id": "net6"}, {"qdev_id": ""}]}},
                ],
            }
        ]
        monitor.drives = {"ide2"}
        monitor.tablet = True
        monitor.hooks["qom-list"] = lambda _args: [{"name": "usb0"}, {"name": "type"}]
        assert vm_devices(monitor) == {"net0", "pci.1", "net6", "ide2", "tablet", "usb0"}

    def test_result_ok(self) -> None:
        assert HotplugResult(applied=["net0"]).ok
        assert not HotplugResult(errors={"net0": "x"}).ok


# ============================================================================
# Pending reconciliation
# ============================================================================


class TestApplyPending:
    """Tests for the apply_pending pass itself."""

    def test_fast_keys_applied_directly(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        config = _config({"memory": "512"}, {"name": "web", "onboot": "1"})
        result = engine.apply_pending(config)
        assert result.applied == ["name", "onboot"]
        assert config.values["name"] == "web"
        assert config.pending.is_empty()
        assert monitor.calls == []

    def test_cold_only_key_skipped(self, engine: HotplugEngine, store: InMemoryConfigStore) -> None:
        config = _config({"cores": "1"}, {"cores": "2"})
        result = engine.apply_pending(config)
        assert result.skipped == ["cores"]
        assert result.ok
        assert config.pending.values == {"cores": "2"}
        assert config.values["cores"] == "1"
        assert store.writes == 0

    def test_selection(self, engine: HotplugEngine) -> None:
        config = _config({}, {"name": "web", "description": "x"})
        result = engine.apply_pending(config, selection={"name"})
        assert result.applied == ["name"]
        assert config.pending.values == {"description": "x"}

    def test_persist_after_each_key(self, engine: HotplugEngine, store: InMemoryConfigStore) -> None:
        config = _config({}, {"cpuunits": "2048", "cpulimit": "2"})
        engine.apply_pending(config)
        assert store.writes == 2
        assert "cpuunits: 2048" in store.records[VMID]

    def test_errors_keep_key_pending(self, engine: HotplugEngine, store: InMemoryConfigStore) -> None:
        config = _config({"memory": "1024"}, {"memory": "2048", "hotplug": "memory"})
        result = engine.apply_pending(config)
        assert result.errors == {"memory": "hotplug problem - NUMA needs to be enabled for memory hotplug"}
        assert config.pending.values["memory"] == "2048"


# ============================================================================
# Network
# ============================================================================


class TestNetHotplug:
    """Tests for NIC plug, unplug and in-place updates."""

    def test_plug(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        config = _config({}, {"net0": f"virtio={MAC},bridge=vmbr0"})
        result = engine.apply_pending(config)
        assert result.applied == ["net0"]
        assert config.values["net0"] == f"virtio={MAC},bridge=vmbr0"
        netdev = monitor.arguments("netdev_add")[0]
        assert netdev["type"] == "tap"
        assert netdev["ifname"] == "tap100i0"
        assert netdev["vhost"] is True
        assert monitor.arguments("device_add") == [
            {"driver": "virtio-net-pci", "mac": MAC, "netdev": "net0", "bus": "pci.0", "addr": "0x12", "id": "net0"}
        ]

    def test_plug_without_mac_stores_the_plugged_mac(
        self, engine: HotplugEngine, monitor: FakeMonitor, store: InMemoryConfigStore
    ) -> None:
        """The MAC handed to the VM is the one written to the config."""
        config = _config({}, {"net1": "virtio,bridge=vmbr0"})
        assert engine.apply_pending(config).applied == ["net1"]
        mac = monitor.arguments("device_add")[0]["mac"]
        assert config.values["net1"] == f"virtio={mac},bridge=vmbr0"
        assert f"net1: virtio={mac},bridge=vmbr0" in store.records[VMID]

    def test_mac_persisted_before_plug_fails(
        self, engine: HotplugEngine, monitor: FakeMonitor, store: InMemoryConfigStore
    ) -> None:
        """A failed plug still leaves the generated MAC in the pending change."""
        monitor.failures["netdev_add"] = ConfigError("boom")
        config = _config({}, {"net1": "virtio,bridge=vmbr0"})
        assert "net1" in engine.apply_pending(config).errors
        assert re.fullmatch(r"virtio=[0-9A-F:]{17},bridge=vmbr0", config.pending.values["net1"])
        assert config.pending.values["net1"] in store.records[VMID]

    def test_plug_rolls_back_when_device_never_appears(
        self, engine: HotplugEngine, monitor: FakeMonitor, sleeps: list[float]
    ) -> None:
        """The backend is removed again and the change stays pending."""
        monitor.ignore_device_add.add("net0")
        config = _config({}, {"net0": f"virtio={MAC},bridge=vmbr0"})
        result = engine.apply_pending(config)
        assert result.errors == {"net0": "hotplug problem - error on hotplug device 'net0'"}
        assert sleeps == [0.5, 0.5]
        assert monitor.netdevs == set()
        assert "netdev_del" in monitor.commands()
        assert "net0" not in config.values
        assert "net0" in config.pending.values

    def test_link_down_after_plug(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        engine.apply_pending(_config({}, {"net1": f"e1000={MAC},link_down=1"}))
        assert monitor.arguments("set_link") == [{"name": "net1", "up": False}]

    def test_unplug(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.devices.add("net0")
        monitor.netdevs.add("net0")
        config = _config({"net0": f"virtio={MAC},bridge=vmbr0"}, net0=False)
        result = engine.apply_pending(config)
        assert result.applied == ["net0"]
        assert "net0" not in config.values
        assert monitor.devices == set()
        assert monitor.netdevs == set()

    def test_unplug_already_gone(self, engine: HotplugEngine) -> None:
        """Removing a device the VM no longer has still succeeds."""
        config = _config({"net0": f"virtio={MAC},bridge=vmbr0"}, net0=False)
        assert engine.apply_pending(config).applied == ["net0"]

    def test_unplug_needs_network_feature(self, engine: HotplugEngine) -> None:
        config = _config({"hotplug": "disk", "net0": f"virtio={MAC}"}, net0=False)
        assert engine.apply_pending(config).skipped == ["net0"]

    def test_bridge_change_in_place(self, engine: HotplugEngine, tap: FakeTap, monitor: FakeMonitor) -> None:
        config = _config({"net0": f"virtio={MAC},bridge=vmbr0"}, {"net0": f"virtio={MAC},bridge=vmbr1,tag=5"})
        assert engine.apply_pending(config).applied == ["net0"]
        assert tap.calls == [
            ("unplug", "tap100i0"),
            ("plug", "tap100i0", "vmbr1", 5),
            ("rate_limit", "tap100i0", None),
        ]
        assert "device_del" not in monitor.commands()

    def test_rate_change(self, engine: HotplugEngine, tap: FakeTap) -> None:
        config = _config({"net0": f"virtio={MAC},bridge=vmbr0"}, {"net0": f"virtio={MAC},bridge=vmbr0,rate=12.5"})
        engine.apply_pending(config)
        assert tap.calls == [("rate_limit", "tap100i0", 12.5)]

    def test_link_toggle(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        config = _config({"net0": f"virtio={MAC},link_down=1"}, {"net0": f"virtio={MAC}"})
        engine.apply_pending(config)
        assert monitor.arguments("set_link") == [{"name": "net0", "up": True}]

    def test_bridged_to_user_replugs(self, engine: HotplugEngine, monitor: FakeMonitor, tap: FakeTap) -> None:
        """Leaving the bridge swaps the backend, so the NIC is unplugged and plugged again."""
        monitor.devices.add("net0")
        monitor.netdevs.add("net0")
        config = _config({"net0": f"virtio={MAC},bridge=vmbr0"}, {"net0": f"virtio={MAC}"})
        assert engine.apply_pending(config).applied == ["net0"]
        commands = monitor.commands()
        assert commands.index("device_del") < commands.index("netdev_del") < commands.index("netdev_add")
        assert monitor.arguments("netdev_add")[0]["type"] == "user"
        assert config.values["net0"] == f"virtio={MAC}"
        assert tap.calls == []

    def test_user_to_bridged_needs_network_feature(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        config = _config({"hotplug": "disk", "net0": f"virtio={MAC}"}, {"net0": f"virtio={MAC},bridge=vmbr0"})
        assert engine.apply_pending(config).skipped == ["net0"]
        assert "device_del" not in monitor.commands()

    def test_model_change_replugs(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.devices.add("net0")
        monitor.netdevs.add("net0")
        config = _config({"net0": f"virtio={MAC},bridge=vmbr0"}, {"net0": f"e1000={MAC},bridge=vmbr0"})
        assert engine.apply_pending(config).applied == ["net0"]
        commands = monitor.commands()
        assert commands.index("device_del") < commands.index("netdev_add")
        assert monitor.arguments("device_add")[0]["driver"] == "e1000"


# ============================================================================
# Disks
# ============================================================================


class TestDiskHotplug:
    """Tests for drive plug, unplug and updates."""

    def test_plug_scsi_creates_controller(
        self, engine: HotplugEngine, monitor: FakeMonitor, volumes: FakeVolumeManager
    ) -> None:
        config = _config({}, {"scsi1": "mytank:vm-100-disk-1"})
        assert engine.apply_pending(config).applied == ["scsi1"]
        added = monitor.arguments("device_add")
        assert added[0] == {"driver": "lsi", "id": "scsihw0", "bus": "pci.0", "addr": "0x5"}
        assert added[1] == {
            "driver": "scsi-hd",
            "bus": "scsihw0.0",
            "scsi-id": "1",
            "drive": "drive-scsi1",
            "id": "scsi1",
        }
        assert monitor.human_calls == [
            'drive_add auto "file=/var/lib/vmctl/mytank/vm-100-disk-1,if=none,id=drive-scsi1,'
            'format=raw,cache=none,aio=native,detect-zeroes=on"'
        ]
        assert volumes.activated == ["mytank:vm-100-disk-1"]

    def test_plug_reuses_controller(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.devices.add("scsihw0")
        engine.apply_pending(_config({}, {"scsi2": "mytank:vm-100-disk-2"}))
        assert [args["driver"] for args in monitor.arguments("device_add")] == ["scsi-hd"]

    def test_plug_virtio_iothread(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        engine.apply_pending(_config({}, {"virtio1": "mytank:vm-100-disk-1,iothread=1"}))
        assert monitor.arguments("object-add") == [{"qom-type": "iothread", "id": "iothread-virtio1"}]
        assert monitor.arguments("device_add")[0]["iothread"] == "iothread-virtio1"

    def test_plug_failure_detaches_backend(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.failures["device_add"] = ConfigError("bus full")
        config = _config({}, {"virtio1": "mytank:vm-100-disk-1"})
        result = engine.apply_pending(config)
        assert result.errors == {"virtio1": "hotplug problem - bus full"}
        assert monitor.human_calls[-1] == "drive_del drive-virtio1"
        assert monitor.drives == set()

    def test_plug_failure_removes_iothread(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        """Rollback undoes the iothread object too, so a retry can add it again."""
        monitor.failures["device_add"] = ConfigError("bus full")
        config = _config({}, {"virtio2": "mytank:vm-100-disk-2,iothread=1"})
        assert engine.apply_pending(config).errors == {"virtio2": "hotplug problem - bus full"}
        assert monitor.objects == set()
        assert monitor.arguments("object-del") == [{"id": "iothread-virtio2"}]
        assert monitor.drives == set()

        del monitor.failures["device_add"]
        assert engine.apply_pending(config).applied == ["virtio2"]
        assert monitor.objects == {"iothread-virtio2"}

    def test_drive_add_failure_removes_iothread(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.human_failures["drive_add"] = "could not open disk image\r\n"
        engine.apply_pending(_config({}, {"virtio2": "mytank:vm-100-disk-2,iothread=1"}))
        assert monitor.objects == set()
        assert "device_add" not in monitor.commands()

    def test_drive_add_failure(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.human_failures["drive_add"] = "could not open disk image\r\n"
        result = engine.apply_pending(_config({}, {"virtio1": "mytank:vm-100-disk-1"}))
        assert result.errors == {"virtio1": "hotplug problem - adding drive failed: could not open disk image"}
        assert "device_add" not in monitor.commands()

    def test_unplug_detaches_to_unused(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        """A soft delete keeps the volume as unusedN and drops the idle controller."""
        monitor.devices.update({"scsihw0", "scsi1"})
        monitor.drives.add("scsi1")
        config = _config({"scsi1": "mytank:vm-100-disk-1"}, scsi1=False)
        assert engine.apply_pending(config).applied == ["scsi1"]
        assert config.values == {"unused0": "mytank:vm-100-disk-1"}
        assert monitor.arguments("device_del") == [{"id": "scsi1"}, {"id": "scsihw0"}]
        assert monitor.devices == set()

    def test_unplug_keeps_shared_controller(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.devices.update({"scsihw0", "scsi1", "scsi2"})
        config = _config({"scsi1": "mytank:vm-100-disk-1", "scsi2": "mytank:vm-100-disk-2"}, scsi1=False)
        engine.apply_pending(config)
        assert monitor.arguments("device_del") == [{"id": "scsi1"}]
        assert "scsihw0" in monitor.devices

    def test_unplug_twice_is_harmless(
        self, engine: HotplugEngine, monitor: FakeMonitor, volumes: FakeVolumeManager
    ) -> None:
        """Unplugging a disk the VM already lost still frees it when forced."""
        config = _config({"virtio0": "mytank:vm-100-disk-0"}, virtio0=True)
        assert engine.apply_pending(config).applied == ["virtio0"]
        assert volumes.freed == ["mytank:vm-100-disk-0"]
        assert config.values == {}

    def test_unplug_stuck_device(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.devices.add("virtio0")
        monitor.ignore_device_del.add("virtio0")
        config = _config({"virtio0": "mytank:vm-100-disk-0"}, virtio0=False)
        result = engine.apply_pending(config)
        assert result.errors == {"virtio0": "hotplug problem - error on hot-unplugging device 'virtio0'"}
        assert config.values == {"virtio0": "mytank:vm-100-disk-0"}

    def test_ide_unplug_skipped(self, engine: HotplugEngine) -> None:
        config = _config({"ide0": "mytank:vm-100-disk-0"}, ide0=False)
        assert engine.apply_pending(config).skipped == ["ide0"]

    def test_unused_delete_frees(self, engine: HotplugEngine, volumes: FakeVolumeManager) -> None:
        config = _config({"unused0": "mytank:vm-100-disk-9"}, unused0=False)
        assert engine.apply_pending(config).applied == ["unused0"]
        assert volumes.freed == ["mytank:vm-100-disk-9"]

    def test_throttle_update(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        config = _config({"virtio0": "mytank:vm-100-disk-0"}, {"virtio0": "mytank:vm-100-disk-0,mbps_rd=10,iops=500"})
        assert engine.apply_pending(config).applied == ["virtio0"]
        args = monitor.arguments("block_set_io_throttle")[0]
        assert args["device"] == "drive-virtio0"
        assert args["bps_rd"] == 10 * MB
        assert args["iops"] == 500
        assert args["bps_wr"] == 0
        assert "device_del" not in monitor.commands()

    def test_immutable_change_skipped(self, engine: HotplugEngine) -> None:
        config = _config({"virtio0": "mytank:vm-100-disk-0"}, {"virtio0": "mytank:vm-100-disk-0,cache=writeback"})
        assert engine.apply_pending(config).skipped == ["virtio0"]

    def test_volume_swap_replugs(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.devices.add("virtio0")
        monitor.drives.add("virtio0")
        config = _config({"virtio0": "mytank:vm-100-disk-0"}, {"virtio0": "mytank:vm-100-disk-5"})
        assert engine.apply_pending(config).applied == ["virtio0"]
        assert config.values["virtio0"] == "mytank:vm-100-disk-5"
        assert config.values["unused0"] == "mytank:vm-100-disk-0"

    @pytest.mark.parametrize(
        ("old", "new"),
        [("none,media=cdrom", "mytank:vm-100-disk-1"), ("mytank:vm-100-disk-1", "none,media=cdrom")],
    )
    def test_media_change_rejected(self, engine: HotplugEngine, monitor: FakeMonitor, old: str, new: str) -> None:
        """Switching between disk and cdrom is refused before anything is unplugged."""
        monitor.devices.update({"scsihw0", "scsi0"})
        config = _config({"scsi0": old}, {"scsi0": new})
        result = engine.apply_pending(config)
        assert result.errors == {"scsi0": "hotplug problem - unable to change media type"}
        assert "device_del" not in monitor.commands()
        assert config.values == {"scsi0": old}
        assert config.pending.values == {"scsi0": new}

    def test_ide_replug_skipped(self, engine: HotplugEngine) -> None:
        config = _config({"ide0": "mytank:vm-100-disk-0"}, {"ide0": "mytank:vm-100-disk-5"})
        assert engine.apply_pending(config).skipped == ["ide0"]

    def test_change_medium(self, engine: HotplugEngine, monitor: FakeMonitor, volumes: FakeVolumeManager) -> None:
        config = _config({"ide2": "none,media=cdrom"}, {"ide2": "mytank:iso/debian.iso,media=cdrom"})
        assert engine.apply_pending(config).applied == ["ide2"]
        assert monitor.arguments("blockdev-change-medium") == [
            {"device": "drive-ide2", "filename": "/var/lib/vmctl/mytank/iso/debian.iso"}
        ]
        assert volumes.activated == ["mytank:iso/debian.iso"]

    def test_eject(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        config = _config({"ide2": "mytank:iso/debian.iso,media=cdrom"}, {"ide2": "none,media=cdrom"})
        engine.apply_pending(config)
        assert monitor.arguments("eject") == [{"device": "drive-ide2", "force": True}]

    def test_resize(self, engine: HotplugEngine, monitor: FakeMonitor, store: InMemoryConfigStore) -> None:
        config = _config({"scsi0": "mytank:vm-100-disk-0,size=32G"})
        engine.resize_disk(config, "scsi0", 64 * 1024 * MB)
        assert monitor.arguments("block_resize") == [{"device": "drive-scsi0", "size": 64 * 1024 * MB}]
        assert Drive.parse_key("scsi0", config.values["scsi0"]).size == 64 * 1024 * MB
        assert store.writes == 1

    @pytest.mark.parametrize(
        ("values", "match"),
        [
            ({"scsi0": "mytank:vm-100-disk-0,size=32G"}, "shrinking"),
            ({"ide2": "none,media=cdrom"}, "cdrom"),
            ({}, "no such drive"),
        ],
    )
    def test_resize_rejected(self, engine: HotplugEngine, values: dict[str, str], match: str) -> None:
        key = next(iter(values), "scsi0")
        with pytest.raises(ConfigError, match=match):
            engine.resize_disk(_config(values), key, MB)


# ============================================================================
# CPU, memory, balloon, tablet, cgroup
# ============================================================================


class TestCpuHotplug:
    """Tests for vCPU plug/unplug."""

    def test_plug(self, engine: HotplugEngine, monitor: FakeMonitor, store: InMemoryConfigStore) -> None:
        config = _config({"hotplug": "cpu", "cores": "4", "vcpus": "1"}, {"vcpus": "3"})
        assert engine.apply_pending(config).applied == ["vcpus"]
        assert [args["id"] for args in monitor.arguments("device_add")] == ["cpu2", "cpu3"]
        assert monitor.cpus == 3
        assert config.values["vcpus"] == "3"
        assert store.writes == 3

    def test_unplug(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.cpus = 3
        config = _config({"hotplug": "cpu", "cores": "4", "vcpus": "3"}, {"vcpus": "1"})
        assert engine.apply_pending(config).applied == ["vcpus"]
        assert monitor.arguments("device_del") == [{"id": "cpu3"}, {"id": "cpu2"}]
        assert monitor.cpus == 1

    def test_delete_plugs_all(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        """Removing vcpus means every socket x core is online."""
        config = _config({"hotplug": "cpu", "sockets": "2", "cores": "1", "vcpus": "1"}, vcpus=False)
        engine.apply_pending(config)
        assert monitor.cpus == 2
        assert "vcpus" not in config.values

    def test_running_count_mismatch(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.cpus = 2
        config = _config({"hotplug": "cpu", "cores": "4", "vcpus": "1"}, {"vcpus": "3"})
        result = engine.apply_pending(config)
        assert result.errors == {"vcpus": "hotplug problem - vcpus in running vm does not match its configuration"}

    def test_over_max(self, engine: HotplugEngine) -> None:
        config = _config({"hotplug": "cpu", "cores": "2", "vcpus": "1"}, {"vcpus": "8"})
        assert engine.apply_pending(config).errors == {
            "vcpus": "hotplug problem - you can't add more vcpus than maxcpus"
        }

    def test_needs_feature(self, engine: HotplugEngine) -> None:
        config = _config({"cores": "4", "vcpus": "1"}, {"vcpus": "2"})
        assert engine.apply_pending(config).skipped == ["vcpus"]

    def test_old_machine_cannot_unplug(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.machine = "pc-i440fx-2.6"
        config = _config({"hotplug": "cpu", "cores": "4", "vcpus": "3"}, {"vcpus": "1"})
        assert engine.apply_pending(config).errors == {
            "vcpus": "hotplug problem - cpu hot-unplugging requires qemu version 2.7 or higher"
        }


class TestMemoryHotplug:
    """Tests for dimm plug/unplug."""

    BASE = {"hotplug": "memory", "numa": "1", "memory": "1024"}

    def test_grow(self, engine: HotplugEngine, monitor: FakeMonitor, store: InMemoryConfigStore) -> None:
        config = _config(self.BASE, {"memory": "2048"})
        assert engine.apply_pending(config).applied == ["memory"]
        assert monitor.arguments("object-add") == [
            {"qom-type": "memory-backend-ram", "id": "mem-dimm0", "size": 512 * MB},
            {"qom-type": "memory-backend-ram", "id": "mem-dimm1", "size": 512 * MB},
        ]
        assert monitor.arguments("device_add") == [
            {"driver": "pc-dimm", "id": "dimm0", "memdev": "mem-dimm0", "node": "0"},
            {"driver": "pc-dimm", "id": "dimm1", "memdev": "mem-dimm1", "node": "0"},
        ]
        assert config.values["memory"] == "2048"
        assert store.writes == 3

    def test_grow_then_shrink_restores_state(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        config = _config(self.BASE, {"memory": "3072"})
        engine.apply_pending(config)
        assert monitor.dimms == {"dimm0", "dimm1", "dimm2", "dimm3"}

        config.pending.values["memory"] = "1024"
        assert engine.apply_pending(config).applied == ["memory"]
        assert [args["id"] for args in monitor.arguments("device_del")] == ["dimm3", "dimm2", "dimm1", "dimm0"]
        assert monitor.dimms == set()
        assert monitor.objects == set()
        assert config.values["memory"] == "1024"

    def test_failed_dimm_removes_backend(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        monitor.failures["device_add"] = ConfigError("no free slot")
        config = _config(self.BASE, {"memory": "1536"})
        assert engine.apply_pending(config).errors == {"memory": "hotplug problem - no free slot"}
        assert monitor.objects == set()
        assert config.values["memory"] == "1024"

    @pytest.mark.parametrize(
        ("target", "message"),
        [
            ("1800", "must be aligned to 512 for hotplugging"),
            ("512", "memory can't be lower than 1024 MB"),
            ("8388608", "you cannot add more memory than 4194304 MB"),
        ],
    )
    def test_rejected_targets(self, engine: HotplugEngine, target: str, message: str) -> None:
        result = engine.apply_pending(_config(self.BASE, {"memory": target}))
        assert message in result.errors["memory"]

    def test_stuck_dimm(self, engine: HotplugEngine, monitor: FakeMonitor, sleeps: list[float]) -> None:
        monitor.dimms.add("dimm0")
        monitor.devices.add("dimm0")
        monitor.objects.add("mem-dimm0")
        monitor.ignore_device_del.add("dimm0")
        config = _config({**self.BASE, "memory": "1536"}, {"memory": "1024"})
        result = engine.apply_pending(config)
        assert result.errors == {"memory": "hotplug problem - error unplug memory module dimm0"}
        assert len(sleeps) == 2
        assert "mem-dimm0" in monitor.objects

    def test_toggle_memory_hotplug_skipped(self, engine: HotplugEngine) -> None:
        config = _config(self.BASE, {"hotplug": "network,disk"})
        assert engine.apply_pending(config).skipped == ["hotplug"]


class TestMiscHotplug:
    """Tests for balloon, tablet, usb and cgroup keys."""

    def test_balloon_target(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        config = _config({"memory": "2048", "shares": "0"}, {"balloon": "1024"})
        engine.apply_pending(config)
        assert monitor.arguments("balloon") == [{"value": 1024 * MB}]

    def test_balloon_auto_does_not_call_monitor(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        config = _config({"memory": "2048"}, {"balloon": "1024"})
        assert engine.apply_pending(config).applied == ["balloon"]
        assert "balloon" not in monitor.commands()

    def test_balloon_toggle_skipped(self, engine: HotplugEngine) -> None:
        config = _config({"balloon": "0"}, {"balloon": "512"})
        assert engine.apply_pending(config).skipped == ["balloon"]

    def test_tablet_on_off(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        config = _config({"tablet": "0"}, {"tablet": "1"})
        assert engine.apply_pending(config).applied == ["tablet"]
        assert monitor.tablet
        assert monitor.arguments("device_add") == [
            {"driver": "usb-tablet", "id": "tablet", "bus": "uhci.0", "port": "1"}
        ]
        config.pending.values["tablet"] = "0"
        assert engine.apply_pending(config).applied == ["tablet"]
        assert not monitor.tablet

    def test_usb_skipped(self, engine: HotplugEngine) -> None:
        assert engine.apply_pending(_config({}, {"usb0": "host=1-2"})).skipped == ["usb0"]

    def test_cgroup_keys(self, engine: HotplugEngine, cgroup: FakeCgroup) -> None:
        config = _config({"cpulimit": "2"}, {"cpuunits": "2048"}, cpulimit=False)
        engine.apply_pending(config)
        assert cgroup.units == [2048]
        assert cgroup.limits == [None]

    def test_bridge_plugged_for_device_behind_it(self, engine: HotplugEngine, monitor: FakeMonitor) -> None:
        engine.apply_pending(_config({}, {"net6": f"virtio={MAC},bridge=vmbr0"}))
        drivers = [args["driver"] for args in monitor.arguments("device_add")]
        assert drivers == ["pci-bridge", "virtio-net-pci"]
        assert "pci.1" in monitor.devices


# ============================================================================
# Cold apply
# ============================================================================


class TestApplyPendingCold:
    """Tests for folding pending changes into a stopped VM."""

    def test_apply(self, volumes: FakeVolumeManager) -> None:
        config = _config(
            {"scsi0": "mytank:vm-100-disk-0", "virtio0": "mytank:vm-100-disk-1", "cores": "1"},
            {"virtio0": "mytank:vm-100-disk-2", "net0": "virtio,bridge=vmbr0", "cores": "2"},
            scsi0=False,
        )
        writes: list[dict[str, Any]] = []
        applied = apply_pending_cold(config, volumes, persist=lambda c: writes.append(dict(c.values)))
        assert applied == ["scsi0", "virtio0", "net0", "cores"]
        assert config.pending.is_empty()
        assert config.values["unused0"] == "mytank:vm-100-disk-0"
        assert config.values["unused1"] == "mytank:vm-100-disk-1"
        assert config.values["virtio0"] == "mytank:vm-100-disk-2"
        assert re.fullmatch(r"virtio=[0-9A-F:]{17},bridge=vmbr0", config.values["net0"])
        assert len(writes) == 4
        assert volumes.freed == []

    def test_force_delete_frees(self, volumes: FakeVolumeManager) -> None:
        config = _config({"scsi0": "mytank:vm-100-disk-0"}, scsi0=True)
        apply_pending_cold(config, volumes)
        assert volumes.freed == ["mytank:vm-100-disk-0"]
        assert config.values == {}

    def test_delete_plain_option(self, volumes: FakeVolumeManager) -> None:
        config = _config({"cores": "2"}, cores=False)
        assert apply_pending_cold(config, volumes) == ["cores"]
        assert config.values == {}

    def test_volume_in_snapshot_not_freed(self, volumes: FakeVolumeManager) -> None:
        config = _config({"scsi0": "mytank:vm-100-disk-0"})
        config.snapshots["before"] = SnapshotEntry(values={"scsi0": "mytank:vm-100-disk-0"})
        with pytest.raises(ConfigError, match="still in use"):
            delete_or_detach_drive(config, "scsi0", force=True, volumes=volumes)
        assert volumes.freed == []

    def test_cdrom_and_host_paths_left_alone(self, volumes: FakeVolumeManager) -> None:
        config = _config({"ide2": "mytank:iso/x.iso,media=cdrom", "sata0": "/dev/sdb"})
        delete_or_detach_drive(config, "ide2", force=True, volumes=volumes)
        delete_or_detach_drive(config, "sata0", force=False, volumes=volumes)
        assert volumes.freed == []
        assert not any(key.startswith("unused") for key in config.values)
