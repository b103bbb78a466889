"""Hotplug engine: reconcile pending config edits with a running VM.

``HotplugEngine.apply_pending`` walks the pending region and tries every
option key on its own:

1. fast-plug options (name, onboot, ...) are copied over without touching
   the VM
2. pending deletions
3. pending additions and changes

A key that succeeds moves into the active region and the config is written
immediately, so a crash leaves the record consistent with what the VM
actually has. A key that fails keeps its pending value and is reported in
``HotplugResult.errors``. A key that cannot be hotplugged at all (feature
disabled, bus without hotplug support, value only read at start) raises
``SkipError`` internally and simply stays pending for the next cold start.

Device add sequence::

    ensure ancestors (pci bridge, scsi controller)
      -> backing attach (drive_add / netdev_add / object-add)
      -> device_add
      -> poll inventory until the id shows up, else roll back and fail

Removal mirrors it; a device that is already gone counts as removed.

Memory and CPU follow the compiler's deterministic schedules one step at a
time, writing the new total after every confirmed step.

Pending changes on a stopped VM go through ``apply_pending_cold`` instead,
which only rewrites the config (and frees/detaches volumes).
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from vmctl import constants
from vmctl._logging import get_logger
from vmctl.addressing import address_for, bridge_parent, print_bridge_device, scsihw_infos
from vmctl.cgroup import VmCgroup
from vmctl.config_file import config_volumes
from vmctl.descriptors import THROTTLE_DIRECTIONS, Drive, Net, parse_drive, parse_size
from vmctl.exceptions import (
    ConfigError,
    HotplugError,
    MonitorCommandError,
    MonitorTimeoutError,
    SkipError,
    VmctlError,
)
from vmctl.machine import PlatformProfile, current_machine, resolve_platform
from vmctl.memory import forward_schedule, initial_dimm_size, memory_object, reverse_schedule, static_memory
from vmctl.models import DeviceId, DeviceKind, VmConfig
from vmctl.monitor import Monitor, is_device_not_found
from vmctl.options import (
    FAST_PLUG_OPTIONS,
    add_random_macs,
    add_unused_volume,
    effective_bool,
    effective_int,
    is_drive_key,
    parse_bool,
    parse_hotplug_features,
    register_unused_drive,
)
from vmctl.qemu_cmd import (
    cpu_device_string,
    cpu_topology,
    drive_backing_string,
    drive_device_string,
    net_device_string,
    netdev_string,
    resolve_drive_path,
    scsi_controller_string,
    tablet_device_string,
    tap_name,
)
from vmctl.settings import Settings
from vmctl.storage import ConfigStore, VolumeManager, parse_volume_id
from vmctl.system_probes import HostFacts
from vmctl.tap import LinuxTapBridge, TapBridge

logger = get_logger(__name__)

_MB = 1024 * 1024

_USB_PERIPHERAL_RE = re.compile(r"^usb\d+$")

# Drive properties only read when the backing is opened
_LIVE_IMMUTABLE_DRIVE_FIELDS: tuple[str, ...] = (
    "aio",
    "cache",
    "detect_zeroes",
    "discard",
    "format",
    "iothread",
    "model",
    "queues",
    "scsiblock",
    "serial",
    "snapshot",
    "ssd",
    "wwn",
)


@dataclass
class HotplugResult:
    """Outcome of one ``apply_pending`` pass.

    Attributes:
        applied: Keys moved from pending into the active region
        errors: Failed keys mapped to a message (they stay pending)
        skipped: Keys that need a cold restart (they stay pending)
    """

    applied: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# =============================================================================
# Monitor argument helpers
# =============================================================================


def device_arguments(device: str) -> dict[str, Any]:
    """Split a ``driver,key=value,...`` device string into ``device_add`` arguments."""
    driver, _, rest = device.partition(",")
    args: dict[str, Any] = {"driver": driver}
    for item in rest.split(",") if rest else []:
        key, _, value = item.partition("=")
        args[key] = value
    return args


def _coerce(value: str) -> Any:
    if value.isdigit():
        return int(value)
    if value in ("on", "yes"):
        return True
    if value in ("off", "no"):
        return False
    return value


def netdev_arguments(netdev: str) -> dict[str, Any]:
    """``-netdev`` value as typed ``netdev_add`` arguments."""
    args: dict[str, Any] = {}
    for item in netdev.split(","):
        key, _, value = item.partition("=")
        args[key] = value if key in ("id", "ifname", "script", "downscript", "hostname") else _coerce(value)
    return args


def object_arguments(text: str) -> dict[str, Any]:
    """``-object`` value as typed ``object-add`` arguments (sizes in bytes)."""
    qom_type, _, rest = text.partition(",")
    args: dict[str, Any] = {"qom-type": qom_type}
    for item in rest.split(",") if rest else []:
        key, _, value = item.partition("=")
        args[key] = parse_size(value) if key == "size" else _coerce(value)
    return args


def vm_devices(monitor: Monitor) -> set[str]:
    """Device ids currently present in the running VM.

    Merges PCI devices (recursing through bridges), block backends
    (``drive-<id>``), the USB tablet and USB peripherals.
    """
    devices: set[str] = set()

    def collect(entries: list[dict[str, Any]]) -> None:
        for entry in entries:
            if entry.get("qdev_id"):
                devices.add(entry["qdev_id"])
            bridge = entry.get("pci_bridge")
            if bridge:
                collect(bridge.get("devices", []))

    for bus in monitor.execute("query-pci") or []:
        collect(bus.get("devices", []))
    for block in monitor.execute("query-block") or []:
        name = block.get("device", "")
        if name.startswith("drive-"):
            devices.add(name[len("drive-") :])
    for mouse in monitor.execute("query-mice") or []:
        if mouse.get("name") == "QEMU HID Tablet":
            devices.add("tablet")
    for peripheral in monitor.execute("qom-list", {"path": "/machine/peripheral"}) or []:
        name = peripheral.get("name", "")
        if _USB_PERIPHERAL_RE.match(name):
            devices.add(name)
    return devices


# =============================================================================
# Config-only helpers (shared with cold apply)
# =============================================================================


def volume_in_use(config: VmConfig, key: str, volid: str) -> bool:
    """True when ``volid`` is referenced by any other key or any snapshot."""
    other = config.clone()
    other.values.pop(key, None)
    return volid in config_volumes(other, include_snapshots=True)


def delete_or_detach_drive(config: VmConfig, key: str, force: bool, volumes: VolumeManager) -> None:
    """Drop a drive's volume from the VM: free it (force, ``unusedN``) or keep it as unused.

    CD-ROMs and raw host paths are never owned by the VM and are left alone.

    Raises:
        ConfigError: Freeing a volume still referenced by a snapshot
    """
    raw = config.values.get(key)
    if raw is None:
        return
    device = DeviceId.parse(key)
    drive = Drive.parse_key(key, raw) if device.kind is DeviceKind.UNUSED else parse_drive(key, raw)
    if isinstance(drive, Drive) and drive.is_cdrom:
        return
    volid = drive.file
    if parse_volume_id(volid) is None:
        return

    if force or device.kind is DeviceKind.UNUSED:
        if volume_in_use(config, key, volid):
            raise ConfigError(
                f"unable to delete '{volid}' - volume is still in use (snapshot?)",
                context={"option": key, "volid": volid},
            )
        volumes.free(volid)
        logger.info("Freed volume of removed drive", extra={"option": key, "volid": volid})
    elif isinstance(drive, Drive):
        register_unused_drive(config.values, drive)
    else:
        add_unused_volume(config.values, volid)


def apply_pending_cold(
    config: VmConfig,
    volumes: VolumeManager,
    persist: Callable[[VmConfig], None] | None = None,
) -> list[str]:
    """Fold the pending region into the active one for a stopped VM.

    Deleted drives are detached (or freed when forced); drives whose backing
    volume changes keep the old volume reachable as ``unusedN``.

    Returns:
        Keys applied, in application order
    """
    values = config.values
    applied: list[str] = []

    for key, force in list(config.pending.deletions.items()):
        if key in values and (is_drive_key(key) or key.startswith("unused")):
            delete_or_detach_drive(config, key, force, volumes)
        values.pop(key, None)
        del config.pending.deletions[key]
        applied.append(key)
        if persist:
            persist(config)

    add_random_macs(config.pending.values)

    for key, value in list(config.pending.values.items()):
        if is_drive_key(key) and key in values:
            old = parse_drive(key, values[key])
            new = parse_drive(key, value)
            if isinstance(old, Drive) and old.file != new.file:
                register_unused_drive(values, old)
        values[key] = value
        del config.pending.values[key]
        applied.append(key)
        if persist:
            persist(config)

    if applied:
        logger.info("Applied pending changes", extra={"keys": applied})
    return applied


def _require(features: frozenset[str], feature: str) -> None:
    if feature not in features:
        raise SkipError(f"{feature} hotplug is not enabled")


# =============================================================================
# Engine
# =============================================================================


class HotplugEngine:
    """Live device reconciliation for one running VM.

    Every collaborator is injected; ``sleep`` drives the verify loops so tests
    never wait.
    """

    def __init__(
        self,
        vmid: int,
        settings: Settings,
        monitor: Monitor,
        store: ConfigStore,
        volumes: VolumeManager,
        host: HostFacts,
        cgroup: VmCgroup | None = None,
        tap: TapBridge | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.vmid = vmid
        self.settings = settings
        self.monitor = monitor
        self.store = store
        self.volumes = volumes
        self.host = host
        self.cgroup = cgroup or VmCgroup(settings.cgroup_root, vmid)
        self.tap = tap or LinuxTapBridge()
        self._sleep = sleep
        self._platform: PlatformProfile | None = None

    # -------------------------------------------------------------------------
    # Pending reconciliation
    # -------------------------------------------------------------------------

    def apply_pending(self, config: VmConfig, selection: set[str] | None = None) -> HotplugResult:
        """Hotplug every pending change (or only ``selection``) into the running VM.

        The caller holds the config lock; ``config`` is mutated and written
        after every key that succeeds.
        """
        result = HotplugResult()
        pending = config.pending
        if add_random_macs(pending.values):
            self._persist(config)
        features = parse_hotplug_features(pending.values.get("hotplug", config.values.get("hotplug")))

        def selected(key: str) -> bool:
            return selection is None or key in selection

        fast = [key for key in pending.values if key in FAST_PLUG_OPTIONS and selected(key)]
        for key in fast:
            config.values[key] = pending.values.pop(key)
            result.applied.append(key)
        if fast:
            self._persist(config)

        for key, force in list(pending.deletions.items()):
            if not selected(key):
                continue
            if self._attempt(result, key, lambda k=key, f=force: self._hotplug_delete(config, k, f, features)):
                config.values.pop(key, None)
                pending.deletions.pop(key, None)
                self._persist(config)

        for key, value in list(pending.values.items()):
            if not selected(key):
                continue
            if self._attempt(result, key, lambda k=key, v=value: self._hotplug_change(config, k, v, features)):
                config.values[key] = value
                pending.values.pop(key, None)
                self._persist(config)

        logger.info(
            "Hotplug pass finished",
            extra={
                "vmid": self.vmid,
                "applied": result.applied,
                "skipped": result.skipped,
                "errors": list(result.errors),
            },
        )
        return result

    def _attempt(self, result: HotplugResult, key: str, action: Callable[[], None]) -> bool:
        try:
            action()
        except SkipError as e:
            logger.debug("Hotplug skipped, change stays pending", extra={"vmid": self.vmid, "option": key, "reason": e.message})
            result.skipped.append(key)
            return False
        except VmctlError as e:
            logger.warning(
                "Hotplug failed, change stays pending",
                extra={"vmid": self.vmid, "option": key, "error": e.message, "error_type": type(e).__name__},
            )
            result.errors[key] = f"hotplug problem - {e.message}"
            return False
        result.applied.append(key)
        return True

    def _hotplug_delete(self, config: VmConfig, key: str, force: bool, features: frozenset[str]) -> None:  # noqa: PLR0912
        values = config.values
        device = DeviceId.try_parse(key)

        if key in FAST_PLUG_OPTIONS:
            return
        if key == "hotplug":
            if "memory" in parse_hotplug_features(values.get("hotplug")):
                raise SkipError("memory hotplug can't be disabled on a running VM")
        elif key == "tablet":
            _require(features, "usb")
            if effective_bool({}, "tablet", default=True):
                self.device_plug(config, "tablet")
            else:
                self.device_unplug(config, "tablet")
        elif device is not None and device.kind is DeviceKind.USB:
            raise SkipError("usb hotplug is not supported")
        elif key == "vcpus":
            _require(features, "cpu")
            self.cpu_hotplug(config, None)
        elif key == "balloon":
            if values.get("balloon") == "0":
                raise SkipError("balloon device is disabled")
            self.set_balloon(effective_int(values, "memory", constants.DEFAULT_MEMORY_MB))
        elif device is not None and device.kind is DeviceKind.NET:
            _require(features, "network")
            self.device_unplug(config, key)
        elif device is not None and device.kind is DeviceKind.UNUSED:
            delete_or_detach_drive(config, key, force, self.volumes)
        elif device is not None and (device.kind.is_drive or device.kind is DeviceKind.EFIDISK):
            _require(features, "disk")
            if device.kind in (DeviceKind.IDE, DeviceKind.SATA, DeviceKind.EFIDISK):
                raise SkipError(f"{device.kind.value} drives can't be hot-unplugged")
            self.device_unplug(config, key)
            delete_or_detach_drive(config, key, force, self.volumes)
        elif key == "memory":
            _require(features, "memory")
            self.memory_hotplug(config, constants.DEFAULT_MEMORY_MB)
        elif key == "cpuunits":
            self.cgroup.set_cpu_units(None)
        elif key == "cpulimit":
            self.cgroup.set_cpu_limit(None)
        else:
            raise SkipError(f"{key} is only applied at start")

    def _hotplug_change(self, config: VmConfig, key: str, value: str, features: frozenset[str]) -> None:  # noqa: PLR0912
        values = config.values
        device = DeviceId.try_parse(key)

        if key == "hotplug":
            was = "memory" in parse_hotplug_features(values.get("hotplug"))
            now = "memory" in parse_hotplug_features(value)
            if was != now:
                raise SkipError("memory hotplug can't be toggled on a running VM")
        elif key == "tablet":
            _require(features, "usb")
            if parse_bool(value):
                self.device_plug(config, "tablet")
            else:
                self.device_unplug(config, "tablet")
        elif device is not None and device.kind is DeviceKind.USB:
            raise SkipError("usb hotplug is not supported")
        elif key == "vcpus":
            _require(features, "cpu")
            self.cpu_hotplug(config, int(value))
        elif key == "balloon":
            if (values.get("balloon") != "0") != (value != "0"):
                raise SkipError("balloon device can't be enabled or disabled live")
            # manual ballooning only when automatic ballooning is off
            if values.get("shares") == "0":
                self.set_balloon(int(value) or effective_int(values, "memory", constants.DEFAULT_MEMORY_MB))
        elif device is not None and device.kind is DeviceKind.NET:
            self.update_net(config, key, value, features)
        elif device is not None and device.kind.is_drive:
            self.update_disk(config, key, value, features)
        elif key == "memory":
            _require(features, "memory")
            self.memory_hotplug(config, int(value))
        elif key == "cpuunits":
            self.cgroup.set_cpu_units(int(value))
        elif key == "cpulimit":
            self.cgroup.set_cpu_limit(float(value))
        else:
            raise SkipError(f"{key} is only applied at start")

    # -------------------------------------------------------------------------
    # Generic device plug / unplug
    # -------------------------------------------------------------------------

    def platform(self, config: VmConfig) -> PlatformProfile:
        """Profile of the running machine (queried once per engine)."""
        if self._platform is None:
            running = current_machine(self.monitor.execute("query-machines") or [])
            self._platform = resolve_platform(config.values.get("machine"), self.host.kvm_version, forced=running)
        return self._platform

    def device_plug(self, config: VmConfig, device_id: str, value: str | None = None) -> None:
        """Add one device (with its backing) and wait until the VM reports it.

        Raises:
            SkipError: Device kind has no hotplug support
            HotplugError: Device did not show up (steps already rolled back)
        """
        platform = self.platform(config)
        device = DeviceId.try_parse(device_id)
        self._ensure_bridge_for(device_id)

        if device_id == "tablet":
            self._device_add(tablet_device_string(platform.q35))
            self._verify(device_id, present=True)
            return

        if device is None or value is None or device.kind not in (DeviceKind.VIRTIO, DeviceKind.SCSI, DeviceKind.NET):
            raise SkipError(f"{device_id} can't be hotplugged")

        if device.kind is DeviceKind.NET:
            net = Net.parse(value)
            netdev = netdev_string(self.vmid, config.values, net, device.index, self.settings, self.host.vhost_net)
            self.monitor.execute("netdev_add", netdev_arguments(netdev))
            try:
                self._device_add(net_device_string(net, device.index, None, None, platform.use_old_bios_files))
                self._verify(device_id, present=True)
            except VmctlError:
                self._rollback_device(device_id, lambda: self._netdev_del(device_id))
                raise
            if net.link_down:
                self.monitor.execute("set_link", {"name": device_id, "up": False})
            return

        drive = Drive.parse_key(device_id, value)
        scsihw = config.values.get("scsihw")
        iothread: str | None = None
        if device.kind is DeviceKind.SCSI:
            self.ensure_scsi_controller(config, drive)
        elif drive.iothread:
            iothread = f"iothread-{device_id}"
            self._object_add({"qom-type": "iothread", "id": iothread})

        def detach_backing() -> None:
            self._drive_del(device_id)
            if iothread is not None:
                self._object_del(iothread)

        try:
            path = self._drive_add(drive)
            self._device_add(drive_device_string(drive, scsihw, None, None, path))
            self._verify(device_id, present=True)
        except VmctlError:
            self._rollback_device(device_id, detach_backing)
            raise

    def device_unplug(self, config: VmConfig, device_id: str) -> None:
        """Remove one device and its backing. Already-absent devices count as removed.

        Raises:
            HotplugError: Device still present after the verify window
        """
        device = DeviceId.try_parse(device_id)
        self._device_del(device_id)
        self._verify(device_id, present=False)

        if device is None:
            return
        if device.kind is DeviceKind.NET:
            self._netdev_del(device_id)
        elif device.kind in (DeviceKind.VIRTIO, DeviceKind.SCSI):
            self._drive_del(device_id)
            raw = config.values.get(device_id)
            drive = Drive.parse_key(device_id, raw) if raw else None
            if device.kind is DeviceKind.VIRTIO and drive is not None and drive.iothread:
                self._object_del(f"iothread-{device_id}")
            if device.kind is DeviceKind.SCSI and drive is not None:
                self.delete_scsi_controller_if_unused(config, drive)

    def _rollback_device(self, device_id: str, detach_backing: Callable[[], None]) -> None:
        logger.warning("Rolling back failed device add", extra={"vmid": self.vmid, "device": device_id})
        try:
            self._device_del(device_id)
            detach_backing()
        except VmctlError as e:
            logger.error(
                "Rollback of failed device add incomplete",
                extra={"vmid": self.vmid, "device": device_id, "error": e.message},
            )

    def plug_bridge(self, bus: int) -> None:
        """Make sure ``pci.<bus>`` (and its parents) exist in the running VM."""
        bridge_id = f"pci.{bus}"
        if bridge_id in vm_devices(self.monitor):
            return
        parent = bridge_parent(bus)
        if parent > 0:
            self.plug_bridge(parent)
        self._device_add(print_bridge_device(bus))
        self._verify(bridge_id, present=True)
        logger.info("PCI bridge added", extra={"vmid": self.vmid, "bridge": bridge_id})

    def _ensure_bridge_for(self, device_id: str) -> None:
        lookup = address_for(device_id)
        if lookup is not None and lookup.bridge_needed:
            self.plug_bridge(lookup.bus)

    def ensure_scsi_controller(self, config: VmConfig, drive: Drive) -> None:
        """Find or create the controller serving SCSI ``drive``."""
        scsihw = config.values.get("scsihw")
        controller_id = scsihw_infos(scsihw, drive.index).controller_id
        if controller_id in vm_devices(self.monitor):
            return
        self._ensure_bridge_for(controller_id)
        if scsihw == "virtio-scsi-single" and drive.iothread:
            self._object_add({"qom-type": "iothread", "id": f"iothread-{controller_id}"})
        self._device_add(scsi_controller_string(scsihw, controller_id, None, drive))
        self._verify(controller_id, present=True)
        logger.info("SCSI controller added", extra={"vmid": self.vmid, "controller": controller_id})

    def delete_scsi_controller_if_unused(self, config: VmConfig, drive: Drive) -> None:
        """Remove the controller of ``drive`` once no other SCSI drive uses it."""
        scsihw = config.values.get("scsihw")
        info = scsihw_infos(scsihw, drive.index)
        if scsihw != "virtio-scsi-single":
            for other in config.devices(DeviceKind.SCSI):
                if other.index != drive.index and scsihw_infos(scsihw, other.index).controller == info.controller:
                    return
        self._device_del(info.controller_id)
        self._verify(info.controller_id, present=False)
        if scsihw == "virtio-scsi-single" and drive.iothread:
            self._object_del(f"iothread-{info.controller_id}")
        logger.info("SCSI controller removed", extra={"vmid": self.vmid, "controller": info.controller_id})

    # -------------------------------------------------------------------------
    # In-place updates
    # -------------------------------------------------------------------------

    def update_net(self, config: VmConfig, key: str, value: str, features: frozenset[str]) -> None:
        """Apply a NIC change in place when possible, else replug it."""
        device = DeviceId.parse(key)
        net = Net.parse(value)
        old_raw = config.values.get(key)

        if old_raw is not None:
            old = Net.parse(old_raw)
            if (old.model, old.macaddr.lower(), old.queues) != (net.model, net.macaddr.lower(), net.queues):
                _require(features, "network")
                self.device_unplug(config, key)
            else:
                iface = tap_name(self.vmid, device.index)
                if (old.bridge, old.tag, old.firewall, old.trunks) != (net.bridge, net.tag, net.firewall, net.trunks):
                    if not (old.bridge and net.bridge):
                        # tap and user-mode backends can't be swapped under a live NIC
                        _require(features, "network")
                        self.device_unplug(config, key)
                        self.device_plug(config, key, value)
                        return
                    self.tap.unplug(iface)
                    self.tap.plug(iface, net.bridge, net.tag, bool(net.firewall), net.trunks)
                    self.tap.rate_limit(iface, net.rate)
                elif old.rate != net.rate:
                    if not net.bridge:
                        raise SkipError("rate limits need a bridged interface")
                    self.tap.rate_limit(iface, net.rate)
                if bool(old.link_down) != bool(net.link_down):
                    self.monitor.execute("set_link", {"name": key, "up": not net.link_down})
                return

        _require(features, "network")
        self.device_plug(config, key, value)

    def update_disk(self, config: VmConfig, key: str, value: str, features: frozenset[str]) -> None:
        """Apply a drive change: throttle update, media change, or full replug."""
        device = DeviceId.parse(key)
        drive = Drive.parse_key(key, value)
        old_raw = config.values.get(key)

        if old_raw is not None:
            old = Drive.parse_key(key, old_raw)
            if old.is_cdrom != drive.is_cdrom:
                raise HotplugError("unable to change media type", context={"vmid": self.vmid, "device": key})
            if old.is_cdrom and drive.is_cdrom:
                self.change_medium(drive)
                return
            if not old.is_cdrom and old.file == drive.file:
                changed = sorted(name for name in _LIVE_IMMUTABLE_DRIVE_FIELDS if getattr(old, name) != getattr(drive, name))
                if changed:
                    raise SkipError(f"can't change {', '.join(changed)} on a running VM")
                if old.throttle_settings() != drive.throttle_settings():
                    self.set_io_throttle(drive)
                return
            _require(features, "disk")
            if device.kind in (DeviceKind.IDE, DeviceKind.SATA):
                raise SkipError(f"{device.kind.value} drives can't be hotplugged")
            self.device_unplug(config, key)
            register_unused_drive(config.values, old)

        _require(features, "disk")
        if device.kind in (DeviceKind.IDE, DeviceKind.SATA):
            raise SkipError(f"{device.kind.value} drives can't be hotplugged")
        self.device_plug(config, key, value)

    def change_medium(self, drive: Drive) -> None:
        device = f"drive-{drive.name}"
        if drive.file == "none":
            self.monitor.execute("eject", {"device": device, "force": True})
            logger.info("Medium ejected", extra={"vmid": self.vmid, "device": drive.name})
            return
        path, _ = resolve_drive_path(drive, self.volumes)
        if parse_volume_id(drive.file) is not None:
            self.volumes.activate([drive.file])
        self.monitor.execute("blockdev-change-medium", {"device": device, "filename": path})
        logger.info("Medium changed", extra={"vmid": self.vmid, "device": drive.name, "path": path})

    def set_io_throttle(self, drive: Drive) -> None:
        args: dict[str, Any] = {"device": f"drive-{drive.name}"}
        for direction in THROTTLE_DIRECTIONS:
            args[f"bps{direction}"] = int((getattr(drive, f"mbps{direction}") or 0) * _MB)
            args[f"iops{direction}"] = getattr(drive, f"iops{direction}") or 0
            args[f"bps{direction}_max"] = int((getattr(drive, f"mbps{direction}_max") or 0) * _MB)
            args[f"iops{direction}_max"] = getattr(drive, f"iops{direction}_max") or 0
            for kind in ("bps", "iops"):
                length = getattr(drive, f"{kind}{direction}_max_length")
                if length:
                    args[f"{kind}{direction}_max_length"] = length
        self.monitor.execute("block_set_io_throttle", args)
        logger.info("Drive throttling updated", extra={"vmid": self.vmid, "device": drive.name})

    def resize_disk(self, config: VmConfig, key: str, size: int) -> None:
        """Grow a drive of the running VM to ``size`` bytes and record the new size.

        Raises:
            ConfigError: CD-ROM, unknown key, or shrinking
        """
        raw = config.values.get(key)
        if raw is None:
            raise ConfigError(f"no such drive {key!r}", context={"option": key})
        drive = Drive.parse_key(key, raw)
        if drive.is_cdrom:
            raise ConfigError("cdrom drives can't be resized", context={"option": key})
        if drive.size is not None and size < drive.size:
            raise ConfigError("shrinking disks is not supported", context={"option": key, "size": size})
        self.monitor.execute("block_resize", {"device": f"drive-{key}", "size": size})
        config.values[key] = drive.model_copy(update={"size": size}).print()
        self._persist(config)
        logger.info("Drive resized", extra={"vmid": self.vmid, "option": key, "size": size})

    def set_balloon(self, target_mb: int) -> None:
        self.monitor.execute("balloon", {"value": target_mb * _MB})

    # -------------------------------------------------------------------------
    # CPU hotplug
    # -------------------------------------------------------------------------

    def cpu_hotplug(self, config: VmConfig, vcpus: int | None) -> None:
        """Plug or unplug vCPUs one at a time until ``vcpus`` are online (None = all).

        Raises:
            ConfigError: More vCPUs than sockets x cores
            HotplugError: Running count disagrees with the config, or a step was not confirmed
        """
        values = config.values
        topology = cpu_topology(values)
        target = vcpus or topology.maxcpus
        if target > topology.maxcpus:
            raise ConfigError("you can't add more vcpus than maxcpus", context={"vcpus": target, "maxcpus": topology.maxcpus})
        current = int(values.get("vcpus") or 0) or topology.maxcpus
        platform = self.platform(config)

        if target < current:
            if not platform.supports(2, 7):
                raise HotplugError("cpu hot-unplugging requires qemu version 2.7 or higher")
            for cpu_id in range(current, target, -1):
                self._device_del(f"cpu{cpu_id}")
                running = self._wait_for_cpu_count(cpu_id - 1, f"error unplugging cpu{cpu_id}")
                values["vcpus"] = str(running)
                self._persist(config)
                logger.info("vCPU unplugged", extra={"vmid": self.vmid, "cpu": cpu_id})
            return

        running = self._cpu_count()
        if running != current:
            raise HotplugError(
                "vcpus in running vm does not match its configuration",
                context={"running": running, "configured": current},
            )
        if platform.supports(2, 7):
            for cpu_id in range(current + 1, target + 1):
                self._device_add(cpu_device_string(values, cpu_id))
                running = self._wait_for_cpu_count(cpu_id, f"error hotplugging cpu{cpu_id}")
                values["vcpus"] = str(running)
                self._persist(config)
                logger.info("vCPU plugged", extra={"vmid": self.vmid, "cpu": cpu_id})
        else:
            for cpu_id in range(current, target):
                self.monitor.execute("cpu-add", {"id": cpu_id})

    def _cpu_count(self) -> int:
        return len(self.monitor.execute("query-cpus-fast") or [])

    def _wait_for_cpu_count(self, expected: int, message: str) -> int:
        def check() -> int:
            count = self._cpu_count()
            if count != expected:
                raise HotplugError(message, context={"vmid": self.vmid, "expected": expected, "running": count})
            return count

        return self._retry(check, constants.CPU_UNPLUG_VERIFY_ATTEMPTS)

    # -------------------------------------------------------------------------
    # Memory hotplug
    # -------------------------------------------------------------------------

    def memory_hotplug(self, config: VmConfig, target_mb: int) -> None:
        """Grow or shrink guest memory one dimm at a time.

        Raises:
            ConfigError: NUMA disabled, below static memory, above the maximum, or misaligned
            HotplugError: A dimm was not confirmed
        """
        values = config.values
        if values.get("numa") != "1":
            raise ConfigError("NUMA needs to be enabled for memory hotplug")
        current = effective_int(values, "memory", constants.DEFAULT_MEMORY_MB)
        if target_mb == current:
            return
        static = static_memory(values)
        if target_mb < static:
            raise ConfigError(f"memory can't be lower than {static} MB")
        if target_mb > constants.MAX_HOTPLUG_MEMORY_MB:
            raise ConfigError(f"you cannot add more memory than {constants.MAX_HOTPLUG_MEMORY_MB} MB")
        nodes = cpu_topology(values).sockets
        initial = initial_dimm_size(values)

        if target_mb > current:
            steps = forward_schedule(current, target_mb, static, nodes, initial)
            if steps and steps[-1].total_mb != target_mb:
                raise ConfigError(f"memory size ({target_mb}) must be aligned to {steps[-1].size_mb} for hotplugging")
            for step in steps:
                self._object_add(object_arguments(memory_object(values, step.memdev, step.size_mb)))
                try:
                    self._device_add(f"pc-dimm,id={step.name},memdev={step.memdev},node={step.node}")
                except VmctlError:
                    self._object_del(step.memdev)
                    raise
                values["memory"] = str(step.total_mb)
                self._persist(config)
                logger.info("Memory module plugged", extra={"vmid": self.vmid, "dimm": step.name, "memory": step.total_mb})
            return

        steps = reverse_schedule(current, target_mb, static, nodes, initial)
        if steps and steps[-1].previous_total_mb != target_mb:
            raise ConfigError(f"memory size ({target_mb}) must be aligned to {steps[-1].size_mb} for unplugging")
        for step in steps:
            self._device_del(step.name)
            self._wait_for_dimm_gone(step.name)
            self._object_del(step.memdev)
            values["memory"] = str(step.previous_total_mb)
            self._persist(config)
            logger.info(
                "Memory module unplugged",
                extra={"vmid": self.vmid, "dimm": step.name, "memory": step.previous_total_mb},
            )

    def _wait_for_dimm_gone(self, name: str) -> None:
        def check() -> None:
            modules = self.monitor.execute("query-memory-devices") or []
            if any(module.get("data", {}).get("id") == name for module in modules):
                raise HotplugError(f"error unplug memory module {name}", context={"vmid": self.vmid})

        self._retry(check, self.settings.hotplug_verify_attempts)

    # -------------------------------------------------------------------------
    # Monitor primitives
    # -------------------------------------------------------------------------

    def _device_add(self, device: str) -> None:
        self.monitor.execute("device_add", device_arguments(device))

    def _device_del(self, device_id: str) -> None:
        try:
            self.monitor.execute("device_del", {"id": device_id})
        except MonitorCommandError as e:
            if not is_device_not_found(e):
                raise
            logger.debug("Device already removed", extra={"vmid": self.vmid, "device": device_id})

    def _object_add(self, arguments: dict[str, Any]) -> None:
        self.monitor.execute("object-add", arguments)

    def _object_del(self, object_id: str) -> None:
        try:
            self.monitor.execute("object-del", {"id": object_id})
        except MonitorCommandError as e:
            if not is_device_not_found(e):
                raise
            logger.debug("Object already removed", extra={"vmid": self.vmid, "object": object_id})

    def _netdev_del(self, device_id: str) -> None:
        try:
            self.monitor.execute("netdev_del", {"id": device_id})
        except MonitorCommandError as e:
            if not is_device_not_found(e):
                raise

    def _drive_add(self, drive: Drive) -> str | None:
        """Attach a drive backend via the human monitor; returns the backing path."""
        path, storage_format = resolve_drive_path(drive, self.volumes)
        if parse_volume_id(drive.file) is not None:
            self.volumes.activate([drive.file])
        backing = drive_backing_string(drive, path, storage_format, self.settings)
        output = self.monitor.human_command(f'drive_add auto "{backing}"').strip()
        if "OK" not in output:
            raise HotplugError(f"adding drive failed: {output}", context={"vmid": self.vmid, "device": drive.name})
        return path

    def _drive_del(self, device_id: str) -> None:
        output = self.monitor.human_command(f"drive_del drive-{device_id}").strip()
        if output and not re.search(r"Device '.*?' not found", output):
            raise HotplugError(f"deleting drive {device_id} failed: {output}", context={"vmid": self.vmid})

    def _verify(self, device_id: str, present: bool) -> None:
        """Poll the device inventory until ``device_id`` is (or is no longer) there."""
        action = "hotplug" if present else "hot-unplugging"

        def check() -> None:
            if (device_id in vm_devices(self.monitor)) != present:
                raise HotplugError(f"error on {action} device '{device_id}'", context={"vmid": self.vmid})

        self._retry(check, self.settings.hotplug_verify_attempts)

    def _retry(self, check: Callable[[], Any], attempts: int) -> Any:
        for attempt in Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(self.settings.hotplug_verify_interval),
            retry=retry_if_exception_type((HotplugError, MonitorTimeoutError)),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
            sleep=self._sleep,
        ):
            with attempt:
                return check()
        raise AssertionError("Unreachable: Retrying exhausted without exception")

    def _persist(self, config: VmConfig) -> None:
        self.store.write(self.vmid, config)
