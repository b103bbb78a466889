"""Closed option schema for VM configurations.

Every option key a config may carry is declared here with its type, range and
default. Values are checked once, when a config is read or written, so the
compiler and hotplug engine can trust what they receive.

Also hosts the small helpers that operate on option values rather than on a
running VM: hotplug feature lists, pending-delete bookkeeping, unused-volume
registration and the boot-order map.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from vmctl import constants
from vmctl._logging import get_logger
from vmctl.descriptors import (
    Agent,
    Cpu,
    Drive,
    EfiDisk,
    HostPci,
    Net,
    Numa,
    PropertyString,
    Smbios1,
    Usb,
    Watchdog,
)
from vmctl.exceptions import ParseError
from vmctl.models import DRIVE_BUS_ORDER, DeviceId, DeviceKind, OperationLock, VmConfig

logger = get_logger(__name__)

OptionType = Literal["boolean", "integer", "number", "string"]


@dataclass(frozen=True)
class OptionSpec:
    """Schema entry for one option key."""

    type: OptionType
    default: str | None = None
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] | None = None
    pattern: str | None = None
    descriptor: type[PropertyString] | None = None
    drive: bool = False
    max_length: int | None = None


KEYMAPS: tuple[str, ...] = (
    "de", "de-ch", "da", "en-gb", "en-us", "es", "fi", "fr", "fr-be", "fr-ca", "fr-ch",
    "hu", "is", "it", "ja", "lt", "mk", "nl", "no", "pl", "pt", "pt-br", "sv", "sl", "tr",
)  # fmt: skip

OS_TYPES: tuple[str, ...] = (
    "other", "wxp", "w2k", "w2k3", "w2k8", "wvista", "win7", "win8", "win10", "l24", "l26", "solaris",
)  # fmt: skip

SCSI_HW_TYPES: tuple[str, ...] = ("lsi", "lsi53c810", "virtio-scsi-pci", "virtio-scsi-single", "megasas", "pvscsi")

VGA_TYPES: tuple[str, ...] = (
    "std", "cirrus", "vmware", "qxl", "serial0", "serial1", "serial2", "serial3", "qxl2", "qxl3", "qxl4",
)  # fmt: skip

HOTPLUG_FEATURES: tuple[str, ...] = ("network", "disk", "cpu", "memory", "usb")

DEFAULT_HOTPLUG = "network,disk,usb"

_SNAPSHOT_NAME = r"^[a-zA-Z][a-zA-Z0-9_\-]{1,39}$"

_BASE_SCHEMA: dict[str, OptionSpec] = {
    "onboot": OptionSpec("boolean", default="0"),
    "autostart": OptionSpec("boolean", default="0"),
    "hotplug": OptionSpec("string", default=DEFAULT_HOTPLUG),
    "reboot": OptionSpec("boolean", default="1"),
    "lock": OptionSpec("string", choices=tuple(lock.value for lock in OperationLock)),
    "cpulimit": OptionSpec("number", default="0", minimum=0, maximum=128),
    "cpuunits": OptionSpec("integer", default=str(constants.DEFAULT_CPU_UNITS), minimum=2, maximum=262144),
    "memory": OptionSpec("integer", default=str(constants.DEFAULT_MEMORY_MB), minimum=16),
    "balloon": OptionSpec("integer", minimum=0),
    "shares": OptionSpec("integer", default="1000", minimum=0, maximum=50000),
    "keyboard": OptionSpec("string", choices=KEYMAPS),
    "name": OptionSpec("string", pattern=r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9\-]*[a-zA-Z0-9])?\.)*[a-zA-Z0-9](?:[a-zA-Z0-9\-]*[a-zA-Z0-9])?$"),
    "scsihw": OptionSpec("string", default="lsi", choices=SCSI_HW_TYPES),
    "ostype": OptionSpec("string", default="other", choices=OS_TYPES),
    "boot": OptionSpec("string", default="cdn"),
    "bootdisk": OptionSpec("string", pattern=r"^(?:ide|sata|scsi|virtio)\d+$"),
    "smp": OptionSpec("integer", default="1", minimum=1),
    "sockets": OptionSpec("integer", default="1", minimum=1),
    "cores": OptionSpec("integer", default="1", minimum=1),
    "numa": OptionSpec("boolean", default="0"),
    "hugepages": OptionSpec("string", choices=("any", "2", "1024")),
    "vcpus": OptionSpec("integer", default="0", minimum=1),
    "acpi": OptionSpec("boolean", default="1"),
    "agent": OptionSpec("string", descriptor=Agent),
    "kvm": OptionSpec("boolean", default="1"),
    "tdf": OptionSpec("boolean", default="0"),
    "localtime": OptionSpec("boolean"),
    "freeze": OptionSpec("boolean"),
    "vga": OptionSpec("string", choices=VGA_TYPES),
    "watchdog": OptionSpec("string", descriptor=Watchdog),
    "startdate": OptionSpec("string", default="now", pattern=r"^(?:now|\d{4}-\d{1,2}-\d{1,2}(?:T\d{1,2}:\d{1,2}:\d{1,2})?)$"),
    "startup": OptionSpec("string", pattern=r"^(?:(?:order=\d+|up=\d+|down=\d+)(?:,|$))+$"),
    "template": OptionSpec("boolean", default="0"),
    "args": OptionSpec("string"),
    "tablet": OptionSpec("boolean", default="1"),
    "migrate_speed": OptionSpec("integer", default="0", minimum=0),
    "migrate_downtime": OptionSpec("number", default="0.1", minimum=0),
    "cdrom": OptionSpec("string", descriptor=Drive, drive=True),
    "cpu": OptionSpec("string", descriptor=Cpu),
    "parent": OptionSpec("string", pattern=_SNAPSHOT_NAME),
    "snaptime": OptionSpec("integer", minimum=0),
    "vmstate": OptionSpec("string"),
    "vmstatestorage": OptionSpec("string", pattern=r"^[a-zA-Z][a-zA-Z0-9\-_.]*$"),
    "machine": OptionSpec("string", pattern=r"^(?:pc|pc(?:-i440fx)?-\d+\.\d+(?:\.pxe)?|q35|pc-q35-\d+\.\d+(?:\.pxe)?)$", max_length=40),
    "runningmachine": OptionSpec("string", pattern=r"^(?:pc|pc(?:-i440fx)?-\d+\.\d+(?:\.pxe)?|q35|pc-q35-\d+\.\d+(?:\.pxe)?)$", max_length=40),
    "smbios1": OptionSpec("string", descriptor=Smbios1, max_length=256),
    "protection": OptionSpec("boolean", default="0"),
    "bios": OptionSpec("string", default="seabios", choices=("seabios", "ovmf")),
}  # fmt: skip

_INDEXED_SCHEMA: dict[DeviceKind, OptionSpec] = {
    DeviceKind.IDE: OptionSpec("string", descriptor=Drive, drive=True),
    DeviceKind.SATA: OptionSpec("string", descriptor=Drive, drive=True),
    DeviceKind.SCSI: OptionSpec("string", descriptor=Drive, drive=True),
    DeviceKind.VIRTIO: OptionSpec("string", descriptor=Drive, drive=True),
    DeviceKind.EFIDISK: OptionSpec("string", descriptor=EfiDisk, drive=True),
    DeviceKind.UNUSED: OptionSpec("string"),
    DeviceKind.NET: OptionSpec("string", descriptor=Net),
    DeviceKind.HOSTPCI: OptionSpec("string", descriptor=HostPci),
    DeviceKind.USB: OptionSpec("string", descriptor=Usb),
    DeviceKind.SERIAL: OptionSpec("string", pattern=r"^(?:/dev/.+|socket)$"),
    DeviceKind.PARALLEL: OptionSpec("string", pattern=r"^(?:/dev/parport\d+|/dev/usb/lp\d+)$"),
    DeviceKind.NUMA: OptionSpec("string", descriptor=Numa),
}

# Options that take effect without touching the running instance
FAST_PLUG_OPTIONS: frozenset[str] = frozenset(
    {"lock", "name", "onboot", "shares", "startup", "description", "protection"}
)

_TRUE_VALUES = frozenset({"1", "on", "yes", "true"})
_FALSE_VALUES = frozenset({"0", "off", "no", "false"})


def option_spec(key: str) -> OptionSpec | None:
    """Schema entry for ``key`` or None for unknown keys."""
    spec = _BASE_SCHEMA.get(key)
    if spec is not None:
        return spec
    device = DeviceId.try_parse(key)
    if device is not None:
        return _INDEXED_SCHEMA[device.kind]
    return None


def option_exists(key: str) -> bool:
    return option_spec(key) is not None


def is_drive_key(key: str) -> bool:
    device = DeviceId.try_parse(key)
    return device is not None and (device.kind.is_drive or device.kind is DeviceKind.EFIDISK)


def parse_bool(value: str) -> bool:
    """Interpret a boolean option value.

    Raises:
        ParseError: Not one of 1/on/yes/true or 0/off/no/false
    """
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ParseError(f"type check ('boolean') failed - got {value!r}")


def check_option(key: str, value: str, *, fill_mac: bool = True) -> str:
    """Validate ``value`` against the schema and return its normalized form.

    Booleans normalize to ``1``/``0``, integers lose leading zeros, plain
    strings lose surrounding double quotes. A NIC without a MAC gets one
    generated and printed in unless ``fill_mac`` is false. Other descriptor
    values are validated but returned as written.

    Raises:
        ParseError: Unknown key or invalid value
    """
    spec = option_spec(key)
    if spec is None:
        raise ParseError(f"unknown setting {key!r}", key=key)
    if "\n" in value or "\r" in value:
        raise ParseError(f"property {key!r} contains a line feed", key=key)

    if spec.type == "boolean":
        return "1" if parse_bool(value) else "0"

    if spec.type == "integer":
        if not re.fullmatch(r"\d+", value):
            raise ParseError(f"type check ('integer') failed - got {value!r}", key=key)
        _check_range(key, spec, int(value))
        return str(int(value))

    if spec.type == "number":
        if not re.fullmatch(r"\d+(?:\.\d+)?", value):
            raise ParseError(f"type check ('number') failed - got {value!r}", key=key)
        _check_range(key, spec, float(value))
        return value

    if spec.max_length is not None and len(value) > spec.max_length:
        raise ParseError(f"value of {key!r} is too long (max {spec.max_length})", key=key)

    if key == "hotplug":
        parse_hotplug_features(value)
        return value
    if key == "boot":
        parse_boot(value)
        return value

    if spec.descriptor is Net:
        net = Net.parse(value)
        # a MAC made up while parsing must be stored or the next parse makes up another
        return net.print() if net.generated_mac and fill_mac else value

    if spec.descriptor is not None:
        if spec.descriptor is Drive:
            Drive.parse_key("ide2" if key == "cdrom" else key, value)
        else:
            spec.descriptor.parse(value)
        return value

    if spec.choices is not None and value not in spec.choices:
        raise ParseError(f"value {value!r} for {key!r} is not one of {', '.join(spec.choices)}", key=key)
    if spec.pattern is not None and not re.fullmatch(spec.pattern, value):
        raise ParseError(f"value {value!r} for {key!r} does not match format", key=key)

    match = re.fullmatch(r'"(.*)"', value)
    return match.group(1) if match else value


def _check_range(key: str, spec: OptionSpec, number: float) -> None:
    if spec.minimum is not None and number < spec.minimum:
        raise ParseError(f"value of {key!r} must be >= {spec.minimum:g}", key=key)
    if spec.maximum is not None and number > spec.maximum:
        raise ParseError(f"value of {key!r} must be <= {spec.maximum:g}", key=key)


def load_defaults() -> dict[str, str]:
    """Static defaults for every option that declares one."""
    return {key: spec.default for key, spec in _BASE_SCHEMA.items() if spec.default is not None}


def effective(values: dict[str, str], key: str) -> str | None:
    """Configured value of ``key`` falling back to its schema default."""
    if key in values:
        return values[key]
    spec = option_spec(key)
    return spec.default if spec is not None else None


def effective_bool(values: dict[str, str], key: str, default: bool = False) -> bool:
    value = effective(values, key)
    return parse_bool(value) if value is not None else default


def effective_int(values: dict[str, str], key: str, default: int = 0) -> int:
    value = effective(values, key)
    return int(value) if value is not None else default


# =============================================================================
# Hotplug features
# =============================================================================


def parse_hotplug_features(value: str | None) -> frozenset[str]:
    """Parse the ``hotplug`` option. ``0`` disables, ``1`` means the default set.

    Raises:
        ParseError: Unknown feature name
    """
    if value is None:
        value = DEFAULT_HOTPLUG
    if value == "0":
        return frozenset()
    if value == "1":
        value = DEFAULT_HOTPLUG
    features = set()
    for feature in re.split(r"[,;\s]+", value.strip()):
        if not feature:
            continue
        if feature not in HOTPLUG_FEATURES:
            raise ParseError(f"invalid hotplug feature {feature!r}", key="hotplug")
        features.add(feature)
    return frozenset(features)


# =============================================================================
# Boot order
# =============================================================================

_LEGACY_BOOT_RE = re.compile(r"^[acdn]{1,4}$")


def parse_boot(value: str) -> list[str]:
    """Parse ``boot`` into its ordered entries.

    Two forms are accepted: legacy device-class letters (``cdn``) and an
    explicit identity list (``order=scsi0;net0``).

    Raises:
        ParseError: Neither form matches
    """
    if _LEGACY_BOOT_RE.match(value):
        return list(value)
    if value.startswith("order="):
        entries = [e for e in value[len("order=") :].split(";") if e]
        for entry in entries:
            device = DeviceId.try_parse(entry)
            if device is None or not (device.kind.is_drive or device.kind in (DeviceKind.NET, DeviceKind.HOSTPCI)):
                raise ParseError(f"invalid boot device {entry!r}", key="boot")
        if len(set(entries)) != len(entries):
            raise ParseError("duplicate device in boot order", key="boot")
        return entries
    raise ParseError(f"invalid boot order {value!r}", key="boot")


def boot_order_map(
    boot: str,
    bootdisk: str | None,
    drives: list[Drive],
    nets: list[DeviceId],
) -> dict[str, int]:
    """Map device identities to ``bootindex`` priorities.

    Legacy letters give each class a band (first letter 100, second 200, ...);
    cdroms and NICs take consecutive indexes inside their band, disks only
    annotate the configured ``bootdisk``. An explicit order list numbers its
    entries from 100 upward.

    Args:
        boot: Raw ``boot`` option value
        bootdisk: Raw ``bootdisk`` option value
        drives: Attached drives in compiler discovery order
        nets: NIC identities in index order
    """
    entries = parse_boot(boot)
    result: dict[str, int] = {}

    if not _LEGACY_BOOT_RE.match(boot):
        for position, name in enumerate(entries):
            result[name] = constants.BOOT_PRIORITY_STEP + position
        return result

    bands = {letter: (i + 1) * constants.BOOT_PRIORITY_STEP for i, letter in enumerate(entries)}
    for drive in drives:
        if drive.is_cdrom:
            if "d" in bands:
                result[drive.name] = bands["d"]
                bands["d"] += 1
        elif "c" in bands:
            if bootdisk == drive.name:
                result[drive.name] = bands["c"]
            bands["c"] += 1
    for net in nets:
        if "n" in bands:
            result[net.name] = bands["n"]
            bands["n"] += 1
    return result


def resolve_first_disk(values: dict[str, str]) -> str | None:
    """First non-cdrom drive in discovery order, used as default boot disk."""
    for kind in DRIVE_BUS_ORDER:
        for device in DeviceId.all_of(kind):
            raw = values.get(device.name)
            if raw is None:
                continue
            try:
                drive = Drive.parse_key(device.name, raw)
            except ParseError:
                continue
            if not drive.is_cdrom:
                return device.name
    return None


# =============================================================================
# Pending-delete bookkeeping
# =============================================================================


def split_flagged_list(text: str | None) -> dict[str, bool]:
    """Parse ``a,!b c;d`` into ``{"a": False, "b": True, ...}`` (``!`` = force)."""
    result: dict[str, bool] = {}
    for item in re.split(r"[,;\s]+", (text or "").strip()):
        if not item:
            continue
        if item.startswith("!"):
            result[item[1:]] = True
        else:
            result[item] = False
    return result


def join_flagged_list(items: dict[str, bool], separator: str = ",") -> str:
    return separator.join(("!" if force else "") + key for key, force in items.items())


def delete_pending_option(config: VmConfig, key: str, force: bool = False) -> None:
    """Drop a pending value and mark ``key`` for removal."""
    config.pending.values.pop(key, None)
    config.pending.deletions[key] = force


def undelete_pending_option(config: VmConfig, key: str) -> None:
    config.pending.deletions.pop(key, None)


def cleanup_pending(config: VmConfig) -> bool:
    """Remove pending entries that would change nothing.

    Returns:
        True if anything was removed
    """
    changed = False
    for key, value in list(config.pending.values.items()):
        if config.values.get(key) == value:
            del config.pending.values[key]
            changed = True
    for key in list(config.pending.deletions):
        if key not in config.values:
            del config.pending.deletions[key]
            changed = True
    return changed


def add_unused_volume(values: dict[str, str], volid: str) -> str:
    """Register ``volid`` under the first free ``unusedN`` key.

    Returns the key already holding ``volid`` if there is one.

    Raises:
        ParseError: All unused slots taken
    """
    free_key = None
    for device in DeviceId.all_of(DeviceKind.UNUSED):
        current = values.get(device.name)
        if current == volid:
            return device.name
        if current is None and free_key is None:
            free_key = device.name
    if free_key is None:
        raise ParseError(f"too many unused volumes, cannot register {volid!r}")
    values[free_key] = volid
    return free_key


def register_unused_drive(values: dict[str, str], drive: Drive) -> str | None:
    """Keep a detached drive's volume reachable as ``unusedN``.

    CD-ROMs and raw host paths are not owned by the VM and are never registered.
    """
    if drive.is_cdrom or drive.file.startswith("/") or drive.file in ("none", "cdrom"):
        return None
    key = add_unused_volume(values, drive.file)
    logger.debug("Registered unused volume", extra={"volid": drive.file, "option": key})
    return key


def add_random_macs(values: dict[str, str]) -> list[str]:
    """Give every NIC without a MAC a random one, written into its value.

    Returns:
        Keys that were rewritten (the caller persists them)
    """
    filled: list[str] = []
    for device in sorted(
        (d for d in map(DeviceId.try_parse, values) if d is not None and d.kind is DeviceKind.NET),
        key=lambda d: d.index,
    ):
        net = Net.parse(values[device.name])
        if net.generated_mac:
            values[device.name] = net.print()
            filled.append(device.name)
    return filled


def windows_version(ostype: str | None) -> int:
    """Windows generation number used for clock and enlightenment rules (0 = not Windows)."""
    return {
        "wxp": 5,
        "w2k": 5,
        "w2k3": 5,
        "w2k8": 6,
        "wvista": 6,
        "win7": 7,
        "win8": 8,
        "win10": 10,
    }.get(ostype or "", 0)
