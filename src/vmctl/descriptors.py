"""Descriptor codec: compact property strings <-> validated device models.

A property string is a comma-separated list of ``key=value`` pairs, where the
first bare (key-less) item fills the descriptor's default key:

    mytank:vm-100-disk-0,cache=writeback,discard=on,iothread=on
    virtio=AA:BB:CC:DD:EE:FF,bridge=vmbr0,tag=10

Parsing is total but strict: unknown keys, malformed enum values, duplicate
keys or mutually exclusive pairs reject the whole value with ParseError.
Printing emits the default key first and the remaining keys in sorted order,
so ``print(parse(s))`` is a canonical reordering of ``s``.

Every descriptor is a frozen pydantic model; validation failures are
re-raised as ParseError so callers only ever see one exception type.
"""

from __future__ import annotations

import hashlib
import os
import re
from typing import Any, ClassVar, Literal
from urllib.parse import unquote

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from vmctl.exceptions import ConfigError, ParseError
from vmctl.models import DeviceId, DeviceKind

# =============================================================================
# Sizes
# =============================================================================

_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMGT])?$")
_SIZE_UNITS = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def parse_size(text: str) -> int:
    """Parse ``32G`` / ``512M`` / ``1024`` (bytes) into a byte count.

    Raises:
        ValueError: Malformed size
    """
    match = _SIZE_RE.match(text.strip())
    if match is None:
        raise ValueError(f"invalid size {text!r}")
    number = float(match.group(1))
    unit = match.group(2)
    return int(number * _SIZE_UNITS[unit]) if unit else int(number)


def format_size(size: int) -> str:
    """Format bytes with the largest binary unit that divides them exactly."""
    for suffix in ("T", "G", "M", "K"):
        unit = _SIZE_UNITS[suffix]
        if size >= unit and size % unit == 0:
            return f"{size // unit}{suffix}"
    return str(size)


def parse_number_sets(text: str) -> list[tuple[int, int]]:
    """Parse ``0-3;8;10-11`` into inclusive ranges.

    Raises:
        ValueError: Malformed part or descending range
    """
    ranges: list[tuple[int, int]] = []
    for part in text.split(";"):
        match = re.match(r"^\s*(\d+)(?:-(\d+))?\s*$", part)
        if match is None:
            raise ValueError(f"invalid range: {part}")
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) is not None else start
        if end < start:
            raise ValueError(f"invalid range: {part} ({end} < {start})")
        ranges.append((start, end))
    return ranges


def random_mac() -> str:
    """Random locally administered unicast MAC address."""
    octets = bytearray(os.urandom(6))
    octets[0] = (octets[0] & 0xFE) | 0x02
    return ":".join(f"{b:02X}" for b in octets)


def stable_mac(seed: str) -> str:
    """Locally administered unicast MAC derived from ``seed`` (same seed, same MAC)."""
    octets = bytearray(hashlib.sha256(seed.encode()).digest()[:6])
    octets[0] = (octets[0] & 0xFE) | 0x02
    return ":".join(f"{b:02X}" for b in octets)


# =============================================================================
# Property-string base
# =============================================================================


def split_property_string(
    text: str,
    default_key: str | None = None,
    aliases: dict[str, str] | None = None,
) -> dict[str, str]:
    """Split a property string into a raw key/value mapping.

    Raises:
        ParseError: Empty item, duplicate key, or bare value without default key
    """
    aliases = aliases or {}
    result: dict[str, str] = {}
    for item in text.split(","):
        if not item:
            raise ParseError(f"empty item in property string {text!r}")
        if "=" in item:
            key, value = item.split("=", 1)
            key = aliases.get(key, key)
        elif default_key is not None and default_key not in result:
            key, value = default_key, item
        else:
            raise ParseError(f"value without key: {item!r}")
        if key in result:
            raise ParseError(f"duplicate key in property string: {key!r}")
        result[key] = value
    return result


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    return str(value)


class PropertyString(BaseModel):
    """Base for descriptors encoded as property strings."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    default_key: ClassVar[str | None] = None
    aliases: ClassVar[dict[str, str]] = {}
    internal_fields: ClassVar[frozenset[str]] = frozenset()
    size_fields: ClassVar[frozenset[str]] = frozenset()

    @classmethod
    def _validate_raw(cls, raw: dict[str, Any], source: str, key: str | None = None):
        for name in raw:
            if name in cls.internal_fields:
                raise ParseError(f"unknown property {name!r}", key=key)
        return cls._build(raw, source, key)

    @classmethod
    def _build(cls, data: dict[str, Any], source: str, key: str | None = None):
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            details = "; ".join(_describe_error(err) for err in e.errors())
            raise ParseError(
                f"unable to parse {cls.__name__.lower()} {source!r}: {details}",
                context={"key": key, "value": source},
                key=key,
            ) from e

    @classmethod
    def parse(cls, text: str):
        """Parse a property string into this descriptor.

        Raises:
            ParseError: Invalid descriptor
        """
        raw = split_property_string(text, cls.default_key, cls.aliases)
        return cls._validate_raw(raw, text)

    def _items(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, by_alias=True)

    def print(self) -> str:
        """Canonical property string: default key first, then sorted keys."""
        items = self._items()
        parts: list[str] = []
        if self.default_key is not None and self.default_key in items:
            parts.append(self._print_item(self.default_key, items.pop(self.default_key), bare=True))
        parts.extend(self._print_item(k, items[k]) for k in sorted(items))
        return ",".join(parts)

    def _print_item(self, name: str, value: Any, bare: bool = False) -> str:
        text = format_size(value) if name in self.size_fields else _format_value(value)
        return text if bare else f"{name}={text}"


def _describe_error(err: dict[str, Any]) -> str:
    loc = ".".join(str(part) for part in err.get("loc", ()))
    msg = err.get("msg", "invalid value")
    return f"{loc}: {msg}" if loc else msg


# =============================================================================
# Drives
# =============================================================================

CacheMode = Literal["none", "writethrough", "writeback", "unsafe", "directsync"]
ImageFormat = Literal["raw", "cow", "qcow", "qed", "qcow2", "vmdk", "cloop"]

DIRECT_CACHE_MODES = frozenset({"none", "off", "directsync"})

# Fields valid only on some buses; anything else is common to all drives
_BUS_SPECIFIC_FIELDS: dict[str, frozenset[DeviceKind]] = {
    "iothread": frozenset({DeviceKind.SCSI, DeviceKind.VIRTIO}),
    "model": frozenset({DeviceKind.IDE}),
    "queues": frozenset({DeviceKind.SCSI}),
    "scsiblock": frozenset({DeviceKind.SCSI}),
    "ssd": frozenset({DeviceKind.IDE, DeviceKind.SCSI, DeviceKind.SATA}),
    "wwn": frozenset({DeviceKind.IDE, DeviceKind.SCSI, DeviceKind.SATA}),
}

THROTTLE_DIRECTIONS: tuple[str, ...] = ("", "_rd", "_wr")

# (field, field it requires)
_THROTTLE_REQUIREMENTS: tuple[tuple[str, str], ...] = (
    ("bps_max_length", "mbps_max"),
    ("bps_rd_max_length", "mbps_rd_max"),
    ("bps_wr_max_length", "mbps_wr_max"),
    ("iops_max_length", "iops_max"),
    ("iops_rd_max_length", "iops_rd_max"),
    ("iops_wr_max_length", "iops_wr_max"),
)

# Pairs that may not both be set
_THROTTLE_EXCLUSIONS: tuple[tuple[str, str], ...] = (
    ("mbps", "mbps_rd"),
    ("mbps", "mbps_wr"),
    ("iops", "iops_rd"),
    ("iops", "iops_wr"),
    ("mbps", "mbps_max"),
    ("mbps_rd", "mbps_rd_max"),
    ("mbps_wr", "mbps_wr_max"),
    ("iops", "iops_max"),
    ("iops_rd", "iops_rd_max"),
    ("iops_wr", "iops_wr_max"),
)

THROTTLE_FIELDS: tuple[str, ...] = tuple(
    f"{prefix}{direction}{suffix}"
    for direction in THROTTLE_DIRECTIONS
    for prefix, suffix in (
        ("mbps", ""),
        ("mbps", "_max"),
        ("bps", "_max_length"),
        ("iops", ""),
        ("iops", "_max"),
        ("iops", "_max_length"),
    )
)

_CDROM_FORBIDDEN = ("snapshot", "trans", "format", "heads", "secs", "cyls")


class Drive(PropertyString):
    """Disk or CD-ROM attached to an IDE/SATA/SCSI/virtio bus.

    ``bus`` and ``index`` come from the option key and are never printed.
    Sizes are stored in bytes; ``bps*`` inputs are normalized to ``mbps*``.
    """

    default_key: ClassVar[str | None] = "file"
    aliases: ClassVar[dict[str, str]] = {
        "volume": "file",
        "bps_rd_length": "bps_rd_max_length",
        "bps_wr_length": "bps_wr_max_length",
        "iops_rd_length": "iops_rd_max_length",
        "iops_wr_length": "iops_wr_max_length",
    }
    internal_fields: ClassVar[frozenset[str]] = frozenset({"bus", "index"})
    size_fields: ClassVar[frozenset[str]] = frozenset({"size"})

    bus: DeviceKind = Field(exclude=True)
    index: int = Field(exclude=True, ge=0)

    file: str = Field(min_length=1)
    media: Literal["disk", "cdrom"] | None = None
    cyls: int | None = None
    heads: int | None = None
    secs: int | None = None
    trans: Literal["none", "lba", "auto"] | None = None
    snapshot: bool | None = None
    cache: CacheMode | None = None
    format: ImageFormat | None = None
    size: int | None = Field(default=None, ge=0)
    backup: bool | None = None
    replicate: bool | None = None
    rerror: Literal["ignore", "report", "stop"] | None = None
    werror: Literal["enospc", "ignore", "report", "stop"] | None = None
    aio: Literal["native", "threads"] | None = None
    discard: Literal["ignore", "on"] | None = None
    detect_zeroes: bool | None = None
    serial: str | None = Field(default=None, max_length=60)
    shared: bool | None = None

    # bus-specific
    iothread: bool | None = None
    model: str | None = Field(default=None, max_length=120)
    queues: int | None = Field(default=None, ge=2)
    scsiblock: bool | None = None
    ssd: bool | None = None
    wwn: str | None = Field(default=None, pattern=r"^0x[0-9a-fA-F]{16}$")

    # throttling
    mbps: float | None = Field(default=None, ge=0)
    mbps_rd: float | None = Field(default=None, ge=0)
    mbps_wr: float | None = Field(default=None, ge=0)
    mbps_max: float | None = Field(default=None, ge=0)
    mbps_rd_max: float | None = Field(default=None, ge=0)
    mbps_wr_max: float | None = Field(default=None, ge=0)
    iops: int | None = Field(default=None, ge=0)
    iops_rd: int | None = Field(default=None, ge=0)
    iops_wr: int | None = Field(default=None, ge=0)
    iops_max: int | None = Field(default=None, ge=0)
    iops_rd_max: int | None = Field(default=None, ge=0)
    iops_wr_max: int | None = Field(default=None, ge=0)
    bps_max_length: int | None = Field(default=None, ge=1)
    bps_rd_max_length: int | None = Field(default=None, ge=1)
    bps_wr_max_length: int | None = Field(default=None, ge=1)
    iops_max_length: int | None = Field(default=None, ge=1)
    iops_rd_max_length: int | None = Field(default=None, ge=1)
    iops_wr_max_length: int | None = Field(default=None, ge=1)

    @model_validator(mode="before")
    @classmethod
    def _normalize_bps(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for direction in THROTTLE_DIRECTIONS:
            raw = data.pop(f"bps{direction}", None)
            if raw is None:
                continue
            if f"mbps{direction}" in data:
                raise ValueError(f"both bps{direction} and mbps{direction} specified")
            data[f"mbps{direction}"] = round(int(raw) / (1024 * 1024), 3)
        return data

    @field_validator("size", mode="before")
    @classmethod
    def _parse_size(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_size(value)
        return value

    @model_validator(mode="after")
    def _check_combinations(self) -> Drive:
        if not (self.bus.is_drive or self.bus is DeviceKind.UNUSED):
            raise ValueError(f"{self.bus.value} is not a drive bus")

        if self.bus is not DeviceKind.UNUSED:
            for name, buses in _BUS_SPECIFIC_FIELDS.items():
                if getattr(self, name) is not None and self.bus not in buses:
                    raise ValueError(f"property {name!r} is not valid for {self.bus.value} drives")

        for option, required in _THROTTLE_REQUIREMENTS:
            if getattr(self, option) and not getattr(self, required):
                raise ValueError(f"{option} requires {required}")

        for first, second in _THROTTLE_EXCLUSIONS:
            if getattr(self, first) is not None and getattr(self, second) is not None:
                raise ValueError(f"{first} and {second} are mutually exclusive")

        if self.media == "cdrom":
            for name in _CDROM_FORBIDDEN:
                if getattr(self, name) is not None:
                    raise ValueError(f"property {name!r} is not allowed for cdrom media")
            if self.bus is DeviceKind.VIRTIO:
                raise ValueError("cdrom media is not supported on virtio")

        return self

    @classmethod
    def parse_key(cls, key: str, text: str) -> Drive:
        """Parse the value of a drive option key (``scsi3``, ``unused0``).

        Raises:
            ParseError: Not a drive key or invalid value
        """
        device = DeviceId.parse(key)
        raw: dict[str, Any] = split_property_string(text, cls.default_key, cls.aliases)
        for name in raw:
            if name in cls.internal_fields:
                raise ParseError(f"unknown property {name!r}", key=key)
        return cls._build({**raw, "bus": device.kind, "index": device.index}, text, key)

    @classmethod
    def parse(cls, text: str):
        raise TypeError("drives need their option key; use Drive.parse_key()")

    @property
    def device(self) -> DeviceId:
        return DeviceId(self.bus, self.index)

    @property
    def name(self) -> str:
        return self.device.name

    @property
    def is_cdrom(self) -> bool:
        return self.media == "cdrom"

    @property
    def is_cache_direct(self) -> bool:
        return self.cache is not None and self.cache in DIRECT_CACHE_MODES

    def throttle_settings(self) -> dict[str, float | int | None]:
        return {name: getattr(self, name) for name in THROTTLE_FIELDS}

    def unescaped_serial(self) -> str | None:
        return unquote(self.serial) if self.serial else None

    def unescaped_model(self) -> str | None:
        return unquote(self.model) if self.model else None


class EfiDisk(PropertyString):
    """Persistent EFI variable store for OVMF guests."""

    default_key: ClassVar[str | None] = "file"
    aliases: ClassVar[dict[str, str]] = {"volume": "file"}
    size_fields: ClassVar[frozenset[str]] = frozenset({"size"})

    file: str = Field(min_length=1)
    format: ImageFormat | None = None
    size: int | None = Field(default=None, ge=0)

    @field_validator("size", mode="before")
    @classmethod
    def _parse_size(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_size(value)
        return value


def parse_drive(key: str, text: str) -> Drive | EfiDisk:
    """Parse any disk-like option value by its key."""
    device = DeviceId.parse(key)
    if device.kind is DeviceKind.EFIDISK:
        return EfiDisk._validate_raw(split_property_string(text, EfiDisk.default_key, EfiDisk.aliases), text, key)
    return Drive.parse_key(key, text)


def print_drive(drive: Drive | EfiDisk) -> str:
    return drive.print()


# =============================================================================
# Network
# =============================================================================

NIC_MODELS: tuple[str, ...] = (
    "rtl8139",
    "ne2k_pci",
    "e1000",
    "pcnet",
    "virtio",
    "ne2k_isa",
    "i82551",
    "i82557b",
    "i82559er",
    "vmxnet3",
    "e1000-82540em",
    "e1000-82544gc",
    "e1000-82545em",
)

NicModel = Literal[
    "rtl8139",
    "ne2k_pci",
    "e1000",
    "pcnet",
    "virtio",
    "ne2k_isa",
    "i82551",
    "i82557b",
    "i82559er",
    "vmxnet3",
    "e1000-82540em",
    "e1000-82544gc",
    "e1000-82545em",
]

_NUMBER_SET_PATTERN = r"^\d+(?:-\d+)?(?:;\d+(?:-\d+)?)*$"


class Net(PropertyString):
    """Network interface. No bridge means user-mode (NAT) networking.

    The model doubles as a key for the MAC address: ``virtio=AA:BB:...``.
    A random MAC is generated when none is given.
    """

    default_key: ClassVar[str | None] = "model"

    model: NicModel
    macaddr: str = Field(default_factory=random_mac, pattern=r"^[0-9a-fA-F]{2}(?::[0-9a-fA-F]{2}){5}$")
    bridge: str | None = None
    queues: int | None = Field(default=None, ge=0, le=16)
    rate: float | None = Field(default=None, ge=0)
    tag: int | None = Field(default=None, ge=1, le=4094)
    trunks: str | None = Field(default=None, pattern=_NUMBER_SET_PATTERN)
    firewall: bool | None = None
    link_down: bool | None = None

    @classmethod
    def parse(cls, text: str) -> Net:
        raw: dict[str, Any] = {}
        for item in text.split(","):
            if "=" in item:
                key, value = item.split("=", 1)
                if key in NIC_MODELS:
                    if "model" in raw:
                        raise ParseError(f"duplicate key in property string: 'model' in {text!r}")
                    raw["model"] = key
                    key = "macaddr"
            elif item and "model" not in raw:
                key, value = "model", item
            else:
                raise ParseError(f"invalid item {item!r} in {text!r}")
            if key in raw:
                raise ParseError(f"duplicate key in property string: {key!r}")
            raw[key] = value
        return cls._validate_raw(raw, text)

    def print(self) -> str:
        items = self._items()
        parts = [f"{items.pop('model')}={items.pop('macaddr')}"]
        parts.extend(self._print_item(k, items[k]) for k in sorted(items))
        return ",".join(parts)

    @property
    def generated_mac(self) -> bool:
        """True when the value carried no MAC and one was made up while parsing."""
        return "macaddr" not in self.model_fields_set

    @property
    def is_virtio(self) -> bool:
        return self.model == "virtio"

    @property
    def device_model(self) -> str:
        return "virtio-net-pci" if self.model == "virtio" else self.model


# =============================================================================
# Passthrough
# =============================================================================

_PCI_ID_RE = re.compile(r"^([a-f0-9]{2}:[a-f0-9]{2})(?:\.([a-f0-9]))?$")


class HostPciId(BaseModel):
    """One host PCI address; ``function`` None means every function of the slot."""

    model_config = ConfigDict(frozen=True)

    slot: str
    function: str | None = None

    @property
    def address(self) -> str:
        return f"{self.slot}.{self.function}" if self.function is not None else self.slot


class HostPci(PropertyString):
    """Host PCI device(s) passed through with vfio."""

    default_key: ClassVar[str | None] = "host"

    host: str
    rombar: bool | None = None
    romfile: str | None = Field(default=None, pattern=r"^[^,;]+$")
    pcie: bool | None = None
    x_vga: bool | None = Field(default=None, alias="x-vga")

    @field_validator("host")
    @classmethod
    def _check_host(cls, value: str) -> str:
        for part in value.split(";"):
            if _PCI_ID_RE.match(part) is None:
                raise ValueError(f"invalid PCI id {part!r}")
        return value

    @property
    def pci_ids(self) -> list[HostPciId]:
        ids = []
        for part in self.host.split(";"):
            match = _PCI_ID_RE.match(part)
            if match is None:
                raise ConfigError(f"invalid PCI id {part!r}", context={"host": self.host})
            ids.append(HostPciId(slot=match.group(1), function=match.group(2)))
        return ids


_USB_HOST_RE = re.compile(r"^(?:spice|\d+-\d+(?:\.\d+)*|[0-9a-fA-F]{4}:[0-9a-fA-F]{4})$")


class Usb(PropertyString):
    """Host USB device/port passthrough or a SPICE redirection channel."""

    default_key: ClassVar[str | None] = "host"

    host: str = Field(pattern=_USB_HOST_RE.pattern)
    usb3: bool | None = None

    @property
    def is_spice(self) -> bool:
        return self.host == "spice"

    def device_properties(self) -> str:
        """``usb-host`` selection properties for the host spec."""
        if "-" in self.host:
            bus, port = self.host.split("-", 1)
            return f"hostbus={int(bus)},hostport={port}"
        vendor, product = self.host.split(":", 1)
        return f"vendorid=0x{vendor.lower()},productid=0x{product.lower()}"


# =============================================================================
# Misc descriptors
# =============================================================================


class Watchdog(PropertyString):
    """Emulated hardware watchdog."""

    default_key: ClassVar[str | None] = "model"

    model: Literal["i6300esb", "ib700"] = "i6300esb"
    action: Literal["reset", "shutdown", "poweroff", "pause", "debug", "none"] | None = None


CPU_VENDORS: dict[str, str] = {
    "486": "GenuineIntel",
    "pentium": "GenuineIntel",
    "pentium2": "GenuineIntel",
    "pentium3": "GenuineIntel",
    "coreduo": "GenuineIntel",
    "core2duo": "GenuineIntel",
    "Conroe": "GenuineIntel",
    "Penryn": "GenuineIntel",
    "Nehalem": "GenuineIntel",
    "Nehalem-IBRS": "GenuineIntel",
    "Westmere": "GenuineIntel",
    "Westmere-IBRS": "GenuineIntel",
    "SandyBridge": "GenuineIntel",
    "SandyBridge-IBRS": "GenuineIntel",
    "IvyBridge": "GenuineIntel",
    "IvyBridge-IBRS": "GenuineIntel",
    "Haswell": "GenuineIntel",
    "Haswell-IBRS": "GenuineIntel",
    "Haswell-noTSX": "GenuineIntel",
    "Haswell-noTSX-IBRS": "GenuineIntel",
    "Broadwell": "GenuineIntel",
    "Broadwell-IBRS": "GenuineIntel",
    "Broadwell-noTSX": "GenuineIntel",
    "Broadwell-noTSX-IBRS": "GenuineIntel",
    "Skylake-Client": "GenuineIntel",
    "Skylake-Client-IBRS": "GenuineIntel",
    "Skylake-Server": "GenuineIntel",
    "Skylake-Server-IBRS": "GenuineIntel",
    "athlon": "AuthenticAMD",
    "phenom": "AuthenticAMD",
    "Opteron_G1": "AuthenticAMD",
    "Opteron_G2": "AuthenticAMD",
    "Opteron_G3": "AuthenticAMD",
    "Opteron_G4": "AuthenticAMD",
    "Opteron_G5": "AuthenticAMD",
    "EPYC": "AuthenticAMD",
    "EPYC-IBPB": "AuthenticAMD",
    # generic types, vendor comes from the host
    "host": "default",
    "kvm32": "default",
    "kvm64": "default",
    "qemu32": "default",
    "qemu64": "default",
    "max": "default",
}

_CPU_FLAG = r"[+-](?:pcid|spec-ctrl)"


class Cpu(PropertyString):
    """Emulated CPU model and extra flags."""

    default_key: ClassVar[str | None] = "cputype"

    cputype: str | None = None
    hidden: bool | None = None
    flags: str | None = Field(default=None, pattern=rf"^{_CPU_FLAG}(?:;{_CPU_FLAG})*$")

    @field_validator("cputype")
    @classmethod
    def _check_cputype(cls, value: str | None) -> str | None:
        if value is not None and value not in CPU_VENDORS:
            raise ValueError(f"unknown CPU type {value!r}")
        return value

    def flag_list(self) -> list[str]:
        return self.flags.split(";") if self.flags else []


class Numa(PropertyString):
    """Guest NUMA node."""

    cpus: str = Field(pattern=_NUMBER_SET_PATTERN)
    memory: float | None = Field(default=None, gt=0)
    hostnodes: str | None = Field(default=None, pattern=_NUMBER_SET_PATTERN)
    policy: Literal["preferred", "bind", "interleave"] | None = None

    @field_validator("cpus", "hostnodes")
    @classmethod
    def _check_ranges(cls, value: str | None) -> str | None:
        if value is not None:
            parse_number_sets(value)
        return value

    def cpu_ranges(self) -> list[tuple[int, int]]:
        return parse_number_sets(self.cpus)

    def hostnode_ranges(self) -> list[tuple[int, int]]:
        return parse_number_sets(self.hostnodes) if self.hostnodes else []


class Agent(PropertyString):
    """Guest agent channel."""

    default_key: ClassVar[str | None] = "enabled"

    enabled: bool = False
    fstrim_cloned_disks: bool | None = None


_SMBIOS_TEXT = r"^\S+$"


class Smbios1(PropertyString):
    """SMBIOS type 1 (system information) fields."""

    uuid: str | None = Field(
        default=None, pattern=r"^[a-fA-F0-9]{8}(?:-[a-fA-F0-9]{4}){3}-[a-fA-F0-9]{12}$"
    )
    version: str | None = Field(default=None, pattern=_SMBIOS_TEXT)
    serial: str | None = Field(default=None, pattern=_SMBIOS_TEXT)
    manufacturer: str | None = Field(default=None, pattern=_SMBIOS_TEXT)
    product: str | None = Field(default=None, pattern=_SMBIOS_TEXT)
    sku: str | None = Field(default=None, pattern=_SMBIOS_TEXT)
    family: str | None = Field(default=None, pattern=_SMBIOS_TEXT)
