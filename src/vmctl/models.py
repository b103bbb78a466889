"""Data models for vmctl.

The VM configuration is split into three regions with the same option schema:

- ``values``: the active, currently effective options
- ``pending``: edits not yet applied to the running instance, plus a set of
  option names marked for removal (each flagged force or soft)
- ``snapshots[name]``: frozen copies of the active region

Device option keys ("scsi3", "net0", "hostpci1") are parsed once into a
``DeviceId`` so downstream code switches on ``DeviceKind`` instead of
re-matching the key string.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from enum import Enum

from vmctl import constants
from vmctl.exceptions import ParseError


class DeviceKind(str, Enum):
    """Kinds of indexed device option keys."""

    IDE = "ide"
    SATA = "sata"
    SCSI = "scsi"
    VIRTIO = "virtio"
    EFIDISK = "efidisk"
    UNUSED = "unused"
    NET = "net"
    HOSTPCI = "hostpci"
    USB = "usb"
    SERIAL = "serial"
    PARALLEL = "parallel"
    NUMA = "numa"

    @property
    def is_drive(self) -> bool:
        """Attached disk bus (excludes ``unused`` and ``efidisk``)."""
        return self in (DeviceKind.IDE, DeviceKind.SATA, DeviceKind.SCSI, DeviceKind.VIRTIO)


_KIND_LIMITS: dict[DeviceKind, int] = {
    DeviceKind.IDE: constants.MAX_IDE_DISKS,
    DeviceKind.SATA: constants.MAX_SATA_DISKS,
    DeviceKind.SCSI: constants.MAX_SCSI_DISKS,
    DeviceKind.VIRTIO: constants.MAX_VIRTIO_DISKS,
    DeviceKind.EFIDISK: 1,
    DeviceKind.UNUSED: constants.MAX_UNUSED_DISKS,
    DeviceKind.NET: constants.MAX_NETS,
    DeviceKind.HOSTPCI: constants.MAX_HOSTPCI_DEVICES,
    DeviceKind.USB: constants.MAX_USB_DEVICES,
    DeviceKind.SERIAL: constants.MAX_SERIAL_PORTS,
    DeviceKind.PARALLEL: constants.MAX_PARALLEL_PORTS,
    DeviceKind.NUMA: constants.MAX_NUMA_NODES,
}

_DEVICE_KEY_RE = re.compile(r"^([a-z]+)(\d+)$")

# Bus kinds in the order the compiler discovers drives (also picks the boot disk)
DRIVE_BUS_ORDER: tuple[DeviceKind, ...] = (
    DeviceKind.IDE,
    DeviceKind.SCSI,
    DeviceKind.VIRTIO,
    DeviceKind.SATA,
)


@dataclass(frozen=True, slots=True)
class DeviceId:
    """Parsed device option key, e.g. ``DeviceId(DeviceKind.SCSI, 3)`` for ``scsi3``."""

    kind: DeviceKind
    index: int

    @property
    def name(self) -> str:
        return f"{self.kind.value}{self.index}"

    def __str__(self) -> str:
        return self.name

    @classmethod
    def parse(cls, key: str) -> DeviceId:
        """Parse an option key into a device identity.

        Raises:
            ParseError: Unknown kind or index above the kind's limit
        """
        device = cls.try_parse(key)
        if device is None:
            raise ParseError(f"not a device option key: {key!r}", key=key)
        return device

    @classmethod
    def try_parse(cls, key: str) -> DeviceId | None:
        """Like ``parse`` but returns None for non-device keys."""
        match = _DEVICE_KEY_RE.match(key)
        if match is None:
            return None
        try:
            kind = DeviceKind(match.group(1))
        except ValueError:
            return None
        index = int(match.group(2))
        if index >= _KIND_LIMITS[kind] or str(index) != match.group(2):
            return None
        return cls(kind, index)

    @classmethod
    def all_of(cls, kind: DeviceKind) -> list[DeviceId]:
        """Every valid identity of a kind, in index order."""
        return [cls(kind, i) for i in range(_KIND_LIMITS[kind])]


def drive_ids() -> list[DeviceId]:
    """All attachable drive identities in compiler discovery order."""
    ids: list[DeviceId] = []
    for kind in DRIVE_BUS_ORDER:
        ids.extend(DeviceId.all_of(kind))
    ids.append(DeviceId(DeviceKind.EFIDISK, 0))
    return ids


class OperationLock(str, Enum):
    """Operation lock stored in the config's ``lock`` key."""

    MIGRATE = "migrate"
    BACKUP = "backup"
    SNAPSHOT = "snapshot"
    SNAPSHOT_DELETE = "snapshot-delete"
    ROLLBACK = "rollback"
    SUSPENDING = "suspending"
    SUSPENDED = "suspended"
    CREATE = "create"
    CLONE = "clone"


class SnapshotState(str, Enum):
    """Sub-state of a snapshot entry during its multi-phase commit.

    ``COMMITTING`` exists only in memory between the data phase and the
    commit write; it is never persisted.
    """

    NONE = ""
    PREPARING = "prepare"
    COMMITTING = "commit"
    DELETING = "delete"

    def can_transition_to(self, target: SnapshotState) -> bool:
        return target in _SNAPSHOT_TRANSITIONS[self]


_SNAPSHOT_TRANSITIONS: dict[SnapshotState, frozenset[SnapshotState]] = {
    SnapshotState.NONE: frozenset({SnapshotState.PREPARING, SnapshotState.DELETING}),
    SnapshotState.PREPARING: frozenset({SnapshotState.COMMITTING, SnapshotState.DELETING}),
    SnapshotState.COMMITTING: frozenset({SnapshotState.NONE}),
    SnapshotState.DELETING: frozenset(),
}


@dataclass
class PendingChanges:
    """Edits not yet applied to a running instance.

    ``deletions`` maps option name to its force flag: force destroys backing
    data on apply, soft only detaches.
    """

    values: dict[str, str] = field(default_factory=dict)
    deletions: dict[str, bool] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.values and not self.deletions


@dataclass
class SnapshotEntry:
    """Frozen copy of the active options."""

    values: dict[str, str] = field(default_factory=dict)
    description: str = ""
    state: SnapshotState = SnapshotState.NONE


@dataclass
class VmConfig:
    """Full VM configuration record."""

    values: dict[str, str] = field(default_factory=dict)
    description: str = ""
    pending: PendingChanges = field(default_factory=PendingChanges)
    snapshots: dict[str, SnapshotEntry] = field(default_factory=dict)

    @property
    def lock(self) -> OperationLock | None:
        raw = self.values.get("lock")
        return OperationLock(raw) if raw else None

    @lock.setter
    def lock(self, value: OperationLock | None) -> None:
        if value is None:
            self.values.pop("lock", None)
        else:
            self.values["lock"] = value.value

    def devices(self, *kinds: DeviceKind) -> list[DeviceId]:
        """Device identities present in the active region, in index order."""
        found = [d for d in (DeviceId.try_parse(k) for k in self.values) if d is not None]
        if kinds:
            found = [d for d in found if d.kind in kinds]
        return sorted(found, key=lambda d: (d.kind.value, d.index))

    def clone(self) -> VmConfig:
        """Independent deep copy; callers mutate it freely."""
        return copy.deepcopy(self)
