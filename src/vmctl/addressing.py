"""Address allocator: PCI slots, PCIe ports, controller units, bridges.

PCI placement is a pure lookup in a static table keyed by device identity
("virtio3", "net7", "scsihw0"). A device that lands on a non-zero bus needs a
``pci-bridge`` for that bus, and the bridge itself sits on its parent bus, so
touching bus 4 also requires bus 1. ``BridgeSet`` collects those needs over a
compile pass and emits the bridges parents first.

Identities missing from the table get no address fragment and are placed by
the hypervisor's own allocation; ``require_address`` is the strict variant.

Controller multiplexing (SCSI/IDE/SATA) is a second layer on top: a drive
index maps to ``(index // capacity, index % capacity)`` where capacity depends
on the configured controller model.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from vmctl import constants
from vmctl._logging import get_logger
from vmctl.exceptions import ConfigError

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PciAddress:
    """Slot on a PCI bus (``bus`` is the bridge number, 0 = root bus)."""

    bus: int
    slot: int

    def fragment(self) -> str:
        return f",bus=pci.{self.bus},addr={self.slot:#x}"


@dataclass(frozen=True, slots=True)
class PcieAddress:
    """Slot on a named PCIe bus or root port."""

    bus: str
    slot: int

    def fragment(self) -> str:
        return f",bus={self.bus},addr={self.slot:#x}"


def _build_pci_table() -> Mapping[str, PciAddress]:
    table: dict[str, PciAddress] = {
        "piix3": PciAddress(0, 1),
        "ehci": PciAddress(0, 1),
        "vga": PciAddress(0, 2),
        "balloon0": PciAddress(0, 3),
        "watchdog": PciAddress(0, 4),
        "scsihw0": PciAddress(0, 5),
        "pci.3": PciAddress(0, 5),
        "scsihw1": PciAddress(0, 6),
        "ahci0": PciAddress(0, 7),
        "qga0": PciAddress(0, 8),
        "spice": PciAddress(0, 9),
        "pci.1": PciAddress(0, 30),
        "pci.2": PciAddress(0, 31),
        "xhci": PciAddress(1, 27),
        "pci.4": PciAddress(1, 28),
        "rng0": PciAddress(1, 29),
        "ivshmem": PciAddress(2, 11),
        "audio0": PciAddress(2, 12),
    }

    def span(prefix: str, first: int, last: int, bus: int, slot: int) -> None:
        for offset, index in enumerate(range(first, last + 1)):
            table[f"{prefix}{index}"] = PciAddress(bus, slot + offset)

    span("virtio", 0, 5, bus=0, slot=10)
    span("hostpci", 0, 1, bus=0, slot=16)
    span("net", 0, 5, bus=0, slot=18)
    span("vga", 1, 3, bus=0, slot=24)
    span("hostpci", 2, 3, bus=0, slot=27)
    span("net", 6, 31, bus=1, slot=1)
    span("virtio", 6, 15, bus=2, slot=1)
    span("hostpci", 4, 15, bus=2, slot=13)
    span("virtioscsi", 0, 30, bus=3, slot=1)
    span("scsihw", 2, 4, bus=4, slot=1)
    return MappingProxyType(table)


PCI_ADDRESS_TABLE: Mapping[str, PciAddress] = _build_pci_table()
"""Static identity -> PCI slot table. Never mutated."""


def _build_pcie_table() -> Mapping[str, PcieAddress]:
    table: dict[str, PcieAddress] = {"vga": PcieAddress("pcie.0", 1), "ivshmem": PcieAddress("pcie.0", 20)}
    for i in range(constants.MAX_HOSTPCI_DEVICES):
        table[f"hostpci{i}"] = PcieAddress(f"ich9-pcie-port-{i + 1}", 0)
    # win7 wants passthrough devices directly on the root complex
    for i, slot in enumerate((16, 17, 18, 19, 9, 10, 11, 12, 13, 14, 15, 21, 22, 23, 24, 25)):
        table[f"hostpci{i}bus0"] = PcieAddress("pcie.0", slot)
    return MappingProxyType(table)


PCIE_ADDRESS_TABLE: Mapping[str, PcieAddress] = _build_pcie_table()

# Root ports 1-4 come from the q35 boilerplate; the rest are added on demand
_PCIE_ROOT_PORT_ADDRESSES: Mapping[int, str] = MappingProxyType(
    {
        4: "10.0",
        5: "10.1",
        6: "10.2",
        7: "10.3",
        8: "10.4",
        9: "10.5",
        10: "10.6",
        11: "10.7",
        12: "11.0",
        13: "11.1",
        14: "11.2",
        15: "11.3",
    }
)


@dataclass(frozen=True, slots=True)
class AddressLookup:
    """Result of ``address_for``: slot plus whether a bridge must exist first."""

    bus: int
    slot: int
    bridge_needed: bool


def address_for(identity: str) -> AddressLookup | None:
    """Pure table lookup; None when the identity has no fixed slot."""
    address = PCI_ADDRESS_TABLE.get(identity)
    if address is None:
        return None
    return AddressLookup(bus=address.bus, slot=address.slot, bridge_needed=address.bus > 0)


def require_address(identity: str) -> PciAddress:
    """Strict lookup for callers that refuse default placement.

    Raises:
        ConfigError: Identity not in the table
    """
    address = PCI_ADDRESS_TABLE.get(identity)
    if address is None:
        raise ConfigError(f"no PCI slot reserved for device {identity!r}", context={"device": identity})
    return address


def bridge_parent(bus: int) -> int:
    """Bus the ``pci.<bus>`` bridge itself is plugged into."""
    return PCI_ADDRESS_TABLE[f"pci.{bus}"].bus


class BridgeSet:
    """Bridges required by the devices of one compile pass (or one VM)."""

    def __init__(self, predeclared: frozenset[int] = frozenset()):
        self._needed: set[int] = set()
        self._predeclared = predeclared

    def add(self, bus: int) -> None:
        while bus > 0 and bus not in self._needed:
            self._needed.add(bus)
            bus = bridge_parent(bus)

    def __contains__(self, bus: int) -> bool:
        return bus in self._needed

    def needed(self) -> frozenset[int]:
        return frozenset(self._needed)

    def ordered(self) -> list[int]:
        """Bridges to emit: parents before children, siblings in descending bus order."""
        pending = self._needed - self._predeclared
        emitted: set[int] = set(self._predeclared) | {0}
        result: list[int] = []
        while pending:
            ready = sorted((b for b in pending if bridge_parent(b) in emitted or bridge_parent(b) not in pending), reverse=True)
            for bus in ready:
                result.append(bus)
                emitted.add(bus)
                pending.discard(bus)
        return result


def pci_addr(identity: str, bridges: BridgeSet | None = None) -> str:
    """``,bus=pci.N,addr=0xS`` for ``identity``, or '' for default placement.

    Marks the target bus (and its ancestors) as needing a bridge.
    """
    address = PCI_ADDRESS_TABLE.get(identity)
    if address is None:
        logger.debug("No fixed PCI slot, using default placement", extra={"device": identity})
        return ""
    if bridges is not None:
        bridges.add(address.bus)
    return address.fragment()


def pcie_addr(identity: str) -> str:
    address = PCIE_ADDRESS_TABLE.get(identity)
    return address.fragment() if address is not None else ""


def pcie_root_port(index: int) -> str | None:
    """Device string for an extra PCIe root port (hostpci4+), None for built-in ports."""
    address = _PCIE_ROOT_PORT_ADDRESSES.get(index)
    if address is None:
        return None
    port = index + 1
    return (
        f"pcie-root-port,id=ich9-pcie-port-{port},addr={address},"
        f"x-speed=16,x-width=32,multifunction=on,bus=pcie.0,port={port},chassis={port}"
    )


def print_bridge_device(bus: int) -> str:
    return f"pci-bridge,id=pci.{bus},chassis_nr={bus}{PCI_ADDRESS_TABLE[f'pci.{bus}'].fragment()}"


# =============================================================================
# Controller multiplexing
# =============================================================================


def controller_slot(index: int, capacity: int) -> tuple[int, int]:
    """``(controller, unit)`` for a drive index on controllers of ``capacity`` units."""
    if capacity < 1:
        raise ValueError(f"controller capacity must be positive, got {capacity}")
    return divmod(index, capacity)


@dataclass(frozen=True, slots=True)
class ScsiHwInfo:
    """SCSI controller layout for a drive.

    Attributes:
        maxdev: Units per controller
        controller: Controller number for the drive
        prefix: Controller id prefix (``scsihw`` or ``virtioscsi``)
    """

    maxdev: int
    controller: int
    prefix: str

    @property
    def controller_id(self) -> str:
        return f"{self.prefix}{self.controller}"


def scsi_capacity(scsihw: str | None) -> int:
    if not scsihw or scsihw.startswith("lsi"):
        return constants.LSI_UNITS_PER_CONTROLLER
    if scsihw == "virtio-scsi-single":
        return 1
    return constants.SCSI_UNITS_PER_CONTROLLER


def scsihw_infos(scsihw: str | None, index: int) -> ScsiHwInfo:
    """Controller layout for SCSI drive ``index`` under controller model ``scsihw``."""
    maxdev = scsi_capacity(scsihw)
    controller, _ = controller_slot(index, maxdev)
    prefix = "virtioscsi" if scsihw == "virtio-scsi-single" else "scsihw"
    return ScsiHwInfo(maxdev=maxdev, controller=controller, prefix=prefix)


def scsi_device_type(scsihw: str | None) -> str:
    """Device model for a SCSI controller option value."""
    scsihw = scsihw or "lsi"
    return "virtio-scsi-pci" if scsihw.startswith("virtio-scsi-single") else scsihw
