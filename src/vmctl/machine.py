"""Machine type resolution and hypervisor version gating.

Feature checks compare against the version pinned in the machine type
(``pc-i440fx-2.9`` -> 2.9) when there is one, otherwise against the installed
binary's version. A VM started on an old machine type keeps its old device
layout even after the hypervisor is upgraded.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from vmctl.exceptions import ConfigError

_KVM_VERSION_RE = re.compile(r"^QEMU(?: PC)? emulator version (\d+)\.(\d+)(?:\.(\d+))?")
_MACHINE_VERSION_RE = re.compile(r"^pc(?:-i440fx|-q35)?-(\d+)\.(\d+)(?:\.(\d+))?")

MIN_SUPPORTED_VERSION = (1, 5)

Q35_CONFIG_FILE = "/usr/share/qemu-server/pve-q35.cfg"
USB_CONFIG_FILE = "/usr/share/qemu-server/pve-usb.cfg"

# Bridges declared by the q35 boilerplate config; never emitted again
Q35_PREDECLARED_BRIDGES: frozenset[int] = frozenset({1, 2, 3})


@dataclass(frozen=True, order=True)
class QemuVersion:
    """Hypervisor version, ordered by (major, minor, micro)."""

    major: int
    minor: int
    micro: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.micro}"

    @classmethod
    def parse(cls, text: str) -> QemuVersion:
        """Parse ``2.9``, ``2.9.1`` or a ``-version`` banner line.

        Raises:
            ValueError: No version found
        """
        match = _KVM_VERSION_RE.match(text) or re.match(r"^(\d+)\.(\d+)(?:\.(\d+))?$", text.strip())
        if match is None:
            raise ValueError(f"unable to parse QEMU version from {text!r}")
        return cls(int(match.group(1)), int(match.group(2)), int(match.group(3) or 0))

    def at_least(self, major: int, minor: int, micro: int = 0) -> bool:
        return (self.major, self.minor, self.micro) >= (major, minor, micro)


def extract_version(machine_type: str | None, kvm_version: QemuVersion | None) -> QemuVersion | None:
    """Version that gates features: the machine type's pin, else the binary's."""
    if machine_type:
        match = _MACHINE_VERSION_RE.match(machine_type)
        if match:
            return QemuVersion(int(match.group(1)), int(match.group(2)), int(match.group(3) or 0))
    return kvm_version


def machine_type_is_q35(machine_type: str | None) -> bool:
    return bool(machine_type) and "q35" in machine_type


@dataclass(frozen=True)
class PlatformProfile:
    """Resolved machine type plus the version used for feature gating.

    Attributes:
        machine_type: ``-machine type=`` value without ``.pxe`` (None = binary default)
        version: Version that gates features
        kvm_version: Installed binary version
        q35: PCIe (ICH9) chipset
        use_old_bios_files: Legacy non-EFI PXE ROMs (``.pxe`` suffix or pre-2.4)
    """

    machine_type: str | None
    version: QemuVersion
    kvm_version: QemuVersion
    q35: bool
    use_old_bios_files: bool

    def supports(self, major: int, minor: int, micro: int = 0) -> bool:
        return self.version.at_least(major, minor, micro)

    @property
    def predeclared_bridges(self) -> frozenset[int]:
        return Q35_PREDECLARED_BRIDGES if self.q35 else frozenset()


def resolve_platform(
    configured: str | None,
    kvm_version: QemuVersion,
    forced: str | None = None,
) -> PlatformProfile:
    """Resolve the machine profile for a compile pass.

    Args:
        configured: ``machine`` option from the config
        kvm_version: Installed binary version
        forced: Override used when resuming a snapshot or incoming migration

    Raises:
        ConfigError: Binary older than the minimum supported version
    """
    if not kvm_version.at_least(*MIN_SUPPORTED_VERSION):
        raise ConfigError(f"detected old qemu-kvm binary ({kvm_version})")

    machine_type = forced or configured
    use_old_bios_files = False
    if machine_type and machine_type.endswith(".pxe"):
        machine_type = machine_type[: -len(".pxe")]
        use_old_bios_files = True

    version = extract_version(machine_type, kvm_version) or kvm_version
    if machine_type and not use_old_bios_files:
        use_old_bios_files = not version.at_least(2, 4)

    return PlatformProfile(
        machine_type=machine_type,
        version=version,
        kvm_version=kvm_version,
        q35=machine_type_is_q35(configured if forced is None else forced),
        use_old_bios_files=use_old_bios_files,
    )


def current_machine(machines: list[dict]) -> str:
    """Pick the running machine type from a ``query-machines`` reply."""
    current = next((m["name"] for m in machines if m.get("is-current")), None)
    default = next((m["name"] for m in machines if m.get("is-default")), None)
    return current or default or "pc"
