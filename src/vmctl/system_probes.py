"""Host capability probes feeding the command compiler.

Probes run once per process and cache their results. The compiler itself
never touches the host: it receives a frozen ``HostFacts`` snapshot, which
keeps compilation deterministic and lets tests pass synthetic hosts.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import psutil

from vmctl._logging import get_logger
from vmctl.exceptions import VmEnvironmentError
from vmctl.machine import QemuVersion
from vmctl.settings import Settings

logger = get_logger(__name__)

_CPUINFO_PATH = Path("/proc/cpuinfo")
_NUMA_NODE_ROOT = Path("/sys/devices/system/node")
_VHOST_NET_PATH = Path("/dev/vhost-net")
_ISCSI_INITIATOR_PATH = Path("/etc/iscsi/initiatorname.iscsi")
_PCI_DEVICE_ROOT = Path("/sys/bus/pci/devices")

_HVM_FLAGS_RE = re.compile(r"^flags\s*:.*\b(?:vmx|svm)\b", re.MULTILINE)
_INITIATOR_RE = re.compile(r"^\s*InitiatorName\s*=\s*([.\-:\w]+)", re.MULTILINE)


@dataclass(frozen=True)
class HostFacts:
    """Read-only snapshot of the host as seen by the compiler.

    Attributes:
        cpu_count: Logical CPUs available to one VM
        kvm_version: Installed hypervisor binary version
        hvm_supported: CPU exposes VT-x / AMD-V
        vhost_net: Kernel vhost-net acceleration available
        numa_nodes: Host NUMA node ids
        iscsi_initiator: Host iSCSI initiator name, if configured
        pci_functions: Functions present per host PCI slot ("01:00" -> ("0", "1"))
    """

    cpu_count: int
    kvm_version: QemuVersion
    hvm_supported: bool = True
    vhost_net: bool = True
    numa_nodes: frozenset[int] = frozenset({0})
    iscsi_initiator: str | None = None
    pci_functions: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def numa_node_exists(self, node: int) -> bool:
        return node in self.numa_nodes


class _ProbeCache:
    """Container for cached probe results (avoids global statements)."""

    __slots__ = ("hvm", "kvm_versions")

    def __init__(self) -> None:
        self.hvm: bool | None = None
        self.kvm_versions: dict[str, QemuVersion] = {}


_probe_cache = _ProbeCache()


def probe_kvm_version(qemu_bin: Path) -> QemuVersion:
    """Version of the hypervisor binary (cached per binary path).

    Raises:
        VmEnvironmentError: Binary missing or version banner unparsable
    """
    key = str(qemu_bin)
    cached = _probe_cache.kvm_versions.get(key)
    if cached is not None:
        return cached

    try:
        result = subprocess.run(  # noqa: S603
            [key, "-version"], check=True, capture_output=True, text=True, timeout=10
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise VmEnvironmentError(f"unable to run {key} -version: {e}", context={"qemu_bin": key}) from e

    first_line = result.stdout.splitlines()[0] if result.stdout else ""
    try:
        version = QemuVersion.parse(first_line)
    except ValueError as e:
        raise VmEnvironmentError(f"unable to parse hypervisor version: {first_line!r}") from e

    _probe_cache.kvm_versions[key] = version
    logger.debug("Detected hypervisor version", extra={"qemu_bin": key, "version": str(version)})
    return version


def check_hvm_support(cpuinfo_path: Path = _CPUINFO_PATH) -> bool:
    """True when the CPU advertises hardware virtualization (cached)."""
    if _probe_cache.hvm is not None:
        return _probe_cache.hvm
    try:
        text = cpuinfo_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        logger.debug("Cannot read cpuinfo, assuming no hardware virtualization", extra={"path": str(cpuinfo_path)})
        text = ""
    _probe_cache.hvm = _HVM_FLAGS_RE.search(text) is not None
    return _probe_cache.hvm


def host_cpu_count(settings: Settings) -> int:
    """Logical CPU count, honouring the settings override."""
    if settings.host_cpu_count is not None:
        return settings.host_cpu_count
    return psutil.cpu_count(logical=True) or 1


def host_numa_nodes(root: Path = _NUMA_NODE_ROOT) -> frozenset[int]:
    nodes = {int(p.name[len("node") :]) for p in root.glob("node[0-9]*")} if root.is_dir() else set()
    return frozenset(nodes or {0})


def iscsi_initiator_name(path: Path = _ISCSI_INITIATOR_PATH) -> str | None:
    try:
        match = _INITIATOR_RE.search(path.read_text(encoding="utf-8"))
    except OSError:
        return None
    return match.group(1) if match else None


def host_pci_functions(root: Path = _PCI_DEVICE_ROOT) -> dict[str, tuple[str, ...]]:
    """Group host PCI functions by slot (domain 0000 only)."""
    functions: dict[str, list[str]] = {}
    if not root.is_dir():
        return {}
    for entry in sorted(root.glob("0000:*")):
        slot, _, function = entry.name[len("0000:") :].rpartition(".")
        functions.setdefault(slot, []).append(function)
    return {slot: tuple(fns) for slot, fns in functions.items()}


def probe_host(settings: Settings) -> HostFacts:
    """Collect every host fact the compiler needs."""
    return HostFacts(
        cpu_count=host_cpu_count(settings),
        kvm_version=probe_kvm_version(settings.qemu_bin),
        hvm_supported=settings.skip_hvm_check or check_hvm_support(),
        vhost_net=_VHOST_NET_PATH.exists(),
        numa_nodes=host_numa_nodes(),
        iscsi_initiator=iscsi_initiator_name(),
        pci_functions=host_pci_functions(),
    )
