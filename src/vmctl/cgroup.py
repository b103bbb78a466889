"""CPU controller knobs for a running VM's cgroup.

Each VM runs in ``qemu.slice/<vmid>.scope``. Both hierarchies are handled:

- cgroup v2 (unified): ``cpu.weight`` and ``cpu.max``
- cgroup v1: ``cpu/…/cpu.shares`` and ``cpu/…/cpu.cfs_quota_us``

``cpuunits`` are expressed in v1 shares (default 1024, range 2-262144) and
converted to v2 weights on write. ``cpulimit`` is a fraction of host CPUs;
0 lifts the limit.
"""

from __future__ import annotations

from pathlib import Path

from vmctl import constants
from vmctl._logging import get_logger
from vmctl.exceptions import HotplugError

logger = get_logger(__name__)

_SLICE = "qemu.slice"

_V1_SHARES_MIN = 2
_V1_SHARES_MAX = 262_144
_V2_WEIGHT_MAX = 10_000


def shares_to_weight(shares: int) -> int:
    """Map v1 ``cpu.shares`` linearly onto the v2 ``cpu.weight`` range [1, 10000]."""
    shares = min(max(shares, _V1_SHARES_MIN), _V1_SHARES_MAX)
    return 1 + ((shares - _V1_SHARES_MIN) * (_V2_WEIGHT_MAX - 1)) // (_V1_SHARES_MAX - _V1_SHARES_MIN)


def cpu_quota_us(limit: float, period_us: int = constants.CGROUP_CPU_PERIOD_US) -> int:
    """CFS quota for a ``cpulimit`` value; -1 means unlimited."""
    if limit <= 0:
        return -1
    return int(limit * period_us)


class VmCgroup:
    """CPU controller of one VM scope."""

    def __init__(self, root: Path, vmid: int):
        self.root = root
        self.vmid = vmid

    @property
    def unified(self) -> bool:
        return (self.root / "cgroup.controllers").exists()

    @property
    def path(self) -> Path:
        scope = f"{self.vmid}.scope"
        if self.unified:
            return self.root / _SLICE / scope
        return self.root / "cpu" / _SLICE / scope

    def attach(self, pid: int) -> None:
        """Create the scope and move ``pid`` into it."""
        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise HotplugError(f"unable to create cgroup: {e}", context={"vmid": self.vmid, "path": str(self.path)}) from e
        self._write("cgroup.procs", str(pid))

    def set_cpu_units(self, units: int | None) -> None:
        """Apply ``cpuunits`` (None restores the default)."""
        shares = units if units is not None else constants.DEFAULT_CPU_UNITS
        if self.unified:
            self._write("cpu.weight", str(shares_to_weight(shares)))
        else:
            self._write("cpu.shares", str(shares))

    def set_cpu_limit(self, limit: float | None) -> None:
        """Apply ``cpulimit`` (None or 0 removes the limit)."""
        quota = cpu_quota_us(limit or 0)
        if self.unified:
            value = "max" if quota < 0 else str(quota)
            self._write("cpu.max", f"{value} {constants.CGROUP_CPU_PERIOD_US}")
        else:
            self._write("cpu.cfs_period_us", str(constants.CGROUP_CPU_PERIOD_US))
            self._write("cpu.cfs_quota_us", str(quota))

    def _write(self, name: str, value: str) -> None:
        target = self.path / name
        try:
            target.write_text(value, encoding="ascii")
        except OSError as e:
            raise HotplugError(
                f"unable to write {name}: {e}",
                context={"vmid": self.vmid, "path": str(target), "value": value},
            ) from e
        logger.debug("cgroup value written", extra={"vmid": self.vmid, "path": str(target), "value": value})
