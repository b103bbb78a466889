"""Host side of a running VM's tap interfaces.

Used by the hotplug engine for NIC edits that can be applied without
replugging the guest device: moving the tap to another bridge or VLAN and
changing its rate limit. The engine only talks to the ``TapBridge``
protocol; ``LinuxTapBridge`` drives iproute2 (``ip``, ``bridge``, ``tc``).
"""

from __future__ import annotations

import subprocess
from typing import Protocol, runtime_checkable

from vmctl._logging import get_logger
from vmctl.exceptions import HotplugError

logger = get_logger(__name__)

# tbf burst per Mbit/s of rate, and fixed queue latency
_BURST_KB_PER_MBIT = 128
_LATENCY = "25ms"


@runtime_checkable
class TapBridge(Protocol):
    """Host network operations on tap devices."""

    def unplug(self, iface: str) -> None:
        """Detach ``iface`` from its bridge."""
        ...

    def plug(self, iface: str, bridge: str, tag: int | None, firewall: bool, trunks: str | None) -> None:
        """Attach ``iface`` to ``bridge`` (access VLAN ``tag``, trunked VLANs ``trunks``)."""
        ...

    def rate_limit(self, iface: str, rate: float | None) -> None:
        """Limit ``iface`` to ``rate`` MB/s (None removes the limit)."""
        ...


class LinuxTapBridge:
    """``TapBridge`` on Linux bridges via iproute2."""

    def __init__(self, ip_bin: str = "ip", bridge_bin: str = "bridge", tc_bin: str = "tc"):
        self.ip_bin = ip_bin
        self.bridge_bin = bridge_bin
        self.tc_bin = tc_bin

    def unplug(self, iface: str) -> None:
        self._run([self.ip_bin, "link", "set", "dev", iface, "nomaster"], iface)

    def plug(self, iface: str, bridge: str, tag: int | None, firewall: bool, trunks: str | None) -> None:
        if firewall:
            logger.warning("Firewall bridges are not managed here, attaching directly", extra={"iface": iface})
        self._run([self.ip_bin, "link", "set", "dev", iface, "master", bridge], iface)
        if tag is not None:
            self._run([self.bridge_bin, "vlan", "del", "dev", iface, "vid", "1"], iface, check=False)
            self._run([self.bridge_bin, "vlan", "add", "dev", iface, "vid", str(tag), "pvid", "untagged"], iface)
        for vid in _trunk_vids(trunks):
            self._run([self.bridge_bin, "vlan", "add", "dev", iface, "vid", str(vid)], iface)
        self._run([self.ip_bin, "link", "set", "dev", iface, "up"], iface)

    def rate_limit(self, iface: str, rate: float | None) -> None:
        self._run([self.tc_bin, "qdisc", "del", "dev", iface, "root"], iface, check=False)
        if not rate:
            return
        mbit = rate * 8
        burst_kb = max(int(mbit * _BURST_KB_PER_MBIT), 1)
        self._run(
            [self.tc_bin, "qdisc", "add", "dev", iface, "root", "tbf",
             "rate", f"{mbit}mbit", "burst", f"{burst_kb}kb", "latency", _LATENCY],
            iface,
        )  # fmt: skip

    def _run(self, cmd: list[str], iface: str, check: bool = True) -> None:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)  # noqa: S603
        except OSError as e:
            raise HotplugError(f"unable to run {cmd[0]}: {e}", context={"iface": iface}) from e
        if check and result.returncode != 0:
            raise HotplugError(
                f"{' '.join(cmd)} failed: {result.stderr.strip()}",
                context={"iface": iface, "returncode": result.returncode},
            )


def _trunk_vids(trunks: str | None) -> list[int]:
    vids: list[int] = []
    for part in (trunks or "").split(";"):
        if not part:
            continue
        start, _, end = part.partition("-")
        vids.extend(range(int(start), int(end or start) + 1))
    return vids
