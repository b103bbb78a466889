"""Memory topology: flat size, NUMA nodes and the hotpluggable dimm schedule.

With memory hotplug enabled the guest boots with a small static block and
every megabyte above it lives in a ``pc-dimm`` module. Modules follow a fixed
schedule: 32 modules of 512 MB, then 32 of 1 GB, doubling every 32 modules,
assigned round-robin across NUMA nodes. The same schedule is used to compile
the start command, to grow a running guest and (walked backwards) to shrink
it, so a module name always denotes the same size and node.

Example (static 1024 MB, 2 nodes, target 2560 MB)::

    dimm0  512M node0  total 1536
    dimm1  512M node1  total 2048
    dimm2  512M node0  total 2560
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator

from vmctl import constants
from vmctl.descriptors import Numa
from vmctl.exceptions import ConfigError
from vmctl.models import DeviceId, DeviceKind

HUGEPAGES_MOUNT_ROOT = "/run/hugepages/kvm"


@dataclass(frozen=True, slots=True)
class DimmStep:
    """One module of the dimm schedule.

    Attributes:
        index: Module number (``dimm<index>``)
        size_mb: Module size
        node: Guest NUMA node the module is attached to
        total_mb: Guest memory once this module is plugged
    """

    index: int
    size_mb: int
    node: int
    total_mb: int

    @property
    def name(self) -> str:
        return f"dimm{self.index}"

    @property
    def memdev(self) -> str:
        return f"mem-{self.name}"

    @property
    def previous_total_mb(self) -> int:
        return self.total_mb - self.size_mb


def static_memory(values: dict[str, str]) -> int:
    """Boot-time memory block when hotplug is on (scaled per socket for 1G pages)."""
    if values.get("hugepages") == "1024":
        return constants.STATIC_MEMORY_MB * int(values.get("sockets", "1"))
    return constants.STATIC_MEMORY_MB


def initial_dimm_size(values: dict[str, str]) -> int:
    return 1024 if values.get("hugepages") == "1024" else constants.DIMM_INITIAL_SIZE_MB


def dimm_schedule(static_mb: int, nodes: int, initial_size_mb: int = constants.DIMM_INITIAL_SIZE_MB) -> Iterator[DimmStep]:
    """Every module slot in plug order, starting above ``static_mb``."""
    nodes = max(nodes, 1)
    total = static_mb
    size = initial_size_mb
    index = 0
    for _group in range(constants.DIMM_SIZE_GROUPS):
        for position in range(constants.DIMMS_PER_SIZE_GROUP):
            total += size
            yield DimmStep(index=index, size_mb=size, node=position % nodes, total_mb=total)
            index += 1
        size *= 2


def forward_schedule(
    current_mb: int,
    target_mb: int,
    static_mb: int,
    nodes: int,
    initial_size_mb: int = constants.DIMM_INITIAL_SIZE_MB,
) -> list[DimmStep]:
    """Modules to plug, in order, to grow from ``current_mb`` to ``target_mb``.

    The last step may overshoot ``target_mb``; callers that require exact
    alignment check ``steps[-1].total_mb``.
    """
    steps: list[DimmStep] = []
    if target_mb <= current_mb:
        return steps
    for step in dimm_schedule(static_mb, nodes, initial_size_mb):
        if step.total_mb <= current_mb:
            continue
        steps.append(step)
        if step.total_mb >= target_mb:
            break
    return steps


def reverse_schedule(
    current_mb: int,
    target_mb: int,
    static_mb: int,
    nodes: int,
    initial_size_mb: int = constants.DIMM_INITIAL_SIZE_MB,
) -> list[DimmStep]:
    """Modules to unplug, highest first, to shrink from ``current_mb`` to ``target_mb``.

    Exactly the forward schedule from ``target_mb`` to ``current_mb`` walked
    backwards, so grow-then-shrink returns to the starting size.
    """
    if target_mb >= current_mb:
        return []
    plugged = forward_schedule(static_mb, current_mb, static_mb, nodes, initial_size_mb)
    return [step for step in reversed(plugged) if step.previous_total_mb >= target_mb]


def memory_object(
    values: dict[str, str],
    memdev: str,
    size_mb: int,
    host_nodes: str | None = None,
    policy: str | None = None,
) -> str:
    """``-object`` value backing one NUMA node or dimm."""
    if values.get("hugepages"):
        page_kb = hugepages_size_kb(values, size_mb)
        text = f"memory-backend-file,id={memdev},size={size_mb}M,mem-path={HUGEPAGES_MOUNT_ROOT}/{page_kb}kB,share=on,prealloc=yes"
    else:
        text = f"memory-backend-ram,id={memdev},size={size_mb}M"
    if host_nodes is not None:
        text += f",host-nodes={host_nodes},policy={policy}"
    return text


def hugepages_size_kb(values: dict[str, str], size_mb: int) -> int:
    """Huge page size for a backing object of ``size_mb``.

    Raises:
        ConfigError: Size not a multiple of the requested page size
    """
    setting = values.get("hugepages")
    if setting == "1024" or (setting == "any" and size_mb % 1024 == 0):
        page_mb = 1024
    else:
        page_mb = 2
    if size_mb % page_mb:
        raise ConfigError(f"memory size {size_mb}MB is not a multiple of the {page_mb}MB huge page size")
    return page_mb * 1024


def _format_ranges(ranges: list[tuple[int, int]], separator: str) -> str:
    return separator.join(str(start) if start == end else f"{start}-{end}" for start, end in ranges)


def memory_arguments(
    values: dict[str, str],
    sockets: int,
    cores: int,
    hotplug: bool,
    host_node_exists: Callable[[int], bool],
) -> list[str]:
    """Compile ``-m``, ``-object``, ``-numa`` and ``pc-dimm`` arguments.

    Args:
        values: Active config values
        sockets: CPU sockets (default NUMA node count)
        cores: Cores per socket
        hotplug: Memory hotplug enabled
        host_node_exists: Probe for host NUMA node ids

    Raises:
        ConfigError: Inconsistent memory, NUMA or hugepages settings
    """
    memory = int(values.get("memory", str(constants.DEFAULT_MEMORY_MB)))
    numa_enabled = values.get("numa") == "1"
    custom_nodes = {
        device.index: Numa.parse(values[device.name])
        for device in DeviceId.all_of(DeviceKind.NUMA)
        if device.name in values
    }
    args: list[str] = []

    if hotplug:
        if not numa_enabled:
            raise ConfigError("NUMA needs to be enabled for memory hotplug")
        if memory > constants.MAX_HOTPLUG_MEMORY_MB:
            raise ConfigError(f"total memory is bigger than {constants.MAX_HOTPLUG_MEMORY_MB}MB")
        if custom_nodes:
            raise ConfigError("cannot enable memory hotplugging with custom NUMA topology")
        base = static_memory(values)
        if memory < base:
            raise ConfigError(f"minimum memory must be {base}MB")
        args += ["-m", f"size={base},slots={constants.MAX_MEMORY_SLOTS},maxmem={constants.MAX_HOTPLUG_MEMORY_MB}M"]
    else:
        base = memory
        args += ["-m", str(base)]

    if values.get("hugepages") and not numa_enabled:
        raise ConfigError("NUMA needs to be enabled to use hugepages")

    if numa_enabled:
        args += _numa_arguments(values, custom_nodes, base, sockets, cores, host_node_exists)

    if hotplug:
        steps = forward_schedule(base, memory, base, sockets, initial_dimm_size(values))
        for step in steps:
            args += ["-object", memory_object(values, step.memdev, step.size_mb)]
            args += ["-device", f"pc-dimm,id={step.name},memdev={step.memdev},node={step.node}"]
        if steps and steps[-1].total_mb != memory:
            raise ConfigError(f"memory size ({memory}) must be aligned to {steps[-1].size_mb} for hotplugging")

    return args


def _numa_arguments(
    values: dict[str, str],
    custom_nodes: dict[int, Numa],
    base: int,
    sockets: int,
    cores: int,
    host_node_exists: Callable[[int], bool],
) -> list[str]:
    args: list[str] = []
    hugepages = bool(values.get("hugepages"))

    if custom_nodes:
        total = 0
        for index in sorted(custom_nodes):
            node = custom_nodes[index]
            if node.memory is None:
                raise ConfigError(f"missing NUMA node{index} memory value")
            size = int(node.memory)
            total += size
            host_nodes = None
            if node.hostnodes is not None:
                ranges = node.hostnode_ranges()
                for start, end in ranges:
                    for host_node in range(start, end + 1):
                        if not host_node_exists(host_node):
                            raise ConfigError(f"host NUMA node{host_node} doesn't exist")
                if node.policy is None:
                    raise ConfigError(f"you need to define a policy for hostnode {node.hostnodes}")
                host_nodes = _format_ranges(ranges, ",")
            elif hugepages:
                raise ConfigError("NUMA hostnodes need to be defined to use hugepages")
            memdev = f"ram-node{index}"
            cpus = _format_ranges(node.cpu_ranges(), ",cpus=")
            args += ["-object", memory_object(values, memdev, size, host_nodes, node.policy)]
            args += ["-numa", f"node,nodeid={index},cpus={cpus},memdev={memdev}"]
        if total != base:
            raise ConfigError("total memory for NUMA nodes must be equal to vm static memory")
        return args

    # no custom topology: split memory and cores evenly across sockets
    node_memory = base // sockets
    for index in range(sockets):
        if hugepages and not host_node_exists(index):
            raise ConfigError(f"host NUMA node{index} doesn't exist")
        first = cores * index
        cpus = f"{first}-{first + cores - 1}" if cores > 1 else str(first)
        memdev = f"ram-node{index}"
        args += ["-object", memory_object(values, memdev, node_memory)]
        args += ["-numa", f"node,nodeid={index},cpus={cpus},memdev={memdev}"]
    return args
