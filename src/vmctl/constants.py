"""Constants for vmctl limits, schedules and timeouts."""

from typing import Final

# ============================================================================
# Controller Limits
# ============================================================================

MAX_IDE_DISKS: Final[int] = 4
"""IDE slots (2 controllers x master/slave)."""

MAX_SATA_DISKS: Final[int] = 6
"""SATA ports on one AHCI controller."""

MAX_SCSI_DISKS: Final[int] = 31
"""SCSI option keys scsi0..scsi30."""

MAX_VIRTIO_DISKS: Final[int] = 16
"""virtio-blk option keys virtio0..virtio15."""

MAX_UNUSED_DISKS: Final[int] = 256
"""Detached volume references unused0..unused255."""

MAX_NETS: Final[int] = 32
"""NIC option keys net0..net31."""

MAX_HOSTPCI_DEVICES: Final[int] = 16
"""PCI passthrough option keys hostpci0..hostpci15."""

MAX_USB_DEVICES: Final[int] = 5
"""USB passthrough option keys usb0..usb4."""

MAX_SERIAL_PORTS: Final[int] = 4
"""Serial port option keys serial0..serial3."""

MAX_PARALLEL_PORTS: Final[int] = 3
"""Parallel port option keys parallel0..parallel2."""

MAX_NUMA_NODES: Final[int] = 8
"""NUMA node option keys numa0..numa7."""

IDE_UNITS_PER_CONTROLLER: Final[int] = 2
"""Master and slave on one IDE channel."""

AHCI_PORTS_PER_CONTROLLER: Final[int] = 6
"""Ports per AHCI controller."""

LSI_UNITS_PER_CONTROLLER: Final[int] = 7
"""SCSI IDs on an LSI parallel SCSI bus (id 7 is the initiator)."""

SCSI_UNITS_PER_CONTROLLER: Final[int] = 256
"""LUNs per virtio-scsi / megasas controller."""

MAX_NET_QUEUES: Final[int] = 16
"""Upper bound for multiqueue virtio-net."""

# ============================================================================
# Memory Schedule
# ============================================================================

STATIC_MEMORY_MB: Final[int] = 1024
"""Base memory that is never unplugged when memory hotplug is enabled."""

DIMM_INITIAL_SIZE_MB: Final[int] = 512
"""Size of the first pluggable memory module."""

DIMMS_PER_SIZE_GROUP: Final[int] = 32
"""Modules per size group; size doubles after each group."""

DIMM_SIZE_GROUPS: Final[int] = 8
"""Number of doubling groups."""

MAX_MEMORY_SLOTS: Final[int] = 255
"""Hotplug slots declared on the command line."""

MAX_HOTPLUG_MEMORY_MB: Final[int] = 4 * 1024 * 1024
"""maxmem declared on the command line (4 TiB)."""

DEFAULT_MEMORY_MB: Final[int] = 512
"""Guest memory when the config has no ``memory`` key."""

# ============================================================================
# Boot Order
# ============================================================================

BOOT_PRIORITY_STEP: Final[int] = 100
"""Gap between boot-order bands (disk, cdrom, net)."""

# ============================================================================
# Net
# ============================================================================

MAX_TAP_IFNAME_LENGTH: Final[int] = 15
"""Linux IFNAMSIZ minus the terminating NUL."""

DEFAULT_NET_MODEL: Final[str] = "virtio-net-pci"
"""Device used when a NIC has no model."""

# ============================================================================
# Monitor
# ============================================================================

MONITOR_DEFAULT_TIMEOUT_SECONDS: Final[float] = 3.0
"""Timeout for ordinary QMP commands."""

MONITOR_BLOCK_TIMEOUT_SECONDS: Final[float] = 60.0
"""Timeout for block-layer commands (drive_add, drive_del, savevm-start)."""

MONITOR_MIGRATE_TIMEOUT_SECONDS: Final[float] = 3600.0
"""Timeout for migration/state-save commands that legitimately block."""

GUEST_STATS_POLLING_INTERVAL_SECONDS: Final[int] = 2
"""Balloon statistics polling interval configured after start."""

# ============================================================================
# Hotplug Verification
# ============================================================================

HOTPLUG_VERIFY_ATTEMPTS: Final[int] = 6
"""Polls of the device inventory before an add/remove is declared failed."""

HOTPLUG_VERIFY_INTERVAL_SECONDS: Final[float] = 1.0
"""Sleep between inventory polls."""

CPU_UNPLUG_VERIFY_ATTEMPTS: Final[int] = 5
"""Polls of query-cpus after a vCPU device_del."""

# ============================================================================
# Lifecycle
# ============================================================================

LOCK_TIMEOUT_SECONDS: Final[float] = 10.0
"""Advisory config lock acquisition timeout."""

LOCK_POLL_INTERVAL_SECONDS: Final[float] = 0.1
"""Interval between non-blocking flock attempts."""

START_TIMEOUT_SECONDS: Final[float] = 30.0
"""Time allowed for the hypervisor process to daemonize."""

SHUTDOWN_TIMEOUT_SECONDS: Final[float] = 60.0
"""Graceful shutdown wait before escalating."""

TERMINATE_TIMEOUT_SECONDS: Final[float] = 10.0
"""Wait after SIGTERM before SIGKILL."""

KILL_TIMEOUT_SECONDS: Final[float] = 5.0
"""Wait after SIGKILL before giving up."""

PROCESS_POLL_INTERVAL_SECONDS: Final[float] = 1.0
"""Interval between liveness checks while waiting for exit."""

RUN_FILE_SUFFIXES: Final[tuple[str, ...]] = ("mon", "qmp", "pid", "vnc", "qga")
"""Transient per-VM files under the run directory removed on stop."""

# ============================================================================
# Resource Control
# ============================================================================

DEFAULT_CPU_UNITS: Final[int] = 1024
"""cgroup v1 cpu.shares default, mapped onto cgroup v2 cpu.weight."""

CGROUP_CPU_PERIOD_US: Final[int] = 100_000
"""cpu.max period; quota is cpulimit * period."""

CGROUP_ROOT: Final[str] = "/sys/fs/cgroup"
"""cgroup v2 unified hierarchy mount point."""
