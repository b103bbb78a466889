"""vmctl: control plane for QEMU/KVM virtual machines.

Turns a declarative VM configuration into a running hypervisor process and
keeps the two in sync:

- Descriptor codec: property strings such as
  ``local:vm-100-disk-0.qcow2,cache=writeback,iothread=on`` <-> typed models
- Address allocator: static PCI bus/slot table plus controller packing
- Command compiler: config -> deterministic argument vector
- Hotplug engine: pending edits -> live monitor commands, verified
- Lifecycle and lock manager: start/stop/suspend/resume, snapshots

Quick Start:
    ```python
    from vmctl import LifecycleManager, Settings
    from vmctl.storage import DirectoryVolumeManager, FileConfigStore

    settings = Settings()
    vm = LifecycleManager(
        100,
        settings,
        FileConfigStore(settings.config_dir),
        DirectoryVolumeManager(settings.storage_dir),
    )
    print(vm.showcmd())
    vm.start()
    result = vm.apply_pending()  # hotplug pending edits
    vm.shutdown(timeout=120, force=True)
    ```

Requirements:
    - QEMU 2.7+ with KVM
    - Linux host (flock, cgroups, iproute2)
    - Python 3.12+
"""

from vmctl.exceptions import (
    AlreadyRunningError,
    ConfigError,
    HotplugError,
    LockBusyError,
    MonitorCommandError,
    MonitorError,
    MonitorNotRunningError,
    MonitorTimeoutError,
    NotRunningError,
    ParseError,
    PermanentError,
    SkipError,
    SnapshotError,
    StartError,
    StopError,
    TransientError,
    VmctlError,
    VmEnvironmentError,
    VmLockedError,
)
from vmctl.hotplug import HotplugEngine, HotplugResult
from vmctl.lifecycle import LifecycleManager
from vmctl.models import DeviceId, DeviceKind, OperationLock, SnapshotState, VmConfig
from vmctl.qemu_cmd import CompiledCommand, compile_command
from vmctl.settings import Settings
from vmctl.snapshots import SnapshotManager

__all__ = [
    "AlreadyRunningError",
    "CompiledCommand",
    "ConfigError",
    "DeviceId",
    "DeviceKind",
    "HotplugEngine",
    "HotplugError",
    "HotplugResult",
    "LifecycleManager",
    "LockBusyError",
    "MonitorCommandError",
    "MonitorError",
    "MonitorNotRunningError",
    "MonitorTimeoutError",
    "NotRunningError",
    "OperationLock",
    "ParseError",
    "PermanentError",
    "Settings",
    "SkipError",
    "SnapshotError",
    "SnapshotManager",
    "SnapshotState",
    "StartError",
    "StopError",
    "TransientError",
    "VmConfig",
    "VmEnvironmentError",
    "VmLockedError",
    "VmctlError",
    "compile_command",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vmctl")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
