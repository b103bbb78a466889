"""Runtime configuration from environment variables."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vmctl import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with VMCTL_ prefix.
    Example: VMCTL_RUN_DIR=/tmp/vmctl-run
    """

    model_config = SettingsConfigDict(
        env_prefix="VMCTL_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Host paths
    run_dir: Path = Path("/var/run/qemu-server")
    lock_dir: Path = Path("/var/lock/qemu-server")
    config_dir: Path = Path("/etc/vmctl/qemu-server")
    storage_dir: Path = Path("/var/lib/vmctl/images")
    cgroup_root: Path = Path(constants.CGROUP_ROOT)

    # QEMU
    qemu_bin: Path = Path("/usr/bin/kvm")
    qemu_img_bin: Path = Path("/usr/bin/qemu-img")
    bridge_up_script: Path = Path("/var/lib/qemu-server/pve-bridge")
    bridge_down_script: Path = Path("/var/lib/qemu-server/pve-bridgedown")
    ovmf_code: Path = Path("/usr/share/kvm/OVMF_CODE-pure-efi.fd")
    ovmf_vars: Path = Path("/usr/share/kvm/OVMF_VARS-pure-efi.fd")
    keymap_dir: Path = Path("/usr/share/kvm/keymaps")

    # Drive cache defaults (block device vs image file backing)
    default_block_cache: Literal["none", "writethrough", "writeback", "unsafe", "directsync"] = "none"
    default_image_cache: Literal["none", "writethrough", "writeback", "unsafe", "directsync"] = "none"

    # Timeouts
    lock_timeout: float = constants.LOCK_TIMEOUT_SECONDS
    monitor_timeout: float = constants.MONITOR_DEFAULT_TIMEOUT_SECONDS
    monitor_block_timeout: float = constants.MONITOR_BLOCK_TIMEOUT_SECONDS
    monitor_migrate_timeout: float = constants.MONITOR_MIGRATE_TIMEOUT_SECONDS
    start_timeout: float = constants.START_TIMEOUT_SECONDS
    shutdown_timeout: float = constants.SHUTDOWN_TIMEOUT_SECONDS
    terminate_timeout: float = constants.TERMINATE_TIMEOUT_SECONDS

    # Hotplug verification
    hotplug_verify_attempts: int = Field(default=constants.HOTPLUG_VERIFY_ATTEMPTS, ge=1)
    hotplug_verify_interval: float = Field(default=constants.HOTPLUG_VERIFY_INTERVAL_SECONDS, ge=0)

    # Host resource override (None = auto-detect via psutil)
    # Useful for testing or container deployments where psutil reports host resources
    host_cpu_count: int | None = None

    # Testing/Debug
    skip_hvm_check: bool = False
    """Do not require hardware virtualization flags in /proc/cpuinfo.
    Useful for testing command generation on hosts without VT-x/AMD-V."""
