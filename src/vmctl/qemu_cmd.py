"""Command compiler: VM configuration -> hypervisor argument vector.

``compile_command`` is deterministic for a given config, settings and
``HostFacts`` snapshot. It performs no side effects: it either returns a
complete ``CompiledCommand`` or raises before anything is executed. Files
that must exist before launch (the temporary EFI variable store) are
reported in the result and created by the caller.

Argument layout:

    kvm -id -name -chardev/-mon (qmp) -pidfile -daemonize
        [-smbios] [-drive if=pflash x2] [-readconfig q35]
        -smp [cpu devices] -nodefaults -boot [-no-acpi] [-no-reboot]
        -vga -vnc|-nographic [-no-hpet] -cpu <memory> [-S] [-k]
        <bridges> <devices> -rtc -machine -global <custom args>

Devices are collected in discovery order (USB controllers, tablet,
passthrough, USB devices, serial/parallel, guest agent, SPICE, balloon,
watchdog, drives, NICs); the PCI bridges they touched are emitted ahead of
them, parents first.

The device-string helpers are public: the hotplug engine regenerates a
single device's fragment with them instead of recompiling the whole VM.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from vmctl import constants
from vmctl._logging import get_logger
from vmctl.addressing import (
    BridgeSet,
    controller_slot,
    pci_addr,
    pcie_addr,
    pcie_root_port,
    print_bridge_device,
    scsi_device_type,
    scsihw_infos,
)
from vmctl.descriptors import (
    CPU_VENDORS,
    DIRECT_CACHE_MODES,
    THROTTLE_DIRECTIONS,
    Agent,
    Cpu,
    Drive,
    EfiDisk,
    HostPci,
    Net,
    Usb,
    Watchdog,
    parse_drive,
    stable_mac,
)
from vmctl.exceptions import ConfigError, VmEnvironmentError
from vmctl.machine import Q35_CONFIG_FILE, USB_CONFIG_FILE, PlatformProfile, resolve_platform
from vmctl.memory import memory_arguments
from vmctl.models import DeviceId, DeviceKind, VmConfig, drive_ids
from vmctl.options import (
    boot_order_map,
    effective,
    effective_bool,
    parse_bool,
    parse_hotplug_features,
    resolve_first_disk,
    windows_version,
)
from vmctl.platform_utils import next_spice_port
from vmctl.settings import Settings
from vmctl.storage import VolumeManager, looks_like_block_device, parse_volume_id
from vmctl.system_probes import HostFacts

logger = get_logger(__name__)

BOOT_SPLASH = "/usr/share/qemu-server/bootsplash.jpg"
ROM_DIR = "/usr/share/kvm"

# Legacy PXE option ROMs for machine types that predate EFI ROMs
_OLD_PXE_ROMS = {
    "virtio-net-pci": "pxe-virtio.rom",
    "e1000": "pxe-e1000.rom",
    "ne2k_pci": "pxe-ne2k_pci.rom",
    "pcnet": "pxe-pcnet.rom",
    "rtl8139": "pxe-rtl8139.rom",
}

_BACKING_PASSTHROUGH_FIELDS = ("heads", "secs", "cyls", "trans", "media", "format", "cache", "rerror", "werror", "aio", "discard")

_THROTTLE_QMP_NAMES = {"": "-total", "_rd": "-read", "_wr": "-write"}


# =============================================================================
# Run-file paths
# =============================================================================


def run_file(settings: Settings, vmid: int, suffix: str) -> Path:
    return settings.run_dir / f"{vmid}.{suffix}"


def qmp_socket(settings: Settings, vmid: int) -> Path:
    return run_file(settings, vmid, "qmp")


def qga_socket(settings: Settings, vmid: int) -> Path:
    return run_file(settings, vmid, "qga")


def pid_file(settings: Settings, vmid: int) -> Path:
    return run_file(settings, vmid, "pid")


def vnc_socket(settings: Settings, vmid: int) -> Path:
    return run_file(settings, vmid, "vnc")


# =============================================================================
# Result
# =============================================================================


@dataclass(frozen=True)
class CompiledCommand:
    """Output of one compile pass.

    Attributes:
        argv: Full argument vector, binary first
        volumes: Volume ids the process opens (to activate before launch)
        spice_port: TLS port reserved for SPICE, if enabled
        platform: Resolved machine profile
        bridges: PCI bridges emitted, in emission order
        efivars_copy: (template, destination) to copy before launch
    """

    argv: tuple[str, ...]
    volumes: tuple[str, ...]
    spice_port: int | None
    platform: PlatformProfile
    bridges: tuple[int, ...] = ()
    efivars_copy: tuple[Path, Path] | None = None

    def shell_command(self) -> str:
        """Copy-pasteable shell rendition of ``argv``."""
        return shlex.join(self.argv)


# =============================================================================
# Topology helpers
# =============================================================================


@dataclass(frozen=True)
class CpuTopology:
    sockets: int
    cores: int
    vcpus: int

    @property
    def maxcpus(self) -> int:
        return self.sockets * self.cores


def cpu_topology(values: dict[str, str]) -> CpuTopology:
    sockets = int(values.get("sockets") or values.get("smp") or 1)
    cores = int(values.get("cores") or 1)
    maxcpus = sockets * cores
    vcpus = int(values.get("vcpus") or 0) or maxcpus
    return CpuTopology(sockets=sockets, cores=cores, vcpus=vcpus)


def qxl_heads(vga: str | None) -> int:
    """Number of SPICE heads for a ``vga`` value (0 = no SPICE)."""
    if vga == "qxl":
        return 1
    if vga in ("qxl2", "qxl3", "qxl4"):
        return int(vga[-1])
    return 0


def cpu_model(values: dict[str, str]) -> str:
    kvm = effective_bool(values, "kvm", default=True)
    model = "kvm64" if kvm else "qemu64"
    if values.get("cpu"):
        cputype = Cpu.parse(values["cpu"]).cputype
        if cputype:
            model = cputype
    return model


# =============================================================================
# Drives
# =============================================================================


def resolve_drive_path(drive: Drive | EfiDisk, volumes: VolumeManager) -> tuple[str | None, str | None]:
    """``(path, storage format)`` for a drive's backing file.

    CD-ROMs report no format; ``none`` has no path at all.

    Raises:
        ConfigError: ``file`` is neither a volume id nor an absolute path
    """
    volid = drive.file
    is_cdrom = isinstance(drive, Drive) and drive.is_cdrom
    if is_cdrom:
        if volid == "none":
            return None, None
        if volid == "cdrom":
            return "/dev/cdrom", None
        if volid.startswith("/"):
            return volid, None
    if volid.startswith("/"):
        return volid, "raw"
    if parse_volume_id(volid) is None:
        raise ConfigError(f"unable to parse volume id {volid!r}", context={"volid": volid})
    path = volumes.resolve_path(volid)
    return path, None if is_cdrom else volumes.volume_format(volid)


def drive_backing_string(drive: Drive, path: str | None, storage_format: str | None, settings: Settings) -> str:
    """``-drive`` value: backing file plus cache, aio, throttle and zero-detect tunables."""
    opts: list[str] = []
    for name in _BACKING_PASSTHROUGH_FIELDS:
        value = getattr(drive, name)
        if value is not None:
            opts.append(f"{name}={value}")

    if drive.snapshot is not None:
        opts.append(f"snapshot={'on' if drive.snapshot else 'off'}")

    for direction in THROTTLE_DIRECTIONS:
        qmp = _THROTTLE_QMP_NAMES[direction]
        if value := getattr(drive, f"mbps{direction}"):
            opts.append(f"throttling.bps{qmp}={int(value * 1024 * 1024)}")
        if value := getattr(drive, f"mbps{direction}_max"):
            opts.append(f"throttling.bps{qmp}-max={int(value * 1024 * 1024)}")
        if value := getattr(drive, f"bps{direction}_max_length"):
            opts.append(f"throttling.bps{qmp}-max-length={value}")
        if value := getattr(drive, f"iops{direction}"):
            opts.append(f"throttling.iops{qmp}={value}")
        if value := getattr(drive, f"iops{direction}_max"):
            opts.append(f"throttling.iops{qmp}-max={value}")
        if value := getattr(drive, f"iops{direction}_max_length"):
            opts.append(f"throttling.iops{qmp}-max-length={value}")

    if storage_format and drive.format is None:
        opts.append(f"format={storage_format}")

    cache = drive.cache
    if cache is None and not drive.is_cdrom:
        is_block = path is not None and looks_like_block_device(path)
        cache = settings.default_block_cache if is_block else settings.default_image_cache
        opts.append(f"cache={cache}")

    # native aio needs O_DIRECT; otherwise leave the hypervisor default alone
    if drive.aio is None and cache in DIRECT_CACHE_MODES:
        opts.append("aio=native")

    if not drive.is_cdrom:
        if drive.detect_zeroes is False:
            detect_zeroes = "off"
        elif drive.discard is not None:
            detect_zeroes = "unmap" if drive.discard == "on" else "on"
        else:
            detect_zeroes = "on"
        opts.append(f"detect-zeroes={detect_zeroes}")

    prefix = f"file={path}," if path else ""
    suffix = "".join(f",{opt}" for opt in opts)
    return f"{prefix}if=none,id=drive-{drive.name}{suffix}"


def drive_device_string(
    drive: Drive,
    scsihw: str | None,
    bridges: BridgeSet | None,
    bootindex: int | None = None,
    path: str | None = None,
) -> str:
    """``-device`` value attaching a drive to its bus/controller."""
    name = drive.name
    if drive.bus is DeviceKind.VIRTIO:
        device = f"virtio-blk-pci,drive=drive-{name},id={name}{pci_addr(name, bridges)}"
        if drive.iothread:
            device += f",iothread=iothread-{name}"

    elif drive.bus is DeviceKind.SCSI:
        info = scsihw_infos(scsihw, drive.index)
        _, unit = controller_slot(drive.index, info.maxdev)
        if drive.is_cdrom:
            device_type = "cd"
        elif path is not None and path.startswith("iscsi://"):
            device_type = "generic"
        elif drive.scsiblock and path is not None and path.startswith("/dev/"):
            device_type = "block"
        else:
            device_type = "hd"
        if not scsihw or scsihw.startswith("lsi"):
            device = f"scsi-{device_type},bus={info.controller_id}.0,scsi-id={unit},drive=drive-{name},id={name}"
        else:
            device = (
                f"scsi-{device_type},bus={info.controller_id}.0,channel=0,scsi-id=0,"
                f"lun={drive.index},drive=drive-{name},id={name}"
            )

    elif drive.bus is DeviceKind.IDE:
        controller, unit = controller_slot(drive.index, constants.IDE_UNITS_PER_CONTROLLER)
        device_type = "cd" if drive.is_cdrom else "hd"
        device = f"ide-{device_type},bus=ide.{controller},unit={unit},drive=drive-{name},id={name}"
        if device_type == "hd" and drive.model:
            device += f",model={drive.unescaped_model()}"

    elif drive.bus is DeviceKind.SATA:
        controller, unit = controller_slot(drive.index, constants.AHCI_PORTS_PER_CONTROLLER)
        device_type = "cd" if drive.is_cdrom else "hd"
        device = f"ide-{device_type},bus=ahci{controller}.{unit},drive=drive-{name},id={name}"

    else:
        raise ConfigError(f"unsupported drive interface {drive.bus.value!r}")

    if drive.ssd and not drive.is_cdrom:
        device += ",rotation_rate=1"
    if drive.wwn:
        device += f",wwn={drive.wwn}"
    if bootindex:
        device += f",bootindex={bootindex}"
    if serial := drive.unescaped_serial():
        device += f",serial={serial}"
    return device


def scsi_controller_string(scsihw: str | None, controller_id: str, bridges: BridgeSet | None, drive: Drive) -> str:
    device = f"{scsi_device_type(scsihw)},id={controller_id}{pci_addr(controller_id, bridges)}"
    if scsihw == "virtio-scsi-single":
        if drive.iothread:
            device += f",iothread=iothread-{controller_id}"
        if drive.queues:
            device += f",num_queues={drive.queues}"
    return device


def ahci_controller_string(controller: int, bridges: BridgeSet | None) -> str:
    return f"ahci,id=ahci{controller},multifunction=on{pci_addr(f'ahci{controller}', bridges)}"


# =============================================================================
# Network
# =============================================================================


def tap_name(vmid: int, index: int) -> str:
    """Host tap interface name for ``net<index>``.

    Raises:
        ConfigError: Name exceeds the kernel's interface name limit
    """
    name = f"tap{vmid}i{index}"
    if len(name) > constants.MAX_TAP_IFNAME_LENGTH:
        raise ConfigError(f"interface name {name!r} is too long (max {constants.MAX_TAP_IFNAME_LENGTH} characters)")
    return name


def netdev_string(vmid: int, values: dict[str, str], net: Net, index: int, settings: Settings, vhost_net: bool) -> str:
    """``-netdev`` value: tap on a bridge, or user-mode NAT without one."""
    netid = f"net{index}"
    if net.bridge:
        netdev = (
            f"type=tap,id={netid},ifname={tap_name(vmid, index)},"
            f"script={settings.bridge_up_script},downscript={settings.bridge_down_script}"
        )
        if vhost_net and net.is_virtio:
            netdev += ",vhost=on"
    else:
        netdev = f"type=user,id={netid},hostname={values.get('name') or f'vm{vmid}'}"
    if net.queues and net.is_virtio:
        netdev += f",queues={net.queues}"
    return netdev


def net_device_string(
    net: Net,
    index: int,
    bridges: BridgeSet | None,
    bootindex: int | None = None,
    use_old_bios_files: bool = False,
) -> str:
    netid = f"net{index}"
    model = net.device_model
    device = f"{model},mac={net.macaddr},netdev={netid}{pci_addr(netid, bridges)},id={netid}"
    if net.queues and net.queues > 1 and net.is_virtio:
        # one vector per rx/tx queue plus config and control
        device += f",vectors={net.queues * 2 + 2},mq=on"
    if bootindex:
        device += f",bootindex={bootindex}"
    if use_old_bios_files and model in _OLD_PXE_ROMS:
        device += f",romfile={_OLD_PXE_ROMS[model]}"
    return device


# =============================================================================
# CPU
# =============================================================================


def cpu_device_string(values: dict[str, str], cpu_id: int) -> str:
    """Hotpluggable vCPU ``cpu_id`` (1-based; cpu1 is the boot CPU)."""
    cores = int(values.get("cores") or 1)
    core = (cpu_id - 1) % cores
    socket = (cpu_id - 1 - core) // cores
    return f"{cpu_model(values)}-x86_64-cpu,id=cpu{cpu_id},socket-id={socket},core-id={core},thread-id=0"


def hyperv_flags(
    winversion: int,
    platform: PlatformProfile,
    bios: str | None,
    gpu_passthrough: bool,
) -> list[str]:
    """Hyper-V enlightenments for Windows guests, version gated."""
    if winversion < 6:
        return []
    if bios == "ovmf" and winversion < 8:
        return []
    flags: list[str] = []
    if gpu_passthrough:
        flags.append("hv_vendor_id=proxmox")
    if platform.supports(2, 3):
        flags += ["hv_spinlocks=0x1fff", "hv_vapic", "hv_time"]
    else:
        flags.append("hv_spinlocks=0xffff")
    if platform.supports(2, 6):
        flags += ["hv_reset", "hv_vpindex", "hv_runtime"]
    if winversion >= 7:
        flags.append("hv_relaxed")
    return flags


def _merge_toggles(builtin: list[str], user: list[str]) -> list[str]:
    """User ``+flag``/``-flag`` entries win over built-in toggles of the same flag."""
    overridden = {flag[1:] for flag in user}
    return user + [flag for flag in builtin if flag[1:] not in overridden]


def cpu_argument(
    values: dict[str, str],
    platform: PlatformProfile,
    winversion: int,
    gpu_passthrough: bool,
    kvm_off: bool,
) -> str:
    """``-cpu`` value: model, feature toggles, enlightenments and vendor."""
    kvm = effective_bool(values, "kvm", default=True)
    model = cpu_model(values)
    cpu = Cpu.parse(values["cpu"]) if values.get("cpu") else None
    hidden = bool(cpu and cpu.hidden)
    kvm_off = kvm_off or hidden

    toggles: list[str] = []
    if model == "kvm64":
        toggles.append("+lahf_lm")
    if values.get("ostype") == "solaris":
        toggles.append("-x2apic")
    if model in ("kvm64", "kvm32"):
        toggles.append("+sep")
    if model.startswith("Opteron"):
        toggles.append("-rdtscp")
    # paravirt features would reveal the hypervisor to a hidden guest
    if platform.supports(2, 3) and kvm and not hidden:
        toggles += ["+kvm_pv_unhalt", "+kvm_pv_eoi"]

    flags = _merge_toggles(toggles, cpu.flag_list() if cpu else [])
    if kvm:
        flags += hyperv_flags(winversion, platform, values.get("bios"), gpu_passthrough)
    if kvm and model != "host":
        flags.append("enforce")
    if kvm_off:
        flags.append("kvm=off")
    vendor = CPU_VENDORS[model]
    if vendor != "default":
        flags.append(f"vendor={vendor}")

    return ",".join([model, *flags])


# =============================================================================
# USB, passthrough, misc devices
# =============================================================================


def tablet_device_string(q35: bool) -> str:
    return f"usb-tablet,id=tablet,bus={'ehci' if q35 else 'uhci'}.0,port=1"


def usb_devices(values: dict[str, str]) -> list[tuple[int, Usb]]:
    return [
        (device.index, Usb.parse(values[device.name]))
        for device in DeviceId.all_of(DeviceKind.USB)
        if device.name in values
    ]


def usb_controller_args(values: dict[str, str], bridges: BridgeSet, q35: bool) -> list[str]:
    args: list[str] = []
    devices = [usb for _, usb in usb_devices(values)]
    if not q35:
        args += ["-device", f"piix3-usb-uhci,id=uhci{pci_addr('piix3', bridges)}.0x2"]
        if any(not usb.usb3 for usb in devices):
            args += ["-readconfig", USB_CONFIG_FILE]
    if any(usb.usb3 for usb in devices):
        args += ["-device", f"nec-usb-xhci,id=xhci{pci_addr('xhci', bridges)}"]
    return args


def usb_device_args(index: int, usb: Usb) -> list[str]:
    if usb.is_spice:
        return [
            "-chardev",
            f"spicevmc,id=usbredirchardev{index},name=usbredir",
            "-device",
            f"usb-redir,chardev=usbredirchardev{index},id=usbredirdev{index},bus=ehci.0",
        ]
    device = f"usb-host,{usb.device_properties()},id=usb{index}"
    if usb.usb3:
        device += ",bus=xhci.0"
    return ["-device", device]


def hostpci_args(
    index: int,
    hostpci: HostPci,
    platform: PlatformProfile,
    winversion: int,
    bridges: BridgeSet,
    bios: str | None,
    pci_functions: dict[str, tuple[str, ...]],
    bootindex: int | None = None,
) -> list[str]:
    """vfio-pci device(s) for one ``hostpci<index>`` entry.

    Raises:
        ConfigError: PCIe requested on a non-q35 machine
    """
    identity = f"hostpci{index}"
    args: list[str] = []
    if hostpci.pcie:
        if not platform.q35:
            raise ConfigError("q35 machine model is not enabled", context={"option": identity})
        if winversion == 7:
            addr = pcie_addr(f"{identity}bus0")
        else:
            addr = pcie_addr(identity)
            if root_port := pcie_root_port(index):
                args += ["-device", root_port]
    else:
        addr = pci_addr(identity, bridges)

    host_ids: list[str] = []
    for pci_id in hostpci.pci_ids:
        if pci_id.function is not None:
            host_ids.append(pci_id.address)
        else:
            host_ids += [f"{pci_id.slot}.{fn}" for fn in pci_functions.get(pci_id.slot, ("0",))]
    multifunction = len(host_ids) > 1

    for function, host_id in enumerate(host_ids):
        device_id = f"{identity}.{function}" if multifunction else identity
        device_addr = f"{addr}.{function}" if multifunction and addr else addr
        device = f"vfio-pci,host={host_id},id={device_id}{device_addr}"
        if function == 0:
            if hostpci.rombar is False:
                device += ",rombar=0"
            if hostpci.x_vga and bios != "ovmf":
                device += ",x-vga=on"
            if multifunction:
                device += ",multifunction=on"
            if hostpci.romfile:
                device += f",romfile={ROM_DIR}/{hostpci.romfile}"
            if bootindex:
                device += f",bootindex={bootindex}"
        args += ["-device", device]
    return args


def _check_char_device(path: str, key: str) -> None:
    if not Path(path).is_char_device():
        raise ConfigError(f"no such {key.rstrip('0123456789')} device {path!r}", context={"option": key})


# =============================================================================
# Compiler
# =============================================================================


def compile_command(  # noqa: PLR0912, PLR0915
    vmid: int,
    config: VmConfig,
    settings: Settings,
    host: HostFacts,
    volumes: VolumeManager,
    forced_machine: str | None = None,
    spice_port_allocator: Callable[[], int] = next_spice_port,
) -> CompiledCommand:
    """Compile the active region of ``config`` into a launch command.

    Args:
        vmid: VM id
        config: Full config record; only the active region is used
        settings: Runtime settings (paths, cache defaults)
        host: Host facts snapshot
        volumes: Volume manager used to resolve volume ids to paths
        forced_machine: Machine type override (rollback to a saved state, migration)
        spice_port_allocator: Reserves a TLS port when SPICE is enabled

    Raises:
        ConfigError: Unsupported or inconsistent configuration
        VmEnvironmentError: Host lacks a required capability
    """
    values = dict(config.values)
    kvm = effective_bool(values, "kvm", default=True)
    if kvm and not host.hvm_supported:
        raise VmEnvironmentError(
            "KVM virtualisation configured, but not available. "
            "Either disable in VM configuration or enable in BIOS.",
            context={"vmid": vmid},
        )

    platform = resolve_platform(values.get("machine"), host.kvm_version, forced_machine)
    q35 = platform.q35
    winversion = windows_version(values.get("ostype"))
    hotplug_features = parse_hotplug_features(values.get("hotplug"))
    bridges = BridgeSet(platform.predeclared_bridges)
    bios = values.get("bios")

    cmd: list[str] = []
    devices: list[str] = []
    global_flags: list[str] = []
    machine_flags: list[str] = []
    rtc_flags: list[str] = []
    used_volumes: list[str] = []
    efivars_copy: tuple[Path, Path] | None = None
    spice_port: int | None = None

    cmd += [str(settings.qemu_bin), "-id", str(vmid), "-name", values.get("name") or f"vm{vmid}"]
    cmd += ["-chardev", f"socket,id=qmp,path={qmp_socket(settings, vmid)},server,nowait"]
    cmd += ["-mon", "chardev=qmp,mode=control"]
    cmd += ["-pidfile", str(pid_file(settings, vmid)), "-daemonize"]

    if values.get("smbios1"):
        cmd += ["-smbios", f"type=1,{values['smbios1']}"]

    # Firmware
    if bios == "ovmf":
        if not settings.ovmf_code.is_file():
            raise VmEnvironmentError("uefi base image not found", context={"path": str(settings.ovmf_code)})
        if values.get("efidisk0"):
            efidisk = parse_drive("efidisk0", values["efidisk0"])
            if efidisk.file.startswith("/"):
                if efidisk.format is None:
                    raise ConfigError("efidisk format must be specified", context={"option": "efidisk0"})
                efi_path, efi_format = efidisk.file, efidisk.format
            else:
                efi_path, storage_format = resolve_drive_path(efidisk, volumes)
                efi_format = efidisk.format or storage_format or "raw"
        else:
            logger.warning("No efidisk configured, using temporary efivars disk", extra={"vmid": vmid})
            efi_path = str(settings.run_dir / f"{vmid}-ovmf.fd")
            efi_format = "raw"
            efivars_copy = (settings.ovmf_vars, Path(efi_path))
        cmd += ["-drive", f"if=pflash,unit=0,format=raw,readonly,file={settings.ovmf_code}"]
        cmd += ["-drive", f"if=pflash,unit=1,format={efi_format},id=drive-efidisk0,file={efi_path}"]

    if q35:
        cmd += ["-readconfig", Q35_CONFIG_FILE]

    devices += usb_controller_args(values, bridges, q35)

    # Display
    vga = values.get("vga")
    heads = qxl_heads(vga)
    if heads:
        vga = "qxl"
    if not vga:
        if platform.supports(2, 9):
            vga = "std" if (not winversion or winversion >= 6) else "cirrus"
        else:
            vga = "std" if winversion >= 6 else "cirrus"
    serial_console = vga.startswith("serial")

    if "tablet" in values:
        tablet = parse_bool(values["tablet"])
    else:
        tablet = effective_bool(values, "tablet", default=True) and not heads and not serial_console
    if tablet:
        devices += ["-device", tablet_device_string(q35)]

    # Boot order needs drives and NICs in discovery order
    drives: list[Drive] = []
    for device in drive_ids():
        if device.kind is DeviceKind.EFIDISK or device.name not in values:
            continue
        drives.append(Drive.parse_key(device.name, values[device.name]))
    nets = [d for d in DeviceId.all_of(DeviceKind.NET) if d.name in values]
    bootdisk = values.get("bootdisk") or resolve_first_disk(values)
    bootindex = boot_order_map(effective(values, "boot") or "cdn", bootdisk, drives, nets)

    # Host PCI passthrough
    kvm_off = False
    gpu_passthrough = False
    for device in DeviceId.all_of(DeviceKind.HOSTPCI):
        if device.name not in values:
            continue
        hostpci = HostPci.parse(values[device.name])
        if hostpci.x_vga:
            kvm_off = True
            gpu_passthrough = True
            vga = "none"
        devices += hostpci_args(
            device.index,
            hostpci,
            platform,
            winversion,
            bridges,
            bios,
            host.pci_functions,
            bootindex.get(device.name),
        )

    for index, usb in usb_devices(values):
        devices += usb_device_args(index, usb)

    for device in DeviceId.all_of(DeviceKind.SERIAL):
        path = values.get(device.name)
        if not path:
            continue
        if path == "socket":
            socket_path = run_file(settings, vmid, device.name)
            devices += ["-chardev", f"socket,id={device.name},path={socket_path},server,nowait"]
        else:
            _check_char_device(path, device.name)
            devices += ["-chardev", f"tty,id={device.name},path={path}"]
        devices += ["-device", f"isa-serial,chardev={device.name}"]

    for device in DeviceId.all_of(DeviceKind.PARALLEL):
        path = values.get(device.name)
        if not path:
            continue
        _check_char_device(path, device.name)
        backend = "tty" if path.startswith("/dev/usb/lp") else "parport"
        devices += ["-chardev", f"{backend},id={device.name},path={path}"]
        devices += ["-device", f"isa-parallel,chardev={device.name}"]

    # CPU topology
    topology = cpu_topology(values)
    if topology.maxcpus > host.cpu_count:
        raise ConfigError(
            f"MAX {host.cpu_count} vcpus allowed per VM on this node",
            context={"vmid": vmid, "requested": topology.maxcpus, "available": host.cpu_count},
        )
    smp_tail = f"sockets={topology.sockets},cores={topology.cores},maxcpus={topology.maxcpus}"
    if "cpu" in hotplug_features and platform.supports(2, 7):
        cmd += ["-smp", f"1,{smp_tail}"]
        for cpu_id in range(2, topology.vcpus + 1):
            cmd += ["-device", cpu_device_string(values, cpu_id)]
    else:
        cmd += ["-smp", f"{topology.vcpus},{smp_tail}"]

    cmd += ["-nodefaults"]
    cmd += ["-boot", f"menu=on,strict=on,reboot-timeout=1000,splash={BOOT_SPLASH}"]
    if values.get("acpi") == "0":
        cmd += ["-no-acpi"]
    if values.get("reboot") == "0":
        cmd += ["-no-reboot"]

    if not serial_console:
        cmd += ["-vga", vga]
    if not serial_console and vga != "none":
        cmd += ["-vnc", f"unix:{vnc_socket(settings, vmid)},x509,password"]
    else:
        cmd += ["-nographic"]

    # Clock
    tdf = effective_bool(values, "tdf")
    use_localtime = values.get("localtime") == "1"
    if winversion >= 5:
        if "localtime" not in values:
            use_localtime = True
        if values.get("acpi") != "0" and "tdf" not in values:
            tdf = True
    if winversion >= 6:
        global_flags.append("kvm-pit.lost_tick_policy=discard")
        cmd += ["-no-hpet"]
    if tdf:
        rtc_flags.append("driftfix=slew")
    if not kvm:
        machine_flags.append("accel=tcg")
    if platform.machine_type:
        machine_flags.append(f"type={platform.machine_type}")
    if values.get("startdate"):
        rtc_flags.append(f"base={values['startdate']}")
    elif use_localtime:
        rtc_flags.append("base=localtime")

    cmd += ["-cpu", cpu_argument(values, platform, winversion, gpu_passthrough, kvm_off)]

    cmd += memory_arguments(
        values,
        topology.sockets,
        topology.cores,
        hotplug="memory" in hotplug_features,
        host_node_exists=host.numa_node_exists,
    )

    if values.get("freeze") == "1":
        cmd += ["-S"]
    if values.get("keyboard"):
        cmd += ["-k", values["keyboard"]]

    # Guest agent
    if values.get("agent") and Agent.parse(values["agent"]).enabled:
        devices += ["-chardev", f"socket,path={qga_socket(settings, vmid)},server,nowait,id=qga0"]
        devices += ["-device", f"virtio-serial,id=qga0{pci_addr('qga0', bridges)}"]
        devices += ["-device", "virtserialport,chardev=qga0,name=org.qemu.guest_agent.0"]

    # SPICE
    if heads:
        if heads > 1:
            if winversion:
                for head in range(1, heads):
                    devices += [
                        "-device",
                        f"qxl,id=vga{head},ram_size=67108864,vram_size=33554432{pci_addr(f'vga{head}', bridges)}",
                    ]
            else:
                cmd += ["-global", "qxl-vga.ram_size=134217728", "-global", "qxl-vga.vram_size=67108864"]
        spice_port = spice_port_allocator()
        devices += ["-spice", f"tls-port={spice_port},addr=127.0.0.1,tls-ciphers=HIGH,seamless-migration=on"]
        devices += ["-device", f"virtio-serial,id=spice{pci_addr('spice', bridges)}"]
        devices += ["-chardev", "spicevmc,id=vdagent,name=vdagent"]
        devices += ["-device", "virtserialport,chardev=vdagent,name=com.redhat.spice.0"]

    if values.get("balloon") != "0":
        devices += ["-device", f"virtio-balloon-pci,id=balloon0{pci_addr('balloon0', bridges)}"]

    if values.get("watchdog"):
        watchdog = Watchdog.parse(values["watchdog"])
        devices += ["-device", f"{watchdog.model}{pci_addr('watchdog', bridges)}"]
        if watchdog.action:
            devices += ["-watchdog-action", watchdog.action]

    if host.iscsi_initiator:
        devices += ["-iscsi", f"initiator-name={host.iscsi_initiator}"]

    # Drives
    scsihw = effective(values, "scsihw")
    scsi_controllers: set[str] = set()
    ahci_controllers: set[int] = set()
    for device in drive_ids():
        raw = values.get(device.name)
        if raw is None:
            continue
        if device.kind is DeviceKind.EFIDISK:
            efi = parse_drive(device.name, raw)
            if parse_volume_id(efi.file) is not None:
                used_volumes.append(efi.file)
            continue
        drive = Drive.parse_key(device.name, raw)
        if parse_volume_id(drive.file) is not None:
            used_volumes.append(drive.file)

        if drive.bus is DeviceKind.VIRTIO and drive.iothread:
            cmd += ["-object", f"iothread,id=iothread-{drive.name}"]

        if drive.bus is DeviceKind.SCSI:
            info = scsihw_infos(scsihw, drive.index)
            if info.controller_id not in scsi_controllers:
                if scsihw == "virtio-scsi-single" and drive.iothread:
                    cmd += ["-object", f"iothread,id=iothread-{info.controller_id}"]
                elif drive.iothread:
                    logger.warning(
                        "iothread is only valid with virtio disk or virtio-scsi-single controller, ignoring",
                        extra={"vmid": vmid, "option": drive.name},
                    )
                devices += ["-device", scsi_controller_string(scsihw, info.controller_id, bridges, drive)]
                scsi_controllers.add(info.controller_id)

        if drive.bus is DeviceKind.SATA:
            controller, _ = controller_slot(drive.index, constants.AHCI_PORTS_PER_CONTROLLER)
            if controller not in ahci_controllers:
                devices += ["-device", ahci_controller_string(controller, bridges)]
                ahci_controllers.add(controller)

        path, storage_format = resolve_drive_path(drive, volumes)
        devices += ["-drive", drive_backing_string(drive, path, storage_format, settings)]
        devices += ["-device", drive_device_string(drive, scsihw, bridges, bootindex.get(drive.name), path)]

    # NICs
    for device in nets:
        net = Net.parse(values[device.name])
        if net.generated_mac:
            net = net.model_copy(update={"macaddr": stable_mac(f"{vmid}:{device.name}")})
        devices += ["-netdev", netdev_string(vmid, values, net, device.index, settings, host.vhost_net)]
        devices += [
            "-device",
            net_device_string(net, device.index, bridges, bootindex.get(device.name), platform.use_old_bios_files),
        ]

    if not q35:
        if platform.supports(2, 3):
            bridges.add(1)
            bridges.add(2)
        if scsihw and scsihw.startswith("virtio-scsi-single"):
            bridges.add(3)
    bridge_order = bridges.ordered()
    bridge_args: list[str] = []
    for bus in bridge_order:
        bridge_args += ["-device", print_bridge_device(bus)]

    cmd += bridge_args + devices
    if rtc_flags:
        cmd += ["-rtc", ",".join(rtc_flags)]
    if machine_flags:
        cmd += ["-machine", ",".join(machine_flags)]
    if global_flags:
        cmd += ["-global", ",".join(global_flags)]

    if values.get("args"):
        cmd += shlex.split(values["args"])

    logger.debug(
        "Compiled hypervisor command",
        extra={"vmid": vmid, "argc": len(cmd), "bridges": bridge_order, "machine": platform.machine_type},
    )
    return CompiledCommand(
        argv=tuple(cmd),
        volumes=tuple(used_volumes),
        spice_port=spice_port,
        platform=platform,
        bridges=tuple(bridge_order),
        efivars_copy=efivars_copy,
    )
