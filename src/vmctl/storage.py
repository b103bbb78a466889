"""Storage and config-store boundaries.

Volume management and config persistence are external collaborators. This
module defines their interfaces as Protocols plus small file-backed
implementations used by the CLI and by tests:

- ``DirectoryVolumeManager``: volumes are files under ``<root>/<store>/``,
  created and snapshotted with ``qemu-img``
- ``FileConfigStore``: one ``<vmid>.conf`` record per VM, written atomically

Volume ids have the form ``<store>:<name>`` (``local:vm-100-disk-0.qcow2``).
Anything starting with ``/`` is a raw host path and is never owned by a VM.
"""

from __future__ import annotations

import os
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from vmctl._logging import get_logger
from vmctl.config_file import parse_config, write_config
from vmctl.exceptions import ConfigError, SnapshotError, StartError
from vmctl.models import VmConfig

logger = get_logger(__name__)

_VOLUME_ID_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9\-_.]*[a-zA-Z0-9]):(.+)$")

_FORMAT_SUFFIXES = {".qcow2": "qcow2", ".raw": "raw", ".vmdk": "vmdk", ".qed": "qed"}


def parse_volume_id(volid: str) -> tuple[str, str] | None:
    """Split ``store:name``; None for host paths and special values."""
    if volid.startswith("/"):
        return None
    match = _VOLUME_ID_RE.match(volid)
    if match is None:
        return None
    return match.group(1), match.group(2)


def is_volume_id(volid: str) -> bool:
    return parse_volume_id(volid) is not None


def looks_like_block_device(path: str) -> bool:
    """Raw block device paths get the block cache default, everything else the image one."""
    return path.startswith("/dev/")


def format_from_name(name: str) -> str:
    return _FORMAT_SUFFIXES.get(Path(name).suffix, "raw")


@runtime_checkable
class VolumeManager(Protocol):
    """Volume manager capability consumed by the compiler and lifecycle."""

    def resolve_path(self, volid: str) -> str:
        """Filesystem path (or URL) the hypervisor opens for ``volid``."""
        ...

    def volume_format(self, volid: str) -> str:
        """Image format of ``volid`` (raw, qcow2, ...)."""
        ...

    def allocate(self, store: str, vmid: int, fmt: str, size_kb: int, name: str | None = None) -> str:
        """Create a volume and return its id."""
        ...

    def free(self, volid: str) -> None: ...

    def activate(self, volids: list[str]) -> None: ...

    def deactivate(self, volids: list[str]) -> None: ...

    def snapshot(self, volid: str, snapname: str) -> None:
        """Take a storage-level snapshot of a stopped or frozen volume."""
        ...

    def snapshot_delete(self, volid: str, snapname: str) -> None: ...

    def snapshot_rollback(self, volid: str, snapname: str) -> None: ...


@runtime_checkable
class ConfigStore(Protocol):
    """Persistent config records keyed by VM id."""

    def read(self, vmid: int) -> VmConfig: ...

    def write(self, vmid: int, config: VmConfig) -> None: ...

    def exists(self, vmid: int) -> bool: ...


# =============================================================================
# Directory-backed volume manager
# =============================================================================


class DirectoryVolumeManager:
    """Volumes as image files under ``root/<store>/``.

    Snapshots use qcow2 internal snapshots; other formats refuse them.
    """

    def __init__(self, root: Path, qemu_img: Path = Path("qemu-img")):
        self.root = root
        self.qemu_img = qemu_img

    def _path(self, volid: str) -> Path:
        parsed = parse_volume_id(volid)
        if parsed is None:
            raise ConfigError(f"not a volume id: {volid!r}", context={"volid": volid})
        store, name = parsed
        return self.root / store / name

    def resolve_path(self, volid: str) -> str:
        if volid.startswith("/"):
            return volid
        return str(self._path(volid))

    def volume_format(self, volid: str) -> str:
        parsed = parse_volume_id(volid)
        return format_from_name(parsed[1]) if parsed else "raw"

    def allocate(self, store: str, vmid: int, fmt: str, size_kb: int, name: str | None = None) -> str:
        directory = self.root / store
        directory.mkdir(parents=True, exist_ok=True)
        if name is None:
            taken = {p.name for p in directory.iterdir()}
            index = 0
            while f"vm-{vmid}-disk-{index}.{fmt}" in taken:
                index += 1
            name = f"vm-{vmid}-disk-{index}.{fmt}"
        path = directory / name
        self._run_qemu_img(["create", "-f", fmt, str(path), f"{size_kb}K"], volid=f"{store}:{name}")
        logger.info("Allocated volume", extra={"volid": f"{store}:{name}", "size_kb": size_kb, "vmid": vmid})
        return f"{store}:{name}"

    def free(self, volid: str) -> None:
        self._path(volid).unlink(missing_ok=True)
        logger.info("Freed volume", extra={"volid": volid})

    def activate(self, volids: list[str]) -> None:
        for volid in volids:
            if not self._path(volid).exists():
                raise StartError(f"volume {volid!r} does not exist", context={"volid": volid})

    def deactivate(self, volids: list[str]) -> None:
        logger.debug("Deactivated volumes", extra={"volids": volids})

    def snapshot(self, volid: str, snapname: str) -> None:
        self._snapshot_op("-c", volid, snapname)

    def snapshot_delete(self, volid: str, snapname: str) -> None:
        self._snapshot_op("-d", volid, snapname)

    def snapshot_rollback(self, volid: str, snapname: str) -> None:
        self._snapshot_op("-a", volid, snapname)

    def _snapshot_op(self, flag: str, volid: str, snapname: str) -> None:
        if self.volume_format(volid) != "qcow2":
            raise SnapshotError(f"volume {volid!r} does not support snapshots", context={"volid": volid})
        self._run_qemu_img(["snapshot", flag, snapname, str(self._path(volid))], volid=volid, error=SnapshotError)

    def _run_qemu_img(self, args: list[str], volid: str, error: type[Exception] = StartError) -> None:
        cmd = [str(self.qemu_img), *args]
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)  # noqa: S603
        except FileNotFoundError as e:
            raise error(f"qemu-img not found at {self.qemu_img}", context={"volid": volid}) from e
        except subprocess.CalledProcessError as e:
            raise error(
                f"qemu-img {args[0]} failed for {volid}: {e.stderr.strip()}",
                context={"volid": volid, "returncode": e.returncode},
            ) from e


# =============================================================================
# File-backed config store
# =============================================================================


class FileConfigStore:
    """One ``<vmid>.conf`` per VM under ``config_dir``."""

    def __init__(self, config_dir: Path):
        self.config_dir = config_dir

    def path(self, vmid: int) -> Path:
        return self.config_dir / f"{vmid}.conf"

    def exists(self, vmid: int) -> bool:
        return self.path(vmid).exists()

    def read(self, vmid: int) -> VmConfig:
        """Read a record.

        Raises:
            ConfigError: No config for ``vmid``
        """
        try:
            raw = self.path(vmid).read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise ConfigError(f"configuration file for VM {vmid} does not exist", context={"vmid": vmid}) from e
        return parse_config(raw, vmid=vmid)

    def write(self, vmid: int, config: VmConfig) -> None:
        """Render and atomically replace the record (temp file + rename)."""
        raw = write_config(config)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.config_dir, prefix=f".{vmid}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(raw)
            os.replace(tmp_name, self.path(vmid))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
