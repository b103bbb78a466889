"""Snapshot create, delete and rollback.

Each operation is split into phases with a config write between them, so a
crash leaves a detectable sub-state instead of a torn record:

Create:
    prepare (locked)  clone the active options into ``[name]`` with
                      ``snapstate: prepare``, set ``lock: snapshot``,
                      allocate the memory-state volume if requested
    data (unlocked)   save VM state (running VMs), snapshot every disk
    commit (locked)   clear the sub-state and the lock, ``parent: name``

    A data-phase failure deletes exactly the disk snapshots it already took,
    frees the state volume, removes the half-made entry and restores the lock.

Delete:
    prepare (locked)  ``snapstate: delete``, ``lock: snapshot-delete``
    data (unlocked)   delete every disk snapshot and the state volume
    commit (locked)   drop the entry, re-parent its children

Rollback:
    prepare (locked)  ``lock: rollback``
    stop the VM, roll every disk back
    commit (locked)   snapshot options replace the active ones (pending and
                      snapshots kept), then start from the saved state when
                      there is one, on the machine type it was saved with
"""

from __future__ import annotations

import logging
import shlex
import time
from dataclasses import dataclass

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from vmctl import constants
from vmctl._logging import get_logger
from vmctl.descriptors import Drive, parse_drive
from vmctl.exceptions import ConfigError, ParseError, SnapshotError, VmctlError
from vmctl.lifecycle import LifecycleManager
from vmctl.locking import check_lock
from vmctl.machine import current_machine
from vmctl.models import OperationLock, SnapshotEntry, SnapshotState, VmConfig, drive_ids
from vmctl.monitor import Monitor
from vmctl.options import check_option, effective_int
from vmctl.storage import parse_volume_id

logger = get_logger(__name__)

# Headroom for device state on top of twice the guest memory
_VMSTATE_EXTRA_MB = 500

_RESERVED_NAMES = frozenset({"current", "pending"})

# Options never copied into a snapshot
_NOT_SNAPSHOTTED = ("lock", "vmstate")


@dataclass(frozen=True)
class SnapshotDisk:
    """One disk taking part in a snapshot."""

    key: str
    volid: str
    fmt: str | None


class _StateSaveInProgress(Exception):
    """Memory state save still running (internal retry signal)."""


# =============================================================================
# Helpers
# =============================================================================


def validate_snapshot_name(name: str) -> None:
    """Raises ConfigError unless ``name`` can be used as a snapshot section header."""
    if name.lower() in _RESERVED_NAMES:
        raise ConfigError(f"snapshot name {name!r} is reserved", context={"snapshot": name})
    try:
        check_option("parent", name)
    except ParseError as e:
        raise ConfigError(f"invalid snapshot name {name!r}", context={"snapshot": name}) from e


def snapshot_disks(values: dict[str, str]) -> list[SnapshotDisk]:
    """Disks of an options region that are snapshotted (volume-backed, not cdrom)."""
    disks: list[SnapshotDisk] = []
    for device in drive_ids():
        raw = values.get(device.name)
        if raw is None:
            continue
        drive = parse_drive(device.name, raw)
        if isinstance(drive, Drive) and drive.is_cdrom:
            continue
        if parse_volume_id(drive.file) is None:
            continue
        disks.append(SnapshotDisk(device.name, drive.file, drive.format))
    return disks


def incomplete_snapshots(config: VmConfig) -> dict[str, SnapshotState]:
    """Snapshots left mid-operation by a crash (``prepare`` or ``delete``)."""
    return {name: entry.state for name, entry in config.snapshots.items() if entry.state is not SnapshotState.NONE}


# =============================================================================
# Manager
# =============================================================================


class SnapshotManager:
    """Snapshot operations of one VM, layered on its ``LifecycleManager``."""

    def __init__(self, lifecycle: LifecycleManager):
        self.lifecycle = lifecycle
        self.vmid = lifecycle.vmid
        self.store = lifecycle.store
        self.volumes = lifecycle.volumes
        self.settings = lifecycle.settings
        self._sleep = lifecycle.sleep

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create(self, name: str, description: str = "", save_vmstate: bool = False) -> None:
        """Take snapshot ``name`` of every disk (and the memory state if asked and running).

        Raises:
            ConfigError: Invalid or reserved name
            VmLockedError: Operation lock set
            SnapshotError: Name taken, or the data phase failed (already undone)
        """
        validate_snapshot_name(name)
        running = self.lifecycle.is_running()

        # prepare
        with self.lifecycle.lock():
            config = self.store.read(self.vmid)
            check_lock(config)
            if name in config.snapshots:
                raise SnapshotError(f"snapshot name {name!r} already used", context={"snapshot": name})
            values = {k: v for k, v in config.values.items() if k not in _NOT_SNAPSHOTTED}
            values["snaptime"] = str(int(time.time()))
            entry = SnapshotEntry(values=values, description=description, state=SnapshotState.PREPARING)
            if save_vmstate and running:
                entry.values["vmstate"] = self._allocate_vmstate(config, name)
                entry.values["runningmachine"] = current_machine(
                    self.lifecycle.monitor().execute("query-machines") or []
                )
            config.snapshots[name] = entry
            config.lock = OperationLock.SNAPSHOT
            self.store.write(self.vmid, config)
        logger.info("Snapshot prepared", extra={"vmid": self.vmid, "snapshot": name, "running": running})

        # data phase
        taken: list[SnapshotDisk] = []
        vmstate = entry.values.get("vmstate")
        try:
            monitor = self.lifecycle.monitor() if running else None
            paused = False
            try:
                if monitor is not None and vmstate:
                    self._save_vmstate(monitor, vmstate)
                    paused = True
                for disk in snapshot_disks(entry.values):
                    self._disk_snapshot(monitor, disk, name)
                    taken.append(disk)
            finally:
                if paused and monitor is not None:
                    monitor.execute("cont")
        except VmctlError as e:
            logger.error(
                "Snapshot data phase failed, undoing",
                extra={"vmid": self.vmid, "snapshot": name, "taken": [d.key for d in taken], "error": e.message},
            )
            self._undo_create(name, taken, vmstate, running)
            raise SnapshotError(
                f"snapshot '{name}' failed: {e.message}",
                context={"vmid": self.vmid, "snapshot": name},
            ) from e

        entry.state = SnapshotState.COMMITTING

        # commit
        with self.lifecycle.lock():
            config = self.store.read(self.vmid)
            stored = config.snapshots.get(name)
            if stored is None or stored.state is not SnapshotState.PREPARING:
                raise SnapshotError(f"snapshot '{name}' vanished before commit", context={"snapshot": name})
            stored.state = SnapshotState.NONE
            config.values["parent"] = name
            config.lock = None
            self.store.write(self.vmid, config)
        logger.info("Snapshot committed", extra={"vmid": self.vmid, "snapshot": name})

    def _allocate_vmstate(self, config: VmConfig, name: str) -> str:
        store_id = config.values.get("vmstatestorage")
        if store_id is None:
            disks = snapshot_disks(config.values)
            if not disks:
                raise SnapshotError("no storage found for the memory state", context={"snapshot": name})
            store_id = parse_volume_id(disks[0].volid)[0]
        memory = effective_int(config.values, "memory", constants.DEFAULT_MEMORY_MB)
        size_kb = (memory * 2 + _VMSTATE_EXTRA_MB) * 1024
        return self.volumes.allocate(store_id, self.vmid, "raw", size_kb, name=f"vm-{self.vmid}-state-{name}.raw")

    def _save_vmstate(self, monitor: Monitor, volid: str) -> None:
        """Stream the VM state into ``volid``; the VM is left paused afterwards."""
        self.volumes.activate([volid])
        path = self.volumes.resolve_path(volid)
        monitor.execute("migrate", {"uri": f"exec:cat > {shlex.quote(path)}"})

        def check() -> None:
            status = (monitor.execute("query-migrate") or {}).get("status")
            if status == "completed":
                return
            if status in ("failed", "cancelled"):
                raise SnapshotError(f"saving VM state failed ({status})", context={"vmid": self.vmid})
            raise _StateSaveInProgress(status)

        for attempt in Retrying(
            stop=stop_after_attempt(max(1, int(self.settings.monitor_migrate_timeout))),
            wait=wait_fixed(1),
            retry=retry_if_exception_type(_StateSaveInProgress),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
            sleep=self._sleep,
        ):
            with attempt:
                check()
        logger.info("VM state saved", extra={"vmid": self.vmid, "volid": volid})

    def _disk_snapshot(self, monitor: Monitor | None, disk: SnapshotDisk, name: str) -> None:
        # a running qcow2 image is snapshotted by the process that has it open
        if monitor is not None and self._is_qcow2(disk):
            monitor.execute("blockdev-snapshot-internal-sync", {"device": f"drive-{disk.key}", "name": name})
        else:
            self.volumes.snapshot(disk.volid, name)
        logger.debug("Disk snapshot taken", extra={"vmid": self.vmid, "device": disk.key, "snapshot": name})

    def _disk_snapshot_delete(self, monitor: Monitor | None, disk: SnapshotDisk, name: str) -> None:
        if monitor is not None and self._is_qcow2(disk):
            monitor.execute("blockdev-snapshot-delete-internal-sync", {"device": f"drive-{disk.key}", "name": name})
        else:
            self.volumes.snapshot_delete(disk.volid, name)
        logger.debug("Disk snapshot deleted", extra={"vmid": self.vmid, "device": disk.key, "snapshot": name})

    def _is_qcow2(self, disk: SnapshotDisk) -> bool:
        return (disk.fmt or self.volumes.volume_format(disk.volid)) == "qcow2"

    def _undo_create(self, name: str, taken: list[SnapshotDisk], vmstate: str | None, running: bool) -> None:
        monitor = self.lifecycle.monitor() if running else None
        for disk in taken:
            try:
                self._disk_snapshot_delete(monitor, disk, name)
            except VmctlError as e:
                logger.warning(
                    "Could not remove partial disk snapshot",
                    extra={"vmid": self.vmid, "device": disk.key, "snapshot": name, "error": e.message},
                )
        if vmstate:
            try:
                self.volumes.free(vmstate)
            except VmctlError as e:
                logger.warning("Could not free state volume", extra={"vmid": self.vmid, "volid": vmstate, "error": e.message})
        with self.lifecycle.lock():
            config = self.store.read(self.vmid)
            config.snapshots.pop(name, None)
            if config.lock is OperationLock.SNAPSHOT:
                config.lock = None
            self.store.write(self.vmid, config)

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self, name: str, force: bool = False) -> None:
        """Delete snapshot ``name``.

        ``force`` ignores the operation lock and per-disk failures, so it can
        clean up after a crash.

        Raises:
            SnapshotError: Unknown snapshot, or a disk snapshot could not be removed
        """
        # prepare
        with self.lifecycle.lock():
            config = self.store.read(self.vmid)
            check_lock(config, skip=force)
            entry = config.snapshots.get(name)
            if entry is None:
                raise SnapshotError(f"snapshot '{name}' does not exist", context={"snapshot": name})
            if entry.state is not SnapshotState.DELETING:
                if not entry.state.can_transition_to(SnapshotState.DELETING):
                    raise SnapshotError(f"snapshot '{name}' is busy ({entry.state.value})", context={"snapshot": name})
                entry.state = SnapshotState.DELETING
            config.lock = OperationLock.SNAPSHOT_DELETE
            self.store.write(self.vmid, config)
        logger.info("Snapshot deletion prepared", extra={"vmid": self.vmid, "snapshot": name})

        # data phase
        running = self.lifecycle.is_running()
        monitor = self.lifecycle.monitor() if running else None
        try:
            for disk in snapshot_disks(entry.values):
                try:
                    self._disk_snapshot_delete(monitor, disk, name)
                except VmctlError as e:
                    if not force:
                        raise
                    logger.warning(
                        "Ignoring failed disk snapshot removal",
                        extra={"vmid": self.vmid, "device": disk.key, "snapshot": name, "error": e.message},
                    )
            vmstate = entry.values.get("vmstate")
            if vmstate:
                self.volumes.free(vmstate)
        except VmctlError as e:
            with self.lifecycle.lock():
                config = self.store.read(self.vmid)
                if config.lock is OperationLock.SNAPSHOT_DELETE:
                    config.lock = None
                self.store.write(self.vmid, config)
            raise SnapshotError(
                f"deleting snapshot '{name}' failed: {e.message}",
                context={"vmid": self.vmid, "snapshot": name},
            ) from e

        # commit
        with self.lifecycle.lock():
            config = self.store.read(self.vmid)
            removed = config.snapshots.pop(name, None)
            parent = removed.values.get("parent") if removed else None
            for other in config.snapshots.values():
                if other.values.get("parent") == name:
                    _set_parent(other.values, parent)
            if config.values.get("parent") == name:
                _set_parent(config.values, parent)
            config.lock = None
            self.store.write(self.vmid, config)
        logger.info("Snapshot deleted", extra={"vmid": self.vmid, "snapshot": name})

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    def rollback(self, name: str) -> None:
        """Return the VM to snapshot ``name``.

        A rollback that fails after the disks were touched keeps
        ``lock: rollback`` so the VM is not started from mixed state.

        Raises:
            SnapshotError: Unknown or incomplete snapshot, or a disk rollback failed
        """
        # prepare
        with self.lifecycle.lock():
            config = self.store.read(self.vmid)
            check_lock(config)
            entry = config.snapshots.get(name)
            if entry is None:
                raise SnapshotError(f"snapshot '{name}' does not exist", context={"snapshot": name})
            if entry.state is not SnapshotState.NONE:
                raise SnapshotError(
                    f"unable to rollback to incomplete snapshot (snapstate = {entry.state.value})",
                    context={"snapshot": name},
                )
            config.lock = OperationLock.ROLLBACK
            self.store.write(self.vmid, config)
        logger.info("Rollback prepared", extra={"vmid": self.vmid, "snapshot": name})

        if self.lifecycle.is_running():
            self.lifecycle.stop(skip_lock=True, keep_active=False)

        try:
            for disk in snapshot_disks(entry.values):
                self.volumes.snapshot_rollback(disk.volid, name)
        except VmctlError as e:
            raise SnapshotError(
                f"rollback of snapshot '{name}' failed: {e.message}",
                context={"vmid": self.vmid, "snapshot": name},
            ) from e

        # commit
        with self.lifecycle.lock():
            config = self.store.read(self.vmid)
            values = {k: v for k, v in entry.values.items() if k not in ("snaptime", "runningmachine")}
            vmstate = values.pop("vmstate", None)
            values["parent"] = name
            config.values = values
            config.lock = None
            self.store.write(self.vmid, config)
        logger.info("Rollback committed", extra={"vmid": self.vmid, "snapshot": name})

        if vmstate:
            self.lifecycle.start(statefile=vmstate, forced_machine=entry.values.get("runningmachine"))


def _set_parent(values: dict[str, str], parent: str | None) -> None:
    if parent:
        values["parent"] = parent
    else:
        values.pop("parent", None)
