"""Tests for volume ids, the directory volume manager and the file config store."""

from pathlib import Path

import pytest

from vmctl.exceptions import ConfigError, SnapshotError, StartError
from vmctl.models import PendingChanges, SnapshotEntry, VmConfig
from vmctl.storage import (
    ConfigStore,
    DirectoryVolumeManager,
    FileConfigStore,
    VolumeManager,
    format_from_name,
    is_volume_id,
    looks_like_block_device,
    parse_volume_id,
)

# Stand-in for qemu-img: creates the target on "create", fails "snapshot -a"
FAKE_QEMU_IMG = """\
#!/bin/sh
echo "$@" >> "$(dirname "$0")/calls.log"
if [ "$1" = "create" ]; then
    : > "$4"
    exit 0
fi
if [ "$1" = "snapshot" ] && [ "$2" = "-a" ]; then
    echo "Could not apply snapshot 'first': No such file or directory" >&2
    exit 1
fi
exit 0
"""


@pytest.fixture
def qemu_img(tmp_path: Path) -> Path:
    path = tmp_path / "bin" / "qemu-img"
    path.parent.mkdir()
    path.write_text(FAKE_QEMU_IMG)
    path.chmod(0o755)
    return path


@pytest.fixture
def manager(tmp_path: Path, qemu_img: Path) -> DirectoryVolumeManager:
    return DirectoryVolumeManager(tmp_path / "images", qemu_img)


def _calls(qemu_img: Path) -> list[str]:
    log = qemu_img.parent / "calls.log"
    return log.read_text().splitlines() if log.exists() else []


# ============================================================================
# Volume ids
# ============================================================================


class TestVolumeIds:
    """Tests for volume id helpers."""

    @pytest.mark.parametrize(
        ("volid", "expected"),
        [
            ("local:vm-100-disk-0.qcow2", ("local", "vm-100-disk-0.qcow2")),
            ("my.store-1:iso/debian.iso", ("my.store-1", "iso/debian.iso")),
            ("/dev/sdb", None),
            ("none", None),
            ("cdrom", None),
            ("1store:disk", None),
            ("local:", None),
        ],
    )
    def test_parse(self, volid: str, expected: tuple[str, str] | None) -> None:
        assert parse_volume_id(volid) == expected
        assert is_volume_id(volid) is (expected is not None)

    @pytest.mark.parametrize(("path", "expected"), [("/dev/sdb", True), ("/dev/disk/by-id/x", True), ("/srv/a.raw", False)])
    def test_block_device(self, path: str, expected: bool) -> None:
        assert looks_like_block_device(path) is expected

    @pytest.mark.parametrize(
        ("name", "fmt"),
        [("vm-100-disk-0.qcow2", "qcow2"), ("a.vmdk", "vmdk"), ("base.raw", "raw"), ("vm-100-disk-0", "raw")],
    )
    def test_format_from_name(self, name: str, fmt: str) -> None:
        assert format_from_name(name) == fmt


# ============================================================================
# Directory volume manager
# ============================================================================


class TestDirectoryVolumeManager:
    """Tests for DirectoryVolumeManager."""

    def test_satisfies_protocol(self, manager: DirectoryVolumeManager) -> None:
        assert isinstance(manager, VolumeManager)

    def test_resolve_path(self, manager: DirectoryVolumeManager, tmp_path: Path) -> None:
        assert manager.resolve_path("local:vm-100-disk-0.qcow2") == str(tmp_path / "images" / "local" / "vm-100-disk-0.qcow2")
        assert manager.resolve_path("/dev/sdb") == "/dev/sdb"
        with pytest.raises(ConfigError, match="not a volume id"):
            manager.resolve_path("cdrom")

    def test_volume_format(self, manager: DirectoryVolumeManager) -> None:
        assert manager.volume_format("local:vm-100-disk-0.qcow2") == "qcow2"
        assert manager.volume_format("/dev/sdb") == "raw"

    def test_allocate_picks_next_index(self, manager: DirectoryVolumeManager, tmp_path: Path, qemu_img: Path) -> None:
        store = tmp_path / "images" / "local"
        store.mkdir(parents=True)
        (store / "vm-100-disk-0.qcow2").touch()
        volid = manager.allocate("local", 100, "qcow2", 4096)
        assert volid == "local:vm-100-disk-1.qcow2"
        assert (store / "vm-100-disk-1.qcow2").exists()
        assert _calls(qemu_img) == [f"create -f qcow2 {store / 'vm-100-disk-1.qcow2'} 4096K"]

    def test_allocate_named(self, manager: DirectoryVolumeManager) -> None:
        assert manager.allocate("local", 100, "raw", 1024, name="vm-100-state-s1.raw") == "local:vm-100-state-s1.raw"

    def test_activate_and_free(self, manager: DirectoryVolumeManager) -> None:
        volid = manager.allocate("local", 100, "raw", 1024)
        manager.activate([volid])
        manager.deactivate([volid])
        manager.free(volid)
        manager.free(volid)
        with pytest.raises(StartError, match="does not exist"):
            manager.activate([volid])

    def test_snapshot_commands(self, manager: DirectoryVolumeManager, qemu_img: Path) -> None:
        volid = manager.allocate("local", 100, "qcow2", 1024)
        path = manager.resolve_path(volid)
        manager.snapshot(volid, "first")
        manager.snapshot_delete(volid, "first")
        assert _calls(qemu_img)[1:] == [f"snapshot -c first {path}", f"snapshot -d first {path}"]

    def test_snapshot_failure(self, manager: DirectoryVolumeManager) -> None:
        volid = manager.allocate("local", 100, "qcow2", 1024)
        with pytest.raises(SnapshotError, match="qemu-img snapshot failed for local:vm-100-disk-0.qcow2: Could not apply"):
            manager.snapshot_rollback(volid, "first")

    def test_raw_has_no_snapshots(self, manager: DirectoryVolumeManager) -> None:
        with pytest.raises(SnapshotError, match="does not support snapshots"):
            manager.snapshot("local:vm-100-disk-0.raw", "first")

    def test_missing_qemu_img(self, tmp_path: Path) -> None:
        manager = DirectoryVolumeManager(tmp_path / "images", tmp_path / "no-qemu-img")
        with pytest.raises(StartError, match="qemu-img not found"):
            manager.allocate("local", 100, "raw", 1024)
        with pytest.raises(SnapshotError, match="qemu-img not found"):
            manager.snapshot("local:vm-100-disk-0.qcow2", "first")


# ============================================================================
# File config store
# ============================================================================


class TestFileConfigStore:
    """Tests for FileConfigStore."""

    def test_round_trip(self, tmp_path: Path) -> None:
        store = FileConfigStore(tmp_path / "conf")
        assert isinstance(store, ConfigStore)
        config = VmConfig(
            values={"memory": "2048", "scsi0": "local:vm-100-disk-0.qcow2"},
            description="web server",
            pending=PendingChanges(values={"cores": "2"}, deletions={"net1": False}),
            snapshots={"first": SnapshotEntry(values={"memory": "1024", "snaptime": "1700000000"})},
        )
        store.write(100, config)
        assert store.exists(100)
        assert not store.exists(101)

        loaded = store.read(100)
        assert loaded.values == config.values
        assert loaded.description == "web server"
        assert loaded.pending.values == {"cores": "2"}
        assert loaded.pending.deletions == {"net1": False}
        assert loaded.snapshots["first"].values["memory"] == "1024"
        assert [p.name for p in (tmp_path / "conf").iterdir()] == ["100.conf"]

    def test_overwrite(self, tmp_path: Path) -> None:
        store = FileConfigStore(tmp_path)
        store.write(100, VmConfig(values={"memory": "512"}))
        store.write(100, VmConfig(values={"memory": "1024"}))
        assert store.read(100).values == {"memory": "1024"}

    def test_missing(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="configuration file for VM 100 does not exist"):
            FileConfigStore(tmp_path).read(100)

    def test_invalid_value_not_written(self, tmp_path: Path) -> None:
        store = FileConfigStore(tmp_path)
        with pytest.raises(ConfigError):
            store.write(100, VmConfig(values={"memory": "lots"}))
        assert list(tmp_path.iterdir()) == []
