"""Line-oriented VM config record codec.

Format::

    #free-text description, percent-encoded, one line per '#'
    bootdisk: scsi0
    memory: 2048
    scsi0: local:vm-100-disk-0,size=32G

    [PENDING]
    delete: net1,!unused0
    memory: 4096

    [before-upgrade]
    #snapshot description
    snapstate: prepare
    snaptime: 1700000000

``[PENDING]`` holds edits not yet applied to the running instance (``delete``
is only valid there, ``!`` marks a forced delete). Every other ``[name]``
header opens a snapshot section. Keys are written sorted.

Reading is lenient: values that fail the schema are dropped with a warning so
one bad line cannot make a VM unmanageable. Writing is strict and raises
ConfigError on the first invalid value.
"""

from __future__ import annotations

import re
from urllib.parse import quote, unquote

from vmctl._logging import get_logger
from vmctl.descriptors import Drive
from vmctl.exceptions import ConfigError, ParseError
from vmctl.models import DeviceId, DeviceKind, SnapshotEntry, SnapshotState, VmConfig
from vmctl.options import check_option, is_drive_key, join_flagged_list, split_flagged_list

logger = get_logger(__name__)

_PENDING_RE = re.compile(r"^\[PENDING\]\s*$", re.IGNORECASE)
_SECTION_RE = re.compile(r"^\[([a-z][a-z0-9_\-]+)\]\s*$", re.IGNORECASE)
_COMMENT_RE = re.compile(r"^#(.*)$")
_DESCRIPTION_RE = re.compile(r"^description:\s*(.*\S)\s*$")
_SNAPSTATE_RE = re.compile(r"^snapstate:\s*(prepare|delete)\s*$")
_ARGS_RE = re.compile(r"^args:\s*(.*\S)\s*$")
_DELETE_RE = re.compile(r"^delete:\s*(.*\S)\s*$")
_KEY_VALUE_RE = re.compile(r"^([a-z][a-z_]*\d*):\s*(.+?)\s*$")

# Control characters, non-ASCII, ':' and '%' are escaped in description lines
_UNSAFE_DESCRIPTION_RE = re.compile(r"[^\x20-\x24\x26-\x39\x3b-\x7e]")


def encode_text(text: str) -> str:
    return _UNSAFE_DESCRIPTION_RE.sub(lambda m: quote(m.group(0), safe=""), text)


def decode_text(text: str) -> str:
    return unquote(text)


class _Section:
    """Accumulator for one region while reading."""

    def __init__(self, name: str | None):
        self.name = name
        self.values: dict[str, str] = {}
        self.description: str | None = None
        self.state = SnapshotState.NONE
        self.deletions: dict[str, bool] = {}

    def add_description(self, text: str) -> None:
        self.description = (self.description or "") + text


def parse_config(raw: str, vmid: int | None = None) -> VmConfig:
    """Parse a config record.

    Args:
        raw: File contents
        vmid: VM id, only used in log context
    """
    active = _Section(None)
    pending: _Section | None = None
    snapshots: dict[str, _Section] = {}
    current = active

    for line in raw.split("\n"):
        if not line.strip():
            continue

        if _PENDING_RE.match(line):
            pending = current = _Section("pending")
            continue

        section_match = _SECTION_RE.match(line)
        if section_match:
            name = section_match.group(1)
            current = snapshots[name] = _Section(name)
            continue

        comment_match = _COMMENT_RE.match(line)
        if comment_match:
            current.add_description(decode_text(comment_match.group(1)) + "\n")
            continue

        description_match = _DESCRIPTION_RE.match(line)
        if description_match:
            current.add_description(decode_text(description_match.group(1)))
            continue

        snapstate_match = _SNAPSTATE_RE.match(line)
        if snapstate_match:
            current.state = SnapshotState(snapstate_match.group(1))
            continue

        args_match = _ARGS_RE.match(line)
        if args_match:
            current.values["args"] = args_match.group(1)
            continue

        delete_match = _DELETE_RE.match(line)
        if delete_match:
            if current.name == "pending":
                current.deletions.update(split_flagged_list(delete_match.group(1)))
            else:
                logger.warning(
                    "Property 'delete' is only allowed in [PENDING]",
                    extra={"vmid": vmid, "section": current.name},
                )
            continue

        kv_match = _KEY_VALUE_RE.match(line)
        if kv_match is None:
            logger.warning("Unable to parse config line", extra={"vmid": vmid, "line": line})
            continue

        key, value = kv_match.group(1), kv_match.group(2)
        if key == "cdrom":
            key = "ide2"
        try:
            value = check_option(key, value, fill_mac=False)
            if is_drive_key(key) and DeviceId.parse(key).kind.is_drive:
                value = _canonical_drive(key, value)
        except ParseError as e:
            logger.warning(
                "Unable to parse value of config option, dropping it",
                extra={"vmid": vmid, "option": key, "error": e.message},
            )
            continue
        current.values[key] = value

    config = VmConfig(values=active.values, description=_strip(active.description) or "")
    if pending is not None:
        config.pending.values = pending.values
        config.pending.deletions = pending.deletions
        if pending.description is not None:
            config.pending.values["description"] = _strip(pending.description)
    for name, section in snapshots.items():
        config.snapshots[name] = SnapshotEntry(
            values=section.values,
            description=_strip(section.description) or "",
            state=section.state,
        )
    return config


def _strip(text: str | None) -> str | None:
    return text.rstrip("\n") if text is not None else None


def _canonical_drive(key: str, value: str) -> str:
    drive = Drive.parse_key(key, value)
    if drive.media is None and drive.file in ("cdrom", "none"):
        drive = drive.model_copy(update={"media": "cdrom"})
    return drive.print()


# =============================================================================
# Writing
# =============================================================================


def normalize_config(config: VmConfig) -> None:
    """Apply write-time rewrites in place.

    - ``cdrom`` becomes ``ide2``
    - ``smp`` is folded into ``sockets``
    - ``unusedN`` entries are dropped when their volume is attached again

    Raises:
        ConfigError: ``cdrom`` and ``ide2`` both set
    """
    values = config.values
    if "cdrom" in values:
        if "ide2" in values:
            raise ConfigError("option ide2 conflicts with cdrom")
        values["ide2"] = values.pop("cdrom")

    if "sockets" in values:
        values.pop("smp", None)
    elif "smp" in values:
        values["sockets"] = values.pop("smp")
        values.pop("cores", None)

    used_volumes: set[str] = set()
    for key, value in values.items():
        device = DeviceId.try_parse(key)
        if device is None or not device.kind.is_drive:
            continue
        try:
            used_volumes.add(Drive.parse_key(key, value).file)
        except ParseError:
            continue
    for key in [k for k, v in values.items() if k.startswith("unused") and v in used_volumes]:
        del values[key]


def _validate_region(values: dict[str, str], region: str) -> dict[str, str]:
    checked: dict[str, str] = {}
    for key, value in values.items():
        if key == "description":
            checked[key] = value
            continue
        try:
            checked[key] = check_option(key, value)
        except ParseError as e:
            raise ConfigError(
                f"unable to parse value of '{key}' - {e.message}",
                context={"option": key, "region": region},
            ) from e
    return checked


def _render_region(values: dict[str, str], description: str | None, pending: bool = False) -> str:
    lines: list[str] = []
    if description is not None:
        if description:
            lines.extend("#" + encode_text(line) for line in description.split("\n"))
        elif pending:
            lines.append("#")
    lines.extend(f"{key}: {values[key]}" for key in sorted(values))
    return "".join(line + "\n" for line in lines)


def write_config(config: VmConfig) -> str:
    """Render a config record. The input is not modified.

    Raises:
        ConfigError: A value fails the schema or the config is inconsistent
    """
    config = config.clone()
    normalize_config(config)

    active = _validate_region(config.values, "active")
    raw = _render_region(active, config.description or None)

    if not config.pending.is_empty():
        pending_values = dict(config.pending.values)
        pending_description = pending_values.pop("description", None)
        pending = _validate_region(pending_values, "pending")
        if config.pending.deletions:
            pending["delete"] = join_flagged_list(config.pending.deletions)
        raw += "\n[PENDING]\n" + _render_region(pending, pending_description, pending=True)

    for name in sorted(config.snapshots):
        if _PENDING_RE.match(f"[{name}]") or not _SECTION_RE.match(f"[{name}]"):
            raise ConfigError(f"invalid snapshot name {name!r}")
        entry = config.snapshots[name]
        values = _validate_region(entry.values, f"snapshot:{name}")
        if entry.state is not SnapshotState.NONE:
            # a commit that has not reached disk is still a prepared snapshot
            persisted = SnapshotState.PREPARING if entry.state is SnapshotState.COMMITTING else entry.state
            values["snapstate"] = persisted.value
        raw += f"\n[{name}]\n" + _render_region(values, entry.description or None)

    return raw


def config_volumes(config: VmConfig, include_snapshots: bool = True) -> dict[str, bool]:
    """Volume ids referenced by drives, mapped to whether they are cdroms."""
    result: dict[str, bool] = {}

    def scan(values: dict[str, str]) -> None:
        for key, value in values.items():
            device = DeviceId.try_parse(key)
            if device is None or not (device.kind.is_drive or device.kind is DeviceKind.UNUSED):
                continue
            try:
                drive = Drive.parse_key(key, value)
            except ParseError:
                continue
            if drive.file in ("none", "cdrom"):
                continue
            result[drive.file] = result.get(drive.file, True) and drive.is_cdrom

    scan(config.values)
    if include_snapshots:
        for entry in config.snapshots.values():
            scan(entry.values)
            if "vmstate" in entry.values:
                result[entry.values["vmstate"]] = False
    return result
