"""Hypervisor monitor (QMP) client.

Synchronous wrapper around ``qemu.qmp.legacy.QEMUMonitorProtocol``. Every
command runs on a fresh connection: the hypervisor allows a single QMP
client per socket, and holding one open would block other tools (and other
vmctl invocations for the same VM, which are serialized by the config lock
anyway).

Timeouts are chosen per command class:
- short (default 3s): queries and device add/remove
- block (60s): media changes, resizes, block job control
- migrate (hour-scale): migration and state save/restore

Errors are mapped into the vmctl hierarchy:
- socket missing or refused  -> MonitorNotRunningError
- no answer within timeout   -> MonitorTimeoutError
- ``{"error": {...}}`` reply  -> MonitorCommandError (class + desc kept)

Usage:
    monitor = QmpMonitor.for_vm(settings, vmid)
    monitor.execute("query-status")
"""

from __future__ import annotations

import types
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

from qemu.qmp import QMPError  # type: ignore[import-untyped]
from qemu.qmp.legacy import QEMUMonitorProtocol  # type: ignore[import-untyped]

from vmctl._logging import get_logger
from vmctl.exceptions import (
    MonitorCommandError,
    MonitorError,
    MonitorNotRunningError,
    MonitorTimeoutError,
)
from vmctl.qemu_cmd import qmp_socket
from vmctl.settings import Settings

logger = get_logger(__name__)

BLOCK_COMMANDS: frozenset[str] = frozenset(
    {
        "eject",
        "change",
        "blockdev-change-medium",
        "block_resize",
        "block-job-cancel",
        "block-job-complete",
        "drive-mirror",
        "block_set_io_throttle",
    }
)

MIGRATE_COMMANDS: frozenset[str] = frozenset(
    {
        "migrate",
        "migrate-incoming",
        "migrate_cancel",
        "savevm-start",
        "savevm-end",
        "snapshot-drive",
        "delete-drive-snapshot",
    }
)


@runtime_checkable
class Monitor(Protocol):
    """Command channel to one running VM."""

    def execute(self, command: str, arguments: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        """Run a QMP command and return its ``return`` value."""
        ...

    def human_command(self, command_line: str) -> str:
        """Run a human monitor command and return its text output."""
        ...


MonitorFactory = Callable[[int], Monitor]


class _Connection:
    """One QMP session (connect + negotiate on enter, close on exit)."""

    def __init__(
        self,
        socket_path: Path,
        timeout: float,
        protocol_factory: Callable[[str], Any],
    ):
        self._socket_path = socket_path
        self._timeout = timeout
        self._protocol_factory = protocol_factory
        self._qmp: Any = None

    def __enter__(self) -> Any:
        if not self._socket_path.exists():
            raise MonitorNotRunningError(
                "monitor socket does not exist",
                context={"socket": str(self._socket_path)},
            )
        self._qmp = self._protocol_factory(str(self._socket_path))
        try:
            self._qmp.connect(negotiate=True)
        except TimeoutError as e:
            self._cleanup()
            raise MonitorTimeoutError(
                "monitor connection timed out", context={"socket": str(self._socket_path)}
            ) from e
        except (QMPError, OSError) as e:
            self._cleanup()
            raise MonitorNotRunningError(
                f"unable to connect to monitor: {e}", context={"socket": str(self._socket_path)}
            ) from e
        self._qmp.settimeout(self._timeout)
        return self._qmp

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self._cleanup()

    def _cleanup(self) -> None:
        if self._qmp is not None:
            try:
                self._qmp.close()
            except Exception:  # noqa: BLE001 - Best effort cleanup
                logger.debug("QMP close error (ignored)", exc_info=True)
            finally:
                self._qmp = None


class QmpMonitor:
    """QMP monitor of one VM, reached through its control socket."""

    def __init__(
        self,
        socket_path: Path,
        default_timeout: float,
        block_timeout: float,
        migrate_timeout: float,
        protocol_factory: Callable[[str], Any] = QEMUMonitorProtocol,
    ):
        self.socket_path = socket_path
        self.default_timeout = default_timeout
        self.block_timeout = block_timeout
        self.migrate_timeout = migrate_timeout
        self._protocol_factory = protocol_factory

    @classmethod
    def for_vm(cls, settings: Settings, vmid: int, **kwargs: Any) -> QmpMonitor:
        return cls(
            qmp_socket(settings, vmid),
            default_timeout=settings.monitor_timeout,
            block_timeout=settings.monitor_block_timeout,
            migrate_timeout=settings.monitor_migrate_timeout,
            **kwargs,
        )

    def timeout_for(self, command: str) -> float:
        if command in MIGRATE_COMMANDS:
            return self.migrate_timeout
        if command in BLOCK_COMMANDS:
            return self.block_timeout
        return self.default_timeout

    def execute(self, command: str, arguments: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        """Run ``command`` and return its ``return`` member.

        Raises:
            MonitorNotRunningError: No hypervisor behind the socket
            MonitorTimeoutError: No reply within the timeout
            MonitorCommandError: Hypervisor returned an error object
            MonitorError: Any other transport failure
        """
        timeout = timeout if timeout is not None else self.timeout_for(command)
        message: dict[str, Any] = {"execute": command}
        if arguments:
            message["arguments"] = arguments

        logger.debug("Monitor command", extra={"command": command, "socket": str(self.socket_path)})
        with _Connection(self.socket_path, timeout, self._protocol_factory) as qmp:
            try:
                response = qmp.cmd_obj(message)
            except TimeoutError as e:
                raise MonitorTimeoutError(
                    f"got timeout waiting for '{command}'",
                    context={"timeout": timeout},
                    command=command,
                ) from e
            except (QMPError, OSError) as e:
                raise MonitorError(f"monitor command '{command}' failed: {e}", command=command) from e

        if response is None:
            raise MonitorError(f"no reply to monitor command '{command}'", command=command)
        if "error" in response:
            error = response["error"]
            desc = error.get("desc", "")
            raise MonitorCommandError(
                f"{command} failed - {desc}",
                context={"arguments": arguments or {}},
                command=command,
                error_class=error.get("class"),
                desc=desc,
            )
        return response.get("return")

    def human_command(self, command_line: str) -> str:
        """Run a human monitor command; its output is returned as text."""
        result = self.execute("human-monitor-command", {"command-line": command_line})
        return result if isinstance(result, str) else ""


def is_device_not_found(error: MonitorCommandError) -> bool:
    """True when ``error`` says the target device/object is already gone."""
    if error.error_class == "DeviceNotFound":
        return True
    desc = error.desc.lower()
    return "not found" in desc or "no such" in desc
