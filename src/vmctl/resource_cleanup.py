"""Best-effort teardown after a VM stops or a start aborts.

Nothing here raises: each helper logs what went wrong and reports success
as a bool, so a half-failed cleanup never masks the error that caused it.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import psutil

from vmctl import constants
from vmctl._logging import get_logger
from vmctl.platform_utils import is_alive, send_kill, send_terminate, wait_for_exit
from vmctl.settings import Settings

logger = get_logger(__name__)


def cleanup_process(
    proc: psutil.Process | None,
    name: str,
    vmid: int,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Signal ``proc`` away: SIGTERM, wait, SIGKILL, wait.

    Args:
        proc: Process to end; None counts as already gone
        name: Label for log lines ("hypervisor")
        vmid: VM the process belongs to
        term_timeout: Wait after SIGTERM
        kill_timeout: Wait after SIGKILL

    Returns:
        True once the process is gone, False if it outlived SIGKILL
    """
    if proc is None:
        return True

    tiers: list[tuple[str, Callable[[psutil.Process], None], float]] = [
        ("SIGTERM", send_terminate, term_timeout),
        ("SIGKILL", send_kill, kill_timeout),
    ]
    try:
        if not is_alive(proc):
            return True
        for signal_name, send, timeout in tiers:
            logger.debug(f"{name}: sending {signal_name}", extra={"vmid": vmid, "pid": proc.pid})
            send(proc)
            if wait_for_exit(proc, timeout, interval=0.1):
                logger.debug(f"{name} exited after {signal_name}", extra={"vmid": vmid})
                return True
            logger.warning(f"{name} ignored {signal_name}", extra={"vmid": vmid, "timeout": timeout})
    except psutil.Error as e:
        logger.error(
            f"{name} teardown failed",
            extra={"vmid": vmid, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False

    logger.error(f"{name} still alive after SIGKILL", extra={"vmid": vmid, "pid": proc.pid})
    return False


def _remove(path: Path, vmid: int, remover: Callable[[], None], what: str) -> bool:
    try:
        remover()
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error(
            f"Could not remove {what}",
            extra={"vmid": vmid, "path": str(path), "error": str(e), "error_type": type(e).__name__},
        )
        return False
    logger.debug(f"Removed {what}", extra={"vmid": vmid, "path": str(path)})
    return True


def cleanup_file(file_path: Path | None, vmid: int, description: str = "file") -> bool:
    """Unlink a run file; already absent counts as removed."""
    if file_path is None:
        return True
    return _remove(file_path, vmid, file_path.unlink, description)


def cleanup_cgroup(cgroup_path: Path | None, vmid: int) -> bool:
    """Remove the VM's scope directory; the kernel refuses while tasks remain."""
    if cgroup_path is None:
        return True
    return _remove(cgroup_path, vmid, cgroup_path.rmdir, "cgroup scope")


def cleanup_run_files(settings: Settings, vmid: int, extra: list[Path] | None = None) -> bool:
    """Remove the monitor sockets, pid file and VNC socket of ``vmid`` (plus ``extra``).

    Returns:
        True when every path is gone
    """
    paths = [settings.run_dir / f"{vmid}.{suffix}" for suffix in constants.RUN_FILE_SUFFIXES]
    paths.extend(extra or [])
    return all([cleanup_file(path, vmid, description=path.name) for path in paths])
