"""Process lookup and waiting helpers built on psutil.

The hypervisor daemonizes and writes its own pid file, so we never hold a
Popen handle for a running VM. Every lookup goes through the pid file and is
verified against the process command line (``-id <vmid>``) to stay safe
against PID reuse.
"""

from __future__ import annotations

import contextlib
import socket
import time
from pathlib import Path
from typing import Callable

import psutil

from vmctl import constants
from vmctl._logging import get_logger

logger = get_logger(__name__)

SPICE_PORT_RANGE: tuple[int, int] = (61000, 61099)


def read_pid_file(path: Path) -> int | None:
    """PID stored in ``path``; None when missing or garbage."""
    try:
        text = path.read_text(encoding="ascii").strip()
    except (OSError, UnicodeDecodeError):
        return None
    return int(text) if text.isdigit() else None


def process_matches_vm(proc: psutil.Process, vmid: int) -> bool:
    """PID-reuse check: the process must be a hypervisor started with ``-id <vmid>``."""
    try:
        cmdline = proc.cmdline()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False
    for flag, value in zip(cmdline, cmdline[1:]):
        if flag == "-id" and value == str(vmid):
            return True
    return False


def find_vm_process(pid_file: Path, vmid: int) -> psutil.Process | None:
    """Running hypervisor process for ``vmid`` or None."""
    pid = read_pid_file(pid_file)
    if pid is None:
        return None
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None
    return proc if process_matches_vm(proc, vmid) else None


def wait_for_exit(
    proc: psutil.Process,
    timeout: float,
    interval: float = constants.PROCESS_POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll until ``proc`` is gone or ``timeout`` expires.

    Returns:
        True if the process exited
    """
    deadline = clock() + timeout
    while True:
        if not is_alive(proc):
            return True
        if clock() >= deadline:
            return False
        sleep(interval)


def is_alive(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def send_terminate(proc: psutil.Process) -> None:
    with contextlib.suppress(psutil.NoSuchProcess):
        proc.terminate()


def send_kill(proc: psutil.Process) -> None:
    with contextlib.suppress(psutil.NoSuchProcess):
        proc.kill()


def next_free_port(start: int, end: int, host: str = "127.0.0.1") -> int:
    """First TCP port in ``[start, end]`` that can be bound on ``host``.

    Raises:
        OSError: Range exhausted
    """
    for port in range(start, end + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                continue
            return port
    raise OSError(f"unable to find free port in range {start}-{end}")


def next_spice_port() -> int:
    return next_free_port(*SPICE_PORT_RANGE)
