"""VM lifecycle: start, stop, suspend, resume, reset.

State overview:

    stopped -> starting -> running -> {stopping, suspended} -> stopped

orthogonal to the operation lock stored in the config (``lock: backup``
etc.). Every mutating call takes the advisory config lock, re-reads the
config and refuses to run while an operation lock is set unless the caller
passes ``skip_lock``.

Start:
    pending edits folded in (unless resuming from a saved state), command
    compiled, volumes activated, process launched (daemonizes, writes its pid
    file), moved into its cgroup, then post-start fix-ups over the monitor.
    A failure after launch tears the process down and deactivates volumes
    before the error propagates.

Stop escalates through three tiers, each with its own bounded wait:

    graceful (guest agent shutdown, ACPI powerdown, or monitor quit)
      -> terminate (SIGTERM) -> kill (SIGKILL)

and runs cleanup exactly once, whichever tier ended the process.
"""

from __future__ import annotations

import contextlib
import json
import os
import shlex
import shutil
import socket
import subprocess
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Callable, Protocol

import psutil

from vmctl import constants
from vmctl._logging import get_logger
from vmctl.cgroup import VmCgroup
from vmctl.config_file import config_volumes
from vmctl.descriptors import Agent, Net
from vmctl.exceptions import (
    AlreadyRunningError,
    HotplugError,
    MonitorError,
    NotRunningError,
    StartError,
    StopError,
    VmctlError,
)
from vmctl.hotplug import HotplugEngine, HotplugResult, apply_pending_cold
from vmctl.locking import ConfigLock, check_lock, lock_config
from vmctl.models import DeviceKind, OperationLock, VmConfig
from vmctl.monitor import Monitor, MonitorFactory, QmpMonitor
from vmctl.options import add_random_macs, effective_int
from vmctl.platform_utils import find_vm_process, send_kill, send_terminate, wait_for_exit
from vmctl.qemu_cmd import CompiledCommand, compile_command, pid_file, qga_socket
from vmctl.resource_cleanup import cleanup_cgroup, cleanup_process, cleanup_run_files
from vmctl.settings import Settings
from vmctl.storage import ConfigStore, VolumeManager, parse_volume_id
from vmctl.system_probes import HostFacts, probe_host
from vmctl.tap import TapBridge

logger = get_logger(__name__)

_MB = 1024 * 1024

# Stop escalation tiers, in order
TIER_GRACEFUL = "graceful"
TIER_TERMINATE = "terminate"
TIER_KILL = "kill"


# =============================================================================
# Process boundary
# =============================================================================


class ProcessLauncher(Protocol):
    """Spawns hypervisor processes and finds them again by VM id."""

    def launch(self, vmid: int, argv: list[str], env: dict[str, str]) -> None:
        """Run ``argv``; returns once the process has daemonized.

        Raises:
            StartError: Process could not be started
        """
        ...

    def find(self, vmid: int) -> psutil.Process | None:
        """Running hypervisor of ``vmid``, or None."""
        ...


class DaemonLauncher:
    """Launcher for a self-daemonizing hypervisor that writes its own pid file."""

    def __init__(self, settings: Settings, umask: int = 0o077):
        self.settings = settings
        self.umask = umask

    def launch(self, vmid: int, argv: list[str], env: dict[str, str]) -> None:
        try:
            subprocess.run(  # noqa: S603
                argv,
                env=env,
                umask=self.umask,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.settings.start_timeout,
            )
        except FileNotFoundError as e:
            raise StartError(f"hypervisor binary not found: {argv[0]}", context={"vmid": vmid}) from e
        except subprocess.TimeoutExpired as e:
            raise StartError(
                f"start failed: got timeout after {self.settings.start_timeout}s",
                context={"vmid": vmid},
            ) from e
        except subprocess.CalledProcessError as e:
            raise StartError(
                f"start failed: {e.stderr.strip() or f'exit code {e.returncode}'}",
                context={"vmid": vmid, "returncode": e.returncode},
            ) from e

    def find(self, vmid: int) -> psutil.Process | None:
        return find_vm_process(pid_file(self.settings, vmid), vmid)


# =============================================================================
# Guest agent
# =============================================================================


class GuestAgent:
    """Minimal guest agent client: liveness ping and cooperative shutdown.

    The agent speaks newline-delimited JSON on the VM's ``.qga`` socket and
    sends no greeting.
    """

    def __init__(self, socket_path: Path, timeout: float = constants.MONITOR_DEFAULT_TIMEOUT_SECONDS):
        self.socket_path = socket_path
        self.timeout = timeout

    @contextlib.contextmanager
    def _connect(self) -> Iterator[socket.socket]:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(str(self.socket_path))
            yield sock
        finally:
            sock.close()

    def ping(self) -> bool:
        """True when the agent answers ``guest-ping`` in time."""
        try:
            with self._connect() as sock:
                sock.sendall(b'{"execute": "guest-ping"}\n')
                reply = sock.makefile("rb").readline()
        except OSError:
            return False
        try:
            return "return" in json.loads(reply)
        except ValueError:
            return False

    def shutdown(self) -> None:
        """Ask the guest to power off; the agent does not reply on success."""
        with self._connect() as sock:
            sock.sendall(b'{"execute": "guest-shutdown", "arguments": {"mode": "powerdown"}}\n')


# =============================================================================
# Lifecycle manager
# =============================================================================


def _default_env() -> dict[str, str]:
    env = dict(os.environ)
    env["QEMU_AUDIO_DRV"] = "none"
    return env


class LifecycleManager:
    """Lifecycle operations of one VM.

    Collaborators are injected so tests can drive the whole state machine
    without a hypervisor: ``monitor_factory`` builds a monitor per VM id,
    ``launcher`` owns the process boundary, ``sleep``/``clock`` drive every
    wait loop.
    """

    def __init__(
        self,
        vmid: int,
        settings: Settings,
        store: ConfigStore,
        volumes: VolumeManager,
        host: HostFacts | None = None,
        monitor_factory: MonitorFactory | None = None,
        launcher: ProcessLauncher | None = None,
        cgroup: VmCgroup | None = None,
        tap: TapBridge | None = None,
        agent: GuestAgent | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        spice_port_allocator: Callable[[], int] | None = None,
    ):
        self.vmid = vmid
        self.settings = settings
        self.store = store
        self.volumes = volumes
        self._host = host
        self._monitor_factory = monitor_factory or (lambda vmid: QmpMonitor.for_vm(settings, vmid))
        self.launcher = launcher or DaemonLauncher(settings)
        self.cgroup = cgroup or VmCgroup(settings.cgroup_root, vmid)
        self.tap = tap
        self.agent = agent or GuestAgent(qga_socket(settings, vmid))
        self.sleep = sleep
        self._clock = clock
        self._spice_port_allocator = spice_port_allocator

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @property
    def host(self) -> HostFacts:
        if self._host is None:
            self._host = probe_host(self.settings)
        return self._host

    def monitor(self) -> Monitor:
        return self._monitor_factory(self.vmid)

    def lock(self) -> ConfigLock:
        return lock_config(self.settings, self.vmid, sleep=self.sleep)

    def check_running(self) -> psutil.Process | None:
        """Hypervisor process of this VM (pid file + command line check), or None."""
        return self.launcher.find(self.vmid)

    def is_running(self) -> bool:
        return self.check_running() is not None

    def _require_running(self) -> None:
        if not self.is_running():
            raise NotRunningError(f"VM {self.vmid} not running", context={"vmid": self.vmid})

    def _read_checked(self, skip_lock: bool, allowed: frozenset[OperationLock] = frozenset()) -> VmConfig:
        config = self.store.read(self.vmid)
        check_lock(config, skip=skip_lock, allowed=allowed)
        return config

    def compile(self, config: VmConfig, forced_machine: str | None = None) -> CompiledCommand:
        kwargs: dict[str, Any] = {}
        if self._spice_port_allocator is not None:
            kwargs["spice_port_allocator"] = self._spice_port_allocator
        return compile_command(
            self.vmid, config, self.settings, self.host, self.volumes, forced_machine=forced_machine, **kwargs
        )

    def showcmd(self, forced_machine: str | None = None) -> str:
        """Shell-quoted launch command for the current config (no side effects)."""
        return self.compile(self.store.read(self.vmid), forced_machine).shell_command()

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    def start(
        self,
        skip_lock: bool = False,
        statefile: str | None = None,
        forced_machine: str | None = None,
    ) -> CompiledCommand:
        """Start the VM.

        Args:
            skip_lock: Ignore an operation lock in the config
            statefile: Saved memory state (volume id or path) to resume from
            forced_machine: Machine type override (resume of a saved state)

        Raises:
            VmLockedError: Operation lock set and not skipped
            AlreadyRunningError: VM is already running
            ConfigError: Config cannot be compiled
            VmEnvironmentError: Host lacks a required capability
            StartError: Process did not come up (already torn down)
        """
        with self.lock():
            allowed = frozenset({OperationLock.SUSPENDED}) if statefile else frozenset()
            config = self._read_checked(skip_lock, allowed)
            if self.is_running():
                raise AlreadyRunningError(f"VM {self.vmid} already running", context={"vmid": self.vmid})

            if statefile is None and not config.pending.is_empty():
                apply_pending_cold(config, self.volumes, persist=lambda c: self.store.write(self.vmid, c))
                config = self.store.read(self.vmid)
            if add_random_macs(config.values):
                self.store.write(self.vmid, config)

            compiled = self.compile(config, forced_machine)
            argv = list(compiled.argv)
            if statefile is not None:
                state_path = self._state_path(statefile)
                argv += ["-incoming", f"exec:cat {shlex.quote(state_path)}"]

            if compiled.efivars_copy is not None:
                template, target = compiled.efivars_copy
                if not target.exists():
                    try:
                        shutil.copyfile(template, target)
                    except OSError as e:
                        raise StartError(f"unable to create efivars disk: {e}", context={"vmid": self.vmid}) from e

            volids = list(compiled.volumes)
            if statefile is not None and parse_volume_id(statefile) is not None:
                volids.append(statefile)
            self.volumes.activate(volids)

            logger.info(
                "Starting VM",
                extra={"vmid": self.vmid, "machine": compiled.platform.machine_type, "resume": statefile is not None},
            )
            try:
                self.launcher.launch(self.vmid, argv, _default_env())
            except VmctlError:
                self._deactivate(volids)
                raise

            try:
                proc = self.check_running()
                if proc is None:
                    raise StartError("start failed: hypervisor exited after launch", context={"vmid": self.vmid})
                self._place_in_cgroup(proc.pid, config)
                self._post_start(config, statefile)
            except VmctlError as e:
                logger.error(
                    "Start failed after launch, tearing down",
                    extra={"vmid": self.vmid, "error": e.message, "error_type": type(e).__name__},
                )
                cleanup_process(
                    self.check_running(),
                    "hypervisor",
                    self.vmid,
                    term_timeout=self.settings.terminate_timeout,
                    kill_timeout=constants.KILL_TIMEOUT_SECONDS,
                )
                self._deactivate(volids)
                cleanup_run_files(self.settings, self.vmid)
                raise

            logger.info("VM started", extra={"vmid": self.vmid, "pid": proc.pid})
            return compiled

    def _state_path(self, statefile: str) -> str:
        if parse_volume_id(statefile) is not None:
            return self.volumes.resolve_path(statefile)
        return statefile

    def _place_in_cgroup(self, pid: int, config: VmConfig) -> None:
        values = config.values
        try:
            self.cgroup.attach(pid)
            if "cpuunits" in values:
                self.cgroup.set_cpu_units(int(values["cpuunits"]))
            if "cpulimit" in values:
                self.cgroup.set_cpu_limit(float(values["cpulimit"]))
        except HotplugError as e:
            raise StartError(f"unable to apply resource limits: {e.message}", context=e.context) from e

    def _post_start(self, config: VmConfig, statefile: str | None) -> None:
        """Fix-ups the command line cannot express: link state, balloon target, suspend residue."""
        monitor = self.monitor()
        for device in config.devices(DeviceKind.NET):
            if Net.parse(config.values[device.name]).link_down:
                monitor.execute("set_link", {"name": device.name, "up": False})

        balloon = config.values.get("balloon")
        memory = effective_int(config.values, "memory", constants.DEFAULT_MEMORY_MB)
        if balloon and balloon != "0" and int(balloon) != memory:
            monitor.execute("balloon", {"value": int(balloon) * _MB})

        if statefile is not None and config.lock is OperationLock.SUSPENDED:
            vmstate = config.values.pop("vmstate", None)
            config.lock = None
            self.store.write(self.vmid, config)
            if vmstate:
                self.volumes.free(vmstate)

    # -------------------------------------------------------------------------
    # Stop
    # -------------------------------------------------------------------------

    def stop(
        self,
        skip_lock: bool = False,
        graceful: bool = False,
        timeout: float | None = None,
        force: bool = True,
        keep_active: bool = False,
    ) -> str | None:
        """Stop the VM, escalating until the process is gone.

        Args:
            skip_lock: Ignore an operation lock in the config
            graceful: Ask the guest to shut down (agent or ACPI) instead of quitting
            timeout: Wait for the graceful tier (defaults per mode)
            force: Escalate to signals when the graceful tier times out
            keep_active: Leave volumes activated (migration, rollback)

        Returns:
            Tier that ended the process, None if it was not running

        Raises:
            StopError: Still running after the last allowed tier (tier attached)
        """
        with self.lock():
            config = self._read_checked(skip_lock)
            proc = self.check_running()
            if proc is None:
                logger.info("VM not running", extra={"vmid": self.vmid})
                cleanup_run_files(self.settings, self.vmid)
                return None

            tier = self._escalate(proc, config, graceful, timeout, force)
            self._cleanup_after_stop(config, keep_active)
            logger.info("VM stopped", extra={"vmid": self.vmid, "tier": tier})
            return tier

    def shutdown(self, skip_lock: bool = False, timeout: float | None = None, force: bool = False) -> str | None:
        """Graceful stop; see ``stop``."""
        return self.stop(skip_lock=skip_lock, graceful=True, timeout=timeout, force=force)

    def _escalate(
        self,
        proc: psutil.Process,
        config: VmConfig,
        graceful: bool,
        timeout: float | None,
        force: bool,
    ) -> str:
        wait = timeout if timeout is not None else (
            self.settings.shutdown_timeout if graceful else self.settings.terminate_timeout
        )
        try:
            self._request_shutdown(config, graceful)
        except MonitorError as e:
            logger.warning(
                "Graceful stop request failed",
                extra={"vmid": self.vmid, "error": e.message, "error_type": type(e).__name__},
            )
        if self._wait_gone(proc, wait):
            return TIER_GRACEFUL
        if not force:
            raise StopError(
                f"VM {self.vmid} did not stop within {wait}s",
                context={"vmid": self.vmid, "timeout": wait},
                tier=TIER_GRACEFUL,
            )

        logger.warning("VM still running, sending SIGTERM", extra={"vmid": self.vmid, "tier": TIER_TERMINATE})
        send_terminate(proc)
        if self._wait_gone(proc, self.settings.terminate_timeout):
            return TIER_TERMINATE

        logger.warning("VM still running, sending SIGKILL", extra={"vmid": self.vmid, "tier": TIER_KILL})
        send_kill(proc)
        if self._wait_gone(proc, constants.KILL_TIMEOUT_SECONDS):
            return TIER_KILL
        raise StopError(
            f"VM {self.vmid} survived SIGKILL",
            context={"vmid": self.vmid, "pid": proc.pid},
            tier=TIER_KILL,
        )

    def _request_shutdown(self, config: VmConfig, graceful: bool) -> None:
        monitor = self.monitor()
        if not graceful:
            monitor.execute("quit")
            return
        agent = Agent.parse(config.values["agent"]) if "agent" in config.values else None
        if agent is not None and agent.enabled and self.agent.ping():
            try:
                self.agent.shutdown()
                logger.info("Guest agent shutdown requested", extra={"vmid": self.vmid})
                return
            except OSError as e:
                logger.warning("Guest agent shutdown failed, using ACPI", extra={"vmid": self.vmid, "error": str(e)})
        monitor.execute("system_powerdown")
        logger.info("ACPI powerdown requested", extra={"vmid": self.vmid})

    def _wait_gone(self, proc: psutil.Process, timeout: float) -> bool:
        return wait_for_exit(
            proc, timeout, interval=constants.PROCESS_POLL_INTERVAL_SECONDS, sleep=self.sleep, clock=self._clock
        )

    def _cleanup_after_stop(self, config: VmConfig, keep_active: bool) -> None:
        if not keep_active:
            self._deactivate(list(config_volumes(config, include_snapshots=False)))
        cleanup_run_files(self.settings, self.vmid)
        cleanup_cgroup(self.cgroup.path, self.vmid)
        if not config.pending.is_empty():
            apply_pending_cold(config, self.volumes, persist=lambda c: self.store.write(self.vmid, c))

    def _deactivate(self, volids: list[str]) -> None:
        try:
            self.volumes.deactivate([v for v in volids if parse_volume_id(v) is not None])
        except VmctlError as e:
            logger.warning("Volume deactivation failed", extra={"vmid": self.vmid, "error": e.message})

    # -------------------------------------------------------------------------
    # Suspend / resume / reset
    # -------------------------------------------------------------------------

    def suspend(self, skip_lock: bool = False) -> None:
        """Pause the vCPUs; memory stays resident."""
        with self.lock():
            self._read_checked(skip_lock)
            self._require_running()
            self.monitor().execute("stop")
        logger.info("VM suspended", extra={"vmid": self.vmid})

    def resume(self, skip_lock: bool = False) -> None:
        """Resume a paused VM, or wake a guest that suspended itself."""
        with self.lock():
            self._read_checked(skip_lock)
            self._require_running()
            monitor = self.monitor()
            status = (monitor.execute("query-status") or {}).get("status")
            if status == "suspended":
                monitor.execute("system_wakeup")
            else:
                monitor.execute("cont")
        logger.info("VM resumed", extra={"vmid": self.vmid, "from_status": status})

    def reset(self, skip_lock: bool = False) -> None:
        with self.lock():
            self._read_checked(skip_lock)
            self._require_running()
            self.monitor().execute("system_reset")
        logger.info("VM reset", extra={"vmid": self.vmid})

    def status(self) -> str:
        """``running``, ``paused``, ``suspended`` (guest S3) or ``stopped``."""
        if not self.is_running():
            return "stopped"
        try:
            status = (self.monitor().execute("query-status") or {}).get("status", "running")
        except MonitorError:
            return "running"
        return status if status in ("paused", "suspended", "prelaunch", "inmigrate") else "running"

    # -------------------------------------------------------------------------
    # Pending changes
    # -------------------------------------------------------------------------

    def apply_pending(self, skip_lock: bool = False, selection: set[str] | None = None) -> HotplugResult:
        """Apply pending edits: hotplug when running, fold in directly when stopped."""
        with self.lock():
            config = self._read_checked(skip_lock)
            if not self.is_running():
                applied = apply_pending_cold(config, self.volumes, persist=lambda c: self.store.write(self.vmid, c))
                return HotplugResult(applied=applied)
            engine = HotplugEngine(
                self.vmid,
                self.settings,
                self.monitor(),
                self.store,
                self.volumes,
                self.host,
                cgroup=self.cgroup,
                tap=self.tap,
                sleep=self.sleep,
            )
            result = engine.apply_pending(config, selection)
            self.store.write(self.vmid, config)
            return result
