"""Exception hierarchy for vmctl.

Every error raised by vmctl derives from VmctlError.

Hierarchy:
    VmctlError (base)
    ├── TransientError (retryable marker base)
    │   ├── LockBusyError              ← advisory lock held by another caller
    │   └── MonitorError               ← monitor transport failures
    │       ├── MonitorNotRunningError ← no instance behind the socket
    │       ├── MonitorTimeoutError    ← command did not answer in time
    │       └── MonitorCommandError    ← hypervisor returned an error object
    ├── PermanentError (non-retryable marker base)
    │   ├── ParseError                 ← malformed descriptor / option value
    │   ├── ConfigError                ← invalid combination of valid values
    │   ├── VmEnvironmentError         ← host capability missing
    │   ├── VmLockedError              ← operation lock set in the config
    │   ├── AlreadyRunningError        ← start on a running instance
    │   ├── NotRunningError            ← live operation on a stopped instance
    │   ├── HotplugError               ← device add/remove not confirmed
    │   ├── SnapshotError              ← snapshot prepare/commit/delete/rollback
    │   ├── StartError                 ← process launch failed
    │   └── StopError                  ← process survived every escalation tier
    └── SkipError                      ← hotplug step deferred to cold restart

SkipError sits outside both marker bases: it is a control-flow
signal raised inside the hotplug engine and never reported as a failure.
"""

from __future__ import annotations

from typing import Any


class VmctlError(Exception):
    """Base exception for all vmctl errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(VmctlError):
    """Base for errors that may succeed when the operation is repeated later."""


class PermanentError(VmctlError):
    """Base for errors that repeat deterministically until the input changes."""


# =============================================================================
# Descriptor / Configuration Errors
# =============================================================================


class ParseError(PermanentError):
    """A descriptor or option value could not be parsed.

    Always local and user-facing. The whole value is rejected, no partial result
    is ever returned.

    Attributes:
        key: Option key being parsed (e.g. "scsi3"), if known
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, key: str | None = None):
        super().__init__(message, context)
        self.key = key


class ConfigError(PermanentError):
    """Parsed values form an unsupported combination.

    Raised before any side effect, e.g. a feature that needs a newer
    hypervisor than the one detected, or more vCPUs than the host has.
    """


class VmEnvironmentError(PermanentError):
    """Host capability required by the configuration is missing.

    Example: KVM requested but the CPU reports no hardware virtualization.
    """


# =============================================================================
# Monitor Transport Errors
# =============================================================================


class MonitorError(TransientError):
    """Monitor transport failure.

    Attributes:
        command: Monitor command that failed
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, command: str | None = None):
        super().__init__(message, context)
        self.command = command


class MonitorNotRunningError(MonitorError):
    """No hypervisor process is reachable on the monitor socket."""


class MonitorTimeoutError(MonitorError):
    """Monitor command did not complete within its timeout."""


class MonitorCommandError(MonitorError):
    """Hypervisor answered with an error object.

    Attributes:
        error_class: QMP error class (e.g. "GenericError", "DeviceNotFound")
        desc: Hypervisor's own error description
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        command: str | None = None,
        error_class: str | None = None,
        desc: str = "",
    ):
        super().__init__(message, context, command)
        self.error_class = error_class
        self.desc = desc


# =============================================================================
# Locking / State Errors
# =============================================================================


class LockBusyError(TransientError):
    """Advisory config lock could not be acquired within the timeout.

    Surfaced distinctly so callers can decide to wait and retry or abort.
    """


class VmLockedError(PermanentError):
    """The VM configuration carries an operation lock (e.g. ``backup``).

    Attributes:
        lock: Name of the operation lock found in the config
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, lock: str | None = None):
        super().__init__(message, context)
        self.lock = lock


class AlreadyRunningError(PermanentError):
    """Start requested but the instance is already running."""


class NotRunningError(PermanentError):
    """Operation needs a running instance but none is running."""


# =============================================================================
# Operation Errors
# =============================================================================


class SkipError(VmctlError):
    """Hotplug of this option is not possible now; keep it pending.

    Not an error from the caller's point of view: the option stays in the
    pending region and is applied on the next cold start.
    """


class HotplugError(PermanentError):
    """A device was not confirmed by the hypervisor after add/remove."""


class SnapshotError(PermanentError):
    """Snapshot create/commit/delete/rollback failed or was refused."""


class StartError(PermanentError):
    """Hypervisor process could not be launched."""


class StopError(PermanentError):
    """Hypervisor process could not be stopped.

    Attributes:
        tier: Last escalation tier reached ("graceful", "terminate", "kill")
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, tier: str = "graceful"):
        super().__init__(message, context)
        self.tier = tier
