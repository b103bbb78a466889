"""Per-VM locking.

Two distinct mechanisms:

1. **Advisory config lock**: a short-lived ``flock`` on
   ``<lock_dir>/lock-<vmid>.conf``. Every read-modify-write of a VM's config
   happens inside it, so operations against one VM serialize. Acquisition
   polls with a bounded number of attempts and raises ``LockBusyError``
   instead of blocking forever.

2. **Operation lock**: the ``lock`` key stored in the config itself
   (``backup``, ``snapshot``, ...). It survives the process and marks a
   long-running operation; mutating calls refuse to run while it is set
   unless the caller explicitly skips the check.

``flock`` locks belong to the open file description, so two ``ConfigLock``
instances conflict even inside one process.
"""

from __future__ import annotations

import fcntl
import logging
import time
import types
from pathlib import Path
from typing import IO, Callable

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from vmctl import constants
from vmctl._logging import get_logger
from vmctl.exceptions import LockBusyError, VmLockedError
from vmctl.models import OperationLock, VmConfig
from vmctl.settings import Settings

logger = get_logger(__name__)


class ConfigLock:
    """Advisory exclusive lock for one VM id.

    Usage:
        with ConfigLock(settings.lock_dir, vmid, timeout=10):
            config = store.read(vmid)
            ...
            store.write(vmid, config)
    """

    def __init__(
        self,
        lock_dir: Path,
        vmid: int,
        timeout: float = constants.LOCK_TIMEOUT_SECONDS,
        interval: float = constants.LOCK_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.path = lock_dir / f"lock-{vmid}.conf"
        self.vmid = vmid
        self.timeout = timeout
        self.interval = interval
        self._sleep = sleep
        self._fh: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self) -> None:
        """Take the lock, polling until ``timeout`` has elapsed.

        Raises:
            LockBusyError: Another holder kept the lock past the timeout
        """
        if self._fh is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = self.path.open("a", encoding="ascii")
        attempts = max(1, int(self.timeout / self.interval) + 1) if self.interval > 0 else 1
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(attempts),
                wait=wait_fixed(self.interval),
                retry=retry_if_exception_type(BlockingIOError),
                before_sleep=before_sleep_log(logger, logging.DEBUG),
                sleep=self._sleep,
            ):
                with attempt:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except RetryError as e:
            fh.close()
            raise LockBusyError(
                f"can't lock file '{self.path}' - got timeout",
                context={"vmid": self.vmid, "timeout": self.timeout},
            ) from e
        except BaseException:
            fh.close()
            raise
        self._fh = fh
        logger.debug("Config lock acquired", extra={"vmid": self.vmid, "path": str(self.path)})

    def release(self) -> None:
        if self._fh is None:
            return
        try:
            fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
        finally:
            self._fh.close()
            self._fh = None
        logger.debug("Config lock released", extra={"vmid": self.vmid})

    def __enter__(self) -> ConfigLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.release()


def lock_config(settings: Settings, vmid: int, sleep: Callable[[float], None] = time.sleep) -> ConfigLock:
    """``ConfigLock`` for ``vmid`` configured from settings."""
    return ConfigLock(settings.lock_dir, vmid, timeout=settings.lock_timeout, sleep=sleep)


def check_lock(config: VmConfig, skip: bool = False, allowed: frozenset[OperationLock] = frozenset()) -> None:
    """Refuse to proceed while an operation lock is set.

    Args:
        config: Freshly read config
        skip: Privileged override, ignore any lock
        allowed: Locks the calling operation may proceed under

    Raises:
        VmLockedError: Config carries a lock not in ``allowed``
    """
    lock = config.lock
    if lock is None or skip or lock in allowed:
        return
    raise VmLockedError(f"VM is locked ({lock.value})", context={"lock": lock.value}, lock=lock.value)
