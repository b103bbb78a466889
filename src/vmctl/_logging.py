"""Logging setup shared by every vmctl module.

The package is a library first: its root logger ``vmctl`` only carries a
NullHandler, and output is the business of whoever embeds it. The CLI calls
``configure_logging()`` to get human-readable lines on stderr::

    WARNING [2026-02-25 10:02:54] vmctl.hotplug - Hotplug failed (vmid=100 option=net1)

Modules log with structured ``extra`` context; the CLI formatter appends the
well-known keys so operators see which VM and device a line is about.

Hotplug verification and stop escalation log once per poll. Records are
handed to a bounded queue drained by a listener thread, so a stalled
terminal never slows a verify loop down; overflow is counted and dropped.

``VMCTL_LOG_LEVEL`` (DEBUG, INFO, WARNING, ERROR) sets the library level at
import time.
"""

import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "vmctl"

_LINE_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# extra keys shown on CLI lines, in this order
_CONTEXT_KEYS: tuple[str, ...] = ("vmid", "device", "option", "snapshot", "tier", "error")

_QUEUE_SIZE = 1024


def _env_level() -> int | None:
    name = os.environ.get("VMCTL_LOG_LEVEL", "").strip().upper()
    return logging.getLevelNamesMapping().get(name) or None


_root = logging.getLogger(LIBRARY_LOGGER_NAME)
_root.addHandler(logging.NullHandler())
if (_level := _env_level()) is not None:
    _root.setLevel(_level)


class _ContextFormatter(logging.Formatter):
    """Line formatter that appends known ``extra`` fields as ``(key=value ...)``."""

    def __init__(self) -> None:
        super().__init__(fmt=_LINE_FORMAT, datefmt=_TIME_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [f"{key}={record.__dict__[key]}" for key in _CONTEXT_KEYS if key in record.__dict__]
        return f"{line} ({' '.join(pairs)})" if pairs else line


class _EchoHandler(logging.Handler):
    """Final sink: dimmed lines on stderr (click drops styling off a terminal)."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(_ContextFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            # stderr is non-blocking and full
            return
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueueingHandler(logging.handlers.QueueHandler):
    """Front handler: enqueue without blocking, drop when the queue is full.

    Attributes:
        dropped: Records lost to a full queue
    """

    def __init__(self, maxsize: int = _QUEUE_SIZE) -> None:
        super().__init__(queue.Queue(maxsize=maxsize))
        self.dropped = 0
        self._listener = logging.handlers.QueueListener(self.queue, _EchoHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # in-process queue: the listener formats the original record
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a vmctl module; pass ``__name__`` so it hangs below ``vmctl``."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send library logs to stderr. Safe to call more than once.

    Args:
        level: Library log level; wins over ``VMCTL_LOG_LEVEL``
        quiet: Errors only, regardless of ``level``
    """
    if not any(isinstance(handler, _QueueingHandler) for handler in _root.handlers):
        _root.addHandler(_QueueingHandler())

    if quiet:
        _root.setLevel(logging.ERROR)
    elif level is not None:
        _root.setLevel(level)
