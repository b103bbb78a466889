"""Command-line interface for vmctl.

Usage:
    vmctl showcmd 100                  # Print the launch command
    vmctl start 100                    # Start VM 100
    vmctl shutdown 100 --timeout 120   # ACPI/agent shutdown, wait up to 2 min
    vmctl hotplug 100                  # Apply pending changes to the running VM
    vmctl snapshot 100 before-upgrade --vmstate
"""

from __future__ import annotations

import sys
from typing import Callable

import click

from vmctl import __version__
from vmctl._logging import configure_logging
from vmctl.exceptions import LockBusyError, StopError, VmctlError, VmLockedError
from vmctl.lifecycle import LifecycleManager
from vmctl.settings import Settings
from vmctl.snapshots import SnapshotManager, incomplete_snapshots
from vmctl.storage import DirectoryVolumeManager, FileConfigStore

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_USAGE_ERROR = 2  # raised by click itself
EXIT_LOCK_BUSY = 16  # EBUSY
EXIT_VMCTL_ERROR = 125

LifecycleFactory = Callable[[int], LifecycleManager]


def default_factory(settings: Settings | None = None) -> LifecycleFactory:
    """Factory wiring file-backed collaborators from environment settings."""
    settings = settings or Settings()

    def build(vmid: int) -> LifecycleManager:
        return LifecycleManager(
            vmid,
            settings,
            FileConfigStore(settings.config_dir),
            DirectoryVolumeManager(settings.storage_dir, settings.qemu_img_bin),
        )

    return build


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]
    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)
    return "\n".join(lines)


def run_action(action: Callable[[], object]) -> int:
    """Run ``action`` and map vmctl errors onto exit codes."""
    try:
        action()
        return EXIT_SUCCESS

    except LockBusyError as e:
        click.echo(
            format_error("VM is busy", e.message, ["Another operation holds the config lock, retry later"]),
            err=True,
        )
        return EXIT_LOCK_BUSY

    except VmLockedError as e:
        click.echo(
            format_error(
                f"VM is locked ({e.lock})",
                e.message,
                ["Wait for the running operation to finish", "Use --skiplock to override (privileged)"],
            ),
            err=True,
        )
        return EXIT_VMCTL_ERROR

    except StopError as e:
        click.echo(format_error(f"Stop failed at tier '{e.tier}'", e.message), err=True)
        return EXIT_VMCTL_ERROR

    except VmctlError as e:
        click.echo(format_error(type(e).__name__, e.message), err=True)
        return EXIT_VMCTL_ERROR


def _lifecycle(ctx: click.Context, vmid: int) -> LifecycleManager:
    factory: LifecycleFactory = ctx.obj
    return factory(vmid)


skiplock_option = click.option("--skiplock", is_flag=True, help="Ignore the operation lock (privileged)")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", count=True, help="More log output (repeatable)")
@click.option("-q", "--quiet", is_flag=True, help="Only report errors")
@click.version_option(__version__, "-V", "--version", prog_name="vmctl")
@click.pass_context
def main(ctx: click.Context, verbose: int, quiet: bool) -> None:
    """Manage QEMU/KVM virtual machines."""
    level = None
    if verbose:
        level = "DEBUG" if verbose > 1 else "INFO"
    configure_logging(level=level, quiet=quiet)
    if ctx.obj is None:
        ctx.obj = default_factory()


@main.command()
@click.argument("vmid", type=int)
@click.option("--machine", help="Force a machine type")
@click.pass_context
def showcmd(ctx: click.Context, vmid: int, machine: str | None) -> None:
    """Print the command line used to start the VM."""
    sys.exit(run_action(lambda: click.echo(_lifecycle(ctx, vmid).showcmd(machine))))


@main.command()
@click.argument("vmid", type=int)
@skiplock_option
@click.option("--machine", help="Force a machine type")
@click.option("--statefile", help="Resume from a saved memory state (volume id or path)")
@click.pass_context
def start(ctx: click.Context, vmid: int, skiplock: bool, machine: str | None, statefile: str | None) -> None:
    """Start the VM."""
    sys.exit(
        run_action(lambda: _lifecycle(ctx, vmid).start(skip_lock=skiplock, statefile=statefile, forced_machine=machine))
    )


@main.command()
@click.argument("vmid", type=int)
@skiplock_option
@click.option("--keep-active", is_flag=True, help="Do not deactivate volumes")
@click.option("-t", "--timeout", type=float, help="Seconds to wait before signalling")
@click.pass_context
def stop(ctx: click.Context, vmid: int, skiplock: bool, keep_active: bool, timeout: float | None) -> None:
    """Stop the VM (monitor quit, then SIGTERM, then SIGKILL)."""

    def action() -> None:
        tier = _lifecycle(ctx, vmid).stop(skip_lock=skiplock, timeout=timeout, keep_active=keep_active)
        if tier is not None and tier != "graceful":
            click.echo(f"VM {vmid} stopped ({tier})", err=True)

    sys.exit(run_action(action))


@main.command()
@click.argument("vmid", type=int)
@skiplock_option
@click.option("-t", "--timeout", type=float, help="Seconds to wait for the guest")
@click.option("--force-stop", is_flag=True, help="Escalate to signals when the guest does not react")
@click.pass_context
def shutdown(ctx: click.Context, vmid: int, skiplock: bool, timeout: float | None, force_stop: bool) -> None:
    """Shut the VM down cooperatively (guest agent or ACPI)."""
    sys.exit(run_action(lambda: _lifecycle(ctx, vmid).shutdown(skip_lock=skiplock, timeout=timeout, force=force_stop)))


@main.command()
@click.argument("vmid", type=int)
@skiplock_option
@click.pass_context
def suspend(ctx: click.Context, vmid: int, skiplock: bool) -> None:
    """Pause the VM."""
    sys.exit(run_action(lambda: _lifecycle(ctx, vmid).suspend(skip_lock=skiplock)))


@main.command()
@click.argument("vmid", type=int)
@skiplock_option
@click.pass_context
def resume(ctx: click.Context, vmid: int, skiplock: bool) -> None:
    """Resume a paused VM."""
    sys.exit(run_action(lambda: _lifecycle(ctx, vmid).resume(skip_lock=skiplock)))


@main.command()
@click.argument("vmid", type=int)
@skiplock_option
@click.pass_context
def reset(ctx: click.Context, vmid: int, skiplock: bool) -> None:
    """Hard-reset the VM."""
    sys.exit(run_action(lambda: _lifecycle(ctx, vmid).reset(skip_lock=skiplock)))


@main.command()
@click.argument("vmid", type=int)
@click.pass_context
def status(ctx: click.Context, vmid: int) -> None:
    """Print the VM status and any snapshot left mid-operation."""

    def action() -> None:
        lifecycle = _lifecycle(ctx, vmid)
        click.echo(f"status: {lifecycle.status()}")
        for name, state in sorted(incomplete_snapshots(lifecycle.store.read(vmid)).items()):
            click.echo(f"incomplete snapshot: {name} ({state.value})")

    sys.exit(run_action(action))


@main.command()
@click.argument("vmid", type=int)
@click.pass_context
def pending(ctx: click.Context, vmid: int) -> None:
    """Show pending configuration changes."""

    def action() -> None:
        config = _lifecycle(ctx, vmid).store.read(vmid)
        keys = sorted(set(config.values) | set(config.pending.values) | set(config.pending.deletions))
        for key in keys:
            if key in config.pending.deletions:
                marker = "del!" if config.pending.deletions[key] else "del"
                click.echo(f"{marker} {key}: {config.values.get(key, '')}")
            elif key in config.pending.values:
                if key in config.values:
                    click.echo(f"cur {key}: {config.values[key]}")
                click.echo(f"new {key}: {config.pending.values[key]}")
            else:
                click.echo(f"cur {key}: {config.values[key]}")

    sys.exit(run_action(action))


@main.command()
@click.argument("vmid", type=int)
@skiplock_option
@click.option("-k", "--key", "keys", multiple=True, help="Only apply this option (repeatable)")
@click.pass_context
def hotplug(ctx: click.Context, vmid: int, skiplock: bool, keys: tuple[str, ...]) -> None:
    """Apply pending changes, live when the VM is running."""
    failed = False

    def action() -> None:
        nonlocal failed
        result = _lifecycle(ctx, vmid).apply_pending(skip_lock=skiplock, selection=set(keys) or None)
        for key in result.skipped:
            click.echo(f"{key}: kept pending until restart")
        for key, message in sorted(result.errors.items()):
            click.echo(f"{key}: {message}", err=True)
        failed = not result.ok

    code = run_action(action)
    sys.exit(EXIT_VMCTL_ERROR if code == EXIT_SUCCESS and failed else code)


@main.command()
@click.argument("vmid", type=int)
@click.argument("name")
@click.option("-d", "--description", default="", help="Snapshot description")
@click.option("--vmstate", is_flag=True, help="Also save the memory state of a running VM")
@click.pass_context
def snapshot(ctx: click.Context, vmid: int, name: str, description: str, vmstate: bool) -> None:
    """Create a snapshot."""
    sys.exit(
        run_action(lambda: SnapshotManager(_lifecycle(ctx, vmid)).create(name, description, save_vmstate=vmstate))
    )


@main.command()
@click.argument("vmid", type=int)
@click.argument("name")
@click.option("--force", is_flag=True, help="Ignore locks and per-disk failures")
@click.pass_context
def delsnapshot(ctx: click.Context, vmid: int, name: str, force: bool) -> None:
    """Delete a snapshot."""
    sys.exit(run_action(lambda: SnapshotManager(_lifecycle(ctx, vmid)).delete(name, force=force)))


@main.command()
@click.argument("vmid", type=int)
@click.argument("name")
@click.pass_context
def rollback(ctx: click.Context, vmid: int, name: str) -> None:
    """Roll the VM back to a snapshot."""
    sys.exit(run_action(lambda: SnapshotManager(_lifecycle(ctx, vmid)).rollback(name)))


if __name__ == "__main__":
    main()
