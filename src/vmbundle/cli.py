"""
Command-line interface for vmbundle.

This module defines all CLI commands using the Typer library. Every command
exits with status 1 after printing a single "Error: ..." line when an
operation fails.
"""

import functools
from typing import Optional

import typer
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.table import Table

from vmbundle import __version__
from vmbundle.config import CONFIG, GIB
from vmbundle.core import VMController, StopOutcome, format_status
from vmbundle.core_utils import (
    console, print_info, print_success, print_warning, print_line,
    confirm, setup_logging,
)
from vmbundle.error_handling import VMBundleError, ValidationError, get_error_handler
from vmbundle.qemu_engine import QemuEngine
from vmbundle.session_manager import SessionState

app = typer.Typer(
    name="vmbundle",
    help="vmbundle - manage self-contained virtual machine bundles",
    no_args_is_help=True,
)

# Engine used for every command; replaced in tests
ENGINE_FACTORY = QemuEngine

state = {"root": None, "verbose": False}


def _controller() -> VMController:
    return VMController(root_dir=state["root"], engine_factory=ENGINE_FACTORY)


def reports_errors(func):
    """Report vmbundle and OS errors through the error handler and exit with status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (VMBundleError, OSError) as e:
            get_error_handler().handle_error(e, {"command": func.__name__})
            raise typer.Exit(code=1)
    return wrapper


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"vmbundle {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    root: Optional[str] = typer.Option(
        None, "--root", help="Directory holding VM bundles (default: ~/VMs)"),
    verbose: bool = typer.Option(False, "--verbose", help="Log to stderr and show error details"),
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True, help="Show version and exit"),
) -> None:
    """vmbundle - manage self-contained virtual machine bundles."""
    state["root"] = root
    state["verbose"] = verbose
    get_error_handler().verbose = verbose
    setup_logging(verbose=verbose)


@app.command("init")
@reports_errors
def init_cmd(
    name: str = typer.Argument(..., help="VM name or bundle path"),
    cpus: int = typer.Option(CONFIG['DEFAULT_CPUS'], "--cpus", help="Number of vCPUs"),
    memory: int = typer.Option(CONFIG['DEFAULT_MEMORY_GIB'], "--memory", help="Memory in GiB"),
    disk: int = typer.Option(CONFIG['DEFAULT_DISK_GIB'], "--disk", help="Disk size in GiB"),
    restore_image: Optional[str] = typer.Option(None, "--restore-image", help="Installer image"),
    shared_folder: Optional[str] = typer.Option(None, "--shared-folder", help="Host folder to share"),
    writable: bool = typer.Option(False, "--writable", help="Share the folder read-write"),
):
    """Create a new VM bundle."""
    path = _controller().init_vm(
        name, cpus=cpus, memory_gib=memory, disk_gib=disk,
        restore_image=restore_image, shared_folder=shared_folder,
        shared_folder_writable=writable,
    )
    print_success(f"Created VM bundle at {path}")


@app.command("install")
@reports_errors
def install_cmd(
    name: str = typer.Argument(..., help="VM name or bundle path"),
    restore_image: Optional[str] = typer.Option(None, "--restore-image", help="Override the stored installer image"),
    headless: bool = typer.Option(False, "--headless", help="Run without a display window"),
    detach_iso: bool = typer.Option(False, "--detach-iso", help="Forget the restore image once installed"),
):
    """Install the guest operating system from the restore image. Ctrl+C aborts."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(f"Installing {name}", total=1.0)
        result = _controller().install_vm(
            name, restore_image=restore_image, headless=headless, detach_iso=detach_iso,
            progress=lambda fraction: progress.update(task, completed=fraction),
        )
    print_success(f"Installed {name} (build {result.build or 'unknown'}, version {result.version or 'unknown'})")


def _run_in_foreground(name: str, command: str, run) -> None:
    """Drive start or resume, reporting state changes as they happen."""
    seen = {"suspending": False}

    def on_state(new_state):
        if new_state == SessionState.RUNNING:
            seen["suspending"] = False
            print_info(f"VM '{name}' is running. Press Ctrl+C to shut it down.")
        elif new_state == SessionState.STOPPING:
            print_info(f"Stopping VM '{name}'... Press Ctrl+C again to force.")
        elif new_state == SessionState.SUSPENDING:
            seen["suspending"] = True
            print_info(f"Suspending VM '{name}'...")

    error = run(on_state)
    if error is not None:
        get_error_handler().handle_error(error, {"command": command})
        raise typer.Exit(code=1)
    if seen["suspending"]:
        print_success(f"VM '{name}' suspended. Use 'vmbundle resume {name}' to continue.")
    else:
        print_success(f"VM '{name}' stopped.")


@app.command("start")
@reports_errors
def start_cmd(
    name: str = typer.Argument(..., help="VM name or bundle path"),
    headless: bool = typer.Option(False, "--headless", help="Run without a display window"),
):
    """Start a VM and wait until it stops. Ctrl+C shuts it down; press twice to force."""
    controller = _controller()
    print_info(f"Starting VM '{name}'...")
    _run_in_foreground(name, "start", lambda on_state: controller.start_vm(name, headless=headless, on_state=on_state))


@app.command("resume")
@reports_errors
def resume_cmd(
    name: str = typer.Argument(..., help="VM name or bundle path"),
    headless: bool = typer.Option(False, "--headless", help="Run without a display window"),
):
    """Continue a suspended VM and wait until it stops."""
    controller = _controller()
    print_info(f"Resuming VM '{name}'...")
    _run_in_foreground(name, "resume", lambda on_state: controller.resume_vm(name, headless=headless, on_state=on_state))


@app.command("suspend")
@reports_errors
def suspend_cmd(
    name: str = typer.Argument(..., help="VM name or bundle path"),
    timeout: float = typer.Option(CONFIG['SUSPEND_TIMEOUT'], "--timeout", help="Seconds to wait for the state to be saved"),
):
    """Save a running VM's state into its bundle and stop it."""
    if _controller().suspend_vm(name, timeout=timeout):
        print_success(f"VM '{name}' suspended.")
    else:
        print_warning(f"VM '{name}' stopped without saving its state.")


@app.command("discard-suspend")
@reports_errors
def discard_suspend_cmd(name: str = typer.Argument(..., help="VM name or bundle path")):
    """Throw away a suspended VM's saved state so it boots fresh."""
    if _controller().discard_suspend(name):
        print_success(f"Discarded the saved state of VM '{name}'.")
    else:
        print_info(f"VM '{name}' is not suspended.")


@app.command("detach-iso")
@reports_errors
def detach_iso_cmd(name: str = typer.Argument(..., help="VM name or bundle path")):
    """Forget the installer image of a stopped VM."""
    if _controller().detach_iso(name):
        print_success(f"Detached the installer ISO from VM '{name}'.")
    else:
        print_info(f"VM '{name}' has no installer ISO attached.")


@app.command("stop")
@reports_errors
def stop_cmd(
    name: str = typer.Argument(..., help="VM name or bundle path"),
    timeout: float = typer.Option(CONFIG['STOP_TIMEOUT'], "--timeout", help="Seconds to wait before killing"),
):
    """Stop a VM started by another vmbundle process."""
    outcome = _controller().stop_vm(name, timeout=timeout)
    if outcome == StopOutcome.NOT_RUNNING:
        print_info(f"VM '{name}' is not running.")
    elif outcome == StopOutcome.STALE:
        print_warning("Stale PID file detected. Cleaning up.")
    elif outcome == StopOutcome.GRACEFUL:
        print_success(f"VM '{name}' stopped.")
    else:
        print_warning(f"VM '{name}' did not stop within {timeout:g} seconds and was killed.")


@app.command("status")
@reports_errors
def status_cmd(name: str = typer.Argument(..., help="VM name or bundle path")):
    """Show configuration and run state of a VM."""
    for line in format_status(_controller().status(name)):
        print_line(line)


@app.command("list")
@reports_errors
def list_cmd():
    """List all VMs in the bundle directory."""
    controller = _controller()
    entries = controller.list_vms()
    if not entries:
        print_info(f"No VMs found in {controller.root_dir}")
        return
    table = Table(title="Virtual Machines")
    table.add_column("Name", style="cyan")
    table.add_column("State")
    table.add_column("vCPUs", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("Disk", justify="right")
    table.add_column("Installed")
    for entry in entries:
        if entry.owner is None and entry.suspended:
            run_state = "[yellow]suspended[/]"
        elif entry.owner is None:
            run_state = "stopped"
        elif entry.owner.is_embedded:
            run_state = f"[green]running[/] (embedded, PID {entry.owner.pid})"
        else:
            run_state = f"[green]running[/] (PID {entry.owner.pid})"
        table.add_row(
            entry.name, run_state, str(entry.cpus),
            f"{entry.memory_bytes / GIB:.1f} GiB", f"{entry.disk_bytes / GIB:.1f} GiB",
            "yes" if entry.installed else "no",
        )
    console.print(table)


@app.command("settings")
@reports_errors
def settings_cmd(
    name: str = typer.Argument(..., help="VM name or bundle path"),
    cpus: Optional[int] = typer.Option(None, "--cpus", help="Number of vCPUs"),
    memory: Optional[int] = typer.Option(None, "--memory", help="Memory in GiB"),
    shared_folder: Optional[str] = typer.Option(None, "--shared-folder", help="Host folder to share"),
    no_shared_folder: bool = typer.Option(False, "--no-shared-folder", help="Stop sharing a folder"),
    writable: Optional[bool] = typer.Option(None, "--writable/--read-only", help="Shared folder access"),
):
    """Edit the settings of a stopped VM."""
    config = _controller().edit_settings(
        name, cpus=cpus, memory_gib=memory, shared_folder=shared_folder,
        shared_folder_writable=writable, clear_shared_folder=no_shared_folder,
    )
    print_success(
        f"Updated {name}: {config.cpus} vCPUs, {config.memory_bytes / GIB:.1f} GiB memory"
    )


@app.command("delete")
@reports_errors
def delete_cmd(
    name: str = typer.Argument(..., help="VM name or bundle path"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Move a stopped VM to the trash."""
    if not yes and not confirm(f"Move VM '{name}' to the trash?"):
        print_info("Cancelled.")
        return
    destination = _controller().delete_vm(name)
    print_success(f"Moved VM '{name}' to {destination}")


@app.command("snapshot")
@reports_errors
def snapshot_cmd(
    name: str = typer.Argument(..., help="VM name or bundle path"),
    action: str = typer.Argument(..., help="create, revert, delete or list"),
    snapshot_name: Optional[str] = typer.Argument(None, help="Snapshot name"),
):
    """Create, revert to, delete or list snapshots of a VM."""
    controller = _controller()
    if action == "list":
        snapshots = controller.list_snapshots(name)
        if not snapshots:
            print_info(f"No snapshots for VM '{name}'.")
            return
        for snapshot in snapshots:
            print_line(f"{snapshot.name}\t{snapshot.created:%Y-%m-%d %H:%M:%S}\t{snapshot.size_bytes / GIB:.1f} GiB")
        return
    if not snapshot_name:
        raise ValidationError(f"A snapshot name is required for '{action}'.")

    controller.snapshot(name, action, snapshot_name)
    if action == "create":
        print_success(f"Created snapshot '{snapshot_name}' of VM '{name}'.")
    elif action == "revert":
        print_success(f"Reverted VM '{name}' to snapshot '{snapshot_name}'.")
    else:
        print_success(f"Deleted snapshot '{snapshot_name}' of VM '{name}'.")


if __name__ == "__main__":
    app()
