"""
Command-line interface for the VM backup system
"""
import signal
import threading
from dataclasses import fields
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import print as rprint

from .backup_manager import BackupManager
from .config import BackupSettings, load_settings
from .exceptions import PreconditionError
from .logging_config import setup_logging, get_logger
from .models import BatchReport, JobOutcome, SuspensionPolicy, VMState
from .preflight import run_preflight
from .reporting import LogReportSink, format_duration, format_size
from .vm_manager import create_hypervisor

EXIT_OK = 0
EXIT_PRECONDITION = 1
EXIT_JOB_FAILED = 2

app = typer.Typer(help="VM Backup - consistent, encrypted, rotated backups of a VM fleet")
console = Console()

STATE_COLORS = {
    VMState.RUNNING: "green",
    VMState.PAUSED: "yellow",
    VMState.POWEROFF: "red",
    VMState.SAVED: "blue",
    VMState.ABORTED: "red",
    VMState.UNKNOWN: "dim",
}

OUTCOME_COLORS = {
    JobOutcome.SUCCESS: "green",
    JobOutcome.FAILED: "red",
    JobOutcome.SKIPPED: "yellow",
}

EnvFileOption = typer.Option(None, "--env-file", "-e", help="Load settings from a .env file")


def init_settings(env_file: Optional[Path]) -> BackupSettings:
    """Load settings and initialize logging"""
    try:
        settings = load_settings(env_file)
    except PreconditionError as e:
        rprint(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(EXIT_PRECONDITION)
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_dir=settings.log_dir,
        log_file_max_size=settings.log_file_max_size,
    )
    return settings


def install_signal_handlers(cancel_event: threading.Event) -> None:
    """SIGINT/SIGTERM finish the current VM safely and skip the rest"""
    def handle(signum, frame):
        if not cancel_event.is_set():
            rprint("[yellow]Cancelling: restoring the current VM, remaining VMs will be skipped[/yellow]")
        cancel_event.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def exit_code_for(report: BatchReport) -> int:
    return EXIT_JOB_FAILED if report.has_failures else EXIT_OK


def print_report(report: BatchReport) -> None:
    results_table = Table(title="Backup Results")
    results_table.add_column("VM Name", style="cyan")
    results_table.add_column("Outcome")
    results_table.add_column("State")
    results_table.add_column("Duration", justify="right")
    results_table.add_column("Downtime", justify="right")
    results_table.add_column("Archive", justify="right")
    results_table.add_column("Error")

    for job in report.jobs:
        color = OUTCOME_COLORS.get(job.outcome, "white")
        results_table.add_row(
            job.vm_name,
            f"[{color}]{job.outcome.value}[/{color}]",
            f"{job.original_state.value} → {job.final_state.value}",
            format_duration(job.duration_seconds),
            f"{job.downtime_seconds:.1f}s",
            format_size(job.archive_size) if job.archive_path else "-",
            job.error or "",
        )
    console.print(results_table)

    summary = f"""
[bold]Duration:[/bold] {format_duration(report.duration_seconds)}
[bold]Archived:[/bold] {format_size(report.total_archive_bytes)}
[bold]Succeeded / Failed / Skipped:[/bold] {report.succeeded} / {report.failed} / {report.skipped}
[bold]Success Rate:[/bold] {report.success_rate:.1f}%
    """
    border = "red" if report.has_failures else "green"
    console.print(Panel(summary, title="Summary", border_style=border))


@app.command()
def run(
    policy: Optional[SuspensionPolicy] = typer.Option(None, "--policy", "-p", help="Override the suspension policy"),
    vm_names: Optional[List[str]] = typer.Option(None, "--vm", help="Back up only this VM (repeatable)"),
    no_email: bool = typer.Option(False, "--no-email", help="Log the report instead of mailing it"),
    env_file: Optional[Path] = EnvFileOption,
):
    """Back up every VM (or the selected ones)"""
    settings = init_settings(env_file)
    logger = get_logger("vmbackup.cli")
    if policy is not None:
        settings.suspension_policy = policy.value

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)

    try:
        manager = BackupManager(
            settings,
            cancel_event=cancel_event,
            report_sink=LogReportSink() if no_email else None,
        )
        report = manager.run_batch(vm_names or None)
    except PreconditionError as e:
        rprint(f"[red]✗ Backup aborted: {e}[/red]")
        logger.error("Backup aborted before any VM was touched", error=str(e))
        raise typer.Exit(EXIT_PRECONDITION)

    print_report(report)
    logger.info("Backup run finished via CLI", failed=report.failed)
    raise typer.Exit(exit_code_for(report))


@app.command("list-vms")
def list_vms(env_file: Optional[Path] = EnvFileOption):
    """List the hypervisor's virtual machines and their state"""
    settings = init_settings(env_file)
    logger = get_logger("vmbackup.cli")

    try:
        with create_hypervisor(settings) as hypervisor:
            vms = hypervisor.list_all_vms()
    except PreconditionError as e:
        rprint(f"[red]Error listing VMs: {e}[/red]")
        logger.error("Failed to list VMs", error=str(e))
        raise typer.Exit(EXIT_PRECONDITION)

    if not vms:
        rprint("[yellow]No VMs found[/yellow]")
        return

    table = Table(title="Virtual Machines")
    table.add_column("Name", style="cyan")
    table.add_column("State")
    table.add_column("Folder")

    for vm in vms:
        state_color = STATE_COLORS.get(vm.state, "white")
        vm.folder = settings.vm_folder_path(vm.name)
        table.add_row(
            vm.name,
            f"[{state_color}]{vm.state.value}[/{state_color}]",
            str(vm.folder) if vm.folder.is_dir() else f"[red]{vm.folder} (missing)[/red]",
        )

    console.print(table)
    logger.info("Listed VMs", vm_count=len(vms))


@app.command()
def check(env_file: Optional[Path] = EnvFileOption):
    """Run the pre-flight checks without touching any VM"""
    settings = init_settings(env_file)

    try:
        run_preflight(settings)
    except PreconditionError as e:
        rprint(f"[red]✗ {e}[/red]")
        raise typer.Exit(EXIT_PRECONDITION)
    rprint("[green]✓ Pre-flight checks passed[/green]")


@app.command()
def config(env_file: Optional[Path] = EnvFileOption):
    """Show current configuration"""
    settings = init_settings(env_file)

    config_table = Table(title="VM Backup Configuration")
    config_table.add_column("Setting", style="cyan")
    config_table.add_column("Value", style="green")

    for settings_field in fields(settings):
        value = getattr(settings, settings_field.name)
        if isinstance(value, list):
            value = ", ".join(value)
        config_table.add_row(settings_field.name, "" if value is None else str(value))

    console.print(config_table)


if __name__ == "__main__":
    app()
