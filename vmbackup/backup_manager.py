"""
Batch orchestrator: runs the per-VM backup workflow over the whole fleet
"""
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .archive import ArchivePipeline
from .capture import capture_folder, discard_capture, folder_size
from .config import BackupSettings
from .crypto import read_passphrase
from .disk_repair import NbdDiskRepairer
from .exceptions import BackupError, HypervisorError, RotationError
from .lifecycle import LifecycleController, SuspendWindow
from .logging_config import capture_timeline, get_logger, LogOperation
from .models import BackupJob, BatchReport, JobOutcome, SuspensionPolicy, VMState
from .preflight import run_preflight
from .reporting import (EmailReportSink, LogReportSink, ReportSink,
                        format_duration, format_size)
from .retention import ArchiveSink, LocalDirectorySink, RetentionManager
from .vm_manager import HypervisorManager, create_hypervisor


class BackupManager:
    """Backs up every selected VM, one at a time, and reports the outcome"""

    def __init__(self, config: BackupSettings,
                 hypervisor: Optional[HypervisorManager] = None,
                 lifecycle: Optional[LifecycleController] = None,
                 repairer: Optional[NbdDiskRepairer] = None,
                 sink: Optional[ArchiveSink] = None,
                 report_sink: Optional[ReportSink] = None,
                 pipeline_factory: Callable[[BackupSettings, bytes], ArchivePipeline] = ArchivePipeline.from_settings,
                 cancel_event: Optional[threading.Event] = None,
                 folder_resolver: Optional[Callable[[str], Path]] = None,
                 preflight: Callable[[BackupSettings], None] = run_preflight):
        # Components below are built from these values
        config.validate()
        self.config = config
        self.logger = get_logger("vmbackup.backup_manager")
        self.cancel_event = cancel_event or threading.Event()
        self.hypervisor = hypervisor or create_hypervisor(config)
        self.lifecycle = lifecycle or LifecycleController.from_settings(
            self.hypervisor, config, self.cancel_event)
        self.repairer = repairer or NbdDiskRepairer.from_settings(config)
        self.sink = sink or LocalDirectorySink(
            Path(config.export_dir), RetentionManager(config.backup_versions), config.archive_suffix)
        if report_sink is None:
            report_sink = EmailReportSink.from_settings(config) if config.email_enabled else LogReportSink()
        self.report_sink = report_sink
        self.pipeline_factory = pipeline_factory
        self.folder_resolver = folder_resolver or config.vm_folder_path
        self.preflight = preflight

    def exclusion_reason(self, vm_name: str, only: Optional[Iterable[str]] = None) -> Optional[str]:
        """Why ``vm_name`` is not backed up in this batch, or None"""
        if only:
            if vm_name not in only:
                return "not selected on the command line"
        elif self.config.include_vms and vm_name not in self.config.include_vms:
            return "not in include_vms"
        if vm_name in self.config.exclude_vms:
            return "listed in exclude_vms"
        return None

    def needs_repair(self, original_state: VMState) -> bool:
        return (self.config.policy == SuspensionPolicy.PAUSE
                and original_state != VMState.POWEROFF)

    def _skipped_job(self, vm_name: str, reason: str) -> BackupJob:
        job = BackupJob(vm_name=vm_name, policy=self.config.policy)
        job.skip(reason)
        job.finished_at = job.started_at
        self.logger.info(f"{vm_name} skipped: {reason}", vm_name=vm_name)
        return job

    def _observe_state(self, vm_name: str) -> VMState:
        try:
            return self.hypervisor.get_state(vm_name)
        except HypervisorError as e:
            self.logger.warning(f"Cannot read final state of {vm_name}: {e}", vm_name=vm_name)
            return VMState.UNKNOWN

    def _record_failure(self, job: BackupJob, window: SuspendWindow, exc: BaseException) -> None:
        # A VM left down matters more than whatever made the job fail
        if window.restore_error is not None:
            job.fail(window.restore_error)
        job.fail(exc)

    def backup_vm(self, vm_name: str, pipeline: ArchivePipeline) -> BackupJob:
        """Run the full workflow for one VM; never raises for job-scoped errors"""
        job = BackupJob(vm_name=vm_name, policy=self.config.policy)
        window = SuspendWindow(vm_name)
        staged: Optional[Path] = None
        self.logger.info(f"Starting backup of {vm_name}", vm_name=vm_name,
                         policy=self.config.suspension_policy)
        try:
            with LogOperation(self.logger, "backup_vm", vm_name=vm_name):
                with self.lifecycle.suspended(window):
                    self.logger.info(f"Copying {vm_name} files", vm_name=vm_name)
                    job.captured_path = capture_folder(self.folder_resolver(vm_name),
                                                       self.config.scratch_dir)
                if window.suspended:
                    self.logger.info(f"{vm_name} is running again after "
                                     f"{window.downtime_seconds:.1f}s downtime", vm_name=vm_name)

                if self.needs_repair(window.original_state):
                    self.logger.info(f"Repairing disk images of {vm_name}", vm_name=vm_name)
                    self.repairer.repair_folder(job.captured_path)

                staged = self.sink.staging_path(vm_name)
                self.logger.info(f"{vm_name} - Compressing and encrypting "
                                 f"{format_size(folder_size(job.captured_path))}", vm_name=vm_name)
                job.archive_size = pipeline.build(job.captured_path, staged)
                try:
                    job.archive_path = self.sink.store(staged, vm_name)
                except RotationError as e:
                    job.archive_path = e.current_path
                    job.warnings.append(str(e))
                    self.logger.warning(f"{vm_name}: {e}", vm_name=vm_name)
                staged = None
                job.outcome = JobOutcome.SUCCESS
        except BackupError as e:
            self.logger.error(f"Backup of {vm_name} failed: {e}", vm_name=vm_name,
                              error_type=type(e).__name__, context=e.context)
            self._record_failure(job, window, e)
        except Exception as e:
            self.logger.exception(f"Unexpected error while backing up {vm_name}", vm_name=vm_name)
            self._record_failure(job, window, e)
        finally:
            if staged is not None:
                staged.unlink(missing_ok=True)
            if job.captured_path is not None:
                discard_capture(job.captured_path)
            job.original_state = window.original_state
            job.downtime_seconds = window.downtime_seconds
            job.final_state = self._observe_state(vm_name)
            job.finished_at = datetime.now()

        if job.outcome == JobOutcome.SUCCESS:
            self.logger.info(f"{vm_name} - Backup took {format_duration(job.duration_seconds)}, "
                             f"archive is {format_size(job.archive_size)}",
                             vm_name=vm_name, archive_size=job.archive_size,
                             duration_seconds=job.duration_seconds)
        return job

    def run_batch(self, vm_names: Optional[List[str]] = None) -> BatchReport:
        """Back up the fleet and deliver the report.

        Only PreconditionError (including InventoryError) escapes; every
        other failure is recorded against the VM it happened to.
        """
        self.preflight(self.config)
        passphrase = read_passphrase(Path(self.config.pass_file))
        pipeline = self.pipeline_factory(self.config, passphrase)
        repair_enabled = self.config.policy == SuspensionPolicy.PAUSE

        report = BatchReport()
        with capture_timeline() as timeline:
            self.logger.info("VM backup run started", policy=self.config.suspension_policy)
            with self.hypervisor:
                names = self.hypervisor.list_vms()
                self.logger.info(f"Found {len(names)} VM(s)", vm_count=len(names))
                for unknown in sorted(set(vm_names or ()) - set(names)):
                    self.logger.warning(f"Requested VM {unknown} does not exist", vm_name=unknown)
                if repair_enabled:
                    self.repairer.load_driver()
                try:
                    for vm_name in names:
                        reason = self.exclusion_reason(vm_name, vm_names)
                        if reason is None and self.cancel_event.is_set():
                            reason = "batch cancelled"
                        if reason is not None:
                            report.add(self._skipped_job(vm_name, reason))
                            continue
                        report.add(self.backup_vm(vm_name, pipeline))
                finally:
                    if repair_enabled:
                        self.repairer.unload_driver()

            report.finished_at = datetime.now()
            self.logger.info(
                f"All backups complete: {report.succeeded} succeeded, {report.failed} failed, "
                f"{report.skipped} skipped in {format_duration(report.duration_seconds)}",
                succeeded=report.succeeded, failed=report.failed, skipped=report.skipped)
            report.timeline = list(timeline.lines)

        self.report_sink.deliver(report)
        return report
