"""
End-of-batch report rendering and delivery
"""
import smtplib
import time
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from email.utils import formatdate
from typing import Callable, Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .logging_config import get_logger
from .models import BatchReport, BackupJob, JobOutcome

REPORT_SUBJECT = "VM Backups have run"
SEND_ATTEMPTS = 3


def format_size(num_bytes: int) -> str:
    """Human readable size, like ``du -h``"""
    size = float(num_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            if unit == "B":
                return f"{int(size)}B"
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "n/a"
    total = int(round(seconds))
    return f"{total // 60} minutes, {total % 60} seconds"


def _job_lines(job: BackupJob):
    yield f"{job.vm_name}: {job.outcome.value}"
    if job.outcome == JobOutcome.SKIPPED:
        if job.error:
            yield f"    reason: {job.error}"
        return
    yield f"    state: {job.original_state.value} -> {job.final_state.value}"
    yield f"    duration: {format_duration(job.duration_seconds)}"
    if job.downtime_seconds:
        yield f"    downtime: {format_duration(job.downtime_seconds)}"
    if job.archive_path is not None:
        yield f"    archive: {job.archive_path} ({format_size(job.archive_size)})"
    if job.error:
        yield f"    error: {job.error_type}: {job.error}"
    for warning in job.warnings:
        yield f"    warning: {warning}"


def render_report(report: BatchReport) -> str:
    lines = [
        f"VM backup run started {report.started_at:%Y-%m-%d %H:%M:%S}",
        f"{report.succeeded} succeeded, {report.failed} failed, {report.skipped} skipped; "
        f"{format_size(report.total_archive_bytes)} archived in "
        f"{format_duration(report.duration_seconds)}",
        "",
    ]
    for job in report.jobs:
        lines.extend(_job_lines(job))
    if report.timeline:
        lines.append("")
        lines.append("Timeline:")
        lines.extend(report.timeline)
    return "\n".join(lines) + "\n"


def report_subject(report: BatchReport) -> str:
    if report.has_failures:
        return f"{REPORT_SUBJECT} ({report.failed} failed)"
    return REPORT_SUBJECT


class ReportSink(ABC):
    """Receives the finished batch report"""

    @abstractmethod
    def deliver(self, report: BatchReport) -> None:
        """Deliver the report; must not raise"""


class LogReportSink(ReportSink):
    def __init__(self):
        self.logger = get_logger("vmbackup.report")

    def deliver(self, report: BatchReport) -> None:
        self.logger.info(f"{report_subject(report)}\n{render_report(report)}",
                         succeeded=report.succeeded, failed=report.failed,
                         skipped=report.skipped)


class EmailReportSink(ReportSink):
    """Mails the report through a plain SMTP relay"""

    def __init__(self, mail_server: str, mail_from: str, mail_to: str, mail_port: int = 25,
                 mail_delay: float = 0.0, smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
                 sleep: Callable[[float], None] = time.sleep, retry_delay: float = 10.0):
        self.mail_server = mail_server
        self.mail_from = mail_from
        self.mail_to = mail_to
        self.mail_port = mail_port
        self.mail_delay = mail_delay
        self.retry_delay = retry_delay
        self._smtp_factory = smtp_factory
        self._sleep = sleep
        self.logger = get_logger("vmbackup.report")

    @classmethod
    def from_settings(cls, config) -> 'EmailReportSink':
        return cls(
            mail_server=config.mail_server,
            mail_from=config.mail_from,
            mail_to=config.mail_to,
            mail_port=config.mail_port,
            mail_delay=config.mail_delay,
        )

    def build_message(self, report: BatchReport) -> MIMEText:
        message = MIMEText(render_report(report))
        message["Subject"] = report_subject(report)
        message["From"] = self.mail_from
        message["To"] = self.mail_to
        message["Date"] = formatdate(localtime=True)
        return message

    def _log_failed_attempt(self, retry_state: RetryCallState) -> None:
        self.logger.warning(
            f"Sending report failed (attempt {retry_state.attempt_number}/{SEND_ATTEMPTS}): "
            f"{retry_state.outcome.exception()}",
            mail_server=self.mail_server)

    def deliver(self, report: BatchReport) -> None:
        message = self.build_message(report)
        recipients = [addr.strip() for addr in self.mail_to.split(",") if addr.strip()]

        if self.mail_delay > 0:
            # The mail relay may be one of the VMs that was just restarted
            self.logger.info(f"Waiting {self.mail_delay:g}s before sending the report")
            self._sleep(self.mail_delay)

        retrying = Retrying(
            stop=stop_after_attempt(SEND_ATTEMPTS),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type((smtplib.SMTPException, OSError)),
            before_sleep=self._log_failed_attempt,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    with self._smtp_factory(self.mail_server, self.mail_port, timeout=60) as smtp:
                        smtp.sendmail(self.mail_from, recipients, message.as_string())
        except (smtplib.SMTPException, OSError) as e:
            self.logger.error(f"Report could not be mailed after {SEND_ATTEMPTS} attempts: {e}; "
                              "see the log file for this run", mail_server=self.mail_server)
            return
        self.logger.info(f"Report mailed to {self.mail_to}",
                         attempt=attempt.retry_state.attempt_number)
