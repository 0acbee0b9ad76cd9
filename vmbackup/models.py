"""
Core models for the VM backup system
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional


class VMState(Enum):
    """Virtual Machine state enumeration"""
    RUNNING = "running"
    PAUSED = "paused"
    POWEROFF = "poweroff"
    SAVED = "saved"
    ABORTED = "aborted"
    STOPPING = "stopping"
    STARTING = "starting"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> 'VMState':
        """Map a hypervisor state string onto a VMState, falling back to UNKNOWN"""
        try:
            return cls(value.strip().strip('"').lower())
        except ValueError:
            return cls.UNKNOWN


class SuspensionPolicy(Enum):
    """How a running VM is made safe to capture"""
    SHUTDOWN = "shutdown"
    PAUSE = "pause"


class JobOutcome(Enum):
    """Outcome of a single VM backup"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class VMInfo:
    """Virtual Machine information"""
    name: str
    state: VMState
    folder: Optional[Path] = None


@dataclass
class BackupJob:
    """One VM's backup run"""
    vm_name: str
    policy: SuspensionPolicy
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    original_state: VMState = VMState.UNKNOWN
    final_state: VMState = VMState.UNKNOWN
    downtime_seconds: float = 0.0
    captured_path: Optional[Path] = None
    archive_path: Optional[Path] = None
    archive_size: int = 0
    outcome: JobOutcome = JobOutcome.PENDING
    error_type: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate job duration in seconds"""
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def fail(self, exc: BaseException) -> None:
        """Record a failure; the first error recorded wins"""
        if self.outcome != JobOutcome.FAILED:
            self.outcome = JobOutcome.FAILED
            self.error_type = type(exc).__name__
            self.error = str(exc)
        else:
            self.warnings.append(f"{type(exc).__name__}: {exc}")

    def skip(self, reason: str) -> None:
        self.outcome = JobOutcome.SKIPPED
        self.error = reason


@dataclass
class BatchReport:
    """Ordered job outcomes for one batch"""
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    jobs: List[BackupJob] = field(default_factory=list)
    timeline: List[str] = field(default_factory=list)

    def add(self, job: BackupJob) -> None:
        self.jobs.append(job)

    def _count(self, outcome: JobOutcome) -> int:
        return sum(1 for job in self.jobs if job.outcome == outcome)

    @property
    def succeeded(self) -> int:
        return self._count(JobOutcome.SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(JobOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(JobOutcome.SKIPPED)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    @property
    def total_archive_bytes(self) -> int:
        return sum(job.archive_size for job in self.jobs)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate batch duration in seconds"""
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    @property
    def success_rate(self) -> float:
        """Calculate success rate as percentage of attempted jobs"""
        attempted = self.succeeded + self.failed
        if attempted == 0:
            return 0.0
        return (self.succeeded / attempted) * 100
