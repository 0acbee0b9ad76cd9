"""
Exception hierarchy for the VM backup system

Hierarchy:
    BackupError (base)
    ├── PreconditionError        ← fatal, aborts the batch before any VM is touched
    │   └── InventoryError       ← control plane unreachable / VM listing failed
    ├── HypervisorError          ← a power or state command failed for one VM
    ├── StateTransitionError     ← VM never reached the expected state
    ├── CaptureError             ← VM folder could not be copied
    ├── RepairError              ← fsck reported unrecoverable damage
    ├── PipelineError            ← tar / compress / encrypt / write failed
    ├── RotationError            ← older generations could not be shifted
    └── JobCancelled             ← cancellation requested during a job

Everything except PreconditionError is job-scoped: the batch records it
against one VM and carries on with the next.
"""
from typing import Any, Dict, Optional


class BackupError(Exception):
    """Base exception for all backup errors with structured context"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class PreconditionError(BackupError):
    """Environment or setup problem detected before any VM work begins"""


class InventoryError(PreconditionError):
    """The hypervisor control plane could not enumerate VMs"""


class HypervisorError(BackupError):
    """A hypervisor command for a single VM failed"""


class StateTransitionError(BackupError):
    """A VM did not reach the expected state within its timeout"""

    def __init__(self, vm_name: str, expected, last_state, timeout: float):
        expected_names = ", ".join(sorted(state.value for state in expected))
        super().__init__(
            f"{vm_name} did not reach {expected_names} within {timeout:g}s "
            f"(last state: {last_state.value})",
            {"vm_name": vm_name, "expected": expected_names,
             "last_state": last_state.value, "timeout": timeout},
        )
        self.vm_name = vm_name
        self.expected = expected
        self.last_state = last_state
        self.timeout = timeout


class CaptureError(BackupError):
    """The VM storage folder could not be copied to scratch space"""


class RepairError(BackupError):
    """Filesystem repair of a captured disk image failed"""


class PipelineError(BackupError):
    """The archive pipeline failed; no complete archive was produced"""


class RotationError(BackupError):
    """Rotating older generations failed; the new archive is still kept"""

    def __init__(self, message: str, current_path, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.current_path = current_path


class JobCancelled(BackupError):
    """Cancellation was requested while a job was in progress"""
