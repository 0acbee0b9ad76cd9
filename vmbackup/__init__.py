"""
VM Backup - consistent file-level backups of a virtual machine fleet

Each VM is suspended (ACPI shutdown or pause) only for as long as it takes to
copy its folder, then brought back. The copy is repaired if needed, streamed
through tar, compression and OpenSSL-compatible AES-256 encryption, and kept
as one of a bounded number of numbered generations. A report of the batch is
logged or mailed.
"""

__version__ = "1.0.0"

from .models import VMState, SuspensionPolicy, JobOutcome, BackupJob, BatchReport
from .config import BackupSettings, load_settings
from .vm_manager import HypervisorManager, VBoxManager, create_hypervisor
from .backup_manager import BackupManager

__all__ = [
    'VMState',
    'SuspensionPolicy',
    'JobOutcome',
    'BackupJob',
    'BatchReport',
    'BackupSettings',
    'load_settings',
    'HypervisorManager',
    'VBoxManager',
    'create_hypervisor',
    'BackupManager',
]
