"""
Configuration settings for the VM backup system
"""
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional
import os

from .exceptions import PreconditionError
from .models import SuspensionPolicy

ENV_PREFIX = "VMBACKUP_"


def load_env_file(env_file: Path) -> None:
    """Load KEY=VALUE lines from a .env file into the process environment"""
    if not env_file.exists():
        return
    with open(env_file, 'r') as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#') and '=' in line:
                key, value = line.split('=', 1)
                os.environ[key.strip()] = value.strip().strip('"').strip("'")


def _coerce(field_type, raw: str):
    if field_type == int:
        return int(raw)
    if field_type == float:
        return float(raw)
    if field_type == bool:
        return raw.lower() in ('true', '1', 'yes')
    if field_type == List[str]:
        return [item.strip() for item in raw.split(',') if item.strip()]
    if field_type == Optional[str]:
        return raw or None
    return raw


@dataclass
class BackupSettings:
    """Main configuration for the VM backup system"""

    # Hypervisor
    hypervisor: str = "vboxmanage"
    vboxmanage_path: str = "VBoxManage"
    vbox_user: Optional[str] = None
    libvirt_uri: str = "qemu:///system"

    # Directories
    export_dir: str = ""
    tmp_dir: str = "/tmp"
    vm_folder: str = ""
    pass_file: str = ""
    archive_suffix: str = ".tgz.enc"

    # Retention
    backup_versions: int = 20

    # Lifecycle
    suspension_policy: str = "shutdown"
    poll_interval: float = 1.0
    shutdown_timeout: float = 600.0
    pause_timeout: float = 120.0
    start_timeout: float = 300.0

    # Archive pipeline
    compressor: str = "pigz"
    compression_level: int = 1
    key_derivation: str = "pbkdf2"

    # Disk repair (pause policy)
    disk_image_pattern: str = "*.vdi"
    repair_partition: int = 2
    nbd_device: str = "/dev/nbd0"
    nbd_max_part: int = 16

    # VM selection
    include_vms: List[str] = field(default_factory=list)
    exclude_vms: List[str] = field(default_factory=list)

    # Reporting
    mail_to: str = ""
    mail_from: str = ""
    mail_server: str = ""
    mail_port: int = 25
    mail_delay: float = 0.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"
    log_dir: str = "./logs"
    log_file_max_size: int = 10485760  # 10MB

    def __post_init__(self):
        """Load configuration from environment variables"""
        for settings_field in fields(self):
            env_value = os.getenv(f"{ENV_PREFIX}{settings_field.name.upper()}")
            if env_value is not None:
                try:
                    setattr(self, settings_field.name, _coerce(settings_field.type, env_value))
                except ValueError as e:
                    raise PreconditionError(
                        f"Invalid value for {ENV_PREFIX}{settings_field.name.upper()}: {env_value!r}"
                    ) from e

    @property
    def policy(self) -> SuspensionPolicy:
        try:
            return SuspensionPolicy(self.suspension_policy)
        except ValueError as e:
            raise PreconditionError(f"Invalid configuration: unknown suspension policy "
                                    f"'{self.suspension_policy}'") from e

    @property
    def scratch_dir(self) -> Path:
        return Path(self.tmp_dir) / "vmbackup"

    @property
    def email_enabled(self) -> bool:
        return bool(self.mail_to and self.mail_from and self.mail_server)

    def vm_folder_path(self, vm_name: str) -> Path:
        """Storage folder of a VM.

        By convention the folder carries the VM's name under ``vm_folder``;
        VBoxManage has no reliable way to report the base folder. This is the
        only place that convention lives.
        """
        return Path(self.vm_folder) / vm_name

    def validate(self) -> None:
        """Reject configurations that cannot possibly run"""
        problems = []
        for required in ("export_dir", "vm_folder", "pass_file"):
            if not getattr(self, required):
                problems.append(f"{required} is not set")
        if self.hypervisor not in ("vboxmanage", "libvirt"):
            problems.append(f"unknown hypervisor '{self.hypervisor}'")
        if self.suspension_policy not in [p.value for p in SuspensionPolicy]:
            problems.append(f"unknown suspension policy '{self.suspension_policy}'")
        if self.compressor not in ("pigz", "gzip"):
            problems.append(f"unknown compressor '{self.compressor}'")
        if self.key_derivation not in ("pbkdf2", "evp"):
            problems.append(f"unknown key derivation '{self.key_derivation}'")
        if not 1 <= self.compression_level <= 9:
            problems.append("compression_level must be between 1 and 9")
        if self.backup_versions < 1:
            problems.append("backup_versions must be at least 1")
        for timeout in ("poll_interval", "shutdown_timeout", "pause_timeout", "start_timeout"):
            if getattr(self, timeout) <= 0:
                problems.append(f"{timeout} must be positive")
        if problems:
            raise PreconditionError("Invalid configuration: " + "; ".join(problems))


def load_settings(env_file: Optional[Path] = None) -> BackupSettings:
    """Build the settings object once; callers pass it to every component"""
    if env_file is not None:
        load_env_file(Path(env_file))
    return BackupSettings()
