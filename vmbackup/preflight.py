"""
Pre-flight checks: everything that must hold before any VM is touched
"""
import os
import shutil
from pathlib import Path
from typing import Callable, List, Optional

from .config import BackupSettings
from .crypto import check_secret_file
from .exceptions import PreconditionError
from .logging_config import get_logger
from .models import SuspensionPolicy

logger = get_logger("vmbackup.preflight")

REPAIR_TOOLS = ("qemu-nbd", "fsck", "modprobe", "rmmod")


def required_tools(config: BackupSettings) -> List[str]:
    tools = []
    if config.hypervisor == "vboxmanage":
        tools.append(config.vboxmanage_path)
        if config.vbox_user:
            tools.append("sudo")
    if config.compressor == "pigz":
        tools.append("pigz")
    if config.policy == SuspensionPolicy.PAUSE:
        tools.extend(REPAIR_TOOLS)
    return tools


def check_tools(config: BackupSettings, which: Optional[Callable[[str], Optional[str]]] = None) -> None:
    which = which or shutil.which
    missing = [tool for tool in required_tools(config) if which(tool) is None]
    if missing:
        raise PreconditionError(f"Required tools not found on PATH: {', '.join(missing)}",
                                {"missing": missing})


def check_directories(config: BackupSettings) -> None:
    export_dir = Path(config.export_dir)
    if not export_dir.is_dir():
        raise PreconditionError(f"Export directory {export_dir} does not exist",
                                {"export_dir": str(export_dir)})
    if not os.access(export_dir, os.W_OK):
        raise PreconditionError(f"Export directory {export_dir} is not writable",
                                {"export_dir": str(export_dir)})
    if not Path(config.vm_folder).is_dir():
        raise PreconditionError(f"VM folder {config.vm_folder} does not exist",
                                {"vm_folder": config.vm_folder})
    try:
        config.scratch_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PreconditionError(f"Cannot create scratch directory {config.scratch_dir}: {e}") from e


def check_privileges(config: BackupSettings, geteuid: Optional[Callable[[], int]] = None) -> None:
    """Attaching disk images needs root"""
    geteuid = geteuid or os.geteuid
    if config.policy == SuspensionPolicy.PAUSE and geteuid() != 0:
        raise PreconditionError("The pause policy repairs disk images and must run as root")


def run_preflight(config: BackupSettings) -> None:
    """Raise PreconditionError on the first check that fails"""
    config.validate()
    check_secret_file(Path(config.pass_file))
    check_directories(config)
    check_tools(config)
    check_privileges(config)
    logger.debug("Pre-flight checks passed", policy=config.suspension_policy)
