"""
Copy a VM's storage folder to scratch space while the VM is suspended
"""
import shutil
from pathlib import Path

from .exceptions import CaptureError
from .logging_config import get_logger, LogOperation

logger = get_logger("vmbackup.capture")


def capture_folder(source: Path, scratch_dir: Path) -> Path:
    """Copy ``source`` to ``scratch_dir/<source name>``, replacing any stale copy"""
    source = Path(source)
    if not source.is_dir():
        raise CaptureError(f"VM folder {source} does not exist", {"source": str(source)})

    target = Path(scratch_dir) / source.name
    discard_capture(target)
    try:
        with LogOperation(logger, "capture_folder", source=str(source), target=str(target)):
            Path(scratch_dir).mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, target, symlinks=True)
    except (OSError, shutil.Error) as e:
        discard_capture(target)
        raise CaptureError(f"Copying {source} failed: {e}", {"source": str(source)}) from e
    return target


def discard_capture(path: Path) -> None:
    """Remove a captured copy; missing copies are fine"""
    path = Path(path)
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.warning(f"Could not fully remove scratch copy {path}", path=str(path))


def folder_size(path: Path) -> int:
    """Total size in bytes of the regular files below ``path``"""
    return sum(p.stat().st_size for p in Path(path).rglob('*') if p.is_file() and not p.is_symlink())
