"""
Archive retention: numbered generations and the local archive sink

For ``base = <export_dir>/web01.tgz.enc`` the generations are
``web01.tgz.enc.0`` (newest) up to ``web01.tgz.enc.<N-1>``, the same naming
``savelog`` uses. A new archive that cannot be rotated in because an older
unrotated one is in the way is kept as ``web01.tgz.enc.held-<timestamp>``.
"""
import os
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Tuple

from .exceptions import PipelineError, RotationError
from .logging_config import get_logger


@dataclass
class RotationResult:
    current: Path
    removed: List[Path] = field(default_factory=list)


class RetentionManager:
    """Keeps at most ``versions`` generations of each archive"""

    def __init__(self, versions: int = 20):
        if versions < 1:
            raise ValueError("versions must be at least 1")
        self.versions = versions
        self.logger = get_logger("vmbackup.retention")

    @staticmethod
    def generation_path(base: Path, index: int) -> Path:
        return base.with_name(f"{base.name}.{index}")

    def generations(self, base: Path) -> List[Tuple[int, Path]]:
        """Existing generations of ``base`` ordered newest first"""
        base = Path(base)
        pattern = re.compile(re.escape(base.name) + r"\.(\d+)$")
        found = []
        if base.parent.is_dir():
            for entry in base.parent.iterdir():
                match = pattern.match(entry.name)
                if match and entry.is_file():
                    found.append((int(match.group(1)), entry))
        return sorted(found)

    def rotate(self, base: Path) -> RotationResult:
        """Turn a freshly written ``base`` into generation 0 and trim the rest.

        Order is shift, place, trim: nothing older is deleted until the new
        archive holds slot 0. If a shift fails the new archive stays at
        ``base`` and RotationError says where it is. Without a new ``base``
        this only trims, so repeating it changes nothing.
        """
        base = Path(base)
        result = RotationResult(current=base)
        problems = []

        if base.exists():
            shifted = True
            for index, path in reversed(self.generations(base)):
                try:
                    os.replace(path, self.generation_path(base, index + 1))
                except OSError as e:
                    problems.append(f"cannot shift {path.name}: {e}")
                    shifted = False
                    break
            if shifted:
                newest = self.generation_path(base, 0)
                try:
                    os.replace(base, newest)
                    result.current = newest
                except OSError as e:
                    problems.append(f"cannot move {base.name} to {newest.name}: {e}")

        for index, path in self.generations(base):
            if index < self.versions:
                continue
            try:
                path.unlink()
                result.removed.append(path)
            except OSError as e:
                problems.append(f"cannot delete {path.name}: {e}")

        if result.removed:
            self.logger.info(f"Removed {len(result.removed)} expired generation(s) of {base.name}",
                             removed=[p.name for p in result.removed])
        if problems:
            raise RotationError(
                f"Rotation of {base.name} incomplete: {'; '.join(problems)}; "
                f"newest archive kept at {result.current}",
                current_path=result.current,
                context={"problems": problems},
            )
        return result


class ArchiveSink(ABC):
    """Where finished archives end up"""

    @abstractmethod
    def staging_path(self, vm_name: str) -> Path:
        """Location the pipeline should write the new archive to"""

    @abstractmethod
    def store(self, staged: Path, vm_name: str) -> Path:
        """Take ownership of a complete archive; return its final location"""


class LocalDirectorySink(ArchiveSink):
    """Keeps rotated archives in a local (or mounted) export directory"""

    def __init__(self, export_dir: Path, retention: RetentionManager, suffix: str = ".tgz.enc"):
        self.export_dir = Path(export_dir)
        self.retention = retention
        self.suffix = suffix
        self.logger = get_logger("vmbackup.retention")

    def archive_path(self, vm_name: str) -> Path:
        return self.export_dir / f"{vm_name}{self.suffix}"

    def staging_path(self, vm_name: str) -> Path:
        return self.export_dir / f"{vm_name}{self.suffix}.new"

    def held_path(self, vm_name: str) -> Path:
        """Unique name for a new archive that cannot be rotated into place"""
        base = self.archive_path(vm_name)
        return base.with_name(f"{base.name}.held-{datetime.now():%Y%m%dT%H%M%S%f}")

    def _hold(self, staged: Path, vm_name: str) -> Path:
        held = self.held_path(vm_name)
        try:
            shutil.move(str(staged), str(held))
        except OSError as e:
            raise PipelineError(f"Cannot keep archive {held}: {e}", {"vm_name": vm_name}) from e
        return held

    def store(self, staged: Path, vm_name: str) -> Path:
        base = self.archive_path(vm_name)
        if base.exists():
            # Left over from an earlier incomplete rotation; file it first
            self.logger.warning(f"Unrotated archive {base.name} found; rotating it first")
            try:
                self.retention.rotate(base)
            except RotationError as e:
                if not base.exists():
                    self.logger.warning(str(e), vm_name=vm_name)
                else:
                    # base still holds the earlier run and the staging
                    # name is reused next run
                    held = self._hold(staged, vm_name)
                    raise RotationError(
                        f"Unrotated archive {base.name} is in the way ({e}); "
                        f"new archive kept at {held}",
                        current_path=held,
                        context=e.context,
                    ) from e

        self.logger.info(f"Moving archive to {self.export_dir}", vm_name=vm_name)
        try:
            if Path(staged).parent != self.export_dir:
                interim = base.with_name(base.name + ".partial")
                shutil.move(str(staged), str(interim))
                staged = interim
            os.replace(staged, base)
        except OSError as e:
            raise PipelineError(f"Cannot place archive {base}: {e}", {"vm_name": vm_name}) from e

        self.logger.info(f"{vm_name} - Rolling backups", vm_name=vm_name)
        return self.retention.rotate(base).current
