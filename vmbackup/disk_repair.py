"""
Filesystem repair of a captured virtual disk through a network block device

A copy taken while the VM was paused looks like an uncleanly unmounted
filesystem. The image is attached with ``qemu-nbd``, its data partition is
checked with ``fsck -y`` and the device is detached again. Only the scratch
copy is ever attached, never the live VM's disk.
"""
import subprocess
import threading
from dataclasses import dataclass
from enum import IntFlag
from pathlib import Path
from typing import Callable, List, Sequence

from .exceptions import PreconditionError, RepairError
from .logging_config import get_logger


class FsckStatus(IntFlag):
    """fsck exit status bits"""
    OK = 0
    CORRECTED = 1
    REBOOT_REQUIRED = 2
    UNCORRECTED = 4
    OPERATIONAL_ERROR = 8
    USAGE_ERROR = 16
    CANCELLED = 32
    LIBRARY_ERROR = 128


# Anything beyond "errors corrected" means the image cannot be trusted
RECOVERABLE = FsckStatus.CORRECTED | FsckStatus.REBOOT_REQUIRED


@dataclass
class RepairResult:
    image: Path
    device: str
    exit_code: int
    output: str = ""

    @property
    def recovered(self) -> bool:
        return self.exit_code & ~int(RECOVERABLE) == 0


Runner = Callable[..., subprocess.CompletedProcess]


class NbdDiskRepairer:
    """Attach, fsck and detach disk images one at a time"""

    # There is one nbd device per host; it must never be shared
    _device_lock = threading.Lock()

    def __init__(self, nbd_device: str = "/dev/nbd0", partition: int = 2,
                 image_pattern: str = "*.vdi", max_part: int = 16,
                 runner: Runner = subprocess.run, timeout: float = 3600):
        self.nbd_device = nbd_device
        self.partition = partition
        self.image_pattern = image_pattern
        self.max_part = max_part
        self.timeout = timeout
        self._runner = runner
        self.logger = get_logger("vmbackup.disk_repair")

    @classmethod
    def from_settings(cls, config) -> 'NbdDiskRepairer':
        return cls(
            nbd_device=config.nbd_device,
            partition=config.repair_partition,
            image_pattern=config.disk_image_pattern,
            max_part=config.nbd_max_part,
        )

    def _run(self, command: Sequence[str]) -> subprocess.CompletedProcess:
        self.logger.debug("Running command", command=" ".join(command))
        try:
            return self._runner(list(command), capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RepairError(f"{command[0]} failed: {e}", {"command": " ".join(command)}) from e

    def load_driver(self) -> None:
        """(Re)load the nbd kernel module with partition support"""
        try:
            self._run(["rmmod", "nbd"])
            result = self._run(["modprobe", "nbd", f"max_part={self.max_part}"])
        except RepairError as e:
            raise PreconditionError(f"Cannot load nbd driver: {e}") from e
        if result.returncode != 0:
            raise PreconditionError(f"Cannot load nbd driver: {result.stderr.strip()}")
        self.logger.info("nbd driver loaded", max_part=self.max_part)

    def unload_driver(self) -> None:
        try:
            result = self._run(["rmmod", "nbd"])
        except RepairError as e:
            self.logger.warning(f"Could not unload nbd driver: {e}")
            return
        if result.returncode != 0:
            self.logger.warning(f"Could not unload nbd driver: {result.stderr.strip()}")

    def find_images(self, folder: Path) -> List[Path]:
        return sorted(Path(folder).glob(self.image_pattern))

    def attach(self, image: Path) -> str:
        result = self._run(["qemu-nbd", "-c", self.nbd_device, str(image)])
        if result.returncode != 0:
            raise RepairError(f"qemu-nbd could not attach {image.name}: {result.stderr.strip()}",
                              {"image": str(image)})
        return self.nbd_device

    def detach(self, device: str) -> None:
        result = self._run(["qemu-nbd", "-d", device])
        if result.returncode != 0:
            raise RepairError(f"qemu-nbd could not detach {device}: {result.stderr.strip()}",
                              {"device": device})

    def check(self, image: Path, device: str) -> RepairResult:
        partition = f"{device}p{self.partition}"
        result = self._run(["fsck", "-y", partition])
        return RepairResult(image=image, device=partition, exit_code=result.returncode,
                            output=(result.stdout or "") + (result.stderr or ""))

    def repair_image(self, image: Path) -> RepairResult:
        """Attach ``image``, fsck its data partition, always detach"""
        with self._device_lock:
            device = self.attach(image)
            try:
                result = self.check(image, device)
            finally:
                self.detach(device)

        if not result.recovered:
            raise RepairError(
                f"fsck could not repair {image.name} (exit status {result.exit_code})",
                {"image": str(image), "exit_code": result.exit_code, "output": result.output[-2000:]},
            )
        self.logger.info(f"Repaired {image.name}: fsck exit status {result.exit_code}",
                         image=str(image), exit_code=result.exit_code)
        return result

    def repair_folder(self, folder: Path) -> List[RepairResult]:
        images = self.find_images(folder)
        if not images:
            self.logger.warning(f"No disk image matching {self.image_pattern} in {folder}",
                                folder=str(folder))
            return []
        return [self.repair_image(image) for image in images]
