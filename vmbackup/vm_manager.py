"""
Hypervisor control plane: VM inventory, state queries and power operations
"""
import re
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from .exceptions import HypervisorError, InventoryError
from .logging_config import get_logger
from .models import VMInfo, VMState

_VMSTATE_RE = re.compile(r'^VMState="?([^"\n]*)"?\s*$', re.MULTILINE)
_LIST_RE = re.compile(r'^"(?P<name>.*)"\s+\{(?P<uuid>[0-9a-fA-F-]+)\}\s*$')


class HypervisorManager(ABC):
    """Operations the backup workflow consumes from a hypervisor"""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        """Release any connection held to the control plane"""

    def list_vms(self) -> List[str]:
        """VM names in deterministic (lexicographic) order"""
        return sorted(self._list_vm_names())

    def list_all_vms(self) -> List[VMInfo]:
        """List all VMs with their current state"""
        return [VMInfo(name=name, state=self.get_state(name)) for name in self.list_vms()]

    @abstractmethod
    def _list_vm_names(self) -> List[str]:
        ...

    @abstractmethod
    def get_state(self, vm_name: str) -> VMState:
        ...

    @abstractmethod
    def pause(self, vm_name: str) -> None:
        ...

    @abstractmethod
    def resume(self, vm_name: str) -> None:
        ...

    @abstractmethod
    def shutdown(self, vm_name: str) -> None:
        """Request a graceful (ACPI) shutdown"""

    @abstractmethod
    def start(self, vm_name: str) -> None:
        """Start a VM without a display"""


class VBoxManager(HypervisorManager):
    """VirtualBox control through the VBoxManage command line"""

    def __init__(self, vboxmanage_path: str = "VBoxManage", run_as: Optional[str] = None,
                 timeout: float = 120):
        self.vboxmanage_path = vboxmanage_path
        self.run_as = run_as
        self.timeout = timeout
        self.logger = get_logger("vmbackup.vm_manager")

    @property
    def command_prefix(self) -> List[str]:
        if self.run_as:
            return ["sudo", "-H", "-u", self.run_as, self.vboxmanage_path]
        return [self.vboxmanage_path]

    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess:
        command = self.command_prefix + list(args)
        self.logger.debug("Running VBoxManage", command=" ".join(command))
        return subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)

    def _run_checked(self, vm_name: str, args: Sequence[str]) -> str:
        try:
            result = self._run(args)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise HypervisorError(f"VBoxManage {args[0]} failed for {vm_name}: {e}",
                                  {"vm_name": vm_name}) from e
        if result.returncode != 0:
            raise HypervisorError(
                f"VBoxManage {' '.join(args[:2])} failed for {vm_name}: {result.stderr.strip()}",
                {"vm_name": vm_name, "exit_code": result.returncode},
            )
        return result.stdout

    def _list_vm_names(self) -> List[str]:
        try:
            result = self._run(["list", "vms"])
        except (OSError, subprocess.TimeoutExpired) as e:
            raise InventoryError(f"Cannot list VMs: {e}") from e
        if result.returncode != 0:
            raise InventoryError(f"Cannot list VMs: {result.stderr.strip()}",
                                 {"exit_code": result.returncode})

        names = []
        for line in result.stdout.splitlines():
            match = _LIST_RE.match(line.strip())
            if match:
                names.append(match.group("name"))
            elif line.strip():
                self.logger.warning("Unrecognised VBoxManage list line", line=line)
        return names

    def get_state(self, vm_name: str) -> VMState:
        output = self._run_checked(vm_name, ["showvminfo", vm_name, "--machinereadable"])
        match = _VMSTATE_RE.search(output)
        if not match:
            return VMState.UNKNOWN
        return VMState.parse(match.group(1))

    def pause(self, vm_name: str) -> None:
        self._run_checked(vm_name, ["controlvm", vm_name, "pause"])

    def resume(self, vm_name: str) -> None:
        self._run_checked(vm_name, ["controlvm", vm_name, "resume"])

    def shutdown(self, vm_name: str) -> None:
        self._run_checked(vm_name, ["controlvm", vm_name, "acpipowerbutton"])

    def start(self, vm_name: str) -> None:
        self._run_checked(vm_name, ["startvm", vm_name, "--type", "headless"])


def create_hypervisor(config) -> HypervisorManager:
    """Build the hypervisor backend named in the settings"""
    if config.hypervisor == "libvirt":
        from .libvirt_manager import LibvirtManager
        return LibvirtManager(config.libvirt_uri)
    return VBoxManager(config.vboxmanage_path, run_as=config.vbox_user)
