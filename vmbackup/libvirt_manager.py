"""
Libvirt hypervisor backend
"""
from typing import List, Optional

import libvirt

from .exceptions import HypervisorError, InventoryError
from .logging_config import get_logger
from .models import VMState
from .vm_manager import HypervisorManager

STATE_MAP = {
    libvirt.VIR_DOMAIN_NOSTATE: VMState.UNKNOWN,
    libvirt.VIR_DOMAIN_RUNNING: VMState.RUNNING,
    libvirt.VIR_DOMAIN_BLOCKED: VMState.RUNNING,
    libvirt.VIR_DOMAIN_PAUSED: VMState.PAUSED,
    libvirt.VIR_DOMAIN_SHUTDOWN: VMState.STOPPING,
    libvirt.VIR_DOMAIN_SHUTOFF: VMState.POWEROFF,
    libvirt.VIR_DOMAIN_CRASHED: VMState.ABORTED,
    libvirt.VIR_DOMAIN_PMSUSPENDED: VMState.SAVED,
}


class LibvirtManager(HypervisorManager):
    """Manager for libvirt operations"""

    def __init__(self, uri: str = "qemu:///system"):
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None
        self.logger = get_logger("vmbackup.libvirt_manager")

    def connect(self) -> bool:
        """Connect to libvirt daemon"""
        try:
            if self.conn is None or not self.conn.isAlive():
                self.conn = libvirt.open(self.uri)
                self.logger.info("Connected to libvirt", uri=self.uri)
            return True
        except libvirt.libvirtError as e:
            self.logger.error("Failed to connect to libvirt", uri=self.uri, error=str(e))
            self.conn = None
            return False

    def close(self) -> None:
        """Disconnect from libvirt daemon"""
        if self.conn is not None:
            try:
                self.conn.close()
            except libvirt.libvirtError as e:
                self.logger.warning("Error closing libvirt connection", error=str(e))
            self.conn = None
            self.logger.info("Disconnected from libvirt")

    def _list_vm_names(self) -> List[str]:
        if not self.connect():
            raise InventoryError(f"Cannot connect to libvirt at {self.uri}")
        try:
            return [domain.name() for domain in self.conn.listAllDomains()]
        except libvirt.libvirtError as e:
            raise InventoryError(f"Cannot list VMs: {e}") from e

    def _domain(self, vm_name: str):
        if not self.connect():
            raise HypervisorError(f"Cannot connect to libvirt at {self.uri}", {"vm_name": vm_name})
        try:
            return self.conn.lookupByName(vm_name)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"VM '{vm_name}' not found: {e}", {"vm_name": vm_name}) from e

    def _call(self, vm_name: str, operation: str) -> None:
        domain = self._domain(vm_name)
        try:
            getattr(domain, operation)()
        except libvirt.libvirtError as e:
            raise HypervisorError(f"libvirt {operation} failed for {vm_name}: {e}",
                                  {"vm_name": vm_name}) from e

    def get_state(self, vm_name: str) -> VMState:
        domain = self._domain(vm_name)
        try:
            state, _reason = domain.state()
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Cannot read state of {vm_name}: {e}",
                                  {"vm_name": vm_name}) from e
        return STATE_MAP.get(state, VMState.UNKNOWN)

    def pause(self, vm_name: str) -> None:
        self._call(vm_name, "suspend")

    def resume(self, vm_name: str) -> None:
        self._call(vm_name, "resume")

    def shutdown(self, vm_name: str) -> None:
        self._call(vm_name, "shutdown")

    def start(self, vm_name: str) -> None:
        self._call(vm_name, "create")
