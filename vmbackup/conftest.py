"""
Shared fixtures: an in-memory hypervisor and settings rooted in tmp_path
"""
import os
from typing import Dict, List, Optional

import pytest

from vmbackup.config import BackupSettings
from vmbackup.exceptions import HypervisorError, InventoryError
from vmbackup.lifecycle import LifecycleController
from vmbackup.models import SuspensionPolicy, VMState
from vmbackup.vm_manager import HypervisorManager


class FakeHypervisor(HypervisorManager):
    """Hypervisor whose VMs change state instantly (or never, when stuck)"""

    def __init__(self, states: Optional[Dict[str, VMState]] = None):
        self.states: Dict[str, VMState] = dict(states or {})
        self.calls: List[tuple] = []
        self.stuck: set = set()
        self.failing: Dict[str, set] = {}
        self.inventory_error: Optional[str] = None
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def _list_vm_names(self) -> List[str]:
        if self.inventory_error:
            raise InventoryError(self.inventory_error)
        return list(self.states)

    def get_state(self, vm_name: str) -> VMState:
        if vm_name not in self.states:
            raise HypervisorError(f"VM '{vm_name}' not found")
        return self.states[vm_name]

    def _transition(self, operation: str, vm_name: str, target: VMState) -> None:
        self.calls.append((operation, vm_name))
        if operation in self.failing.get(vm_name, set()):
            raise HypervisorError(f"{operation} failed for {vm_name}")
        if vm_name not in self.stuck:
            self.states[vm_name] = target

    def pause(self, vm_name: str) -> None:
        self._transition("pause", vm_name, VMState.PAUSED)

    def resume(self, vm_name: str) -> None:
        self._transition("resume", vm_name, VMState.RUNNING)

    def shutdown(self, vm_name: str) -> None:
        self._transition("shutdown", vm_name, VMState.POWEROFF)

    def start(self, vm_name: str) -> None:
        self._transition("start", vm_name, VMState.RUNNING)

    def operations(self, vm_name: str) -> List[str]:
        return [operation for operation, name in self.calls if name == vm_name]


class FakeClock:
    """Monotonic clock advanced only by the fake sleep"""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_hypervisor():
    return FakeHypervisor()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_controller(fake_clock):
    def _make(hypervisor, policy=SuspensionPolicy.SHUTDOWN, cancel_event=None):
        return LifecycleController(
            hypervisor, policy=policy, poll_interval=1.0,
            shutdown_timeout=10.0, pause_timeout=5.0, start_timeout=10.0,
            cancel_event=cancel_event, sleep=fake_clock.sleep, clock=fake_clock,
        )
    return _make


@pytest.fixture
def secret_file(tmp_path):
    path = tmp_path / "passfile"
    path.write_text("correct horse battery staple\n")
    os.chmod(path, 0o600)
    return path


@pytest.fixture
def settings(tmp_path, secret_file, monkeypatch):
    """Settings with every directory under tmp_path and no env overrides"""
    for key in list(os.environ):
        if key.startswith("VMBACKUP_"):
            monkeypatch.delenv(key)
    export_dir = tmp_path / "export"
    vm_folder = tmp_path / "vms"
    export_dir.mkdir()
    vm_folder.mkdir()
    return BackupSettings(
        export_dir=str(export_dir),
        vm_folder=str(vm_folder),
        tmp_dir=str(tmp_path / "scratch"),
        pass_file=str(secret_file),
        compressor="gzip",
        log_dir=str(tmp_path / "logs"),
        poll_interval=0.01,
    )


@pytest.fixture
def make_vm_folder(settings):
    """Create ``<vm_folder>/<name>`` with a machine file and disk images"""
    def _make(vm_name: str, disks=("disk.vdi",)):
        folder = settings.vm_folder_path(vm_name)
        folder.mkdir(parents=True)
        (folder / f"{vm_name}.vbox").write_text(f"<VirtualBox name='{vm_name}'/>")
        for disk in disks:
            (folder / disk).write_bytes(os.urandom(4096))
        return folder
    return _make
