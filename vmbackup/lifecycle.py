"""
VM lifecycle controller: suspend a VM for capture and always bring it back

Two policies make a running VM's disk safe to copy:

* shutdown - ACPI power button, wait for ``poweroff``, copy, start again.
* pause    - pause, wait for ``paused``, copy, resume. The copy is taken
             mid-transaction and has to be repaired afterwards.

A VM that was not running when its turn came is copied in place and never
touched. Every wait is bounded, and whenever the controller suspended a VM it
tries to return it to ``running`` however the job ends.
"""
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, Iterator, Optional

from .exceptions import BackupError, JobCancelled, StateTransitionError
from .logging_config import get_logger
from .models import SuspensionPolicy, VMState
from .vm_manager import HypervisorManager

# States from which restore() knows which command to issue
SETTLED_STATES = frozenset({VMState.RUNNING, VMState.PAUSED, VMState.POWEROFF,
                            VMState.SAVED, VMState.ABORTED})
STARTABLE_STATES = frozenset({VMState.POWEROFF, VMState.SAVED, VMState.ABORTED})


@dataclass
class SuspendWindow:
    """What happened to one VM between suspend and restore"""
    vm_name: str
    original_state: VMState = VMState.UNKNOWN
    suspended: bool = False
    suspended_at: Optional[float] = None
    restored_at: Optional[float] = None
    restore_error: Optional[BackupError] = None

    @property
    def downtime_seconds(self) -> float:
        if self.suspended_at is None or self.restored_at is None:
            return 0.0
        return self.restored_at - self.suspended_at


class LifecycleController:
    """Drives one VM through suspend -> capture -> restore"""

    def __init__(self, hypervisor: HypervisorManager,
                 policy: SuspensionPolicy = SuspensionPolicy.SHUTDOWN,
                 poll_interval: float = 1.0,
                 shutdown_timeout: float = 600.0,
                 pause_timeout: float = 120.0,
                 start_timeout: float = 300.0,
                 cancel_event: Optional[threading.Event] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.hypervisor = hypervisor
        self.policy = policy
        self.poll_interval = poll_interval
        self.shutdown_timeout = shutdown_timeout
        self.pause_timeout = pause_timeout
        self.start_timeout = start_timeout
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self._clock = clock
        self.logger = get_logger("vmbackup.lifecycle")

    @classmethod
    def from_settings(cls, hypervisor: HypervisorManager, config,
                      cancel_event: Optional[threading.Event] = None) -> 'LifecycleController':
        return cls(
            hypervisor,
            policy=config.policy,
            poll_interval=config.poll_interval,
            shutdown_timeout=config.shutdown_timeout,
            pause_timeout=config.pause_timeout,
            start_timeout=config.start_timeout,
            cancel_event=cancel_event,
        )

    def wait_for_state(self, vm_name: str, targets: Iterable[VMState], timeout: float,
                       honour_cancel: bool = True) -> VMState:
        """Poll until the VM reports one of ``targets``; bounded by ``timeout``"""
        wanted: FrozenSet[VMState] = frozenset(targets)
        deadline = self._clock() + timeout
        state = self.hypervisor.get_state(vm_name)
        while state not in wanted:
            if honour_cancel and self.cancel_event.is_set():
                raise JobCancelled(f"Cancelled while waiting for {vm_name}", {"vm_name": vm_name})
            if self._clock() >= deadline:
                raise StateTransitionError(vm_name, wanted, state, timeout)
            self._sleep(self.poll_interval)
            state = self.hypervisor.get_state(vm_name)
        return state

    def _suspend(self, vm_name: str) -> None:
        if self.policy == SuspensionPolicy.SHUTDOWN:
            self.logger.info(f"{vm_name} being powered off", vm_name=vm_name)
            self.hypervisor.shutdown(vm_name)
            self.wait_for_state(vm_name, {VMState.POWEROFF}, self.shutdown_timeout)
            self.logger.info(f"{vm_name} has been powered off", vm_name=vm_name)
        else:
            self.logger.info(f"{vm_name} being paused", vm_name=vm_name)
            self.hypervisor.pause(vm_name)
            self.wait_for_state(vm_name, {VMState.PAUSED}, self.pause_timeout)
            self.logger.info(f"{vm_name} has been paused", vm_name=vm_name)

    def restore(self, vm_name: str) -> None:
        """Bring a VM the controller suspended back to ``running``.

        Works from the observed state rather than the policy, so it also
        recovers a VM left half way by a timed out or cancelled suspend.
        Cancellation is deliberately ignored here.
        """
        state = self.hypervisor.get_state(vm_name)
        if state == VMState.RUNNING:
            return
        if state not in SETTLED_STATES:
            state = self.wait_for_state(vm_name, SETTLED_STATES, self.start_timeout,
                                        honour_cancel=False)
        if state == VMState.PAUSED:
            self.logger.info(f"Resuming {vm_name}", vm_name=vm_name)
            self.hypervisor.resume(vm_name)
        elif state in STARTABLE_STATES:
            self.logger.info(f"Restarting {vm_name}", vm_name=vm_name)
            self.hypervisor.start(vm_name)
        if state != VMState.RUNNING:
            self.wait_for_state(vm_name, {VMState.RUNNING}, self.start_timeout,
                                honour_cancel=False)

    @contextmanager
    def suspended(self, window: SuspendWindow) -> Iterator[SuspendWindow]:
        """Hold the VM in a capturable state for the body of the ``with`` block.

        The caller owns ``window`` so the outcome survives a failed suspend.
        """
        vm_name = window.vm_name
        window.original_state = self.hypervisor.get_state(vm_name)
        self.logger.info(f"{vm_name} state is: {window.original_state.value}.",
                         vm_name=vm_name, state=window.original_state.value)

        if window.original_state != VMState.RUNNING:
            yield window
            return

        window.suspended = True
        window.suspended_at = self._clock()
        try:
            self._suspend(vm_name)
            yield window
        except BaseException:
            try:
                self.restore(vm_name)
            except BackupError as restore_error:
                window.restore_error = restore_error
                self.logger.error(f"Could not restore {vm_name} after a failure: {restore_error}",
                                  vm_name=vm_name)
            window.restored_at = self._clock()
            raise
        try:
            self.restore(vm_name)
        finally:
            # Downtime runs until restore gives up, even if the VM stays down
            window.restored_at = self._clock()
