"""Track machines registered by systemd-machined.

Machine states only move forward (opening, running, closing); there is
no transition back, and no transition out of closing.
"""

__all__ = [
    'Machine',
    'MachineRegistry',
    'MachineState',
]

import dataclasses
import datetime
import enum
import functools
import logging
import threading
import typing

from .errors import (
    DuplicateMachine,
    InvalidStateTransition,
    MachineNotFound,
)

LOG = logging.getLogger(__name__)


@functools.total_ordering
class MachineState(enum.Enum):

    OPENING = 'opening'
    RUNNING = 'running'
    CLOSING = 'closing'

    def __lt__(self, other):
        if not isinstance(other, MachineState):
            return NotImplemented
        return _ORDER[self] < _ORDER[other]

    @classmethod
    def parse(cls, value):
        return cls(value.strip().lower())


_ORDER = {
    MachineState.OPENING: 0,
    MachineState.RUNNING: 1,
    MachineState.CLOSING: 2,
}


@dataclasses.dataclass(frozen=True)
class Machine:

    name: str
    id: str = ''
    timestamp: typing.Optional[datetime.datetime] = None
    # In microseconds.
    timestamp_monotonic: int = 0
    service: str = ''
    unit: str = ''
    leader: int = 0
    class_: str = ''
    root_directory: str = ''
    network_interfaces: typing.Tuple[int, ...] = ()
    state: MachineState = MachineState.OPENING


class MachineRegistry:
    """Registry of machines, keyed by machine name.

    Callers must make sure that there is at most one writer per machine
    name at a time (the driver does this); the registry only protects
    its own bookkeeping.
    """

    # Signal the leader process rather than all processes.
    KILL_WHOM = 'leader'

    def __init__(self, machine_manager):
        self._manager = machine_manager
        self._lock = threading.Lock()
        self._machines = {}

    def __contains__(self, name):
        with self._lock:
            return name in self._machines

    def __len__(self):
        with self._lock:
            return len(self._machines)

    def names(self):
        with self._lock:
            return sorted(self._machines)

    def register(self, machine):
        """Add a machine at opening state."""
        with self._lock:
            if machine.name in self._machines:
                raise DuplicateMachine(
                    'machine is already registered',
                    machine_name=machine.name,
                )
            machine = dataclasses.replace(machine, state=MachineState.OPENING)
            self._machines[machine.name] = machine
        LOG.info('register machine: %s', machine.name)
        return machine

    def lookup(self, name):
        with self._lock:
            return self._lookup(name)

    def _lookup(self, name):
        try:
            return self._machines[name]
        except KeyError:
            raise MachineNotFound(
                'machine is not registered', machine_name=name
            ) from None

    def transition(self, name, new_state):
        with self._lock:
            machine = self._lookup(name)
            if not machine.state < new_state:
                raise InvalidStateTransition(
                    'machine state cannot go backward or stay',
                    machine_name=name,
                    state=machine.state.value,
                    new_state=new_state.value,
                )
            machine = dataclasses.replace(machine, state=new_state)
            self._machines[name] = machine
        LOG.info(
            'machine state: %s: %s', name, new_state.value
        )
        return machine

    def unregister(self, name):
        with self._lock:
            machine = self._machines.pop(name, None)
        if machine is None:
            LOG.debug('machine is not registered: %s', name)
            return False
        LOG.info('unregister machine: %s', name)
        return True

    def kill(self, name, signal):
        """Send a signal to the leader process of a running machine."""
        machine = self.lookup(name)
        if machine.state is not MachineState.RUNNING:
            # This includes the case that the machine is already closing
            # (which caller may treat as "already stopped").
            raise InvalidStateTransition(
                'machine is not running',
                machine_name=name,
                state=machine.state.value,
                signal=signal,
            )
        LOG.info('kill machine: %s, signal=%s', name, signal)
        self._manager.kill_machine(name, self.KILL_WHOM, signal)

    def terminate(self, name):
        """Forcibly stop a machine and remove it from the registry."""
        self.lookup(name)
        LOG.info('terminate machine: %s', name)
        try:
            self._manager.terminate_machine(name)
        except MachineNotFound:
            LOG.debug('machine is already gone: %s', name)
        self.unregister(name)

    def discover(self, name):
        """Register a machine from what machined reports.

        This is used to re-attach to machines after the driver restarts.
        """
        machine = self._manager.get_machine(name)
        self.register(machine)
        if machine.state is not MachineState.OPENING:
            return self.transition(name, machine.state)
        return self.lookup(name)

    def refresh(self, name):
        """Apply the state that machined currently reports.

        A machine that machined no longer knows is considered closing.
        Reporting the current state again is a no-op.
        """
        self.lookup(name)
        try:
            reported_state = self._manager.get_machine(name).state
        except MachineNotFound:
            reported_state = MachineState.CLOSING
        with self._lock:
            machine = old_machine = self._lookup(name)
            if machine.state < reported_state:
                machine = dataclasses.replace(machine, state=reported_state)
                self._machines[name] = machine
        if old_machine.state < reported_state:
            LOG.info('machine state: %s: %s', name, reported_state.value)
        elif reported_state < old_machine.state:
            LOG.warning(
                'ignore backward machine state: %s: %s -> %s',
                name,
                old_machine.state.value,
                reported_state.value,
            )
        return machine
