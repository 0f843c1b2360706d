"""In-memory fakes of the system capabilities."""

__all__ = [
    'FakeMachineManager',
    'FakeTransferService',
    'FakeUnitManager',
    'make_machine',
    'make_task_config',
]

import itertools
import threading
from concurrent import futures

from nspawn_driver import systemd
from nspawn_driver.errors import CommandError, MachineNotFound
from nspawn_driver.machines import Machine, MachineState
from nspawn_driver.tasks import TaskConfig, TaskSpec


def make_machine(name, state=MachineState.RUNNING, **kwargs):
    kwargs.setdefault('id', 'id-%s' % name)
    kwargs.setdefault('leader', 1000)
    kwargs.setdefault('service', 'systemd-nspawn')
    kwargs.setdefault('unit', 'systemd-nspawn@%s.service' % name)
    kwargs.setdefault('class_', 'container')
    kwargs.setdefault('root_directory', '/var/lib/machines/%s' % name)
    return Machine(name=name, state=state, **kwargs)


def make_task_config(
        task_id='task-1', name='web/server', alloc_id='alloc-1', **spec):
    spec.setdefault('image', 'https://example.com/images/web.raw')
    return TaskConfig(
        id=task_id,
        name=name,
        alloc_id=alloc_id,
        spec=TaskSpec.from_dict(spec),
    )


class FakeMachineManager(systemd.MachineManager):

    def __init__(self):
        self.lock = threading.Lock()
        self.machines = {}
        self.kills = []
        self.terminates = []
        self.executes = []
        # If true, a killed machine starts closing.
        self.close_on_kill = True
        self.exec_result = systemd.ExecResult('hello\n', '', 0)

    def add(self, name, state=MachineState.RUNNING):
        with self.lock:
            self.machines[name] = make_machine(name, state)

    def set_state(self, name, state):
        with self.lock:
            self.machines[name] = make_machine(name, state)

    def remove(self, name):
        with self.lock:
            self.machines.pop(name, None)

    def list_machines(self):
        with self.lock:
            return sorted(self.machines)

    def get_machine(self, name):
        with self.lock:
            try:
                return self.machines[name]
            except KeyError:
                raise MachineNotFound(
                    'machine is not registered', machine_name=name
                ) from None

    def kill_machine(self, name, who, signal):
        with self.lock:
            self.kills.append((name, who, signal))
            if name not in self.machines:
                raise MachineNotFound('no machine', machine_name=name)
            if self.close_on_kill:
                self.machines[name] = make_machine(name, MachineState.CLOSING)

    def terminate_machine(self, name):
        with self.lock:
            self.terminates.append(name)
            if self.machines.pop(name, None) is None:
                raise MachineNotFound('no machine', machine_name=name)

    def execute(self, name, args, timeout):
        with self.lock:
            self.executes.append((name, tuple(args), timeout))
            return self.exec_result


class FakeUnitManager(systemd.UnitManager):
    """Starting a unit registers its machine in the machine manager."""

    PREFIX = 'systemd-nspawn@'
    SUFFIX = '.service'

    def __init__(self, machine_manager=None):
        self.lock = threading.Lock()
        self.machine_manager = machine_manager
        self.active = set()
        self.starts = []
        self.stops = []
        # Job result of each unit; default to "done".
        self.results = {}
        # Start futures that are never completed.
        self.hang = False
        self.properties = {}

    def start_unit(self, unit_name, mode):
        future = futures.Future()
        with self.lock:
            self.starts.append((unit_name, mode))
            if self.hang:
                return future
            result = self.results.get(unit_name, 'done')
            if result == 'done':
                self.active.add(unit_name)
        if result == 'done' and self.machine_manager is not None:
            self.machine_manager.add(
                unit_name[len(self.PREFIX):-len(self.SUFFIX)]
            )
        future.set_result(result)
        return future

    def stop_unit(self, unit_name, mode):
        with self.lock:
            self.stops.append((unit_name, mode))
            self.active.discard(unit_name)

    def is_unit_active(self, unit_name):
        with self.lock:
            return unit_name in self.active

    def get_unit_properties(self, unit_name, names):
        with self.lock:
            properties = self.properties.get(unit_name, {})
            return {
                name: properties[name] for name in names if name in properties
            }


class FakeTransferService(systemd.TransferService):
    """A transfer stays active for ``num_polls`` calls of listing."""

    def __init__(self, num_polls=1):
        self.lock = threading.Lock()
        self.num_polls = num_polls
        self.transfers = {}
        self.pulls = []
        self.cancels = []
        self.num_lists = 0
        self.reject = False
        self.fail_listing = False
        self._ids = itertools.count(1)

    def pull_raw(self, url, local_name, verify, force):
        with self.lock:
            if self.reject:
                raise CommandError('pull is rejected', command='busctl')
            transfer_id = next(self._ids)
            self.pulls.append((url, local_name, verify, force))
            self.transfers[transfer_id] = [
                systemd.Transfer(transfer_id, 'raw', url, local_name, 0.0),
                self.num_polls,
            ]
            return transfer_id

    def list_transfers(self):
        with self.lock:
            self.num_lists += 1
            if self.fail_listing:
                raise CommandError('listing fails', command='busctl')
            active = []
            for transfer_id, entry in list(self.transfers.items()):
                transfer, remaining = entry
                if remaining is not None and remaining <= 0:
                    del self.transfers[transfer_id]
                    continue
                if remaining is not None:
                    entry[1] = remaining - 1
                active.append(transfer)
            return active

    def cancel_transfer(self, transfer_id):
        with self.lock:
            self.cancels.append(transfer_id)
            self.transfers.pop(transfer_id, None)
