"""Task driver that runs tasks as systemd-nspawn machines.

Lifecycle of a task:

  PENDING --> STARTING --> RUNNING --> STOPPING --> DESTROYED
                 |            |                        ^
                 +------------+--> FAILED -------------+

* STARTING: render and write the unit file, pull the image, start the
  unit, and register the machine.  If any step fails, undo what has been
  done in this attempt (but do not remove the pulled image).

* RUNNING: a monitor thread refreshes the machine state; if the machine
  starts closing on its own, the task is FAILED.

* STOPPING: signal the machine, and terminate it if it does not start
  closing within the grace period.

* DESTROYED: terminate the machine, stop the unit, and remove the unit
  file.

At most one start, stop, or destroy sequence is in flight per machine.
"""

__all__ = [
    'PLUGIN_NAME',
    'PLUGIN_VERSION',
    # Value types.
    'Capabilities',
    'ExitResult',
    'Fingerprint',
    'PluginInfo',
    'TaskHandle',
    'TaskLifecycle',
    'TaskResourceUsage',
    'TaskStatus',
    # Driver.
    'Driver',
]

import collections
import dataclasses
import datetime
import enum
import logging
import threading
from concurrent import futures
from pathlib import Path

from . import events
from . import policies
from . import systemd
from . import units
from . import utils
from .config import DriverConfig
from .errors import (
    CommandError,
    DriverError,
    DuplicateMachine,
    InvalidStateTransition,
    MachineNotFound,
    OperationCancelled,
    TaskNotFound,
    TaskNotRecoverable,
)
from .imports import ImportTracker
from .machines import MachineRegistry, MachineState
from .services import ServiceLauncher
from .tasks import UNSET, TaskState

LOG = logging.getLogger(__name__)

PLUGIN_NAME = 'systemd-nspawn'
PLUGIN_VERSION = '0.1.0'
PLUGIN_API_VERSIONS = ('0.1.0', )

PluginInfo = collections.namedtuple(
    'PluginInfo', 'type name plugin_version api_versions'
)

Capabilities = collections.namedtuple(
    'Capabilities', 'send_signals exec fs_isolation'
)

Fingerprint = collections.namedtuple(
    'Fingerprint', 'health description attributes'
)

ExitResult = collections.namedtuple(
    'ExitResult', 'exit_code signal oom_killed err'
)

TaskResourceUsage = collections.namedtuple(
    'TaskResourceUsage', 'timestamp cpu_usage_ns memory_bytes num_tasks'
)

TaskStatus = collections.namedtuple(
    'TaskStatus',
    'id name state started_at completed_at exit_result driver_attributes',
)


@dataclasses.dataclass(frozen=True)
class TaskHandle:
    """Opaque handle returned to the scheduler for recovery."""

    task_id: str
    driver_state: str

    @classmethod
    def from_state(cls, task_state):
        return cls(
            task_id=task_state.task_config.id,
            driver_state=task_state.encode(),
        )

    def decode_state(self):
        return TaskState.decode(self.driver_state)


class TaskLifecycle(enum.Enum):

    PENDING = 'pending'
    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'
    DESTROYED = 'destroyed'
    FAILED = 'failed'


_LIFECYCLE_TRANSITIONS = {
    TaskLifecycle.PENDING: frozenset((TaskLifecycle.STARTING, )),
    TaskLifecycle.STARTING: frozenset((
        TaskLifecycle.RUNNING,
        TaskLifecycle.FAILED,
    )),
    TaskLifecycle.RUNNING: frozenset((
        TaskLifecycle.STOPPING,
        TaskLifecycle.FAILED,
    )),
    TaskLifecycle.STOPPING: frozenset((TaskLifecycle.DESTROYED, )),
    TaskLifecycle.FAILED: frozenset((TaskLifecycle.DESTROYED, )),
    TaskLifecycle.DESTROYED: frozenset(),
}

# Unit properties for exit status and resource usage.
_EXEC_MAIN_CODE = 'ExecMainCode'
_EXEC_MAIN_STATUS = 'ExecMainStatus'
_CPU_USAGE = 'CPUUsageNSec'
_MEMORY_CURRENT = 'MemoryCurrent'
_TASKS_CURRENT = 'TasksCurrent'

# ``si_code`` values of ExecMainCode.
_CLD_KILLED = 2
_CLD_DUMPED = 3


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


class _Task:
    """Driver-side bookkeeping of one task."""

    def __init__(self, config, lifecycle=TaskLifecycle.PENDING):
        self.config = config
        self.machine_name = config.machine_name
        self.service_name = units.get_service_name(self.machine_name)
        self.lock = threading.Lock()
        self.lifecycle = lifecycle
        self.started_at = None
        self.completed_at = None
        self.stop_monitor = threading.Event()
        self.monitor = None
        self._exit_result = None
        self._waiters = []

    @property
    def id(self):
        return self.config.id

    def set_lifecycle(self, new_lifecycle):
        """Caller must hold the lock."""
        if new_lifecycle not in _LIFECYCLE_TRANSITIONS[self.lifecycle]:
            raise InvalidStateTransition(
                'invalid task state transition',
                task_id=self.id,
                state=self.lifecycle.value,
                new_state=new_lifecycle.value,
            )
        LOG.info(
            'task state: %s: %s -> %s',
            self.id,
            self.lifecycle.value,
            new_lifecycle.value,
        )
        self.lifecycle = new_lifecycle

    @property
    def exit_result(self):
        with self.lock:
            return self._exit_result

    def add_waiter(self):
        future = futures.Future()
        with self.lock:
            if self._exit_result is None:
                self._waiters.append(future)
                return future
            exit_result = self._exit_result
        future.set_result(exit_result)
        return future

    def set_exit_result(self, exit_result):
        """Deliver the exit result to all waiters, only once."""
        with self.lock:
            if self._exit_result is not None:
                return False
            self._exit_result = exit_result
            waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            waiter.set_result(exit_result)
        return True


class Driver:

    def __init__(
        self,
        unit_manager,
        machine_manager,
        transfer_service,
        config=None,
        *,
        store=None,
    ):
        self.config = config or DriverConfig()
        self._unit_manager = unit_manager
        self._machine_manager = machine_manager
        self._transfer_service = transfer_service
        self._imports = ImportTracker(
            transfer_service,
            deadline=self.config.transfer_deadline,
            backoff=policies.ExponentialBackoff(
                self.config.transfer_backoff_initial,
                self.config.transfer_backoff_maximum,
            ),
            verify=self.config.image_verify,
        )
        self._services = ServiceLauncher(
            unit_manager, timeout=self.config.service_start_timeout
        )
        self._machines = MachineRegistry(machine_manager)
        self._eventer = events.Eventer(self.config.event_buffer_size)
        self._store = store
        self._flights = utils.SingleFlight()
        self._lock = threading.Lock()
        self._tasks = {}
        # Set on shutdown; cancel polling and waiting.
        self._shutdown = threading.Event()

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.shutdown()

    @property
    def machines(self):
        return self._machines

    #
    # Plugin information.
    #

    @staticmethod
    def plugin_info():
        return PluginInfo(
            type='driver',
            name=PLUGIN_NAME,
            plugin_version=PLUGIN_VERSION,
            api_versions=PLUGIN_API_VERSIONS,
        )

    @staticmethod
    def capabilities():
        return Capabilities(send_signals=True, exec=True, fs_isolation='image')

    def fingerprint(self):
        attributes = {'driver.%s' % PLUGIN_NAME: '1'}
        if not self.config.enabled:
            return Fingerprint('undetected', 'disabled', {})
        missing = systemd.find_missing_commands()
        if missing:
            return Fingerprint(
                'undetected',
                'missing commands: %s' % ', '.join(missing),
                {},
            )
        if not Path(self.config.unit_dir).is_dir():
            return Fingerprint(
                'unhealthy',
                'unit directory does not exist: %s' % self.config.unit_dir,
                attributes,
            )
        attributes['driver.%s.version' % PLUGIN_NAME] = PLUGIN_VERSION
        return Fingerprint('healthy', 'healthy', attributes)

    #
    # Start.
    #

    def start_task(self, task_config):
        """Start a task and return a handle for recovery."""
        self._check_not_shutdown()
        return self._flights.call(
            task_config.machine_name,
            ('start', task_config.id),
            self._start_task,
            task_config,
        )

    def _start_task(self, task_config):
        with self._lock:
            task = self._tasks.get(task_config.id)
            if task and task.lifecycle not in (
                TaskLifecycle.FAILED,
                TaskLifecycle.DESTROYED,
            ):
                raise DuplicateMachine(
                    'task is already started',
                    task_id=task_config.id,
                    machine_name=task.machine_name,
                )
            name = task_config.machine_name
            if name in self._machines or any(
                    other.machine_name == name
                    and other.id != task_config.id
                    and other.lifecycle not in (
                        TaskLifecycle.FAILED,
                        TaskLifecycle.DESTROYED,
                    )
                    for other in self._tasks.values()
            ):
                raise DuplicateMachine(
                    'machine name is in use',
                    task_id=task_config.id,
                    machine_name=name,
                )
            task = self._tasks[task_config.id] = _Task(task_config)
        with task.lock:
            task.set_lifecycle(TaskLifecycle.STARTING)
        self._publish(task, 'starting machine')
        try:
            task_state = self._do_start(task)
        except BaseException as exc:
            with task.lock:
                task.set_lifecycle(TaskLifecycle.FAILED)
                task.completed_at = _utcnow()
            task.set_exit_result(
                ExitResult(exit_code=0, signal=0, oom_killed=False, err=exc)
            )
            self._publish(task, 'failed to start machine', error=str(exc))
            raise
        with task.lock:
            task.started_at = task_state.started_at
            task.set_lifecycle(TaskLifecycle.RUNNING)
        self._publish(task, 'started machine')
        self._start_monitor(task)
        return TaskHandle.from_state(task_state)

    def _do_start(self, task):
        name = task.machine_name
        stage = 'render'
        unit_written = activated = registered = False
        try:
            text = units.render(task.config.spec)
            stage = 'write'
            units.write_unit_file(self.config.unit_dir, name, text)
            unit_written = True
            stage = 'pull'
            self._publish(task, 'pulling image', image=task.config.spec.image)
            self._imports.pull(task.config.spec.image, name, self._shutdown)
            stage = 'activate'
            # Stop the unit on rollback only if we have started it.
            activated = True
            activated = self._services.start(
                task.service_name, self._shutdown
            )
            stage = 'register'
            machine = self._machine_manager.get_machine(name)
            self._machines.register(machine)
            registered = True
            if machine.state is not MachineState.OPENING:
                self._machines.transition(name, machine.state)
            stage = 'persist'
            task_state = TaskState(
                task_config=task.config,
                machine_name=name,
                started_at=_utcnow(),
            )
            if self._store is not None:
                self._store.save(task.id, task_state)
            return task_state
        except BaseException as exc:
            LOG.error('start machine failed: %s, stage=%s', name, stage)
            self._rollback(task, unit_written, activated, registered)
            if isinstance(exc, DriverError):
                exc.add_context(task_id=task.id, machine_name=name, stage=stage)
            raise

    def _rollback(self, task, unit_written, activated, registered):
        name = task.machine_name
        if activated:
            # This also stops the container.
            self._cleanup(self._services.stop, task.service_name)
        if registered:
            self._machines.unregister(name)
        if unit_written:
            self._cleanup(units.remove_unit_file, self.config.unit_dir, name)

    @staticmethod
    def _cleanup(func, *args):
        # Do not let a cleanup error mask the original error.
        try:
            func(*args)
        except (CommandError, OSError):
            LOG.warning(
                'cleanup failed: %s%r', func.__name__, args, exc_info=True
            )

    #
    # Recovery.
    #

    def recover_task(self, handle):
        """Re-attach to a running task.

        This does not repeat any start step.
        """
        self._check_not_shutdown()
        try:
            task_state = handle.decode_state()
        except (ValueError, KeyError, TypeError) as exc:
            raise TaskNotRecoverable(
                'unable to decode task state', task_id=handle.task_id
            ) from exc
        return self._flights.call(
            task_state.machine_name,
            'recover',
            self._recover_task,
            task_state,
        )

    def _recover_task(self, task_state):
        config = task_state.task_config
        name = task_state.machine_name
        with self._lock:
            if config.id in self._tasks:
                LOG.info('task is already attached: %s', config.id)
                return
        try:
            self._machines.lookup(name)
        except MachineNotFound:
            try:
                self._machines.discover(name)
            except (MachineNotFound, CommandError) as exc:
                raise TaskNotRecoverable(
                    'machine is not found',
                    task_id=config.id,
                    machine_name=name,
                ) from exc
        task = _Task(config, TaskLifecycle.RUNNING)
        task.started_at = task_state.started_at
        with self._lock:
            self._tasks[config.id] = task
        LOG.info('recover task: %s, machine=%s', config.id, name)
        self._publish(task, 'recovered machine')
        self._start_monitor(task)

    def recover_tasks(self):
        """Recover all tasks in the state store.

        Return ids of tasks that are not recoverable; their states are
        removed from the store.
        """
        if self._store is None:
            return []
        failed = []
        for task_id, task_state in self._store.load_all():
            try:
                self.recover_task(TaskHandle.from_state(task_state))
            except TaskNotRecoverable as exc:
                LOG.warning('unable to recover task: %s: %s', task_id, exc)
                self._store.delete(task_id)
                failed.append(task_id)
        return failed

    #
    # Monitor.
    #

    def _start_monitor(self, task):
        task.monitor = threading.Thread(
            target=self._monitor,
            args=(task, ),
            name='%s#monitor-%s' % (__name__, task.machine_name),
            daemon=True,
        )
        task.monitor.start()

    def _monitor(self, task):
        LOG.debug('start monitoring: %s', task.machine_name)
        while not self._shutdown.is_set():
            if task.stop_monitor.wait(self.config.monitor_interval):
                break
            try:
                machine = self._machines.refresh(task.machine_name)
            except MachineNotFound:
                # Unregistered by stop or destroy.
                break
            except CommandError:
                LOG.warning(
                    'unable to refresh machine: %s',
                    task.machine_name,
                    exc_info=True,
                )
                continue
            if machine.state is MachineState.CLOSING:
                self._handle_unexpected_exit(task)
                break
        LOG.debug('stop monitoring: %s', task.machine_name)

    def _handle_unexpected_exit(self, task):
        with task.lock:
            if task.lifecycle is not TaskLifecycle.RUNNING:
                # The machine is closing because we are stopping it.
                return
            task.set_lifecycle(TaskLifecycle.FAILED)
            task.completed_at = _utcnow()
        LOG.warning('machine exits unexpectedly: %s', task.machine_name)
        exit_result = self._read_exit_result(task)
        task.set_exit_result(exit_result)
        self._publish(
            task,
            'machine exited unexpectedly',
            exit_code=exit_result.exit_code,
            signal=exit_result.signal,
        )

    def _read_exit_result(self, task):
        try:
            properties = self._unit_manager.get_unit_properties(
                task.service_name, (_EXEC_MAIN_CODE, _EXEC_MAIN_STATUS)
            )
        except CommandError as exc:
            LOG.warning('unable to read exit status: %s', task.service_name)
            return ExitResult(exit_code=0, signal=0, oom_killed=False, err=exc)
        code = _parse_int(properties.get(_EXEC_MAIN_CODE)) or 0
        status = _parse_int(properties.get(_EXEC_MAIN_STATUS)) or 0
        if code in (_CLD_KILLED, _CLD_DUMPED):
            return ExitResult(
                exit_code=0, signal=status, oom_killed=False, err=None
            )
        return ExitResult(exit_code=status, signal=0, oom_killed=False, err=None)

    #
    # Wait.
    #

    def wait_task(self, task_id):
        """Return a future of the task's exit result.

        Every caller gets its own future, and all of them are completed
        with the same exit result.
        """
        return self._get_task(task_id).add_waiter()

    #
    # Stop and destroy.
    #

    def stop_task(self, task_id, timeout=None, signal=None):
        task = self._get_task(task_id)
        self._flights.call(
            task.machine_name,
            'stop',
            self._stop_task,
            task,
            timeout,
            signal,
        )

    def _stop_task(self, task, timeout, signal):
        with task.lock:
            if task.lifecycle is not TaskLifecycle.RUNNING:
                LOG.info(
                    'task is not running: %s, state=%s',
                    task.id,
                    task.lifecycle.value,
                )
                return
            task.set_lifecycle(TaskLifecycle.STOPPING)
        task.stop_monitor.set()
        if (
            task.monitor is not None and
            task.monitor is not threading.current_thread()
        ):
            task.monitor.join()
        if timeout is None:
            timeout = self.config.grace_period
        if signal is None:
            signal = self._get_kill_signal(task)
        name = task.machine_name
        self._publish(task, 'stopping machine', signal=signal)
        try:
            self._machines.kill(name, signal)
        except MachineNotFound:
            LOG.info('machine is already gone: %s', name)
            return
        except InvalidStateTransition as exc:
            LOG.info('skip signaling machine: %s: %s', name, exc)
        except CommandError:
            LOG.warning('unable to signal machine: %s', name, exc_info=True)
        if self._wait_closing(name, timeout):
            self._publish(task, 'machine is closing')
        else:
            LOG.warning('machine does not stop in time; terminate: %s', name)
            self._machines.terminate(name)
            self._publish(task, 'terminated machine')

    def _get_kill_signal(self, task):
        kill_signal = task.config.spec.exec.kill_signal
        if kill_signal is UNSET:
            return self.config.kill_signal
        return kill_signal

    def _wait_closing(self, name, timeout):
        """Return true if the machine starts closing before timeout."""
        deadline = policies.Deadline(timeout)
        for delay in policies.ExponentialBackoff(0.05, 1)():
            try:
                machine = self._machines.refresh(name)
            except MachineNotFound:
                return True
            if machine.state is MachineState.CLOSING:
                return True
            if deadline.is_expired():
                return False
            if self._shutdown.wait(deadline.clamp(delay)):
                return False
        raise AssertionError('backoff should not run out')

    def destroy_task(self, task_id, force=False):
        task = self._get_task(task_id)
        self._flights.call(
            task.machine_name,
            'destroy',
            self._destroy_task,
            task,
            force,
        )

    def _destroy_task(self, task, force):
        with task.lock:
            lifecycle = task.lifecycle
        if lifecycle is TaskLifecycle.RUNNING:
            if not force:
                raise InvalidStateTransition(
                    'task is still running',
                    task_id=task.id,
                    state=lifecycle.value,
                )
            self._stop_task(task, None, None)
        elif lifecycle is TaskLifecycle.DESTROYED:
            return
        task.stop_monitor.set()
        name = task.machine_name
        # Terminate before removing unit file so that there will not be
        # a machine running without a unit file.
        if name in self._machines:
            self._machines.terminate(name)
        self._cleanup(self._services.stop, task.service_name)
        units.remove_unit_file(self.config.unit_dir, name)
        exit_result = self._read_exit_result(task)
        if self._store is not None:
            self._store.delete(task.id)
        with task.lock:
            task.set_lifecycle(TaskLifecycle.DESTROYED)
            if task.completed_at is None:
                task.completed_at = _utcnow()
        with self._lock:
            if self._tasks.get(task.id) is task:
                del self._tasks[task.id]
        task.set_exit_result(exit_result)
        self._publish(task, 'destroyed machine')

    #
    # Inspect, stats, events, signal, and exec.
    #

    def inspect_task(self, task_id):
        task = self._get_task(task_id)
        attributes = {
            'machine_name': task.machine_name,
            'unit': task.service_name,
        }
        try:
            machine = self._machines.lookup(task.machine_name)
        except MachineNotFound:
            pass
        else:
            attributes['machine_state'] = machine.state.value
            attributes['leader'] = str(machine.leader)
            attributes['root_directory'] = machine.root_directory
        with task.lock:
            return TaskStatus(
                id=task.id,
                name=task.config.name,
                state=task.lifecycle,
                started_at=task.started_at,
                completed_at=task.completed_at,
                exit_result=task._exit_result,
                driver_attributes=attributes,
            )

    def task_stats(self, task_id, interval=1.0):
        """Return an iterator of resource usage samples.

        It stops when the task is no longer running, or when the driver
        shuts down.
        """
        return self._iter_stats(self._get_task(task_id), interval)

    def _iter_stats(self, task, interval):
        while task.lifecycle is TaskLifecycle.RUNNING:
            properties = self._unit_manager.get_unit_properties(
                task.service_name,
                (_CPU_USAGE, _MEMORY_CURRENT, _TASKS_CURRENT),
            )
            yield TaskResourceUsage(
                timestamp=_utcnow(),
                cpu_usage_ns=_parse_int(properties.get(_CPU_USAGE)),
                memory_bytes=_parse_int(properties.get(_MEMORY_CURRENT)),
                num_tasks=_parse_int(properties.get(_TASKS_CURRENT)),
            )
            if self._shutdown.wait(interval):
                break

    def task_events(self, capacity=None):
        """Subscribe to task events published from now on."""
        return self._eventer.subscribe(capacity)

    def signal_task(self, task_id, signal):
        task = self._get_task(task_id)
        self._machines.kill(task.machine_name, signal)
        self._publish(task, 'signaled machine', signal=signal)

    def exec_task(self, task_id, cmd, timeout=None):
        if not cmd:
            raise ValueError('expect non-empty command')
        task = self._get_task(task_id)
        if task.lifecycle is not TaskLifecycle.RUNNING:
            raise InvalidStateTransition(
                'task is not running',
                task_id=task_id,
                state=task.lifecycle.value,
            )
        return self._machine_manager.execute(task.machine_name, cmd, timeout)

    #
    # Shutdown.
    #

    def shutdown(self):
        if self._shutdown.is_set():
            return
        LOG.info('shutdown driver')
        self._shutdown.set()
        with self._lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            task.stop_monitor.set()
        for task in tasks:
            if task.monitor is not None:
                task.monitor.join()
        self._eventer.close()
        for capability in (
            self._unit_manager,
            self._machine_manager,
            self._transfer_service,
        ):
            close = getattr(capability, 'close', None)
            if close is not None:
                close()

    #
    # Helpers.
    #

    def _check_not_shutdown(self):
        if self._shutdown.is_set():
            raise OperationCancelled('driver is shut down')

    def _get_task(self, task_id):
        with self._lock:
            try:
                return self._tasks[task_id]
            except KeyError:
                raise TaskNotFound(
                    'task is not found', task_id=task_id
                ) from None

    def _publish(self, task, message, **annotations):
        self._eventer.publish(
            events.make_event(task.config, message, **annotations)
        )


def _parse_int(value):
    # systemd shows "[not set]" for unavailable values.
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None
