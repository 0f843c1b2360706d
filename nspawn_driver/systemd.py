"""System capabilities that the driver depends on.

The driver does not talk to systemd directly; it depends on these three
capability interfaces instead:

* ``UnitManager``: start/stop units, and read unit properties.
* ``MachineManager``: enumerate, signal, terminate, and execute commands
  in machines.
* ``TransferService``: start image pulls and list active transfers.

The default implementations below shell out to ``systemctl``,
``machinectl``, ``systemd-run``, and ``busctl``.
"""

__all__ = [
    # Capability interfaces.
    'MachineManager',
    'TransferService',
    'UnitManager',
    # Value types.
    'ExecResult',
    'Transfer',
    # Default implementations.
    'Importd',
    'Machinectl',
    'Systemctl',
    'find_missing_commands',
]

import collections
import datetime
import json
import logging
import shutil
import subprocess
from concurrent import futures

from . import machines
from .errors import CommandError, MachineNotFound

LOG = logging.getLogger(__name__)

ExecResult = collections.namedtuple('ExecResult', 'stdout stderr exit_code')

Transfer = collections.namedtuple(
    'Transfer', 'id type remote local progress'
)

#
# Capability interfaces.
#


class UnitManager:

    def start_unit(self, unit_name, mode):
        """Request unit activation.

        Return a future of the job result, which is one of "done",
        "canceled", "timeout", "failed", "dependency", or "skipped".
        """
        raise NotImplementedError

    def stop_unit(self, unit_name, mode):
        raise NotImplementedError

    def is_unit_active(self, unit_name):
        raise NotImplementedError

    def get_unit_properties(self, unit_name, names):
        """Return a dict of unit properties (values are str)."""
        raise NotImplementedError


class MachineManager:

    def list_machines(self):
        """Return names of registered machines."""
        raise NotImplementedError

    def get_machine(self, name):
        """Return a ``Machine``, or raise ``MachineNotFound``."""
        raise NotImplementedError

    def kill_machine(self, name, who, signal):
        raise NotImplementedError

    def terminate_machine(self, name):
        raise NotImplementedError

    def execute(self, name, args, timeout):
        """Run a command in the machine and return an ``ExecResult``."""
        raise NotImplementedError


class TransferService:

    def pull_raw(self, url, local_name, verify, force):
        """Start pulling an image and return the transfer id."""
        raise NotImplementedError

    def list_transfers(self):
        """Return the list of active ``Transfer``."""
        raise NotImplementedError

    def cancel_transfer(self, transfer_id):
        raise NotImplementedError


#
# Default implementations.
#

SYSTEMCTL = 'systemctl'
MACHINECTL = 'machinectl'
SYSTEMD_RUN = 'systemd-run'
BUSCTL = 'busctl'

COMMANDS = (SYSTEMCTL, MACHINECTL, SYSTEMD_RUN, BUSCTL)


def find_missing_commands(commands=COMMANDS):
    return [command for command in commands if shutil.which(command) is None]


def _run(args, *, timeout=None):
    args = list(map(str, args))
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug('execute: %s', ' '.join(args))
    try:
        proc = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise CommandError('command not found', command=args[0]) from None
    except subprocess.TimeoutExpired:
        raise CommandError(
            'command timed out', command=args[0], timeout=timeout
        ) from None
    if proc.returncode != 0:
        raise CommandError(
            'command failed',
            command=' '.join(args),
            returncode=proc.returncode,
            stderr=proc.stderr.strip(),
        )
    return proc.stdout


def _parse_properties(output):
    properties = {}
    for line in output.splitlines():
        name, sep, value = line.partition('=')
        if sep:
            properties[name] = value
    return properties


class Systemctl(UnitManager):

    def __init__(self, max_workers=4):
        # Run blocking ``systemctl start`` calls here.
        self._executor = futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix='%s#systemctl' % __name__,
        )

    def close(self):
        self._executor.shutdown(wait=False)

    def start_unit(self, unit_name, mode):
        return self._executor.submit(self._start_unit, unit_name, mode)

    @staticmethod
    def _start_unit(unit_name, mode):
        # ``systemctl start`` waits for the job and exits non-zero when
        # the job does not complete successfully.
        try:
            _run([SYSTEMCTL, 'start', '--job-mode=%s' % mode, unit_name])
        except CommandError as exc:
            LOG.warning('start unit failed: %s: %s', unit_name, exc)
            return 'failed'
        return 'done'

    def stop_unit(self, unit_name, mode):
        _run([SYSTEMCTL, 'stop', '--job-mode=%s' % mode, unit_name])

    def is_unit_active(self, unit_name):
        try:
            _run([SYSTEMCTL, 'is-active', '--quiet', unit_name])
        except CommandError:
            return False
        return True

    def get_unit_properties(self, unit_name, names):
        return _parse_properties(
            _run([
                SYSTEMCTL,
                'show',
                '--property=%s' % ','.join(names),
                unit_name,
            ])
        )


class Machinectl(MachineManager):

    # Example: "Mon 2019-01-21 13:04:55 UTC".
    TIMESTAMP_FORMAT = '%a %Y-%m-%d %H:%M:%S %Z'

    def list_machines(self):
        output = _run([MACHINECTL, 'list', '--no-legend', '--no-pager'])
        return [line.split()[0] for line in output.splitlines() if line.strip()]

    def get_machine(self, name):
        try:
            output = _run([MACHINECTL, 'show', name])
        except CommandError as exc:
            if 'No machine' in exc.context.get('stderr', ''):
                raise MachineNotFound(
                    'machine is not registered', machine_name=name
                ) from None
            raise
        return self._make_machine(_parse_properties(output))

    @classmethod
    def _make_machine(cls, properties):
        return machines.Machine(
            name=properties['Name'],
            id=properties.get('Id', ''),
            timestamp=cls._parse_timestamp(properties.get('Timestamp', '')),
            timestamp_monotonic=int(
                properties.get('TimestampMonotonic') or 0
            ),
            service=properties.get('Service', ''),
            unit=properties.get('Unit', ''),
            leader=int(properties.get('Leader') or 0),
            class_=properties.get('Class', ''),
            root_directory=properties.get('RootDirectory', ''),
            network_interfaces=tuple(
                int(index)
                for index in properties.get('NetworkInterfaces', '').split()
            ),
            state=machines.MachineState.parse(properties['State']),
        )

    @classmethod
    def _parse_timestamp(cls, value):
        if not value:
            return None
        try:
            return datetime.datetime.strptime(
                value, cls.TIMESTAMP_FORMAT
            ).replace(tzinfo=datetime.timezone.utc)
        except ValueError:
            LOG.debug('unable to parse machine timestamp: %r', value)
            return None

    def kill_machine(self, name, who, signal):
        _run([
            MACHINECTL,
            'kill',
            '--kill-whom=%s' % who,
            '--signal=%s' % signal,
            name,
        ])

    def terminate_machine(self, name):
        _run([MACHINECTL, 'terminate', name])

    def execute(self, name, args, timeout):
        cmd = [
            SYSTEMD_RUN,
            '--machine=%s' % name,
            '--wait',
            '--pipe',
            '--quiet',
            '--collect',
            '--',
            *args,
        ]
        LOG.debug('execute in %s: %s', name, cmd)
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError:
            raise CommandError('command not found', command=SYSTEMD_RUN) \
                from None
        except subprocess.TimeoutExpired:
            raise CommandError(
                'command timed out',
                command=' '.join(args),
                machine_name=name,
                timeout=timeout,
            ) from None
        return ExecResult(
            stdout=proc.stdout,
            stderr=proc.stderr,
            exit_code=proc.returncode,
        )


class Importd(TransferService):
    """Talk to systemd-importd through ``busctl``."""

    _DESTINATION = (
        'org.freedesktop.import1',
        '/org/freedesktop/import1',
        'org.freedesktop.import1.Manager',
    )

    def _call(self, method, signature=None, *args):
        cmd = [BUSCTL, '--json=short', 'call', *self._DESTINATION, method]
        if signature:
            cmd.append(signature)
            cmd.extend(args)
        return json.loads(_run(cmd) or 'null')

    def pull_raw(self, url, local_name, verify, force):
        reply = self._call(
            'PullRaw',
            'sssb',
            url,
            local_name,
            verify,
            'true' if force else 'false',
        )
        # Reply signature is "uo" (transfer id and object path).
        return reply['data'][0]

    def list_transfers(self):
        reply = self._call('ListTransfers')
        # Reply signature is "a(usssdo)".
        return [
            Transfer(
                id=transfer_id,
                type=transfer_type,
                remote=remote,
                local=local,
                progress=progress,
            ) for transfer_id, transfer_type, remote, local, progress, _
            in reply['data'][0]
        ]

    def cancel_transfer(self, transfer_id):
        self._call('CancelTransfer', 'u', transfer_id)
