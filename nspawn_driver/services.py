"""Start and stop the systemd-nspawn service unit of a machine."""

__all__ = [
    'ServiceLauncher',
]

import logging
import threading
from concurrent import futures

from . import policies
from .errors import CommandError, OperationCancelled, ServiceStartFailed

LOG = logging.getLogger(__name__)


class ServiceLauncher:

    JOB_MODE = 'replace'

    # How often we check the cancellation event while waiting for the
    # job result.
    POLL_INTERVAL = 0.1

    def __init__(self, unit_manager, *, timeout=90):
        self._unit_manager = unit_manager
        self.timeout = timeout

    def start(self, unit_name, cancel=None):
        """Start a unit and wait for the job result.

        This is a no-op if the unit is already active.  Return true if
        a start job is issued, which is also implied when this raises.
        """
        if self._unit_manager.is_unit_active(unit_name):
            LOG.info('unit is already active: %s', unit_name)
            return False
        LOG.info('start unit: %s', unit_name)
        try:
            ack = self._unit_manager.start_unit(unit_name, self.JOB_MODE)
        except CommandError as exc:
            raise ServiceStartFailed(
                'activation request is rejected',
                unit_name=unit_name,
                reason=exc,
            ) from exc
        result = self._wait_ack(unit_name, ack, cancel)
        if result != 'done':
            # Anything other than done (canceled, failed, etc.) is a
            # failure.
            raise ServiceStartFailed(
                'start job does not complete',
                unit_name=unit_name,
                result=result,
            )
        LOG.info('unit is started: %s', unit_name)
        return True

    def _wait_ack(self, unit_name, ack, cancel):
        if cancel is None:
            cancel = threading.Event()
        try:
            # Wait in small steps so that we notice cancellation.
            deadline = policies.Deadline(self.timeout)
            while not deadline.is_expired():
                if cancel.is_set():
                    raise OperationCancelled(
                        'unit start is cancelled', unit_name=unit_name
                    )
                try:
                    return ack.result(
                        timeout=deadline.clamp(self.POLL_INTERVAL)
                    )
                except futures.TimeoutError:
                    pass
            raise ServiceStartFailed(
                'start job result is not reported before timeout',
                unit_name=unit_name,
                timeout=self.timeout,
            )
        except futures.CancelledError:
            return 'canceled'
        except CommandError as exc:
            raise ServiceStartFailed(
                'start job fails', unit_name=unit_name, reason=exc
            ) from exc

    def stop(self, unit_name):
        LOG.info('stop unit: %s', unit_name)
        self._unit_manager.stop_unit(unit_name, self.JOB_MODE)
