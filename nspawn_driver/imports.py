"""Drive image pulls to completion.

systemd-importd does not tell us when a transfer completes (well, it
emits a D-Bus signal, but we do not listen to D-Bus here); so we poll
the list of active transfers, and consider a transfer completed the
first time it is absent from the list.  Polling backs off exponentially
and gives up at a deadline.
"""

__all__ = [
    'ImportTracker',
    'TransferHandle',
]

import collections
import logging
import threading

from . import policies
from .errors import (
    CommandError,
    ImageTransferError,
    ImageTransferTimeout,
    OperationCancelled,
)

LOG = logging.getLogger(__name__)

TransferHandle = collections.namedtuple('TransferHandle', 'id machine_name')


class ImportTracker:

    def __init__(
        self,
        transfer_service,
        *,
        deadline=600,
        backoff=policies.ExponentialBackoff(0.1, 5),
        verify='no',
    ):
        self._transfer_service = transfer_service
        self.deadline = deadline
        self.backoff = backoff
        self.verify = verify

    def pull(self, image, machine_name, cancel=None):
        return self.wait(self.begin(image, machine_name), cancel)

    def begin(self, image, machine_name):
        LOG.info('pull image: %s -> %s', image, machine_name)
        try:
            transfer_id = self._transfer_service.pull_raw(
                image, machine_name, self.verify, False
            )
        except CommandError as exc:
            raise ImageTransferError(
                'pull request is rejected',
                image=image,
                machine_name=machine_name,
                reason=exc,
            ) from exc
        return TransferHandle(id=transfer_id, machine_name=machine_name)

    def wait(self, handle, cancel=None):
        """Block until the transfer is no longer active."""
        if cancel is None:
            # Never set; we only use it for sleeping.
            cancel = threading.Event()
        deadline = policies.Deadline(self.deadline)
        for delay in self.backoff():
            if self._is_done(handle):
                LOG.info(
                    'pull completed: %s, transfer=%s',
                    handle.machine_name,
                    handle.id,
                )
                return handle
            if deadline.is_expired():
                self._cancel(handle)
                raise ImageTransferTimeout(
                    'pull does not complete before deadline',
                    machine_name=handle.machine_name,
                    transfer_id=handle.id,
                    deadline=self.deadline,
                )
            if cancel.wait(deadline.clamp(delay)):
                self._cancel(handle)
                raise OperationCancelled(
                    'pull is cancelled',
                    machine_name=handle.machine_name,
                    transfer_id=handle.id,
                )
        raise AssertionError('backoff should not run out')

    def _is_done(self, handle):
        try:
            transfers = self._transfer_service.list_transfers()
        except CommandError as exc:
            raise ImageTransferError(
                'unable to list transfers',
                machine_name=handle.machine_name,
                transfer_id=handle.id,
                reason=exc,
            ) from exc
        return all(transfer.id != handle.id for transfer in transfers)

    def _cancel(self, handle):
        try:
            self._transfer_service.cancel_transfer(handle.id)
        except CommandError:
            LOG.warning(
                'unable to cancel transfer: %s, transfer=%s',
                handle.machine_name,
                handle.id,
                exc_info=True,
            )
