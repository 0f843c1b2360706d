"""Errors raised by the driver.

None of these is retried inside the driver; whether to retry or to
reschedule a task is up to the caller.  Every error carries keyword
context (task id, machine name, failing stage, etc.), which is also
appended to its message.
"""

__all__ = [
    'DriverError',
    # Rendering.
    'RenderError',
    # Image transfer.
    'ImageTransferError',
    'ImageTransferTimeout',
    # Unit activation.
    'ServiceStartFailed',
    # Machine registry.
    'DuplicateMachine',
    'InvalidStateTransition',
    'MachineNotFound',
    # Tasks.
    'TaskNotFound',
    'TaskNotRecoverable',
    # Misc.
    'CommandError',
    'OperationCancelled',
]


class DriverError(Exception):

    def __init__(self, message, **context):
        self.message = message
        self.context = context
        super().__init__(self._format())

    def _format(self):
        if not self.context:
            return self.message
        return '%s (%s)' % (
            self.message,
            ', '.join(
                '%s=%s' % (key, self.context[key])
                for key in sorted(self.context)
            ),
        )

    def add_context(self, **context):
        """Add context that is not already present; return self."""
        for key, value in context.items():
            self.context.setdefault(key, value)
        self.args = (self._format(), )
        return self

    def __getattr__(self, name):
        # Expose context as attributes, like ``exc.machine_name``.
        try:
            return self.__dict__['context'][name]
        except KeyError:
            raise AttributeError(name) from None


class RenderError(DriverError):
    """Task spec cannot be rendered into a unit file."""


class ImageTransferError(DriverError):
    pass


class ImageTransferTimeout(ImageTransferError):
    pass


class ServiceStartFailed(DriverError):
    pass


class MachineNotFound(DriverError):
    pass


class DuplicateMachine(DriverError):
    pass


class InvalidStateTransition(DriverError):
    pass


class TaskNotFound(DriverError):
    pass


class TaskNotRecoverable(DriverError):
    pass


class OperationCancelled(DriverError):
    """Raised when the driver is shutting down."""


class CommandError(DriverError):
    """A system command (systemctl, machinectl, etc.) failed."""
