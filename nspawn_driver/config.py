"""Driver configuration.

Configuration is loaded from a YAML file whose top-level mapping
overrides the defaults below, like:

    unit_dir: /etc/systemd/nspawn
    db_uri: sqlite:////var/lib/nspawn-driver/tasks.db
    transfer_deadline: 1200
"""

__all__ = [
    'DriverConfig',
    'load_config',
]

import dataclasses
import logging
import typing
from pathlib import Path

import yaml

LOG = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class DriverConfig:

    enabled: bool = True

    # Where .nspawn unit files are written.
    unit_dir: str = '/etc/systemd/nspawn'

    # Where task states are persisted (for recovery); None disables it.
    db_uri: typing.Optional[str] = None

    # Image pulls.
    image_verify: str = 'no'
    transfer_deadline: float = 600.0
    transfer_backoff_initial: float = 0.1
    transfer_backoff_maximum: float = 5.0

    # Unit activation.
    service_start_timeout: float = 90.0

    # Stopping tasks.
    kill_signal: str = 'SIGTERM'
    grace_period: float = 10.0

    # How often machine states are refreshed while tasks are running.
    monitor_interval: float = 1.0

    # Per-subscriber event buffer size.
    event_buffer_size: int = 64

    def __post_init__(self):
        for name in (
            'transfer_deadline',
            'transfer_backoff_initial',
            'transfer_backoff_maximum',
            'service_start_timeout',
            'monitor_interval',
        ):
            if getattr(self, name) <= 0:
                raise ValueError('expect positive %s' % name)
        if self.grace_period < 0:
            raise ValueError('expect non-negative grace_period')
        if self.transfer_backoff_initial > self.transfer_backoff_maximum:
            raise ValueError(
                'expect transfer_backoff_initial <= transfer_backoff_maximum'
            )
        if self.event_buffer_size <= 0:
            raise ValueError('expect positive event_buffer_size')

    @classmethod
    def from_dict(cls, data):
        names = frozenset(field.name for field in dataclasses.fields(cls))
        unknown = sorted(set(data) - names)
        if unknown:
            raise ValueError('unknown config entries: %s' % ', '.join(unknown))
        return cls(**data)


def load_config(path):
    path = Path(path)
    LOG.info('load config: %s', path)
    data = yaml.safe_load(path.read_text())
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError('expect a mapping in config file: %s' % path)
    return DriverConfig.from_dict(data)
