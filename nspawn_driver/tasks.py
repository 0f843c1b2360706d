"""Task data types.

The field names of the option classes follow the directives of the
``.nspawn`` unit file (see systemd.nspawn(5)), in snake case.
"""

__all__ = [
    'UNSET',
    # Task spec.
    'ExecOptions',
    'FilesOptions',
    'NetworkOptions',
    'TaskSpec',
    # Task identity.
    'TaskConfig',
    'TaskState',
    'make_machine_name',
]

import collections.abc
import dataclasses
import datetime
import json
import typing


class _Unset:
    """Mark a numeric field that is not set.

    We need this because zero is a legitimate value of fields like
    ``oom_score_adjust``, and we do not want to conflate "not set" with
    "explicitly set to zero".
    """

    def __repr__(self):
        return 'UNSET'

    def __bool__(self):
        return False

    # Keep it a singleton through copy and pickle.

    def __copy__(self):
        return self

    def __deepcopy__(self, _):
        return self

    def __reduce__(self):
        return 'UNSET'


UNSET = _Unset()

IntOrUnset = typing.Union[int, _Unset]
# Resource limits are either a number or "SOFT:HARD".
LimitOrUnset = typing.Union[int, str, _Unset]


@dataclasses.dataclass(frozen=True)
class ExecOptions:

    boot: bool = False
    ephemeral: bool = False
    process_two: bool = False
    parameters: typing.Sequence[str] = ()
    environment: typing.Mapping[str, str] = dataclasses.field(
        default_factory=dict
    )
    user: str = ''
    working_directory: str = ''
    pivot_root: str = ''
    capability: typing.Sequence[str] = ()
    drop_capability: typing.Sequence[str] = ()
    no_new_privileges: bool = False
    kill_signal: IntOrUnset = UNSET
    personality: str = ''
    machine_id: str = ''
    private_users: str = ''
    notify_ready: bool = False
    system_call_filter: typing.Sequence[str] = ()
    limit_cpu: LimitOrUnset = UNSET
    limit_fsize: LimitOrUnset = UNSET
    limit_data: LimitOrUnset = UNSET
    limit_stack: LimitOrUnset = UNSET
    limit_core: LimitOrUnset = UNSET
    limit_rss: LimitOrUnset = UNSET
    limit_nofile: LimitOrUnset = UNSET
    limit_as: LimitOrUnset = UNSET
    limit_nproc: LimitOrUnset = UNSET
    limit_memlock: LimitOrUnset = UNSET
    limit_locks: LimitOrUnset = UNSET
    limit_sigpending: LimitOrUnset = UNSET
    limit_msgqueue: LimitOrUnset = UNSET
    limit_nice: LimitOrUnset = UNSET
    limit_rtprio: LimitOrUnset = UNSET
    limit_rttime: LimitOrUnset = UNSET
    oom_score_adjust: IntOrUnset = UNSET
    cpu_affinity: typing.Sequence[str] = ()
    hostname: str = ''
    resolv_conf: str = ''
    timezone: str = ''
    link_journal: str = ''


@dataclasses.dataclass(frozen=True)
class FilesOptions:

    read_only: bool = False
    volatile: str = ''
    bind: typing.Sequence[str] = ()
    bind_read_only: typing.Sequence[str] = ()
    temporary_file_system: typing.Sequence[str] = ()
    inaccessible: typing.Sequence[str] = ()
    # Each overlay is a list of paths, lowest first and target last.
    overlay: typing.Sequence[typing.Sequence[str]] = ()
    overlay_read_only: typing.Sequence[typing.Sequence[str]] = ()
    private_users_chown: bool = False


@dataclasses.dataclass(frozen=True)
class NetworkOptions:

    private: bool = False
    virtual_ethernet: bool = False
    virtual_ethernet_extra: typing.Sequence[str] = ()
    interface: typing.Sequence[str] = ()
    macvlan: typing.Sequence[str] = ()
    ipvlan: typing.Sequence[str] = ()
    bridge: str = ''
    zone: str = ''
    port: typing.Sequence[str] = ()


@dataclasses.dataclass(frozen=True)
class TaskSpec:

    image: str
    exec: ExecOptions = dataclasses.field(default_factory=ExecOptions)
    files: FilesOptions = dataclasses.field(default_factory=FilesOptions)
    network: NetworkOptions = dataclasses.field(
        default_factory=NetworkOptions
    )

    @classmethod
    def from_dict(cls, data):
        return _fromdict(cls, data)

    def to_dict(self):
        return _todict(self)


@dataclasses.dataclass(frozen=True)
class TaskConfig:

    id: str
    name: str
    alloc_id: str
    spec: TaskSpec

    @property
    def machine_name(self):
        return make_machine_name(self.name, self.alloc_id)

    @classmethod
    def from_dict(cls, data):
        return _fromdict(cls, data)

    def to_dict(self):
        return _todict(self)


@dataclasses.dataclass(frozen=True)
class TaskState:
    """State needed to re-attach to a task after a driver restart."""

    task_config: TaskConfig
    machine_name: str
    started_at: datetime.datetime

    def encode(self):
        return json.dumps(
            {
                'task_config': self.task_config.to_dict(),
                'machine_name': self.machine_name,
                'started_at': self.started_at.isoformat(),
            },
            sort_keys=True,
        )

    @classmethod
    def decode(cls, encoded):
        data = json.loads(encoded)
        return cls(
            task_config=TaskConfig.from_dict(data['task_config']),
            machine_name=data['machine_name'],
            started_at=datetime.datetime.fromisoformat(data['started_at']),
        )


def make_machine_name(task_name, alloc_id):
    return '%s-%s' % (task_name.replace('/', '_'), alloc_id)


#
# Conversion between dataclass objects and plain dicts.
#


def _fromdict(dataclass, data):
    """Construct a dataclass object from a dict.

    Dict entries that do not correspond to any field are ignored, and
    absent entries take their default values.
    """
    kwargs = {}
    for field in dataclasses.fields(dataclass):
        if field.name not in data:
            continue
        value = data[field.name]
        field_type = _resolve_type(dataclass, field)
        if dataclasses.is_dataclass(field_type):
            value = _fromdict(field_type, value)
        elif isinstance(value, list):
            value = tuple(
                tuple(element) if isinstance(element, list) else element
                for element in value
            )
        elif isinstance(value, dict):
            value = dict(value)
        kwargs[field.name] = value
    return dataclass(**kwargs)


def _resolve_type(dataclass, field):
    return typing.get_type_hints(dataclass).get(field.name, field.type)


def _todict(obj):
    """Inverse of ``_fromdict``; unset fields are omitted."""
    data = {}
    for field in dataclasses.fields(obj):
        value = getattr(obj, field.name)
        if value is UNSET:
            continue
        if dataclasses.is_dataclass(value):
            value = _todict(value)
        elif isinstance(value, (list, tuple)):
            value = [
                list(element) if isinstance(element, (list, tuple)) else
                element for element in value
            ]
        elif isinstance(value, collections.abc.Mapping):
            value = dict(value)
        data[field.name] = value
    return data
