"""Render task spec into a systemd-nspawn unit file.

The output has three sections, ``[Exec]``, ``[Files]``, and
``[Network]``, and directives are emitted in the order of the tables
below.  Single directives are always emitted, even when their value is
empty, while repeated directives are emitted once per element (and so
not at all for an empty list).  Rendering the same spec always produces
the same bytes.

How a value is rendered is determined by the directive's kind:

* Boolean values are rendered as ``on`` or ``off``.
* Integer values are rendered as decimal text; ``UNSET`` is rendered as
  empty text (which is not the same as zero).
* Some list values are joined into one directive, by comma or by space
  depending on the directive.
* Other list values repeat the directive once per element; overlays
  further join their paths with colon.
* Environment variables repeat the ``Environment`` directive once per
  entry, sorted by name.
"""

__all__ = [
    'get_service_name',
    'get_unit_path',
    'remove_unit_file',
    'render',
    'write_unit_file',
]

import logging
import os
import tempfile
from pathlib import Path

from . import tasks
from .errors import RenderError

LOG = logging.getLogger(__name__)

UNIT_SUFFIX = '.nspawn'

#
# Value kinds.
#


def _on_off(directive, value):
    if not isinstance(value, bool):
        raise RenderError(
            'expect bool value', directive=directive, value=repr(value)
        )
    return ['%s=%s' % (directive, 'on' if value else 'off')]


def _text(directive, value):
    return ['%s=%s' % (directive, _check_text(directive, value))]


def _integer(directive, value):
    if value is tasks.UNSET:
        return ['%s=' % directive]
    if isinstance(value, bool) or not isinstance(value, int):
        raise RenderError(
            'expect int value', directive=directive, value=repr(value)
        )
    return ['%s=%d' % (directive, value)]


def _limit(directive, value):
    # Resource limits take either a number or "SOFT:HARD".
    if isinstance(value, str):
        return _text(directive, value)
    return _integer(directive, value)


def _make_joined(separator):

    def joined(directive, values):
        _check_list(directive, values)
        return [
            '%s=%s' % (
                directive,
                separator.join(
                    _check_text(directive, value) for value in values
                ),
            )
        ]

    return joined


_comma_joined = _make_joined(',')
_space_joined = _make_joined(' ')


def _repeated(directive, values):
    _check_list(directive, values)
    return [
        '%s=%s' % (directive, _check_text(directive, value))
        for value in values
    ]


def _repeated_paths(directive, overlays):
    _check_list(directive, overlays)
    lines = []
    for paths in overlays:
        _check_list(directive, paths)
        if not paths:
            raise RenderError('expect non-empty overlay', directive=directive)
        lines.append(
            '%s=%s' % (
                directive,
                ':'.join(_check_text(directive, path) for path in paths),
            )
        )
    return lines


def _environment(directive, environment):
    if not isinstance(environment, dict):
        try:
            environment = dict(environment)
        except (TypeError, ValueError):
            raise RenderError(
                'expect mapping value',
                directive=directive,
                value=repr(environment),
            ) from None
    lines = []
    for name in sorted(environment):
        _check_text(directive, name)
        if not name or '=' in name:
            raise RenderError(
                'invalid environment variable name',
                directive=directive,
                name=name,
            )
        lines.append(
            '%s=%s=%s' %
            (directive, name, _check_text(directive, environment[name]))
        )
    return lines


def _check_text(directive, value):
    if not isinstance(value, str):
        raise RenderError(
            'expect str value', directive=directive, value=repr(value)
        )
    # A line break would inject extra directives.
    if '\n' in value or '\r' in value:
        raise RenderError(
            'expect no line break', directive=directive, value=repr(value)
        )
    return value


def _check_list(directive, values):
    if isinstance(values, (str, bytes)) or \
            not isinstance(values, (list, tuple)):
        raise RenderError(
            'expect list value', directive=directive, value=repr(values)
        )


#
# Sections.
#

_EXEC_SECTION = (
    ('Boot', 'boot', _on_off),
    ('Ephemeral', 'ephemeral', _on_off),
    ('ProcessTwo', 'process_two', _on_off),
    ('Parameters', 'parameters', _comma_joined),
    ('Environment', 'environment', _environment),
    ('User', 'user', _text),
    ('WorkingDirectory', 'working_directory', _text),
    ('PivotRoot', 'pivot_root', _text),
    ('Capability', 'capability', _space_joined),
    ('DropCapability', 'drop_capability', _space_joined),
    ('NoNewPrivileges', 'no_new_privileges', _on_off),
    ('KillSignal', 'kill_signal', _integer),
    ('Personality', 'personality', _text),
    ('MachineID', 'machine_id', _text),
    ('PrivateUsers', 'private_users', _text),
    ('NotifyReady', 'notify_ready', _on_off),
    ('SystemCallFilter', 'system_call_filter', _space_joined),
    ('LimitCPU', 'limit_cpu', _limit),
    ('LimitFSIZE', 'limit_fsize', _limit),
    ('LimitDATA', 'limit_data', _limit),
    ('LimitSTACK', 'limit_stack', _limit),
    ('LimitCORE', 'limit_core', _limit),
    ('LimitRSS', 'limit_rss', _limit),
    ('LimitNOFILE', 'limit_nofile', _limit),
    ('LimitAS', 'limit_as', _limit),
    ('LimitNPROC', 'limit_nproc', _limit),
    ('LimitMEMLOCK', 'limit_memlock', _limit),
    ('LimitLOCKS', 'limit_locks', _limit),
    ('LimitSIGPENDING', 'limit_sigpending', _limit),
    ('LimitMSGQUEUE', 'limit_msgqueue', _limit),
    ('LimitNICE', 'limit_nice', _limit),
    ('LimitRTPRIO', 'limit_rtprio', _limit),
    ('LimitRTTIME', 'limit_rttime', _limit),
    ('OOMScoreAdjust', 'oom_score_adjust', _integer),
    ('CPUAffinity', 'cpu_affinity', _comma_joined),
    ('Hostname', 'hostname', _text),
    ('ResolvConf', 'resolv_conf', _text),
    ('Timezone', 'timezone', _text),
    ('LinkJournal', 'link_journal', _text),
)

_FILES_SECTION = (
    ('ReadOnly', 'read_only', _on_off),
    ('Volatile', 'volatile', _text),
    ('Bind', 'bind', _repeated),
    ('BindReadOnly', 'bind_read_only', _repeated),
    ('TemporaryFileSystem', 'temporary_file_system', _repeated),
    ('Inaccessible', 'inaccessible', _repeated),
    ('Overlay', 'overlay', _repeated_paths),
    ('OverlayReadOnly', 'overlay_read_only', _repeated_paths),
    ('PrivateUsersChown', 'private_users_chown', _on_off),
)

_NETWORK_SECTION = (
    ('Private', 'private', _on_off),
    ('VirtualEthernet', 'virtual_ethernet', _on_off),
    ('VirtualEthernetExtra', 'virtual_ethernet_extra', _repeated),
    ('Interface', 'interface', _space_joined),
    ('MACVLAN', 'macvlan', _space_joined),
    ('IPVLAN', 'ipvlan', _space_joined),
    ('Bridge', 'bridge', _text),
    ('Zone', 'zone', _text),
    ('Port', 'port', _repeated),
)

_SECTIONS = (
    ('Exec', 'exec', _EXEC_SECTION),
    ('Files', 'files', _FILES_SECTION),
    ('Network', 'network', _NETWORK_SECTION),
)

# Allowed values of enumerated directives; empty means "not set".
_CHOICES = {
    ('exec', 'resolv_conf'): frozenset((
        '',
        'off',
        'copy-host',
        'copy-static',
        'copy-uplink',
        'copy-stub',
        'replace-host',
        'replace-static',
        'replace-uplink',
        'replace-stub',
        'bind-host',
        'bind-static',
        'bind-uplink',
        'bind-stub',
        'delete',
        'auto',
    )),
    ('exec', 'timezone'): frozenset((
        '',
        'off',
        'copy',
        'bind',
        'symlink',
        'delete',
        'auto',
    )),
    ('exec', 'link_journal'): frozenset((
        '',
        'no',
        'host',
        'try-host',
        'guest',
        'try-guest',
        'auto',
    )),
    ('files', 'volatile'): frozenset((
        '',
        'no',
        'yes',
        'state',
        'overlay',
    )),
}


def render(spec):
    """Render a ``TaskSpec`` into unit file text."""
    _check_spec(spec)
    chunks = []
    for section_name, attr_name, section in _SECTIONS:
        options = getattr(spec, attr_name)
        lines = ['[%s]' % section_name]
        for directive, field_name, render_value in section:
            lines.extend(render_value(directive, getattr(options, field_name)))
        chunks.append('\n'.join(lines))
    return '\n\n'.join(chunks) + '\n'


def _check_spec(spec):
    if not isinstance(spec, tasks.TaskSpec):
        raise RenderError('expect TaskSpec', spec=repr(spec))
    for (attr_name, field_name), choices in _CHOICES.items():
        value = getattr(getattr(spec, attr_name), field_name)
        if not isinstance(value, str) or value not in choices:
            raise RenderError(
                'unsupported value', field=field_name, value=repr(value)
            )
    if spec.exec.boot is True and spec.exec.process_two is True:
        raise RenderError('boot and process_two are mutually exclusive')


#
# Unit files.
#


def get_unit_path(unit_dir, machine_name):
    return Path(unit_dir) / ('%s%s' % (machine_name, UNIT_SUFFIX))


def get_service_name(machine_name):
    return 'systemd-nspawn@%s.service' % machine_name


def write_unit_file(unit_dir, machine_name, text):
    """Write unit file atomically.

    The text is written to a temporary file in the same directory first,
    and then renamed into place, so that systemd never reads a partially
    written unit file.
    """
    unit_path = get_unit_path(unit_dir, machine_name)
    LOG.info('write unit file: %s', unit_path)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(unit_path.parent),
        prefix='.%s.' % machine_name,
        suffix='.tmp',
    )
    try:
        with os.fdopen(fd, 'w') as unit_file:
            unit_file.write(text)
            unit_file.flush()
            os.fsync(unit_file.fileno())
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, str(unit_path))
    except BaseException:
        LOG.error('unable to write unit file: %s', unit_path)
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise
    return unit_path


def remove_unit_file(unit_dir, machine_name):
    """Remove unit file, or no-op if it does not exist."""
    unit_path = get_unit_path(unit_dir, machine_name)
    try:
        unit_path.unlink()
    except FileNotFoundError:
        LOG.debug('unit file does not exist: %s', unit_path)
        return False
    LOG.info('remove unit file: %s', unit_path)
    return True
