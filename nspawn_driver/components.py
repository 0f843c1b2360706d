"""Assemble a driver from command-line arguments with ``startup``.

The dependency graph is:

  PARSER ---> PARSE --+--> ARGS --> CONFIG --+--> STORE --+--> DRIVER
                      |                      |            |
              ARGV ---+                      +------------+

Each component contributes its command-line arguments and makes one
object; ``main`` parses ``argv`` and calls the startup graph.
"""

__all__ = [
    'ARGS',
    'ARGV',
    'MAIN',
    'PARSE',
    'PARSER',

    'Component',
    'make_provide',

    'bind',
    'main',
    'parse_argv',

    'ConfigComponent',
    'DriverComponent',
    'LoggingComponent',
    'StateStoreComponent',
]

import argparse
import collections
import dataclasses
import logging
import os
import types

from startup import startup as startup_

from nspawn_driver import config as config_
from nspawn_driver import states
from nspawn_driver import systemd
from nspawn_driver.drivers import Driver


def make_provide(module_name, *names):
    """Return a namedtuple of startup variable names.

    The variable of ``name`` is ``module_name:name``, and is accessible
    by attribute ``name`` of the returned tuple.
    """
    return collections.namedtuple('Provide', names)(*(
        '%s:%s' % (module_name, name) for name in names
    ))


ARGS, ARGV, MAIN, PARSE, PARSER = make_provide(
    __name__, 'args', 'argv', 'main', 'parse', 'parser'
)


class Component:
    """A node of the startup graph.

    ``make`` is called with an object whose attributes are the values of
    the ``require`` variables, and its return value is bound to the
    ``provide`` variable.
    """

    require = ()

    provide = None

    def add_arguments(self, parser):
        pass

    def make(self, require):
        raise NotImplementedError


def bind(component, startup=startup_):
    """Add the component's functions to the startup graph."""

    cls = type(component)

    if cls.add_arguments is not Component.add_arguments:
        @startup.with_annotations({'parser': PARSER, 'return': PARSE})
        def add_arguments(parser):
            component.add_arguments(parser)

    if cls.make is Component.make:
        return

    provide = component.provide
    if isinstance(provide, tuple):
        provide, = provide
    annotations = {'return': provide}
    require = component.require
    if isinstance(require, str):
        require = (require, )
    for var in require:
        module_name, _, name = var.rpartition(':')
        if not module_name:
            raise ValueError('expect "module:name" variable: %r' % var)
        if name in annotations:
            raise ValueError('duplicated variable name: %r' % var)
        annotations[name] = var

    @startup.with_annotations(annotations)
    def make(**kwargs):
        return component.make(types.SimpleNamespace(**kwargs))


def parse_argv(parser: PARSER, argv: ARGV, _: PARSE) -> ARGS:
    return parser.parse_args(argv[1:])


def main(argv, startup=startup_):
    """Parse ``argv``, build the graph, and call what MAIN provides."""
    startup.set(ARGV, argv)
    startup(parse_argv)
    varz = startup.call()
    return varz[MAIN](varz[ARGS])


#
# Components.
#


def _existing_file(path):
    if not os.path.isfile(path):
        raise argparse.ArgumentTypeError('file does not exist: %s' % path)
    return path


def _sqlite_uri(db_uri):
    if not db_uri.startswith('sqlite'):
        raise argparse.ArgumentTypeError(
            'only support sqlite at the moment: %s' % db_uri
        )
    return db_uri


class LoggingComponent(Component):
    """Set the root log level from the count of ``-v`` flags."""

    TRACE = logging.DEBUG - 1

    # Indexed by the count of ``-v`` flags.
    LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG, TRACE)

    LOG_FORMAT = (
        '%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s'
    )

    require = ARGS

    def add_arguments(self, parser):
        parser.add_argument(
            '-v', '--verbose', action='count', default=0,
            help='log more; repeat for debug and trace output')

    def make(self, require):
        verbose = min(require.args.verbose, len(self.LEVELS) - 1)
        self.configure(self.LEVELS[verbose])

    @classmethod
    def configure(cls, level):
        logging.addLevelName(cls.TRACE, 'TRACE')
        logging.basicConfig(level=level, format=cls.LOG_FORMAT)


class ConfigComponent(Component):

    require = ARGS

    provide = make_provide(__name__, 'config')

    def add_arguments(self, parser):
        group = parser.add_argument_group(config_.__name__)
        group.add_argument(
            '--config', metavar='PATH', type=_existing_file,
            help='load driver config from a YAML file')
        group.add_argument(
            '--unit-dir', metavar='DIR',
            help='override directory of .nspawn unit files')

    def make(self, require):
        args = require.args
        if args.config:
            config = config_.load_config(args.config)
        else:
            config = config_.DriverConfig()
        if args.unit_dir:
            config = dataclasses.replace(config, unit_dir=args.unit_dir)
        return config


class StateStoreComponent(Component):

    require = (ARGS, ConfigComponent.provide.config)

    provide = make_provide(__name__, 'store')

    def add_arguments(self, parser):
        group = parser.add_argument_group(states.__name__)
        group.add_argument(
            '--db-uri', type=_sqlite_uri,
            help='set database engine URI of task states')

    def make(self, require):
        db_uri = require.args.db_uri or require.config.db_uri
        if not db_uri:
            return None
        echo = logging.getLogger().isEnabledFor(LoggingComponent.TRACE)
        return states.TaskStateStore(states.create_engine(db_uri, echo=echo))


class DriverComponent(Component):

    require = (
        ConfigComponent.provide.config,
        StateStoreComponent.provide.store,
    )

    provide = make_provide(__name__, 'driver')

    def make(self, require):
        return Driver(
            systemd.Systemctl(),
            systemd.Machinectl(),
            systemd.Importd(),
            require.config,
            store=require.store,
        )


if os.environ.get('DEBUG') not in (None, '', '0'):
    LoggingComponent.configure(logging.DEBUG)
    logging.getLogger(__name__).debug('start at DEBUG level')
