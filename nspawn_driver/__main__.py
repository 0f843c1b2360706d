"""Command-line entry point for inspecting and maintaining the driver.

  python -m nspawn_driver fingerprint
  python -m nspawn_driver render TASK.yaml
  python -m nspawn_driver recover --db-uri sqlite:////var/lib/tasks.db
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import yaml
from startup import Startup

from nspawn_driver import components
from nspawn_driver import units
from nspawn_driver.tasks import TaskSpec

LOG = logging.getLogger(__name__)

DRIVER = components.DriverComponent.provide.driver


def cmd_fingerprint(args, driver):
    info = driver.plugin_info()
    fingerprint = driver.fingerprint()
    print(json.dumps({
        'plugin': info._asdict(),
        'capabilities': driver.capabilities()._asdict(),
        'health': fingerprint.health,
        'description': fingerprint.description,
        'attributes': fingerprint.attributes,
    }, indent=4, sort_keys=True))
    return 0 if fingerprint.health == 'healthy' else 1


def cmd_render(args, driver):
    data = yaml.safe_load(Path(args.spec).read_text())
    sys.stdout.write(units.render(TaskSpec.from_dict(data)))
    return 0


def cmd_recover(args, driver):
    failed = driver.recover_tasks()
    for task_id in failed:
        print(task_id)
    return 1 if failed else 0


def main(argv, startup=None):
    startup = startup or Startup()

    parser = argparse.ArgumentParser(
        prog='nspawn-driver',
        description='Run tasks as systemd-nspawn machines.',
    )
    parser.set_defaults(command=None)
    subparsers = parser.add_subparsers(title='commands')
    subparsers.add_parser(
        'fingerprint', help='check whether the host can run tasks'
    ).set_defaults(command=cmd_fingerprint)
    subparser = subparsers.add_parser(
        'render', help='render a task spec into a .nspawn unit file'
    )
    subparser.add_argument('spec', help='path to a task spec in YAML')
    subparser.set_defaults(command=cmd_render)
    subparsers.add_parser(
        'recover', help='recover tasks from the state store'
    ).set_defaults(command=cmd_recover)
    startup.set(components.PARSER, parser)

    for comp in (
        components.LoggingComponent(),
        components.ConfigComponent(),
        components.StateStoreComponent(),
        components.DriverComponent(),
    ):
        components.bind(comp, startup=startup)

    @startup
    def select_main(
            parser: components.PARSER,
            args: components.ARGS,
            driver: DRIVER,
        ) -> components.MAIN:
        if not args.command:
            parser.error('command is required')

        def run(args):
            with driver:
                return args.command(args, driver)

        return run

    return components.main(argv, startup=startup)


def main_entry():
    sys.exit(main(sys.argv))


if __name__ == '__main__':
    main_entry()
