"""Run scheduler tasks as systemd-nspawn machines.

A task goes through these steps when it is started:

* Its spec is rendered into a ``.nspawn`` unit file, which is written
  (atomically) to the nspawn unit directory, usually
  ``/etc/systemd/nspawn``.

* The image is pulled by systemd-importd.  importd does not tell us when
  a transfer is done; we poll the list of active transfers and consider
  it done once our transfer disappears from the list.

* The ``systemd-nspawn@<machine>.service`` unit is started, and we wait
  for systemd to report the result of the start job.

* The machine registered by systemd-machined is tracked in a registry,
  whose states only move forward: opening, running, closing.

Stopping a task reverses this: signal (and if necessary, terminate) the
machine, stop the unit, and remove the unit file.

We do not talk to D-Bus directly; instead we depend on three small
capability interfaces (see ``nspawn_driver.systemd``) that are injected
into the driver, and the default implementations of them shell out to
``systemctl``, ``machinectl``, and ``busctl``.
"""

import logging

logging.getLogger(__name__).addHandler(logging.NullHandler())
