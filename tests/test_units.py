import unittest

import os
import stat
import tempfile
from pathlib import Path
from unittest import mock

from nspawn_driver import units
from nspawn_driver.errors import RenderError
from nspawn_driver.tasks import UNSET, TaskSpec


EXPECT = '''\
[Exec]
Boot=on
Ephemeral=off
ProcessTwo=off
Parameters=1,2,3
Environment=1=2
Environment=a=b
User=abc
WorkingDirectory=
PivotRoot=
Capability=1 2 3
DropCapability=
NoNewPrivileges=off
KillSignal=127
Personality=
MachineID=
PrivateUsers=
NotifyReady=off
SystemCallFilter=
LimitCPU=
LimitFSIZE=
LimitDATA=
LimitSTACK=
LimitCORE=
LimitRSS=
LimitNOFILE=
LimitAS=
LimitNPROC=
LimitMEMLOCK=
LimitLOCKS=
LimitSIGPENDING=
LimitMSGQUEUE=
LimitNICE=
LimitRTPRIO=
LimitRTTIME=
OOMScoreAdjust=1
CPUAffinity=
Hostname=
ResolvConf=
Timezone=
LinkJournal=

[Files]
ReadOnly=off
Volatile=
Overlay=1:2:3
Overlay=2:4:6
PrivateUsersChown=off

[Network]
Private=off
VirtualEthernet=off
Interface=
MACVLAN=
IPVLAN=
Bridge=
Zone=
'''


def make_spec(exec=None, files=None, network=None):
    return TaskSpec.from_dict({
        'image': 'https://example.com/image.raw',
        'exec': exec or {},
        'files': files or {},
        'network': network or {},
    })


class RenderTest(unittest.TestCase):

    def test_render(self):
        spec = make_spec(
            exec={
                'boot': True,
                'parameters': ['1', '2', '3'],
                'environment': {'a': 'b', '1': '2'},
                'user': 'abc',
                'capability': ['1', '2', '3'],
                'kill_signal': 127,
                'oom_score_adjust': 1,
            },
            files={
                'overlay': [['1', '2', '3'], ['2', '4', '6']],
            },
        )
        self.assertEqual(EXPECT, units.render(spec))
        # Same spec, same bytes.
        self.assertEqual(units.render(spec), units.render(spec))

    def test_unset_and_zero(self):
        text = units.render(make_spec())
        self.assertIn('\nKillSignal=\n', text)
        self.assertIn('\nOOMScoreAdjust=\n', text)

        text = units.render(make_spec(exec={'oom_score_adjust': 0}))
        self.assertIn('\nOOMScoreAdjust=0\n', text)

        self.assertIs(UNSET, make_spec().exec.limit_nofile)
        text = units.render(make_spec(exec={'limit_nofile': '1024:4096'}))
        self.assertIn('\nLimitNOFILE=1024:4096\n', text)
        text = units.render(make_spec(exec={'limit_core': 0}))
        self.assertIn('\nLimitCORE=0\n', text)

    def test_joined_and_repeated(self):
        text = units.render(make_spec(
            exec={
                'cpu_affinity': ['0', '2-3'],
                'system_call_filter': ['@system-service', '~@mount'],
                'drop_capability': ['CAP_SYS_ADMIN', 'CAP_NET_RAW'],
            },
            files={
                'bind': ['/a', '/b:/c'],
                'bind_read_only': ['/etc/ssl'],
                'temporary_file_system': ['/tmp:mode=1777'],
                'inaccessible': ['/proc/kcore'],
                'overlay_read_only': [['/x', '/y', '/z']],
            },
            network={
                'virtual_ethernet_extra': ['ve-a:ve-b'],
                'interface': ['eth1', 'eth2'],
                'macvlan': ['eth3'],
                'ipvlan': ['eth4', 'eth5'],
                'port': ['tcp:80:8080', 'udp:53'],
            },
        ))
        for line in (
            'CPUAffinity=0,2-3',
            'SystemCallFilter=@system-service ~@mount',
            'DropCapability=CAP_SYS_ADMIN CAP_NET_RAW',
            'Bind=/a',
            'Bind=/b:/c',
            'BindReadOnly=/etc/ssl',
            'TemporaryFileSystem=/tmp:mode=1777',
            'Inaccessible=/proc/kcore',
            'OverlayReadOnly=/x:/y:/z',
            'VirtualEthernetExtra=ve-a:ve-b',
            'Interface=eth1 eth2',
            'MACVLAN=eth3',
            'IPVLAN=eth4 eth5',
            'Port=tcp:80:8080',
            'Port=udp:53',
        ):
            self.assertIn('\n%s\n' % line, text)

    def test_directive_order(self):
        text = units.render(make_spec(
            files={'bind': ['/a'], 'overlay': [['/b', '/c']]},
        ))
        lines = text.splitlines()
        self.assertLess(lines.index('Volatile='), lines.index('Bind=/a'))
        self.assertLess(lines.index('Bind=/a'), lines.index('Overlay=/b:/c'))
        self.assertLess(
            lines.index('Overlay=/b:/c'), lines.index('PrivateUsersChown=off')
        )

    def test_boot_and_process_two(self):
        with self.assertRaisesRegex(RenderError, 'mutually exclusive'):
            units.render(make_spec(exec={'boot': True, 'process_two': True}))
        text = units.render(make_spec(exec={'process_two': True}))
        self.assertIn('\nProcessTwo=on\n', text)

    def test_invalid_values(self):
        for exec in (
            {'resolv_conf': 'bogus'},
            {'timezone': 'bogus'},
            {'link_journal': 'bogus'},
            {'user': 'abc\nBoot=on'},
            {'environment': {'A=B': 'c'}},
            {'environment': {'': 'c'}},
            {'kill_signal': True},
            {'kill_signal': '9'},
            {'parameters': 'not-a-list'},
            {'boot': 'yes'},
        ):
            with self.subTest(exec):
                with self.assertRaises(RenderError):
                    units.render(make_spec(exec=exec))
        with self.assertRaises(RenderError):
            units.render(make_spec(files={'volatile': 'bogus'}))
        with self.assertRaises(RenderError):
            units.render(make_spec(files={'overlay': [[]]}))
        with self.assertRaises(RenderError):
            units.render('not a spec')

    def test_error_context(self):
        with self.assertRaises(RenderError) as cm:
            units.render(make_spec(exec={'timezone': 'bogus'}))
        self.assertEqual('timezone', cm.exception.field)
        self.assertIn('field=timezone', str(cm.exception))


class UnitFileTest(unittest.TestCase):

    def setUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        self.unit_dir = Path(self.tempdir.name)

    def tearDown(self):
        self.tempdir.cleanup()

    def test_names(self):
        self.assertEqual(
            self.unit_dir / 'web-1.nspawn',
            units.get_unit_path(self.unit_dir, 'web-1'),
        )
        self.assertEqual(
            'systemd-nspawn@web-1.service',
            units.get_service_name('web-1'),
        )

    def test_write_and_remove(self):
        path = units.write_unit_file(self.unit_dir, 'web-1', 'hello\n')
        self.assertEqual('hello\n', path.read_text())
        self.assertEqual(0o644, stat.S_IMODE(os.stat(str(path)).st_mode))

        path = units.write_unit_file(self.unit_dir, 'web-1', 'world\n')
        self.assertEqual('world\n', path.read_text())
        self.assertEqual(['web-1.nspawn'], os.listdir(str(self.unit_dir)))

        self.assertTrue(units.remove_unit_file(self.unit_dir, 'web-1'))
        self.assertFalse(path.exists())
        self.assertFalse(units.remove_unit_file(self.unit_dir, 'web-1'))

    def test_write_failure(self):
        units.write_unit_file(self.unit_dir, 'web-1', 'hello\n')
        with mock.patch('os.replace', side_effect=OSError('disk full')):
            with self.assertRaises(OSError):
                units.write_unit_file(self.unit_dir, 'web-1', 'world\n')
        # Old content is intact and no temporary file is left behind.
        self.assertEqual(
            'hello\n',
            units.get_unit_path(self.unit_dir, 'web-1').read_text(),
        )
        self.assertEqual(['web-1.nspawn'], os.listdir(str(self.unit_dir)))


if __name__ == '__main__':
    unittest.main()
