#!/usr/bin/env python3
# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=redefined-outer-name

import configparser
import stat
import sys

try:
    import pytest
except ImportError as e:
    print(str(e), file=sys.stderr)
    sys.exit(77)

from sbchain import hook
from sbchain.backup import BackupManager


def test_hook_text(tmp_path):
    text = hook.hook_text(tmp_path / 'sign-kernel')
    sections = text.split('\n\n')
    assert len(sections) == 3

    path_trigger, package_trigger, action = sections
    assert 'Type = Path' in path_trigger
    assert 'Target = boot/vmlinuz-*' in path_trigger
    assert 'Type = Package' in package_trigger
    for name in hook.LOADER_PACKAGES:
        assert f'Target = {name}' in package_trigger.splitlines()
    for trigger in (path_trigger, package_trigger):
        assert 'Operation = Install' in trigger
        assert 'Operation = Upgrade' in trigger

    action = configparser.ConfigParser()
    action.read_string(sections[2])
    assert action['Action']['When'] == 'PostTransaction'
    assert action['Action']['Exec'] == str(tmp_path / 'sign-kernel')


def test_script_text():
    text = hook.script_text(['--key-dir', '/some dir'], python='/usr/bin/python3')
    lines = text.splitlines()
    assert lines[0] == '#!/bin/sh'
    assert lines[-1] == "exec /usr/bin/python3 -m sbchain resign --key-dir '/some dir' \"$@\""


def test_install_hook(tmp_path):
    hook_path = tmp_path / 'hooks' / hook.DEFAULT_HOOK_NAME
    script = tmp_path / 'bin' / 'sign-kernel'

    written = hook.install_hook(hook_path, script, ['--key-dir', str(tmp_path / 'keys')])

    assert written == [script, hook_path]
    assert stat.S_IMODE(script.stat().st_mode) == 0o755
    assert stat.S_IMODE(hook_path.stat().st_mode) == 0o644
    assert f'Exec = {script}' in hook_path.read_text()
    assert str(tmp_path / 'keys') in script.read_text()
    assert sorted(p.name for p in hook_path.parent.iterdir()) == [hook.DEFAULT_HOOK_NAME]


def test_install_hook_idempotent(tmp_path):
    hook_path = tmp_path / 'hooks' / hook.DEFAULT_HOOK_NAME
    script = tmp_path / 'bin' / 'sign-kernel'
    backups = BackupManager(tmp_path / 'backups', stamp='run')

    hook.install_hook(hook_path, script, backups=backups)
    assert hook.install_hook(hook_path, script, backups=backups) == []
    assert backups.records == []


def test_install_hook_replaces_foreign_file(tmp_path):
    hook_path = tmp_path / 'hooks' / hook.DEFAULT_HOOK_NAME
    script = tmp_path / 'bin' / 'sign-kernel'
    hook_path.parent.mkdir()
    hook_path.write_text('[Trigger]\nTarget = old\n')
    backups = BackupManager(tmp_path / 'backups', stamp='run')

    assert hook.install_hook(hook_path, script, backups=backups) == [script, hook_path]

    assert [r.source for r in backups.records] == [hook_path]
    assert backups.records[0].backup.read_text() == '[Trigger]\nTarget = old\n'
    assert 'Target = old' not in hook_path.read_text()


def test_resign(chain, signtool, tmp_path, caplog):
    boot = tmp_path / 'boot'
    boot.mkdir()
    (boot / 'vmlinuz-linux').write_bytes(b'MZ kernel')

    with caplog.at_level('INFO'):
        results = hook.resign(chain, signtool, boot, None)
    assert [r.changed for r in results] == [True]
    assert '1 artifact(s) signed, 0 already signed' in caplog.text

    (boot / 'vmlinuz-linux-lts').write_bytes(b'MZ lts kernel')
    results = hook.resign(chain, signtool, boot, None)
    assert sorted(r.changed for r in results) == [False, True]


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv))
