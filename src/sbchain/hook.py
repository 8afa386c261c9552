# SPDX-License-Identifier: LGPL-2.1-or-later

# Re-signing after package transactions.
#
# pacman runs the installed hook after every transaction that installs or
# upgrades a kernel or a boot loader. The hook executes a small script which
# calls 'sbchain resign'. Sequential runs are idempotent: artifacts that are
# already signed are skipped. Concurrent runs serialize on the store lock.

import logging
import os
import sys
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from .backup import BackupManager
from .signing import EXCLUDED_LOADERS, SignResult, sign_boot_artifacts
from .store import CertificateStore
from .tools import SignTool
from .util import shell_join

logger = logging.getLogger(__name__)

DEFAULT_HOOK_DIR = Path('/etc/pacman.d/hooks')
DEFAULT_HOOK_NAME = 'secureboot-sign.hook'
DEFAULT_SCRIPT = Path('/usr/local/bin/sign-kernel')

KERNEL_TARGETS = (
    'boot/vmlinuz-*',
    'usr/lib/modules/*/vmlinuz',
)
LOADER_PACKAGES = (
    'grub',
    'systemd',
    'refind',
    'shim-signed',
)


def hook_text(
    script: Path,
    kernel_targets: Sequence[str] = KERNEL_TARGETS,
    loader_packages: Sequence[str] = LOADER_PACKAGES,
) -> str:
    def trigger(type_: str, targets: Sequence[str]) -> list[str]:
        return [
            '[Trigger]',
            f'Type = {type_}',
            'Operation = Install',
            'Operation = Upgrade',
            *(f'Target = {t}' for t in targets),
            '',
        ]

    lines = [
        *trigger('Path', kernel_targets),
        *trigger('Package', loader_packages),
        '[Action]',
        'Description = Signing kernels and boot loaders for Secure Boot...',
        'When = PostTransaction',
        f'Exec = {script}',
        'Depends = sbsigntools',
    ]
    return '\n'.join(lines) + '\n'


def script_text(args: Sequence[str] = (), python: Optional[str] = None) -> str:
    cmd = [python or sys.executable, '-m', 'sbchain', 'resign', *args]
    return '\n'.join([
        '#!/bin/sh',
        '# Installed by sbchain: sign new kernels and boot loaders with the db key.',
        f'exec {shell_join(cmd)} "$@"',
    ]) + '\n'


def write_file(path: Path, text: str, mode: int, backups: Optional[BackupManager] = None) -> bool:
    """Atomically replace path with text. Returns False if it already had that content."""
    if path.is_file() and path.read_text() == text:
        logger.info('%s already exists', path)
        return False

    if path.exists() and backups is not None:
        backups.snapshot(path)

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent)
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(text)
        os.chmod(name, mode)
        os.replace(name, path)
    finally:
        Path(name).unlink(missing_ok=True)

    logger.info('Wrote %s', path)
    return True


def install_hook(
    hook: Path,
    script: Path,
    args: Sequence[str] = (),
    backups: Optional[BackupManager] = None,
) -> list[Path]:
    written = []
    # The script first, so that the hook never points at a missing file
    if write_file(script, script_text(args), 0o755, backups):
        written += [script]
    if write_file(hook, hook_text(script), 0o644, backups):
        written += [hook]
    return written


def resign(
    store: CertificateStore,
    tool: SignTool,
    boot_dir: Path,
    esp: Optional[Path],
    exclude: Sequence[str] = EXCLUDED_LOADERS,
    backups: Optional[BackupManager] = None,
) -> list[SignResult]:
    results = sign_boot_artifacts(store, tool, boot_dir, esp, exclude=exclude, backups=backups)
    signed = [r for r in results if r.changed]
    logger.info('%d artifact(s) signed, %d already signed', len(signed), len(results) - len(signed))
    return results
