# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import shutil
from pathlib import Path

from .backup import BackupManager
from .store import CertificateStore

logger = logging.getLogger(__name__)


def cleanup(store: CertificateStore, hook: Path, script: Path, backups: BackupManager) -> list[Path]:
    """Remove the hook, the re-signing script and the key store. Return what was removed.

    Nothing is removed unless the store holds our platform key, and every
    path is backed up before it goes. Keys enrolled in firmware stay
    enrolled; removing them is up to the operator.
    """
    def refuse() -> list[Path]:
        logger.warning(
            '%s does not contain %s, refusing to remove anything',
            store.directory, store.fingerprint.name,
        )
        return []

    # Checked before locking too, so no lock file is created in a foreign directory
    if not store.is_ours():
        return refuse()

    removed = []
    with store.lock():
        if not store.is_ours():
            return refuse()

        # The hook goes first, it must not fire once the keys are gone
        for path in (hook, script):
            if path.exists():
                backups.snapshot(path)
                path.unlink()
                logger.info('Removed %s', path)
                removed += [path]

        backups.snapshot(store.directory)
        shutil.rmtree(store.directory)
        logger.info('Removed %s', store.directory)
        removed += [store.directory]

    logger.info('Keys enrolled in the firmware were not touched, remove them in the firmware setup')
    return removed
