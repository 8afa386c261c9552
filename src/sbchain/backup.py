# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import datetime
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from .util import temporary_umask

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_DIR = Path('/var/backups/sbchain')


@dataclasses.dataclass(frozen=True)
class BackupRecord:
    source: Path
    backup: Path
    created: datetime.datetime


class BackupManager:
    """Copies files aside before they are overwritten or deleted.

    All snapshots of one run go below <root>/<timestamp>/, mirroring their
    absolute path. Nothing here is ever deleted automatically.
    """

    def __init__(self, root: Path = DEFAULT_BACKUP_DIR, stamp: Optional[str] = None) -> None:
        self.root = Path(root)
        now = datetime.datetime.now()
        self.stamp = stamp or f'{now:%Y%m%d-%H%M%S}-{os.getpid()}'
        self.records: list[BackupRecord] = []

    @property
    def run_dir(self) -> Path:
        return self.root / self.stamp

    def snapshot(self, path: Path) -> BackupRecord:
        source = Path(path).absolute()
        dest = self.run_dir.joinpath(*source.parts[1:])
        n = 0
        while dest.exists() or dest.is_symlink():
            # Same path saved twice in one run, keep the older copy
            n += 1
            dest = dest.with_name(f'{source.name}.{n}')

        # Backups may contain private keys
        with temporary_umask(0o077):
            self.run_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            dest.parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                shutil.copytree(source, dest, symlinks=True)
            else:
                shutil.copy2(source, dest)

        record = BackupRecord(source, dest, datetime.datetime.now())
        self.records += [record]
        logger.info('Backed up %s to %s', source, dest)
        return record
