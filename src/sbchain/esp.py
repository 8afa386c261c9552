# SPDX-License-Identifier: LGPL-2.1-or-later

import filecmp
import logging
import shutil
import textwrap
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from .backup import BackupManager
from .errors import PreconditionError
from .store import DB, KEK, PK, ROLES, CertificateStore, RoleFiles
from .util import Style

logger = logging.getLogger(__name__)

DEFAULT_ESP_PATHS = ('/boot/efi', '/boot/EFI', '/efi')

EXPORT_SUBDIR = 'keys'


def find_esp(candidates: Sequence[Path] = ()) -> Path:
    candidates = [Path(p) for p in (candidates or DEFAULT_ESP_PATHS)]
    for path in candidates:
        if path.is_dir():
            logger.info('Using EFI system partition at %s', path)
            return path
    raise PreconditionError(
        f'No EFI system partition found (looked at {", ".join(str(p) for p in candidates)})'
    )


def enrollment_files(store: CertificateStore) -> list[Path]:
    """Public material the firmware setup utility may need. Never private keys."""
    paths = []
    for role in ROLES:
        files = store.files(role)
        paths += [files.cer, files.esl, files.auth]
        if role == PK:
            paths += [files.rm_auth]
        paths += [files.combined_esl, files.combined_auth]
    return [p for p in paths if p.is_file()]


def export_enrollment_files(
    store: CertificateStore,
    esp: Path,
    backups: Optional[BackupManager] = None,
) -> list[Path]:
    dest_dir = Path(esp) / EXPORT_SUBDIR
    dest_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for src in enrollment_files(store):
        dest = dest_dir / src.name
        if dest.exists():
            if filecmp.cmp(src, dest, shallow=False):
                logger.debug('%s is up to date', dest)
                continue
            if backups is not None:
                backups.snapshot(dest)
        shutil.copyfile(src, dest)
        logger.info('Copied %s to %s', src.name, dest_dir)
        written += [dest]
    return written


def enrollment_instructions(store: CertificateStore, esp: Optional[Path] = None) -> str:
    def pick(files: RoleFiles) -> str:
        if files.has_combined():
            return f'{files.combined_auth.name} (or {files.auth.name} without vendor keys)'
        return files.auth.name

    where = f' from {Path(esp) / EXPORT_SUBDIR}' if esp is not None else ''
    return textwrap.dedent(f'''\
        {Style.bold}Enroll the keys in the firmware setup (Key Management){Style.reset}{where}, in this order:
          1. {store.files(PK).auth.name}  (replace, not append)
          2. {pick(store.files(KEK))}  (append)
          3. {pick(store.files(DB))}  (append)
        Leave dbx as shipped by the vendor.
        {Style.gray}{store.files(PK).rm_auth.name} removes the platform key again.{Style.reset}''')
