# SPDX-License-Identifier: LGPL-2.1-or-later

# Signing of boot artifacts with the db key.
#
# An artifact is either signed by us already, in which case it is left
# alone, or it is signed into a temporary file next to it which then
# replaces it with a single rename(). Readers see the old or the new file,
# never a partial one, and a failed signature leaves the original as it was.

import dataclasses
import enum
import logging
import os
import stat
import subprocess
import tempfile
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Optional

from .backup import BackupManager, BackupRecord
from .errors import SigningError
from .store import CertificateStore
from .tools import SignTool

logger = logging.getLogger(__name__)

# Loaders of other operating systems, never touched
EXCLUDED_LOADERS = ('bootmgfw.efi',)

KERNEL_GLOB = 'vmlinuz-*'


class ArtifactState(enum.Enum):
    UNSIGNED = 'unsigned'
    SIGNED = 'signed'


@dataclasses.dataclass(frozen=True)
class SignResult:
    path: Path
    state: ArtifactState
    changed: bool
    backup: Optional[BackupRecord] = None


def _unique(paths: Iterable[Path]) -> list[Path]:
    seen = set()
    result = []
    for path in paths:
        # Sign the file, not the symlink pointing at it
        real = path.resolve()
        if real not in seen:
            seen.add(real)
            result += [real]
    return result


def find_kernels(boot_dir: Path, esp: Optional[Path] = None) -> list[Path]:
    paths = sorted(Path(boot_dir).glob(KERNEL_GLOB))
    if esp is not None:
        paths += sorted(Path(esp).glob(f'*/{KERNEL_GLOB}'))
    return _unique(p for p in paths if p.is_file())


def is_excluded(path: Path, exclude: Sequence[str] = EXCLUDED_LOADERS) -> bool:
    return path.name.lower() in {name.lower() for name in exclude}


def find_efi_binaries(esp: Path, exclude: Sequence[str] = EXCLUDED_LOADERS) -> list[Path]:
    paths = []
    for path in sorted(Path(esp).rglob('*')):
        if not path.is_file() or path.suffix.lower() != '.efi':
            continue
        if is_excluded(path, exclude):
            logger.warning('Skipping %s, it belongs to another operating system', path)
            continue
        paths += [path]
    return _unique(paths)


def discover_artifacts(
    boot_dir: Path,
    esp: Optional[Path],
    exclude: Sequence[str] = EXCLUDED_LOADERS,
) -> list[Path]:
    paths = find_kernels(boot_dir, esp)
    if esp is not None:
        paths += find_efi_binaries(esp, exclude)
    return _unique(paths)


class SigningEngine:
    def __init__(
        self,
        tool: SignTool,
        key: Path,
        cert: Path,
        backups: Optional[BackupManager] = None,
        exclude: Sequence[str] = EXCLUDED_LOADERS,
    ) -> None:
        self.tool = tool
        self.key = key
        self.cert = cert
        self.backups = backups
        self.exclude = tuple(exclude)

    def probe(self, path: Path) -> ArtifactState:
        try:
            signed = self.tool.is_signed(path, self.cert)
        except (subprocess.CalledProcessError, OSError, ValueError) as e:
            raise SigningError(path, 'cannot determine signature state', str(e)) from e
        return ArtifactState.SIGNED if signed else ArtifactState.UNSIGNED

    def sign(self, path: Path) -> SignResult:
        path = Path(path)

        if is_excluded(path, self.exclude) or is_excluded(path.resolve(), self.exclude):
            raise SigningError(path, "refusing to sign another operating system's boot loader")

        # Replace the file, not the symlink pointing at it
        path = path.resolve()

        if self.probe(path) == ArtifactState.SIGNED:
            logger.info('%s is already signed', path)
            return SignResult(path, ArtifactState.SIGNED, changed=False)

        backup = None
        if self.backups is not None:
            try:
                backup = self.backups.snapshot(path)
            except OSError as e:
                raise SigningError(path, 'backup failed, not signing', str(e)) from e

        try:
            # Same directory, hence same filesystem: the rename below is atomic
            fd, name = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent)
        except OSError as e:
            raise SigningError(path, 'cannot create temporary file', str(e)) from e
        os.close(fd)
        tmp = Path(name)

        try:
            self.tool.sign(path, tmp, self.key, self.cert)
            st = path.stat()
            tmp_st = tmp.stat()
            if (tmp_st.st_uid, tmp_st.st_gid) != (st.st_uid, st.st_gid):
                os.chown(tmp, st.st_uid, st.st_gid)
            if stat.S_IMODE(tmp_st.st_mode) != stat.S_IMODE(st.st_mode):
                os.chmod(tmp, stat.S_IMODE(st.st_mode))
            os.replace(tmp, path)
        except (subprocess.CalledProcessError, OSError) as e:
            raise SigningError(path, 'signing failed, original left untouched', str(e)) from e
        finally:
            tmp.unlink(missing_ok=True)

        logger.info('Signed %s', path)
        return SignResult(path, ArtifactState.SIGNED, changed=True, backup=backup)

    def sign_all(self, paths: Iterable[Path]) -> list[SignResult]:
        """Sign every path in order. The first failure aborts the whole pass."""
        results = []
        for path in paths:
            results += [self.sign(path)]
        return results


def sign_boot_artifacts(
    store: CertificateStore,
    tool: SignTool,
    boot_dir: Path,
    esp: Optional[Path],
    exclude: Sequence[str] = EXCLUDED_LOADERS,
    backups: Optional[BackupManager] = None,
    paths: Optional[Sequence[Path]] = None,
) -> list[SignResult]:
    """Sign the given paths, or every discovered kernel and EFI binary, with the db key."""
    with store.lock():
        key, cert = store.signing_key()
        engine = SigningEngine(tool, key, cert, backups=backups, exclude=exclude)

        if paths is None:
            paths = discover_artifacts(boot_dir, esp, exclude)
            if not paths:
                logger.warning('No kernel or EFI binary found in %s or %s', boot_dir, esp)

        return engine.sign_all(paths)
