# SPDX-License-Identifier: LGPL-2.1-or-later

# The on-disk key store.
#
# Layout, per role: {role}.key {role}.crt {role}.cer {role}.esl {role}.auth,
# plus {role}_combined.esl/.auth once a vendor certificate was merged, and
# rm_PK.auth for the platform key. The store directory is 0700, every file 0600.

import contextlib
import dataclasses
import fcntl
import logging
import os
import shutil
import tempfile
import uuid
from collections.abc import Iterator
from pathlib import Path

from .errors import PreconditionError, StoreLockedError
from .util import temporary_umask, write_private

logger = logging.getLogger(__name__)

GUID_FILE = 'GUID.txt'
LOCK_FILE = '.lock'


@dataclasses.dataclass(frozen=True)
class Role:
    name: str
    parent: str
    common_name: str

    @property
    def var(self) -> str:
        # The firmware variable carries the same name as the role
        return self.name


PK = Role('PK', parent='PK', common_name='Platform Key')
KEK = Role('KEK', parent='PK', common_name='Key Exchange Key')
DB = Role('db', parent='KEK', common_name='Secure Boot DB')

ROLES = (PK, KEK, DB)
ROLES_BY_NAME = {role.name: role for role in ROLES}


@dataclasses.dataclass(frozen=True)
class RoleFiles:
    directory: Path
    role: Role

    def _path(self, suffix: str) -> Path:
        return self.directory / f'{self.role.name}{suffix}'

    @property
    def key(self) -> Path:
        return self._path('.key')

    @property
    def crt(self) -> Path:
        return self._path('.crt')

    @property
    def cer(self) -> Path:
        return self._path('.cer')

    @property
    def esl(self) -> Path:
        return self._path('.esl')

    @property
    def auth(self) -> Path:
        return self._path('.auth')

    @property
    def rm_auth(self) -> Path:
        return self.directory / f'rm_{self.role.name}.auth'

    @property
    def vendor_esl(self) -> Path:
        return self._path('_vendor.esl')

    @property
    def combined_esl(self) -> Path:
        return self._path('_combined.esl')

    @property
    def combined_auth(self) -> Path:
        return self._path('_combined.auth')

    def generated(self) -> list[Path]:
        """Files produced by key generation, in commit order.

        The private key comes last: once it is in place the whole group is.
        """
        files = [self.crt, self.cer, self.esl, self.auth]
        if self.role == PK:
            files += [self.rm_auth]
        return files + [self.key]

    def merged(self) -> list[Path]:
        return [self.vendor_esl, self.combined_esl, self.combined_auth]

    def is_complete(self) -> bool:
        return self.key.exists() and self.crt.exists() and self.auth.exists()

    def is_inconsistent(self) -> bool:
        return self.key.exists() and not (self.crt.exists() and self.auth.exists())

    def has_combined(self) -> bool:
        return self.combined_esl.exists() and self.combined_auth.exists()


class CertificateStore:
    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def __repr__(self) -> str:
        return f'CertificateStore({str(self.directory)!r})'

    def files(self, role: Role) -> RoleFiles:
        return RoleFiles(self.directory, role)

    @property
    def fingerprint(self) -> Path:
        return self.files(PK).key

    def exists(self) -> bool:
        return self.directory.is_dir()

    def is_ours(self) -> bool:
        return self.fingerprint.is_file()

    def create(self) -> None:
        with temporary_umask(0o077):
            self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        os.chmod(self.directory, 0o700)

    def owner_guid(self, create: bool = False) -> str:
        path = self.directory / GUID_FILE
        try:
            return str(uuid.UUID(path.read_text().strip()))
        except FileNotFoundError:
            if not create:
                raise PreconditionError(f'Owner GUID {path} is missing, generate the keys first') from None

        guid = str(uuid.uuid4())
        logger.info('Generated owner GUID %s', guid)
        write_private(path, f'{guid}\n'.encode())
        return guid

    def signing_key(self) -> tuple[Path, Path]:
        files = self.files(DB)
        for path in (files.key, files.crt):
            if not path.is_file():
                raise PreconditionError(f'{path} not found, the signature database key must be generated first')
        return files.key, files.crt

    @contextlib.contextmanager
    def lock(self, blocking: bool = True) -> Iterator[None]:
        if not self.exists():
            raise PreconditionError(f'Key directory {self.directory} does not exist')
        fd = os.open(self.directory / LOCK_FILE, os.O_RDWR | os.O_CREAT | os.O_CLOEXEC, 0o600)
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | (0 if blocking else fcntl.LOCK_NB))
            except BlockingIOError:
                raise StoreLockedError(f'{self.directory} is in use by another process') from None
            yield
        finally:
            # Closing the descriptor drops the lock
            os.close(fd)

    @contextlib.contextmanager
    def staging(self, role: Role, merged: bool = False) -> Iterator[RoleFiles]:
        """Produce a group of role files in a private directory and commit them on success.

        The staging directory lives inside the store, so the commit is a
        series of renames within one filesystem. Nothing reaches the store
        unless every file of the group was produced.
        """
        self.create()
        staging = Path(tempfile.mkdtemp(prefix=f'.{role.name}-', dir=self.directory))
        try:
            staged = RoleFiles(staging, role)
            yield staged

            final = self.files(role)
            pairs = list(zip(staged.merged(), final.merged()) if merged else zip(staged.generated(), final.generated()))
            for src, _ in pairs:
                if not src.is_file():
                    raise FileNotFoundError(f'{src.name} was not produced')
            for src, dst in pairs:
                os.chmod(src, 0o600)
                os.replace(src, dst)
                logger.debug('Committed %s', dst)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
