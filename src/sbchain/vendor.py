# SPDX-License-Identifier: LGPL-2.1-or-later

# Co-existence with a vendor trust root (in practice: Microsoft).
#
# The vendor certificates are appended to our own KEK and db signature lists
# in separate *_combined files. The local-only files are left alone, so
# vendor trust can be dropped later without touching our keys.

import dataclasses
import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization

from .chain import load_certificate
from .errors import ChainError
from .store import DB, KEK, ROLES_BY_NAME, CertificateStore, Role, RoleFiles
from .tools import SigListTool
from .util import write_private

logger = logging.getLogger(__name__)

# Owner GUID Microsoft uses for its entries in KEK and db
MICROSOFT_OWNER_GUID = '77fa9abd-0359-4d32-bd60-28f4e78f784b'

DEFAULT_VENDOR_DIRS = (
    '/etc/secureboot/vendor',
    '/usr/local/share/secureboot/vendor',
    '/usr/share/secureboot/vendor',
)

# Searched in this order within each directory
VENDOR_CERTIFICATES = {
    'KEK': (
        'MicCorKEKCA2011_2011-06-24.crt',
        'MicrosoftCorporationKEKCA2011.pem',
        'MS_KEK.crt',
    ),
    'db': (
        'MicWinProPCA2011_2011-10-19.crt',
        'MicrosoftWindowsProductionPCA2011.pem',
        'MS_DB.crt',
    ),
}  # fmt: skip

MERGE_ROLES = (KEK, DB)


@dataclasses.dataclass(frozen=True)
class VendorCertificate:
    role: Role
    path: Path


def candidate_dirs(store: CertificateStore, extra: Sequence[Path] = ()) -> list[Path]:
    return [
        *(Path(d) for d in extra),
        store.directory / 'vendor',
        store.directory,
        *(Path(d) for d in DEFAULT_VENDOR_DIRS),
    ]


def locate_vendor_certificate(role: Role, dirs: Sequence[Path]) -> Optional[VendorCertificate]:
    for d in dirs:
        for name in VENDOR_CERTIFICATES[role.name]:
            path = Path(d) / name
            if path.is_file():
                logger.debug('Found vendor %s certificate %s', role.name, path)
                return VendorCertificate(role, path)
    return None


def locate_vendor_certificates(dirs: Sequence[Path]) -> dict[str, Optional[VendorCertificate]]:
    return {role.name: locate_vendor_certificate(role, dirs) for role in MERGE_ROLES}


def merge(
    staged: RoleFiles,
    local_esl: Path,
    vendor: VendorCertificate,
    parent: RoleFiles,
    siglist: SigListTool,
    owner: str,
    vendor_owner: str = MICROSOFT_OWNER_GUID,
) -> None:
    """Append the vendor certificate to local_esl and sign the result with parent.

    The combined list is the local list followed by the vendor list,
    byte for byte. Duplicates are not looked for.
    """
    # The vendor publishes DER, cert-to-efi-sig-list wants PEM
    pem = staged.directory / 'vendor.crt'
    write_private(pem, load_certificate(vendor.path).public_bytes(serialization.Encoding.PEM))
    siglist.cert_to_esl(pem, staged.vendor_esl, vendor_owner)

    write_private(staged.combined_esl, local_esl.read_bytes() + staged.vendor_esl.read_bytes())
    siglist.sign_esl(staged.role.var, staged.combined_esl, staged.combined_auth, parent.key, parent.crt, owner)


def merge_vendor_certificates(
    store: CertificateStore,
    siglist: SigListTool,
    vendor_dirs: Sequence[Path] = (),
    vendor_owner: str = MICROSOFT_OWNER_GUID,
) -> dict[str, Optional[Path]]:
    """Produce {KEK,db}_combined.{esl,auth} for every vendor certificate found.

    Returns the combined .auth per role, None where no vendor certificate was found.
    """
    dirs = candidate_dirs(store, vendor_dirs)
    result: dict[str, Optional[Path]] = {}

    with store.lock():
        owner = store.owner_guid()

        for role in MERGE_ROLES:
            files = store.files(role)
            parent = store.files(ROLES_BY_NAME[role.parent])

            if files.has_combined():
                logger.info('%s already exists, not merging again', files.combined_auth.name)
                result[role.name] = files.combined_auth
                continue

            for needed in (files, parent):
                if not needed.is_complete():
                    raise ChainError(f'Cannot merge into {role.name}: {needed.role.name} has not been generated')

            vendor = locate_vendor_certificate(role, dirs)
            if vendor is None:
                logger.warning(
                    'No vendor %s certificate found in %s; binaries signed only by the vendor '
                    '(e.g. another OS loader) will not boot once our keys are enrolled',
                    role.name, ', '.join(str(d) for d in dirs),
                )
                result[role.name] = None
                continue

            logger.info('Merging %s into %s', vendor.path, files.combined_esl.name)
            try:
                with store.staging(role, merged=True) as staged:
                    merge(staged, files.esl, vendor, parent, siglist, owner, vendor_owner=vendor_owner)
            except (subprocess.CalledProcessError, OSError, ValueError) as e:
                raise ChainError(f'Failed to merge {vendor.path} into {role.name}: {e}') from e

            result[role.name] = files.combined_auth

    return result
