# SPDX-License-Identifier: LGPL-2.1-or-later

# Creation of the PK → KEK → db hierarchy.
#
# Every role gets a self-signed certificate. What links the roles is the
# authenticated variable update (.auth): the signature list of a role is
# signed with the key of its parent, PK being its own parent.

import datetime
import logging
import os
import subprocess
from pathlib import Path
from typing import Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import ChainError
from .store import PK, ROLES, ROLES_BY_NAME, CertificateStore, Role, RoleFiles
from .tools import SigListTool
from .util import write_private

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY = 3650
DEFAULT_KEYLENGTH = 4096


def generate_key_cert_pair(
    common_name: str,
    valid_days: int = DEFAULT_VALIDITY,
    keylength: int = DEFAULT_KEYLENGTH,
) -> tuple[bytes, bytes]:
    now = datetime.datetime.now(datetime.timezone.utc)

    key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=keylength,
    )
    name = x509.Name([x509.NameAttribute(x509.oid.NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=valid_days))
        .serial_number(x509.random_serial_number())
        .public_key(key.public_key())
        .add_extension(
            x509.BasicConstraints(ca=False, path_length=None),
            critical=True,
        )
        .sign(
            private_key=key,
            algorithm=hashes.SHA256(),
        )
    )

    cert_pem = cert.public_bytes(
        encoding=serialization.Encoding.PEM,
    )
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )

    return key_pem, cert_pem


def load_certificate(path: Union[str, Path]) -> x509.Certificate:
    """Load an X.509 certificate stored either as PEM or as DER."""
    data = Path(path).read_bytes()
    if b'-----BEGIN CERTIFICATE-----' in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def key_matches_certificate(key: Path, cert: Path) -> bool:
    private_key = serialization.load_pem_private_key(key.read_bytes(), password=None)
    public = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    certified = load_certificate(cert).public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return public == certified


def common_name(role: Role, prefix: Optional[str] = None) -> str:
    cn = f'{prefix} {role.common_name}' if prefix else role.common_name
    if len(cn) > 64:
        # The length of CN must not exceed 64 bytes
        cn = cn[:61] + '...'
    return cn


def generate_role(
    store: CertificateStore,
    role: Role,
    siglist: SigListTool,
    owner: str,
    valid_days: int = DEFAULT_VALIDITY,
    keylength: int = DEFAULT_KEYLENGTH,
    cn_prefix: Optional[str] = None,
) -> None:
    with store.staging(role) as staged:
        cn = common_name(role, cn_prefix)
        logger.info('Generating %s (%s)', role.name, cn)
        key_pem, cert_pem = generate_key_cert_pair(cn, valid_days=valid_days, keylength=keylength)
        write_private(staged.key, key_pem)
        write_private(staged.crt, cert_pem)
        der = x509.load_pem_x509_certificate(cert_pem).public_bytes(serialization.Encoding.DER)
        write_private(staged.cer, der)

        siglist.cert_to_esl(staged.crt, staged.esl, owner)

        # The platform key is the only one allowed to sign its own update
        parent: RoleFiles = staged if role == PK else store.files(ROLES_BY_NAME[role.parent])
        siglist.sign_esl(role.var, staged.esl, staged.auth, parent.key, parent.crt, owner)

        if role == PK:
            # Signed empty list, clears PK and puts the firmware back into setup mode
            siglist.sign_esl(role.var, os.devnull, staged.rm_auth, staged.key, staged.crt, owner)


def ensure_chain(
    store: CertificateStore,
    siglist: SigListTool,
    valid_days: int = DEFAULT_VALIDITY,
    keylength: int = DEFAULT_KEYLENGTH,
    cn_prefix: Optional[str] = None,
) -> list[Role]:
    """Create whichever of PK, KEK and db do not exist yet. Return the created roles.

    Existing roles are never regenerated: their public key may already be
    enrolled in firmware.
    """
    store.create()
    created: list[Role] = []

    with store.lock():
        owner = store.owner_guid(create=True)

        for role in ROLES:
            files = store.files(role)
            parent = ROLES_BY_NAME[role.parent]

            if files.is_inconsistent():
                raise ChainError(
                    f'{files.key} exists but {files.crt.name} or {files.auth.name} is missing, '
                    'refusing to regenerate a key that may be enrolled'
                )

            if files.is_complete():
                try:
                    matches = key_matches_certificate(files.key, files.crt)
                except ValueError as e:
                    raise ChainError(f'{files.key} or {files.crt} is unreadable: {e}') from e
                if not matches:
                    raise ChainError(f'{files.key} does not match {files.crt}')
                logger.info('%s already exists, not regenerating', role.name)
                if role != PK and parent in created:
                    logger.warning(
                        '%s was regenerated, %s is still signed by the previous %s',
                        parent.name, files.auth.name, parent.name,
                    )
                continue

            if role != PK and not store.files(parent).is_complete():
                raise ChainError(f'Cannot sign {role.name}: {parent.name} is missing')

            try:
                generate_role(store, role, siglist, owner,
                              valid_days=valid_days, keylength=keylength, cn_prefix=cn_prefix)
            except (subprocess.CalledProcessError, OSError, ValueError) as e:
                raise ChainError(f'Failed to generate {role.name}: {e}') from e

            created += [role]

    return created
