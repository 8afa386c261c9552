# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import pprint
import sys
from typing import Optional

from .backup import BackupManager
from .chain import ensure_chain
from .cleanup import cleanup
from .config import SbchainConfig, parse_args
from .errors import SbchainError
from .esp import enrollment_instructions, export_enrollment_files, find_esp
from .hook import install_hook, resign
from .signing import EXCLUDED_LOADERS, sign_boot_artifacts
from .store import CertificateStore
from .tools import EfiTools, SignTool, check_tools
from .vendor import merge_vendor_certificates

logger = logging.getLogger('sbchain')


def sign_tool(opts: SbchainConfig) -> SignTool:
    return SignTool.from_string(opts.signtool)(opts.tools, engine=opts.signing_engine)


def backups(opts: SbchainConfig) -> Optional[BackupManager]:
    return BackupManager(opts.backup_dir) if opts.backup else None


def hook_args(opts: SbchainConfig) -> list[str]:
    """Options the re-signing script passes on, so it signs the way we do."""
    args = [
        f'--key-dir={opts.key_dir}',
        f'--boot-dir={opts.boot_dir}',
        f'--signtool={opts.signtool}',
        f'--backup-dir={opts.backup_dir}',
        '--backup' if opts.backup else '--no-backup',
    ]
    if opts.esp is not None:
        args += [f'--esp={opts.esp}']
    if opts.signing_engine is not None:
        args += [f'--signing-engine={opts.signing_engine}']
    args += [f'--tools={d}' for d in opts.tools]
    args += [f'--exclude={name}' for name in opts.exclude if name not in EXCLUDED_LOADERS]
    return args


def generate(opts: SbchainConfig, store: CertificateStore) -> None:
    created = ensure_chain(
        store,
        EfiTools(opts.tools),
        valid_days=opts.cert_validity,
        keylength=opts.key_length,
        cn_prefix=opts.cn_prefix,
    )
    if created:
        logger.info('Generated %s', ', '.join(role.name for role in created))


def merge(opts: SbchainConfig, store: CertificateStore) -> None:
    merge_vendor_certificates(store, EfiTools(opts.tools), opts.vendor_dirs, opts.vendor_owner)


def export(opts: SbchainConfig, store: CertificateStore) -> None:
    esp = find_esp([opts.esp] if opts.esp else [])
    export_enrollment_files(store, esp, BackupManager(opts.backup_dir))
    print(enrollment_instructions(store, esp))


def sign(opts: SbchainConfig, store: CertificateStore) -> None:
    tool = sign_tool(opts)
    check_tools(tool.REQUIRED, opts.tools)
    if opts.files:
        sign_boot_artifacts(store, tool, opts.boot_dir, None,
                            exclude=opts.exclude, backups=backups(opts), paths=opts.files)
    else:
        esp = find_esp([opts.esp] if opts.esp else [])
        sign_boot_artifacts(store, tool, opts.boot_dir, esp, exclude=opts.exclude, backups=backups(opts))


def resign_hook(opts: SbchainConfig, store: CertificateStore) -> None:
    tool = sign_tool(opts)
    check_tools(tool.REQUIRED, opts.tools)
    esp = find_esp([opts.esp] if opts.esp else [])
    resign(store, tool, opts.boot_dir, esp, exclude=opts.exclude, backups=backups(opts))


def hook(opts: SbchainConfig, store: CertificateStore) -> None:
    install_hook(opts.hook, opts.hook_script, hook_args(opts), BackupManager(opts.backup_dir))


def remove(opts: SbchainConfig, store: CertificateStore) -> None:
    cleanup(store, opts.hook, opts.hook_script, BackupManager(opts.backup_dir))


def provision(opts: SbchainConfig, store: CertificateStore) -> None:
    tool = sign_tool(opts)
    # Fail before anything is written
    check_tools((*EfiTools.REQUIRED, *tool.REQUIRED), opts.tools)
    esp = find_esp([opts.esp] if opts.esp else [])

    generate(opts, store)
    if opts.merge:
        merge(opts, store)
    sign_boot_artifacts(store, tool, opts.boot_dir, esp, exclude=opts.exclude, backups=backups(opts))
    export_enrollment_files(store, esp, BackupManager(opts.backup_dir))
    hook(opts, store)

    print(enrollment_instructions(store, esp))


VERB_FUNCTIONS = {
    'provision': provision,
    'genkey': generate,
    'merge': merge,
    'sign': sign,
    'resign': resign_hook,
    'install-hook': hook,
    'export': export,
    'cleanup': remove,
}


def main() -> None:
    logging.basicConfig(stream=sys.stderr, level=logging.INFO, format='%(message)s')

    try:
        opts = SbchainConfig.from_namespace(parse_args())
    except (ValueError, OSError) as e:
        sys.exit(f'sbchain: error: {e}')

    if opts.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if opts.summary:
        pprint.pprint(vars(opts))
        return

    store = CertificateStore(opts.key_dir)
    try:
        VERB_FUNCTIONS[opts.verb](opts, store)
    except (SbchainError, OSError) as e:
        logger.error('error: %s', e)
        sys.exit(1)


if __name__ == '__main__':
    main()
