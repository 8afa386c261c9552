# SPDX-License-Identifier: LGPL-2.1-or-later

# Command line and configuration file handling.
#
# Each option is described once, as a ConfigItem. The same description is
# used to add the option to the argument parser and, if it has a config_key,
# to read it from the [Section] Key = value configuration file.

import argparse
import builtins
import configparser
import dataclasses
import inspect
import logging
import textwrap
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Callable, Optional, Union

from . import __version__
from .backup import DEFAULT_BACKUP_DIR
from .chain import DEFAULT_KEYLENGTH, DEFAULT_VALIDITY
from .hook import DEFAULT_HOOK_DIR, DEFAULT_HOOK_NAME, DEFAULT_SCRIPT
from .signing import EXCLUDED_LOADERS
from .tools import SignTool
from .util import Style
from .vendor import MICROSOFT_OWNER_GUID

logger = logging.getLogger(__name__)

# When the user does not specify a configuration file, these directories are
# searched in this order and the first file found is used.
DEFAULT_CONFIG_DIRS = ['/etc/sbchain', '/run/sbchain', '/usr/local/lib/sbchain', '/usr/lib/sbchain']
DEFAULT_CONFIG_FILE = 'sbchain.conf'

DEFAULT_KEY_DIR = Path('/usr/share/secureboot/keys')
DEFAULT_BOOT_DIR = Path('/boot')


@dataclasses.dataclass
class SbchainConfig:
    backup: bool
    backup_dir: Path
    boot_dir: Path
    cert_validity: int
    cn_prefix: Optional[str]
    esp: Optional[Path]
    exclude: list[str]
    hook_dir: Path
    hook_name: str
    hook_script: Path
    key_dir: Path
    key_length: int
    merge: bool
    signing_engine: Optional[str]
    signtool: str
    summary: bool
    tools: list[Path]
    vendor_dirs: list[Path]
    vendor_owner: str
    verb: str
    verbose: bool
    files: list[Path] = dataclasses.field(default_factory=list)

    @classmethod
    def from_namespace(cls, ns: argparse.Namespace) -> 'SbchainConfig':
        return cls(**{k: v for k, v in vars(ns).items() if k in inspect.signature(cls).parameters})

    @property
    def hook(self) -> Path:
        return self.hook_dir / self.hook_name


@dataclasses.dataclass(frozen=True)
class ConfigItem:
    @staticmethod
    def config_list_append(
        namespace: argparse.Namespace,
        dest: str,
        value: Any,
    ) -> None:
        "Append value to namespace.<dest>, after what the command line gave"

        old = getattr(namespace, dest, [])
        if old is None:
            old = []
        setattr(namespace, dest, old + value)

    @staticmethod
    def config_set_if_unset(
        namespace: argparse.Namespace,
        dest: str,
        value: Any,
    ) -> None:
        "Set namespace.<dest> to value only if it was None"

        if getattr(namespace, dest) is None:
            setattr(namespace, dest, value)

    @staticmethod
    def parse_boolean(s: str) -> bool:
        "Parse 1/true/yes/y/t/on as true and 0/false/no/n/f/off/None as false"
        s_l = s.lower()
        if s_l in {'1', 'true', 'yes', 'y', 't', 'on'}:
            return True
        if s_l in {'0', 'false', 'no', 'n', 'f', 'off'}:
            return False
        raise ValueError(f'Invalid boolean literal: {s!r}')

    # arguments for argparse.ArgumentParser.add_argument()
    name: Union[str, tuple[str, str]]
    dest: Optional[str] = None
    metavar: Optional[str] = None
    type: Optional[Callable[[str], Any]] = None
    nargs: Optional[str] = None
    action: Optional[Union[str, Callable[[str], Any], builtins.type[argparse.Action]]] = None
    default: Any = None
    version: Optional[str] = None
    choices: Optional[tuple[str, ...]] = None
    help: Optional[str] = None

    # metadata for config file parsing
    config_key: Optional[str] = None
    config_push: Callable[[argparse.Namespace, str, Any], None] = config_set_if_unset

    def _names(self) -> tuple[str, ...]:
        return self.name if isinstance(self.name, tuple) else (self.name,)

    def argparse_dest(self) -> str:
        # It'd be nice if argparse exported this, but I don't see that in the API
        if self.dest:
            return self.dest
        return self._names()[0].lstrip('-').replace('-', '_')

    def add_to(self, parser: argparse.ArgumentParser) -> None:
        kwargs = {
            key: val
            for key in dataclasses.asdict(self)
            if (key not in ('name', 'config_key', 'config_push') and (val := getattr(self, key)) is not None)
        }
        args = self._names()
        parser.add_argument(*args, **kwargs)

    def apply_config(self, namespace: argparse.Namespace, section: str, key: str, value: Any) -> None:
        assert f'{section}/{key}' == self.config_key
        dest = self.argparse_dest()

        conv: Callable[[str], Any]
        if self.action == argparse.BooleanOptionalAction:
            # The options are called --foo and --no-foo, and no argument is
            # parsed. But in the config file, we have Foo=yes or Foo=no.
            conv = self.parse_boolean
        elif self.type:
            conv = self.type
        else:
            conv = lambda s: s  # noqa: E731

        # Repeatable options take a space-separated list in the config file
        if self.action == 'append':
            value = [conv(v) for v in value.split()]
        else:
            value = conv(value)

        self.config_push(namespace, dest, value)

    def config_example(self) -> tuple[Optional[str], Optional[str], Optional[str]]:
        if not self.config_key:
            return None, None, None
        section_name, key = self.config_key.split('/', 1)
        if self.choices:
            value = '|'.join(self.choices)
        else:
            value = self.metavar or self.argparse_dest().upper()
        return (section_name, key, value)


VERBS = ('provision', 'genkey', 'merge', 'sign', 'resign', 'install-hook', 'export', 'cleanup')

CONFIG_ITEMS = [
    ConfigItem(
        'positional',
        metavar='VERB',
        nargs='*',
        help=argparse.SUPPRESS,
    ),
    ConfigItem(
        '--version',
        action='version',
        version=f'sbchain {__version__}',
    ),
    ConfigItem(
        '--summary',
        help='print parsed config and exit',
        action='store_true',
    ),
    ConfigItem(
        ('--verbose', '-v'),
        help='log every step',
        action='store_true',
    ),
    ConfigItem(
        ('--config', '-c'),
        metavar='PATH',
        type=Path,
        help='configuration file',
    ),
    ConfigItem(
        '--tools',
        type=Path,
        action='append',
        help='directories to search for external tools',
    ),
    ConfigItem(
        '--key-dir',
        metavar='DIR',
        type=Path,
        help=f'directory holding the keys [{DEFAULT_KEY_DIR}]',
        config_key='Keys/Directory',
    ),
    ConfigItem(
        '--cert-validity',
        metavar='DAYS',
        type=int,
        help=f'period of validity of generated certificates [{DEFAULT_VALIDITY}]',
        config_key='Keys/Validity',
    ),
    ConfigItem(
        '--key-length',
        metavar='BITS',
        type=int,
        help=f'RSA key length of generated keys [{DEFAULT_KEYLENGTH}]',
        config_key='Keys/KeyLength',
    ),
    ConfigItem(
        '--cn-prefix',
        metavar='TEXT',
        help='prefix for the common name of generated certificates',
        config_key='Keys/CommonNamePrefix',
    ),
    ConfigItem(
        '--vendor-dir',
        dest='vendor_dirs',
        metavar='DIR',
        type=Path,
        action='append',
        help='directory to search for vendor certificates, before the built-in ones',
        config_key='Vendor/Directories',
        config_push=ConfigItem.config_list_append,
    ),
    ConfigItem(
        '--vendor-owner',
        metavar='GUID',
        help='owner GUID of vendor signature list entries',
        config_key='Vendor/Owner',
    ),
    ConfigItem(
        '--merge',
        action=argparse.BooleanOptionalAction,
        help='merge vendor certificates into KEK and db [yes]',
        config_key='Vendor/Merge',
    ),
    ConfigItem(
        '--signtool',
        choices=('sbsign', 'systemd-sbsign'),
        help='tool used to sign boot artifacts [sbsign]',
        config_key='Signing/SignTool',
    ),
    ConfigItem(
        '--signing-engine',
        metavar='ENGINE',
        help='OpenSSL engine holding the db key',
        config_key='Signing/SigningEngine',
    ),
    ConfigItem(
        '--backup',
        action=argparse.BooleanOptionalAction,
        help='back up artifacts before signing them [yes]',
        config_key='Signing/Backup',
    ),
    ConfigItem(
        '--backup-dir',
        metavar='DIR',
        type=Path,
        help=f'where backups are kept [{DEFAULT_BACKUP_DIR}]',
        config_key='Signing/BackupDirectory',
    ),
    ConfigItem(
        '--boot-dir',
        metavar='DIR',
        type=Path,
        help=f'directory with the kernel images [{DEFAULT_BOOT_DIR}]',
        config_key='Signing/BootDirectory',
    ),
    ConfigItem(
        '--esp',
        metavar='DIR',
        type=Path,
        help='mount point of the EFI system partition [autodetected]',
        config_key='Signing/ESP',
    ),
    ConfigItem(
        '--exclude',
        metavar='NAME',
        action='append',
        help=f'EFI binary name never to sign, in addition to {", ".join(EXCLUDED_LOADERS)}',
        config_key='Signing/Exclude',
        config_push=ConfigItem.config_list_append,
    ),
    ConfigItem(
        '--hook-dir',
        metavar='DIR',
        type=Path,
        help=f'pacman hook directory [{DEFAULT_HOOK_DIR}]',
        config_key='Hook/Directory',
    ),
    ConfigItem(
        '--hook-name',
        metavar='NAME',
        help=f'file name of the pacman hook [{DEFAULT_HOOK_NAME}]',
        config_key='Hook/Name',
    ),
    ConfigItem(
        '--hook-script',
        metavar='PATH',
        type=Path,
        help=f're-signing script run by the hook [{DEFAULT_SCRIPT}]',
        config_key='Hook/Script',
    ),
]

CONFIGFILE_ITEMS = {item.config_key: item for item in CONFIG_ITEMS if item.config_key}


def apply_config(namespace: argparse.Namespace, filename: Union[str, Path, None] = None) -> None:
    if filename is None:
        if namespace.config:
            # Config set by the user, use that.
            filename = namespace.config
            logger.info('Using config file: %s', filename)
        else:
            # Try to look for a config file then use the first one found.
            for config_dir in DEFAULT_CONFIG_DIRS:
                filename = Path(config_dir) / DEFAULT_CONFIG_FILE
                if filename.is_file():
                    # Found a config file, use it.
                    logger.info('Using found config file: %s', filename)
                    break
            else:
                # No config file specified or found, nothing to do.
                return

    cp = configparser.ConfigParser(
        comment_prefixes='#',
        inline_comment_prefixes='#',
        delimiters='=',
        empty_lines_in_values=False,
        interpolation=None,
        strict=False,
    )
    # Do not make keys lowercase
    cp.optionxform = lambda option: option  # type: ignore

    # The API is not great.
    read = cp.read(filename)
    if not read:
        raise OSError(f'Failed to read {filename}')

    for section_name, section in cp.items():
        for key, value in section.items():
            if item := CONFIGFILE_ITEMS.get(f'{section_name}/{key}'):
                item.apply_config(namespace, section_name, key, value)
            else:
                logger.warning('Unknown config setting [%s] %s=', section_name, key)


def config_example() -> Iterator[str]:
    prev_section: Optional[str] = None
    for item in CONFIG_ITEMS:
        section, key, value = item.config_example()
        if section:
            if prev_section != section:
                if prev_section:
                    yield ''
                yield f'[{section}]'
                prev_section = section
            yield f'{key} = {value}'


def create_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description='Provision a Secure Boot key hierarchy and keep boot artifacts signed',
        usage='\n  '
        + textwrap.dedent("""\
          sbchain {b}provision{e} [options…]
            sbchain {b}genkey{e}|{b}merge{e}|{b}export{e}|{b}install-hook{e} [options…]
            sbchain {b}sign{e} [FILE…] [options…]
            sbchain {b}resign{e} [options…]
            sbchain {b}cleanup{e} [options…]
        """).format(b=Style.bold, e=Style.reset),
        allow_abbrev=False,
        epilog='\n  '.join(('config file:', *config_example())),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    for item in CONFIG_ITEMS:
        item.add_to(p)

    # Suppress printing of usage synopsis on errors
    p.error = lambda message: p.exit(2, f'{p.prog}: error: {message}\n')  # type: ignore

    return p


def finalize_options(opts: argparse.Namespace) -> None:
    if not opts.positional:
        raise ValueError(f'A verb must be specified, one of: {", ".join(VERBS)}')

    opts.verb, *rest = opts.positional
    if opts.verb not in VERBS:
        raise ValueError(f'Unknown verb {opts.verb!r}')
    if opts.verb == 'sign':
        opts.files = [Path(f) for f in rest]
    elif rest:
        raise ValueError(f'{opts.verb} takes no arguments')

    if opts.key_dir is None:
        opts.key_dir = DEFAULT_KEY_DIR
    if opts.cert_validity is None:
        opts.cert_validity = DEFAULT_VALIDITY
    if opts.key_length is None:
        opts.key_length = DEFAULT_KEYLENGTH
    if opts.vendor_dirs is None:
        opts.vendor_dirs = []
    if opts.vendor_owner is None:
        opts.vendor_owner = MICROSOFT_OWNER_GUID
    if opts.merge is None:
        opts.merge = True

    if opts.signtool is None:
        opts.signtool = 'sbsign'
    # Raises on an unknown name
    SignTool.from_string(opts.signtool)

    if opts.backup is None:
        opts.backup = True
    if opts.backup_dir is None:
        opts.backup_dir = DEFAULT_BACKUP_DIR
    if opts.boot_dir is None:
        opts.boot_dir = DEFAULT_BOOT_DIR
    opts.exclude = [*EXCLUDED_LOADERS, *(opts.exclude or [])]

    if opts.hook_dir is None:
        opts.hook_dir = DEFAULT_HOOK_DIR
    if opts.hook_name is None:
        opts.hook_name = DEFAULT_HOOK_NAME
    if opts.hook_script is None:
        opts.hook_script = DEFAULT_SCRIPT
    if opts.tools is None:
        opts.tools = []

    if opts.key_length < 2048:
        raise ValueError(f'--key-length={opts.key_length} is too short, use at least 2048 bits')
    if opts.cert_validity <= 0:
        raise ValueError('--cert-validity= must be positive')


def parse_args(args: Optional[list[str]] = None) -> argparse.Namespace:
    opts = create_parser().parse_args(args)
    apply_config(opts)
    finalize_options(opts)
    return opts
