# SPDX-License-Identifier: LGPL-2.1-or-later

# Wrappers around the external programs that do the actual cryptographic
# work: sbsigntools for PE binaries and efitools for signature lists.

import logging
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Optional, Union

import pefile  # type: ignore

from .errors import PreconditionError
from .util import shell_join

logger = logging.getLogger(__name__)


def find_tool(
    name: str,
    fallback: Optional[str] = None,
    tools: Sequence[Path] = (),
    msg: str = 'Tool {name} not installed!',
) -> Union[str, Path]:
    for d in tools:
        tool = Path(d) / name
        if tool.exists():
            return tool

    if shutil.which(name) is not None:
        return name

    if fallback is None:
        raise PreconditionError(msg.format(name=name))

    return fallback


def check_tools(names: Sequence[str], tools: Sequence[Path] = ()) -> None:
    missing = []
    for name in names:
        try:
            find_tool(name, tools=tools)
        except PreconditionError:
            missing += [name]
    if missing:
        raise PreconditionError(f'Required tools not installed: {", ".join(missing)}')


def run(cmd: list[Union[str, Path]]) -> None:
    logger.info('+ %s', shell_join(cmd))
    subprocess.check_call(cmd)


def has_signature_table(path: Union[str, Path]) -> bool:
    """Return whether the PE image carries a (possibly invalid) Authenticode table."""
    pe = pefile.PE(str(path), fast_load=True)
    try:
        entry = pe.OPTIONAL_HEADER.DATA_DIRECTORY[pefile.DIRECTORY_ENTRY['IMAGE_DIRECTORY_ENTRY_SECURITY']]
        return entry.VirtualAddress != 0 and entry.Size != 0
    finally:
        pe.close()


class SignTool:
    REQUIRED: tuple[str, ...] = ()

    def __init__(self, tools: Sequence[Path] = (), engine: Optional[str] = None) -> None:
        self.tools = list(tools)
        self.engine = engine

    def sign(self, input_f: Path, output_f: Path, key: Path, cert: Path) -> None:
        raise NotImplementedError()

    def is_signed(self, path: Path, cert: Path) -> bool:
        raise NotImplementedError()

    @staticmethod
    def from_string(name: str) -> type['SignTool']:
        if name == 'sbsign':
            return SbSign
        elif name == 'systemd-sbsign':
            return SystemdSbSign
        else:
            raise ValueError(f'Invalid sign tool: {name!r}')


class SbSign(SignTool):
    REQUIRED = ('sbsign', 'sbverify')

    def sign(self, input_f: Path, output_f: Path, key: Path, cert: Path) -> None:
        tool = find_tool('sbsign', tools=self.tools, msg='sbsign, required for signing, is not installed')
        cmd = [
            tool,
            '--key', key,
            '--cert', cert,
            *(['--engine', self.engine] if self.engine is not None else []),
            input_f,
            '--output', output_f,
        ]  # fmt: skip
        run(cmd)

    def is_signed(self, path: Path, cert: Path) -> bool:
        try:
            if not has_signature_table(path):
                return False
        except pefile.PEFormatError as e:
            raise ValueError(f'{path} is not a PE image: {e}') from e

        tool = find_tool('sbverify', tools=self.tools)
        cmd = [tool, '--cert', cert, path]

        logger.debug('+ %s', shell_join(cmd))
        result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        return result.returncode == 0 and 'Signature verification OK' in result.stdout


class SystemdSbSign(SbSign):
    REQUIRED = ('sbverify',)

    def sign(self, input_f: Path, output_f: Path, key: Path, cert: Path) -> None:
        tool = find_tool(
            'systemd-sbsign',
            '/usr/lib/systemd/systemd-sbsign',
            tools=self.tools,
            msg='systemd-sbsign, required for signing, is not installed',
        )
        cmd = [
            tool,
            'sign',
            '--private-key', key,
            '--certificate', cert,
            *(['--private-key-source', f'engine:{self.engine}'] if self.engine is not None else []),
            input_f,
            '--output', output_f,
        ]  # fmt: skip
        run(cmd)


class SigListTool:
    REQUIRED: tuple[str, ...] = ()

    def __init__(self, tools: Sequence[Path] = ()) -> None:
        self.tools = list(tools)

    def cert_to_esl(self, cert: Path, esl: Path, owner: str) -> None:
        raise NotImplementedError()

    def sign_esl(self, var: str, esl: Union[str, Path], auth: Path, key: Path, cert: Path, owner: str) -> None:
        raise NotImplementedError()


class EfiTools(SigListTool):
    REQUIRED = ('cert-to-efi-sig-list', 'sign-efi-sig-list')

    def cert_to_esl(self, cert: Path, esl: Path, owner: str) -> None:
        tool = find_tool('cert-to-efi-sig-list', tools=self.tools)
        run([tool, '-g', owner, cert, esl])

    def sign_esl(self, var: str, esl: Union[str, Path], auth: Path, key: Path, cert: Path, owner: str) -> None:
        tool = find_tool('sign-efi-sig-list', tools=self.tools)
        cmd = [
            tool,
            '-g', owner,
            '-k', key,
            '-c', cert,
            var, esl, auth,
        ]  # fmt: skip
        run(cmd)
