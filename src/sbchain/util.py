# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import os
import shlex
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Union


class Style:
    bold = '\033[0;1;39m' if sys.stdout.isatty() else ''
    gray = '\033[0;38;5;245m' if sys.stdout.isatty() else ''
    red = '\033[31;1m' if sys.stdout.isatty() else ''
    yellow = '\033[33;1m' if sys.stdout.isatty() else ''
    reset = '\033[0m' if sys.stdout.isatty() else ''


def shell_join(cmd: list[Union[str, Path]]) -> str:
    # shlex.join() rejects Path objects
    return ' '.join(shlex.quote(str(x)) for x in cmd)


@contextlib.contextmanager
def temporary_umask(mask: int) -> Iterator[None]:
    # Drop <mask> bits from umask
    old = os.umask(0)
    os.umask(old | mask)
    try:
        yield
    finally:
        os.umask(old)


def write_private(path: Path, data: bytes) -> None:
    """Write data to path readable only by the owner."""
    with temporary_umask(0o077):
        path.write_bytes(data)
    os.chmod(path, 0o600)
