# SPDX-License-Identifier: LGPL-2.1-or-later

from pathlib import Path
from typing import Optional, Union


class SbchainError(Exception):
    pass


class PreconditionError(SbchainError):
    """A required tool, key, or directory is missing. Nothing was modified."""


class ChainError(SbchainError):
    pass


class StoreLockedError(SbchainError):
    pass


class SigningError(SbchainError):
    def __init__(self, path: Union[str, Path], message: str, reason: Optional[str] = None) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f'{path}: {message}' + (f' ({reason})' if reason else ''))
