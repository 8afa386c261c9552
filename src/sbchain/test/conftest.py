# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=redefined-outer-name,wrong-import-position

import sys
from pathlib import Path

import pytest

# Make the package importable when running from the source tree
sys.path.insert(0, str(Path(__file__).parents[2]))

from fakes import TEST_KEYLENGTH, FakeSignTool, FakeSigList  # noqa: E402

from sbchain.chain import ensure_chain  # noqa: E402
from sbchain.store import CertificateStore  # noqa: E402


@pytest.fixture
def siglist():
    return FakeSigList()


@pytest.fixture
def signtool():
    return FakeSignTool()


@pytest.fixture
def store(tmp_path):
    return CertificateStore(tmp_path / 'keys')


@pytest.fixture
def chain(store, siglist):
    ensure_chain(store, siglist, keylength=TEST_KEYLENGTH)
    return store
