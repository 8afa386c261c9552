#!/usr/bin/env python3
# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=redefined-outer-name

import json
import logging
import sys
import uuid
from pathlib import Path

try:
    import pytest
except ImportError as e:
    print(str(e), file=sys.stderr)
    sys.exit(77)

from fakes import auth_payload, verify_auth, write_vendor_cert

from sbchain import vendor
from sbchain.errors import ChainError
from sbchain.store import DB, KEK, PK, CertificateStore


@pytest.fixture
def vendor_dir(tmp_path):
    d = tmp_path / 'vendor'
    write_vendor_cert(d / 'MicCorKEKCA2011_2011-06-24.crt', 'Vendor KEK CA')
    write_vendor_cert(d / 'MicWinProPCA2011_2011-10-19.crt', 'Vendor PCA')
    return d


def test_microsoft_owner_guid():
    assert uuid.UUID(vendor.MICROSOFT_OWNER_GUID)
    assert vendor.MICROSOFT_OWNER_GUID == '77fa9abd-0359-4d32-bd60-28f4e78f784b'


def test_candidate_dirs(tmp_path):
    store = CertificateStore(tmp_path / 'keys')
    dirs = vendor.candidate_dirs(store, [tmp_path / 'x'])
    assert dirs[:3] == [tmp_path / 'x', store.directory / 'vendor', store.directory]
    assert dirs[3:] == [Path(d) for d in vendor.DEFAULT_VENDOR_DIRS]


def test_locate_vendor_certificate_order(tmp_path):
    first = tmp_path / 'first'
    second = tmp_path / 'second'
    write_vendor_cert(second / 'MS_KEK.crt')
    assert vendor.locate_vendor_certificate(KEK, [first, second]).path == second / 'MS_KEK.crt'

    write_vendor_cert(first / 'MS_KEK.crt')
    assert vendor.locate_vendor_certificate(KEK, [first, second]).path == first / 'MS_KEK.crt'

    # Within one directory, the name Microsoft publishes wins
    write_vendor_cert(first / 'MicCorKEKCA2011_2011-06-24.crt')
    assert vendor.locate_vendor_certificate(KEK, [first, second]).path.name == 'MicCorKEKCA2011_2011-06-24.crt'


def test_locate_vendor_certificate_missing(tmp_path):
    assert vendor.locate_vendor_certificate(DB, [tmp_path]) is None
    found = vendor.locate_vendor_certificates([tmp_path])
    assert found == {'KEK': None, 'db': None}


def test_merge(chain, siglist, vendor_dir):
    local = {role.name: chain.files(role).esl.read_bytes() for role in (KEK, DB)}
    auth = {role.name: chain.files(role).auth.read_bytes() for role in (KEK, DB)}

    result = vendor.merge_vendor_certificates(chain, siglist, [vendor_dir])

    assert result == {'KEK': chain.files(KEK).combined_auth, 'db': chain.files(DB).combined_auth}

    for role in (KEK, DB):
        files = chain.files(role)
        # The local-only files are untouched
        assert files.esl.read_bytes() == local[role.name]
        assert files.auth.read_bytes() == auth[role.name]

        combined = files.combined_esl.read_bytes()
        vendor_esl = files.vendor_esl.read_bytes()
        assert len(combined) == len(local[role.name]) + len(vendor_esl)
        assert combined == local[role.name] + vendor_esl
        assert vendor_esl[:16] == uuid.UUID(vendor.MICROSOFT_OWNER_GUID).bytes_le
        assert auth_payload(files.combined_auth) == combined

    assert verify_auth(chain.files(KEK).combined_auth, chain.files(PK).crt)
    assert verify_auth(chain.files(DB).combined_auth, chain.files(KEK).crt)
    assert json.loads(chain.files(DB).combined_auth.read_text())['owner'] == chain.owner_guid()

    # No scratch files left in the store
    assert not (chain.directory / 'vendor.crt').exists()


def test_merge_custom_owner(chain, siglist, vendor_dir):
    owner = '11111111-2222-3333-4444-555555555555'
    vendor.merge_vendor_certificates(chain, siglist, [vendor_dir], vendor_owner=owner)
    assert chain.files(KEK).vendor_esl.read_bytes()[:16] == uuid.UUID(owner).bytes_le


def test_merge_pem_input(chain, siglist, tmp_path):
    d = tmp_path / 'pem'
    write_vendor_cert(d / 'MicrosoftCorporationKEKCA2011.pem', der=False)
    result = vendor.merge_vendor_certificates(chain, siglist, [d])
    assert result['KEK'] == chain.files(KEK).combined_auth
    assert chain.files(KEK).has_combined()


def test_merge_idempotent(chain, siglist, vendor_dir):
    vendor.merge_vendor_certificates(chain, siglist, [vendor_dir])
    before = {p: p.read_bytes() for role in (KEK, DB) for p in chain.files(role).merged()}
    siglist.calls.clear()

    vendor.merge_vendor_certificates(chain, siglist, [vendor_dir])

    assert siglist.calls == []
    assert {p: p.read_bytes() for p in before} == before


def test_merge_keeps_duplicates(chain, siglist, tmp_path):
    # Our own db certificate offered as the vendor certificate
    d = tmp_path / 'dup'
    d.mkdir()
    (d / 'MS_DB.crt').write_bytes(chain.files(DB).cer.read_bytes())

    vendor.merge_vendor_certificates(chain, siglist, [d])

    files = chain.files(DB)
    local = files.esl.read_bytes()
    combined = files.combined_esl.read_bytes()
    assert len(combined) == len(local) + len(files.vendor_esl.read_bytes())
    der = files.cer.read_bytes()
    assert combined.count(der) == 2


def test_merge_missing_vendor(chain, siglist, tmp_path, caplog, monkeypatch):
    monkeypatch.setattr(vendor, 'DEFAULT_VENDOR_DIRS', ())
    empty = tmp_path / 'empty'
    empty.mkdir()

    with caplog.at_level(logging.WARNING):
        result = vendor.merge_vendor_certificates(chain, siglist, [empty])

    assert result == {'KEK': None, 'db': None}
    assert 'No vendor KEK certificate found' in caplog.text
    assert not chain.files(KEK).has_combined()
    assert not chain.files(DB).vendor_esl.exists()


def test_merge_requires_chain(store, siglist, vendor_dir):
    store.create()
    store.owner_guid(create=True)
    with pytest.raises(ChainError, match='has not been generated'):
        vendor.merge_vendor_certificates(store, siglist, [vendor_dir])


def test_merge_failure(chain, siglist, vendor_dir):
    siglist.fail_on = {'db'}
    with pytest.raises(ChainError, match='db'):
        vendor.merge_vendor_certificates(chain, siglist, [vendor_dir])

    assert chain.files(KEK).has_combined()
    for path in chain.files(DB).merged():
        assert not path.exists()


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv))
