import io
import zipfile
from datetime import date

import pytest
from qrcode.constants import ERROR_CORRECT_H

from besspas import models, qr, serials
from besspas.errors import MalformedPayloadError
from besspas.normalizer import normalize_code, normalize_scanned_text


def test_batch_number_format():
    assert serials.format_batch_number(date(2026, 1, 12), 1) == 'BATCH-20260112-0001'
    assert serials.format_batch_number(date(2026, 1, 12), 12, prefix='LOT') == 'LOT-20260112-0012'
    assert serials.is_batch_number('BATCH-20260112-0001')
    assert not serials.is_batch_number('BATCH-20260112-0001-0001')


def test_next_batch_number_counts_per_day(session, batch):
    assert batch.batch_number == 'BATCH-20260112-0001'
    assert serials.next_batch_number(session, date(2026, 1, 12)) == 'BATCH-20260112-0002'
    assert serials.next_batch_number(session, date(2026, 1, 13)) == 'BATCH-20260113-0001'


def test_serial_code_format_and_range():
    assert serials.make_serial_code('BATCH-20260112-0001', 2) == 'BATCH-20260112-0001-0002'
    assert serials.is_serial_code('BATCH-20260112-0001-0002')
    with pytest.raises(ValueError):
        serials.make_serial_code('BATCH-20260112-0001', 0)
    with pytest.raises(ValueError):
        serials.make_serial_code('BATCH-20260112-0001', serials.max_batch_quantity() + 1)


def test_auth_hash_is_keyed_and_nonce_bound():
    h1 = serials.derive_auth_hash('BATCH-20260112-0001-0001', 'a' * 32, secret='s1')
    assert len(h1) == 64
    assert h1 == serials.derive_auth_hash('BATCH-20260112-0001-0001', 'a' * 32, secret='s1')
    assert h1 != serials.derive_auth_hash('BATCH-20260112-0001-0001', 'b' * 32, secret='s1')
    assert h1 != serials.derive_auth_hash('BATCH-20260112-0001-0001', 'a' * 32, secret='s2')


def test_new_unit_credentials_verify():
    creds = serials.new_unit_credentials('BATCH-20260112-0001', 7)
    assert creds['serial_code'] == 'BATCH-20260112-0001-0007'
    assert len(creds['nonce']) == 32
    unit = models.ProductUnit(**creds)
    assert serials.check_auth_hash(unit, creds['auth_hash'])
    assert serials.check_auth_hash(unit, creds['auth_hash'].upper())
    assert not serials.check_auth_hash(unit, '0' * 64)
    assert not serials.check_auth_hash(unit, None)


def test_nonces_are_unique():
    assert len({serials.generate_nonce() for _ in range(50)}) == 50


def test_qr_payload_decode():
    payload = qr.build_payload('BATCH-20260112-0001-0002', 'abc123')
    assert payload == 'BATCH-20260112-0001-0002#abc123'
    assert qr.decode(payload) == ('BATCH-20260112-0001-0002', 'abc123')


@pytest.mark.parametrize('text', [
    'BATCH-20260112-0001-0002',
    '#abc123',
    'BATCH-20260112-0001-0002#',
    'batch 1#abc123',
    None,
])
def test_qr_decode_rejects_malformed(text):
    with pytest.raises(MalformedPayloadError):
        qr.decode(text)


def test_qr_images():
    png = qr.encode_png('BATCH-20260112-0001-0001', 'f' * 64)
    assert png.startswith(b'\x89PNG')
    assert qr.encode_data_url('BATCH-20260112-0001-0001', 'f' * 64).startswith('data:image/png;base64,')
    assert '<svg' in qr.encode_svg('BATCH-20260112-0001-0001', 'f' * 64)


def test_qr_uses_high_error_correction():
    code = qr._make_qr(qr.build_payload('BATCH-20260112-0001-0001', 'f' * 64))
    assert code.error_correction == ERROR_CORRECT_H


def test_qr_archive_has_one_png_per_unit():
    data = qr.build_archive([('S-20260112-0001-0001', 'a' * 64), ('S-20260112-0001-0002', 'b' * 64)])
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        assert sorted(archive.namelist()) == ['S-20260112-0001-0001.png', 'S-20260112-0001-0002.png']


def test_normalize_code():
    assert normalize_code(' batch\u201320260112\u200b-0001 ') == 'BATCH-20260112-0001'
    assert normalize_code('BATCH-۲۰۲۶0112-0001') == 'BATCH-20260112-0001'
    assert normalize_code(None) == ''


def test_normalize_scanned_text_keeps_hash_lowercase():
    assert normalize_scanned_text(' batch-20260112-0001-0002#ABCDEF ') == 'BATCH-20260112-0001-0002#abcdef'
