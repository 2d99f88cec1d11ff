"""
QR payload codec: "{serial_code}#{auth_hash}" rendered with high error correction.
"""
import base64
import io
import re
import zipfile
from typing import Iterable, Tuple

import qrcode
import qrcode.image.svg
from qrcode.constants import ERROR_CORRECT_H

from .errors import MalformedPayloadError

SEPARATOR = '#'
SERIAL_SEGMENT_RE = re.compile(r'^[A-Z0-9-]+$')


def build_payload(serial_code: str, auth_hash: str) -> str:
    return f"{serial_code}{SEPARATOR}{auth_hash}"


def _make_qr(payload: str) -> qrcode.QRCode:
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_H,
        box_size=10,
        border=1,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    return qr


def encode_png(serial_code: str, auth_hash: str) -> bytes:
    img = _make_qr(build_payload(serial_code, auth_hash)).make_image(fill_color='black', back_color='white')
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue()


def encode_data_url(serial_code: str, auth_hash: str) -> str:
    png = encode_png(serial_code, auth_hash)
    return 'data:image/png;base64,' + base64.b64encode(png).decode('ascii')


def encode_svg(serial_code: str, auth_hash: str) -> str:
    img = _make_qr(build_payload(serial_code, auth_hash)).make_image(image_factory=qrcode.image.svg.SvgPathImage)
    return img.to_string(encoding='unicode')


def decode(scanned_text: str) -> Tuple[str, str]:
    """Split a scanned payload into (serial_code, auth_hash).

    Raises MalformedPayloadError when the separator is missing, either side
    is empty, or the serial segment has characters outside [A-Z0-9-].
    """
    if scanned_text is None or SEPARATOR not in scanned_text:
        raise MalformedPayloadError('QR payload is missing the "#" separator')
    serial_code, _, auth_hash = scanned_text.partition(SEPARATOR)
    if not serial_code or not SERIAL_SEGMENT_RE.match(serial_code):
        raise MalformedPayloadError(f'Invalid serial code segment: {serial_code!r}')
    if not auth_hash:
        raise MalformedPayloadError('QR payload has an empty authentication hash')
    return serial_code, auth_hash


def build_archive(codes: Iterable[Tuple[str, str]]) -> bytes:
    """ZIP with one <serial_code>.png per (serial_code, auth_hash) pair."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w', compression=zipfile.ZIP_DEFLATED) as archive:
        for serial_code, auth_hash in codes:
            archive.writestr(f'{serial_code}.png', encode_png(serial_code, auth_hash))
    return buf.getvalue()
