"""
Serial codes, batch numbers and per-unit authentication hashes.

batch_number: {PREFIX}-{YYYYMMDD}-{NNNN}     e.g. BATCH-20260112-0001
serial_code:  {batch_number}-{NNNN}          e.g. BATCH-20260112-0001-0002
"""
import hashlib
import hmac
import re
import secrets
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from . import config, models

SEQUENCE_WIDTH = 4

BATCH_NUMBER_RE = re.compile(r'^[A-Z0-9]+-\d{8}-\d{4,}$')
SERIAL_CODE_RE = re.compile(r'^[A-Z0-9]+-\d{8}-\d{4,}-\d{%d}$' % config.SERIAL_WIDTH)


def format_batch_number(day: date, counter: int, prefix: Optional[str] = None) -> str:
    return f"{prefix or config.BATCH_PREFIX}-{day.strftime('%Y%m%d')}-{counter:0{SEQUENCE_WIDTH}d}"


def next_batch_number(session: Session, day: date, prefix: Optional[str] = None) -> str:
    """Next free batch number for the given day.

    The counter is shared by all manufacturers so that batch numbers stay
    globally unique; the unique index on batch_number backs this up.
    """
    stem = f"{prefix or config.BATCH_PREFIX}-{day.strftime('%Y%m%d')}-"
    rows = (
        session.query(models.ProductionBatch.batch_number)
        .filter(models.ProductionBatch.batch_number.like(stem + '%'))
        .all()
    )
    highest = 0
    for (number,) in rows:
        tail = number[len(stem):]
        if tail.isdigit():
            highest = max(highest, int(tail))
    return format_batch_number(day, highest + 1, prefix=prefix)


def make_serial_code(batch_number: str, sequence: int) -> str:
    if sequence < 1:
        raise ValueError('sequence is 1-based')
    if sequence >= 10 ** config.SERIAL_WIDTH:
        raise ValueError(f'sequence {sequence} does not fit in {config.SERIAL_WIDTH} digits')
    return f"{batch_number}-{sequence:0{config.SERIAL_WIDTH}d}"


def max_batch_quantity() -> int:
    return 10 ** config.SERIAL_WIDTH - 1


def generate_nonce() -> str:
    return secrets.token_hex(16)


def derive_auth_hash(serial_code: str, nonce: str, secret: Optional[str] = None) -> str:
    """HMAC-SHA256 over serial and nonce, keyed by the server-side QR secret."""
    key = (secret if secret is not None else config.QR_SECRET).encode('utf-8')
    msg = f"{serial_code}:{nonce}".encode('utf-8')
    return hmac.new(key, msg, hashlib.sha256).hexdigest()


def new_unit_credentials(batch_number: str, sequence: int) -> dict:
    serial = make_serial_code(batch_number, sequence)
    nonce = generate_nonce()
    return {
        'serial_code': serial,
        'nonce': nonce,
        'auth_hash': derive_auth_hash(serial, nonce),
    }


def check_auth_hash(unit: models.ProductUnit, presented: str) -> bool:
    expected = derive_auth_hash(unit.serial_code, unit.nonce)
    return hmac.compare_digest(expected, (presented or '').lower())


def is_batch_number(code: str) -> bool:
    return bool(BATCH_NUMBER_RE.match(code or ''))


def is_serial_code(code: str) -> bool:
    return bool(SERIAL_CODE_RE.match(code or ''))
