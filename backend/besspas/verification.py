"""
Verification resolver: answers "is this code genuine?" for units and batches.

Every call records exactly one ScanRecord (Valid, Fake or Duplicate) before
returning, so repeated scans stay observable. Unknown codes are an ordinary
verified=False result, not an error.
"""
import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from . import config, crud, models, qr, serials
from .errors import MalformedPayloadError
from .normalizer import normalize_scanned_text
from .security import Actor

logger = logging.getLogger(__name__)


def _record_scan(session: Session, serial_code: str, result: str, actor: Optional[Actor], unit: Optional[models.ProductUnit] = None, now=None) -> models.ScanRecord:
    scan = models.ScanRecord(
        serial_code=(serial_code or '')[:255],
        item_id=unit.id if unit else None,
        scan_result=result,
        scanning_user_id=actor.user_id if actor else None,
        scan_time=now or models.utcnow(),
    )
    session.add(scan)
    session.commit()
    session.refresh(scan)
    if result != models.SCAN_VALID:
        logger.warning('scan %s for %r by user %s', result, serial_code, scan.scanning_user_id)
    return scan


def _is_expired(expiry_date: Optional[date], today: Optional[date] = None) -> bool:
    if expiry_date is None:
        return False
    return expiry_date < (today or models.utcnow().date())


def _sold_at(session: Session, unit: models.ProductUnit):
    entry = (
        session.query(models.LedgerEntry)
        .filter(models.LedgerEntry.item_id == unit.id, models.LedgerEntry.action == models.ACTION_SOLD)
        .order_by(models.LedgerEntry.sequence.desc())
        .first()
    )
    return entry.created_at if entry else None


def detect_duplicate(session: Session, unit: models.ProductUnit, actor: Optional[Actor], now) -> Optional[str]:
    """Return a warning when this scan looks like a copied QR image, else None.

    A sold unit scanned by anyone but its holder is a duplicate. When the
    buyer is unknown, the first context to scan after the sale owns it, and a
    different context scanning after the grace window is a duplicate. Independent
    of status, a burst of valid scans inside the window is a duplicate too.
    """
    scanner_id = actor.user_id if actor else None
    if unit.status == models.UNIT_SOLD:
        if unit.holder_id is not None:
            if scanner_id != unit.holder_id:
                return 'Unit already sold to another customer - potential counterfeit copy'
        else:
            sold_at = _sold_at(session, unit)
            qs = session.query(models.ScanRecord).filter(
                models.ScanRecord.serial_code == unit.serial_code,
                models.ScanRecord.scan_result == models.SCAN_VALID,
            )
            if sold_at is not None:
                qs = qs.filter(models.ScanRecord.scan_time >= sold_at)
            first = qs.order_by(models.ScanRecord.scan_time.asc(), models.ScanRecord.id.asc()).first()
            cutoff = now - timedelta(minutes=config.DUPLICATE_GRACE_MINUTES)
            if first is not None and first.scanning_user_id != scanner_id and first.scan_time <= cutoff:
                return 'Unit already verified by another owner after sale - potential counterfeit copy'

    window_start = now - timedelta(hours=config.DUPLICATE_SCAN_WINDOW_HOURS)
    recent_valid = (
        session.query(models.ScanRecord)
        .filter(
            models.ScanRecord.serial_code == unit.serial_code,
            models.ScanRecord.scan_result == models.SCAN_VALID,
            models.ScanRecord.scan_time > window_start,
        )
        .count()
    )
    if recent_valid > config.DUPLICATE_SCAN_LIMIT:
        return 'Multiple scans detected - potential counterfeit'
    return None


def _failure(code: str, message: str, is_batch: bool = False, status: str = 'fake', **extra) -> dict:
    out = {
        'verified': False,
        'is_batch': is_batch,
        'status': status,
        'scan_result': models.SCAN_FAKE,
        'serial_code': code,
        'error': message,
        'hint': message,
        'verified_at': models.utcnow().isoformat() + 'Z',
    }
    out.update(extra)
    return out


def verify_code(session: Session, raw_code: str, actor: Optional[Actor] = None) -> dict:
    """Resolve a typed batch number, a typed serial code or a scanned
    "serial#hash" QR payload."""
    text = normalize_scanned_text(raw_code)
    now = models.utcnow()

    if not text:
        _record_scan(session, '', models.SCAN_FAKE, actor, now=now)
        return _failure('', 'Serial code is required')

    presented_hash = None
    if qr.SEPARATOR in text:
        try:
            code, presented_hash = qr.decode(text)
        except MalformedPayloadError as exc:
            _record_scan(session, text.split(qr.SEPARATOR, 1)[0] or text, models.SCAN_FAKE, actor, now=now)
            return _failure(text, exc.message)
    else:
        code = text

    if presented_hash is None and serials.is_batch_number(code):
        return _verify_batch(session, code, actor, now)
    return _verify_unit(session, code, presented_hash, actor, now)


def _verify_batch(session: Session, batch_number: str, actor: Optional[Actor], now) -> dict:
    batch = crud.get_batch_by_number(session, batch_number)
    if not batch:
        _record_scan(session, batch_number, models.SCAN_FAKE, actor, now=now)
        return _failure(batch_number, 'Batch not found in database', is_batch=True)

    _record_scan(session, batch_number, models.SCAN_VALID, actor, now=now)
    counts = crud.batch_status_counts(session, batch.id)
    sample = batch.units[0].serial_code if batch.units else None
    product = batch.product
    expired = _is_expired(batch.expiry_date, now.date())
    recall = crud.get_active_recall(session, batch.id)
    return {
        'verified': True,
        'is_batch': True,
        'scan_result': models.SCAN_VALID,
        'status': 'recalled' if recall else ('expired' if expired else 'authentic'),
        'message': f'Batch {batch.batch_number} is registered with {sum(counts.values())} units',
        'product': {
            'batch_number': batch.batch_number,
            'name': product.name if product else None,
            'category': product.category if product else None,
            'manufacturer': batch.manufacturer.public_name if batch.manufacturer else None,
            'total_items': sum(counts.values()),
            'status_counts': counts,
            'batch_status': batch.status,
            'sample_serial': sample,
            'manufacturing_date': batch.manufacturing_date.isoformat(),
            'expiry_date': batch.expiry_date.isoformat() if batch.expiry_date else None,
            'is_expired': expired,
        },
        'recall': _recall_dict(recall),
        'verified_at': now.isoformat() + 'Z',
    }


def _recall_dict(recall: Optional[models.Recall]) -> Optional[dict]:
    if not recall:
        return None
    return {
        'recall_id': recall.id,
        'reason': recall.reason,
        'recall_date': recall.recall_date.isoformat(),
        'status': recall.status,
    }


def _holder_disclosure(unit: models.ProductUnit, batch: models.ProductionBatch, actor: Optional[Actor]):
    """(current_retailer, current_holder) as far as the caller may see them.

    Retailers are public. A customer holder is only named to the customer
    themselves, the batch's manufacturer and admins.
    """
    holder = unit.holder
    if holder is None:
        return None, None
    if holder.role == models.ROLE_RETAILER:
        retailer = {'name': holder.public_name, 'location': holder.location}
        return retailer, {'role': holder.role, 'name': holder.public_name}
    privileged = actor is not None and (
        actor.is_admin or actor.user_id in (holder.id, batch.manufacturer_id)
    )
    return None, {'role': holder.role, 'name': holder.public_name if privileged else None}


def _verify_unit(session: Session, serial_code: str, presented_hash: Optional[str], actor: Optional[Actor], now) -> dict:
    unit = crud.get_unit_by_serial(session, serial_code)
    if not unit:
        _record_scan(session, serial_code, models.SCAN_FAKE, actor, now=now)
        return _failure(serial_code, 'Product not found in database')

    warning = None
    if presented_hash is not None and not serials.check_auth_hash(unit, presented_hash):
        result = models.SCAN_FAKE
        warning = 'Authentication hash mismatch - possible cloned or forged code'
    else:
        warning = detect_duplicate(session, unit, actor, now)
        result = models.SCAN_DUPLICATE if warning else models.SCAN_VALID
    _record_scan(session, serial_code, result, actor, unit=unit, now=now)

    batch = unit.batch
    product = batch.product
    manufacturer = batch.manufacturer
    expired = _is_expired(batch.expiry_date, now.date())
    recall = crud.get_active_recall(session, batch.id)
    current_retailer, current_holder = _holder_disclosure(unit, batch, actor)

    if result == models.SCAN_FAKE:
        status = 'fake'
    elif result == models.SCAN_DUPLICATE:
        status = 'duplicate'
    elif unit.status == models.UNIT_RECALLED or recall:
        status = 'recalled'
    elif expired:
        status = 'expired'
    else:
        status = 'authentic'

    history = []
    for e in unit.ledger_entries:
        history.append({
            'sequence': e.sequence,
            'action': e.action,
            'actor_name': e.actor_name,
            'location': e.location,
            'previous_hash': e.previous_hash,
            'current_hash': e.current_hash,
            'created_at': e.created_at.isoformat(),
        })
    scans = crud.scan_history(session, unit.serial_code, limit=config.SCAN_HISTORY_LIMIT)

    return {
        'verified': result == models.SCAN_VALID,
        'is_batch': False,
        'scan_result': result,
        'status': status,
        'warning': warning,
        'product': {
            'serial_code': unit.serial_code,
            'name': product.name if product else None,
            'description': product.description if product else None,
            'category': product.category if product else None,
            'price': float(product.base_price) if product and product.base_price is not None else None,
            'image_url': product.image_url if product else None,
            'manufacturer': manufacturer.public_name if manufacturer else None,
            'license_number': manufacturer.license_number if manufacturer else None,
            'batch_number': batch.batch_number,
            'batch_status': batch.status,
            'manufacturing_date': batch.manufacturing_date.isoformat(),
            'expiry_date': batch.expiry_date.isoformat() if batch.expiry_date else None,
            'current_status': unit.status,
            'is_expired': expired,
        },
        'manufacturer': {
            'name': manufacturer.public_name if manufacturer else None,
            'license_number': manufacturer.license_number if manufacturer else None,
        },
        'current_retailer': current_retailer,
        'current_holder': current_holder,
        'recall': _recall_dict(recall),
        'blockchain_history': history,
        'timeline': [
            {k: h[k] for k in ('sequence', 'action', 'actor_name', 'location', 'created_at')}
            for h in history
        ],
        'scan_history': [
            {'scan_id': s.id, 'scan_result': s.scan_result, 'scan_time': s.scan_time.isoformat()}
            for s in scans
        ],
        'verified_at': now.isoformat() + 'Z',
    }
