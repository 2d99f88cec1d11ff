from collections import OrderedDict
from typing import Optional, List

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import models, schemas
from .errors import NotFoundError, ValidationError


# ==================== Users ====================

def get_user(session: Session, user_id: int) -> Optional[models.User]:
    return session.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_username(session: Session, username: str) -> Optional[models.User]:
    return session.query(models.User).filter(models.User.username == username).first()


def create_user(session: Session, user: schemas.UserCreate) -> models.User:
    from .security import get_password_hash
    username = (user.username or '').strip().lower()
    if not username:
        raise ValidationError('Username required')
    if user.role not in models.ROLES:
        raise ValidationError(f'Unknown role {user.role}')
    if get_user_by_username(session, username):
        raise ValidationError('Username already exists')
    db_user = models.User(
        username=username,
        email=user.email,
        hashed_password=get_password_hash(user.password),
        role=user.role,
        display_name=user.display_name,
        organization=user.organization,
        license_number=user.license_number,
        location=user.location,
        is_active=True,
    )
    session.add(db_user)
    session.commit()
    session.refresh(db_user)
    return db_user


def authenticate_user(session: Session, username: str, password: str) -> Optional[models.User]:
    from .security import verify_password
    user = get_user_by_username(session, (username or '').strip().lower())
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ==================== Product definitions ====================

def create_product_definition(session: Session, manufacturer_id: int, p: schemas.ProductDefinitionCreate) -> models.ProductDefinition:
    if not (p.name or '').strip():
        raise ValidationError('Product name required')
    product = models.ProductDefinition(
        manufacturer_id=manufacturer_id,
        name=p.name.strip(),
        description=p.description,
        category=p.category,
        base_price=p.base_price,
        image_url=p.image_url,
    )
    session.add(product)
    session.commit()
    session.refresh(product)
    return product


def get_product_definition(session: Session, product_def_id: int) -> Optional[models.ProductDefinition]:
    return session.query(models.ProductDefinition).filter(models.ProductDefinition.id == product_def_id).first()


def get_product_definitions(session: Session, manufacturer_id: Optional[int] = None, limit: int = 100) -> List[models.ProductDefinition]:
    qs = session.query(models.ProductDefinition).filter(models.ProductDefinition.is_active.is_(True))
    if manufacturer_id is not None:
        qs = qs.filter(models.ProductDefinition.manufacturer_id == manufacturer_id)
    return qs.order_by(models.ProductDefinition.created_at.desc()).limit(limit).all()


# ==================== Batches & units ====================

def get_batch(session: Session, batch_id: int) -> Optional[models.ProductionBatch]:
    return session.query(models.ProductionBatch).filter(models.ProductionBatch.id == batch_id).first()


def get_batch_or_404(session: Session, batch_id: int) -> models.ProductionBatch:
    batch = get_batch(session, batch_id)
    if not batch:
        raise NotFoundError(f'Batch {batch_id} not found')
    return batch


def get_batch_by_number(session: Session, batch_number: str) -> Optional[models.ProductionBatch]:
    return session.query(models.ProductionBatch).filter(models.ProductionBatch.batch_number == batch_number).first()


def get_unit(session: Session, item_id: int) -> Optional[models.ProductUnit]:
    return session.query(models.ProductUnit).filter(models.ProductUnit.id == item_id).first()


def get_unit_by_serial(session: Session, serial_code: str) -> Optional[models.ProductUnit]:
    return session.query(models.ProductUnit).filter(models.ProductUnit.serial_code == serial_code).first()


def get_unit_by_serial_or_404(session: Session, serial_code: str) -> models.ProductUnit:
    unit = get_unit_by_serial(session, serial_code)
    if not unit:
        raise NotFoundError(f'Unit {serial_code} not found')
    return unit


def batch_status_counts(session: Session, batch_id: int) -> dict:
    rows = (
        session.query(models.ProductUnit.status, func.count(models.ProductUnit.id))
        .filter(models.ProductUnit.batch_id == batch_id)
        .group_by(models.ProductUnit.status)
        .all()
    )
    counts = {status: 0 for status in models.UNIT_STATUSES}
    for status, count in rows:
        counts[status] = int(count)
    return counts


def batch_summary(session: Session, batch: models.ProductionBatch) -> dict:
    counts = batch_status_counts(session, batch.id)
    product = batch.product
    return {
        'batch_id': batch.id,
        'batch_number': batch.batch_number,
        'product_def_id': batch.product_def_id,
        'product_name': product.name if product else None,
        'manufacturer_id': batch.manufacturer_id,
        'quantity': batch.quantity,
        'total_items': sum(counts.values()),
        'status_counts': counts,
        'sold_value': counts[models.UNIT_SOLD] * product.base_price if product and product.base_price is not None else None,
        'manufacturing_date': batch.manufacturing_date,
        'expiry_date': batch.expiry_date,
        'status': batch.status,
        'created_at': batch.created_at,
    }


def list_batches(session: Session, manufacturer_id: Optional[int] = None, limit: int = 100) -> List[dict]:
    qs = session.query(models.ProductionBatch)
    if manufacturer_id is not None:
        qs = qs.filter(models.ProductionBatch.manufacturer_id == manufacturer_id)
    batches = qs.order_by(models.ProductionBatch.created_at.desc(), models.ProductionBatch.id.desc()).limit(limit).all()
    return [batch_summary(session, b) for b in batches]


# ==================== Ledger listing ====================

def list_ledger_entries(session: Session, manufacturer_id: Optional[int] = None, batch_id: Optional[int] = None, limit: int = 200):
    """Ledger rows joined with their unit and batch, newest first."""
    qs = (
        session.query(models.LedgerEntry, models.ProductUnit, models.ProductionBatch)
        .join(models.ProductUnit, models.LedgerEntry.item_id == models.ProductUnit.id)
        .join(models.ProductionBatch, models.ProductUnit.batch_id == models.ProductionBatch.id)
    )
    if manufacturer_id is not None:
        qs = qs.filter(models.ProductionBatch.manufacturer_id == manufacturer_id)
    if batch_id is not None:
        qs = qs.filter(models.ProductionBatch.id == batch_id)
    rows = qs.order_by(models.LedgerEntry.created_at.desc(), models.LedgerEntry.id.desc()).limit(limit).all()
    return [
        {
            'entry_id': entry.id,
            'item_id': entry.item_id,
            'serial_code': unit.serial_code,
            'batch_id': batch.id,
            'batch_number': batch.batch_number,
            'sequence': entry.sequence,
            'action': entry.action,
            'actor_id': entry.actor_id,
            'actor_name': entry.actor_name,
            'location': entry.location,
            'previous_hash': entry.previous_hash,
            'current_hash': entry.current_hash,
            'created_at': entry.created_at,
        }
        for entry, unit, batch in rows
    ]


def group_entries_by_batch(entries: List[dict]) -> List[dict]:
    groups = OrderedDict()
    for e in entries:
        g = groups.setdefault(e['batch_number'], {'batch_id': e['batch_id'], 'batch_number': e['batch_number'], 'entries': []})
        g['entries'].append(e)
    return list(groups.values())


# ==================== Scans, recalls, alerts ====================

def scan_history(session: Session, serial_code: str, limit: int = 20) -> List[models.ScanRecord]:
    return (
        session.query(models.ScanRecord)
        .filter(models.ScanRecord.serial_code == serial_code)
        .order_by(models.ScanRecord.scan_time.desc(), models.ScanRecord.id.desc())
        .limit(limit)
        .all()
    )


def list_user_verifications(session: Session, user_id: int, limit: int = 50) -> List[dict]:
    rows = (
        session.query(models.ScanRecord, models.ProductUnit, models.ProductionBatch, models.ProductDefinition)
        .outerjoin(models.ProductUnit, models.ScanRecord.item_id == models.ProductUnit.id)
        .outerjoin(models.ProductionBatch, models.ProductUnit.batch_id == models.ProductionBatch.id)
        .outerjoin(models.ProductDefinition, models.ProductionBatch.product_def_id == models.ProductDefinition.id)
        .filter(models.ScanRecord.scanning_user_id == user_id)
        .order_by(models.ScanRecord.scan_time.desc(), models.ScanRecord.id.desc())
        .limit(limit)
        .all()
    )
    out = []
    for scan, unit, batch, product in rows:
        out.append({
            'scan_id': scan.id,
            'serial_code': scan.serial_code,
            'scan_result': scan.scan_result,
            'scan_time': scan.scan_time,
            'product_status': unit.status if unit else None,
            'product_name': product.name if product else None,
            'category': product.category if product else None,
            'batch_number': batch.batch_number if batch else None,
            'manufacturing_date': batch.manufacturing_date if batch else None,
            'expiry_date': batch.expiry_date if batch else None,
        })
    return out


def get_active_recall(session: Session, batch_id: int) -> Optional[models.Recall]:
    return (
        session.query(models.Recall)
        .filter(models.Recall.batch_id == batch_id, models.Recall.status == 'Active')
        .order_by(models.Recall.recall_date.desc())
        .first()
    )


def create_risk_alert(session: Session, alert_type: str, severity: str, related_entity: str, related_id: Optional[str], description: str, created_by: Optional[int] = None) -> models.RiskAlert:
    """Adds the alert to the session without committing; callers own the transaction."""
    alert = models.RiskAlert(
        alert_type=alert_type,
        severity=severity,
        related_entity=related_entity,
        related_id=related_id,
        description=description,
        status='New',
        created_by=created_by,
    )
    session.add(alert)
    return alert


def submit_report(session: Session, user_id: int, report: schemas.ReportCreate) -> models.RiskAlert:
    serial = (report.serial_code or '').strip().upper()
    if not serial or not (report.issue_type or '').strip():
        raise ValidationError('Serial code and issue type are required')
    unit = get_unit_by_serial(session, serial)
    product_name = report.product_name
    if unit and not product_name and unit.batch.product:
        product_name = unit.batch.product.name
    alert = create_risk_alert(
        session,
        alert_type=report.issue_type,
        severity='High' if report.issue_type == 'Counterfeit' else 'Medium',
        related_entity='Product',
        related_id=serial,
        description=(
            f"Customer Report - Serial: {serial}, Product: {product_name or 'Unknown'}, "
            f"Issue: {report.issue_type}. Details: {report.description or 'No additional details provided.'}"
        ),
        created_by=user_id,
    )
    session.commit()
    session.refresh(alert)
    return alert


def list_risk_alerts(session: Session, status: Optional[str] = None, limit: int = 50) -> List[models.RiskAlert]:
    qs = session.query(models.RiskAlert)
    if status:
        qs = qs.filter(models.RiskAlert.status == status)
    return qs.order_by(models.RiskAlert.created_at.desc(), models.RiskAlert.id.desc()).limit(limit).all()


def retailer_alerts(session: Session, retailer_id: int) -> dict:
    """Active recalls that touch units the retailer holds or has on the way."""
    held_batches = (
        session.query(models.ProductUnit.batch_id)
        .filter(models.ProductUnit.holder_id == retailer_id)
        .distinct()
    )
    incoming_batches = (
        session.query(models.ProductUnit.batch_id)
        .join(models.ShipmentItem, models.ShipmentItem.item_id == models.ProductUnit.id)
        .join(models.Shipment, models.ShipmentItem.shipment_id == models.Shipment.id)
        .filter(models.Shipment.retailer_id == retailer_id, models.Shipment.status != models.SHIPMENT_DELIVERED)
        .distinct()
    )
    batch_ids = {b for (b,) in held_batches.all()} | {b for (b,) in incoming_batches.all()}
    recalls = []
    if batch_ids:
        rows = (
            session.query(models.Recall)
            .filter(models.Recall.batch_id.in_(batch_ids), models.Recall.status == 'Active')
            .order_by(models.Recall.recall_date.desc())
            .all()
        )
        for r in rows:
            batch = r.batch
            recalls.append({
                'recall_id': r.id,
                'batch_id': batch.id,
                'batch_number': batch.batch_number,
                'product_name': batch.product.name if batch.product else None,
                'manufacturer': batch.manufacturer.public_name if batch.manufacturer else None,
                'reason': r.reason,
                'status': r.status,
                'recall_date': r.recall_date,
            })
    return {'recalls': recalls, 'stats': {'active_recalls': len(recalls)}}


# ==================== Shipments ====================

def get_shipment(session: Session, shipment_id: int) -> Optional[models.Shipment]:
    return session.query(models.Shipment).filter(models.Shipment.id == shipment_id).first()


def list_shipments(session: Session, manufacturer_id: Optional[int] = None, retailer_id: Optional[int] = None, incoming_only: bool = False, limit: int = 100) -> List[models.Shipment]:
    qs = session.query(models.Shipment)
    if manufacturer_id is not None:
        qs = qs.filter(models.Shipment.manufacturer_id == manufacturer_id)
    if retailer_id is not None:
        qs = qs.filter(models.Shipment.retailer_id == retailer_id)
    if incoming_only:
        qs = qs.filter(models.Shipment.status != models.SHIPMENT_DELIVERED)
    return qs.order_by(models.Shipment.created_at.desc(), models.Shipment.id.desc()).limit(limit).all()


def shipment_summary(shipment: models.Shipment) -> dict:
    return {
        'shipment_id': shipment.id,
        'manufacturer_id': shipment.manufacturer_id,
        'manufacturer_name': shipment.manufacturer.public_name if shipment.manufacturer else None,
        'retailer_id': shipment.retailer_id,
        'retailer_name': shipment.retailer.public_name if shipment.retailer else None,
        'status': shipment.status,
        'origin': shipment.origin,
        'destination': shipment.destination,
        'created_at': shipment.created_at,
        'delivered_at': shipment.delivered_at,
        'serial_codes': [i.unit.serial_code for i in shipment.items],
    }


# ==================== Orders ====================

def get_order(session: Session, order_id: int) -> Optional[models.Order]:
    return session.query(models.Order).filter(models.Order.id == order_id).first()


def list_orders(session: Session, order_type: str, buyer_id: Optional[int] = None, seller_id: Optional[int] = None, limit: int = 100) -> List[models.Order]:
    qs = session.query(models.Order).filter(models.Order.order_type == order_type)
    if buyer_id is not None:
        qs = qs.filter(models.Order.buyer_id == buyer_id)
    if seller_id is not None:
        qs = qs.filter(models.Order.seller_id == seller_id)
    return qs.order_by(models.Order.created_at.desc(), models.Order.id.desc()).limit(limit).all()


def orders_for_shipment(session: Session, shipment_id: int) -> List[models.Order]:
    return session.query(models.Order).filter(models.Order.shipment_id == shipment_id).all()


def available_units(
    session: Session,
    product_def_id: int,
    status: str,
    manufacturer_id: Optional[int] = None,
    holder_id: Optional[int] = None,
    limit: Optional[int] = None,
) -> List[models.ProductUnit]:
    """Units of a product in the given status, oldest batch first.

    Units of recalled batches and units reserved by an accepted customer
    order are left out.
    """
    reserved = (
        select(models.OrderItem.item_id)
        .join(models.Order, models.OrderItem.order_id == models.Order.id)
        .where(models.Order.status == models.ORDER_ACCEPTED)
    )
    qs = (
        session.query(models.ProductUnit)
        .join(models.ProductionBatch, models.ProductUnit.batch_id == models.ProductionBatch.id)
        .filter(
            models.ProductionBatch.product_def_id == product_def_id,
            models.ProductionBatch.status != models.BATCH_RECALLED,
            models.ProductUnit.status == status,
            ~models.ProductUnit.id.in_(reserved),
        )
    )
    if manufacturer_id is not None:
        qs = qs.filter(models.ProductionBatch.manufacturer_id == manufacturer_id)
    if holder_id is not None:
        qs = qs.filter(models.ProductUnit.holder_id == holder_id)
    qs = qs.order_by(models.ProductionBatch.id.asc(), models.ProductUnit.sequence.asc())
    if limit is not None:
        qs = qs.limit(limit)
    return qs.all()


def order_summary(order: models.Order) -> dict:
    return {
        'order_id': order.id,
        'order_type': order.order_type,
        'buyer_id': order.buyer_id,
        'buyer_name': order.buyer.public_name if order.buyer else None,
        'seller_id': order.seller_id,
        'seller_name': order.seller.public_name if order.seller else None,
        'product_def_id': order.product_def_id,
        'product_name': order.product.name if order.product else None,
        'quantity': order.quantity,
        'unit_price': order.unit_price,
        'total_amount': order.unit_price * order.quantity if order.unit_price is not None else None,
        'status': order.status,
        'shipment_id': order.shipment_id,
        'note': order.note,
        'created_at': order.created_at,
        'updated_at': order.updated_at,
        'serial_codes': [i.unit.serial_code for i in order.items],
    }


def unit_reserved(session: Session, item_id: int) -> bool:
    """True when an accepted customer order already holds this unit."""
    return (
        session.query(models.OrderItem.id)
        .join(models.Order, models.OrderItem.order_id == models.Order.id)
        .filter(models.OrderItem.item_id == item_id, models.Order.status == models.ORDER_ACCEPTED)
        .first()
    ) is not None
