"""
Batch and unit lifecycle.

Unit state machine:

    Manufactured --Shipped--> In_Transit --Received--> In_Inventory --Sold--> Sold
                                                       In_Inventory --Stored--> In_Inventory
    Manufactured | In_Transit | In_Inventory --Recalled--> Recalled

Sold and Recalled are terminal. Every change goes through ledger.append_entry
inside one transaction per request; any failure rolls the whole request back.
"""
import logging
from contextlib import contextmanager
from datetime import date
from typing import Iterable, Optional, List

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, ledger, models, serials
from .errors import (
    DuplicateSerialError,
    InvalidTransitionError,
    LedgerAppendError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .security import Actor

logger = logging.getLogger(__name__)

NON_TERMINAL = (models.UNIT_MANUFACTURED, models.UNIT_IN_TRANSIT, models.UNIT_IN_INVENTORY)

# action -> unit statuses it may be applied to
TRANSITIONS = {
    models.ACTION_SHIPPED: (models.UNIT_MANUFACTURED,),
    models.ACTION_RECEIVED: (models.UNIT_IN_TRANSIT,),
    models.ACTION_STORED: (models.UNIT_IN_INVENTORY,),
    models.ACTION_SOLD: (models.UNIT_IN_INVENTORY,),
    models.ACTION_RECALLED: NON_TERMINAL,
}


@contextmanager
def _transaction(session: Session, step: str):
    """Commit on success; roll back on any error or cancellation."""
    try:
        yield
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error('transaction failed at %s: %s', step, exc)
        raise LedgerAppendError(f'Database error during {step}', step=step) from exc
    except BaseException:
        session.rollback()
        raise


def check_transition(unit: models.ProductUnit, action: str) -> None:
    if action == models.ACTION_MANUFACTURED:
        raise InvalidTransitionError(
            f'{unit.serial_code}: Manufactured is only recorded when the batch is created', step='validate_transition')
    allowed = TRANSITIONS.get(action)
    if allowed is None:
        raise ValidationError(f'Unknown action {action}', step='validate_transition')
    if unit.status not in allowed:
        raise InvalidTransitionError(
            f'{unit.serial_code}: cannot apply {action} to a unit in status {unit.status}', step='validate_transition')


def _require_batch_owner(actor: Actor, batch: models.ProductionBatch) -> None:
    if actor.is_admin:
        return
    if batch.manufacturer_id != actor.user_id:
        raise PermissionDeniedError(f'Batch {batch.batch_number} belongs to another manufacturer')


# ==================== Batch creation ====================

def create_batch(
    session: Session,
    actor: Actor,
    product_def_id: int,
    quantity: int,
    manufacturing_date: date,
    expiry_date: Optional[date] = None,
    location: Optional[str] = None,
) -> models.ProductionBatch:
    """Insert a batch, expand it into serialized units and write each unit's
    genesis Manufactured entry. All or nothing."""
    if quantity is None or int(quantity) < 1:
        raise ValidationError('quantity must be a positive integer', step='validate_input')
    quantity = int(quantity)
    if quantity > serials.max_batch_quantity():
        raise ValidationError(f'quantity exceeds {serials.max_batch_quantity()} units per batch', step='validate_input')
    if manufacturing_date is None:
        raise ValidationError('manufacturing_date is required', step='validate_input')
    if expiry_date is not None and expiry_date < manufacturing_date:
        raise ValidationError('expiry_date is before manufacturing_date', step='validate_input')

    product = crud.get_product_definition(session, product_def_id)
    if not product:
        raise NotFoundError(f'Product definition {product_def_id} not found', step='validate_input')
    if not actor.is_admin and product.manufacturer_id != actor.user_id:
        raise PermissionDeniedError('Product definition belongs to another manufacturer', step='validate_input')

    with _transaction(session, 'create_batch'):
        batch = models.ProductionBatch(
            batch_number=serials.next_batch_number(session, manufacturing_date),
            product_def_id=product.id,
            manufacturer_id=product.manufacturer_id,
            quantity=quantity,
            manufacturing_date=manufacturing_date,
            expiry_date=expiry_date,
            status=models.BATCH_ACTIVE,
        )
        session.add(batch)
        session.flush()

        units = []
        for sequence in range(1, quantity + 1):
            unit = models.ProductUnit(
                batch_id=batch.id,
                sequence=sequence,
                status=models.UNIT_MANUFACTURED,
                **serials.new_unit_credentials(batch.batch_number, sequence),
            )
            session.add(unit)
            units.append(unit)
        try:
            session.flush()
        except IntegrityError as exc:
            logger.critical('serial collision while expanding batch %s: %s', batch.batch_number, exc)
            raise DuplicateSerialError(
                f'Serial collision while expanding batch {batch.batch_number}; manual review required',
                step='expand_units',
            ) from exc

        for unit in units:
            ledger.append_entry(
                session,
                unit.id,
                models.ACTION_MANUFACTURED,
                actor_id=actor.user_id,
                actor_name=actor.name,
                location=location or actor.location,
                unit=unit,
                commit=False,
            )
    session.refresh(batch)
    logger.info('batch %s created with %s units by user %s', batch.batch_number, quantity, actor.user_id)
    return batch


# ==================== Unit transitions ====================

def _advance_locked(session: Session, actor: Actor, unit: models.ProductUnit, action: str, location: Optional[str]) -> models.LedgerEntry:
    check_transition(unit, action)
    return ledger.append_entry(
        session,
        unit.id,
        action,
        actor_id=actor.user_id,
        actor_name=actor.name,
        location=location or actor.location,
        unit=unit,
        commit=False,
    )


def advance(
    session: Session,
    actor: Actor,
    item_id: int,
    action: str,
    location: Optional[str] = None,
    holder_id: Optional[int] = None,
) -> models.LedgerEntry:
    """Validate and apply one lifecycle action to one unit.

    The unit row stays locked from the status check until commit, so two
    concurrent calls for the same unit cannot both read the same chain head.
    """
    with _transaction(session, 'advance'):
        unit = ledger.lock_unit(session, item_id)
        entry = _advance_locked(session, actor, unit, action, location)
        if holder_id is not None:
            unit.holder_id = holder_id
    session.refresh(entry)
    return entry


def _lock_batch(session: Session, batch_id: int) -> models.ProductionBatch:
    batch = (
        session.query(models.ProductionBatch)
        .filter(models.ProductionBatch.id == batch_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not batch:
        raise NotFoundError(f'Batch {batch_id} not found', step='lock_batch')
    return batch


def recall(session: Session, actor: Actor, batch_id: int, reason: str) -> dict:
    """Recall a batch: every unit not yet Sold becomes Recalled with its own
    ledger entry, and a Recall row plus a high-severity RiskAlert are stored."""
    if not (reason or '').strip():
        raise ValidationError('A recall reason is required', step='validate_input')
    batch = crud.get_batch_or_404(session, batch_id)
    _require_batch_owner(actor, batch)
    if batch.status == models.BATCH_RECALLED:
        raise InvalidTransitionError(f'Batch {batch.batch_number} is already recalled', step='validate_transition')

    recalled = 0
    skipped = 0
    with _transaction(session, 'recall'):
        batch = _lock_batch(session, batch_id)
        if batch.status == models.BATCH_RECALLED:
            # another recall committed after the check above
            raise InvalidTransitionError(f'Batch {batch.batch_number} is already recalled', step='validate_transition')
        batch.status = models.BATCH_RECALLED
        for unit_id in [u.id for u in batch.units]:
            unit = ledger.lock_unit(session, unit_id)
            if unit.status not in NON_TERMINAL:
                skipped += 1
                continue
            _advance_locked(session, actor, unit, models.ACTION_RECALLED, None)
            recalled += 1
        rec = models.Recall(batch_id=batch.id, reason=reason.strip(), status='Active', initiated_by=actor.user_id)
        session.add(rec)
        product_name = batch.product.name if batch.product else 'Unknown'
        alert = crud.create_risk_alert(
            session,
            alert_type='Recall',
            severity='High',
            related_entity='Batch',
            related_id=batch.batch_number,
            description=f'Recall of batch {batch.batch_number} ({product_name}): {reason.strip()}. {recalled} units recalled, {skipped} already sold.',
            created_by=actor.user_id,
        )
        session.flush()
    logger.warning('batch %s recalled by user %s: %s units recalled, %s skipped', batch.batch_number, actor.user_id, recalled, skipped)
    return {'recall': rec, 'batch': batch, 'recalled_units': recalled, 'skipped_units': skipped, 'alert': alert}


# ==================== Shipments and retail ====================

def _resolve_units(session: Session, serial_codes: Iterable[str]) -> List[models.ProductUnit]:
    units = []
    seen = set()
    for raw in serial_codes:
        code = (raw or '').strip().upper()
        if not code or code in seen:
            continue
        seen.add(code)
        unit = crud.get_unit_by_serial(session, code)
        if not unit:
            raise NotFoundError(f'Unit {code} not found', step='resolve_units')
        units.append(unit)
    if not units:
        raise ValidationError('At least one serial code is required', step='resolve_units')
    return units


def _ship_units(session: Session, actor: Actor, retailer: models.User, units: List[models.ProductUnit], origin: Optional[str], destination: Optional[str]) -> models.Shipment:
    shipment = models.Shipment(
        manufacturer_id=units[0].batch.manufacturer_id,
        retailer_id=retailer.id,
        status=models.SHIPMENT_IN_TRANSIT,
        origin=origin or actor.location,
        destination=destination or retailer.location,
    )
    session.add(shipment)
    session.flush()
    for unit in units:
        locked = ledger.lock_unit(session, unit.id)
        _advance_locked(session, actor, locked, models.ACTION_SHIPPED, shipment.origin)
        session.add(models.ShipmentItem(shipment_id=shipment.id, item_id=locked.id))
    return shipment


def dispatch_shipment(
    session: Session,
    actor: Actor,
    retailer_id: int,
    serial_codes: Iterable[str],
    origin: Optional[str] = None,
    destination: Optional[str] = None,
) -> models.Shipment:
    retailer = crud.get_user(session, retailer_id)
    if not retailer or retailer.role != models.ROLE_RETAILER:
        raise ValidationError(f'User {retailer_id} is not a retailer', step='validate_input')
    units = _resolve_units(session, serial_codes)
    for unit in units:
        _require_batch_owner(actor, unit.batch)

    with _transaction(session, 'dispatch_shipment'):
        shipment = _ship_units(session, actor, retailer, units, origin, destination)
    session.refresh(shipment)
    logger.info('shipment %s dispatched: %s units to retailer %s', shipment.id, len(units), retailer.id)
    return shipment


def confirm_shipment(session: Session, actor: Actor, shipment_id: int, location: Optional[str] = None) -> models.Shipment:
    shipment = crud.get_shipment(session, shipment_id)
    if not shipment or (shipment.retailer_id != actor.user_id and not actor.is_admin):
        raise NotFoundError('Shipment not found or unauthorized', step='load_shipment')
    if shipment.status == models.SHIPMENT_DELIVERED:
        raise ValidationError('Shipment already confirmed', step='load_shipment')

    with _transaction(session, 'confirm_shipment'):
        for item in shipment.items:
            unit = ledger.lock_unit(session, item.item_id)
            if unit.status == models.UNIT_RECALLED:
                # recalled while in transit; nothing to receive
                continue
            _advance_locked(session, actor, unit, models.ACTION_RECEIVED, location or shipment.destination)
            unit.holder_id = shipment.retailer_id
        shipment.status = models.SHIPMENT_DELIVERED
        shipment.delivered_at = models.utcnow()
        for order in crud.orders_for_shipment(session, shipment.id):
            order.status = models.ORDER_DELIVERED
    session.refresh(shipment)
    logger.info('shipment %s delivered to retailer %s', shipment.id, shipment.retailer_id)
    return shipment


def _require_holder(actor: Actor, unit: models.ProductUnit) -> None:
    if actor.is_admin:
        return
    if unit.holder_id != actor.user_id:
        raise PermissionDeniedError(f'Unit {unit.serial_code} is not in your inventory')


def store_unit(session: Session, actor: Actor, serial_code: str, location: Optional[str] = None) -> models.LedgerEntry:
    unit = crud.get_unit_by_serial_or_404(session, serial_code.strip().upper())
    _require_holder(actor, unit)
    return advance(session, actor, unit.id, models.ACTION_STORED, location=location)


def _sell_locked(session: Session, actor: Actor, unit: models.ProductUnit, customer_id: Optional[int], location: Optional[str]) -> models.LedgerEntry:
    entry = _advance_locked(session, actor, unit, models.ACTION_SOLD, location)
    unit.holder_id = customer_id
    batch = unit.batch
    session.flush()
    if batch.status == models.BATCH_ACTIVE and crud.batch_status_counts(session, batch.id)[models.UNIT_SOLD] == batch.quantity:
        batch.status = models.BATCH_COMPLETED
    return entry


def sell_unit(session: Session, actor: Actor, serial_code: str, customer_id: Optional[int] = None, location: Optional[str] = None) -> models.LedgerEntry:
    unit = crud.get_unit_by_serial_or_404(session, serial_code.strip().upper())
    _require_holder(actor, unit)
    if customer_id is not None:
        customer = crud.get_user(session, customer_id)
        if not customer or customer.role != models.ROLE_CUSTOMER:
            raise ValidationError(f'User {customer_id} is not a customer', step='validate_input')

    with _transaction(session, 'sell_unit'):
        entry = _sell_locked(session, actor, ledger.lock_unit(session, unit.id), customer_id, location)
    session.refresh(entry)
    return entry


# ==================== Orders ====================
#
# B2B:       Pending --accept--> Shipped (shipment dispatched) --shipment confirmed--> Delivered
#            Pending --reject--> Rejected
# Customer:  Pending --accept--> Accepted (units reserved) --ship--> Shipped (units Sold) --received--> Delivered

def _check_quantity(quantity) -> int:
    if quantity is None or int(quantity) < 1:
        raise ValidationError('quantity must be a positive integer', step='validate_input')
    return int(quantity)


def _lock_order(session: Session, order_id: int, order_type: str) -> models.Order:
    order = (
        session.query(models.Order)
        .filter(models.Order.id == order_id, models.Order.order_type == order_type)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not order:
        raise NotFoundError(f'Order {order_id} not found', step='load_order')
    return order


def _require_order_party(actor: Actor, user_id: int) -> None:
    if actor.is_admin:
        return
    if user_id != actor.user_id:
        raise NotFoundError('Order not found or unauthorized', step='load_order')


def _require_order_status(order: models.Order, status: str, verb: str) -> None:
    if order.status != status:
        raise InvalidTransitionError(f'Order {order.id}: cannot {verb} an order in status {order.status}', step='validate_transition')


def _create_order(session: Session, order_type: str, buyer_id: int, seller_id: int, product: models.ProductDefinition, quantity: int, note: Optional[str]) -> models.Order:
    with _transaction(session, 'place_order'):
        order = models.Order(
            order_type=order_type,
            buyer_id=buyer_id,
            seller_id=seller_id,
            product_def_id=product.id,
            quantity=quantity,
            unit_price=product.base_price,
            status=models.ORDER_PENDING,
            note=(note or '').strip() or None,
        )
        session.add(order)
        session.flush()
    session.refresh(order)
    logger.info('%s order %s placed by user %s: %s x product %s', order_type, order.id, buyer_id, quantity, product.id)
    return order


def place_b2b_order(session: Session, actor: Actor, product_def_id: int, quantity: int, note: Optional[str] = None) -> models.Order:
    """Retailer orders units of a product from its manufacturer. Stock is
    checked when the manufacturer accepts, not here."""
    if not actor.has_role(models.ROLE_RETAILER):
        raise PermissionDeniedError('Only retailers place B2B orders', step='validate_input')
    quantity = _check_quantity(quantity)
    product = crud.get_product_definition(session, product_def_id)
    if not product:
        raise NotFoundError(f'Product definition {product_def_id} not found', step='validate_input')
    if not product.is_active:
        raise ValidationError(f'Product {product.name} is no longer offered', step='validate_input')
    return _create_order(session, models.ORDER_B2B, actor.user_id, product.manufacturer_id, product, quantity, note)


def accept_b2b_order(session: Session, actor: Actor, order_id: int, origin: Optional[str] = None, destination: Optional[str] = None) -> models.Order:
    """Allocate Manufactured units to the order and dispatch them to the
    retailer as one shipment."""
    with _transaction(session, 'accept_order'):
        order = _lock_order(session, order_id, models.ORDER_B2B)
        _require_order_party(actor, order.seller_id)
        _require_order_status(order, models.ORDER_PENDING, 'accept')
        units = crud.available_units(
            session, order.product_def_id, models.UNIT_MANUFACTURED,
            manufacturer_id=order.seller_id, limit=order.quantity,
        )
        if len(units) < order.quantity:
            raise ValidationError(
                f'Insufficient stock for order {order.id}: {len(units)} of {order.quantity} units available', step='allocate_units')
        shipment = _ship_units(session, actor, order.buyer, units, origin, destination)
        for unit in units:
            session.add(models.OrderItem(order_id=order.id, item_id=unit.id))
        order.shipment_id = shipment.id
        order.status = models.ORDER_SHIPPED
    session.refresh(order)
    logger.info('order %s accepted by user %s, shipment %s', order.id, actor.user_id, order.shipment_id)
    return order


def reject_b2b_order(session: Session, actor: Actor, order_id: int, reason: str) -> models.Order:
    if not (reason or '').strip():
        raise ValidationError('A rejection reason is required', step='validate_input')
    with _transaction(session, 'reject_order'):
        order = _lock_order(session, order_id, models.ORDER_B2B)
        _require_order_party(actor, order.seller_id)
        _require_order_status(order, models.ORDER_PENDING, 'reject')
        order.status = models.ORDER_REJECTED
        order.note = reason.strip()
    session.refresh(order)
    logger.info('order %s rejected by user %s', order.id, actor.user_id)
    return order


def place_customer_order(session: Session, actor: Actor, retailer_id: int, product_def_id: int, quantity: int, note: Optional[str] = None) -> models.Order:
    quantity = _check_quantity(quantity)
    retailer = crud.get_user(session, retailer_id)
    if not retailer or retailer.role != models.ROLE_RETAILER:
        raise ValidationError(f'User {retailer_id} is not a retailer', step='validate_input')
    product = crud.get_product_definition(session, product_def_id)
    if not product:
        raise NotFoundError(f'Product definition {product_def_id} not found', step='validate_input')
    available = crud.available_units(session, product.id, models.UNIT_IN_INVENTORY, holder_id=retailer.id, limit=quantity)
    if len(available) < quantity:
        raise ValidationError(f'Insufficient stock for {product.name}. Available: {len(available)}', step='validate_input')
    return _create_order(session, models.ORDER_CUSTOMER, actor.user_id, retailer.id, product, quantity, note)


def accept_customer_order(session: Session, actor: Actor, order_id: int) -> models.Order:
    """Reserve In_Inventory units held by the retailer for the order."""
    with _transaction(session, 'accept_order'):
        order = _lock_order(session, order_id, models.ORDER_CUSTOMER)
        _require_order_party(actor, order.seller_id)
        _require_order_status(order, models.ORDER_PENDING, 'accept')
        units = crud.available_units(
            session, order.product_def_id, models.UNIT_IN_INVENTORY,
            holder_id=order.seller_id, limit=order.quantity,
        )
        if len(units) < order.quantity:
            raise ValidationError(
                f'Insufficient stock for order {order.id}: {len(units)} of {order.quantity} units available', step='allocate_units')
        for unit in units:
            locked = ledger.lock_unit(session, unit.id)
            if locked.status != models.UNIT_IN_INVENTORY or crud.unit_reserved(session, locked.id):
                raise InvalidTransitionError(f'{locked.serial_code} was taken by another order', step='allocate_units')
            session.add(models.OrderItem(order_id=order.id, item_id=locked.id))
        order.status = models.ORDER_ACCEPTED
    session.refresh(order)
    logger.info('order %s accepted by user %s: %s units reserved', order.id, actor.user_id, len(order.items))
    return order


def ship_customer_order(session: Session, actor: Actor, order_id: int, location: Optional[str] = None) -> models.Order:
    """Sell every reserved unit to the ordering customer."""
    with _transaction(session, 'ship_order'):
        order = _lock_order(session, order_id, models.ORDER_CUSTOMER)
        _require_order_party(actor, order.seller_id)
        _require_order_status(order, models.ORDER_ACCEPTED, 'ship')
        for item in order.items:
            unit = ledger.lock_unit(session, item.item_id)
            if unit.holder_id != order.seller_id:
                raise InvalidTransitionError(f'{unit.serial_code} is no longer held by the seller', step='validate_transition')
            _sell_locked(session, actor, unit, order.buyer_id, location)
        order.status = models.ORDER_SHIPPED
    session.refresh(order)
    logger.info('order %s shipped by user %s to customer %s', order.id, actor.user_id, order.buyer_id)
    return order


def confirm_order_received(session: Session, actor: Actor, order_id: int) -> models.Order:
    with _transaction(session, 'confirm_order'):
        order = _lock_order(session, order_id, models.ORDER_CUSTOMER)
        _require_order_party(actor, order.buyer_id)
        _require_order_status(order, models.ORDER_SHIPPED, 'confirm receipt of')
        order.status = models.ORDER_DELIVERED
    session.refresh(order)
    logger.info('order %s received by customer %s', order.id, order.buyer_id)
    return order
