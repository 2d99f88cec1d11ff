import logging
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from . import db, crud, ledger, lifecycle, models, qr, schemas, security, verification
from .activity_logger import log_activity
from .errors import BessError, NotFoundError, PermissionDeniedError
from .security import Actor

logger = logging.getLogger(__name__)

app = FastAPI(title="BESS-PAS Backend")


@app.exception_handler(BessError)
def bess_error_handler(request: Request, exc: BessError):
    if exc.status_code >= 500:
        logger.error('%s %s failed: %s (step=%s)', request.method, request.url.path, exc.message, exc.step)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def _user_from_token(session: Session, token: str) -> models.User:
    try:
        payload = security.decode_token(token)
    except security.JWTError:
        raise HTTPException(status_code=401, detail='Invalid token')
    username = payload.get('sub')
    if username is None:
        raise HTTPException(status_code=401, detail='Invalid authentication')
    user = crud.get_user_by_username(session, username)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail='User not found')
    return user


def get_current_user(token: str = Depends(oauth2_scheme), session: Session = Depends(db.get_db)) -> models.User:
    return _user_from_token(session, token)


def get_current_actor(user: models.User = Depends(get_current_user)) -> Actor:
    return Actor.from_user(user)


def get_optional_actor(token: Optional[str] = Depends(optional_oauth2_scheme), session: Session = Depends(db.get_db)) -> Optional[Actor]:
    """Caller identity for public routes; a missing, expired or unknown token scans anonymously."""
    if not token:
        return None
    try:
        user = _user_from_token(session, token)
    except HTTPException as exc:
        logger.info('ignoring bearer token on public route: %s', exc.detail)
        return None
    return Actor.from_user(user)


def require_roles(*role_names: str):
    """Role check evaluated once per request.

    Usage:
    - Depends(require_roles('Manufacturer', 'Admin'))
    """
    def _dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.has_role(*role_names):
            raise HTTPException(status_code=403, detail=f'Unauthorized: {" or ".join(role_names)} role required')
        return actor
    return _dependency


manufacturer_only = require_roles(models.ROLE_MANUFACTURER, models.ROLE_ADMIN)
retailer_only = require_roles(models.ROLE_RETAILER, models.ROLE_ADMIN)
customer_only = require_roles(models.ROLE_CUSTOMER)
admin_only = require_roles(models.ROLE_ADMIN)


@app.on_event("startup")
def on_startup():
    # Ensure DB tables exist for simple dev setup. Alembic is primary migration tool.
    db.Base.metadata.create_all(bind=db.engine)


@app.get("/api/hello")
def hello():
    return {"message": "BESS-PAS API is running"}


# ==================== Auth ====================

@app.post('/api/auth/register', response_model=schemas.UserOut, status_code=201)
def register(user_in: schemas.UserCreate, session: Session = Depends(db.get_db)):
    if user_in.role == models.ROLE_ADMIN:
        raise PermissionDeniedError('Admin accounts cannot self-register')
    user = crud.create_user(session, user_in)
    log_activity(session, user.username, f'register {user.role}', path='/api/auth/register', method='POST', status_code=201, user_id=user.id)
    return user


@app.post('/api/auth/login', response_model=schemas.Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), session: Session = Depends(db.get_db)):
    user = crud.authenticate_user(session, form_data.username, form_data.password)
    if not user:
        raise HTTPException(status_code=401, detail='Incorrect username or password')
    token = security.create_access_token(user.username, user.role)
    return {'access_token': token, 'token_type': 'bearer', 'user': user}


@app.get('/api/auth/me', response_model=schemas.UserOut)
def me(user: models.User = Depends(get_current_user)):
    return user


# ==================== Manufacturer: products & production ====================

def _owned_batch(session: Session, actor: Actor, batch_id: int) -> models.ProductionBatch:
    batch = crud.get_batch_or_404(session, batch_id)
    if not actor.is_admin and batch.manufacturer_id != actor.user_id:
        raise NotFoundError(f'Batch {batch_id} not found')
    return batch


def _owned_unit(session: Session, actor: Actor, item_id: int) -> models.ProductUnit:
    unit = crud.get_unit(session, item_id)
    if not unit or (not actor.is_admin and unit.batch.manufacturer_id != actor.user_id):
        raise NotFoundError(f'Product unit {item_id} not found')
    return unit


@app.get('/api/manufacturer/products', response_model=List[schemas.ProductDefinitionOut])
def list_products(session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    return crud.get_product_definitions(session, None if actor.is_admin else actor.user_id)


@app.post('/api/manufacturer/products', response_model=schemas.ProductDefinitionOut, status_code=201)
def create_product(payload: schemas.ProductDefinitionCreate, session: Session = Depends(db.get_db), actor: Actor = Depends(require_roles(models.ROLE_MANUFACTURER))):
    product = crud.create_product_definition(session, actor.user_id, payload)
    log_activity(session, actor.name, f'create product {product.name}', path='/api/manufacturer/products', method='POST', status_code=201, detail={'product_def_id': product.id}, user_id=actor.user_id)
    return product


@app.get('/api/manufacturer/production', response_model=List[schemas.BatchOut])
def list_production(limit: int = 100, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    return crud.list_batches(session, None if actor.is_admin else actor.user_id, limit=limit)


@app.post('/api/manufacturer/production', response_model=schemas.BatchOut, status_code=201)
def create_production(payload: schemas.ProductionCreate, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    batch = lifecycle.create_batch(
        session,
        actor,
        payload.product_def_id,
        payload.quantity,
        payload.manufacturing_date,
        payload.expiry_date,
        location=payload.location,
    )
    log_activity(session, actor.name, f'create batch {batch.batch_number}', path='/api/manufacturer/production', method='POST', status_code=201, detail={'batch_id': batch.id, 'quantity': batch.quantity}, user_id=actor.user_id, ref=batch.batch_number)
    return crud.batch_summary(session, batch)


@app.get('/api/manufacturer/batch/{batch_id}', response_model=schemas.BatchOut)
def get_batch(batch_id: int, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    return crud.batch_summary(session, _owned_batch(session, actor, batch_id))


@app.get('/api/manufacturer/batch/{batch_id}/qr-codes', response_model=List[schemas.QRCodeOut])
def batch_qr_codes(batch_id: int, fmt: str = Query('png', alias='format', pattern='^(png|svg)$'), session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    batch = _owned_batch(session, actor, batch_id)
    encode = qr.encode_svg if fmt == 'svg' else qr.encode_data_url
    return [{'serial_code': u.serial_code, 'qr_code': encode(u.serial_code, u.auth_hash)} for u in batch.units]


@app.get('/api/manufacturer/batch/{batch_id}/qr-codes/archive')
def batch_qr_archive(batch_id: int, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    batch = _owned_batch(session, actor, batch_id)
    data = qr.build_archive((u.serial_code, u.auth_hash) for u in batch.units)
    return Response(
        content=data,
        media_type='application/zip',
        headers={'Content-Disposition': f'attachment; filename="{batch.batch_number}-qr.zip"'},
    )


@app.post('/api/manufacturer/batch/{batch_id}/recall', response_model=schemas.RecallOut)
def recall_batch(batch_id: int, payload: schemas.RecallCreate, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    _owned_batch(session, actor, batch_id)
    result = lifecycle.recall(session, actor, batch_id, payload.reason)
    batch = result['batch']
    out = {
        'recall_id': result['recall'].id,
        'batch': crud.batch_summary(session, batch),
        'recalled_units': result['recalled_units'],
        'skipped_units': result['skipped_units'],
        'alert_id': result['alert'].id,
    }
    log_activity(session, actor.name, f'recall batch {batch.batch_number}', path=f'/api/manufacturer/batch/{batch_id}/recall', method='POST', status_code=200, detail={'reason': payload.reason, 'recalled_units': out['recalled_units']}, user_id=actor.user_id, ref=batch.batch_number)
    return out


@app.get('/api/manufacturer/batch/{batch_id}/audit', response_model=schemas.BatchAuditOut)
def audit_batch(batch_id: int, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    batch = _owned_batch(session, actor, batch_id)
    broken = []
    for unit in batch.units:
        verdict = ledger.verify_chain(session, unit.id)
        if not verdict['valid']:
            broken.append({'item_id': unit.id, 'serial_code': unit.serial_code, **verdict})
    return {
        'batch_id': batch.id,
        'batch_number': batch.batch_number,
        'units_checked': len(batch.units),
        'valid': not broken,
        'broken': broken,
    }


# ==================== Manufacturer: ledger ====================

@app.get('/api/manufacturer/ledger', response_model=schemas.LedgerListOut, response_model_exclude_unset=True)
def ledger_entries(batch_id: Optional[int] = None, group_by: Optional[str] = Query(None, pattern='^batch$'), limit: int = 200, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    entries = crud.list_ledger_entries(session, None if actor.is_admin else actor.user_id, batch_id=batch_id, limit=limit)
    if group_by == 'batch':
        return {'batches': crud.group_entries_by_batch(entries)}
    return {'entries': entries}


@app.get('/api/manufacturer/ledger/{item_id}/verify', response_model=schemas.ChainVerificationOut)
def verify_item_chain(item_id: int, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    unit = _owned_unit(session, actor, item_id)
    verdict = ledger.verify_chain(session, unit.id)
    return {'item_id': unit.id, 'serial_code': unit.serial_code, **verdict}


@app.get('/api/manufacturer/ledger/{item_id}/proof/{entry_id}')
def ledger_proof(item_id: int, entry_id: int, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    unit = _owned_unit(session, actor, item_id)
    return ledger.export_chain_proof(session, unit.id, entry_id)


# ==================== Shipments ====================

@app.get('/api/manufacturer/shipments', response_model=List[schemas.ShipmentOut])
def manufacturer_shipments(session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    shipments = crud.list_shipments(session, manufacturer_id=None if actor.is_admin else actor.user_id)
    return [crud.shipment_summary(s) for s in shipments]


@app.post('/api/manufacturer/shipments', response_model=schemas.ShipmentOut, status_code=201)
def dispatch_shipment(payload: schemas.ShipmentCreate, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    shipment = lifecycle.dispatch_shipment(session, actor, payload.retailer_id, payload.serial_codes, payload.origin, payload.destination)
    log_activity(session, actor.name, f'dispatch shipment {shipment.id}', path='/api/manufacturer/shipments', method='POST', status_code=201, detail={'units': len(shipment.items), 'retailer_id': shipment.retailer_id}, user_id=actor.user_id)
    return crud.shipment_summary(shipment)


@app.get('/api/retailer/shipments/incoming', response_model=List[schemas.ShipmentOut])
def incoming_shipments(session: Session = Depends(db.get_db), actor: Actor = Depends(retailer_only)):
    shipments = crud.list_shipments(session, retailer_id=actor.user_id, incoming_only=True)
    return [crud.shipment_summary(s) for s in shipments]


@app.post('/api/retailer/shipments/{shipment_id}/confirm', response_model=schemas.ShipmentOut)
def confirm_shipment(shipment_id: int, payload: Optional[schemas.ShipmentConfirm] = None, session: Session = Depends(db.get_db), actor: Actor = Depends(retailer_only)):
    shipment = lifecycle.confirm_shipment(session, actor, shipment_id, location=payload.location if payload else None)
    log_activity(session, actor.name, f'confirm shipment {shipment.id}', path=f'/api/retailer/shipments/{shipment_id}/confirm', method='POST', status_code=200, user_id=actor.user_id)
    return crud.shipment_summary(shipment)


# ==================== Orders ====================

@app.post('/api/retailer/orders', response_model=schemas.OrderOut, status_code=201)
def place_b2b_order(payload: schemas.B2BOrderCreate, session: Session = Depends(db.get_db), actor: Actor = Depends(retailer_only)):
    order = lifecycle.place_b2b_order(session, actor, payload.product_def_id, payload.quantity, note=payload.note)
    log_activity(session, actor.name, f'place order {order.id}', path='/api/retailer/orders', method='POST', status_code=201, detail={'product_def_id': order.product_def_id, 'quantity': order.quantity}, user_id=actor.user_id)
    return crud.order_summary(order)


@app.get('/api/retailer/orders', response_model=List[schemas.OrderOut])
def retailer_orders(session: Session = Depends(db.get_db), actor: Actor = Depends(retailer_only)):
    orders = crud.list_orders(session, models.ORDER_B2B, buyer_id=None if actor.is_admin else actor.user_id)
    return [crud.order_summary(o) for o in orders]


@app.get('/api/manufacturer/orders', response_model=List[schemas.OrderOut])
def manufacturer_orders(session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    orders = crud.list_orders(session, models.ORDER_B2B, seller_id=None if actor.is_admin else actor.user_id)
    return [crud.order_summary(o) for o in orders]


@app.post('/api/manufacturer/orders/{order_id}/accept', response_model=schemas.OrderOut)
def accept_b2b_order(order_id: int, payload: Optional[schemas.OrderAccept] = None, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    payload = payload or schemas.OrderAccept()
    order = lifecycle.accept_b2b_order(session, actor, order_id, origin=payload.origin, destination=payload.destination)
    log_activity(session, actor.name, f'accept order {order.id}', path=f'/api/manufacturer/orders/{order_id}/accept', method='POST', status_code=200, detail={'shipment_id': order.shipment_id}, user_id=actor.user_id)
    return crud.order_summary(order)


@app.post('/api/manufacturer/orders/{order_id}/reject', response_model=schemas.OrderOut)
def reject_b2b_order(order_id: int, payload: schemas.OrderReject, session: Session = Depends(db.get_db), actor: Actor = Depends(manufacturer_only)):
    order = lifecycle.reject_b2b_order(session, actor, order_id, payload.reason)
    log_activity(session, actor.name, f'reject order {order.id}', path=f'/api/manufacturer/orders/{order_id}/reject', method='POST', status_code=200, detail={'reason': order.note}, user_id=actor.user_id)
    return crud.order_summary(order)


@app.post('/api/customer/orders', response_model=schemas.OrderOut, status_code=201)
def place_customer_order(payload: schemas.CustomerOrderCreate, session: Session = Depends(db.get_db), actor: Actor = Depends(customer_only)):
    order = lifecycle.place_customer_order(session, actor, payload.retailer_id, payload.product_def_id, payload.quantity, note=payload.note)
    log_activity(session, actor.name, f'place order {order.id}', path='/api/customer/orders', method='POST', status_code=201, detail={'retailer_id': order.seller_id, 'quantity': order.quantity}, user_id=actor.user_id)
    return crud.order_summary(order)


@app.get('/api/customer/orders', response_model=List[schemas.OrderOut])
def customer_orders(session: Session = Depends(db.get_db), actor: Actor = Depends(customer_only)):
    return [crud.order_summary(o) for o in crud.list_orders(session, models.ORDER_CUSTOMER, buyer_id=actor.user_id)]


@app.post('/api/customer/orders/{order_id}/received', response_model=schemas.OrderOut)
def confirm_order_received(order_id: int, session: Session = Depends(db.get_db), actor: Actor = Depends(customer_only)):
    order = lifecycle.confirm_order_received(session, actor, order_id)
    log_activity(session, actor.name, f'confirm order {order.id} received', path=f'/api/customer/orders/{order_id}/received', method='POST', status_code=200, user_id=actor.user_id)
    return crud.order_summary(order)


@app.get('/api/retailer/customer-orders', response_model=List[schemas.OrderOut])
def retailer_customer_orders(session: Session = Depends(db.get_db), actor: Actor = Depends(retailer_only)):
    orders = crud.list_orders(session, models.ORDER_CUSTOMER, seller_id=None if actor.is_admin else actor.user_id)
    return [crud.order_summary(o) for o in orders]


@app.put('/api/retailer/customer-orders/{order_id}/accept', response_model=schemas.OrderOut)
def accept_customer_order(order_id: int, session: Session = Depends(db.get_db), actor: Actor = Depends(retailer_only)):
    order = lifecycle.accept_customer_order(session, actor, order_id)
    log_activity(session, actor.name, f'accept order {order.id}', path=f'/api/retailer/customer-orders/{order_id}/accept', method='PUT', status_code=200, detail={'units': len(order.items)}, user_id=actor.user_id)
    return crud.order_summary(order)


@app.put('/api/retailer/customer-orders/{order_id}/ship', response_model=schemas.OrderOut)
def ship_customer_order(order_id: int, payload: Optional[schemas.UnitAction] = None, session: Session = Depends(db.get_db), actor: Actor = Depends(retailer_only)):
    order = lifecycle.ship_customer_order(session, actor, order_id, location=payload.location if payload else None)
    log_activity(session, actor.name, f'ship order {order.id}', path=f'/api/retailer/customer-orders/{order_id}/ship', method='PUT', status_code=200, detail={'customer_id': order.buyer_id}, user_id=actor.user_id)
    return crud.order_summary(order)


# ==================== Retailer: inventory ====================

def _unit_ledger_out(entry: models.LedgerEntry) -> dict:
    return {
        'serial_code': entry.unit.serial_code,
        'status': entry.unit.status,
        'entry_id': entry.id,
        'sequence': entry.sequence,
        'action': entry.action,
        'current_hash': entry.current_hash,
        'previous_hash': entry.previous_hash,
    }


@app.post('/api/retailer/units/{serial_code}/store', response_model=schemas.UnitLedgerOut)
def store_unit(serial_code: str, payload: Optional[schemas.UnitAction] = None, session: Session = Depends(db.get_db), actor: Actor = Depends(retailer_only)):
    entry = lifecycle.store_unit(session, actor, serial_code, location=payload.location if payload else None)
    return _unit_ledger_out(entry)


@app.post('/api/retailer/units/{serial_code}/sell', response_model=schemas.UnitLedgerOut)
def sell_unit(serial_code: str, payload: Optional[schemas.SellRequest] = None, session: Session = Depends(db.get_db), actor: Actor = Depends(retailer_only)):
    payload = payload or schemas.SellRequest()
    entry = lifecycle.sell_unit(session, actor, serial_code, customer_id=payload.customer_id, location=payload.location)
    log_activity(session, actor.name, f'sell unit {entry.unit.serial_code}', path=f'/api/retailer/units/{serial_code}/sell', method='POST', status_code=200, detail={'customer_id': payload.customer_id}, user_id=actor.user_id, ref=entry.unit.serial_code)
    return _unit_ledger_out(entry)


@app.get('/api/retailer/alerts')
def retailer_alerts(session: Session = Depends(db.get_db), actor: Actor = Depends(retailer_only)):
    return crud.retailer_alerts(session, actor.user_id)


# ==================== Verification ====================

def _verify(session: Session, code: str, actor: Optional[Actor]):
    """Verification always answers with a result object, never a bare 500."""
    try:
        return verification.verify_code(session, code, actor)
    except Exception:
        logger.exception('verification of %r failed', code)
        session.rollback()
        return JSONResponse(
            status_code=503,
            content={'verified': False, 'is_batch': False, 'status': 'unavailable', 'serial_code': code, 'error': 'Verification temporarily unavailable, please retry'},
        )


@app.get('/api/verify/{code}')
def verify_public(code: str, session: Session = Depends(db.get_db), actor: Optional[Actor] = Depends(get_optional_actor)):
    return _verify(session, code, actor)


@app.get('/api/customer/verify/{code}')
def verify_customer(code: str, session: Session = Depends(db.get_db), actor: Actor = Depends(customer_only)):
    return _verify(session, code, actor)


@app.get('/api/retailer/verify/{code}')
def verify_retailer(code: str, session: Session = Depends(db.get_db), actor: Actor = Depends(retailer_only)):
    return _verify(session, code, actor)


@app.get('/api/customer/verifications', response_model=List[schemas.VerificationHistoryOut])
def verification_history(limit: int = 50, session: Session = Depends(db.get_db), actor: Actor = Depends(customer_only)):
    return crud.list_user_verifications(session, actor.user_id, limit=limit)


@app.post('/api/customer/reports', response_model=schemas.RiskAlertOut, status_code=201)
def submit_report(payload: schemas.ReportCreate, session: Session = Depends(db.get_db), actor: Actor = Depends(customer_only)):
    alert = crud.submit_report(session, actor.user_id, payload)
    log_activity(session, actor.name, f'report {payload.issue_type} for {payload.serial_code}', path='/api/customer/reports', method='POST', status_code=201, detail={'alert_id': alert.id}, user_id=actor.user_id)
    return alert


# ==================== Admin ====================

@app.get('/api/admin/risk-alerts', response_model=List[schemas.RiskAlertOut])
def risk_alerts(status: Optional[str] = None, limit: int = 50, session: Session = Depends(db.get_db), actor: Actor = Depends(admin_only)):
    return crud.list_risk_alerts(session, status=status, limit=limit)
