from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm.attributes import set_committed_value

from besspas import crud, ledger, lifecycle, models
from besspas.errors import (
    InvalidTransitionError,
    LedgerAppendError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from besspas.security import Actor


MFG_DATE = date(2026, 1, 12)


def _other_user(session, username, role):
    user = models.User(username=username, hashed_password='x', role=role, is_active=True)
    session.add(user)
    session.commit()
    return user


def test_create_batch_expands_units(session, batch, manufacturer):
    assert batch.batch_number == 'BATCH-20260112-0001'
    assert batch.status == models.BATCH_ACTIVE
    assert batch.manufacturer_id == manufacturer.id
    assert [u.serial_code for u in batch.units] == [
        'BATCH-20260112-0001-0001',
        'BATCH-20260112-0001-0002',
        'BATCH-20260112-0001-0003',
    ]
    assert all(u.status == models.UNIT_MANUFACTURED for u in batch.units)
    assert session.query(models.LedgerEntry).count() == 3
    counts = crud.batch_status_counts(session, batch.id)
    assert counts[models.UNIT_MANUFACTURED] == 3
    assert counts[models.UNIT_SOLD] == 0


def test_second_batch_same_day_gets_next_number(session, batch, mfg_actor, product):
    second = lifecycle.create_batch(session, mfg_actor, product.id, 1, MFG_DATE)
    assert second.batch_number == 'BATCH-20260112-0002'
    assert second.units[0].serial_code == 'BATCH-20260112-0002-0001'


@pytest.mark.parametrize('quantity,mfg,expiry', [
    (0, MFG_DATE, None),
    (-4, MFG_DATE, None),
    (10000, MFG_DATE, None),
    (2, MFG_DATE, date(2025, 1, 1)),
    (2, None, None),
])
def test_create_batch_rejects_bad_input(session, mfg_actor, product, quantity, mfg, expiry):
    with pytest.raises(ValidationError) as exc_info:
        lifecycle.create_batch(session, mfg_actor, product.id, quantity, mfg, expiry)
    assert exc_info.value.step == 'validate_input'
    assert session.query(models.ProductionBatch).count() == 0


def test_create_batch_checks_product_owner(session, product):
    other = _other_user(session, 'rival', models.ROLE_MANUFACTURER)
    with pytest.raises(PermissionDeniedError):
        lifecycle.create_batch(session, Actor.from_user(other), product.id, 2, MFG_DATE)
    with pytest.raises(NotFoundError):
        lifecycle.create_batch(session, Actor.from_user(other), 424242, 2, MFG_DATE)


def test_create_batch_is_all_or_nothing(session, mfg_actor, product, monkeypatch):
    real_append = ledger.append_entry
    calls = []

    def flaky_append(*args, **kwargs):
        calls.append(1)
        if len(calls) == 2:
            raise LedgerAppendError('ledger unavailable', step='ledger_append')
        return real_append(*args, **kwargs)

    monkeypatch.setattr(ledger, 'append_entry', flaky_append)
    with pytest.raises(LedgerAppendError):
        lifecycle.create_batch(session, mfg_actor, product.id, 3, MFG_DATE)
    assert session.query(models.ProductionBatch).count() == 0
    assert session.query(models.ProductUnit).count() == 0
    assert session.query(models.LedgerEntry).count() == 0


def test_illegal_transitions_append_nothing(session, batch, mfg_actor):
    unit = batch.units[0]
    for action in (models.ACTION_RECEIVED, models.ACTION_STORED, models.ACTION_SOLD, models.ACTION_MANUFACTURED):
        with pytest.raises(InvalidTransitionError):
            lifecycle.advance(session, mfg_actor, unit.id, action)
    assert len(ledger.get_item_history(session, unit.id)) == 1
    assert session.get(models.ProductUnit, unit.id).status == models.UNIT_MANUFACTURED


def test_shipment_dispatch_and_confirm(session, batch, mfg_actor, retail_actor, retailer):
    serials = [u.serial_code for u in batch.units[:2]]
    shipment = lifecycle.dispatch_shipment(session, mfg_actor, retailer.id, serials)
    assert shipment.status == models.SHIPMENT_IN_TRANSIT
    assert shipment.destination == 'Mumbai'
    assert all(crud.get_unit_by_serial(session, s).status == models.UNIT_IN_TRANSIT for s in serials)
    assert crud.get_unit_by_serial(session, batch.units[2].serial_code).status == models.UNIT_MANUFACTURED

    lifecycle.confirm_shipment(session, retail_actor, shipment.id, location='Back room')
    shipment = crud.get_shipment(session, shipment.id)
    assert shipment.status == models.SHIPMENT_DELIVERED
    assert shipment.delivered_at is not None
    for s in serials:
        unit = crud.get_unit_by_serial(session, s)
        assert unit.status == models.UNIT_IN_INVENTORY
        assert unit.holder_id == retailer.id
        assert [e.action for e in unit.ledger_entries] == ['Manufactured', 'Shipped', 'Received']
        assert ledger.verify_chain(session, unit.id)['valid']

    with pytest.raises(ValidationError):
        lifecycle.confirm_shipment(session, retail_actor, shipment.id)


def test_shipment_rules(session, batch, mfg_actor, retailer, customer):
    serials = [batch.units[0].serial_code]
    with pytest.raises(ValidationError):
        lifecycle.dispatch_shipment(session, mfg_actor, customer.id, serials)
    with pytest.raises(NotFoundError):
        lifecycle.dispatch_shipment(session, mfg_actor, retailer.id, ['BATCH-20260112-0001-0999'])
    shipment = lifecycle.dispatch_shipment(session, mfg_actor, retailer.id, serials)
    other = _other_user(session, 'otherstore', models.ROLE_RETAILER)
    with pytest.raises(NotFoundError):
        lifecycle.confirm_shipment(session, Actor.from_user(other), shipment.id)
    # already shipped
    with pytest.raises(InvalidTransitionError):
        lifecycle.dispatch_shipment(session, mfg_actor, retailer.id, serials)


def test_store_and_sell(session, batch, delivered_units, retail_actor, customer):
    entry = lifecycle.store_unit(session, retail_actor, delivered_units[0], location='Shelf B2')
    assert entry.action == models.ACTION_STORED
    assert entry.location == 'Shelf B2'
    assert crud.get_unit_by_serial(session, delivered_units[0]).status == models.UNIT_IN_INVENTORY

    sold = lifecycle.sell_unit(session, retail_actor, delivered_units[0], customer_id=customer.id)
    unit = crud.get_unit_by_serial(session, delivered_units[0])
    assert sold.action == models.ACTION_SOLD
    assert unit.status == models.UNIT_SOLD
    assert unit.holder_id == customer.id
    with pytest.raises(InvalidTransitionError):
        lifecycle.advance(session, retail_actor, unit.id, models.ACTION_SOLD)


def test_sell_requires_holder_and_customer(session, delivered_units, retail_actor, mfg_actor, manufacturer):
    with pytest.raises(PermissionDeniedError):
        lifecycle.store_unit(session, mfg_actor, delivered_units[0])
    with pytest.raises(ValidationError):
        lifecycle.sell_unit(session, retail_actor, delivered_units[0], customer_id=manufacturer.id)


def test_selling_every_unit_completes_batch(session, batch, delivered_units, retail_actor):
    for serial in delivered_units:
        lifecycle.sell_unit(session, retail_actor, serial)
    assert crud.get_batch(session, batch.id).status == models.BATCH_COMPLETED
    assert crud.batch_summary(session, crud.get_batch(session, batch.id))['sold_value'] == Decimal('387')


def test_recall_cascade(session, batch, delivered_units, retail_actor, mfg_actor):
    lifecycle.sell_unit(session, retail_actor, delivered_units[0])
    heads = {u.id: ledger.get_chain_head(session, u.id).current_hash for u in batch.units}

    result = lifecycle.recall(session, mfg_actor, batch.id, 'Thermal runaway risk')
    assert result['recalled_units'] == 2
    assert result['skipped_units'] == 1
    assert result['batch'].status == models.BATCH_RECALLED
    assert result['recall'].status == 'Active'
    assert result['alert'].severity == 'High'
    assert result['alert'].related_id == batch.batch_number

    for unit in crud.get_batch(session, batch.id).units:
        head = ledger.get_chain_head(session, unit.id)
        if unit.serial_code == delivered_units[0]:
            assert unit.status == models.UNIT_SOLD
            assert head.action == models.ACTION_SOLD
        else:
            assert unit.status == models.UNIT_RECALLED
            assert head.action == models.ACTION_RECALLED
            assert head.previous_hash == heads[unit.id]
        assert ledger.verify_chain(session, unit.id)['valid']

    with pytest.raises(InvalidTransitionError):
        lifecycle.recall(session, mfg_actor, batch.id, 'again')
    with pytest.raises(InvalidTransitionError):
        lifecycle.advance(session, retail_actor, batch.units[1].id, models.ACTION_STORED)


def test_concurrent_recall_does_not_duplicate_records(session, batch, mfg_actor):
    lifecycle.recall(session, mfg_actor, batch.id, 'Thermal runaway risk')
    stale = crud.get_batch_or_404(session, batch.id)
    assert stale.status == models.BATCH_RECALLED
    # a second request that read the batch before the first recall committed
    set_committed_value(stale, 'status', models.BATCH_ACTIVE)

    with pytest.raises(InvalidTransitionError):
        lifecycle.recall(session, mfg_actor, batch.id, 'Thermal runaway risk')
    assert session.query(models.Recall).filter(models.Recall.batch_id == batch.id).count() == 1
    assert session.query(models.RiskAlert).filter(models.RiskAlert.alert_type == 'Recall').count() == 1
    assert crud.get_batch(session, batch.id).status == models.BATCH_RECALLED


def test_recall_requires_owner_and_reason(session, batch, mfg_actor):
    other = _other_user(session, 'rival', models.ROLE_MANUFACTURER)
    with pytest.raises(PermissionDeniedError):
        lifecycle.recall(session, Actor.from_user(other), batch.id, 'not mine')
    with pytest.raises(ValidationError):
        lifecycle.recall(session, mfg_actor, batch.id, '  ')
    with pytest.raises(NotFoundError):
        lifecycle.recall(session, mfg_actor, 9999, 'missing')
