import pytest

from besspas import crud, ledger, lifecycle, models
from besspas.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from besspas.security import Actor


def _other_user(session, username, role):
    user = models.User(username=username, hashed_password='x', role=role, is_active=True)
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def customer_actor(customer):
    return Actor.from_user(customer)


def test_b2b_order_accept_dispatches_shipment(session, batch, product, retailer, retail_actor, mfg_actor):
    order = lifecycle.place_b2b_order(session, retail_actor, product.id, 2, note='Restock before Diwali')
    assert order.status == models.ORDER_PENDING
    assert order.seller_id == batch.manufacturer_id
    assert crud.order_summary(order)['total_amount'] == 258

    order = lifecycle.accept_b2b_order(session, mfg_actor, order.id)
    assert order.status == models.ORDER_SHIPPED
    shipment = crud.get_shipment(session, order.shipment_id)
    assert shipment.retailer_id == retailer.id
    assert shipment.status == models.SHIPMENT_IN_TRANSIT
    serials = crud.order_summary(order)['serial_codes']
    assert serials == [u.serial_code for u in batch.units[:2]]
    for s in serials:
        unit = crud.get_unit_by_serial(session, s)
        assert unit.status == models.UNIT_IN_TRANSIT
        assert unit.ledger_entries[-1].action == models.ACTION_SHIPPED
    assert crud.get_unit_by_serial(session, batch.units[2].serial_code).status == models.UNIT_MANUFACTURED

    lifecycle.confirm_shipment(session, retail_actor, shipment.id)
    assert crud.get_order(session, order.id).status == models.ORDER_DELIVERED
    for s in serials:
        unit = crud.get_unit_by_serial(session, s)
        assert unit.status == models.UNIT_IN_INVENTORY
        assert unit.holder_id == retailer.id
        assert ledger.verify_chain(session, unit.id)['valid']


def test_b2b_order_reject(session, batch, product, retail_actor, mfg_actor):
    order = lifecycle.place_b2b_order(session, retail_actor, product.id, 1)
    with pytest.raises(ValidationError):
        lifecycle.reject_b2b_order(session, mfg_actor, order.id, ' ')

    order = lifecycle.reject_b2b_order(session, mfg_actor, order.id, 'Line shut for maintenance')
    assert order.status == models.ORDER_REJECTED
    assert order.note == 'Line shut for maintenance'
    assert order.shipment_id is None

    with pytest.raises(InvalidTransitionError):
        lifecycle.reject_b2b_order(session, mfg_actor, order.id, 'again')
    with pytest.raises(InvalidTransitionError):
        lifecycle.accept_b2b_order(session, mfg_actor, order.id)
    assert all(u.status == models.UNIT_MANUFACTURED for u in crud.get_batch(session, batch.id).units)


def test_b2b_order_rules(session, batch, product, retail_actor, mfg_actor, customer_actor):
    with pytest.raises(PermissionDeniedError):
        lifecycle.place_b2b_order(session, customer_actor, product.id, 1)
    with pytest.raises(ValidationError):
        lifecycle.place_b2b_order(session, retail_actor, product.id, 0)
    with pytest.raises(NotFoundError):
        lifecycle.place_b2b_order(session, retail_actor, 9999, 1)

    big = lifecycle.place_b2b_order(session, retail_actor, product.id, 5)
    with pytest.raises(ValidationError):
        lifecycle.accept_b2b_order(session, mfg_actor, big.id)
    assert crud.get_order(session, big.id).status == models.ORDER_PENDING
    assert session.query(models.Shipment).count() == 0

    rival = Actor.from_user(_other_user(session, 'rival', models.ROLE_MANUFACTURER))
    order = lifecycle.place_b2b_order(session, retail_actor, product.id, 1)
    with pytest.raises(NotFoundError):
        lifecycle.accept_b2b_order(session, rival, order.id)
    # B2B orders are not reachable through the customer-order flow
    with pytest.raises(NotFoundError):
        lifecycle.accept_customer_order(session, retail_actor, order.id)


def test_b2b_order_skips_recalled_stock(session, batch, product, retail_actor, mfg_actor):
    order = lifecycle.place_b2b_order(session, retail_actor, product.id, 1)
    lifecycle.recall(session, mfg_actor, batch.id, 'Cell swelling')
    with pytest.raises(ValidationError):
        lifecycle.accept_b2b_order(session, mfg_actor, order.id)


def test_customer_order_accept_ship_receive(session, batch, product, delivered_units, retailer, retail_actor, customer, customer_actor):
    order = lifecycle.place_customer_order(session, customer_actor, retailer.id, product.id, 2)
    assert order.status == models.ORDER_PENDING
    assert order.buyer_id == customer.id

    order = lifecycle.accept_customer_order(session, retail_actor, order.id)
    assert order.status == models.ORDER_ACCEPTED
    reserved = crud.order_summary(order)['serial_codes']
    assert reserved == delivered_units[:2]
    assert all(crud.get_unit_by_serial(session, s).status == models.UNIT_IN_INVENTORY for s in reserved)

    order = lifecycle.ship_customer_order(session, retail_actor, order.id, location='Mumbai store')
    assert order.status == models.ORDER_SHIPPED
    for s in reserved:
        unit = crud.get_unit_by_serial(session, s)
        assert unit.status == models.UNIT_SOLD
        assert unit.holder_id == customer.id
        head = ledger.get_chain_head(session, unit.id)
        assert head.action == models.ACTION_SOLD
        assert head.location == 'Mumbai store'
        assert ledger.verify_chain(session, unit.id)['valid']
    assert crud.get_unit_by_serial(session, delivered_units[2]).status == models.UNIT_IN_INVENTORY

    order = lifecycle.confirm_order_received(session, customer_actor, order.id)
    assert order.status == models.ORDER_DELIVERED
    with pytest.raises(InvalidTransitionError):
        lifecycle.confirm_order_received(session, customer_actor, order.id)


def test_customer_order_stock_and_reservation(session, product, delivered_units, retailer, retail_actor, customer_actor):
    with pytest.raises(ValidationError) as exc_info:
        lifecycle.place_customer_order(session, customer_actor, retailer.id, product.id, 4)
    assert 'Available: 3' in exc_info.value.message

    first = lifecycle.place_customer_order(session, customer_actor, retailer.id, product.id, 2)
    second = lifecycle.place_customer_order(session, customer_actor, retailer.id, product.id, 2)
    lifecycle.accept_customer_order(session, retail_actor, first.id)
    with pytest.raises(ValidationError):
        lifecycle.accept_customer_order(session, retail_actor, second.id)
    assert crud.get_order(session, second.id).status == models.ORDER_PENDING
    assert not crud.get_order(session, second.id).items


def test_customer_order_parties(session, product, delivered_units, retailer, retail_actor, manufacturer, customer_actor):
    with pytest.raises(ValidationError):
        lifecycle.place_customer_order(session, customer_actor, manufacturer.id, product.id, 1)

    order = lifecycle.place_customer_order(session, customer_actor, retailer.id, product.id, 1)
    with pytest.raises(InvalidTransitionError):
        lifecycle.ship_customer_order(session, retail_actor, order.id)

    other_store = Actor.from_user(_other_user(session, 'otherstore', models.ROLE_RETAILER))
    with pytest.raises(NotFoundError):
        lifecycle.accept_customer_order(session, other_store, order.id)

    lifecycle.accept_customer_order(session, retail_actor, order.id)
    lifecycle.ship_customer_order(session, retail_actor, order.id)
    bob = Actor.from_user(_other_user(session, 'bob', models.ROLE_CUSTOMER))
    with pytest.raises(NotFoundError):
        lifecycle.confirm_order_received(session, bob, order.id)


def test_ship_fails_when_reserved_unit_recalled(session, batch, product, delivered_units, retailer, retail_actor, mfg_actor, customer_actor):
    order = lifecycle.place_customer_order(session, customer_actor, retailer.id, product.id, 2)
    lifecycle.accept_customer_order(session, retail_actor, order.id)
    lifecycle.recall(session, mfg_actor, batch.id, 'Thermal runaway risk')

    with pytest.raises(InvalidTransitionError):
        lifecycle.ship_customer_order(session, retail_actor, order.id)
    assert crud.get_order(session, order.id).status == models.ORDER_ACCEPTED
    assert session.query(models.LedgerEntry).filter(models.LedgerEntry.action == models.ACTION_SOLD).count() == 0
    assert all(crud.get_unit_by_serial(session, s).status == models.UNIT_RECALLED for s in delivered_units)
