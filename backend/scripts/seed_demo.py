#!/usr/bin/env python3
"""Seed demo data for BESS-PAS: one user per role, two products, a batch moved
through shipment and sale so the verification pages have something to show."""
import os
import sys
import traceback
from datetime import date, timedelta

ROOT = os.path.dirname(os.path.dirname(__file__))
sys.path.insert(0, ROOT)

from besspas import db, crud, lifecycle, models, schemas
from besspas.security import Actor, get_password_hash


DEMO_USERS = [
    dict(username='admin', role=models.ROLE_ADMIN, display_name='Administrator', email='admin@example.com'),
    dict(username='acme', role=models.ROLE_MANUFACTURER, organization='Acme Batteries Ltd', license_number='MFG-0001', location='Pune'),
    dict(username='corner', role=models.ROLE_RETAILER, organization='Corner Electronics', license_number='RTL-0001', location='Mumbai'),
    dict(username='alice', role=models.ROLE_CUSTOMER, display_name='Alice', email='alice@example.com'),
]


def _ensure_user(session, fields):
    user = crud.get_user_by_username(session, fields['username'])
    if user:
        print(f"[SEED] User {fields['username']} already exists", flush=True)
        return user
    user = models.User(hashed_password=get_password_hash(fields['username']), is_active=True, **fields)
    session.add(user)
    session.commit()
    session.refresh(user)
    print(f"[SEED] Created {user.role} user {user.username}", flush=True)
    return user


def seed():
    db.Base.metadata.create_all(bind=db.engine)
    session = db.SessionLocal()
    try:
        print("[SEED] Starting demo data seeding", flush=True)
        users = {fields['username']: _ensure_user(session, fields) for fields in DEMO_USERS}
        manufacturer = Actor.from_user(users['acme'])
        retailer = Actor.from_user(users['corner'])

        products = crud.get_product_definitions(session, manufacturer.user_id)
        if not products:
            for name, category, price in [('LiFePO4 Cell 100Ah', 'Battery', '129.00'), ('Battery Management Board', 'Electronics', '45.50')]:
                products.append(crud.create_product_definition(session, manufacturer.user_id, schemas.ProductDefinitionCreate(
                    name=name,
                    category=category,
                    base_price=price,
                    description=f'Demo {category.lower()} product',
                )))
                print(f"[SEED] Created product {name}", flush=True)

        if crud.list_batches(session, manufacturer.user_id):
            print("[SEED] Batches already exist, skipping supply chain demo", flush=True)
            return

        today = date.today()
        batch = lifecycle.create_batch(
            session, manufacturer, products[0].id, 10, today, today + timedelta(days=730), location='Pune plant'
        )
        print(f"[SEED] Created batch {batch.batch_number} with {batch.quantity} units", flush=True)

        serials = [u.serial_code for u in batch.units[:5]]
        shipment = lifecycle.dispatch_shipment(session, manufacturer, retailer.user_id, serials, origin='Pune plant', destination='Mumbai store')
        lifecycle.confirm_shipment(session, retailer, shipment.id, location='Mumbai store')
        print(f"[SEED] Shipment {shipment.id} delivered to {retailer.name}", flush=True)

        lifecycle.store_unit(session, retailer, serials[0], location='Shelf A1')
        lifecycle.sell_unit(session, retailer, serials[0], customer_id=users['alice'].id, location='Mumbai store')
        print(f"[SEED] Sold {serials[0]} to alice", flush=True)

        print('[SEED] Seeding completed successfully', flush=True)
    except Exception as e:
        print(f'[SEED] ERROR: {e}', flush=True)
        traceback.print_exc()
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == '__main__':
    seed()
