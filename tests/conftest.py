import os
import sys
import tempfile
from datetime import date

import pytest

# Ensure backend package importable when running tests from repo root
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
BACKEND = os.path.join(ROOT, 'backend')
if BACKEND not in sys.path:
    sys.path.insert(0, BACKEND)

os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')
os.environ.setdefault('BESS_LOG_DIR', tempfile.mkdtemp(prefix='besspas-logs-'))

from besspas import db as app_db  # noqa: E402
from besspas import lifecycle, models  # noqa: E402
from besspas.security import Actor, create_access_token, get_password_hash  # noqa: E402


MFG_DATE = date(2026, 1, 12)
FAR_EXPIRY = date(2099, 12, 31)


@pytest.fixture
def session():
    # fresh in-memory SQLite per test
    engine = app_db.create_test_engine()
    s = app_db.create_test_session(engine)
    try:
        yield s
    finally:
        s.close()
        engine.dispose()


def make_user(session, username, role, **extra):
    user = models.User(
        username=username,
        hashed_password=get_password_hash('secret'),
        role=role,
        is_active=True,
        **extra,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def manufacturer(session):
    return make_user(session, 'acme', models.ROLE_MANUFACTURER, organization='Acme Batteries', license_number='MFG-1', location='Pune')


@pytest.fixture
def retailer(session):
    return make_user(session, 'corner', models.ROLE_RETAILER, organization='Corner Electronics', location='Mumbai')


@pytest.fixture
def customer(session):
    return make_user(session, 'alice', models.ROLE_CUSTOMER, display_name='Alice')


@pytest.fixture
def admin(session):
    return make_user(session, 'root', models.ROLE_ADMIN)


@pytest.fixture
def mfg_actor(manufacturer):
    return Actor.from_user(manufacturer)


@pytest.fixture
def retail_actor(retailer):
    return Actor.from_user(retailer)


@pytest.fixture
def product(session, manufacturer):
    p = models.ProductDefinition(
        manufacturer_id=manufacturer.id,
        name='LiFePO4 Cell 100Ah',
        category='Battery',
        base_price=129,
    )
    session.add(p)
    session.commit()
    session.refresh(p)
    return p


@pytest.fixture
def batch(session, mfg_actor, product):
    return lifecycle.create_batch(session, mfg_actor, product.id, 3, MFG_DATE, FAR_EXPIRY, location='Pune plant')


@pytest.fixture
def delivered_units(session, batch, mfg_actor, retail_actor):
    """Serial codes of the batch after shipping to and receiving at the retailer."""
    serials = [u.serial_code for u in batch.units]
    shipment = lifecycle.dispatch_shipment(session, mfg_actor, retail_actor.user_id, serials)
    lifecycle.confirm_shipment(session, retail_actor, shipment.id)
    return serials


@pytest.fixture
def client(session):
    from fastapi.testclient import TestClient
    from besspas.main import app

    def _get_db():
        yield session

    app.dependency_overrides[app_db.get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user):
    return {'Authorization': f'Bearer {create_access_token(user.username, user.role)}'}


@pytest.fixture
def headers_for():
    return auth_headers
