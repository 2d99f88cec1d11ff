from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, Text, Numeric, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .db import Base


ROLE_MANUFACTURER = 'Manufacturer'
ROLE_RETAILER = 'Retailer'
ROLE_CUSTOMER = 'Customer'
ROLE_ADMIN = 'Admin'
ROLES = (ROLE_MANUFACTURER, ROLE_RETAILER, ROLE_CUSTOMER, ROLE_ADMIN)

BATCH_ACTIVE = 'Active'
BATCH_COMPLETED = 'Completed'
BATCH_RECALLED = 'Recalled'

UNIT_MANUFACTURED = 'Manufactured'
UNIT_IN_TRANSIT = 'In_Transit'
UNIT_IN_INVENTORY = 'In_Inventory'
UNIT_SOLD = 'Sold'
UNIT_RECALLED = 'Recalled'
UNIT_STATUSES = (UNIT_MANUFACTURED, UNIT_IN_TRANSIT, UNIT_IN_INVENTORY, UNIT_SOLD, UNIT_RECALLED)

ACTION_MANUFACTURED = 'Manufactured'
ACTION_SHIPPED = 'Shipped'
ACTION_RECEIVED = 'Received'
ACTION_STORED = 'Stored'
ACTION_SOLD = 'Sold'
ACTION_RECALLED = 'Recalled'

SCAN_VALID = 'Valid'
SCAN_FAKE = 'Fake'
SCAN_DUPLICATE = 'Duplicate'

SHIPMENT_PENDING = 'Pending'
SHIPMENT_IN_TRANSIT = 'In_Transit'
SHIPMENT_DELIVERED = 'Delivered'

ORDER_B2B = 'B2B'
ORDER_CUSTOMER = 'Customer'

ORDER_PENDING = 'Pending'
ORDER_ACCEPTED = 'Accepted'
ORDER_REJECTED = 'Rejected'
ORDER_SHIPPED = 'Shipped'
ORDER_DELIVERED = 'Delivered'


def utcnow() -> datetime:
    """Naive UTC timestamp truncated to whole seconds.

    Ledger hashes are computed over the stored timestamp, so it must survive
    a round trip through any SQL backend unchanged (MySQL DATETIME drops
    microseconds and every backend here drops tzinfo).
    """
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


class User(Base):
    __tablename__ = 'users'
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(150), unique=True, index=True, nullable=False)
    email = Column(String(254), unique=True, index=True, nullable=True)
    hashed_password = Column(String(512), nullable=False)
    role = Column(String(32), nullable=False, default=ROLE_CUSTOMER)
    display_name = Column(String(254), nullable=True)
    organization = Column(String(254), nullable=True)  # company_name / business_name
    license_number = Column(String(128), nullable=True)
    location = Column(String(254), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def public_name(self) -> str:
        return self.organization or self.display_name or self.username


class AuditLog(Base):
    __tablename__ = 'audit_logs'
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    path = Column(String(1024), nullable=False)
    method = Column(String(10), nullable=False)
    status_code = Column(Integer, nullable=True)
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ProductDefinition(Base):
    __tablename__ = 'product_definitions'
    id = Column(Integer, primary_key=True, index=True)
    manufacturer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    name = Column(String(512), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(128), nullable=True, index=True)
    base_price = Column(Numeric(12, 2), nullable=True)
    image_url = Column(String(1024), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    manufacturer = relationship('User')


class ProductionBatch(Base):
    __tablename__ = 'production_batches'
    id = Column(Integer, primary_key=True, index=True)
    batch_number = Column(String(64), unique=True, index=True, nullable=False)
    product_def_id = Column(Integer, ForeignKey('product_definitions.id'), nullable=False, index=True)
    manufacturer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    manufacturing_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=True)
    status = Column(String(16), nullable=False, default=BATCH_ACTIVE)  # Active, Completed, Recalled
    created_at = Column(DateTime, default=utcnow, nullable=False)

    product = relationship('ProductDefinition')
    manufacturer = relationship('User')
    units = relationship(
        'ProductUnit',
        back_populates='batch',
        cascade='all, delete-orphan',
        passive_deletes=True,
        order_by='ProductUnit.sequence',
    )
    recalls = relationship('Recall', back_populates='batch', cascade='all, delete-orphan', passive_deletes=True)


class ProductUnit(Base):
    __tablename__ = 'product_units'
    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey('production_batches.id', ondelete='CASCADE'), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    serial_code = Column(String(96), unique=True, index=True, nullable=False)
    auth_hash = Column(String(64), nullable=False)
    nonce = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default=UNIT_MANUFACTURED)
    holder_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)  # current retailer/customer
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    batch = relationship('ProductionBatch', back_populates='units')
    holder = relationship('User')
    ledger_entries = relationship(
        'LedgerEntry',
        back_populates='unit',
        cascade='all, delete-orphan',
        passive_deletes=True,
        order_by='LedgerEntry.sequence',
    )


class LedgerEntry(Base):
    __tablename__ = 'ledger_entries'
    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey('product_units.id', ondelete='CASCADE'), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)  # authoritative chain order, 1-based
    action = Column(String(16), nullable=False)
    actor_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    actor_name = Column(String(254), nullable=True)
    location = Column(String(254), nullable=True)
    previous_hash = Column(String(64), nullable=False)
    current_hash = Column(String(64), nullable=False, unique=True, index=True)  # SHA256
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    unit = relationship('ProductUnit', back_populates='ledger_entries')
    __table_args__ = (UniqueConstraint('item_id', 'sequence', name='uq_ledger_item_sequence'),)


class ScanRecord(Base):
    __tablename__ = 'scan_records'
    id = Column(Integer, primary_key=True, index=True)
    serial_code = Column(String(255), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey('product_units.id', ondelete='SET NULL'), nullable=True, index=True)
    scan_result = Column(String(16), nullable=False)  # Valid, Fake, Duplicate
    scanning_user_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    scan_time = Column(DateTime, default=utcnow, nullable=False, index=True)

    unit = relationship('ProductUnit')


class Recall(Base):
    __tablename__ = 'recalls'
    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey('production_batches.id', ondelete='CASCADE'), nullable=False, index=True)
    reason = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default='Active')
    initiated_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    recall_date = Column(DateTime, default=utcnow, nullable=False)

    batch = relationship('ProductionBatch', back_populates='recalls')


class RiskAlert(Base):
    __tablename__ = 'risk_alerts'
    id = Column(Integer, primary_key=True, index=True)
    alert_type = Column(String(64), nullable=False)  # Recall, Counterfeit, ...
    severity = Column(String(16), nullable=False, default='Medium')
    related_entity = Column(String(32), nullable=False)  # Batch, Product
    related_id = Column(String(96), nullable=True, index=True)
    description = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default='New')
    created_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class Shipment(Base):
    __tablename__ = 'shipments'
    id = Column(Integer, primary_key=True, index=True)
    manufacturer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    retailer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=SHIPMENT_PENDING)
    origin = Column(String(254), nullable=True)
    destination = Column(String(254), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    delivered_at = Column(DateTime, nullable=True)

    manufacturer = relationship('User', foreign_keys=[manufacturer_id])
    retailer = relationship('User', foreign_keys=[retailer_id])
    items = relationship('ShipmentItem', back_populates='shipment', cascade='all, delete-orphan')


class ShipmentItem(Base):
    __tablename__ = 'shipment_items'
    id = Column(Integer, primary_key=True, index=True)
    shipment_id = Column(Integer, ForeignKey('shipments.id', ondelete='CASCADE'), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey('product_units.id', ondelete='CASCADE'), nullable=False, index=True)
    __table_args__ = (UniqueConstraint('shipment_id', 'item_id', name='uq_shipment_item'),)

    shipment = relationship('Shipment', back_populates='items')
    unit = relationship('ProductUnit')


class Order(Base):
    """B2B order (retailer buys from a manufacturer) or customer order (customer buys from a retailer)."""
    __tablename__ = 'orders'
    id = Column(Integer, primary_key=True, index=True)
    order_type = Column(String(16), nullable=False, index=True)  # B2B, Customer
    buyer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    product_def_id = Column(Integer, ForeignKey('product_definitions.id'), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=True)
    status = Column(String(16), nullable=False, default=ORDER_PENDING)
    shipment_id = Column(Integer, ForeignKey('shipments.id'), nullable=True, index=True)
    note = Column(Text, nullable=True)  # buyer note or rejection reason
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    buyer = relationship('User', foreign_keys=[buyer_id])
    seller = relationship('User', foreign_keys=[seller_id])
    product = relationship('ProductDefinition')
    shipment = relationship('Shipment')
    items = relationship('OrderItem', back_populates='order', cascade='all, delete-orphan', order_by='OrderItem.id')


class OrderItem(Base):
    __tablename__ = 'order_items'
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey('product_units.id', ondelete='CASCADE'), nullable=False, index=True)
    __table_args__ = (UniqueConstraint('order_id', 'item_id', name='uq_order_item'),)

    order = relationship('Order', back_populates='items')
    unit = relationship('ProductUnit')
