from pydantic import BaseModel, EmailStr, Field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Literal


Role = Literal['Manufacturer', 'Retailer', 'Customer', 'Admin']


# User schemas
class UserCreate(BaseModel):
    username: str
    password: str
    role: Role = 'Customer'
    email: Optional[EmailStr] = None
    display_name: Optional[str] = None
    organization: Optional[str] = None
    license_number: Optional[str] = None
    location: Optional[str] = None


class UserOut(BaseModel):
    id: int
    username: str
    email: Optional[EmailStr] = None
    role: str
    display_name: Optional[str] = None
    organization: Optional[str] = None
    license_number: Optional[str] = None
    location: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str = 'bearer'
    user: Optional[UserOut] = None


# Product definitions
class ProductDefinitionCreate(BaseModel):
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    base_price: Optional[Decimal] = None
    image_url: Optional[str] = None


class ProductDefinitionOut(BaseModel):
    id: int
    manufacturer_id: int
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    base_price: Optional[Decimal] = None
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Production
class ProductionCreate(BaseModel):
    product_def_id: int
    quantity: int = Field(..., ge=1)
    manufacturing_date: date
    expiry_date: Optional[date] = None
    location: Optional[str] = None


class BatchOut(BaseModel):
    batch_id: int
    batch_number: str
    product_def_id: int
    product_name: Optional[str] = None
    manufacturer_id: int
    quantity: int
    total_items: int
    status_counts: Dict[str, int]
    sold_value: Optional[Decimal] = None  # units sold x list price
    manufacturing_date: date
    expiry_date: Optional[date] = None
    status: str
    created_at: datetime


class QRCodeOut(BaseModel):
    serial_code: str
    qr_code: str  # data URL, or SVG markup when format=svg


class RecallCreate(BaseModel):
    reason: str


class RecallOut(BaseModel):
    recall_id: int
    batch: BatchOut
    recalled_units: int
    skipped_units: int
    alert_id: int


# Ledger
class LedgerEntryOut(BaseModel):
    entry_id: int
    item_id: int
    serial_code: str
    batch_id: int
    batch_number: str
    sequence: int
    action: str
    actor_id: Optional[int] = None
    actor_name: Optional[str] = None
    location: Optional[str] = None
    previous_hash: str
    current_hash: str
    created_at: datetime


class LedgerBatchGroup(BaseModel):
    batch_id: int
    batch_number: str
    entries: List[LedgerEntryOut]


class LedgerListOut(BaseModel):
    entries: Optional[List[LedgerEntryOut]] = None
    batches: Optional[List[LedgerBatchGroup]] = None


class ChainVerificationOut(BaseModel):
    item_id: int
    serial_code: str
    valid: bool
    broken_at: Optional[int] = None
    reason: str
    entries: int


class BatchAuditOut(BaseModel):
    batch_id: int
    batch_number: str
    units_checked: int
    valid: bool
    broken: List[ChainVerificationOut]


# Shipments and unit actions
class ShipmentCreate(BaseModel):
    retailer_id: int
    serial_codes: List[str]
    origin: Optional[str] = None
    destination: Optional[str] = None


class ShipmentConfirm(BaseModel):
    location: Optional[str] = None


class ShipmentOut(BaseModel):
    shipment_id: int
    manufacturer_id: int
    manufacturer_name: Optional[str] = None
    retailer_id: int
    retailer_name: Optional[str] = None
    status: str
    origin: Optional[str] = None
    destination: Optional[str] = None
    created_at: datetime
    delivered_at: Optional[datetime] = None
    serial_codes: List[str]


class B2BOrderCreate(BaseModel):
    product_def_id: int
    quantity: int
    note: Optional[str] = None


class CustomerOrderCreate(BaseModel):
    retailer_id: int
    product_def_id: int
    quantity: int
    note: Optional[str] = None


class OrderAccept(BaseModel):
    origin: Optional[str] = None
    destination: Optional[str] = None


class OrderReject(BaseModel):
    reason: str


class OrderOut(BaseModel):
    order_id: int
    order_type: str
    buyer_id: int
    buyer_name: Optional[str] = None
    seller_id: int
    seller_name: Optional[str] = None
    product_def_id: int
    product_name: Optional[str] = None
    quantity: int
    unit_price: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    status: str
    shipment_id: Optional[int] = None
    note: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    serial_codes: List[str]


class UnitAction(BaseModel):
    location: Optional[str] = None


class SellRequest(BaseModel):
    customer_id: Optional[int] = None
    location: Optional[str] = None


class UnitLedgerOut(BaseModel):
    serial_code: str
    status: str
    entry_id: int
    sequence: int
    action: str
    current_hash: str
    previous_hash: str


# Reports, alerts, verification history
class ReportCreate(BaseModel):
    serial_code: str
    issue_type: str
    description: Optional[str] = None
    product_name: Optional[str] = None


class RiskAlertOut(BaseModel):
    id: int
    alert_type: str
    severity: str
    related_entity: str
    related_id: Optional[str] = None
    description: Optional[str] = None
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


class VerificationHistoryOut(BaseModel):
    scan_id: int
    serial_code: str
    scan_result: str
    scan_time: datetime
    product_status: Optional[str] = None
    product_name: Optional[str] = None
    category: Optional[str] = None
    batch_number: Optional[str] = None
    manufacturing_date: Optional[date] = None
    expiry_date: Optional[date] = None
