import enum
from decimal import Decimal
from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric, Text, UniqueConstraint, Uuid
from uuid6 import uuid7
from uuid import UUID
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlmodel import Column, SQLModel, Field, String
from backend.common.utils import now

MONEY = Numeric(12, 2)


# ---------------------------------------------------------------------------------------------------------
# catalog & cart (read mostly; the allocator mirrors stock into Product.count_in_stock)

class Product(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(), unique=True, index=True, nullable=False))
    name: str = Field(sa_column=Column(String(255), nullable=False,unique=True))
    price: Decimal = Field(default=Decimal("0.00"), sa_column=Column(MONEY, nullable=False))
    count_in_stock: int = Field(default=0, sa_column=Column(Integer(), nullable=False))
    created_at: datetime = Field(default_factory=now,
        sa_column=Column(DateTime(timezone=True), nullable=False,default=now))
    updated_at: datetime = Field(default_factory=now,
        sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))


class Cart(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(sa_column=Column(Integer, nullable=False, index=True, unique=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now,sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))


class CartItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    cart_id: int = Field(sa_column=Column(ForeignKey("cart.id", ondelete="CASCADE"), nullable=False, index=True))
    product_id: int = Field(sa_column=Column(ForeignKey("product.id", ondelete="CASCADE"), nullable=False))
    size: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))
    quantity: int = Field(default=1)
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

    __table_args__ = (
        UniqueConstraint("cart_id", "product_id", "size", name="uq_cart_product_size"),
    )


class Voucher(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(sa_column=Column(String(64), nullable=False, unique=True, index=True))
    discount_amount: Decimal = Field(default=Decimal("0.00"), sa_column=Column(MONEY, nullable=False))
    max_uses: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))  # None = unlimited
    used_count: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))


# ---------------------------------------------------------------------------------------------------------
# inventory

class InventoryStatus(str, enum.Enum):
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"

class InventoryTxnKind(str, enum.Enum):
    ALLOCATE = "allocate"
    RELEASE = "release"
    RESTORE = "restore"
    ADJUST = "adjust"

class AllocationMode(str, enum.Enum):
    HOLD = "hold"          # checkout time: stock moved to reserved
    CONSUME = "consume"    # post payment: final deduction
    RELEASED = "released"  # hold reversed, terminal


class InventoryItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(), unique=True, index=True, nullable=False))
    product_id: Optional[int] = Field(default=None, sa_column=Column(ForeignKey("product.id", ondelete="SET NULL"), nullable=True, unique=True))
    name: str = Field(sa_column=Column(String(255), nullable=False))
    # when size rows exist this is always the sum of their quantities
    quantity: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    reserved: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    low_stock_threshold: int = Field(default=10, sa_column=Column(Integer, nullable=False))
    status: str = Field(default=InventoryStatus.OUT_OF_STOCK.value, sa_column=Column(String(16), nullable=False, index=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now,sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventoryitem_quantity_nonneg"),
        CheckConstraint("reserved >= 0", name="ck_inventoryitem_reserved_nonneg"),
    )


class InventorySizeStock(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    inventory_id: int = Field(sa_column=Column(ForeignKey("inventoryitem.id", ondelete="CASCADE"), nullable=False, index=True))
    size: str = Field(sa_column=Column(String(16), nullable=False))
    quantity: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    reserved: int = Field(default=0, sa_column=Column(Integer, nullable=False))

    __table_args__ = (
        UniqueConstraint("inventory_id", "size", name="uq_inventory_size"),
        CheckConstraint("quantity >= 0", name="ck_inventorysize_quantity_nonneg"),
        CheckConstraint("reserved >= 0", name="ck_inventorysize_reserved_nonneg"),
    )


# append only, never updated
class InventoryTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    inventory_id: int = Field(sa_column=Column(ForeignKey("inventoryitem.id", ondelete="RESTRICT"), nullable=False, index=True))
    order_id: Optional[int] = Field(default=None, sa_column=Column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True))
    signed_qty: int = Field(sa_column=Column(Integer, nullable=False))
    size_breakdown: Optional[Dict[str, int]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    kind: str = Field(sa_column=Column(String(16), nullable=False, index=True))
    mode: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))
    note: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    actor_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))


# ---------------------------------------------------------------------------------------------------------
# orders

class OrderKind(str, enum.Enum):
    PRODUCT = "product"
    SERVICE = "service"

class ProductOrderStatus(enum.IntEnum):
    PROCESSING = 0
    ACCEPTED = 10
    SHIPPED = 20
    DELIVERED = 30
    CANCELLED = 90

class ServiceOrderStatus(enum.IntEnum):
    PENDING_QUOTE = 0
    QUOTE_SENT = 10
    PENDING_DOWNPAYMENT = 20
    IN_PRODUCTION = 30
    PENDING_BALANCE = 40
    PENDING_FINAL_VERIFICATION = 50
    COMPLETED = 60
    CANCELLED = 90

class PaymentStatus(enum.IntEnum):
    PENDING = 0
    RECEIVED = 10
    FAILED = 20
    REJECTED = 30

class PaymentOption(str, enum.Enum):
    FULL = "full"
    DOWNPAYMENT = "downpayment"

class PaymentPurpose(str, enum.Enum):
    FULL = "full"
    DOWNPAYMENT = "downpayment"
    BALANCE = "balance"


class Orders(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(), unique=True, index=True, nullable=False))
    # customer facing short code, last 8 hex chars of public_id
    reference: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True, index=True))
    kind: str = Field(default=OrderKind.PRODUCT.value, sa_column=Column(String(16), nullable=False, index=True))
    user_id: int = Field(sa_column=Column(Integer, nullable=False, index=True))
    status: int = Field(default=0, sa_column=Column(Integer, nullable=False, index=True))
    payment_status: int = Field(default=PaymentStatus.PENDING.value, sa_column=Column(Integer, nullable=False, index=True))
    payment_option: str = Field(default=PaymentOption.FULL.value, sa_column=Column(String(16), nullable=False))
    currency: str = Field(default="PHP", sa_column=Column(String(8), nullable=False))

    subtotal: Decimal = Field(default=Decimal("0.00"), sa_column=Column(MONEY, nullable=False))
    discount: Decimal = Field(default=Decimal("0.00"), sa_column=Column(MONEY, nullable=False))
    delivery_fee: Decimal = Field(default=Decimal("0.00"), sa_column=Column(MONEY, nullable=False))
    vat_amount: Decimal = Field(default=Decimal("0.00"), sa_column=Column(MONEY, nullable=False))
    total_amount: Decimal = Field(default=Decimal("0.00"), sa_column=Column(MONEY, nullable=False))

    # gateway checkout session id of the latest session; webhook events are correlated through it
    payment_session_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, unique=True))
    down_payment_paid: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    balance_paid: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    payment_type: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    amount_paid: Decimal = Field(default=Decimal("0.00"), sa_column=Column(MONEY, nullable=False))
    last_paid_amount: Optional[Decimal] = Field(default=None, sa_column=Column(MONEY, nullable=True))
    paid_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    inventory_allocated: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    allocated_items: Optional[List[Dict[str, Any]]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    allocation_mode: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))
    inventory_flagged: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False, index=True))
    inventory_flag_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    needs_reconciliation: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False, index=True))
    reconciliation_note: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    voucher_code: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    service_description: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    cancelled_by: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))  # 'user'|'admin'
    cancellation_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    cancelled_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now,sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))


# Order --> OrderItems (1:many)
class OrderItem(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True))
    product_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("product.id", ondelete="SET NULL"), nullable=True))
    inventory_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("inventoryitem.id", ondelete="SET NULL"), nullable=True))
    name: str = Field(sa_column=Column(String(255), nullable=False))
    size: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))
    quantity: int = Field(sa_column=Column(Integer, nullable=False))
    unit_price: Decimal = Field(default=Decimal("0.00"), sa_column=Column(MONEY, nullable=False))

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_orderitem_quantity_pos"),
    )


# one row per gateway checkout session
class Payment(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(), unique=True, index=True, nullable=False))
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True))
    provider: str = Field(default="paymongo", sa_column=Column(String(64), nullable=False))
    provider_session_id: str = Field(sa_column=Column(String(128), nullable=False, unique=True))
    provider_payment_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, unique=True))
    purpose: str = Field(default=PaymentPurpose.FULL.value, sa_column=Column(String(16), nullable=False))
    amount: Decimal = Field(sa_column=Column(MONEY, nullable=False))
    amount_paid: Optional[Decimal] = Field(default=None, sa_column=Column(MONEY, nullable=True))
    status: int = Field(default=PaymentStatus.PENDING.value, sa_column=Column(Integer, nullable=False, index=True))
    checkout_url: Optional[str] = Field(default=None, sa_column=Column(String(1024), nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    paid_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


class Receipt(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    receipt_number: str = Field(sa_column=Column(String(64), nullable=False, unique=True))
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True))
    payment_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("payment.id", ondelete="SET NULL"), nullable=True, unique=True))
    amount: Decimal = Field(sa_column=Column(MONEY, nullable=False))
    payment_type: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    issued_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))


# ---------------------------------------------------------------------------------------------------------
# webhook idempotency ledger

class WebhookEvent(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(default="paymongo", sa_column=Column(String(64), nullable=False, index=True))
    # NULL for bodies that could not be parsed; unique ids otherwise
    external_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, unique=True))
    event_type: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    raw_body: str = Field(default="", sa_column=Column(Text, nullable=False))
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    signature: Optional[str] = Field(default=None, sa_column=Column(String(256), nullable=True))
    verified: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False, index=True))
    processed: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False, index=True))
    processed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    result: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    needs_review: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False, index=True))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    attempts: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))
    order_id: Optional[int] = Field(default=None, sa_column=Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))


# ---------------------------------------------------------------------------------------------------------
# transactional outbox for post payment side effects

class OutboxEventStatus(enum.IntEnum):
    PENDING = 0
    DONE = 10
    FAILED = 20


class OutboxEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    topic: str = Field(sa_column=Column(String(128), nullable=False, index=True))
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    aggregate_type: Optional[str] = Field(default=None, sa_column=Column(String(32), nullable=True))
    aggregate_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True, index=True))
    dedupe_key: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    status: int = Field(default=OutboxEventStatus.PENDING.value, sa_column=Column(Integer, nullable=False, index=True))
    attempts: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    next_retry_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True, index=True))
    locked_until: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now,sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))
