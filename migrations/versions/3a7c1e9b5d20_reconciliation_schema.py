"""reconciliation schema: catalog, inventory, orders, payments, webhook ledger, outbox

Revision ID: 3a7c1e9b5d20
Revises:
Create Date: 2026-10-18 09:12:41.518230

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3a7c1e9b5d20'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(12, 2)


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'product',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False, unique=True),
        sa.Column('price', MONEY, nullable=False),
        sa.Column('count_in_stock', sa.Integer(), nullable=False),
        _ts('created_at'), _ts('updated_at'),
    )
    op.create_index('ix_product_public_id', 'product', ['public_id'], unique=True)

    op.create_table(
        'cart',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        _ts('created_at'), _ts('updated_at'),
    )
    op.create_index('ix_cart_user_id', 'cart', ['user_id'], unique=True)

    op.create_table(
        'cartitem',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('cart_id', sa.Integer(), sa.ForeignKey('cart.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('product.id', ondelete='CASCADE'), nullable=False),
        sa.Column('size', sa.String(16), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        _ts('created_at'),
        sa.UniqueConstraint('cart_id', 'product_id', 'size', name='uq_cart_product_size'),
    )
    op.create_index('ix_cartitem_cart_id', 'cartitem', ['cart_id'])

    op.create_table(
        'voucher',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('discount_amount', MONEY, nullable=False),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('used_count', sa.Integer(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False),
        _ts('created_at'),
    )
    op.create_index('ix_voucher_code', 'voucher', ['code'], unique=True)

    op.create_table(
        'inventoryitem',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('product.id', ondelete='SET NULL'), nullable=True, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('reserved', sa.Integer(), nullable=False),
        sa.Column('low_stock_threshold', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        _ts('created_at'), _ts('updated_at'),
        sa.CheckConstraint('quantity >= 0', name='ck_inventoryitem_quantity_nonneg'),
        sa.CheckConstraint('reserved >= 0', name='ck_inventoryitem_reserved_nonneg'),
    )
    op.create_index('ix_inventoryitem_public_id', 'inventoryitem', ['public_id'], unique=True)
    op.create_index('ix_inventoryitem_status', 'inventoryitem', ['status'])

    op.create_table(
        'inventorysizestock',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('inventory_id', sa.Integer(), sa.ForeignKey('inventoryitem.id', ondelete='CASCADE'), nullable=False),
        sa.Column('size', sa.String(16), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('reserved', sa.Integer(), nullable=False),
        sa.UniqueConstraint('inventory_id', 'size', name='uq_inventory_size'),
        sa.CheckConstraint('quantity >= 0', name='ck_inventorysize_quantity_nonneg'),
        sa.CheckConstraint('reserved >= 0', name='ck_inventorysize_reserved_nonneg'),
    )
    op.create_index('ix_inventorysizestock_inventory_id', 'inventorysizestock', ['inventory_id'])

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('reference', sa.String(16), nullable=True),
        sa.Column('kind', sa.String(16), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.Integer(), nullable=False),
        sa.Column('payment_status', sa.Integer(), nullable=False),
        sa.Column('payment_option', sa.String(16), nullable=False),
        sa.Column('currency', sa.String(8), nullable=False),
        sa.Column('subtotal', MONEY, nullable=False),
        sa.Column('discount', MONEY, nullable=False),
        sa.Column('delivery_fee', MONEY, nullable=False),
        sa.Column('vat_amount', MONEY, nullable=False),
        sa.Column('total_amount', MONEY, nullable=False),
        sa.Column('payment_session_id', sa.String(128), nullable=True, unique=True),
        sa.Column('down_payment_paid', sa.Boolean(), nullable=False),
        sa.Column('balance_paid', sa.Boolean(), nullable=False),
        sa.Column('payment_type', sa.String(32), nullable=True),
        sa.Column('amount_paid', MONEY, nullable=False),
        sa.Column('last_paid_amount', MONEY, nullable=True),
        _ts('paid_at', nullable=True),
        sa.Column('inventory_allocated', sa.Boolean(), nullable=False),
        sa.Column('allocated_items', sa.JSON(), nullable=True),
        sa.Column('allocation_mode', sa.String(16), nullable=True),
        sa.Column('inventory_flagged', sa.Boolean(), nullable=False),
        sa.Column('inventory_flag_reason', sa.Text(), nullable=True),
        sa.Column('needs_reconciliation', sa.Boolean(), nullable=False),
        sa.Column('reconciliation_note', sa.Text(), nullable=True),
        sa.Column('voucher_code', sa.String(64), nullable=True),
        sa.Column('service_description', sa.Text(), nullable=True),
        sa.Column('cancelled_by', sa.String(16), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        _ts('cancelled_at', nullable=True),
        _ts('created_at'), _ts('updated_at'),
    )
    op.create_index('ix_orders_public_id', 'orders', ['public_id'], unique=True)
    for col in ('reference', 'kind', 'user_id', 'status', 'payment_status', 'inventory_flagged', 'needs_reconciliation'):
        op.create_index(f'ix_orders_{col}', 'orders', [col])

    op.create_table(
        'orderitem',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('product.id', ondelete='SET NULL'), nullable=True),
        sa.Column('inventory_id', sa.Integer(), sa.ForeignKey('inventoryitem.id', ondelete='SET NULL'), nullable=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('size', sa.String(16), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', MONEY, nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_orderitem_quantity_pos'),
    )
    op.create_index('ix_orderitem_order_id', 'orderitem', ['order_id'])

    op.create_table(
        'inventorytransaction',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('inventory_id', sa.Integer(), sa.ForeignKey('inventoryitem.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='SET NULL'), nullable=True),
        sa.Column('signed_qty', sa.Integer(), nullable=False),
        sa.Column('size_breakdown', sa.JSON(), nullable=True),
        sa.Column('kind', sa.String(16), nullable=False),
        sa.Column('mode', sa.String(16), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        _ts('created_at'),
    )
    for col in ('inventory_id', 'order_id', 'kind'):
        op.create_index(f'ix_inventorytransaction_{col}', 'inventorytransaction', [col])

    op.create_table(
        'payment',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(64), nullable=False),
        sa.Column('provider_session_id', sa.String(128), nullable=False, unique=True),
        sa.Column('provider_payment_id', sa.String(128), nullable=True, unique=True),
        sa.Column('purpose', sa.String(16), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('amount_paid', MONEY, nullable=True),
        sa.Column('status', sa.Integer(), nullable=False),
        sa.Column('checkout_url', sa.String(1024), nullable=True),
        _ts('created_at'), _ts('paid_at', nullable=True),
    )
    op.create_index('ix_payment_public_id', 'payment', ['public_id'], unique=True)
    op.create_index('ix_payment_order_id', 'payment', ['order_id'])
    op.create_index('ix_payment_status', 'payment', ['status'])

    op.create_table(
        'receipt',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('receipt_number', sa.String(64), nullable=False, unique=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payment.id', ondelete='SET NULL'), nullable=True, unique=True),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('payment_type', sa.String(32), nullable=True),
        _ts('issued_at'),
    )
    op.create_index('ix_receipt_order_id', 'receipt', ['order_id'])

    op.create_table(
        'webhookevent',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider', sa.String(64), nullable=False),
        sa.Column('external_id', sa.String(128), nullable=True, unique=True),
        sa.Column('event_type', sa.String(128), nullable=True),
        sa.Column('raw_body', sa.Text(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('signature', sa.String(256), nullable=True),
        sa.Column('verified', sa.Boolean(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False),
        _ts('processed_at', nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('needs_review', sa.Boolean(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='SET NULL'), nullable=True),
        _ts('created_at'),
    )
    for col in ('provider', 'verified', 'processed', 'needs_review', 'order_id'):
        op.create_index(f'ix_webhookevent_{col}', 'webhookevent', [col])

    op.create_table(
        'outboxevent',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('topic', sa.String(128), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('aggregate_type', sa.String(32), nullable=True),
        sa.Column('aggregate_id', sa.Integer(), nullable=True),
        sa.Column('dedupe_key', sa.String(255), nullable=False, unique=True),
        sa.Column('status', sa.Integer(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        _ts('next_retry_at', nullable=True),
        _ts('locked_until', nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        _ts('created_at'), _ts('updated_at'),
    )
    for col in ('topic', 'aggregate_id', 'status', 'next_retry_at'):
        op.create_index(f'ix_outboxevent_{col}', 'outboxevent', [col])


def downgrade() -> None:
    """Downgrade schema."""
    for table in ('outboxevent', 'webhookevent', 'receipt', 'payment', 'inventorytransaction', 'orderitem',
                  'orders', 'inventorysizestock', 'inventoryitem', 'voucher', 'cartitem', 'cart', 'product'):
        op.drop_table(table)
