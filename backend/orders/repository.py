from typing import Any, Dict, List, Optional
from sqlalchemy import and_, delete, or_, select, tuple_, update
from backend.common.errors import OrderNotFound
from backend.common.utils import now
from backend.orders.utils import order_reference
from backend.schema.full_schema import Cart, CartItem, InventoryItem, OrderItem, OrderKind, Orders, Payment, Product, Voucher


async def get_order(session, order_id: int) -> Orders:
    stmt = select(Orders).where(Orders.id == order_id).execution_options(populate_existing=True)
    res = await session.execute(stmt)
    order = res.scalar_one_or_none()
    if order is None:
        raise OrderNotFound("order not found", order_id=order_id)
    return order


async def get_order_items(session, order_id: int) -> List[OrderItem]:
    stmt = select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def find_order_for_session(session, session_id: Optional[str], reference: Optional[str] = None) -> Optional[Orders]:
    """Correlate a gateway event with an order: session id first, reference number as fallback."""
    if session_id:
        res = await session.execute(
            select(Orders).where(Orders.payment_session_id == session_id).execution_options(populate_existing=True))
        order = res.scalar_one_or_none()
        if order is not None:
            return order
        res = await session.execute(
            select(Orders).join(Payment, Payment.order_id == Orders.id)
            .where(Payment.provider_session_id == session_id).execution_options(populate_existing=True))
        order = res.scalar_one_or_none()
        if order is not None:
            return order
    if reference:
        res = await session.execute(
            select(Orders).where(Orders.reference == reference.strip().upper()).execution_options(populate_existing=True))
        return res.scalars().first()
    return None


async def products_with_inventory(session, product_ids: List[int]) -> Dict[int, Dict[str, Any]]:
    stmt = (
        select(Product.id, Product.name, Product.price, InventoryItem.id.label("inventory_id"))
        .outerjoin(InventoryItem, InventoryItem.product_id == Product.id)
        .where(Product.id.in_(product_ids))
    )
    res = await session.execute(stmt)
    return {
        int(r.id): {"name": r.name, "price": r.price, "inventory_id": r.inventory_id}
        for r in res.all()
    }


async def get_active_voucher(session, code: str) -> Optional[Voucher]:
    stmt = select(Voucher).where(and_(Voucher.code == code, Voucher.active.is_(True)))
    res = await session.execute(stmt)
    voucher = res.scalar_one_or_none()
    if voucher is None:
        return None
    if voucher.max_uses is not None and voucher.used_count >= voucher.max_uses:
        return None
    return voucher


async def create_order(session, *, user_id: int, kind: OrderKind, lines: List[Dict[str, Any]],
                       totals: Dict[str, Any], currency: str, payment_option: str,
                       voucher_code: Optional[str] = None, service_description: Optional[str] = None,
                       status: int = 0) -> Orders:
    order = Orders(
        kind=kind.value,
        user_id=user_id,
        status=status,
        payment_option=payment_option,
        currency=currency,
        voucher_code=voucher_code,
        service_description=service_description,
        **totals,
    )
    order.reference = order_reference(order.public_id)
    session.add(order)
    await session.flush()

    for line in lines:
        session.add(OrderItem(
            order_id=order.id,
            product_id=line.get("product_id"),
            inventory_id=line.get("inventory_id"),
            name=line["name"],
            size=line.get("size"),
            quantity=int(line["quantity"]),
            unit_price=line["unit_price"],
        ))
    await session.flush()
    return order


async def set_payment_session(session, order_id: int, session_id: str):
    await session.execute(
        update(Orders).where(Orders.id == order_id).values(payment_session_id=session_id, updated_at=now())
    )


async def flag_inventory(session, order_id: int, reason: str):
    await session.execute(
        update(Orders).where(Orders.id == order_id)
        .values(inventory_flagged=True, inventory_flag_reason=reason, updated_at=now())
    )


async def list_discrepancies(session, limit: int = 100, offset: int = 0) -> List[Orders]:
    stmt = (
        select(Orders)
        .where(or_(Orders.inventory_flagged.is_(True), Orders.needs_reconciliation.is_(True)))
        .order_by(Orders.updated_at.desc(), Orders.id.desc())
        .limit(limit).offset(offset)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def prune_cart_lines(session, user_id: int, lines: List[Dict[str, Any]]) -> int:
    """Remove purchased (product, size) pairs from the owner's cart."""
    pairs = [(int(l["product_id"]), l.get("size")) for l in lines if l.get("product_id") is not None]
    if not pairs:
        return 0
    cart_id = (await session.execute(select(Cart.id).where(Cart.user_id == user_id))).scalar_one_or_none()
    if cart_id is None:
        return 0

    removed = 0
    sized = [p for p in pairs if p[1] is not None]
    unsized = [p[0] for p in pairs if p[1] is None]
    if sized:
        res = await session.execute(
            delete(CartItem).where(and_(CartItem.cart_id == cart_id, tuple_(CartItem.product_id, CartItem.size).in_(sized)))
        )
        removed += res.rowcount or 0
    if unsized:
        res = await session.execute(
            delete(CartItem).where(and_(CartItem.cart_id == cart_id, CartItem.product_id.in_(unsized), CartItem.size.is_(None)))
        )
        removed += res.rowcount or 0
    return removed


async def consume_voucher(session, code: str) -> bool:
    stmt = (
        update(Voucher)
        .where(and_(
            Voucher.code == code,
            Voucher.active.is_(True),
            or_(Voucher.max_uses.is_(None), Voucher.used_count < Voucher.max_uses),
        ))
        .values(used_count=Voucher.used_count + 1)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1
