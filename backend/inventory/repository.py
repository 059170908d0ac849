from typing import Any, Dict, List, Optional
from sqlalchemy import and_, case, func, select, update
from backend.common.utils import now
from backend.db.utils import insert_ignore
from backend.inventory.utils import derive_inventory_status
from backend.schema.full_schema import InventoryItem, InventorySizeStock, InventoryTransaction, Orders, Product

# Every stock mutation below is a conditional UPDATE ("only if the current value allows it")
# and reports success through rowcount. That compare-and-decrement is the only
# synchronization used for shared inventory rows.


async def lock_order_row(session, order_id: int) -> Optional[Orders]:
    stmt = (
        select(Orders)
        .where(Orders.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def claim_allocation_flag(session, order_id: int) -> bool:
    stmt = (
        update(Orders)
        .where(and_(Orders.id == order_id, Orders.inventory_allocated.is_(False)))
        .values(inventory_allocated=True, inventory_flagged=False, inventory_flag_reason=None, updated_at=now())
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def write_allocation_snapshot(session, order_id: int, snapshot: List[Dict[str, Any]], mode: Optional[str]):
    stmt = (
        update(Orders)
        .where(Orders.id == order_id)
        .values(allocated_items=snapshot, allocation_mode=mode, updated_at=now())
    )
    await session.execute(stmt)


async def set_allocation_mode(session, order_id: int, mode: str):
    await session.execute(
        update(Orders).where(Orders.id == order_id).values(allocation_mode=mode, updated_at=now())
    )


async def clear_allocation(session, order_id: int):
    """Let the order allocate again; only for holds returned while the order stays open."""
    await session.execute(
        update(Orders).where(Orders.id == order_id)
        .values(inventory_allocated=False, allocated_items=None, allocation_mode=None, updated_at=now())
    )


async def get_inventory_item(session, inventory_id: int, for_update: bool = False) -> Optional[InventoryItem]:
    stmt = select(InventoryItem).where(InventoryItem.id == inventory_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def size_rows_exist(session, inventory_id: int) -> bool:
    stmt = select(func.count(InventorySizeStock.id)).where(InventorySizeStock.inventory_id == inventory_id)
    res = await session.execute(stmt)
    return (res.scalar_one() or 0) > 0


async def get_size_map(session, inventory_id: int) -> Dict[str, Dict[str, int]]:
    stmt = (
        select(InventorySizeStock.size, InventorySizeStock.quantity, InventorySizeStock.reserved)
        .where(InventorySizeStock.inventory_id == inventory_id)
        .order_by(InventorySizeStock.size)
    )
    res = await session.execute(stmt)
    return {r[0]: {"quantity": int(r[1]), "reserved": int(r[2])} for r in res.all()}


async def decrement_size_stock(session, inventory_id: int, size: str, qty: int, hold: bool) -> bool:
    values = {"quantity": InventorySizeStock.quantity - qty}
    if hold:
        values["reserved"] = InventorySizeStock.reserved + qty
    stmt = (
        update(InventorySizeStock)
        .where(and_(
            InventorySizeStock.inventory_id == inventory_id,
            InventorySizeStock.size == size,
            InventorySizeStock.quantity >= qty,
        ))
        .values(**values)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def decrement_aggregate_stock(session, inventory_id: int, qty: int, hold: bool) -> bool:
    values = {"quantity": InventoryItem.quantity - qty, "updated_at": now()}
    if hold:
        values["reserved"] = InventoryItem.reserved + qty
    stmt = (
        update(InventoryItem)
        .where(and_(InventoryItem.id == inventory_id, InventoryItem.quantity >= qty))
        .values(**values)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


def _reserved_minus(column, qty: int):
    # reserved never goes below zero even if a hold was partially consumed by hand
    return case((column >= qty, column - qty), else_=0)


async def return_size_stock(session, inventory_id: int, size: str, qty: int, from_reserved: bool) -> bool:
    values = {"quantity": InventorySizeStock.quantity + qty}
    if from_reserved:
        values["reserved"] = _reserved_minus(InventorySizeStock.reserved, qty)
    stmt = (
        update(InventorySizeStock)
        .where(and_(InventorySizeStock.inventory_id == inventory_id, InventorySizeStock.size == size))
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def return_aggregate_stock(session, inventory_id: int, qty: int, from_reserved: bool) -> bool:
    values = {"quantity": InventoryItem.quantity + qty, "updated_at": now()}
    if from_reserved:
        values["reserved"] = _reserved_minus(InventoryItem.reserved, qty)
    stmt = (
        update(InventoryItem)
        .where(InventoryItem.id == inventory_id)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def consume_reserved_size(session, inventory_id: int, size: str, qty: int):
    stmt = (
        update(InventorySizeStock)
        .where(and_(InventorySizeStock.inventory_id == inventory_id, InventorySizeStock.size == size))
        .values(reserved=_reserved_minus(InventorySizeStock.reserved, qty))
        .execution_options(synchronize_session="fetch")
    )
    await session.execute(stmt)


async def consume_reserved_aggregate(session, inventory_id: int, qty: int):
    stmt = (
        update(InventoryItem)
        .where(InventoryItem.id == inventory_id)
        .values(reserved=_reserved_minus(InventoryItem.reserved, qty), updated_at=now())
        .execution_options(synchronize_session="fetch")
    )
    await session.execute(stmt)


async def adjust_size_stock(session, inventory_id: int, size: str, delta: int) -> bool:
    """Add delta to a size row, creating it for positive deltas; never below zero."""
    stmt = (
        update(InventorySizeStock)
        .where(and_(
            InventorySizeStock.inventory_id == inventory_id,
            InventorySizeStock.size == size,
            InventorySizeStock.quantity + delta >= 0,
        ))
        .values(quantity=InventorySizeStock.quantity + delta)
    )
    res = await session.execute(stmt)
    if res.rowcount == 1:
        return True
    if delta < 0:
        return False

    ins = insert_ignore(
        session, InventorySizeStock,
        {"inventory_id": inventory_id, "size": size, "quantity": delta, "reserved": 0},
        index_elements=["inventory_id", "size"],
        returning=[InventorySizeStock.id],
    )
    res = await session.execute(ins)
    if res.scalar_one_or_none() is not None:
        return True
    # a concurrent insert won; retry the increment once
    res = await session.execute(stmt)
    return res.rowcount == 1


async def adjust_aggregate_stock(session, inventory_id: int, delta: int) -> bool:
    stmt = (
        update(InventoryItem)
        .where(and_(InventoryItem.id == inventory_id, InventoryItem.quantity + delta >= 0))
        .values(quantity=InventoryItem.quantity + delta, updated_at=now())
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def recompute_quantity_from_sizes(session, inventory_id: int) -> int:
    stmt = select(func.coalesce(func.sum(InventorySizeStock.quantity), 0)).where(
        InventorySizeStock.inventory_id == inventory_id)
    total = int((await session.execute(stmt)).scalar_one())
    await session.execute(
        update(InventoryItem).where(InventoryItem.id == inventory_id).values(quantity=total, updated_at=now())
    )
    return total


async def refresh_inventory_status(session, inventory_id: int) -> Optional[str]:
    item_row = (await session.execute(
        select(InventoryItem.quantity, InventoryItem.low_stock_threshold).where(InventoryItem.id == inventory_id)
    )).one_or_none()
    if item_row is None:
        return None
    sizes = await get_size_map(session, inventory_id)
    status = derive_inventory_status(int(item_row[0]), [s["quantity"] for s in sizes.values()], int(item_row[1]))
    await session.execute(
        update(InventoryItem).where(InventoryItem.id == inventory_id).values(status=status.value)
    )
    return status.value


async def sync_product_count(session, inventory_id: int):
    """Mirror the aggregate quantity onto the linked catalog product, if any."""
    row = (await session.execute(
        select(InventoryItem.product_id, InventoryItem.quantity).where(InventoryItem.id == inventory_id)
    )).one_or_none()
    if row is None or row[0] is None:
        return
    await session.execute(
        update(Product).where(Product.id == row[0]).values(count_in_stock=int(row[1]), updated_at=now())
    )


async def append_inventory_transaction(session, *, inventory_id: int, signed_qty: int, kind: str,
                                       order_id: Optional[int] = None, size_breakdown: Optional[Dict[str, int]] = None,
                                       mode: Optional[str] = None, note: Optional[str] = None,
                                       actor_id: Optional[int] = None) -> int:
    txn = InventoryTransaction(
        inventory_id=inventory_id,
        order_id=order_id,
        signed_qty=signed_qty,
        size_breakdown=size_breakdown or None,
        kind=kind,
        mode=mode,
        note=note,
        actor_id=actor_id,
        created_at=now(),
    )
    session.add(txn)
    await session.flush()
    return txn.id


async def list_transactions(session, inventory_id: Optional[int] = None, order_id: Optional[int] = None,
                            kind: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[InventoryTransaction]:
    stmt = select(InventoryTransaction)
    if inventory_id is not None:
        stmt = stmt.where(InventoryTransaction.inventory_id == inventory_id)
    if order_id is not None:
        stmt = stmt.where(InventoryTransaction.order_id == order_id)
    if kind is not None:
        stmt = stmt.where(InventoryTransaction.kind == kind)
    stmt = stmt.order_by(InventoryTransaction.id).limit(limit).offset(offset)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def create_inventory_item(session, *, name: str, product_id: Optional[int], quantity: int,
                                sizes: Dict[str, int], low_stock_threshold: int) -> InventoryItem:
    if sizes:
        quantity = sum(sizes.values())
    item = InventoryItem(
        name=name,
        product_id=product_id,
        quantity=quantity,
        reserved=0,
        low_stock_threshold=low_stock_threshold,
        status=derive_inventory_status(quantity, sizes.values(), low_stock_threshold).value,
    )
    session.add(item)
    await session.flush()
    for size, qty in sizes.items():
        session.add(InventorySizeStock(inventory_id=item.id, size=size, quantity=qty, reserved=0))
    await session.flush()
    return item


async def list_inventory_items(session, status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[InventoryItem]:
    stmt = select(InventoryItem)
    if status is not None:
        stmt = stmt.where(InventoryItem.status == status)
    stmt = stmt.order_by(InventoryItem.id).limit(limit).offset(offset)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def size_maps_for(session, inventory_ids: List[int]) -> Dict[int, Dict[str, int]]:
    if not inventory_ids:
        return {}
    stmt = select(InventorySizeStock.inventory_id, InventorySizeStock.size, InventorySizeStock.quantity).where(
        InventorySizeStock.inventory_id.in_(inventory_ids))
    res = await session.execute(stmt)
    out: Dict[int, Dict[str, int]] = {}
    for inv_id, size, qty in res.all():
        out.setdefault(int(inv_id), {})[size] = int(qty)
    return out
