from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from backend.common.errors import InsufficientStockError, InvalidInventoryAdjustment, InventoryNotFound, OrderNotFound
from backend.inventory import repository as inv_repo
from backend.inventory.constants import logger
from backend.inventory.utils import split_breakdown
from backend.schema.full_schema import AllocationMode, InventoryTxnKind

# breakdown shape used throughout: {inventory_id: {size_or_None: qty}}
Breakdown = Mapping[int, Mapping[Optional[str], int]]


@dataclass
class AllocationResult:
    order_id: int
    allocated: bool
    already_allocated: bool = False
    mode: Optional[str] = None
    items: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "allocated": self.allocated,
            "already_allocated": self.already_allocated,
            "mode": self.mode,
            "items": self.items,
        }


async def _take_stock(session, inventory_id: int, sizes: Mapping[Optional[str], int], hold: bool) -> Dict[str, Any]:
    sized, unsized = split_breakdown(sizes)
    tracked = await inv_repo.size_rows_exist(session, inventory_id)

    if tracked and unsized:
        raise InsufficientStockError(inventory_id, None, unsized, message=f"inventory {inventory_id} is tracked per size; size required")
    if sized and not tracked:
        size = sorted(sized)[0]
        raise InsufficientStockError(inventory_id, size, sized[size], message=f"inventory {inventory_id} has no size {size}")

    for size in sorted(sized):
        ok = await inv_repo.decrement_size_stock(session, inventory_id, size, sized[size], hold)
        if not ok:
            raise InsufficientStockError(inventory_id, size, sized[size])

    total = sum(sized.values()) + unsized
    if not await inv_repo.decrement_aggregate_stock(session, inventory_id, total, hold):
        raise InsufficientStockError(inventory_id, None, total)

    await inv_repo.refresh_inventory_status(session, inventory_id)
    return {"inventory_id": inventory_id, "sizes": sized, "unsized": unsized, "quantity": total}


async def allocate(session, order_id: int, breakdown: Breakdown, mode: AllocationMode = AllocationMode.CONSUME) -> AllocationResult:
    """Move an order's stock exactly once.

    Runs in a savepoint of the caller's transaction: either every size row, every
    aggregate, the transaction rows and the order's snapshot change together, or
    nothing does and InsufficientStockError names the first short (inventory, size).
    A second call for the same order returns the recorded snapshot untouched.
    """
    mode = AllocationMode(mode)
    hold = mode == AllocationMode.HOLD

    async with session.begin_nested():
        order = await inv_repo.lock_order_row(session, order_id)
        if order is None:
            raise OrderNotFound("order not found", order_id=order_id)
        if order.inventory_allocated:
            return AllocationResult(order_id=order_id, allocated=True, already_allocated=True,
                                    mode=order.allocation_mode, items=list(order.allocated_items or []))

        if not await inv_repo.claim_allocation_flag(session, order_id):
            # another pipeline claimed it between the lock and the update
            return AllocationResult(order_id=order_id, allocated=True, already_allocated=True)

        snapshot = []
        for inventory_id in sorted(breakdown):
            entry = await _take_stock(session, inventory_id, breakdown[inventory_id], hold)
            await inv_repo.append_inventory_transaction(
                session,
                inventory_id=inventory_id,
                order_id=order_id,
                signed_qty=-entry["quantity"],
                size_breakdown=_breakdown_json(entry),
                kind=InventoryTxnKind.ALLOCATE.value,
                mode=mode.value,
            )
            await inv_repo.sync_product_count(session, inventory_id)
            snapshot.append(entry)

        await inv_repo.write_allocation_snapshot(session, order_id, snapshot, mode.value)

    logger.info("allocation.done", extra={"order_id": order_id, "mode": mode.value, "lines": len(snapshot)})
    return AllocationResult(order_id=order_id, allocated=True, mode=mode.value, items=snapshot)


def _breakdown_json(entry: Mapping[str, Any]) -> Optional[Dict[str, int]]:
    sizes = dict(entry.get("sizes") or {})
    return sizes or None


async def release(session, order_id: int, note: Optional[str] = None, actor_id: Optional[int] = None,
                  reopen: bool = False) -> bool:
    """Return a held allocation to stock. Consumed allocations are never released.

    With `reopen` the order may allocate again later (a checkout that never reached
    the gateway); otherwise it is marked RELEASED for good.
    """
    async with session.begin_nested():
        order = await inv_repo.lock_order_row(session, order_id)
        if order is None:
            raise OrderNotFound("order not found", order_id=order_id)
        if order.allocation_mode != AllocationMode.HOLD.value:
            return False

        for entry in order.allocated_items or []:
            inventory_id = int(entry["inventory_id"])
            sizes = {s: int(q) for s, q in (entry.get("sizes") or {}).items()}
            for size in sorted(sizes):
                await inv_repo.return_size_stock(session, inventory_id, size, sizes[size], from_reserved=True)
            await inv_repo.return_aggregate_stock(session, inventory_id, int(entry["quantity"]), from_reserved=True)
            await inv_repo.refresh_inventory_status(session, inventory_id)
            await inv_repo.append_inventory_transaction(
                session,
                inventory_id=inventory_id,
                order_id=order_id,
                signed_qty=int(entry["quantity"]),
                size_breakdown=sizes or None,
                kind=InventoryTxnKind.RELEASE.value,
                mode=AllocationMode.RELEASED.value,
                note=note,
                actor_id=actor_id,
            )
            await inv_repo.sync_product_count(session, inventory_id)

        if reopen:
            await inv_repo.clear_allocation(session, order_id)
        else:
            # inventory_allocated stays true: the order can never allocate again
            await inv_repo.set_allocation_mode(session, order_id, AllocationMode.RELEASED.value)

    logger.info("allocation.released", extra={"order_id": order_id})
    return True


async def commit_hold(session, order_id: int) -> bool:
    """Turn a held allocation into a consumed one once the order is paid."""
    async with session.begin_nested():
        order = await inv_repo.lock_order_row(session, order_id)
        if order is None:
            raise OrderNotFound("order not found", order_id=order_id)
        if order.allocation_mode != AllocationMode.HOLD.value:
            return False

        for entry in order.allocated_items or []:
            inventory_id = int(entry["inventory_id"])
            sizes = {s: int(q) for s, q in (entry.get("sizes") or {}).items()}
            for size in sorted(sizes):
                await inv_repo.consume_reserved_size(session, inventory_id, size, sizes[size])
            await inv_repo.consume_reserved_aggregate(session, inventory_id, int(entry["quantity"]))
            await inv_repo.append_inventory_transaction(
                session,
                inventory_id=inventory_id,
                order_id=order_id,
                signed_qty=0,
                size_breakdown=sizes or None,
                kind=InventoryTxnKind.ADJUST.value,
                mode=AllocationMode.CONSUME.value,
                note="hold consumed",
            )

        await inv_repo.set_allocation_mode(session, order_id, AllocationMode.CONSUME.value)

    logger.info("allocation.hold_consumed", extra={"order_id": order_id})
    return True


async def restock(session, inventory_id: int, *, sizes: Optional[Mapping[str, int]] = None,
                  quantity_delta: Optional[int] = None, kind: InventoryTxnKind = InventoryTxnKind.RESTORE,
                  note: Optional[str] = None, actor_id: Optional[int] = None) -> Dict[str, Any]:
    """Admin stock change: per-size deltas for tracked items, an aggregate delta otherwise."""
    kind = InventoryTxnKind(kind)
    if kind not in (InventoryTxnKind.RESTORE, InventoryTxnKind.ADJUST):
        raise InvalidInventoryAdjustment("restock kind must be restore or adjust", kind=kind.value)
    sizes = {s: int(q) for s, q in (sizes or {}).items() if int(q) != 0}
    if not sizes and not quantity_delta:
        raise InvalidInventoryAdjustment("nothing to adjust", inventory_id=inventory_id)

    async with session.begin_nested():
        item = await inv_repo.get_inventory_item(session, inventory_id, for_update=True)
        if item is None:
            raise InventoryNotFound("inventory item not found", inventory_id=inventory_id)

        tracked = await inv_repo.size_rows_exist(session, inventory_id)
        if tracked and quantity_delta:
            raise InvalidInventoryAdjustment("item is tracked per size; send sizes", inventory_id=inventory_id)

        if sizes:
            for size in sorted(sizes):
                if not await inv_repo.adjust_size_stock(session, inventory_id, size, sizes[size]):
                    raise InsufficientStockError(inventory_id, size, -sizes[size],
                                                 message=f"adjustment would make size {size} negative")
            await inv_repo.recompute_quantity_from_sizes(session, inventory_id)
            signed_qty = sum(sizes.values())
        else:
            if not await inv_repo.adjust_aggregate_stock(session, inventory_id, int(quantity_delta)):
                raise InsufficientStockError(inventory_id, None, -int(quantity_delta),
                                             message="adjustment would make quantity negative")
            signed_qty = int(quantity_delta)

        status = await inv_repo.refresh_inventory_status(session, inventory_id)
        txn_id = await inv_repo.append_inventory_transaction(
            session,
            inventory_id=inventory_id,
            signed_qty=signed_qty,
            size_breakdown=sizes or None,
            kind=kind.value,
            note=note,
            actor_id=actor_id,
        )
        await inv_repo.sync_product_count(session, inventory_id)
        item = await inv_repo.get_inventory_item(session, inventory_id)

    logger.info("inventory.restocked", extra={"inventory_id": inventory_id, "signed_qty": signed_qty, "kind": kind.value})
    return {
        "inventory_id": inventory_id,
        "quantity": item.quantity,
        "status": status,
        "transaction_id": txn_id,
        "signed_qty": signed_qty,
    }
