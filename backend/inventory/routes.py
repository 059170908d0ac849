from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from backend.auth.dependencies import Principal, require_admin
from backend.common.utils import success_response
from backend.config.settings import config_settings
from backend.db.dependencies import get_session
from backend.inventory import repository as inv_repo
from backend.inventory.constants import logger
from backend.inventory.models import InventoryCreateIn, RestockIn
from backend.inventory.services import restock
from backend.inventory.utils import low_stock_sizes
from backend.schema.full_schema import InventoryStatus, InventoryTxnKind

inventory_admin_router = APIRouter(dependencies=[Depends(require_admin)])


def _item_view(item, sizes):
    return {
        "id": item.id,
        "public_id": str(item.public_id),
        "name": item.name,
        "product_id": item.product_id,
        "quantity": item.quantity,
        "reserved": item.reserved,
        "status": item.status,
        "low_stock_threshold": item.low_stock_threshold,
        "sizes": sizes,
        "low_sizes": low_stock_sizes(sizes, item.low_stock_threshold),
    }


@inventory_admin_router.get("/")
async def list_inventory(status_filter: Optional[InventoryStatus] = Query(None, alias="status"),
                         limit: int = Query(100, ge=1, le=500), offset: int = Query(0, ge=0),
                         session: AsyncSession = Depends(get_session)):
    items = await inv_repo.list_inventory_items(session, status_filter.value if status_filter else None, limit, offset)
    size_maps = await inv_repo.size_maps_for(session, [i.id for i in items])
    return success_response({"items": [_item_view(i, size_maps.get(i.id, {})) for i in items]})


@inventory_admin_router.post("/")
async def create_inventory(payload: InventoryCreateIn, principal: Principal = Depends(require_admin),
                           session: AsyncSession = Depends(get_session)):
    threshold = payload.low_stock_threshold
    if threshold is None:
        threshold = config_settings.LOW_STOCK_THRESHOLD

    item = await inv_repo.create_inventory_item(
        session, name=payload.name, product_id=payload.product_id, quantity=payload.quantity,
        sizes=payload.sizes, low_stock_threshold=threshold)
    if item.quantity:
        await inv_repo.append_inventory_transaction(
            session, inventory_id=item.id, signed_qty=item.quantity, size_breakdown=payload.sizes or None,
            kind=InventoryTxnKind.RESTORE.value, note="initial stock", actor_id=principal.user_id)
    await inv_repo.sync_product_count(session, item.id)
    await session.commit()

    logger.info("inventory.created", extra={"inventory_id": item.id, "by": principal.user_id})
    return success_response(_item_view(item, payload.sizes), status_code=status.HTTP_201_CREATED)


@inventory_admin_router.post("/{inventory_id}/restock")
async def restock_inventory(inventory_id: int, payload: RestockIn, principal: Principal = Depends(require_admin),
                            session: AsyncSession = Depends(get_session)):
    result = await restock(session, inventory_id, sizes=payload.sizes, quantity_delta=payload.quantity,
                           kind=payload.kind, note=payload.note, actor_id=principal.user_id)
    await session.commit()
    return success_response(result)


@inventory_admin_router.get("/transactions")
async def inventory_transactions(inventory_id: Optional[int] = None, order_id: Optional[int] = None,
                                 kind: Optional[InventoryTxnKind] = None,
                                 limit: int = Query(100, ge=1, le=500), offset: int = Query(0, ge=0),
                                 session: AsyncSession = Depends(get_session)):
    rows = await inv_repo.list_transactions(session, inventory_id, order_id, kind.value if kind else None, limit, offset)
    return success_response({"transactions": [r.model_dump() for r in rows]})
