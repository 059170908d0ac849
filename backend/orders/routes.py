from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from backend.auth.dependencies import Principal, get_principal, require_admin
from backend.common.utils import success_response
from backend.db.dependencies import get_session
from backend.orders import repository as order_repo
from backend.orders.models import CancelIn, ProductOrderIn, QuoteIn, ResolveIn, ServiceOrderIn, TransitionIn
from backend.orders.services import (
    cancel_order, ensure_can_view, place_product_order, place_service_order, quote_service_order,
    resolve_discrepancy, retry_allocation, transition_order,
)
from backend.orders.utils import order_view
from backend.payments.pipeline import publish_side_effects

orders_router = APIRouter()
orders_admin_router = APIRouter(dependencies=[Depends(require_admin)])


@orders_router.post("/orders")
async def create_product_order(payload: ProductOrderIn, principal: Principal = Depends(get_principal),
                               session: AsyncSession = Depends(get_session)):
    order, items = await place_product_order(session, principal, payload.items, payload.voucher_code)
    await session.commit()
    return success_response(order_view(order, items), status_code=status.HTTP_201_CREATED)


@orders_router.post("/orders/service")
async def create_service_order(payload: ServiceOrderIn, principal: Principal = Depends(get_principal),
                               session: AsyncSession = Depends(get_session)):
    order, items = await place_service_order(session, principal, payload.description, payload.items,
                                             payload.payment_option)
    await session.commit()
    return success_response(order_view(order, items), status_code=status.HTTP_201_CREATED)


@orders_router.get("/orders/{order_id}")
async def get_order(order_id: int, principal: Principal = Depends(get_principal),
                    session: AsyncSession = Depends(get_session)):
    order = await order_repo.get_order(session, order_id)
    ensure_can_view(order, principal)
    items = await order_repo.get_order_items(session, order_id)
    return success_response(order_view(order, items))


@orders_router.post("/orders/{order_id}/cancel")
async def cancel(order_id: int, payload: CancelIn, principal: Principal = Depends(get_principal),
                 session: AsyncSession = Depends(get_session)):
    order = await cancel_order(session, order_id, principal, payload.reason)
    await session.commit()
    return success_response(order_view(order))

#--------------------------------------------------------------------------------------------------------
# admin

@orders_admin_router.get("/discrepancies")
async def discrepancies(limit: int = Query(100, ge=1, le=500), offset: int = Query(0, ge=0),
                        session: AsyncSession = Depends(get_session)):
    orders = await order_repo.list_discrepancies(session, limit, offset)
    return success_response({"orders": [order_view(o) for o in orders]})


@orders_admin_router.post("/{order_id}/transition")
async def transition(order_id: int, payload: TransitionIn, session: AsyncSession = Depends(get_session)):
    order = await transition_order(session, order_id, payload.status)
    await session.commit()
    return success_response(order_view(order))


@orders_admin_router.post("/{order_id}/quote")
async def quote(order_id: int, payload: QuoteIn, session: AsyncSession = Depends(get_session)):
    order = await quote_service_order(session, order_id, payload.subtotal, payload.delivery_fee)
    await session.commit()
    return success_response(order_view(order))


@orders_admin_router.post("/{order_id}/allocate")
async def allocate_order(request: Request, order_id: int, session: AsyncSession = Depends(get_session)):
    outcome = await retry_allocation(session, order_id)
    await session.commit()
    publish_side_effects(request.app, outcome)
    return success_response(outcome.as_result())


@orders_admin_router.post("/{order_id}/resolve")
async def resolve(order_id: int, payload: ResolveIn, principal: Principal = Depends(require_admin),
                  session: AsyncSession = Depends(get_session)):
    order = await resolve_discrepancy(session, order_id, payload.note, principal)
    await session.commit()
    return success_response(order_view(order))
