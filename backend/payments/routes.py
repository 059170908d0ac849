from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from backend.auth.dependencies import Principal, get_principal, require_admin
from backend.common.utils import success_response
from backend.db.dependencies import get_session
from backend.payments import ledger
from backend.payments.dependencies import get_gateway_client
from backend.payments.gateway import PayMongoClient
from backend.payments.pipeline import publish_side_effects
from backend.payments.services import create_checkout, sync_order, verify_session

payments_router = APIRouter()
webhook_events_admin_router = APIRouter(dependencies=[Depends(require_admin)])


@payments_router.post("/checkout/{order_id}")
async def checkout(order_id: int, principal: Principal = Depends(get_principal),
                   client: PayMongoClient = Depends(get_gateway_client),
                   session: AsyncSession = Depends(get_session)):
    data = await create_checkout(session, order_id, principal, client)
    return success_response(data)


@payments_router.api_route("/sync/{order_id}", methods=["GET", "POST"])
async def sync(request: Request, order_id: int, principal: Principal = Depends(get_principal),
               client: PayMongoClient = Depends(get_gateway_client),
               session: AsyncSession = Depends(get_session)):
    outcome, order = await sync_order(session, order_id, principal, client)
    if outcome is not None:
        publish_side_effects(request.app, outcome)
    return success_response({
        "synced": outcome is not None,
        "result": outcome.as_result() if outcome else None,
        "order": order,
    })


@payments_router.get("/verify/{session_id}")
async def verify(session_id: str, principal: Principal = Depends(get_principal),
                 client: PayMongoClient = Depends(get_gateway_client),
                 session: AsyncSession = Depends(get_session)):
    return success_response(await verify_session(session, session_id, principal, client))


@webhook_events_admin_router.get("/")
async def webhook_events(verified: Optional[bool] = None, processed: Optional[bool] = None,
                         needs_review: Optional[bool] = None,
                         limit: int = Query(100, ge=1, le=500), offset: int = Query(0, ge=0),
                         session: AsyncSession = Depends(get_session)):
    events = await ledger.list_events(session, verified, processed, needs_review, limit, offset)
    return success_response({"events": [e.model_dump(exclude={"raw_body"}) for e in events]})
