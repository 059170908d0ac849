from fastapi import APIRouter
from backend.api.__init__ import version_prefix
from backend.common.routes import home_router
from backend.inventory.routes import inventory_admin_router
from backend.orders.routes import orders_admin_router, orders_router
from backend.payments.routes import payments_router, webhook_events_admin_router


public_routers = APIRouter(prefix=version_prefix)

public_routers.include_router(orders_router, tags=["orders"])
public_routers.include_router(payments_router, prefix="/payments", tags=["payments"])
public_routers.include_router(home_router, tags=["home"])

#--------------------------------------------------------------------------------------------------------

admin_routers = APIRouter(prefix=f"{version_prefix}/admin")

admin_routers.include_router(inventory_admin_router, prefix="/inventory", tags=["inventory-admin"])
admin_routers.include_router(orders_admin_router, prefix="/orders", tags=["orders-admin"])
admin_routers.include_router(webhook_events_admin_router, prefix="/webhook-events", tags=["webhooks-admin"])
