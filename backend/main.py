from contextlib import asynccontextmanager
from fastapi import FastAPI
from backend.api.routers import public_routers, admin_routers
from backend.api.__init__ import version_prefix, cur_version
from backend.background_workers.base_worker import SideEffectWorker
from backend.background_workers.events_publisher_loop import OutboxPublisher
from backend.common.custom_exceptions import register_all_exceptions
from backend.common.logging_setup import setup_logging, stop_logging
from backend.config.admin_config import admin_config
from backend.config.settings import config_settings
from backend.db.connection import async_engine
from backend.middlewares.auth_middleware import AuthenticationMiddleware
from backend.middlewares.request_id_middleware import RequestIdMiddleware
from backend.payments.webhooks import paymongo_webhook

paymongo_webhook_path = config_settings.PAYMONGO_WEBHOOK_PATH


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    app_logger = setup_logging()

    side_effects = None
    publisher = None
    if config_settings.SIDE_EFFECT_WORKERS > 0:
        side_effects = SideEffectWorker(workers_count=config_settings.SIDE_EFFECT_WORKERS)
        side_effects.start()
        publisher = OutboxPublisher(side_effects.publish, poll_interval=config_settings.OUTBOX_POLL_SECONDS)
        publisher.start()
        app.state.pubsub_pub = side_effects.publish
    else:
        app.state.pubsub_pub = None
    app_logger.info("app.started", extra={"side_effect_workers": config_settings.SIDE_EFFECT_WORKERS})

    try:
        yield
    finally:
        # new requests are no longer accepted at this point
        if publisher is not None:
            await publisher.shutdown()
        if side_effects is not None:
            await side_effects.shutdown()
        # safe to dispose DB engine after workers exit
        await async_engine.dispose()
        stop_logging()


def create_app():
    app = FastAPI(
        title="Fundamental Storefront",
        version=cur_version,
        lifespan=app_lifespan)

    app.include_router(public_routers)

    # authenticity comes from the signature, not a bearer token
    app.add_api_route(paymongo_webhook_path, paymongo_webhook, methods=["POST"], name="paymongo_webhook",
                      tags=["webhooks"])

    if admin_config.ENABLE_ADMIN:
        app.include_router(admin_routers)      # mounts /api/v1/admin

    app.add_middleware(AuthenticationMiddleware, public_paths=[f"{version_prefix}/health",
                                                               paymongo_webhook_path,
                                                               "/docs", "/openapi.json"])
    app.add_middleware(RequestIdMiddleware)
    register_all_exceptions(app)

    return app


app = create_app()
