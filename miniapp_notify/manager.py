"""Localhost-only operator console for subscribers, webhook events and sends.

Run with ``python scripts/notifications_manager.py``; it binds to NOTIFY_MANAGER_HOST
(127.0.0.1 by default) and shares the Postgres store with the public service.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from miniapp_notify.auth import require_local_request, require_same_origin
from miniapp_notify.config import settings
from miniapp_notify.db import create_database
from miniapp_notify.domain.errors import install_error_handlers
from miniapp_notify.observability import configure_logging, log_event
from miniapp_notify.routers import manager
from miniapp_notify.store import SubscriberStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "store", None) is None:
        # Fail at startup, not on the first request.
        app.state.store = SubscriberStore(create_database(settings))
    log_event(
        "manager_started",
        url=f"http://localhost:{settings.notify_manager_port}",
        token_required=not settings.editor_no_token,
    )
    try:
        yield
    finally:
        store = getattr(app.state, "store", None)
        if store is not None:
            store.close()
            app.state.store = None


def create_manager_app() -> FastAPI:
    configure_logging(settings.log_level)
    app = FastAPI(
        title="Notifications Manager",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        dependencies=[Depends(require_local_request), Depends(require_same_origin)],
    )
    app.state.store = None
    install_error_handlers(app)
    app.include_router(manager.page_router)
    app.include_router(manager.router)
    return app
