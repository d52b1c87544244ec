from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from miniapp_notify.config import settings
from miniapp_notify.db import create_database
from miniapp_notify.domain.errors import install_error_handlers
from miniapp_notify.observability import configure_logging, log_event
from miniapp_notify.routers import notify, webhooks
from miniapp_notify.store import SubscriberStore


configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.database_url and getattr(app.state, "store", None) is None:
        app.state.store = SubscriberStore(create_database(settings))
        log_event("store_opened", pool_max=settings.database_pool_max)
    try:
        yield
    finally:
        store = getattr(app.state, "store", None)
        if store is not None:
            store.close()
            app.state.store = None
            log_event("store_closed")


app = FastAPI(title="Mini App Notifications", version="0.1.0", lifespan=lifespan)
app.state.store = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.miniapp_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handlers(app)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(webhooks.router)
app.include_router(notify.router)


@app.api_route("/api/ping", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"])
async def ping(request: Request):
    return {"ok": True, "method": request.method}


@app.get("/")
async def root():
    return {"status": "ok", "service": "miniapp-notify"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
