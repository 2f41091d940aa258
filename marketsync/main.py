# marketsync/main.py

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from marketsync.core.config import get_settings
from marketsync.core.logging_config import configure_logging
from marketsync.routes import health, websockets as websocket_router
from marketsync.services.websockets.relay import relay

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(f"Starting shared store relay ({settings.ENVIRONMENT})")
    app.state.relay = relay
    try:
        yield  # This is where the app runs
    finally:
        logger.info(f"Relay shutting down with {len(relay.active_connections)} open connections")

app = FastAPI(
    title="MarketSync Relay",
    lifespan=lifespan
)

# Add middleware to handle HTTPS behind proxy
@app.middleware("http")
async def proxy_headers_middleware(request: Request, call_next):
    forwarded_proto = request.headers.get("x-forwarded-proto")
    if forwarded_proto == "https":
        request.scope["scheme"] = "https"
    response = await call_next(request)
    return response

app.include_router(websocket_router.router)
app.include_router(health.router)
