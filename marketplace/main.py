import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ✅ Import All API Routes
from marketplace.api.routes import cron, health, notifications, requests, subscriptions

# ✅ Import Core Services
from marketplace.core import config
from marketplace.core.errors import MarketplaceError
from marketplace.core.logging_config import setup_logging
from marketplace.db.migrate import run_migrations
from marketplace.services.cache_invalidation import CacheInvalidator
from marketplace.services.expiry_sweeper import ExpirySweeper
from marketplace.services.ledger_service import CreditLedger
from marketplace.services.notification_service import NotificationDispatcher
from marketplace.services.realtime_registry import RealtimeRegistry
from marketplace.services.request_service import RequestStateMachine

logger = logging.getLogger(__name__)


# ============================================
# ✅ SERVICE WIRING
# ============================================

def build_services(app: FastAPI, cache: CacheInvalidator = None, registry: RealtimeRegistry = None) -> None:
    """Create the long-lived collaborators once and hang them on ``app.state``."""
    cache = cache or CacheInvalidator.from_url(config.REDIS_URL)
    registry = registry or RealtimeRegistry()
    ledger = CreditLedger(cache=cache)
    dispatcher = NotificationDispatcher(registry=registry, cache=cache)

    app.state.cache = cache
    app.state.realtime_registry = registry
    app.state.ledger = ledger
    app.state.dispatcher = dispatcher
    app.state.state_machine = RequestStateMachine(ledger, dispatcher, cache)
    app.state.sweeper = ExpirySweeper(ledger, dispatcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config.LOG_LEVEL, config.LOG_DIR)
    if config.RUN_MIGRATIONS:
        run_migrations()
    if not hasattr(app.state, "state_machine"):
        build_services(app)
    logger.info("Marketplace API started")
    try:
        yield
    finally:
        app.state.realtime_registry.close_all()
        logger.info("Marketplace API stopped")


# ============================================
# ✅ FASTAPI APP INIT
# ============================================

app = FastAPI(title="Marketplace Core", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)


# ============================================
# ✅ ERROR HANDLING
# ============================================

@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.http_status >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_detail()})


# ============================================
# ✅ REGISTER ALL ROUTERS
# ============================================

app.include_router(health.router)
app.include_router(requests.router)
app.include_router(subscriptions.router)
app.include_router(notifications.router)
app.include_router(cron.router)


@app.get("/")
def root():
    return {"status": "Marketplace API running"}
