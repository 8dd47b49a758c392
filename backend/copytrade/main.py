"""
Main FastAPI application
Entry point for the Copy Trade API
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from contextlib import asynccontextmanager
import logging

from copytrade.core.config import settings
from copytrade.core.security import limiter, get_security_headers
from copytrade.core.database import init_db, close_db
from copytrade.core.dependencies import install_services
from copytrade.core.exceptions import BackendUnavailable, CopyTradeError, StorageUnavailable
from copytrade.core.json_store import JsonDocumentStore
from copytrade.core.redis import init_redis, get_redis_client, close_redis
from copytrade.services.record_store import RecordStore, SqlBackend

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============================================================================
# LIFESPAN CONTEXT MANAGER
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Copy Trade API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

    # Redis is optional, it only carries wallet events
    if settings.REDIS_URL:
        try:
            await init_redis(settings.REDIS_URL)
            logger.info("Redis connected")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            await close_redis()

    session_factory = await init_db()
    store = RecordStore(
        SqlBackend(session_factory) if session_factory else None,
        JsonDocumentStore(settings.JSON_STORE_PATH),
    )
    install_services(app, store)

    if store.relational is not None:
        try:
            applied = await app.state.reconciler.reconcile_deletions()
            if applied:
                logger.info(f"Applied {applied} deletions recorded during an outage")
        except (BackendUnavailable, StorageUnavailable) as e:
            logger.warning(f"Pending deletions not reconciled: {e}")

    logger.info("Application startup complete")

    yield  # Application runs here

    # ==================== SHUTDOWN ====================
    logger.info("Shutting down Copy Trade API")

    if store.degraded:
        logger.warning(f"{len(store.degraded)} records still only in the fallback document")

    await close_redis()
    logger.info("Redis connection closed")

    await close_db()
    logger.info("Database connections closed")

    logger.info("Shutdown complete")

# ============================================================================
# CREATE FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Copy Trade API",
    description="Copy-trading subscriptions: payments, wallet and running strategies",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan
)

# Add rate limiter
app.state.limiter = limiter

# ============================================================================
# MIDDLEWARE
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for key, value in get_security_headers().items():
        response.headers[key] = value
    return response


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded. Please try again later.",
            "retry_after": getattr(exc, "retry_after", None)
        }
    )

@app.exception_handler(CopyTradeError)
async def domain_exception_handler(request: Request, exc: CopyTradeError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "detail": exc.message,
            "error": {
                "code": exc.code,
                "message": exc.message,
                "details": exc.details
            }
        }
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    if settings.DEBUG:
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "error": str(exc),
                "type": type(exc).__name__
            }
        )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

# ============================================================================
# ROOT ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    return {
        "message": "Copy Trade API",
        "version": "1.0.0",
        "status": "operational",
        "redis_status": "connected" if get_redis_client() else "disconnected"
    }

@app.get("/health")
async def health_check(request: Request):
    store = getattr(request.app.state, "record_store", None)
    return {
        "status": "healthy",
        "services": {
            "redis": "up" if get_redis_client() else "down",
            "database": "configured" if store and store.relational else "fallback-only",
        },
        "degraded_records": len(store.degraded) if store else 0,
    }

# ============================================================================
# API ROUTES
# ============================================================================

from copytrade.api import wallet, payments, running_strategies, admin, events

app.include_router(wallet.router, prefix="/wallet", tags=["Wallet"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(running_strategies.router, prefix="/running-strategies", tags=["Running Strategies"])
app.include_router(events.router, prefix="/events", tags=["Events"])
app.include_router(admin.router)

# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "copytrade.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
