"""API entry point"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.responses import JSONResponse
import logging
from contextlib import asynccontextmanager

from app.core.config import settings
from shared.database.connection import init_db, close_db
from shared.database.session import session_scope
from shared.cache.redis_client import init_redis, close_redis, get_redis
from shared.errors import CheckoutError, checkout_error_handler
from shared.utils.rate_limiter import limiter, rate_limit_exceeded_handler

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting checkout API...")
    await init_db()
    await init_redis()
    logger.info("Checkout API started")
    yield
    logger.info("Shutting down checkout API...")
    await close_db()
    await close_redis()
    logger.info("Checkout API stopped")


app = FastAPI(
    title="Storefront Checkout API",
    description="Order lifecycle, payment settlement and ticket check-in for attraction storefronts",
    version="1.0.0",
    lifespan=lifespan
)

# CORS before rate limiting
if settings.APP_ENV == "development":
    logger.info("Development mode: CORS allows all origins")
    allow_origins = ["*"]
    allow_credentials = False  # credentials cannot be combined with "*"
else:
    allow_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]
    allow_credentials = True
    logger.info(f"CORS origins: {allow_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=3600,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(CheckoutError, checkout_error_handler)

from services.checkout.routes.checkout import router as checkout_router
from services.checkout.routes.webhooks import router as webhooks_router
from services.check_in.routes.check_in import router as check_in_router

app.include_router(checkout_router, prefix="/storefronts", tags=["checkout"])
app.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])
app.include_router(check_in_router, prefix="/attractions", tags=["check-in"])


@app.get("/health")
async def health():
    """Liveness check"""
    return {"status": "ok", "service": "checkout-api"}


@app.get("/ready")
async def ready():
    """Readiness check: database and Redis reachable"""
    try:
        async with session_scope() as session:
            await session.execute(text("SELECT 1"))

        redis = await get_redis()
        await redis.ping()

        return {"status": "ready", "database": "connected", "redis": "connected"}
    except Exception as e:
        logger.error(f"Ready check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "not ready", "error": str(e)})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.APP_DEBUG
    )
