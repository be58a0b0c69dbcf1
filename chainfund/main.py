import time

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from chainfund.api.admin import router as admin_router
from chainfund.api.campaigns import router as campaigns_router
from chainfund.api.cron import router as cron_router
from chainfund.api.donations import router as donations_router
from chainfund.api.payouts import router as payouts_router
from chainfund.api.webhooks import router as webhooks_router
from chainfund.cache.redis import shared_store
from chainfund.core.circuit_breaker import provider_breakers
from chainfund.core.config import get_settings
from chainfund.core.errors import ChainfundError
from chainfund.database.database import close_db, engine, init_db
from chainfund.kafka.producer import notification_producer
from chainfund.middleware.logging import logging_middleware
from chainfund.middleware.metrics import MetricsMiddleware, metrics_endpoint
from chainfund.middleware.tracing import init_tracing
from chainfund.services.sweeps import start_scheduler, stop_scheduler

# Setup structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)
settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    description="Donation lifecycle and commission engine",
    version="1.0.0",
    debug=settings.debug
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Must run before startup so FastAPI instrumentation wraps the app
init_tracing(app)

app.add_middleware(MetricsMiddleware)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    return await logging_middleware(request, call_next)


@app.exception_handler(ChainfundError)
async def chainfund_exception_handler(request: Request, exc: ChainfundError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request failed",
        code=exc.code,
        error=exc.message,
        method=request.method,
        path=request.url.path
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        method=request.method,
        url=str(request.url)
    )
    return JSONResponse(
        status_code=500,
        content={
            "code": "internal_error",
            "message": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


@app.on_event("startup")
async def startup_event():
    logger.info("Starting donation engine", service_name=settings.service_name)

    await init_db()

    try:
        await shared_store.init_redis()
    except ConnectionError as redis_error:
        logger.warning("Shared store unavailable, continuing without it", error=str(redis_error))

    if settings.kafka_enabled:
        try:
            await notification_producer.start()
        except Exception as kafka_error:
            logger.warning("Notifications disabled, Kafka unavailable", error=str(kafka_error))

    if settings.scheduler_enabled:
        start_scheduler()

    logger.info("Application startup completed successfully")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down donation engine")
    try:
        stop_scheduler()
        await notification_producer.stop()
        await shared_store.close()
        await close_db()
        logger.info("Application shutdown completed successfully")
    except Exception as e:
        logger.error("Error during application shutdown", error=str(e))


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": settings.service_name,
        "timestamp": time.time()
    }


@app.get("/metrics")
async def metrics(request: Request):
    return await metrics_endpoint(request)


@app.get("/health/ready")
async def readiness_check():
    """Readiness: database required; cache, Kafka and provider breakers reported"""
    health_status = {
        "status": "ready",
        "service": settings.service_name,
        "timestamp": time.time(),
        "database": "disconnected",
        "cache": "not_initialized",
        "kafka": "connected" if notification_producer.is_connected() else "disconnected",
        "circuit_breakers": {name: breaker.get_state() for name, breaker in provider_breakers.items()},
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as db_e:
        logger.warning("Database health check failed", error=str(db_e))
        health_status["database"] = f"error: {db_e}"

    try:
        if await shared_store.ping():
            health_status["cache"] = "connected"
    except Exception as cache_e:
        logger.warning("Cache health check failed", error=str(cache_e))
        health_status["cache"] = f"error: {cache_e}"

    if health_status["database"] != "connected":
        health_status["status"] = "not ready"
        return JSONResponse(status_code=503, content=health_status)
    return health_status


app.include_router(webhooks_router)
app.include_router(payouts_router)
app.include_router(donations_router)
app.include_router(campaigns_router)
app.include_router(admin_router)
app.include_router(cron_router)


if __name__ == "__main__":
    uvicorn.run(
        "chainfund.main:app",
        host="0.0.0.0",
        port=8010,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug"
    )
