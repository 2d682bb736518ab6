"""
Conversation Intake - FastAPI Application
Version: 1.2

Main entry point with automatic database initialization and service wiring.
"""

import asyncio
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

# Configure structured logging FIRST (before any other imports)
from services.logging_config import configure_logging, get_logger, set_trace_id

# Use JSON logging in production, console in development
is_production = os.getenv('APP_ENV', 'development') == 'production'
configure_logging(json_format=is_production, log_level=os.getenv('LOG_LEVEL', 'INFO'))

logger = get_logger(__name__)

# Import config
from config import get_settings

settings = get_settings()


async def wait_for_database(max_retries: int = 30, delay: int = 2) -> bool:
    """Wait for database to be available and create tables."""
    from database import get_engine, init_db

    logger.info("⏳ Waiting for database...")

    for attempt in range(max_retries):
        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))

            logger.info("✅ Database connection established")

            logger.info("📊 Creating database tables...")
            await init_db()

            logger.info("✅ Database tables ready")
            return True

        except Exception as e:
            logger.warning(f"Database not ready (attempt {attempt + 1}/{max_retries}): {e}")
            if attempt < max_retries - 1:
                await asyncio.sleep(delay)

    logger.error("❌ Could not connect to database after all retries")
    return False


def build_services(app: FastAPI, store, redis_client) -> None:
    """Wire the pipeline services onto app.state."""
    from services.circuit_breaker import BreakerConfig, CircuitBreaker
    from services.customer_matcher import CustomerMatcher
    from services.duplicate_guard import DuplicateGuard
    from services.emergency_classifier import EmergencyClassifier
    from services.emergency_router import EmergencyRouter
    from services.escalation_scheduler import EscalationScheduler
    from services.extraction_engine import ExtractionEngine
    from services.message_source import HttpMessageSource, ProtectedMessageSource
    from services.notifier import Notifier
    from services.responder_ranker import ResponderRanker
    from services.rules import load_rules
    from services.sync_orchestrator import PerformanceThresholds, SyncOrchestrator
    from services.thread_resolver import ThreadResolver

    rules = load_rules()
    notifier = Notifier(redis_client)
    breaker = CircuitBreaker(BreakerConfig.from_settings(settings))

    def source_factory(account_token: str):
        return ProtectedMessageSource(
            HttpMessageSource(
                base_url=settings.MESSAGE_SOURCE_URL,
                account_token=account_token,
                api_key=settings.MESSAGE_SOURCE_API_KEY,
                timeout=settings.MESSAGE_SOURCE_TIMEOUT,
                max_retries=settings.MESSAGE_SOURCE_MAX_RETRIES,
            ),
            breaker,
            circuit_key=f"message_source:{account_token}",
        )

    classifier = EmergencyClassifier(
        rules.classifier,
        history_provider=store.emergency_history,
        audit_sink=store.log_classification,
    )
    scheduler = EscalationScheduler(
        on_fire=notifier.publish_escalation,
        seconds_per_minute=settings.ESCALATION_SECONDS_PER_MINUTE,
    )

    app.state.store = store
    app.state.notifier = notifier
    app.state.breaker = breaker
    app.state.classifier = classifier
    app.state.scheduler = scheduler
    app.state.orchestrator = SyncOrchestrator(
        store=store,
        source_factory=source_factory,
        duplicate_guard=DuplicateGuard(redis_client, claim_ttl=settings.DEDUP_CLAIM_TTL),
        resolver=ThreadResolver(CustomerMatcher(), rules.classifier),
        extraction_engine=ExtractionEngine(rules.extraction),
        classifier=classifier,
        notifier=notifier,
        thresholds=PerformanceThresholds(
            max_error_rate_percent=settings.SYNC_MAX_ERROR_RATE_PERCENT,
            min_messages_per_second=settings.SYNC_MIN_MESSAGES_PER_SECOND,
            max_ms_per_message=settings.SYNC_MAX_MS_PER_MESSAGE,
        ),
    )
    app.state.emergency_router = EmergencyRouter(
        store=store,
        ranker=ResponderRanker(),
        scheduler=scheduler,
        notifier=notifier,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager."""
    logger.info(f"🚀 Starting {settings.APP_NAME} v{settings.APP_VERSION}...")

    # 1. Wait for database and create tables
    db_ready = await wait_for_database()
    if not db_ready:
        logger.error("❌ Cannot start without database")
        raise RuntimeError("Database not available")

    # 2. Initialize Redis
    try:
        redis_client = aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.REDIS_MAX_CONNECTIONS
        )
        await redis_client.ping()
        app.state.redis = redis_client
        logger.info("✅ Redis connected")
    except Exception as e:
        logger.error(f"❌ Redis connection failed: {e}")
        raise RuntimeError(f"Redis not available: {e}")

    # 3. Initialize services
    try:
        from database import get_session_factory
        from services.store import SqlStore

        build_services(app, SqlStore(get_session_factory()), app.state.redis)
        logger.info("✅ Pipeline services initialized")
    except Exception as e:
        logger.error(f"❌ Service initialization failed: {e}")
        raise

    # 4. Initialize metrics
    from services.metrics import set_app_info
    set_app_info(version=settings.APP_VERSION, environment=settings.APP_ENV)
    logger.info("Prometheus metrics initialized")

    logger.info("Application ready!")

    yield

    # Shutdown
    logger.info("🛑 Shutting down...")

    if getattr(app.state, 'orchestrator', None):
        await app.state.orchestrator.shutdown()

    if getattr(app.state, 'scheduler', None):
        await app.state.scheduler.shutdown()

    if getattr(app.state, 'redis', None):
        await app.state.redis.aclose()

    from database import close_db
    await close_db()

    logger.info("👋 Goodbye!")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Conversation ingestion and emergency routing",
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Trace ID middleware for distributed tracing
@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    """Add trace ID to each request for distributed tracing."""
    trace_id = request.headers.get("X-Trace-ID") or str(uuid.uuid4())[:8]
    set_trace_id(trace_id)

    logger.info(
        "Request started",
        method=request.method,
        path=request.url.path,
        trace_id=trace_id
    )

    started = time.perf_counter()
    response = await call_next(request)

    response.headers["X-Trace-ID"] = trace_id

    from services.metrics import REQUEST_DURATION
    route = request.scope.get("route")
    REQUEST_DURATION.labels(
        method=request.method,
        endpoint=getattr(route, "path", "unmatched"),
        status_code=response.status_code
    ).observe(time.perf_counter() - started)

    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        trace_id=trace_id
    )

    return response


# Include routers
from routers.sync import router as sync_router
from routers.emergency import router as emergency_router
app.include_router(sync_router, prefix="/sync", tags=["sync"])
app.include_router(emergency_router, prefix="/emergencies", tags=["emergencies"])


@app.get("/health/live")
async def liveness_check():
    """
    Liveness check - checks if the process is running.

    This should NOT check external dependencies (DB, Redis).
    """
    return {"status": "alive"}


@app.get("/health/ready")
async def readiness_check():
    """
    Readiness check - checks if the app is ready to serve traffic.

    Checks all external dependencies.
    """
    from database import get_engine

    checks = {
        "status": "ready",
        "version": settings.APP_VERSION,
        "database": "disconnected",
        "redis": "disconnected",
    }

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "connected"

        if getattr(app.state, 'redis', None):
            await app.state.redis.ping()
            checks["redis"] = "connected"

    except Exception as e:
        checks["status"] = "not_ready"
        checks["error"] = str(e)
        return JSONResponse(status_code=503, content=checks)

    return checks


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    from services.metrics import get_metrics
    return get_metrics()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        workers=1
    )
