"""
Seat Ledger - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "trips", "description": "Trips offered by drivers: create, search, start, complete, cancel."},
    {"name": "bookings", "description": "Seat bookings: create, confirm, cancel."},
    {"name": "payments", "description": "Gateway payments, credit purchases, refunds and gateway callbacks."},
    {"name": "credits", "description": "Credit balance and ledger history."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Seat booking and credit ledger service for shared trips.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, security headers)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Local frontend development only; production must list origins explicitly
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", settings.IDENTITY_HEADER],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", summary="Liveness check", tags=["health"])
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/health/ready", summary="Readiness check", tags=["health"])
async def readiness_check():
    """Checks the database; returns 503 when it cannot be reached"""
    from starlette.responses import JSONResponse

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as e:
        logger.error("Readiness check failed", extra_data={"error": str(e)})
        db_status = f"error: {type(e).__name__}"

    healthy = db_status == "ok"
    return JSONResponse(
        content={"status": "healthy" if healthy else "degraded", "db": db_status},
        status_code=200 if healthy else 503,
    )
