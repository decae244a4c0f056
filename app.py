"""
DoseSync Backend
FastAPI application for medication reminder scheduling
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime

# Configuration and database
from config import settings
from database import init_db, DatabaseHealthCheck

from api import include_routers
from exceptions import CancellationFailed, InvalidDescriptor, InvalidTransition, MedicationNotFound
from services.reconciliation_service import reconciliation_coordinator

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format=settings.LOG_FORMAT
)
logger = logging.getLogger(__name__)


# ==================== LIFESPAN ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, release the notification scheduler on shutdown"""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENV})")
    logger.info(
        f"Notification backend: {settings.NOTIFICATION_BACKEND}, "
        f"horizon: {settings.RECONCILE_HORIZON_DAYS} days, timezone: {settings.TIMEZONE}"
    )

    try:
        init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    yield

    await reconciliation_coordinator.aclose()
    logger.info(f"Shutting down {settings.APP_NAME}")


# ==================== APP INITIALIZATION ====================

app = FastAPI(
    title=settings.APP_NAME,
    description="""
    ## DoseSync API

    Medication reminder scheduling with notification reconciliation.

    ### Features
    - **Recurring schedules**: daily, multi-dose, weekly, monthly, one-off and custom rules
    - **Reconciliation**: schedule edits update future reminders without touching history
    - **Adherence**: mark doses taken or skipped, cancelling their notifications
    - **Drift detection**: compare recorded reminders with the notification scheduler
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

include_routers(app, prefix=settings.API_PREFIX)


# ==================== EXCEPTION HANDLERS ====================

def _error_response(status_code: int, message, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": True,
            "message": message,
            "status_code": status_code,
            "timestamp": datetime.utcnow().isoformat(),
            **extra
        }
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    return _error_response(exc.status_code, exc.detail)


@app.exception_handler(InvalidDescriptor)
async def invalid_descriptor_handler(request, exc: InvalidDescriptor):
    return _error_response(422, str(exc), field=exc.field)


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request, exc: InvalidTransition):
    current = exc.current_state
    return _error_response(
        409,
        str(exc),
        current_state=getattr(current, "value", current)
    )


@app.exception_handler(MedicationNotFound)
async def medication_not_found_handler(request, exc: MedicationNotFound):
    return _error_response(404, str(exc))


@app.exception_handler(CancellationFailed)
async def cancellation_failed_handler(request, exc: CancellationFailed):
    return _error_response(503, str(exc), handle=exc.handle)


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return _error_response(
        500,
        "An unexpected error occurred" if not settings.DEBUG else str(exc)
    )


# ==================== HEALTH ENDPOINTS ====================

@app.get("/", tags=["Health"])
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat()
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Database, notification backend and reminder bookkeeping"""
    db_connected = DatabaseHealthCheck.is_connected()

    return {
        "status": "healthy" if db_connected else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {
            "database": {
                "status": "up" if db_connected else "down",
                "type": "sqlite" if "sqlite" in settings.DATABASE_URL else "postgresql"
            },
            "notifications": {
                "backend": settings.NOTIFICATION_BACKEND,
                "quota": settings.NOTIFICATION_QUOTA
            }
        },
        "reminders": DatabaseHealthCheck.get_reminder_counts() if db_connected else None,
        "config": {
            "timezone": settings.TIMEZONE,
            "horizon_days": settings.RECONCILE_HORIZON_DAYS,
            "retention_days": settings.HISTORY_RETENTION_DAYS,
            "auto_expire_minutes": settings.AUTO_EXPIRE_PENDING_AFTER_MINUTES
        },
        "version": settings.APP_VERSION,
        "environment": settings.ENV
    }


# ==================== MAIN ====================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
