"""
API Module
FastAPI routers for the DoseSync application
"""

from api.medications import router as medications_router
from api.reminders import router as reminders_router

from api.deps import (
    get_db,
    get_coordinator,
    get_medication_service,
    services,
)


__all__ = [
    # Routers
    "medications_router",
    "reminders_router",
    # Dependencies
    "get_db",
    "get_coordinator",
    "get_medication_service",
    "services",
]


def include_routers(app, prefix: str = "/api/v1"):
    """
    Include all API routers in the FastAPI app

    Usage:
        from api import include_routers
        include_routers(app)
    """
    app.include_router(medications_router, prefix=prefix)
    app.include_router(reminders_router, prefix=prefix)
