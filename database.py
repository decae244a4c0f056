"""
Database connection and session management for DoseSync

Holds the medications, reminder_occurrences and scheduled_notifications tables.
"""

import logging
from sqlalchemy import create_engine, event, func, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from typing import Dict, Generator

from config import settings


logger = logging.getLogger(__name__)


def _build_engine(url: str):
    if url.startswith("sqlite"):
        # One shared connection so ":memory:" survives across sessions
        sqlite_engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=settings.DATABASE_ECHO
        )

        # Occurrence rows cascade with their medication
        @event.listens_for(sqlite_engine, "connect")
        def enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return sqlite_engine

    return create_engine(
        url,
        echo=settings.DATABASE_ECHO,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True
    )


engine = _build_engine(settings.DATABASE_URL)

# Rows stay readable after get_db_context() commits and closes
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)

# Base class for ORM models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Request-scoped session for FastAPI routes.

    Services commit their own work; the session is only closed here.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Session for scripts and services called without a request.

    Usage:
        with get_db_context() as db:
            await reconciliation_coordinator.reconcile_all(db=db)
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """Create any missing tables"""
    # Registers the models with Base
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized at: {settings.DATABASE_URL}")


def drop_db() -> None:
    """
    Drop every table.
    WARNING: adherence history is lost as well.
    """
    import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    logger.warning("All database tables dropped")


def reset_db() -> None:
    """Drop and recreate all tables"""
    drop_db()
    init_db()
    logger.info("Database reset complete")


class DatabaseHealthCheck:
    """Database health check utilities"""

    @staticmethod
    def is_connected() -> bool:
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.exception("Database connectivity check failed")
            return False

    @staticmethod
    def get_reminder_counts() -> Dict[str, int]:
        """Medications, occurrences per state and recorded notification handles"""
        import models

        with get_db_context() as db:
            counts = {
                "medications": db.query(func.count(models.Medication.id)).scalar(),
                "active_medications": db.query(func.count(models.Medication.id)).filter(
                    models.Medication.status == models.MedicationStatus.ACTIVE
                ).scalar(),
            }

            by_state = db.query(
                models.ReminderOccurrence.state,
                func.count(models.ReminderOccurrence.id)
            ).group_by(models.ReminderOccurrence.state).all()
            for state in models.OccurrenceState:
                counts[f"occurrences_{state.value}"] = 0
            for state, count in by_state:
                counts[f"occurrences_{state.value}"] = count

            counts["live_handles"] = db.query(func.count(models.ReminderOccurrence.id)).filter(
                models.ReminderOccurrence.notification_handle.isnot(None)
            ).scalar()

        return counts


# Export commonly used items
__all__ = [
    "engine",
    "SessionLocal",
    "Base",
    "get_db",
    "get_db_context",
    "init_db",
    "drop_db",
    "reset_db",
    "DatabaseHealthCheck"
]
