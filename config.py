"""
Configuration management for DoseSync
"""

from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "DoseSync"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENV: str = "development"

    # API
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite:///./dosesync.db"
    DATABASE_ECHO: bool = False

    # Scheduling
    TIMEZONE: str = "UTC"
    RECONCILE_HORIZON_DAYS: int = 30  # days materialized ahead, today included
    HISTORY_RETENTION_DAYS: int = 180
    AUTO_EXPIRE_PENDING_AFTER_MINUTES: Optional[int] = None  # None keeps overdue doses pending

    # Notifications
    NOTIFICATION_BACKEND: str = "database"  # memory, database, http
    NOTIFICATION_QUOTA: Optional[int] = None  # max pending notifications per scheduler
    PUSH_SCHEDULER_URL: Optional[str] = None
    PUSH_SCHEDULER_TOKEN: Optional[str] = None
    PUSH_SCHEDULER_TIMEOUT: float = 10.0

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:19006"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


class ReminderConfig:
    """Fixed reminder behaviour that is not environment dependent"""

    NOTIFICATION_TITLE: str = "Time to take {name}"
    NOTIFICATION_BODY: str = "Dose: {dosage}. {instructions}"
    NOTIFICATION_CATEGORY: str = "medication_reminder"

    # Database scheduler dispatch
    DISPATCH_BATCH_SIZE: int = 200


# Database table names
class TableNames:
    MEDICATIONS = "medications"
    REMINDER_OCCURRENCES = "reminder_occurrences"
    SCHEDULED_NOTIFICATIONS = "scheduled_notifications"


settings = get_settings()
reminder_config = ReminderConfig()
