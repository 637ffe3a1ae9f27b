"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    fallback_path = BASE_DIR / "db" / "gule.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Gule Marketplace")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Authentication
    JWT_SECRET_KEY: Final[str] = os.getenv("JWT_SECRET_KEY", os.getenv("JWT_SECRET", "change-me-jwt"))
    JWT_ACCESS_TOKEN_EXPIRES_HOURS: Final[int] = int(os.getenv("JWT_ACCESS_TOKEN_EXPIRES_HOURS", "168"))

    # Checkout and catalog rules
    MAX_ORDER_ITEM_QUANTITY: Final[int] = int(os.getenv("MAX_ORDER_ITEM_QUANTITY", "100"))
    DEFAULT_PAGE_SIZE: Final[int] = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    MAX_PAGE_SIZE: Final[int] = int(os.getenv("MAX_PAGE_SIZE", "100"))
    LOW_STOCK_THRESHOLD: Final[int] = int(os.getenv("LOW_STOCK_THRESHOLD", "5"))
    # Cancelling a shipped/delivered order only puts units back on the shelf when enabled
    RESTOCK_AFTER_SHIPMENT: Final[bool] = _str_to_bool(os.getenv("RESTOCK_AFTER_SHIPMENT"), default=False)

    # Escrow
    ESCROW_HOLD_DAYS: Final[int] = int(os.getenv("ESCROW_HOLD_DAYS", "7"))
    ESCROW_COMMISSION_RATE: Final[float] = float(os.getenv("ESCROW_COMMISSION_RATE", "0.05"))

    # Audit trail: database, logging, memory or none
    AUDIT_LOG_BACKEND: Final[str] = os.getenv("AUDIT_LOG_BACKEND", "database").strip().lower()

    # Outbound email (Resend)
    EMAIL_ENABLED: Final[bool] = _str_to_bool(os.getenv("EMAIL_ENABLED"), default=False)
    RESEND_API_KEY: Final[str] = os.getenv("RESEND_API_KEY", "")
    EMAIL_SENDER: Final[str] = os.getenv("EMAIL_SENDER", "Gule Marketplace <orders@gule.market>")
    EMAIL_WORKERS: Final[int] = int(os.getenv("EMAIL_WORKERS", "2"))

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")

    SUPER_ADMIN_EMAIL: Final[str] = os.getenv("SUPER_ADMIN_EMAIL", "")
    SUPER_ADMIN_PASSWORD: Final[str] = os.getenv("SUPER_ADMIN_PASSWORD", "")
    SUPER_ADMIN_NAME: Final[str] = os.getenv("SUPER_ADMIN_NAME", "Super Admin")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["JWT_SECRET_KEY"] = cls.JWT_SECRET_KEY
        app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=cls.JWT_ACCESS_TOKEN_EXPIRES_HOURS)
        app.config["JWT_TOKEN_LOCATION"] = ["headers"]
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["AUDIT_LOG_BACKEND"] = cls.AUDIT_LOG_BACKEND
        app.config["EMAIL_ENABLED"] = cls.EMAIL_ENABLED
