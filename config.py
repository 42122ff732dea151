"""
Application configuration.
This module defines the configuration settings for the Flask application, including database connection, secret key,
document service endpoints and logging. It uses environment variables for sensitive information and defaults for
development. In production, make sure to set the appropriate environment variables and secure the secret key.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'procura.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF protection for forms
    WTF_CSRF_ENABLED = True

    # App UI name (used in templates)
    APP_NAME = "Procura"

    # Currencies: orders are issued in DEFAULT_CURRENCY or SECONDARY_CURRENCY.
    # Orders in the secondary currency show a reference total divided by the exchange rate.
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")
    SECONDARY_CURRENCY = os.environ.get("SECONDARY_CURRENCY", "VES")

    # Serverless functions that render PDFs and deliver email/WhatsApp
    DOCUMENTS_BASE_URL = os.environ.get("DOCUMENTS_BASE_URL", "http://localhost:54321/functions/v1")
    DOCUMENTS_API_KEY = os.environ.get("DOCUMENTS_API_KEY", "")
    DOCUMENTS_TIMEOUT = float(os.environ.get("DOCUMENTS_TIMEOUT", "30"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class TestingConfig(Config):
    """In-memory database, no CSRF. Used by the test-suite."""

    TESTING = True
    SECRET_KEY = "testing"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    WTF_CSRF_ENABLED = False
    DOCUMENTS_BASE_URL = "http://documents.test/functions/v1"
    DOCUMENTS_API_KEY = "test-key"
    LOG_LEVEL = "DEBUG"
