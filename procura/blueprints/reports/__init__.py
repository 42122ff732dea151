"""Reports blueprint package (purchase history, price history, audit log)."""

from .routes import reports_bp  # noqa: F401
