"""
procura/blueprints/orders/__init__.py

Blueprint package export.
"""

from __future__ import annotations

from .routes import orders_bp  # noqa: F401
