"""
procura/services

Order persistence and reporting on top of the models.

Routes call these functions; they validate, write in one transaction, audit,
and raise procura.errors exceptions on failure.
"""

from __future__ import annotations

from .orders import ORDER_KINDS, OrderKind, get_kind  # noqa: F401
