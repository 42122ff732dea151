"""
procura/security.py

Access control helpers.

Key rules:
- UI is never trusted; all permission checks are server-side.
- Admin: full access, including master data and audit log.
- Manager: creates, edits and transitions orders.
- Viewer: read-only (no mutating requests), except explicit self-service actions.

This module also provides a global safety net:
- viewer_readonly_guard() blocks POST/PUT/PATCH/DELETE for Viewers.
  Wired via app.before_request in the app factory.

IMPORTANT:
- Decorators use functools.wraps to avoid Flask endpoint collisions.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Optional, Tuple

from flask import render_template, request
from flask_login import current_user

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Mutating endpoints a viewer may still call.
# orders.preview_totals only computes totals, it writes nothing.
VIEWER_ALLOWED_ENDPOINTS = {"auth.logout", "orders.preview_totals"}


def _forbidden() -> Tuple[str, int]:
    """Render a consistent 403 page."""
    return render_template("errors/403.html"), 403


def is_admin() -> bool:
    return bool(current_user.is_authenticated and getattr(current_user, "is_admin", False))


def can_manage() -> bool:
    if not current_user.is_authenticated:
        return False
    check = getattr(current_user, "can_manage", None)
    return bool(callable(check) and check())


def viewer_readonly_guard() -> Optional[Tuple[str, int]]:
    """Global guard: Viewers cannot mutate data."""
    if request.method not in MUTATING_METHODS:
        return None

    if not current_user.is_authenticated:
        return None

    if can_manage():
        return None

    if (request.endpoint or "").strip() in VIEWER_ALLOWED_ENDPOINTS:
        return None

    return _forbidden()


def admin_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: admin-only."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        if not is_admin():
            return _forbidden()
        return view_func(*args, **kwargs)

    return wrapper


def manager_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: manager or admin."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        if not can_manage():
            return _forbidden()
        return view_func(*args, **kwargs)

    return wrapper
