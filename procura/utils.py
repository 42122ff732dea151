"""
Utility functions shared across the app. This includes:
- form parsing helpers (decimal/int/date/bool) that sanitize blank or invalid input
- safe next= redirect handling
- validate_lines: business rules for order lines, checked before anything is saved
- clean_payment_terms: supplier / purchase order payment terms
- status_badge_class: CSS class for the status badge of an order row
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional
from urllib.parse import urlparse

from flask import request, url_for

from .cart import CartLine
from .models import (
    LINE_SCALES,
    PAYMENT_CASH,
    PAYMENT_CREDIT,
    PAYMENT_OTHER,
    PAYMENT_TERMS,
    STATUS_APPROVED,
    STATUS_ARCHIVED,
    STATUS_DRAFT,
    STATUS_REJECTED,
    STATUS_SENT,
)
from .totals import HUNDRED, ZERO, parse_bool, to_decimal  # noqa: F401


FIELD_LABELS = {
    "quantity": "la cantidad",
    "unit_price": "el precio unitario",
    "discount_percentage": "el descuento",
    "sales_percentage": "el porcentaje de venta",
    "tax_rate": "la tasa de IVA",
}


def parse_decimal(value: str | None) -> Decimal | None:
    """Parse decimal from user input (comma or dot, grouped thousands); None when blank/invalid."""
    return to_decimal(value, default=None)


def parse_optional_int(value: str | None) -> int | None:
    """Parse optional int from form/query."""
    if value is None:
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_date(value: str | None) -> date | None:
    """ISO date (YYYY-MM-DD) from a form field; None when blank/invalid."""
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return datetime.strptime(raw, "%Y-%m-%d").date()
    except ValueError:
        return None


def safe_next_url(raw_next: str | None, fallback_endpoint: str, **fallback_values) -> str:
    """
    Return a safe local next URL.

    Rules:
    - Only allow relative URLs (no scheme/netloc).
    - Fall back to an internal endpoint if invalid/empty.
    """
    fallback = url_for(fallback_endpoint, **fallback_values)
    if not raw_next:
        return fallback

    parsed = urlparse(raw_next)
    if parsed.scheme or parsed.netloc:
        return fallback
    if not raw_next.startswith("/") or raw_next.startswith("//"):
        return fallback
    return raw_next


def get_next_from_request(fallback_endpoint: str, **fallback_values) -> str:
    raw = request.args.get("next") or request.form.get("next")
    return safe_next_url(raw, fallback_endpoint, **fallback_values)


def decimal_places(value: Decimal) -> int:
    """Significant decimal places: 1.50 -> 1, 100 -> 0, 0.125 -> 3."""
    exponent = value.normalize().as_tuple().exponent
    return -exponent if exponent < 0 else 0


def validate_lines(lines: Iterable[CartLine], *, require_prices: bool = True, label: str = "Línea") -> list[str]:
    """
    Business rules for order lines. Returns a list of user-facing messages (empty = valid).

    - quantity must be > 0
    - unit price must be > 0 (quote requests may leave prices empty)
    - discount must be within [0, 100]
    - markup must be >= 0
    - tax rate must be within [0, 1]
    - no value may carry more decimal places than its column stores (LINE_SCALES)
    """
    errors: list[str] = []
    for index, line in enumerate(lines, start=1):
        item = line.item
        prefix = f"{label} {index}"

        if not line.material_id and not line.description:
            errors.append(f"{prefix}: seleccione un material o escriba una descripción.")
        if item.quantity <= ZERO:
            errors.append(f"{prefix}: la cantidad debe ser mayor que 0.")
        if require_prices and item.unit_price <= ZERO:
            errors.append(f"{prefix}: el precio unitario debe ser mayor que 0.")
        elif item.unit_price < ZERO:
            errors.append(f"{prefix}: el precio unitario no puede ser negativo.")
        if item.discount_percentage < ZERO or item.discount_percentage > HUNDRED:
            errors.append(f"{prefix}: el descuento debe estar entre 0 y 100.")
        if item.sales_percentage < ZERO:
            errors.append(f"{prefix}: el porcentaje de venta no puede ser negativo.")
        if item.tax_rate < ZERO or item.tax_rate > Decimal("1"):
            errors.append(f"{prefix}: la tasa de IVA debe estar entre 0 y 1.")
        for name, places in LINE_SCALES.items():
            if decimal_places(getattr(item, name)) > places:
                errors.append(f"{prefix}: {FIELD_LABELS[name]} admite como máximo {places} decimales.")
    return errors


def clean_payment_terms(payment_terms, custom_payment_terms=None, credit_days=None) -> tuple[dict, list[str]]:
    """
    Normalize supplier/purchase order payment terms.

    - blank terms mean "Contado"
    - "Crédito" needs a whole number of days >= 0; other terms store 0 days
    - "Otro" needs a description; other terms store none
    """
    errors: list[str] = []
    terms = (payment_terms or "").strip() or PAYMENT_CASH
    if terms not in PAYMENT_TERMS:
        errors.append("Condición de pago no válida.")

    days = 0
    if terms == PAYMENT_CREDIT:
        days = credit_days if isinstance(credit_days, int) else parse_optional_int(credit_days)
        if days is None or days < 0:
            errors.append("Indique los días de crédito (0 o más).")
            days = 0

    custom = None
    if terms == PAYMENT_OTHER:
        custom = (custom_payment_terms or "").strip() or None
        if custom is None:
            errors.append("Describa la condición de pago.")

    return {"payment_terms": terms, "custom_payment_terms": custom, "credit_days": days}, errors


def status_badge_class(status: Optional[str]) -> str:
    """CSS class for the status badge in order lists."""
    return {
        STATUS_DRAFT: "badge-draft",
        STATUS_SENT: "badge-sent",
        STATUS_APPROVED: "badge-approved",
        STATUS_REJECTED: "badge-rejected",
        STATUS_ARCHIVED: "badge-archived",
    }.get((status or "").strip(), "")
