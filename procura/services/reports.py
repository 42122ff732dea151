"""
procura/services/reports.py

Purchase history report: purchase order lines filtered by supplier, material,
issue date range (both ends inclusive) and order status, with per-currency summary.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import joinedload

from ..models import CURRENCIES, PurchaseOrder, PurchaseOrderItem
from ..totals import ZERO, compute_line


def purchase_history_report(
    supplier_id: Optional[int] = None,
    material_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status: Optional[str] = None,
) -> list[PurchaseOrderItem]:
    q = (
        PurchaseOrderItem.query.join(PurchaseOrder, PurchaseOrder.id == PurchaseOrderItem.order_id)
        .options(
            joinedload(PurchaseOrderItem.order).joinedload(PurchaseOrder.supplier),
            joinedload(PurchaseOrderItem.material),
        )
    )

    if supplier_id:
        q = q.filter(PurchaseOrder.supplier_id == supplier_id)
    if material_id:
        q = q.filter(PurchaseOrderItem.material_id == material_id)
    if start_date:
        q = q.filter(PurchaseOrder.issue_date >= start_date)
    if end_date:
        q = q.filter(PurchaseOrder.issue_date <= end_date)
    if status:
        q = q.filter(PurchaseOrder.status == status)

    return q.order_by(PurchaseOrder.issue_date.desc(), PurchaseOrderItem.id.desc()).all()


def purchase_history_summary(rows: Iterable[PurchaseOrderItem]) -> dict:
    """Gross spend (quantity * unit price) per currency plus total units bought."""
    by_currency: dict[str, Decimal] = {currency: ZERO for currency in CURRENCIES}
    units = ZERO
    count = 0

    for row in rows:
        item = row.to_line_item()
        currency = row.order.currency
        by_currency[currency] = by_currency.get(currency, ZERO) + compute_line(item).item_value
        units += item.quantity
        count += 1

    return {"by_currency": by_currency, "units": units, "lines": count}
