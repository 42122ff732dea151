"""
procura/services/price_history.py

Price history sink and queries.

Writes:
- one PriceHistory row per priced material line (material set, unit_price > 0)
  of a purchase order or the spare parts of a service order.

Reads:
- newest first
- when a purchase order was generated from a service order, the service order's
  entries are superseded by the purchase order's and are dropped.
"""

from __future__ import annotations

import csv
import io
from typing import Iterable, Optional

from ..extensions import db
from ..models import Material, PriceHistory, PurchaseOrder, ServiceOrder
from ..totals import ZERO, to_decimal


def _order_link(order) -> dict:
    if isinstance(order, ServiceOrder):
        return {"service_order_id": order.id}
    return {"purchase_order_id": order.id}


def record_for_order(order, rows: Iterable, *, user_id: Optional[int] = None) -> list[PriceHistory]:
    """Add price history rows for an order (flushed by the caller's transaction)."""
    entries = []
    link = _order_link(order)

    for row in rows:
        if not row.material_id or to_decimal(row.unit_price) <= ZERO:
            continue
        entry = PriceHistory(
            material_id=row.material_id,
            supplier_id=getattr(row, "supplier_id", None) or order.supplier_id,
            unit_price=row.unit_price,
            currency=order.currency,
            exchange_rate=order.exchange_rate,
            user_id=user_id,
            **link,
        )
        db.session.add(entry)
        entries.append(entry)

    return entries


def clear_for_order(order) -> int:
    """Delete previous price history of an order before it is re-recorded or deleted."""
    column = PriceHistory.service_order_id if isinstance(order, ServiceOrder) else PriceHistory.purchase_order_id
    return PriceHistory.query.filter(column == order.id).delete(synchronize_session="fetch")


def _drop_superseded(entries: list[PriceHistory]) -> list[PriceHistory]:
    po_ids = {e.purchase_order_id for e in entries if e.purchase_order_id}
    if not po_ids:
        return entries

    superseded = {
        so_id
        for (so_id,) in db.session.query(PurchaseOrder.service_order_id)
        .filter(PurchaseOrder.id.in_(po_ids), PurchaseOrder.service_order_id.isnot(None))
        .all()
    }
    if not superseded:
        return entries

    return [e for e in entries if not (e.service_order_id and e.service_order_id in superseded)]


def price_history_for_material(material_id: int) -> list[PriceHistory]:
    entries = (
        PriceHistory.query.filter_by(material_id=material_id)
        .order_by(PriceHistory.recorded_at.desc(), PriceHistory.id.desc())
        .all()
    )
    return _drop_superseded(entries)


def price_history_for_supplier(supplier_id: int) -> list[PriceHistory]:
    entries = (
        PriceHistory.query.filter_by(supplier_id=supplier_id)
        .join(Material, Material.id == PriceHistory.material_id)
        .order_by(Material.name.asc(), PriceHistory.recorded_at.desc(), PriceHistory.id.desc())
        .all()
    )
    return _drop_superseded(entries)


CSV_HEADER = ["Material", "Código", "Precio unitario", "Moneda", "Tasa de cambio", "Orden", "Fecha"]


def price_history_csv(entries: Iterable[PriceHistory]) -> str:
    """CSV export used by the supplier price history download."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)

    for entry in entries:
        if entry.purchase_order_id:
            origin = db.session.get(PurchaseOrder, entry.purchase_order_id)
        else:
            origin = db.session.get(ServiceOrder, entry.service_order_id) if entry.service_order_id else None

        writer.writerow([
            entry.material.name if entry.material else "",
            entry.material.code if entry.material else "",
            f"{entry.unit_price:.2f}",
            entry.currency,
            "" if entry.exchange_rate is None else str(entry.exchange_rate),
            origin.document_number if origin else "",
            entry.recorded_at.strftime("%Y-%m-%d") if entry.recorded_at else "",
        ])

    return buffer.getvalue()
