"""
procura/blueprints/reports/routes.py

Read-only reports:
- Purchase history (purchase order lines) with per-currency summary
- Price history per material, CSV download per supplier
- Audit log (admin-only)
"""

from __future__ import annotations

from flask import Blueprint, Response, abort, render_template, request
from flask_login import login_required

from ...extensions import db
from ...models import ORDER_STATUSES, AuditLog, Material, Supplier
from ...security import admin_required
from ...services.price_history import (
    price_history_csv,
    price_history_for_material,
    price_history_for_supplier,
)
from ...services.reports import purchase_history_report, purchase_history_summary
from ...utils import parse_date, parse_optional_int

reports_bp = Blueprint("reports", __name__, url_prefix="/reports")

AUDIT_PAGE_SIZE = 50


def _dropdowns() -> dict:
    return {
        "suppliers": Supplier.query.order_by(Supplier.name.asc()).all(),
        "materials": Material.query.order_by(Material.name.asc()).all(),
    }


@reports_bp.route("/purchase-history")
@login_required
def purchase_history():
    filters = {
        "supplier_id": parse_optional_int(request.args.get("supplier_id")),
        "material_id": parse_optional_int(request.args.get("material_id")),
        "start_date": parse_date(request.args.get("start_date")),
        "end_date": parse_date(request.args.get("end_date")),
        "status": (request.args.get("status") or "").strip() or None,
    }
    if filters["status"] and filters["status"] not in ORDER_STATUSES:
        abort(400)

    rows = purchase_history_report(**filters)

    return render_template(
        "reports/purchase_history.html",
        rows=rows,
        summary=purchase_history_summary(rows),
        filters=filters,
        statuses=ORDER_STATUSES,
        **_dropdowns(),
    )


@reports_bp.route("/price-history")
@login_required
def price_history():
    material_id = parse_optional_int(request.args.get("material_id"))
    material = db.session.get(Material, material_id) if material_id else None
    if material_id and material is None:
        abort(404)

    entries = price_history_for_material(material.id) if material else []

    return render_template(
        "reports/price_history.html",
        material=material,
        entries=entries,
        **_dropdowns(),
    )


@reports_bp.route("/price-history/supplier/<int:supplier_id>.csv")
@login_required
def supplier_price_history_csv(supplier_id: int):
    supplier = Supplier.query.get_or_404(supplier_id)
    body = price_history_csv(price_history_for_supplier(supplier.id))

    filename = f"historial-precios-{supplier.code or supplier.id}.csv"
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@reports_bp.route("/audit")
@login_required
@admin_required
def audit_log():
    """Latest audit entries, optionally filtered by entity type."""
    entity_type = (request.args.get("entity_type") or "").strip()
    page = max(parse_optional_int(request.args.get("page")) or 1, 1)

    query = AuditLog.query
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)

    pagination = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).paginate(
        page=page, per_page=AUDIT_PAGE_SIZE, error_out=False
    )
    entity_types = [row[0] for row in db.session.query(AuditLog.entity_type).distinct().order_by(AuditLog.entity_type)]

    return render_template(
        "reports/audit_log.html",
        pagination=pagination,
        entries=pagination.items,
        entity_type=entity_type,
        entity_types=entity_types,
    )
