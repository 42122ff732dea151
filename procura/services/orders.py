"""
procura/services/orders.py

Order persistence for the three order kinds (quote requests, purchase orders,
service orders).

Operations per kind:
- list_orders / get_order
- create_order / update_order (replace all lines)
- update_status (Draft -> Sent -> Approved/Rejected -> Archived)
- delete_order, bulk_archive_by_supplier
- purchase_order_draft_from_quote / purchase_order_draft_from_service_order

Every write is succeed-or-abort: order, lines, price history and audit entries are
committed together or rolled back together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Iterable, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..audit import ACTION_CREATE, ACTION_DELETE, ACTION_STATUS, ACTION_UPDATE, log_action, serialize_model
from ..cart import CartLine
from ..errors import InvalidStatusTransition, OrderNotEditable, OrderValidationError, PersistenceError
from ..extensions import db
from ..models import (
    CURRENCIES,
    EXCHANGE_RATE_SCALE,
    ORDER_STATUSES,
    STATUS_APPROVED,
    STATUS_ARCHIVED,
    STATUS_DRAFT,
    STATUS_REJECTED,
    STATUS_SENT,
    Company,
    PurchaseOrder,
    PurchaseOrderItem,
    QuoteRequest,
    QuoteRequestItem,
    ServiceOrder,
    ServiceOrderItem,
    ServiceOrderMaterial,
    Supplier,
)
from ..totals import LineItem, to_decimal
from ..utils import clean_payment_terms, decimal_places, validate_lines
from . import price_history

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderKind:
    """Static description of one order kind, used by routes and services alike."""

    key: str
    label: str
    singular: str
    model: type
    item_model: type
    material_model: Optional[type] = None
    requires_prices: bool = True
    records_price_history: bool = False
    extra_fields: tuple = ()
    has_payment_terms: bool = False
    document_function: str = ""

    @property
    def has_materials(self) -> bool:
        return self.material_model is not None


QUOTE_REQUESTS = OrderKind(
    key="quote-requests",
    label="Solicitudes de Cotización",
    singular="Solicitud de Cotización",
    model=QuoteRequest,
    item_model=QuoteRequestItem,
    requires_prices=False,
    extra_fields=("deadline_date",),
    document_function="generate-qr-pdf",
)

PURCHASE_ORDERS = OrderKind(
    key="purchase-orders",
    label="Órdenes de Compra",
    singular="Orden de Compra",
    model=PurchaseOrder,
    item_model=PurchaseOrderItem,
    records_price_history=True,
    extra_fields=("delivery_date", "quote_request_id", "service_order_id"),
    has_payment_terms=True,
    document_function="generate-po-pdf",
)

SERVICE_ORDERS = OrderKind(
    key="service-orders",
    label="Órdenes de Servicio",
    singular="Orden de Servicio",
    model=ServiceOrder,
    item_model=ServiceOrderItem,
    material_model=ServiceOrderMaterial,
    records_price_history=True,
    extra_fields=("delivery_date", "equipment"),
    document_function="generate-so-pdf",
)

ORDER_KINDS = {kind.key: kind for kind in (QUOTE_REQUESTS, PURCHASE_ORDERS, SERVICE_ORDERS)}


def get_kind(key: str) -> OrderKind:
    """Raises KeyError for unknown kinds (routes turn it into a 404)."""
    return ORDER_KINDS[key]


# ---------------------------------------------------------------------
# Status lifecycle
# ---------------------------------------------------------------------
STATUS_FILTERS = {
    "active": (STATUS_DRAFT, STATUS_SENT),
    "approved": (STATUS_APPROVED,),
    "rejected": (STATUS_REJECTED,),
    "archived": (STATUS_ARCHIVED,),
    "history": (STATUS_APPROVED, STATUS_REJECTED, STATUS_ARCHIVED),
    "all": ORDER_STATUSES,
}

ALLOWED_TRANSITIONS = {
    STATUS_DRAFT: {STATUS_SENT, STATUS_ARCHIVED},
    STATUS_SENT: {STATUS_APPROVED, STATUS_REJECTED, STATUS_DRAFT, STATUS_ARCHIVED},
    STATUS_APPROVED: {STATUS_ARCHIVED},
    STATUS_REJECTED: {STATUS_ARCHIVED},
    STATUS_ARCHIVED: {STATUS_DRAFT},
}


def can_transition(current: Optional[str], new_status: str) -> bool:
    return new_status in ALLOWED_TRANSITIONS.get(current or STATUS_DRAFT, set())


# ---------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------
def _commit(operation: Callable[[], Any], description: str) -> Any:
    """Run a write and commit it; roll back and raise PersistenceError on DB failure."""
    try:
        result = operation()
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        log.exception("Database error while trying to %s", description)
        raise PersistenceError(f"No se pudo {description}.") from exc
    return result


def _next_sequence(model: type) -> int:
    current = db.session.query(func.max(model.sequence_number)).scalar()
    return (current or 0) + 1


def _clean_header(kind: OrderKind, header: Mapping[str, Any]) -> tuple[dict, list[str]]:
    """Validate header values; returns (clean values, error messages)."""
    errors: list[str] = []
    clean: dict = {}

    company_id = header.get("company_id")
    if not company_id or db.session.get(Company, company_id) is None:
        errors.append("Seleccione una empresa válida.")
    clean["company_id"] = company_id

    supplier_id = header.get("supplier_id")
    if not supplier_id or db.session.get(Supplier, supplier_id) is None:
        errors.append("Seleccione un proveedor válido.")
    clean["supplier_id"] = supplier_id

    currency = (header.get("currency") or "").strip().upper()
    if currency not in CURRENCIES:
        errors.append("Moneda no válida.")
    clean["currency"] = currency

    exchange_rate = header.get("exchange_rate")
    if exchange_rate in (None, ""):
        clean["exchange_rate"] = None
    else:
        rate = to_decimal(exchange_rate)
        if rate <= 0:
            errors.append("La tasa de cambio debe ser mayor que 0.")
        elif decimal_places(rate) > EXCHANGE_RATE_SCALE:
            errors.append(f"La tasa de cambio admite como máximo {EXCHANGE_RATE_SCALE} decimales.")
        clean["exchange_rate"] = rate

    clean["issue_date"] = header.get("issue_date") or date.today()
    clean["observations"] = (header.get("observations") or "").strip() or None

    for name in kind.extra_fields:
        value = header.get(name)
        if isinstance(value, str):
            value = value.strip() or None
        clean[name] = value

    if kind.has_payment_terms:
        terms = header.get("payment_terms")
        supplier = db.session.get(Supplier, supplier_id) if supplier_id else None
        if not terms and supplier is not None:
            # not chosen on the form: the supplier's terms apply
            clean.update(supplier.payment_terms_values())
        else:
            values, term_errors = clean_payment_terms(
                terms, header.get("custom_payment_terms"), header.get("credit_days")
            )
            clean.update(values)
            errors += term_errors

    deadline = clean.get("deadline_date")
    if deadline and deadline < clean["issue_date"]:
        errors.append("La fecha límite no puede ser anterior a la fecha de emisión.")

    return clean, errors


def _validate(kind: OrderKind, header, lines: list[CartLine], materials: list[CartLine]) -> dict:
    clean, errors = _clean_header(kind, header)

    if materials and not kind.has_materials:
        errors.append("Este tipo de orden no admite materiales/repuestos.")
    if not lines and not materials:
        errors.append("La orden debe tener al menos una línea.")

    errors += validate_lines(lines, require_prices=kind.requires_prices)
    errors += validate_lines(materials, require_prices=kind.requires_prices, label="Repuesto")
    for index, line in enumerate(materials, start=1):
        if line.supplier_id and db.session.get(Supplier, line.supplier_id) is None:
            errors.append(f"Repuesto {index}: proveedor no válido.")

    if errors:
        raise OrderValidationError(errors)
    return clean


def _build_rows(row_model: type, lines: Iterable[CartLine]) -> list:
    per_line_supplier = hasattr(row_model, "supplier_id")
    rows = []
    for line_no, line in enumerate(lines, start=1):
        item = line.item
        extra = {"supplier_id": line.supplier_id} if per_line_supplier else {}
        rows.append(
            row_model(
                **extra,
                line_no=line_no,
                material_id=line.material_id,
                description=line.description or None,
                unit=line.unit,
                supplier_code=line.supplier_code,
                quantity=item.quantity,
                unit_price=item.unit_price,
                discount_percentage=item.discount_percentage,
                sales_percentage=item.sales_percentage,
                is_exempt=item.is_exempt,
                tax_rate=item.tax_rate,
            )
        )
    return rows


def _priced_rows(order) -> list:
    """Rows that feed price history: materials of service orders, items of purchase orders."""
    if isinstance(order, ServiceOrder):
        return list(order.materials)
    return list(order.items)


def _user_id(user) -> Optional[int]:
    return getattr(user, "id", None) if user is not None else None


# ---------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------
def list_orders(kind: OrderKind, status_filter: str = "active") -> list:
    statuses = STATUS_FILTERS.get(status_filter)
    if statuses is None:
        raise OrderValidationError(f"Filtro de estado desconocido: {status_filter}")

    model = kind.model
    return (
        model.query.filter(model.status.in_(statuses))
        .order_by(model.created_at.desc(), model.id.desc())
        .all()
    )


def get_order(kind: OrderKind, order_id: int):
    return db.session.get(kind.model, order_id)


# ---------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------
def create_order(
    kind: OrderKind,
    header: Mapping[str, Any],
    lines: Iterable[CartLine],
    materials: Iterable[CartLine] = (),
    *,
    user=None,
):
    """Create a Draft order with its lines (and price history where applicable)."""
    lines = list(lines)
    materials = list(materials)
    clean = _validate(kind, header, lines, materials)

    order = kind.model(
        **clean,
        status=STATUS_DRAFT,
        sequence_number=_next_sequence(kind.model),
        created_by_id=_user_id(user),
    )
    order.items = _build_rows(kind.item_model, lines)
    if kind.has_materials:
        order.materials = _build_rows(kind.material_model, materials)

    def write():
        db.session.add(order)
        db.session.flush()
        if kind.records_price_history:
            price_history.record_for_order(order, _priced_rows(order), user_id=_user_id(user))
        log_action(order, ACTION_CREATE, after=serialize_model(order))
        return order

    _commit(write, f"crear la {kind.singular.lower()}")
    log.info("Created %s %s (id=%s)", kind.key, order.document_number, order.id)
    return order


def update_order(
    kind: OrderKind,
    order,
    header: Mapping[str, Any],
    lines: Iterable[CartLine],
    materials: Iterable[CartLine] = (),
    *,
    user=None,
):
    """Update a Draft order, replacing all of its lines."""
    if not order.is_editable:
        raise OrderNotEditable(order.status)

    lines = list(lines)
    materials = list(materials)
    clean = _validate(kind, header, lines, materials)
    before = serialize_model(order)

    def write():
        for name, value in clean.items():
            setattr(order, name, value)
        order.items = _build_rows(kind.item_model, lines)
        if kind.has_materials:
            order.materials = _build_rows(kind.material_model, materials)
        db.session.flush()

        if kind.records_price_history:
            price_history.clear_for_order(order)
            price_history.record_for_order(order, _priced_rows(order), user_id=_user_id(user))

        log_action(order, ACTION_UPDATE, before=before, after=serialize_model(order))
        return order

    _commit(write, f"actualizar la {kind.singular.lower()}")
    log.info("Updated %s %s (id=%s)", kind.key, order.document_number, order.id)
    return order


def update_status(kind: OrderKind, order, new_status: str):
    if new_status not in ORDER_STATUSES or not can_transition(order.status, new_status):
        raise InvalidStatusTransition(order.status, new_status)

    previous = order.status

    def write():
        order.status = new_status
        db.session.flush()
        log_action(order, ACTION_STATUS, before={"status": previous}, after={"status": new_status})
        return order

    _commit(write, "actualizar el estado")
    log.info("%s %s: %s -> %s", kind.key, order.document_number, previous, new_status)
    return order


def delete_order(kind: OrderKind, order) -> None:
    """Delete a Draft order with its lines and price history."""
    if not order.is_editable:
        raise OrderNotEditable(order.status)

    before = serialize_model(order)

    def write():
        if kind.records_price_history:
            price_history.clear_for_order(order)
        db.session.delete(order)
        db.session.flush()
        log_action(order, ACTION_DELETE, before=before)

    _commit(write, f"eliminar la {kind.singular.lower()}")
    log.info("Deleted %s id=%s", kind.key, before.get("id"))


def bulk_archive_by_supplier(kind: OrderKind, supplier_id: int) -> int:
    """Archive every order of a supplier that is neither Archived nor Approved."""
    model = kind.model
    orders = model.query.filter(
        model.supplier_id == supplier_id,
        model.status.notin_((STATUS_ARCHIVED, STATUS_APPROVED)),
    ).all()

    def write():
        for order in orders:
            previous = order.status
            order.status = STATUS_ARCHIVED
            log_action(order, ACTION_STATUS, before={"status": previous}, after={"status": STATUS_ARCHIVED})
        db.session.flush()
        return len(orders)

    count = _commit(write, "archivar las órdenes del proveedor")
    log.info("Archived %d %s for supplier %s", count, kind.key, supplier_id)
    return count


# ---------------------------------------------------------------------
# Conversions into purchase orders
# ---------------------------------------------------------------------
def _default_line_from(row, *, unit_price=None) -> CartLine:
    material = row.material
    return CartLine(
        item=LineItem(
            quantity=row.quantity,
            unit_price=row.unit_price if unit_price is None else unit_price,
            discount_percentage=row.discount_percentage,
            sales_percentage=row.sales_percentage,
            is_exempt=row.is_exempt or bool(material and material.is_exempt),
            tax_rate=row.tax_rate,
        ),
        material_id=row.material_id,
        description=row.description or (material.name if material else ""),
        unit=row.unit or (material.unit if material else None),
        supplier_code=row.supplier_code,
    )


def _base_header(order, supplier: Supplier) -> dict:
    return {
        "company_id": order.company_id,
        "supplier_id": supplier.id,
        "currency": order.currency,
        "exchange_rate": order.exchange_rate,
        "issue_date": date.today(),
        **supplier.payment_terms_values(),
    }


def purchase_order_draft_from_quote(quote: QuoteRequest) -> tuple[dict, list[CartLine]]:
    """
    Header and cart lines for a new purchase order prefilled from an Approved quote request.
    Nothing is written; the user reviews prices and saves the purchase order.
    """
    if quote.status != STATUS_APPROVED:
        raise OrderValidationError("Solo se pueden convertir solicitudes de cotización aprobadas.")

    header = _base_header(quote, quote.supplier)
    header["quote_request_id"] = quote.id
    header["observations"] = f"Generado desde Solicitud de Cotización #{quote.document_number}"
    return header, [_default_line_from(row) for row in quote.items]


def purchase_order_draft_from_service_order(
    service_order: ServiceOrder, supplier_id: Optional[int] = None
) -> tuple[dict, list[CartLine]]:
    """
    Header and cart lines for a purchase order of the spare parts bought from one supplier.

    Spare parts are grouped by supplier (see ServiceOrder.materials_by_supplier); each group
    becomes its own purchase order. supplier_id may be omitted when there is a single group.
    """
    groups = service_order.materials_by_supplier()
    if not groups:
        raise OrderValidationError("La orden de servicio no tiene materiales/repuestos.")

    if supplier_id is None:
        if len(groups) > 1:
            raise OrderValidationError("Seleccione el proveedor de los repuestos.")
        supplier_id = next(iter(groups))
    group = groups.get(supplier_id)
    if group is None:
        raise OrderValidationError("La orden de servicio no tiene repuestos de ese proveedor.")

    supplier = group["supplier"]
    header = _base_header(service_order, supplier)
    header["service_order_id"] = service_order.id
    header["observations"] = (
        f"Generado desde Orden de Servicio #{service_order.document_number} ({supplier.name})"
    )
    return header, [_default_line_from(row) for row in group["lines"]]


def existing_purchase_order_for(source, supplier_id: Optional[int] = None) -> Optional[PurchaseOrder]:
    """
    Purchase order already generated from a quote request or service order, if any.
    For service orders pass supplier_id: there is one purchase order per spare part supplier.
    """
    linked = list(getattr(source, "purchase_orders", None) or [])
    if supplier_id is not None:
        linked = [po for po in linked if po.supplier_id == supplier_id]
    return linked[0] if linked else None


def cart_lines_for(order, section: str = "items") -> list[CartLine]:
    """Cart lines mirroring the stored rows of an order (edit flows start from these)."""
    rows = order.materials if section == "materials" else order.items
    return [
        CartLine(
            item=row.to_line_item(),
            material_id=row.material_id,
            description=row.description or "",
            unit=row.unit,
            supplier_code=row.supplier_code,
            supplier_id=getattr(row, "supplier_id", None),
        )
        for row in rows
    ]
