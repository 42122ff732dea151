"""
procura/blueprints/orders/routes.py

Order routes for quote requests, purchase orders and service orders.

Includes:
- Lists per status tab (active / approved / rejected / archived / history) with text search
- Create / edit flows driven by an OrderCart kept in the session (one cart per flow
  and section; service orders have "items" and "materials")
- Detail page with the totals block
- Status transitions, delete, bulk archive by supplier
- Conversions into purchase orders (approved quote requests, service order spare parts)
- PDF download / email delivery through the document functions
- JSON totals preview for live recalculation while a form is edited

IMPORTANT:
- UI is never trusted. Permissions and validation are server-side.
- Totals shown anywhere come from procura.totals.
"""

from __future__ import annotations

from datetime import date

from flask import (
    Blueprint,
    Response,
    abort,
    current_app,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from flask_login import current_user, login_required

from ...cart import CartLine, OrderCart, cart_key, discard_cart, load_cart, save_cart
from ...documents import DocumentClient, document_context
from ...errors import DocumentServiceError, OrderNotEditable, OrderValidationError, ProcuraError
from ...extensions import csrf, db
from ...models import CURRENCIES, ORDER_STATUSES, Company, Material, Supplier
from ...security import manager_required
from ...services import orders as order_service
from ...services.orders import PURCHASE_ORDERS, STATUS_FILTERS, OrderKind, get_kind
from ...totals import LineItem, compute_totals, reference_total, sum_totals
from ...utils import get_next_from_request, parse_bool, parse_date, parse_decimal, parse_optional_int

orders_bp = Blueprint("orders", __name__, url_prefix="/orders")

LINE_TEXT_FIELDS = ("description", "unit", "supplier_code")
LINE_NUMBER_FIELDS = ("quantity", "unit_price", "discount_percentage", "sales_percentage")
PAYMENT_TERM_FIELDS = ("payment_terms", "custom_payment_terms", "credit_days")


# ---------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------
def _kind_or_404(kind_key: str) -> OrderKind:
    try:
        return get_kind(kind_key)
    except KeyError:
        abort(404)


def _order_or_404(kind: OrderKind, order_id: int):
    order = order_service.get_order(kind, order_id)
    if order is None:
        abort(404)
    return order


def _sections(kind: OrderKind) -> tuple[str, ...]:
    return ("items", "materials") if kind.has_materials else ("items",)


def _header_key(kind: OrderKind, order_id: int | None) -> str:
    return f"header:{kind.key}:{'edit-' + str(order_id) if order_id else 'new'}"


# ---------------------------------------------------------------------
# Form parsing
# ---------------------------------------------------------------------
def _header_from_form(kind: OrderKind) -> dict:
    form = request.form
    header = {
        "company_id": parse_optional_int(form.get("company_id")),
        "supplier_id": parse_optional_int(form.get("supplier_id")),
        "currency": (form.get("currency") or "").strip(),
        "exchange_rate": parse_decimal(form.get("exchange_rate")),
        "issue_date": parse_date(form.get("issue_date")),
        "observations": form.get("observations"),
    }
    for name in kind.extra_fields:
        if name.endswith("_date"):
            header[name] = parse_date(form.get(name))
        elif name.endswith("_id"):
            header[name] = parse_optional_int(form.get(name))
        else:
            header[name] = (form.get(name) or "").strip() or None
    if kind.has_payment_terms:
        for name in PAYMENT_TERM_FIELDS:
            header[name] = (form.get(name) or "").strip() or None
    return header


def _line_fields_from_form(section: str = "items") -> dict:
    """
    Raw line fields of the add/update form. Blank numbers become 0,
    a blank tax rate stays unset so the default rate applies.
    Spare parts ("materials") carry their own supplier (line_supplier_id).
    """
    form = request.form
    data: dict = {name: (form.get(name) or "").strip() for name in LINE_TEXT_FIELDS}
    for name in LINE_NUMBER_FIELDS:
        data[name] = parse_decimal(form.get(name)) or 0
    data["tax_rate"] = parse_decimal(form.get("tax_rate"))
    data["is_exempt"] = parse_bool(form.get("is_exempt"))
    data["supplier_id"] = parse_optional_int(form.get("line_supplier_id")) if section == "materials" else None

    material_id = parse_optional_int(form.get("material_id"))
    data["material_id"] = material_id
    if material_id:
        material = db.session.get(Material, material_id)
        if material is None:
            raise OrderValidationError("Material no válido.")
        data["description"] = data["description"] or material.name
        data["unit"] = data["unit"] or material.unit
        if "is_exempt" not in form:
            data["is_exempt"] = material.is_exempt
    return data


def _apply_cart_action(cart: OrderCart, action: str, section: str = "items") -> None:
    if action == "add_line":
        cart.add(CartLine.from_mapping(_line_fields_from_form(section)))
        return
    if action == "clear":
        cart.clear()
        return

    index = parse_optional_int(request.form.get("index"))
    if index is None or not 0 <= index < len(cart):
        raise OrderValidationError("Línea no válida.")

    if action == "remove_line":
        cart.remove(index)
    elif action == "update_line":
        cart.update(index, **_line_fields_from_form(section))
    else:
        raise OrderValidationError("Acción no válida.")


def _header_values(kind: OrderKind, order=None, stored: dict | None = None) -> dict:
    """String values to prefill the header form."""
    if request.method == "POST":
        return {key: value for key, value in request.form.items()}

    source = stored or {}
    if order is not None:
        names = ("company_id", "supplier_id", "currency", "exchange_rate", "issue_date", "observations")
        names += kind.extra_fields + (PAYMENT_TERM_FIELDS if kind.has_payment_terms else ())
        source = {name: getattr(order, name) for name in names}

    values = {
        "currency": current_app.config.get("DEFAULT_CURRENCY", "USD"),
        "issue_date": date.today().isoformat(),
    }
    for key, value in source.items():
        if value is None:
            continue
        values[key] = value.isoformat() if isinstance(value, date) else str(value)
    return values


def _render_form(kind: OrderKind, order, carts: dict, header_values: dict, status: int = 200):
    section_totals = {section: cart.totals() for section, cart in carts.items()}
    grand = sum_totals(*section_totals.values())
    suppliers = Supplier.query.order_by(Supplier.name.asc()).all()
    reference = reference_total(
        grand.total,
        header_values.get("currency"),
        header_values.get("exchange_rate"),
        current_app.config.get("SECONDARY_CURRENCY", "VES"),
    )
    return render_template(
        "orders/form.html",
        kind=kind,
        order=order,
        carts=carts,
        section_totals=section_totals,
        totals=grand,
        reference=reference,
        header=header_values,
        companies=Company.query.order_by(Company.name.asc()).all(),
        suppliers=suppliers,
        supplier_names={s.id: s.name for s in suppliers},
        materials=Material.query.order_by(Material.name.asc()).all(),
        currencies=CURRENCIES,
    ), status


def _order_form(kind: OrderKind, order=None):
    """Shared create/edit flow."""
    order_id = order.id if order is not None else None
    keys = {section: cart_key(kind.key, order_id, section) for section in _sections(kind)}
    header_key = _header_key(kind, order_id)

    if request.method == "GET":
        if order is not None:
            for section, key in keys.items():
                save_cart(session, key, OrderCart(order_service.cart_lines_for(order, section)))
        carts = {section: load_cart(session, key) for section, key in keys.items()}
        return _render_form(kind, order, carts, _header_values(kind, order, session.get(header_key)))

    carts = {section: load_cart(session, key) for section, key in keys.items()}
    action = (request.form.get("action") or "save").strip()

    if action != "save":
        section = request.form.get("section") or "items"
        if section not in carts:
            abort(400)
        try:
            _apply_cart_action(carts[section], action, section)
        except OrderValidationError as exc:
            for message in exc.messages:
                flash(message, "danger")
            return _render_form(kind, order, carts, _header_values(kind), status=400)
        save_cart(session, keys[section], carts[section])
        return _render_form(kind, order, carts, _header_values(kind))

    header = _header_from_form(kind)
    lines = list(carts["items"])
    materials = list(carts["materials"]) if "materials" in carts else []

    try:
        if order is None:
            saved = order_service.create_order(kind, header, lines, materials, user=current_user)
            flash(f"{kind.singular} {saved.document_number} creada.", "success")
        else:
            saved = order_service.update_order(kind, order, header, lines, materials, user=current_user)
            flash(f"{kind.singular} {saved.document_number} actualizada.", "success")
    except OrderValidationError as exc:
        for message in exc.messages:
            flash(message, "danger")
        return _render_form(kind, order, carts, _header_values(kind), status=400)
    except ProcuraError as exc:
        flash(str(exc), "danger")
        target = order_id and url_for("orders.order_detail", kind_key=kind.key, order_id=order_id)
        return redirect(target or url_for("orders.list_orders", kind_key=kind.key))

    for key in keys.values():
        discard_cart(session, key)
    session.pop(header_key, None)

    return redirect(url_for("orders.order_detail", kind_key=kind.key, order_id=saved.id))


# ---------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------
def _matches(order, term: str) -> bool:
    haystack = " ".join([
        order.document_number,
        order.supplier.name if order.supplier else "",
        order.company.name if order.company else "",
        order.status_label,
    ]).lower()
    return term in haystack


@orders_bp.route("/<kind_key>/")
@login_required
def list_orders(kind_key: str):
    kind = _kind_or_404(kind_key)
    status_filter = (request.args.get("status") or "active").strip()
    if status_filter not in STATUS_FILTERS:
        abort(400)

    orders = order_service.list_orders(kind, status_filter)

    term = (request.args.get("q") or "").strip().lower()
    if term:
        orders = [o for o in orders if _matches(o, term)]

    return render_template(
        "orders/list.html",
        kind=kind,
        orders=orders,
        totals={o.id: o.compute_totals() for o in orders},
        status_filter=status_filter,
        status_filters=list(STATUS_FILTERS),
        search=term,
        suppliers=Supplier.query.order_by(Supplier.name.asc()).all(),
        allow_create=current_user.can_manage(),
    )


# ---------------------------------------------------------------------
# Create / Edit
# ---------------------------------------------------------------------
@orders_bp.route("/<kind_key>/new", methods=["GET", "POST"])
@login_required
@manager_required
def create_order(kind_key: str):
    kind = _kind_or_404(kind_key)
    if request.method == "GET" and request.args.get("reset"):
        for section in _sections(kind):
            discard_cart(session, cart_key(kind.key, None, section))
        session.pop(_header_key(kind, None), None)
    return _order_form(kind)


@orders_bp.route("/<kind_key>/<int:order_id>/edit", methods=["GET", "POST"])
@login_required
@manager_required
def edit_order(kind_key: str, order_id: int):
    kind = _kind_or_404(kind_key)
    order = _order_or_404(kind, order_id)

    if not order.is_editable:
        flash(str(OrderNotEditable(order.status)), "warning")
        return redirect(url_for("orders.order_detail", kind_key=kind.key, order_id=order.id))

    return _order_form(kind, order)


# ---------------------------------------------------------------------
# Detail
# ---------------------------------------------------------------------
@orders_bp.route("/<kind_key>/<int:order_id>")
@login_required
def order_detail(kind_key: str, order_id: int):
    kind = _kind_or_404(kind_key)
    order = _order_or_404(kind, order_id)

    ctx = document_context(order, current_app.config.get("SECONDARY_CURRENCY", "VES"))
    section_totals = {"items": compute_totals(order.line_items())}
    if kind.has_materials:
        section_totals["items"] = order.services_totals()
        section_totals["materials"] = order.materials_totals()

    return render_template(
        "orders/detail.html",
        kind=kind,
        order=order,
        doc=ctx,
        section_totals=section_totals,
        next_statuses=[s for s in ORDER_STATUSES if order_service.can_transition(order.status, s)],
        linked_purchase_order=None if kind.has_materials else order_service.existing_purchase_order_for(order),
        material_groups=order.materials_by_supplier() if kind.has_materials else {},
        can_manage=current_user.can_manage(),
    )


# ---------------------------------------------------------------------
# Status / delete / bulk archive
# ---------------------------------------------------------------------
@orders_bp.route("/<kind_key>/<int:order_id>/status", methods=["POST"])
@login_required
@manager_required
def change_status(kind_key: str, order_id: int):
    kind = _kind_or_404(kind_key)
    order = _order_or_404(kind, order_id)
    next_url = get_next_from_request("orders.order_detail", kind_key=kind.key, order_id=order.id)

    new_status = (request.form.get("status") or "").strip()
    try:
        order_service.update_status(kind, order, new_status)
    except ProcuraError as exc:
        flash(str(exc), "danger")
        return redirect(next_url)

    flash(f"Estado actualizado: {order.status_label}.", "success")
    return redirect(next_url)


@orders_bp.route("/<kind_key>/<int:order_id>/delete", methods=["POST"])
@login_required
@manager_required
def delete_order(kind_key: str, order_id: int):
    kind = _kind_or_404(kind_key)
    order = _order_or_404(kind, order_id)

    try:
        order_service.delete_order(kind, order)
    except ProcuraError as exc:
        flash(str(exc), "danger")
        return redirect(url_for("orders.order_detail", kind_key=kind.key, order_id=order_id))

    flash(f"{kind.singular} eliminada.", "success")
    return redirect(url_for("orders.list_orders", kind_key=kind.key))


@orders_bp.route("/<kind_key>/bulk-archive", methods=["POST"])
@login_required
@manager_required
def bulk_archive(kind_key: str):
    kind = _kind_or_404(kind_key)
    supplier_id = parse_optional_int(request.form.get("supplier_id"))
    if not supplier_id:
        flash("Seleccione un proveedor.", "danger")
        return redirect(url_for("orders.list_orders", kind_key=kind.key))

    try:
        count = order_service.bulk_archive_by_supplier(kind, supplier_id)
    except ProcuraError as exc:
        flash(str(exc), "danger")
    else:
        flash(f"{count} orden(es) archivada(s).", "success")
    return redirect(url_for("orders.list_orders", kind_key=kind.key))


# ---------------------------------------------------------------------
# Conversions into purchase orders
# ---------------------------------------------------------------------
@orders_bp.route("/<kind_key>/<int:order_id>/purchase-order", methods=["POST"])
@login_required
@manager_required
def generate_purchase_order(kind_key: str, order_id: int):
    """Prefill the new purchase order flow from a quote request or a service order."""
    kind = _kind_or_404(kind_key)
    if kind.key not in ("quote-requests", "service-orders"):
        abort(404)
    source = _order_or_404(kind, order_id)

    # service orders: one purchase order per spare part supplier
    supplier_id = parse_optional_int(request.form.get("supplier_id")) if kind.has_materials else None
    existing = order_service.existing_purchase_order_for(source, supplier_id)
    if existing is not None and (kind.key == "quote-requests" or supplier_id is not None):
        flash(f"Ya existe la orden de compra {existing.document_number}.", "info")
        return redirect(url_for("orders.order_detail", kind_key=PURCHASE_ORDERS.key, order_id=existing.id))

    try:
        if kind.key == "quote-requests":
            header, lines = order_service.purchase_order_draft_from_quote(source)
        else:
            header, lines = order_service.purchase_order_draft_from_service_order(source, supplier_id)
    except ProcuraError as exc:
        flash(str(exc), "danger")
        return redirect(url_for("orders.order_detail", kind_key=kind.key, order_id=source.id))

    save_cart(session, cart_key(PURCHASE_ORDERS.key, None, "items"), OrderCart(lines))
    session[_header_key(PURCHASE_ORDERS, None)] = {
        key: (value.isoformat() if isinstance(value, date) else (None if value is None else str(value)))
        for key, value in header.items()
    }
    flash("Revise precios y guarde la orden de compra.", "info")
    return redirect(url_for("orders.create_order", kind_key=PURCHASE_ORDERS.key))


# ---------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------
@orders_bp.route("/<kind_key>/<int:order_id>/pdf")
@login_required
def order_pdf(kind_key: str, order_id: int):
    kind = _kind_or_404(kind_key)
    order = _order_or_404(kind, order_id)

    try:
        pdf = DocumentClient.from_app().generate_pdf(kind.document_function, order.id)
    except DocumentServiceError as exc:
        flash(str(exc), "danger")
        return redirect(url_for("orders.order_detail", kind_key=kind.key, order_id=order.id))

    filename = f"{order.document_number}.pdf"
    return Response(
        pdf,
        mimetype="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@orders_bp.route("/<kind_key>/<int:order_id>/send", methods=["POST"])
@login_required
@manager_required
def send_order(kind_key: str, order_id: int):
    kind = _kind_or_404(kind_key)
    order = _order_or_404(kind, order_id)

    to = (request.form.get("to") or "").strip() or (order.supplier.email if order.supplier else "")
    whatsapp = (request.form.get("whatsapp_phone") or "").strip() or None
    if not parse_bool(request.form.get("send_whatsapp")):
        whatsapp = None

    try:
        DocumentClient.from_app().send_email(
            kind.document_function,
            order,
            to,
            message=(request.form.get("message") or "").strip(),
            whatsapp_phone=whatsapp,
            secondary_currency=current_app.config.get("SECONDARY_CURRENCY", "VES"),
        )
    except DocumentServiceError as exc:
        flash(str(exc), "danger")
    else:
        flash(f"{order.document_number} enviada a {to}.", "success")

    return redirect(url_for("orders.order_detail", kind_key=kind.key, order_id=order.id))


# ---------------------------------------------------------------------
# Live totals preview
# ---------------------------------------------------------------------
def _totals_json(totals) -> dict:
    return {key: str(value) for key, value in totals.as_dict().items()}


@orders_bp.route("/preview-totals", methods=["POST"])
@csrf.exempt
@login_required
def preview_totals():
    """
    Recalculate totals for unsaved lines.

    Body: {"items": [...], "materials": [...], "currency": "VES", "exchange_rate": "36.5"}
    Writes nothing.
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "JSON body required"}), 400

    sections = {}
    for section in ("items", "materials"):
        rows = payload.get(section) or []
        if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
            return jsonify({"error": f"'{section}' must be a list of objects"}), 400
        sections[section] = compute_totals(LineItem.from_mapping(row) for row in rows)

    grand = sum_totals(*sections.values())
    reference = reference_total(
        grand.total,
        payload.get("currency"),
        payload.get("exchange_rate"),
        current_app.config.get("SECONDARY_CURRENCY", "VES"),
    )

    return jsonify({
        "sections": {name: _totals_json(t) for name, t in sections.items()},
        "totals": _totals_json(grand),
        "display": _totals_json(grand.rounded()),
        "reference_total": None if reference is None else str(reference),
    })
