from datetime import date, timedelta
from decimal import Decimal

import pytest

from procura.errors import InvalidStatusTransition, OrderNotEditable, OrderValidationError
from procura.extensions import db
from procura.cart import OrderCart
from procura.models import AuditLog, PriceHistory, PurchaseOrder, ServiceOrderMaterial, Supplier
from procura.services import orders as svc
from procura.services.orders import PURCHASE_ORDERS, QUOTE_REQUESTS, SERVICE_ORDERS, get_kind
from procura.services.price_history import (
    CSV_HEADER,
    price_history_csv,
    price_history_for_material,
    price_history_for_supplier,
)
from procura.services.reports import purchase_history_report, purchase_history_summary


def test_get_kind():
    assert get_kind("service-orders") is SERVICE_ORDERS
    with pytest.raises(KeyError):
        get_kind("invoices")


def test_create_purchase_order(ctx, header, refs, make_line):
    order = svc.create_order(
        PURCHASE_ORDERS,
        header,
        [make_line(refs["material"]), make_line(description="Flete", unit_price=Decimal("5"), quantity=1)],
    )

    assert order.status == "Draft"
    assert order.sequence_number == 1
    assert order.document_number.startswith("OC-")
    assert order.document_number.endswith("-001")
    assert [row.line_no for row in order.items] == [1, 2]

    totals = order.compute_totals()
    assert totals.base_imponible == 25
    assert totals.monto_iva == 4
    assert totals.total == 29

    # only material rows with a price reach the price history
    entries = PriceHistory.query.all()
    assert len(entries) == 1
    assert entries[0].supplier_id == refs["supplier"]
    assert entries[0].purchase_order_id == order.id

    assert AuditLog.query.filter_by(entity_type="PurchaseOrder", action="CREATE").count() == 1


def test_sequence_numbers_increase_per_kind(ctx, header, make_line):
    first = svc.create_order(PURCHASE_ORDERS, header, [make_line()])
    second = svc.create_order(PURCHASE_ORDERS, header, [make_line()])
    quote = svc.create_order(QUOTE_REQUESTS, header, [make_line()])
    assert (first.sequence_number, second.sequence_number, quote.sequence_number) == (1, 2, 1)


def test_validation_messages(ctx, refs, make_line):
    bad_header = {"company_id": None, "supplier_id": refs["supplier"], "currency": "EUR", "exchange_rate": "0"}
    lines = [make_line(description="", quantity=0, unit_price=0, discount_percentage=120)]

    with pytest.raises(OrderValidationError) as excinfo:
        svc.create_order(PURCHASE_ORDERS, bad_header, lines)

    messages = excinfo.value.messages
    assert "Seleccione una empresa válida." in messages
    assert "Moneda no válida." in messages
    assert "La tasa de cambio debe ser mayor que 0." in messages
    assert any("cantidad" in m for m in messages)
    assert any("precio unitario" in m for m in messages)
    assert any("descuento" in m for m in messages)
    assert any("material o escriba" in m for m in messages)
    assert PurchaseOrder.query.count() == 0


def test_order_needs_lines(ctx, header):
    with pytest.raises(OrderValidationError, match="al menos una línea"):
        svc.create_order(PURCHASE_ORDERS, header, [])


def test_quote_request_may_omit_prices(ctx, header, make_line):
    deadline = date.today() + timedelta(days=7)
    quote = svc.create_order(QUOTE_REQUESTS, {**header, "deadline_date": deadline}, [make_line(unit_price=0)])
    assert quote.deadline_date == deadline
    assert quote.compute_totals().total == 0


def test_deadline_before_issue_date_is_rejected(ctx, header, make_line):
    with pytest.raises(OrderValidationError, match="fecha límite"):
        svc.create_order(
            QUOTE_REQUESTS,
            {**header, "issue_date": date(2024, 5, 10), "deadline_date": date(2024, 5, 1)},
            [make_line()],
        )


def test_materials_only_for_service_orders(ctx, header, make_line):
    with pytest.raises(OrderValidationError, match="no admite"):
        svc.create_order(PURCHASE_ORDERS, header, [make_line()], [make_line()])


def test_update_replaces_lines_and_price_history(ctx, header, refs, make_line):
    order = svc.create_order(PURCHASE_ORDERS, header, [make_line(refs["material"])])
    svc.update_order(
        PURCHASE_ORDERS,
        order,
        {**header, "currency": "VES", "exchange_rate": "36.5"},
        [make_line(refs["material"], unit_price=Decimal("12")), make_line(refs["exempt_material"], is_exempt=True)],
    )

    assert order.currency == "VES"
    assert len(order.items) == 2
    entries = PriceHistory.query.order_by(PriceHistory.id).all()
    assert [e.unit_price for e in entries] == [Decimal("12"), Decimal("10")]
    assert {e.currency for e in entries} == {"VES"}


def test_only_drafts_are_editable(ctx, header, make_line):
    order = svc.create_order(PURCHASE_ORDERS, header, [make_line()])
    svc.update_status(PURCHASE_ORDERS, order, "Sent")

    with pytest.raises(OrderNotEditable):
        svc.update_order(PURCHASE_ORDERS, order, header, [make_line()])
    with pytest.raises(OrderNotEditable):
        svc.delete_order(PURCHASE_ORDERS, order)


def test_status_lifecycle(ctx, header, make_line):
    order = svc.create_order(QUOTE_REQUESTS, header, [make_line()])

    with pytest.raises(InvalidStatusTransition):
        svc.update_status(QUOTE_REQUESTS, order, "Approved")
    with pytest.raises(InvalidStatusTransition):
        svc.update_status(QUOTE_REQUESTS, order, "Paid")

    for status in ("Sent", "Approved", "Archived", "Draft"):
        svc.update_status(QUOTE_REQUESTS, order, status)
        assert order.status == status

    assert AuditLog.query.filter_by(action="STATUS").count() == 4


def test_list_filters(ctx, header, make_line):
    draft = svc.create_order(PURCHASE_ORDERS, header, [make_line()])
    approved = svc.create_order(PURCHASE_ORDERS, header, [make_line()])
    svc.update_status(PURCHASE_ORDERS, approved, "Sent")
    svc.update_status(PURCHASE_ORDERS, approved, "Approved")

    assert svc.list_orders(PURCHASE_ORDERS, "active") == [draft]
    assert svc.list_orders(PURCHASE_ORDERS, "approved") == [approved]
    assert set(svc.list_orders(PURCHASE_ORDERS, "all")) == {draft, approved}
    with pytest.raises(OrderValidationError):
        svc.list_orders(PURCHASE_ORDERS, "unknown")


def test_delete_draft_removes_price_history(ctx, header, refs, make_line):
    order = svc.create_order(PURCHASE_ORDERS, header, [make_line(refs["material"])])
    svc.delete_order(PURCHASE_ORDERS, order)

    assert PurchaseOrder.query.count() == 0
    assert PriceHistory.query.count() == 0
    assert AuditLog.query.filter_by(action="DELETE").count() == 1


def test_bulk_archive_skips_approved(ctx, header, refs, make_line):
    draft = svc.create_order(PURCHASE_ORDERS, header, [make_line()])
    sent = svc.create_order(PURCHASE_ORDERS, header, [make_line()])
    svc.update_status(PURCHASE_ORDERS, sent, "Sent")
    approved = svc.create_order(PURCHASE_ORDERS, header, [make_line()])
    svc.update_status(PURCHASE_ORDERS, approved, "Sent")
    svc.update_status(PURCHASE_ORDERS, approved, "Approved")
    foreign = svc.create_order(PURCHASE_ORDERS, {**header, "supplier_id": refs["other_supplier"]}, [make_line()])

    assert svc.bulk_archive_by_supplier(PURCHASE_ORDERS, refs["supplier"]) == 2
    assert (draft.status, sent.status, approved.status, foreign.status) == (
        "Archived", "Archived", "Approved", "Draft"
    )


def test_service_order_totals_and_material_price_history(ctx, header, refs, make_line):
    so = svc.create_order(
        SERVICE_ORDERS,
        {**header, "equipment": "Compresor"},
        [make_line(description="Mano de obra", quantity=1, unit_price=Decimal("100"))],
        [make_line(refs["material"], quantity=2, unit_price=Decimal("10"))],
    )

    assert so.services_totals().total == 116
    assert so.materials_totals().total == Decimal("23.2")
    assert so.compute_totals().total == Decimal("139.2")

    entries = PriceHistory.query.all()
    assert len(entries) == 1
    assert entries[0].service_order_id == so.id


def test_quote_conversion_prefills_purchase_order(ctx, header, refs, make_line):
    quote = svc.create_order(QUOTE_REQUESTS, header, [make_line(refs["exempt_material"], is_exempt=False)])

    with pytest.raises(OrderValidationError):
        svc.purchase_order_draft_from_quote(quote)

    svc.update_status(QUOTE_REQUESTS, quote, "Sent")
    svc.update_status(QUOTE_REQUESTS, quote, "Approved")
    po_header, lines = svc.purchase_order_draft_from_quote(quote)

    assert po_header["quote_request_id"] == quote.id
    assert quote.document_number in po_header["observations"]
    assert lines[0].material_id == refs["exempt_material"]
    # the material's exemption flag carries over
    assert lines[0].item.is_exempt is True

    po = svc.create_order(PURCHASE_ORDERS, po_header, lines)
    assert po.quote_request_id == quote.id
    assert svc.existing_purchase_order_for(quote) == po


def test_purchase_order_from_service_order_supersedes_its_price_history(ctx, header, refs, make_line):
    so = svc.create_order(
        SERVICE_ORDERS,
        header,
        [make_line(description="Servicio")],
        [make_line(refs["material"], unit_price=Decimal("8"))],
    )
    assert len(price_history_for_material(refs["material"])) == 1

    po_header, lines = svc.purchase_order_draft_from_service_order(so)
    po = svc.create_order(PURCHASE_ORDERS, po_header, lines)

    entries = price_history_for_material(refs["material"])
    assert len(entries) == 1
    assert entries[0].purchase_order_id == po.id
    assert PriceHistory.query.count() == 2


def test_service_order_without_materials_cannot_generate_purchase_order(ctx, header, make_line):
    so = svc.create_order(SERVICE_ORDERS, header, [make_line()])
    with pytest.raises(OrderValidationError):
        svc.purchase_order_draft_from_service_order(so)


def test_cart_lines_for_mirror_stored_rows(ctx, header, refs, make_line):
    line = make_line(refs["material"], discount_percentage=Decimal("5"), tax_rate=Decimal("0.08"))
    order = svc.create_order(PURCHASE_ORDERS, header, [line])

    (restored,) = svc.cart_lines_for(order)
    assert restored.material_id == refs["material"]
    assert restored.item.discount_percentage == 5
    assert restored.item.tax_rate == Decimal("0.08")


def test_price_history_csv(ctx, header, refs, make_line):
    svc.create_order(PURCHASE_ORDERS, header, [make_line(refs["material"])])
    body = price_history_csv(price_history_for_supplier(refs["supplier"]))

    rows = body.strip().splitlines()
    assert rows[0] == ",".join(CSV_HEADER)
    assert rows[1].startswith("Tornillo,M-001,")
    assert len(rows) == 2


def test_purchase_history_report(ctx, header, refs, make_line):
    svc.create_order(PURCHASE_ORDERS, header, [make_line(refs["material"], quantity=3, discount_percentage=50)])
    svc.create_order(
        PURCHASE_ORDERS,
        {**header, "currency": "VES", "exchange_rate": "40", "supplier_id": refs["other_supplier"]},
        [make_line(refs["material"], unit_price=Decimal("400"))],
    )

    everything = purchase_history_report()
    assert len(everything) == 2

    summary = purchase_history_summary(everything)
    assert summary["by_currency"]["USD"] == 30
    assert summary["by_currency"]["VES"] == 800
    assert summary["units"] == 5
    assert summary["lines"] == 2

    assert len(purchase_history_report(supplier_id=refs["other_supplier"])) == 1
    assert purchase_history_report(start_date=date.today() + timedelta(days=2)) == []
    assert purchase_history_report(status="Approved") == []


def test_failed_commit_is_rolled_back(ctx, header, make_line, monkeypatch):
    from sqlalchemy.exc import OperationalError

    from procura.errors import PersistenceError

    def boom():
        raise OperationalError("COMMIT", {}, Exception("disk full"))

    monkeypatch.setattr(db.session, "commit", boom)
    with pytest.raises(PersistenceError):
        svc.create_order(PURCHASE_ORDERS, header, [make_line()])

    monkeypatch.undo()
    assert PurchaseOrder.query.count() == 0


# ---------------------------------------------------------------------
# Stored values
# ---------------------------------------------------------------------
def test_saved_totals_match_cart_totals(ctx, header, refs):
    cart = OrderCart()
    cart.add({"material_id": refs["material"], "description": "Tornillo", "quantity": "3", "unit_price": "0,33",
              "discount_percentage": "12.5", "sales_percentage": "7.25", "tax_rate": "0.08"})
    cart.add({"description": "Flete", "quantity": "1.125", "unit_price": "1,234.56", "is_exempt": "false"})
    before = cart.totals()

    order_id = svc.create_order(PURCHASE_ORDERS, header, list(cart)).id
    db.session.expire_all()

    assert db.session.get(PurchaseOrder, order_id).compute_totals() == before


def test_values_finer_than_stored_columns_are_rejected(ctx, header, make_line):
    with pytest.raises(OrderValidationError) as exc:
        svc.create_order(
            PURCHASE_ORDERS,
            header,
            [make_line(quantity=Decimal("3"), unit_price=Decimal("0.333"), discount_percentage=Decimal("12.345"))],
        )
    assert len(exc.value.messages) == 2
    assert all("decimales" in message for message in exc.value.messages)

    with pytest.raises(OrderValidationError):
        svc.create_order(PURCHASE_ORDERS, {**header, "currency": "VES", "exchange_rate": "36.12345"}, [make_line()])

    # trailing zeros are not extra precision
    order = svc.create_order(PURCHASE_ORDERS, header, [make_line(unit_price=Decimal("10.500"))])
    assert order.items[0].unit_price == Decimal("10.5")
    assert PurchaseOrder.query.count() == 1


# ---------------------------------------------------------------------
# Spare parts bought from several suppliers
# ---------------------------------------------------------------------
@pytest.fixture
def two_supplier_service_order(ctx, header, refs, make_line):
    return svc.create_order(
        SERVICE_ORDERS,
        header,
        [make_line(description="Mano de obra", quantity=1, unit_price=Decimal("100"))],
        [
            make_line(refs["material"], unit_price=Decimal("8")),
            make_line(refs["exempt_material"], "Harina", supplier_id=refs["other_supplier"], unit_price=Decimal("3")),
            make_line(description="Empacadura", supplier_id=refs["other_supplier"], quantity=1),
        ],
    )


def test_spare_parts_keep_their_supplier(two_supplier_service_order, refs):
    so = two_supplier_service_order
    assert [row.supplier_id for row in so.materials] == [None, refs["other_supplier"], refs["other_supplier"]]
    assert ServiceOrderMaterial.query.filter_by(supplier_id=refs["other_supplier"]).count() == 2

    groups = so.materials_by_supplier()
    assert list(groups) == [refs["supplier"], refs["other_supplier"]]
    assert [len(group["lines"]) for group in groups.values()] == [1, 2]
    assert all(group["purchase_order"] is None for group in groups.values())

    restored = svc.cart_lines_for(so, "materials")
    assert [line.supplier_id for line in restored] == [None, refs["other_supplier"], refs["other_supplier"]]


def test_spare_part_price_history_records_the_part_supplier(two_supplier_service_order, refs):
    by_supplier = {e.material_id: e.supplier_id for e in PriceHistory.query.all()}
    assert by_supplier == {refs["material"]: refs["supplier"], refs["exempt_material"]: refs["other_supplier"]}


def test_one_purchase_order_per_spare_part_supplier(two_supplier_service_order, refs):
    so = two_supplier_service_order

    with pytest.raises(OrderValidationError):
        svc.purchase_order_draft_from_service_order(so)

    po_header, lines = svc.purchase_order_draft_from_service_order(so, refs["other_supplier"])
    assert po_header["supplier_id"] == refs["other_supplier"]
    assert po_header["service_order_id"] == so.id
    assert "Otro Proveedor" in po_header["observations"]
    assert [line.description for line in lines] == ["Harina", "Empacadura"]

    po = svc.create_order(PURCHASE_ORDERS, po_header, lines)
    assert svc.existing_purchase_order_for(so, refs["other_supplier"]) == po
    assert svc.existing_purchase_order_for(so, refs["supplier"]) is None
    assert so.materials_by_supplier()[refs["other_supplier"]]["purchase_order"] == po

    po_header, lines = svc.purchase_order_draft_from_service_order(so, refs["supplier"])
    assert [line.material_id for line in lines] == [refs["material"]]

    with pytest.raises(OrderValidationError):
        svc.purchase_order_draft_from_service_order(so, 9999)


def test_unknown_spare_part_supplier_is_rejected(ctx, header, refs, make_line):
    with pytest.raises(OrderValidationError) as exc:
        svc.create_order(SERVICE_ORDERS, header, [], [make_line(refs["material"], supplier_id=9999)])
    assert exc.value.messages == ["Repuesto 1: proveedor no válido."]


# ---------------------------------------------------------------------
# Payment terms
# ---------------------------------------------------------------------
def test_purchase_order_takes_supplier_payment_terms(ctx, header, refs, make_line):
    supplier = db.session.get(Supplier, refs["supplier"])
    supplier.payment_terms = "Crédito"
    supplier.credit_days = 30
    db.session.commit()

    po = svc.create_order(PURCHASE_ORDERS, header, [make_line()])
    assert (po.payment_terms, po.credit_days, po.custom_payment_terms) == ("Crédito", 30, None)
    assert po.payment_terms_label == "Crédito (30 días)"

    other = svc.create_order(
        PURCHASE_ORDERS,
        {**header, "payment_terms": "Otro", "custom_payment_terms": "50% anticipo", "credit_days": "15"},
        [make_line()],
    )
    # days only apply to credit terms
    assert (other.payment_terms, other.credit_days, other.payment_terms_label) == ("Otro", 0, "50% anticipo")


def test_invalid_payment_terms_are_rejected(ctx, header, make_line):
    for terms in ({"payment_terms": "Otro"}, {"payment_terms": "Crédito", "credit_days": "-1"},
                  {"payment_terms": "Trueque"}):
        with pytest.raises(OrderValidationError):
            svc.create_order(PURCHASE_ORDERS, {**header, **terms}, [make_line()])
    assert PurchaseOrder.query.count() == 0


def test_quote_conversion_carries_supplier_payment_terms(ctx, header, refs, make_line):
    supplier = db.session.get(Supplier, refs["supplier"])
    supplier.payment_terms = "Otro"
    supplier.custom_payment_terms = "Contra entrega"
    db.session.commit()

    quote = svc.create_order(QUOTE_REQUESTS, header, [make_line()])
    svc.update_status(QUOTE_REQUESTS, quote, "Sent")
    svc.update_status(QUOTE_REQUESTS, quote, "Approved")

    po_header, _ = svc.purchase_order_draft_from_quote(quote)
    assert po_header["payment_terms"] == "Otro"
    assert po_header["custom_payment_terms"] == "Contra entrega"
    assert po_header["credit_days"] == 0


# ---------------------------------------------------------------------
# Purchase history by issue date
# ---------------------------------------------------------------------
def test_purchase_history_filters_on_issue_date(ctx, header, refs, make_line):
    svc.create_order(PURCHASE_ORDERS, {**header, "issue_date": date(2024, 1, 15)}, [make_line(refs["material"])])
    svc.create_order(PURCHASE_ORDERS, header, [make_line(refs["material"])])

    january = purchase_history_report(start_date=date(2024, 1, 1), end_date=date(2024, 1, 31))
    assert [row.order.issue_date for row in january] == [date(2024, 1, 15)]

    assert len(purchase_history_report(start_date=date(2024, 1, 15), end_date=date(2024, 1, 15))) == 1
    assert purchase_history_report(end_date=date(2024, 1, 14)) == []
    assert len(purchase_history_report(start_date=date(2024, 1, 16))) == 1
