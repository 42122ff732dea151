"""
Procura – Domain Models

Master data:
- Company (issuing company), Supplier, Material, SupplierMaterial (catalog link)

Orders (three kinds, same line shape):
- QuoteRequest / QuoteRequestItem
- PurchaseOrder / PurchaseOrderItem
- ServiceOrder / ServiceOrderItem (services) + ServiceOrderMaterial (spare parts)

Side records:
- PriceHistory (one row per priced material line of purchase/service orders)
- User, AuditLog

IMPORTANT:
- Order totals are never stored. They are derived through procura.totals on demand.
- UI is never trusted. Validation happens server-side in procura.services.
"""

from __future__ import annotations

from datetime import date, datetime

from flask_login import UserMixin
from sqlalchemy.orm import declared_attr
from werkzeug.security import check_password_hash, generate_password_hash

from .extensions import db
from .totals import LineItem, Totals, compute_line, compute_totals, sum_totals


# ---------------------------------------------------------------------
# Status lifecycle
# ---------------------------------------------------------------------
STATUS_DRAFT = "Draft"
STATUS_SENT = "Sent"
STATUS_APPROVED = "Approved"
STATUS_REJECTED = "Rejected"
STATUS_ARCHIVED = "Archived"

ORDER_STATUSES = (STATUS_DRAFT, STATUS_SENT, STATUS_APPROVED, STATUS_REJECTED, STATUS_ARCHIVED)

STATUS_LABELS = {
    STATUS_DRAFT: "Borrador",
    STATUS_SENT: "Enviada",
    STATUS_APPROVED: "Aprobada",
    STATUS_REJECTED: "Rechazada",
    STATUS_ARCHIVED: "Archivada",
}

CURRENCIES = ("USD", "VES")

PAYMENT_CASH = "Contado"
PAYMENT_CREDIT = "Crédito"
PAYMENT_OTHER = "Otro"
PAYMENT_TERMS = (PAYMENT_CASH, PAYMENT_CREDIT, PAYMENT_OTHER)

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_VIEWER = "viewer"
ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_VIEWER)


def format_sequence(prefix: str, sequence: int | None, created_at: datetime | date | None = None) -> str:
    """Document number: PREFIX-YYYY-MM-NNN (N/A when no sequence yet)."""
    if not sequence:
        return "N/A"
    when = created_at or datetime.utcnow()
    return f"{prefix}-{when.year}-{when.month:02d}-{sequence:03d}"


# ---------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------
class User(UserMixin, db.Model):
    """System login user."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)

    role = db.Column(db.String(20), nullable=False, default=ROLE_VIEWER, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def can_manage(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_MANAGER)

    def __repr__(self):
        return f"<User {self.username}>"


# ---------------------------------------------------------------------
# Master data
# ---------------------------------------------------------------------
class PaymentTermsMixin:
    """
    Payment terms of a supplier, copied onto its purchase orders.
    custom_payment_terms only applies to "Otro", credit_days only to "Crédito".
    """

    payment_terms = db.Column(db.String(20), nullable=False, default=PAYMENT_CASH)
    custom_payment_terms = db.Column(db.String(255), nullable=True)
    credit_days = db.Column(db.Integer, nullable=False, default=0)

    @property
    def payment_terms_label(self) -> str:
        if self.payment_terms == PAYMENT_CREDIT:
            return f"{PAYMENT_CREDIT} ({self.credit_days or 0} días)"
        if self.payment_terms == PAYMENT_OTHER and self.custom_payment_terms:
            return self.custom_payment_terms
        return self.payment_terms or PAYMENT_CASH

    def payment_terms_values(self) -> dict:
        return {
            "payment_terms": self.payment_terms or PAYMENT_CASH,
            "custom_payment_terms": self.custom_payment_terms,
            "credit_days": self.credit_days or 0,
        }


class Company(db.Model):
    __tablename__ = "companies"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    rif = db.Column(db.String(20), nullable=False, unique=True, index=True)
    address = db.Column(db.String(255))
    phone = db.Column(db.String(50))
    email = db.Column(db.String(255))

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<Company {self.rif} - {self.name}>"


class Supplier(PaymentTermsMixin, db.Model):
    __tablename__ = "suppliers"

    id = db.Column(db.Integer, primary_key=True)

    code = db.Column(db.String(50), unique=True, index=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    rif = db.Column(db.String(20), nullable=False, unique=True, index=True)

    email = db.Column(db.String(255))
    phone = db.Column(db.String(50))
    address = db.Column(db.String(255))
    contact_name = db.Column(db.String(255))

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    material_links = db.relationship(
        "SupplierMaterial",
        back_populates="supplier",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Supplier {self.rif} - {self.name}>"


class Material(db.Model):
    __tablename__ = "materials"

    id = db.Column(db.Integer, primary_key=True)

    code = db.Column(db.String(50), unique=True, index=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    category = db.Column(db.String(120), index=True)
    unit = db.Column(db.String(50))

    # Default exemption flag copied onto new order lines for this material
    is_exempt = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    supplier_links = db.relationship(
        "SupplierMaterial",
        back_populates="material",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Material {self.code} - {self.name}>"


class SupplierMaterial(db.Model):
    """Which supplier sells which material (catalog link)."""

    __tablename__ = "supplier_materials"

    id = db.Column(db.Integer, primary_key=True)

    supplier_id = db.Column(
        db.Integer,
        db.ForeignKey("suppliers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    material_id = db.Column(
        db.Integer,
        db.ForeignKey("materials.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    specification = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    supplier = db.relationship("Supplier", back_populates="material_links")
    material = db.relationship("Material", back_populates="supplier_links")

    __table_args__ = (
        db.UniqueConstraint("supplier_id", "material_id", name="uq_supplier_material"),
    )


# ---------------------------------------------------------------------
# Shared order / line columns
# ---------------------------------------------------------------------
# Decimal places kept by the pricing columns. validate_lines rejects anything finer.
LINE_SCALES = {
    "quantity": 3,
    "unit_price": 2,
    "discount_percentage": 2,
    "sales_percentage": 2,
    "tax_rate": 4,
}
EXCHANGE_RATE_SCALE = 4


class OrderMixin:
    """Header columns shared by the three order kinds."""

    SEQUENCE_PREFIX = ""

    id = db.Column(db.Integer, primary_key=True)

    sequence_number = db.Column(db.Integer, index=True)

    status = db.Column(db.String(20), nullable=False, default=STATUS_DRAFT, index=True)

    currency = db.Column(db.String(3), nullable=False, default="USD")
    exchange_rate = db.Column(db.Numeric(14, EXCHANGE_RATE_SCALE), nullable=True)

    issue_date = db.Column(db.Date, nullable=False, default=date.today)
    observations = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @declared_attr
    def company_id(cls):
        return db.Column(
            db.Integer,
            db.ForeignKey("companies.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        )

    @declared_attr
    def supplier_id(cls):
        return db.Column(
            db.Integer,
            db.ForeignKey("suppliers.id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        )

    @declared_attr
    def created_by_id(cls):
        return db.Column(
            db.Integer,
            db.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        )

    @declared_attr
    def company(cls):
        return db.relationship("Company")

    @declared_attr
    def supplier(cls):
        return db.relationship("Supplier")

    @declared_attr
    def created_by(cls):
        return db.relationship("User")

    @property
    def document_number(self) -> str:
        return format_sequence(self.SEQUENCE_PREFIX, self.sequence_number, self.created_at)

    @property
    def status_label(self) -> str:
        return STATUS_LABELS.get(self.status, self.status or "")

    @property
    def is_editable(self) -> bool:
        return self.status == STATUS_DRAFT

    def line_items(self) -> list[LineItem]:
        return [line.to_line_item() for line in self.items]

    def compute_totals(self) -> Totals:
        return compute_totals(self.line_items())


class LineColumnsMixin:
    """Pricing columns of an order row. Same shape for every order kind."""

    id = db.Column(db.Integer, primary_key=True)

    line_no = db.Column(db.Integer, nullable=False, default=1)
    description = db.Column(db.Text, nullable=True)
    unit = db.Column(db.String(50), nullable=True)
    supplier_code = db.Column(db.String(50), nullable=True)

    quantity = db.Column(db.Numeric(12, LINE_SCALES["quantity"]), nullable=False, default=0)
    unit_price = db.Column(db.Numeric(14, LINE_SCALES["unit_price"]), nullable=False, default=0)
    discount_percentage = db.Column(db.Numeric(6, LINE_SCALES["discount_percentage"]), nullable=False, default=0)
    sales_percentage = db.Column(db.Numeric(6, LINE_SCALES["sales_percentage"]), nullable=False, default=0)
    is_exempt = db.Column(db.Boolean, nullable=False, default=False)

    # NULL means "not set" -> default rate applies in the engine.
    tax_rate = db.Column(db.Numeric(5, LINE_SCALES["tax_rate"]), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @declared_attr
    def material_id(cls):
        return db.Column(
            db.Integer,
            db.ForeignKey("materials.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        )

    @declared_attr
    def material(cls):
        return db.relationship("Material")

    def to_line_item(self) -> LineItem:
        return LineItem(
            quantity=self.quantity,
            unit_price=self.unit_price,
            discount_percentage=self.discount_percentage,
            sales_percentage=self.sales_percentage,
            is_exempt=self.is_exempt,
            tax_rate=self.tax_rate,
        )

    @property
    def breakdown(self):
        return compute_line(self.to_line_item())

    @property
    def display_name(self) -> str:
        if self.material is not None:
            return self.material.name
        return self.description or ""


# ---------------------------------------------------------------------
# Quote requests
# ---------------------------------------------------------------------
class QuoteRequest(OrderMixin, db.Model):
    __tablename__ = "quote_requests"

    SEQUENCE_PREFIX = "SC"

    deadline_date = db.Column(db.Date, nullable=True)

    items = db.relationship(
        "QuoteRequestItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="QuoteRequestItem.line_no",
    )

    purchase_orders = db.relationship("PurchaseOrder", back_populates="quote_request")

    def __repr__(self):
        return f"<QuoteRequest {self.document_number}>"


class QuoteRequestItem(LineColumnsMixin, db.Model):
    __tablename__ = "quote_request_items"

    order_id = db.Column(
        db.Integer,
        db.ForeignKey("quote_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    order = db.relationship("QuoteRequest", back_populates="items")


# ---------------------------------------------------------------------
# Purchase orders
# ---------------------------------------------------------------------
class PurchaseOrder(PaymentTermsMixin, OrderMixin, db.Model):
    __tablename__ = "purchase_orders"

    SEQUENCE_PREFIX = "OC"

    delivery_date = db.Column(db.Date, nullable=True)

    quote_request_id = db.Column(
        db.Integer,
        db.ForeignKey("quote_requests.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    service_order_id = db.Column(
        db.Integer,
        db.ForeignKey("service_orders.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    items = db.relationship(
        "PurchaseOrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderItem.line_no",
    )

    quote_request = db.relationship("QuoteRequest", back_populates="purchase_orders")
    service_order = db.relationship("ServiceOrder", back_populates="purchase_orders")

    def __repr__(self):
        return f"<PurchaseOrder {self.document_number}>"


class PurchaseOrderItem(LineColumnsMixin, db.Model):
    __tablename__ = "purchase_order_items"

    order_id = db.Column(
        db.Integer,
        db.ForeignKey("purchase_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    order = db.relationship("PurchaseOrder", back_populates="items")


# ---------------------------------------------------------------------
# Service orders
# ---------------------------------------------------------------------
class ServiceOrder(OrderMixin, db.Model):
    """
    Service order with two line categories:
    - items: services
    - materials: spare parts/materials (may come from other suppliers)

    Totals are the field-wise sum of both categories.
    """

    __tablename__ = "service_orders"

    SEQUENCE_PREFIX = "OS"

    delivery_date = db.Column(db.Date, nullable=True)
    equipment = db.Column(db.String(255), nullable=True)

    items = db.relationship(
        "ServiceOrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="ServiceOrderItem.line_no",
    )

    materials = db.relationship(
        "ServiceOrderMaterial",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="ServiceOrderMaterial.line_no",
    )

    purchase_orders = db.relationship("PurchaseOrder", back_populates="service_order")

    def services_totals(self) -> Totals:
        return compute_totals(line.to_line_item() for line in self.items)

    def materials_totals(self) -> Totals:
        return compute_totals(line.to_line_item() for line in self.materials)

    def compute_totals(self) -> Totals:
        return sum_totals(self.services_totals(), self.materials_totals())

    def materials_by_supplier(self) -> dict:
        """
        Spare parts grouped by the supplier they are bought from
        (the service order's supplier when a part has none), in line order.
        Returns {supplier_id: {"supplier": Supplier, "lines": [...], "purchase_order": PurchaseOrder | None}}.
        """
        generated = {po.supplier_id: po for po in self.purchase_orders}
        groups: dict = {}
        for line in self.materials:
            supplier = line.supplier or self.supplier
            group = groups.setdefault(
                supplier.id,
                {"supplier": supplier, "lines": [], "purchase_order": generated.get(supplier.id)},
            )
            group["lines"].append(line)
        return groups

    def __repr__(self):
        return f"<ServiceOrder {self.document_number}>"


class ServiceOrderItem(LineColumnsMixin, db.Model):
    __tablename__ = "service_order_items"

    order_id = db.Column(
        db.Integer,
        db.ForeignKey("service_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    order = db.relationship("ServiceOrder", back_populates="items")


class ServiceOrderMaterial(LineColumnsMixin, db.Model):
    __tablename__ = "service_order_materials"

    order_id = db.Column(
        db.Integer,
        db.ForeignKey("service_orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    supplier_id = db.Column(
        db.Integer,
        db.ForeignKey("suppliers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    order = db.relationship("ServiceOrder", back_populates="materials")
    supplier = db.relationship("Supplier")


# ---------------------------------------------------------------------
# Price history
# ---------------------------------------------------------------------
class PriceHistory(db.Model):
    """Unit price paid for a material, recorded when a priced order is saved."""

    __tablename__ = "price_history"

    id = db.Column(db.Integer, primary_key=True)

    material_id = db.Column(
        db.Integer,
        db.ForeignKey("materials.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    supplier_id = db.Column(
        db.Integer,
        db.ForeignKey("suppliers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    unit_price = db.Column(db.Numeric(14, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    exchange_rate = db.Column(db.Numeric(14, 4), nullable=True)

    purchase_order_id = db.Column(
        db.Integer,
        db.ForeignKey("purchase_orders.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    service_order_id = db.Column(
        db.Integer,
        db.ForeignKey("service_orders.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    recorded_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    material = db.relationship("Material")
    supplier = db.relationship("Supplier")


# ---------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------
class AuditLog(db.Model):
    """Who changed what, with before/after snapshots."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    username_snapshot = db.Column(db.String(150), nullable=True)

    entity_type = db.Column(db.String(50), nullable=False, index=True)
    entity_id = db.Column(db.Integer, nullable=False, index=True)

    action = db.Column(db.String(20), nullable=False, index=True)

    before_data = db.Column(db.Text, nullable=True)
    after_data = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    user = db.relationship("User", backref=db.backref("audit_entries", lazy=True))
