"""
procura/blueprints/masterdata/routes.py

Master data routes (admin-only).

- Companies CRUD (the issuing companies printed on every document)
- Suppliers CRUD + supplier/material catalog links
- Materials CRUD

AUDIT:
- CREATE/UPDATE/DELETE is audited via procura/audit.py.

Records referenced by orders are never deleted; archive the orders instead.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from flask import Blueprint, flash, redirect, render_template, request, url_for
from flask_login import login_required

from ...audit import ACTION_CREATE, ACTION_DELETE, ACTION_UPDATE, log_action, serialize_model
from ...extensions import db
from ...models import (
    Company,
    Material,
    PurchaseOrder,
    PurchaseOrderItem,
    QuoteRequest,
    QuoteRequestItem,
    ServiceOrder,
    ServiceOrderItem,
    ServiceOrderMaterial,
    Supplier,
    SupplierMaterial,
)
from ...security import admin_required
from ...utils import clean_payment_terms, parse_bool, parse_optional_int

log = logging.getLogger(__name__)

masterdata_bp = Blueprint("masterdata", __name__, url_prefix="/masterdata")

ORDER_MODELS = (QuoteRequest, PurchaseOrder, ServiceOrder)
LINE_MODELS = (QuoteRequestItem, PurchaseOrderItem, ServiceOrderItem, ServiceOrderMaterial)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _form_text(*names: str) -> Dict[str, Optional[str]]:
    """Stripped form values; blanks become None."""
    return {name: (request.form.get(name) or "").strip() or None for name in names}


def _orders_referencing(column: str, value: int) -> int:
    return sum(model.query.filter(getattr(model, column) == value).count() for model in ORDER_MODELS)


def _lines_referencing_material(material_id: int) -> int:
    return sum(model.query.filter(model.material_id == material_id).count() for model in LINE_MODELS)


def _duplicate(model, field: str, value: Optional[str], exclude_id: Optional[int] = None) -> bool:
    if not value:
        return False
    query = model.query.filter(getattr(model, field) == value)
    if exclude_id is not None:
        query = query.filter(model.id != exclude_id)
    return db.session.query(query.exists()).scalar()


def link_supplier_material(
    supplier: Supplier, material: Material, specification: Optional[str] = None
) -> Tuple[SupplierMaterial, bool]:
    """
    Link a material to a supplier's catalog.

    Returns (link, created). An existing link is returned unchanged
    except for a new specification, when one is given.
    """
    link = SupplierMaterial.query.filter_by(supplier_id=supplier.id, material_id=material.id).first()
    if link is not None:
        if specification:
            link.specification = specification
        return link, False

    link = SupplierMaterial(supplier_id=supplier.id, material_id=material.id, specification=specification)
    db.session.add(link)
    return link, True


def _delete_audited(entity, success_message: str, list_endpoint: str):
    before = serialize_model(entity)

    db.session.delete(entity)
    db.session.flush()

    log_action(entity, ACTION_DELETE, before=before)
    db.session.commit()

    flash(success_message, "success")
    return redirect(url_for(list_endpoint))


# ----------------------------------------------------------------------
# COMPANIES
# ----------------------------------------------------------------------
COMPANY_FIELDS = ("name", "rif", "address", "phone", "email")


def _validate_company(data: dict, company_id: Optional[int] = None) -> Optional[str]:
    if not data["name"]:
        return "El nombre es obligatorio."
    if not data["rif"]:
        return "El RIF es obligatorio."
    if _duplicate(Company, "rif", data["rif"], company_id):
        return "Ya existe una empresa con ese RIF."
    return None


@masterdata_bp.route("/companies")
@login_required
@admin_required
def companies_list():
    companies = Company.query.order_by(Company.name.asc()).all()
    return render_template("masterdata/companies_list.html", companies=companies)


@masterdata_bp.route("/companies/new", methods=["GET", "POST"])
@login_required
@admin_required
def company_create():
    if request.method == "POST":
        data = _form_text(*COMPANY_FIELDS)
        error = _validate_company(data)
        if error:
            flash(error, "danger")
            return render_template("masterdata/company_form.html", company=None, form=data), 400

        company = Company(**data)
        db.session.add(company)
        db.session.flush()

        log_action(company, ACTION_CREATE, after=serialize_model(company))
        db.session.commit()

        flash("Empresa creada.", "success")
        return redirect(url_for("masterdata.companies_list"))

    return render_template("masterdata/company_form.html", company=None, form={})


@masterdata_bp.route("/companies/<int:company_id>/edit", methods=["GET", "POST"])
@login_required
@admin_required
def company_edit(company_id: int):
    company = Company.query.get_or_404(company_id)

    if request.method == "POST":
        data = _form_text(*COMPANY_FIELDS)
        error = _validate_company(data, company.id)
        if error:
            flash(error, "danger")
            return render_template("masterdata/company_form.html", company=company, form=data), 400

        before = serialize_model(company)
        for name, value in data.items():
            setattr(company, name, value)

        db.session.flush()
        log_action(company, ACTION_UPDATE, before=before, after=serialize_model(company))
        db.session.commit()

        flash("Empresa actualizada.", "success")
        return redirect(url_for("masterdata.companies_list"))

    return render_template("masterdata/company_form.html", company=company, form=serialize_model(company))


@masterdata_bp.route("/companies/<int:company_id>/delete", methods=["POST"])
@login_required
@admin_required
def company_delete(company_id: int):
    company = Company.query.get_or_404(company_id)

    if _orders_referencing("company_id", company.id):
        flash("La empresa tiene órdenes asociadas y no puede eliminarse.", "danger")
        return redirect(url_for("masterdata.companies_list"))

    return _delete_audited(company, "Empresa eliminada.", "masterdata.companies_list")


# ----------------------------------------------------------------------
# SUPPLIERS
# ----------------------------------------------------------------------
SUPPLIER_FIELDS = ("code", "name", "rif", "email", "phone", "address", "contact_name")


def _supplier_from_form() -> Tuple[dict, Optional[str]]:
    """Text fields plus normalized payment terms; returns (data, first payment terms error)."""
    data = _form_text(*SUPPLIER_FIELDS)
    terms, errors = clean_payment_terms(
        request.form.get("payment_terms"),
        request.form.get("custom_payment_terms"),
        request.form.get("credit_days"),
    )
    data.update(terms)
    return data, errors[0] if errors else None


def _validate_supplier(data: dict, supplier_id: Optional[int] = None) -> Optional[str]:
    if not data["name"]:
        return "El nombre es obligatorio."
    if not data["rif"]:
        return "El RIF es obligatorio."
    if _duplicate(Supplier, "rif", data["rif"], supplier_id):
        return "Ya existe un proveedor con ese RIF."
    if _duplicate(Supplier, "code", data["code"], supplier_id):
        return "Ya existe un proveedor con ese código."
    return None


@masterdata_bp.route("/suppliers")
@login_required
@admin_required
def suppliers_list():
    suppliers = Supplier.query.order_by(Supplier.name.asc()).all()
    return render_template("masterdata/suppliers_list.html", suppliers=suppliers)


@masterdata_bp.route("/suppliers/new", methods=["GET", "POST"])
@login_required
@admin_required
def supplier_create():
    if request.method == "POST":
        data, error = _supplier_from_form()
        error = error or _validate_supplier(data)
        if error:
            flash(error, "danger")
            return render_template("masterdata/supplier_form.html", supplier=None, form=data, materials=[]), 400

        supplier = Supplier(**data)
        db.session.add(supplier)
        db.session.flush()

        log_action(supplier, ACTION_CREATE, after=serialize_model(supplier))
        db.session.commit()

        flash("Proveedor creado.", "success")
        return redirect(url_for("masterdata.supplier_edit", supplier_id=supplier.id))

    return render_template("masterdata/supplier_form.html", supplier=None, form={}, materials=[])


@masterdata_bp.route("/suppliers/<int:supplier_id>/edit", methods=["GET", "POST"])
@login_required
@admin_required
def supplier_edit(supplier_id: int):
    """Edit supplier; the page also manages the supplier's material catalog."""
    supplier = Supplier.query.get_or_404(supplier_id)
    materials = Material.query.order_by(Material.name.asc()).all()

    if request.method == "POST":
        data, error = _supplier_from_form()
        error = error or _validate_supplier(data, supplier.id)
        if error:
            flash(error, "danger")
            return render_template(
                "masterdata/supplier_form.html", supplier=supplier, form=data, materials=materials
            ), 400

        before = serialize_model(supplier)
        for name, value in data.items():
            setattr(supplier, name, value)

        db.session.flush()
        log_action(supplier, ACTION_UPDATE, before=before, after=serialize_model(supplier))
        db.session.commit()

        flash("Proveedor actualizado.", "success")
        return redirect(url_for("masterdata.suppliers_list"))

    return render_template(
        "masterdata/supplier_form.html", supplier=supplier, form=serialize_model(supplier), materials=materials
    )


@masterdata_bp.route("/suppliers/<int:supplier_id>/delete", methods=["POST"])
@login_required
@admin_required
def supplier_delete(supplier_id: int):
    supplier = Supplier.query.get_or_404(supplier_id)

    if _orders_referencing("supplier_id", supplier.id):
        flash("El proveedor tiene órdenes asociadas; archívelas en lugar de eliminarlo.", "danger")
        return redirect(url_for("masterdata.suppliers_list"))

    return _delete_audited(supplier, "Proveedor eliminado.", "masterdata.suppliers_list")


@masterdata_bp.route("/suppliers/<int:supplier_id>/materials", methods=["POST"])
@login_required
@admin_required
def supplier_link_material(supplier_id: int):
    supplier = Supplier.query.get_or_404(supplier_id)
    back = url_for("masterdata.supplier_edit", supplier_id=supplier.id)

    material_id = parse_optional_int(request.form.get("material_id"))
    material = db.session.get(Material, material_id) if material_id else None
    if material is None:
        flash("Seleccione un material válido.", "danger")
        return redirect(back)

    link, created = link_supplier_material(
        supplier, material, (request.form.get("specification") or "").strip() or None
    )
    db.session.flush()
    if created:
        log_action(link, ACTION_CREATE, after=serialize_model(link))
    db.session.commit()

    if created:
        flash(f"{material.name} vinculado a {supplier.name}.", "success")
    else:
        flash(f"{material.name} ya estaba vinculado a {supplier.name}.", "info")
    return redirect(back)


@masterdata_bp.route("/suppliers/<int:supplier_id>/materials/<int:link_id>/delete", methods=["POST"])
@login_required
@admin_required
def supplier_unlink_material(supplier_id: int, link_id: int):
    link = SupplierMaterial.query.filter_by(id=link_id, supplier_id=supplier_id).first_or_404()
    before = serialize_model(link)

    db.session.delete(link)
    db.session.flush()

    log_action(link, ACTION_DELETE, before=before)
    db.session.commit()

    flash("Vínculo eliminado.", "success")
    return redirect(url_for("masterdata.supplier_edit", supplier_id=supplier_id))


# ----------------------------------------------------------------------
# MATERIALS
# ----------------------------------------------------------------------
MATERIAL_FIELDS = ("code", "name", "category", "unit")


def _material_form() -> dict:
    data = _form_text(*MATERIAL_FIELDS)
    data["is_exempt"] = parse_bool(request.form.get("is_exempt"))
    return data


def _validate_material(data: dict, material_id: Optional[int] = None) -> Optional[str]:
    if not data["name"]:
        return "El nombre es obligatorio."
    if _duplicate(Material, "code", data["code"], material_id):
        return "Ya existe un material con ese código."
    return None


@masterdata_bp.route("/materials")
@login_required
@admin_required
def materials_list():
    category = (request.args.get("category") or "").strip()
    query = Material.query
    if category:
        query = query.filter(Material.category == category)
    materials = query.order_by(Material.name.asc()).all()

    categories = [
        row[0] for row in
        db.session.query(Material.category).filter(Material.category.isnot(None)).distinct().order_by(Material.category)
    ]
    return render_template(
        "masterdata/materials_list.html", materials=materials, categories=categories, category=category
    )


@masterdata_bp.route("/materials/new", methods=["GET", "POST"])
@login_required
@admin_required
def material_create():
    if request.method == "POST":
        data = _material_form()
        error = _validate_material(data)
        if error:
            flash(error, "danger")
            return render_template("masterdata/material_form.html", material=None, form=data), 400

        material = Material(**data)
        db.session.add(material)
        db.session.flush()

        log_action(material, ACTION_CREATE, after=serialize_model(material))
        db.session.commit()

        flash("Material creado.", "success")
        return redirect(url_for("masterdata.materials_list"))

    return render_template("masterdata/material_form.html", material=None, form={})


@masterdata_bp.route("/materials/<int:material_id>/edit", methods=["GET", "POST"])
@login_required
@admin_required
def material_edit(material_id: int):
    material = Material.query.get_or_404(material_id)

    if request.method == "POST":
        data = _material_form()
        error = _validate_material(data, material.id)
        if error:
            flash(error, "danger")
            return render_template("masterdata/material_form.html", material=material, form=data), 400

        before = serialize_model(material)
        for name, value in data.items():
            setattr(material, name, value)

        db.session.flush()
        log_action(material, ACTION_UPDATE, before=before, after=serialize_model(material))
        db.session.commit()

        flash("Material actualizado.", "success")
        return redirect(url_for("masterdata.materials_list"))

    return render_template("masterdata/material_form.html", material=material, form=serialize_model(material))


@masterdata_bp.route("/materials/<int:material_id>/delete", methods=["POST"])
@login_required
@admin_required
def material_delete(material_id: int):
    material = Material.query.get_or_404(material_id)

    if _lines_referencing_material(material.id):
        flash("El material aparece en órdenes y no puede eliminarse.", "danger")
        return redirect(url_for("masterdata.materials_list"))

    log.info("Deleting material %s", material.code or material.id)
    return _delete_audited(material, "Material eliminado.", "masterdata.materials_list")
