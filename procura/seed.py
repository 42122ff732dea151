"""
procura/seed.py

Seed demo master data and create users.

Rules:
- Safe to run multiple times (idempotent): records are matched by RIF / code.
- Orders are never seeded; they are created through the order screens.
"""

from __future__ import annotations

from .extensions import db
from .models import ROLES, Company, Material, Supplier, SupplierMaterial, User


DEMO_COMPANIES = [
    # name, rif
    ("Servicios Industriales Demo C.A.", "J-00000001-0"),
]

DEMO_SUPPLIERS = [
    # code, name, rif, email
    ("P-001", "Ferretería Central", "J-10000001-1", "ventas@ferreteria.example"),
    ("P-002", "Repuestos del Valle", "J-10000002-2", "pedidos@repuestos.example"),
]

DEMO_MATERIALS = [
    # code, name, category, unit, is_exempt
    ("M-001", "Tornillo 1/4\"", "Ferretería", "unidad", False),
    ("M-002", "Aceite hidráulico", "Lubricantes", "litro", False),
    ("M-003", "Harina de maíz", "Alimentos", "kg", True),
]

DEMO_LINKS = [("P-001", "M-001"), ("P-002", "M-002"), ("P-001", "M-003")]


def seed_demo_data() -> int:
    """Insert missing demo records; returns how many were created."""
    created = 0

    for name, rif in DEMO_COMPANIES:
        if not Company.query.filter_by(rif=rif).first():
            db.session.add(Company(name=name, rif=rif))
            created += 1

    for code, name, rif, email in DEMO_SUPPLIERS:
        if not Supplier.query.filter_by(rif=rif).first():
            db.session.add(Supplier(code=code, name=name, rif=rif, email=email))
            created += 1

    for code, name, category, unit, is_exempt in DEMO_MATERIALS:
        if not Material.query.filter_by(code=code).first():
            db.session.add(Material(code=code, name=name, category=category, unit=unit, is_exempt=is_exempt))
            created += 1

    db.session.flush()

    for supplier_code, material_code in DEMO_LINKS:
        supplier = Supplier.query.filter_by(code=supplier_code).first()
        material = Material.query.filter_by(code=material_code).first()
        exists = SupplierMaterial.query.filter_by(supplier_id=supplier.id, material_id=material.id).first()
        if not exists:
            db.session.add(SupplierMaterial(supplier_id=supplier.id, material_id=material.id))
            created += 1

    db.session.commit()
    return created


def create_user(username: str, password: str, role: str = "viewer") -> User:
    username = (username or "").strip()
    if not username or not password:
        raise ValueError("Username and password are required.")
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    if User.query.filter_by(username=username).first():
        raise ValueError(f"User '{username}' already exists.")

    user = User(username=username, role=role, is_active=True)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user
