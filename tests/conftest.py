from decimal import Decimal

import pytest

from procura import create_app
from procura.cart import CartLine
from procura.extensions import db
from procura.models import Company, Material, Supplier
from procura.seed import create_user
from procura.totals import LineItem


@pytest.fixture
def app():
    app = create_app("config.TestingConfig")
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """App context for service-level tests."""
    with app.app_context():
        yield app


@pytest.fixture
def refs(app):
    """Master data ids: one company, two suppliers, two materials (one exempt)."""
    with app.app_context():
        company = Company(name="Servicios Demo C.A.", rif="J-00000001-0")
        acme = Supplier(code="P-001", name="Acme", rif="J-10000001-1", email="ventas@acme.example")
        other = Supplier(code="P-002", name="Otro Proveedor", rif="J-10000002-2")
        bolt = Material(code="M-001", name="Tornillo", unit="unidad")
        flour = Material(code="M-002", name="Harina", unit="kg", is_exempt=True)
        db.session.add_all([company, acme, other, bolt, flour])
        db.session.commit()
        return {
            "company": company.id,
            "supplier": acme.id,
            "other_supplier": other.id,
            "material": bolt.id,
            "exempt_material": flour.id,
        }


@pytest.fixture
def users(app):
    with app.app_context():
        return {
            role: create_user(role, "secret", role=role).id
            for role in ("admin", "manager", "viewer")
        }


def _login(client, username):
    response = client.post("/auth/login", data={"username": username, "password": "secret"})
    assert response.status_code == 302
    return client


@pytest.fixture
def admin_client(app, users):
    return _login(app.test_client(), "admin")


@pytest.fixture
def manager_client(app, users):
    return _login(app.test_client(), "manager")


@pytest.fixture
def viewer_client(app, users):
    return _login(app.test_client(), "viewer")


@pytest.fixture
def header(refs):
    return {
        "company_id": refs["company"],
        "supplier_id": refs["supplier"],
        "currency": "USD",
    }


@pytest.fixture
def make_line():
    """CartLine factory; 2 x 10 unless told otherwise."""
    def build(material_id=None, description="Renglón", supplier_id=None, **pricing):
        pricing.setdefault("quantity", Decimal("2"))
        pricing.setdefault("unit_price", Decimal("10"))
        return CartLine(item=LineItem(**pricing), material_id=material_id, description=description,
                        supplier_id=supplier_id)

    return build
