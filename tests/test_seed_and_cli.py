from decimal import Decimal

import pytest

from procura.cart import CartLine
from procura.models import Company, Material, SupplierMaterial, User
from procura.seed import create_user, seed_demo_data
from procura.totals import LineItem
from procura.utils import clean_payment_terms, decimal_places, parse_date, parse_decimal, safe_next_url, validate_lines


def test_seed_demo_data_is_idempotent(ctx):
    created = seed_demo_data()
    assert created > 0
    assert seed_demo_data() == 0
    assert Company.query.count() == 1
    assert Material.query.filter_by(is_exempt=True).count() == 1
    assert SupplierMaterial.query.count() == 3


def test_create_user_rules(ctx):
    create_user("ana", "pw", role="manager")
    with pytest.raises(ValueError):
        create_user("ana", "pw")
    with pytest.raises(ValueError):
        create_user("bob", "pw", role="owner")
    with pytest.raises(ValueError):
        create_user(" ", "pw")


def test_cli_commands(app):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["seed-demo"])
    assert result.exit_code == 0
    assert "Demo master data seeded" in result.output

    result = runner.invoke(args=["create-admin", "root", "--password", "pw"])
    assert result.exit_code == 0
    with app.app_context():
        assert User.query.filter_by(username="root").one().is_admin

    result = runner.invoke(args=["create-admin", "root", "--password", "pw"])
    assert result.exit_code != 0
    assert "already exists" in result.output


def test_validate_lines():
    good = CartLine(item=LineItem(quantity=1, unit_price=5), description="Ok")
    free = CartLine(item=LineItem(quantity=1, unit_price=0), description="Cotizar")
    odd = CartLine(item=LineItem(quantity=1, unit_price=5, sales_percentage=-1, tax_rate=Decimal("1.5")),
                   description="Raro")

    assert validate_lines([good]) == []
    assert validate_lines([free], require_prices=False) == []
    assert len(validate_lines([free])) == 1

    messages = validate_lines([good, odd], label="Repuesto")
    assert len(messages) == 2
    assert all(m.startswith("Repuesto 2:") for m in messages)


def test_form_parsers():
    assert parse_decimal("12,50") == Decimal("12.50")
    assert parse_decimal("") is None
    assert parse_decimal("inf") is None
    assert parse_decimal("1,234.50") == Decimal("1234.50")
    assert parse_date("2024-02-30") is None
    assert str(parse_date("2024-02-29")) == "2024-02-29"


def test_safe_next_url(ctx):
    with ctx.test_request_context():
        assert safe_next_url("/orders/quote-requests/", "auth.login") == "/orders/quote-requests/"
        assert safe_next_url("https://evil.example/", "auth.login") == "/auth/login"
        assert safe_next_url("//evil.example", "auth.login") == "/auth/login"


def test_decimal_places():
    assert decimal_places(Decimal("100")) == 0
    assert decimal_places(Decimal("1.50")) == 1
    assert decimal_places(Decimal("0.125")) == 3
    assert decimal_places(Decimal("1E+2")) == 0


def test_clean_payment_terms():
    assert clean_payment_terms(None) == (
        {"payment_terms": "Contado", "custom_payment_terms": None, "credit_days": 0}, []
    )
    assert clean_payment_terms("Crédito", "ignorado", "30")[0] == {
        "payment_terms": "Crédito", "custom_payment_terms": None, "credit_days": 30,
    }
    assert clean_payment_terms("Otro", " 50% anticipo ", "30")[0]["custom_payment_terms"] == "50% anticipo"

    assert len(clean_payment_terms("Otro", "")[1]) == 1
    assert len(clean_payment_terms("Crédito", None, "")[1]) == 1
    assert len(clean_payment_terms("Trueque")[1]) == 1
