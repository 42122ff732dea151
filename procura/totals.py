"""
procura/totals.py

Order totals engine.

One pure calculation shared by purchase orders, quote requests and service orders,
the order screens, the document context and the live preview endpoint.

Order of operations per line:
  1) item_value = quantity * unit_price
  2) discount is taken from the raw item value
  3) markup ("sales") and tax are both computed on the post-discount subtotal,
     never compounded on each other
  4) exempt lines carry exactly 0 tax regardless of tax_rate

IMPORTANT:
- No rounding happens here. Rounding is a display concern (money(), format_money(),
  Totals.rounded()) and never feeds back into further arithmetic.
- All arithmetic runs under a fixed decimal context so results do not depend on
  whatever context the caller has active.
"""

from __future__ import annotations

from dataclasses import astuple, dataclass, fields
from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Context, Decimal, InvalidOperation, localcontext
from typing import Any, Iterable, Mapping, Optional

ZERO = Decimal("0")
HUNDRED = Decimal("100")
DEFAULT_TAX_RATE = Decimal("0.16")

CURRENCY_SYMBOLS = {"USD": "$", "VES": "Bs."}

_ENGINE_CONTEXT = Context(prec=34, rounding=ROUND_HALF_EVEN)


def _normalize_number(raw: str) -> str:
    """
    "12,5" -> "12.5"; with both separators the last one is the decimal point
    ("1,234.50" -> "1234.50", "1.234,50" -> "1234.50").
    """
    if "," in raw and "." in raw:
        if raw.rfind(",") > raw.rfind("."):
            return raw.replace(".", "").replace(",", ".")
        return raw.replace(",", "")
    return raw.replace(",", ".")


def to_decimal(value: Any, default: Optional[Decimal] = ZERO) -> Optional[Decimal]:
    """
    Coerce user/DB input to Decimal.

    - None, blank strings and unparseable values become `default`
    - NaN/Infinity become `default`
    - accepts comma as decimal separator ("12,5") and grouped thousands ("1,234.50")
    """
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    raw = str(value).strip()
    if raw == "":
        return default
    try:
        result = Decimal(_normalize_number(raw))
    except (InvalidOperation, ValueError):
        return default
    return result if result.is_finite() else default


TRUE_FLAGS = frozenset({"1", "true", "on", "yes", "y"})


def parse_bool(value: Any) -> bool:
    """Checkbox/JSON semantics: real bools as they are, otherwise only "1", "true", "on", "yes" count."""
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in TRUE_FLAGS


@dataclass(frozen=True)
class LineItem:
    """
    One priced order row.

    Defaults are applied once, here, when the value is built:
    missing discount/markup -> 0, missing tax_rate -> 0.16.
    An explicit tax_rate of 0 stays 0.
    """

    quantity: Decimal = ZERO
    unit_price: Decimal = ZERO
    discount_percentage: Decimal = ZERO
    sales_percentage: Decimal = ZERO
    is_exempt: bool = False
    tax_rate: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, "quantity", to_decimal(self.quantity))
        object.__setattr__(self, "unit_price", to_decimal(self.unit_price))
        object.__setattr__(self, "discount_percentage", to_decimal(self.discount_percentage))
        object.__setattr__(self, "sales_percentage", to_decimal(self.sales_percentage))
        object.__setattr__(self, "is_exempt", parse_bool(self.is_exempt))
        object.__setattr__(self, "tax_rate", to_decimal(self.tax_rate, default=DEFAULT_TAX_RATE))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LineItem":
        """Build from a dict-like row (form data, JSON payload, session cart)."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def as_dict(self) -> dict:
        """JSON-safe representation (decimals as strings)."""
        return {
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "discount_percentage": str(self.discount_percentage),
            "sales_percentage": str(self.sales_percentage),
            "is_exempt": self.is_exempt,
            "tax_rate": str(self.tax_rate),
        }


@dataclass(frozen=True)
class LineBreakdown:
    item_value: Decimal
    discount_amount: Decimal
    subtotal_after_discount: Decimal
    sales_amount: Decimal
    item_tax: Decimal
    item_total: Decimal


@dataclass(frozen=True)
class Totals:
    """
    Aggregate financial summary of an order.

    Invariant: total == base_imponible + monto_venta + monto_iva
    (the discount is already netted out of base_imponible).
    """

    base_imponible: Decimal = ZERO
    monto_descuento: Decimal = ZERO
    monto_venta: Decimal = ZERO
    monto_iva: Decimal = ZERO
    total: Decimal = ZERO

    @classmethod
    def from_components(
        cls,
        base_imponible: Decimal,
        monto_descuento: Decimal,
        monto_venta: Decimal,
        monto_iva: Decimal,
    ) -> "Totals":
        with localcontext(_ENGINE_CONTEXT):
            total = base_imponible + monto_venta + monto_iva
        return cls(base_imponible, monto_descuento, monto_venta, monto_iva, total)

    def __add__(self, other: "Totals") -> "Totals":
        if not isinstance(other, Totals):
            return NotImplemented
        with localcontext(_ENGINE_CONTEXT):
            return Totals.from_components(
                self.base_imponible + other.base_imponible,
                self.monto_descuento + other.monto_descuento,
                self.monto_venta + other.monto_venta,
                self.monto_iva + other.monto_iva,
            )

    def rounded(self) -> "Totals":
        """Display copy rounded to cents. Never use it for further arithmetic."""
        return Totals(*(money(v) for v in astuple(self)))

    def as_dict(self) -> dict:
        """Glossary keys, as consumed by templates, documents and the preview endpoint."""
        return {
            "baseImponible": self.base_imponible,
            "montoDescuento": self.monto_descuento,
            "montoVenta": self.monto_venta,
            "montoIVA": self.monto_iva,
            "total": self.total,
        }


def compute_line(item: LineItem) -> LineBreakdown:
    """Per-line breakdown (discount -> markup / tax on the discounted subtotal)."""
    with localcontext(_ENGINE_CONTEXT):
        item_value = item.quantity * item.unit_price
        discount_amount = item_value * (item.discount_percentage / HUNDRED)
        subtotal = item_value - discount_amount
        sales_amount = subtotal * (item.sales_percentage / HUNDRED)
        item_tax = ZERO if item.is_exempt else subtotal * item.tax_rate
        item_total = subtotal + sales_amount + item_tax

    return LineBreakdown(
        item_value=item_value,
        discount_amount=discount_amount,
        subtotal_after_discount=subtotal,
        sales_amount=sales_amount,
        item_tax=item_tax,
        item_total=item_total,
    )


def compute_totals(items: Iterable[LineItem]) -> Totals:
    """Aggregate totals for an ordered sequence of line items (possibly empty)."""
    base = discount = sales = tax = ZERO

    with localcontext(_ENGINE_CONTEXT):
        for item in items:
            line = compute_line(item)
            base += line.subtotal_after_discount
            discount += line.discount_amount
            sales += line.sales_amount
            tax += line.item_tax

    return Totals.from_components(base, discount, sales, tax)


def sum_totals(*parts: Totals) -> Totals:
    """Field-wise sum, e.g. service lines + spare parts of a service order."""
    result = Totals()
    for part in parts:
        result = result + part
    return result


# ---------------------------------------------------------------------
# Presentation helpers (rounding lives here only)
# ---------------------------------------------------------------------
def money(value: Any) -> Decimal:
    return to_decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def format_money(value: Any, currency: str | None = None) -> str:
    """
    Display string: "$ 1,234.50", "Bs. 10.00".
    Unknown currencies are prefixed with their ISO code.
    """
    amount = f"{money(value):,.2f}"
    if not currency:
        return amount
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())
    return f"{symbol} {amount}"


def reference_total(
    total: Any,
    currency: str | None,
    exchange_rate: Any,
    secondary_currency: str = "VES",
) -> Optional[Decimal]:
    """
    Informational figure for orders in the secondary currency: total / exchange_rate.

    Returns None when the order is not in the secondary currency or the rate is
    missing/non-positive.
    """
    if not currency or currency.upper() != secondary_currency.upper():
        return None
    rate = to_decimal(exchange_rate)
    if rate <= ZERO:
        return None
    with localcontext(_ENGINE_CONTEXT):
        return to_decimal(total) / rate
