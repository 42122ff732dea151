"""
procura/cart.py

Order cart: the mutable list of lines owned by an order-creation or edit flow.

The flow owns the cart explicitly (one per flow, kept in the Flask session under a
flow-specific key). The totals engine only ever sees cart.snapshot().
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Iterator, Mapping, MutableMapping, Optional

from .totals import LineBreakdown, LineItem, Totals, compute_line, compute_totals

PRICING_FIELDS = frozenset(f.name for f in fields(LineItem))
DESCRIPTIVE_FIELDS = frozenset({"material_id", "description", "unit", "supplier_code", "supplier_id"})


@dataclass(frozen=True)
class CartLine:
    """A priced LineItem plus the descriptive fields the order row stores."""

    item: LineItem
    material_id: Optional[int] = None
    description: str = ""
    unit: Optional[str] = None
    supplier_code: Optional[str] = None
    # Spare parts of service orders may be bought from another supplier
    supplier_id: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CartLine":
        material_id = data.get("material_id")
        supplier_id = data.get("supplier_id")
        return cls(
            item=LineItem.from_mapping(data),
            material_id=int(material_id) if material_id not in (None, "") else None,
            description=(data.get("description") or "").strip(),
            unit=(data.get("unit") or "").strip() or None,
            supplier_code=(data.get("supplier_code") or "").strip() or None,
            supplier_id=int(supplier_id) if supplier_id not in (None, "") else None,
        )

    @property
    def breakdown(self) -> LineBreakdown:
        return compute_line(self.item)

    def as_dict(self) -> dict:
        data = self.item.as_dict()
        data.update(
            material_id=self.material_id,
            description=self.description,
            unit=self.unit,
            supplier_code=self.supplier_code,
            supplier_id=self.supplier_id,
        )
        return data


class OrderCart:
    """Explicit add/update/remove/clear store of cart lines."""

    def __init__(self, lines: Optional[list[CartLine]] = None):
        self._lines: list[CartLine] = list(lines or [])

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[CartLine]:
        return iter(tuple(self._lines))

    def __getitem__(self, index: int) -> CartLine:
        return self._lines[index]

    def add(self, line: CartLine | Mapping[str, Any]) -> CartLine:
        if not isinstance(line, CartLine):
            line = CartLine.from_mapping(line)
        self._lines.append(line)
        return line

    def update(self, index: int, **changes: Any) -> CartLine:
        """
        Merge changes into the line at `index`.

        Pricing fields rebuild the LineItem (so defaults are re-applied),
        descriptive fields replace the stored value.
        """
        unknown = set(changes) - PRICING_FIELDS - DESCRIPTIVE_FIELDS
        if unknown:
            raise KeyError(f"Unknown cart field(s): {', '.join(sorted(unknown))}")

        current = self._lines[index]
        pricing = {k: v for k, v in changes.items() if k in PRICING_FIELDS}
        descriptive = {k: v for k, v in changes.items() if k in DESCRIPTIVE_FIELDS}

        item = replace(current.item, **pricing) if pricing else current.item
        updated = replace(current, item=item, **descriptive)
        self._lines[index] = updated
        return updated

    def remove(self, index: int) -> CartLine:
        return self._lines.pop(index)

    def clear(self) -> None:
        self._lines.clear()

    def snapshot(self) -> tuple[LineItem, ...]:
        """Immutable view handed to the totals engine."""
        return tuple(line.item for line in self._lines)

    def totals(self) -> Totals:
        return compute_totals(self.snapshot())

    def to_list(self) -> list[dict]:
        return [line.as_dict() for line in self._lines]

    @classmethod
    def from_list(cls, rows: list[Mapping[str, Any]] | None) -> "OrderCart":
        return cls([CartLine.from_mapping(row) for row in rows or []])


# ---------------------------------------------------------------------
# Session storage
# ---------------------------------------------------------------------
def cart_key(kind_key: str, order_id: int | None = None, section: str = "items") -> str:
    """Session key for one flow: new order vs. editing order <id>, per section."""
    scope = f"edit-{order_id}" if order_id else "new"
    return f"cart:{kind_key}:{scope}:{section}"


def load_cart(session: MutableMapping[str, Any], key: str) -> OrderCart:
    return OrderCart.from_list(session.get(key))


def save_cart(session: MutableMapping[str, Any], key: str, cart: OrderCart) -> None:
    session[key] = cart.to_list()


def discard_cart(session: MutableMapping[str, Any], key: str) -> None:
    session.pop(key, None)
