"""Shopping cart held by the customer between visits.

The cart is advisory. Each line keeps the unit price and the stock figure
seen when it was added or last refreshed, which lets the storefront refuse
obviously impossible quantities early. The order service re-reads prices and
reserves stock itself, so nothing here is trusted at checkout.

``Cart`` is a plain value object; ``CartStore`` implementations decide where
it lives (the Django session in production, a dict in tests).
"""

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol

from .domain import CENTS, ZERO


class StockSnapshotPort(Protocol):
    def snapshot(self, variant_ids: Iterable) -> Dict[str, int]:
        """Current stock keyed by ``str(variant_id)``; unknown ids are omitted."""
        raise NotImplementedError()


@dataclass
class CartLine:
    product_id: str
    variant_id: Optional[str]
    name: str
    unit_price: Decimal
    quantity: int
    # Stock seen when the line was added or refreshed; None means unknown
    available: Optional[int] = None
    short: bool = False

    @property
    def key(self) -> str:
        return line_key(self.product_id, self.variant_id)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        data = asdict(self)
        data["unit_price"] = str(self.unit_price)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CartLine":
        return cls(
            product_id=str(data["product_id"]),
            variant_id=str(data["variant_id"]) if data.get("variant_id") else None,
            name=data.get("name", ""),
            unit_price=Decimal(str(data["unit_price"])),
            quantity=int(data["quantity"]),
            available=data.get("available"),
            short=bool(data.get("short", False)),
        )


def line_key(product_id, variant_id=None) -> str:
    return f"{product_id}:{variant_id or ''}"


@dataclass
class Cart:
    lines: List[CartLine] = field(default_factory=list)

    def find(self, key: str) -> Optional[CartLine]:
        return next((line for line in self.lines if line.key == key), None)

    def add(self, line: CartLine) -> bool:
        """Add ``line`` or merge it into an existing line with the same key.

        Returns:
            bool: False when the resulting quantity would exceed the stock
            snapshot; the cart is left unchanged in that case.
        """
        if line.quantity <= 0:
            return False
        existing = self.find(line.key)
        wanted = line.quantity + (existing.quantity if existing else 0)
        available = line.available if line.available is not None else (existing.available if existing else None)
        if available is not None and wanted > available:
            return False
        if existing is None:
            self.lines.append(line)
        else:
            existing.quantity = wanted
            existing.unit_price = line.unit_price
            existing.available = available
            existing.short = False
        return True

    def update_quantity(self, key: str, quantity: int) -> bool:
        """Set the quantity of a line; zero or less removes it.

        Returns False when the line is unknown or the quantity exceeds its
        stock snapshot.
        """
        line = self.find(key)
        if line is None:
            return False
        if quantity <= 0:
            self.remove(key)
            return True
        if line.available is not None and quantity > line.available:
            return False
        line.quantity = quantity
        line.short = False
        return True

    def remove(self, key: str) -> None:
        self.lines = [line for line in self.lines if line.key != key]

    def clear(self) -> None:
        self.lines = []

    def total(self) -> Decimal:
        return sum((line.line_total for line in self.lines), ZERO).quantize(CENTS)

    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    def refresh(self, source: StockSnapshotPort) -> List[CartLine]:
        """Update stock snapshots from ``source`` and flag lines that no longer fit.

        Returns:
            list[CartLine]: The lines whose quantity exceeds current stock.
        """
        ids = [line.variant_id for line in self.lines if line.variant_id]
        stock = source.snapshot(ids) if ids else {}
        short = []
        for line in self.lines:
            if not line.variant_id:
                continue
            line.available = stock.get(line.variant_id, 0)
            line.short = line.quantity > line.available
            if line.short:
                short.append(line)
        return short

    def checkout_items(self) -> List[dict]:
        """Lines shaped like the ``items`` of an order submission."""
        return [
            {
                "productId": line.product_id,
                "variantId": line.variant_id,
                "quantity": line.quantity,
                "price": str(line.unit_price),
            }
            for line in self.lines
        ]

    def to_dict(self) -> dict:
        return {"lines": [line.to_dict() for line in self.lines]}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Cart":
        if not data:
            return cls()
        return cls(lines=[CartLine.from_dict(item) for item in data.get("lines", [])])


class CartStore(Protocol):
    def load(self) -> Cart:
        raise NotImplementedError()

    def save(self, cart: Cart) -> None:
        raise NotImplementedError()


class SessionCartStore(CartStore):
    """Keeps the cart in a Django session under ``key``."""

    def __init__(self, session, key: str):
        self.session = session
        self.key = key

    def load(self) -> Cart:
        return Cart.from_dict(self.session.get(self.key))

    def save(self, cart: Cart) -> None:
        self.session[self.key] = cart.to_dict()
        self.session.modified = True


class MemoryCartStore(CartStore):
    def __init__(self):
        self.data: Optional[dict] = None

    def load(self) -> Cart:
        return Cart.from_dict(self.data)

    def save(self, cart: Cart) -> None:
        self.data = cart.to_dict()
