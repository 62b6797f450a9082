"""In-process adapters for the orders domain ports.

These implement the catalogue, coupon store, inventory and order repository
ports on plain dictionaries. They are used by the domain unit tests and for
local experiments where no database is wanted. ``InMemoryStore.atomic`` plays
the part of ``transaction.atomic``: it snapshots the state and restores it if
the block raises, so rollback behaviour can be tested without Django.
"""

import copy
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from .coupons import evaluate
from .domain import (
    CatalogPort,
    CouponRecord,
    InventoryPort,
    Order,
    OrderNumberTaken,
    OrderRepositoryPort,
    ProductRef,
    VariantRef,
)


class InMemoryStore:
    """Shared state for the in-memory adapters."""

    def __init__(self):
        self.products: Dict[uuid.UUID, ProductRef] = {}
        self.variants: Dict[uuid.UUID, VariantRef] = {}
        self.stock: Dict[uuid.UUID, int] = {}
        self.coupons: Dict[str, CouponRecord] = {}
        self.orders: Dict[uuid.UUID, Order] = {}
        self.order_numbers: Set[str] = set()
        self.lock = threading.RLock()

    def _state(self):
        return (self.stock, self.coupons, self.orders, self.order_numbers)

    @contextmanager
    def atomic(self):
        with self.lock:
            saved = copy.deepcopy(self._state())
            try:
                yield
            except BaseException:
                self.stock, self.coupons, self.orders, self.order_numbers = saved
                raise

    def add_product(self, price, variants=()):
        """Register a product and its variants.

        Args:
            price: Base price as ``Decimal``.
            variants: Iterable of ``(price_modifier, stock)`` pairs.

        Returns:
            tuple: ``(ProductRef, [VariantRef, ...])``.
        """
        product = ProductRef(id=uuid.uuid4(), price=price)
        self.products[product.id] = product
        refs = []
        for modifier, stock in variants:
            ref = VariantRef(id=uuid.uuid4(), product_id=product.id, price_modifier=modifier)
            self.variants[ref.id] = ref
            self.stock[ref.id] = stock
            refs.append(ref)
        return product, refs

    def add_coupon(self, code: str, **fields) -> CouponRecord:
        coupon = CouponRecord(id=uuid.uuid4(), code=code.upper(), **fields)
        self.coupons[coupon.code] = coupon
        return coupon


class InMemoryCatalog(CatalogPort):
    def __init__(self, store: InMemoryStore):
        self.store = store

    def product(self, product_id):
        return self.store.products.get(product_id)

    def variant(self, variant_id):
        return self.store.variants.get(variant_id)


class InMemoryCouponStore:
    def __init__(self, store: InMemoryStore):
        self.store = store

    def find(self, code: str) -> Optional[CouponRecord]:
        return self.store.coupons.get(code.upper())

    def redeem(self, coupon_id, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        with self.store.lock:
            for code, coupon in self.store.coupons.items():
                if coupon.id != coupon_id:
                    continue
                if evaluate(coupon, now) is not None:
                    return False
                self.store.coupons[code] = replace(coupon, used_count=coupon.used_count + 1)
                return True
        return False


class InMemoryInventory(InventoryPort):
    """Stock counters with the same conditional-debit contract as the ledger."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    def try_reserve(self, variant_id, quantity: int) -> bool:
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        with self.store.lock:
            available = self.store.stock.get(variant_id)
            if available is None or available < quantity:
                return False
            self.store.stock[variant_id] = available - quantity
            return True

    def release(self, variant_id, quantity: int) -> None:
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        with self.store.lock:
            self.store.stock[variant_id] = self.store.stock.get(variant_id, 0) + quantity

    def snapshot(self, variant_ids):
        with self.store.lock:
            wanted = {str(v) for v in variant_ids}
            return {str(k): stock for k, stock in self.store.stock.items() if str(k) in wanted}


class InMemoryOrderRepository(OrderRepositoryPort):
    """Order repository enforcing unique order numbers like the database does."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    def add(self, order: Order) -> Order:
        with self.store.lock:
            if order.order_number in self.store.order_numbers:
                raise OrderNumberTaken(order.order_number)
            now = datetime.now(timezone.utc)
            saved = replace(order, id=uuid.uuid4(), lines=list(order.lines), created_at=now, updated_at=now)
            self.store.orders[saved.id] = saved
            self.store.order_numbers.add(saved.order_number)
            return copy.deepcopy(saved)

    def get(self, order_id) -> Optional[Order]:
        order = self.store.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    get_for_update = get

    def save_status(self, order: Order) -> Order:
        with self.store.lock:
            order.updated_at = datetime.now(timezone.utc)
            self.store.orders[order.id] = copy.deepcopy(order)
            return order
