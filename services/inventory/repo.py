"""SQLAlchemy access to the storefront's product and variant tables.

The stock service shares its database with the storefront: it maps the
``products`` and ``product_variants`` tables created by the web app's
migrations rather than owning a schema. It only reads stock for snapshots
and makes administrative changes (stock/min-stock levels, restocks); order
reservations happen in the web app's order transaction.

The database URL comes from ``DATABASE_URL`` or, failing that, the ``DB_*``
variables.
"""

import os
import uuid
from contextlib import contextmanager
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import ForeignKey, Integer, Numeric, String, create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship
from sqlalchemy.types import Uuid

DB_HOST = os.getenv("DB_HOST", "storefront-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "storefront")
DB_USER = os.getenv("DB_USER", "storefront")
DB_PASSWORD = os.getenv("DB_PASSWORD", "storefront-pass")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)


def make_engine(url: str) -> Engine:
    kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


engine = make_engine(DATABASE_URL)


class Base(DeclarativeBase):
    pass


class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200))
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    variants: Mapped[List["ProductVariant"]] = relationship(back_populates="product")


class ProductVariant(Base):
    """A purchasable size/colour combination and its stock counter."""

    __tablename__ = "product_variants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id"))
    size: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    color: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    price_modifier: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    product: Mapped[Product] = relationship(back_populates="variants")

    @property
    def label(self) -> str:
        return " / ".join(part for part in (self.size, self.color) if part) or "Default"


def stock_status(stock: int, min_stock: int) -> str:
    if stock == 0:
        return "out"
    if stock <= min_stock:
        return "low"
    return "ok"


class UnknownVariant(LookupError):
    def __init__(self, variant_id):
        self.variant_id = variant_id
        super().__init__(str(variant_id))


class InventoryRepo:
    """Stock reads and administrative stock changes.

    Args:
        bind: Engine to use; the module engine by default.
    """

    def __init__(self, bind: Optional[Engine] = None):
        self.bind = bind or engine

    @contextmanager
    def session(self):
        with Session(self.bind) as s:
            yield s

    def snapshot(self, variant_ids: Iterable[uuid.UUID]) -> Dict[str, int]:
        ids = list(variant_ids)
        if not ids:
            return {}
        with self.session() as s:
            rows = s.execute(select(ProductVariant.id, ProductVariant.stock).where(ProductVariant.id.in_(ids)))
            return {str(vid): stock for vid, stock in rows}

    def list_inventory(self) -> List[dict]:
        """Every variant with its product name, label and stock status, by product name."""
        with self.session() as s:
            stmt = (
                select(ProductVariant, Product.name)
                .join(Product, ProductVariant.product_id == Product.id)
                .order_by(Product.name, ProductVariant.id)
            )
            return [
                {
                    "product_id": variant.product_id,
                    "variant_id": variant.id,
                    "product_name": name,
                    "variant_label": variant.label,
                    "stock": variant.stock,
                    "min_stock": variant.min_stock,
                    "status": stock_status(variant.stock, variant.min_stock),
                }
                for variant, name in s.execute(stmt)
            ]

    def set_levels(self, updates: List[dict]) -> int:
        """Apply ``{variant_id, stock?, min_stock?}`` updates in one transaction.

        Returns:
            int: Number of variants updated.

        Raises:
            UnknownVariant: Nothing is written if any id is unknown.
        """
        with self.session() as s, s.begin():
            for change in updates:
                values = {k: change[k] for k in ("stock", "min_stock") if change.get(k) is not None}
                if not values:
                    if s.get(ProductVariant, change["variant_id"]) is None:
                        raise UnknownVariant(change["variant_id"])
                    continue
                result = s.execute(
                    update(ProductVariant)
                    .where(ProductVariant.id == change["variant_id"])
                    .values(**values)
                )
                if result.rowcount != 1:
                    raise UnknownVariant(change["variant_id"])
        return len(updates)

    def restock(self, variant_id: uuid.UUID, quantity: int) -> int:
        """Atomically add ``quantity`` units and return the new stock.

        Raises:
            UnknownVariant: If the variant does not exist.
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        with self.session() as s, s.begin():
            result = s.execute(
                update(ProductVariant)
                .where(ProductVariant.id == variant_id)
                .values(stock=ProductVariant.stock + quantity)
            )
            if result.rowcount != 1:
                raise UnknownVariant(variant_id)
            return s.execute(select(ProductVariant.stock).where(ProductVariant.id == variant_id)).scalar_one()
