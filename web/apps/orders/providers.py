"""Wiring of the domain services with their Django-backed ports.

Views call these factories through the module (``providers.get_...()``), so
tests can monkeypatch a factory to inject in-memory adapters.
"""

from django.conf import settings
from django.db import transaction

from .coupons import CouponValidator
from .domain import OrderService, OrderStatusService, ShippingPolicy
from .http_adapters import HttpStockClient
from .ledger import InventoryLedger
from .numbering import OrderNumberGenerator
from .repository import DjangoCatalog, DjangoCouponStore, OrderRepository


def shipping_policy() -> ShippingPolicy:
    return ShippingPolicy(fee=settings.SHIPPING_FEE, free_threshold=settings.FREE_SHIPPING_THRESHOLD)


def get_coupon_validator() -> CouponValidator:
    return CouponValidator(DjangoCouponStore())


def get_order_service() -> OrderService:
    """Return an ``OrderService`` whose writes share one database transaction."""
    return OrderService(
        catalog=DjangoCatalog(),
        coupons=get_coupon_validator(),
        inventory=InventoryLedger(),
        orders=OrderRepository(),
        number_generator=OrderNumberGenerator(prefix=settings.ORDER_NUMBER_PREFIX),
        shipping=shipping_policy(),
        unit_of_work=transaction.atomic,
        max_number_attempts=settings.ORDER_NUMBER_MAX_ATTEMPTS,
    )


def get_status_service() -> OrderStatusService:
    return OrderStatusService(
        orders=OrderRepository(),
        inventory=InventoryLedger(),
        unit_of_work=transaction.atomic,
    )


def get_stock_source():
    """Snapshot source for cart refreshes.

    With ``USE_HTTP_ADAPTERS`` the stock service is asked over HTTP;
    otherwise the ledger reads the table directly.
    """
    if settings.USE_HTTP_ADAPTERS:
        return HttpStockClient()
    return InventoryLedger()
