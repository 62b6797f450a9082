from decimal import Decimal

import pytest
from django.core.cache import cache


@pytest.fixture(autouse=True)
def use_local_adapters(settings):
    from apps.orders.http_adapters import reset_breakers

    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    # throttle counters live in the cache
    cache.clear()
    reset_breakers()
    yield
    reset_breakers()


@pytest.fixture
def make_product(db):
    """Create a product with variants given as ``(price_modifier, stock)`` pairs."""
    from apps.orders.models import Product, ProductVariant

    def _make(price="1000.00", variants=((Decimal("0"), 3),), name="Tee"):
        product = Product.objects.create(name=name, price=Decimal(price))
        created = [
            ProductVariant.objects.create(
                product=product,
                size=f"S{i}",
                stock=stock,
                price_modifier=Decimal(str(modifier)),
            )
            for i, (modifier, stock) in enumerate(variants)
        ]
        return product, created

    return _make


@pytest.fixture
def order_payload():
    """Build a checkout body; each line is ``(product, variant, quantity, price)``."""

    def _build(lines, payment_method="COD", **extra):
        body = {
            "customerName": "Ayesha Khan",
            "customerEmail": "ayesha@example.com",
            "customerPhone": "+923001234567",
            "shippingAddress": "12 Main Boulevard",
            "city": "Lahore",
            "paymentMethod": payment_method,
            "items": [
                {
                    "productId": str(product.id),
                    "variantId": str(variant.id) if variant is not None else None,
                    "quantity": quantity,
                    "price": price,
                }
                for product, variant, quantity, price in lines
            ],
        }
        body.update(extra)
        return body

    return _build


@pytest.fixture
def payment_settings(db):
    from apps.orders.models import PaymentSettings

    return PaymentSettings.current()


@pytest.fixture
def customer(django_user_model):
    return django_user_model.objects.create_user(username="buyer", password="pw-123456")


@pytest.fixture
def customer_client(client, customer):
    client.force_login(customer)
    return client
