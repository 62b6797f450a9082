"""API tests for the create-order endpoint, against the real ORM adapters."""

from datetime import timedelta
from decimal import Decimal
import uuid

import pytest
from django.utils import timezone

from apps.orders import providers
from apps.orders.domain import OrderService
from apps.orders.models import Coupon, OrderItemModel, OrderModel, ProductVariant
from apps.orders.numbering import ORDER_NUMBER_RE

CREATE_URL = "/api/orders/"


def post(client, payload, **headers):
    return client.post(CREATE_URL, data=payload, content_type="application/json", **headers)


@pytest.mark.django_db
def test_cod_order_created_with_items_and_stock_debited(client, make_product, order_payload):
    product, (variant,) = make_product(price="1000.00", variants=[(0, 3)])
    payload = order_payload([(product, variant, 2, 1000)], subtotal=2000, shipping=250, total=2250)

    r = post(client, payload)

    assert r.status_code == 201, r.json()
    body = r.json()
    assert body["subtotal"] == 2000
    assert body["shipping"] == 250
    assert body["discount"] == 0
    assert body["total"] == 2250
    assert body["status"] == "PENDING"
    assert body["paymentMethod"] == "COD"
    assert body["paymentStatus"] == "PENDING"
    assert ORDER_NUMBER_RE.match(body["orderNumber"])
    assert body["items"] == [
        {"productId": str(product.id), "variantId": str(variant.id), "quantity": 2, "price": 1000}
    ]

    variant.refresh_from_db()
    assert variant.stock == 1
    order = OrderModel.objects.get(pk=body["id"])
    assert order.total == order.subtotal + order.shipping - order.discount
    assert order.subtotal == sum(i.price * i.quantity for i in order.items.all())
    assert order.user_id is None


@pytest.mark.django_db
def test_order_linked_to_signed_in_customer(customer_client, customer, make_product, order_payload):
    product, (variant,) = make_product()
    r = post(customer_client, order_payload([(product, variant, 1, 1000)]))
    assert r.status_code == 201
    assert OrderModel.objects.get(pk=r.json()["id"]).user_id == customer.id


@pytest.mark.django_db
def test_insufficient_stock_leaves_no_trace(client, make_product, order_payload):
    product, (a, b) = make_product(price="500.00", variants=[(0, 5), (0, 1)])
    coupon = Coupon.objects.create(code="TEN", type="FIXED_AMOUNT", value=Decimal("10"))
    payload = order_payload([(product, a, 2, 500), (product, b, 2, 500)], couponCode="ten")

    r = post(client, payload)

    assert r.status_code == 400
    body = r.json()
    assert body["detail"] == "INSUFFICIENT_STOCK"
    assert body["step"] == "inventory"
    assert body["variantId"] == str(b.id)
    assert OrderModel.objects.count() == 0
    assert OrderItemModel.objects.count() == 0
    assert sorted(ProductVariant.objects.values_list("stock", flat=True)) == [1, 5]
    coupon.refresh_from_db()
    assert coupon.used_count == 0


@pytest.mark.django_db
def test_second_buyer_of_last_unit_is_refused(client, make_product, order_payload):
    product, (variant,) = make_product(variants=[(0, 1)])
    payload = order_payload([(product, variant, 1, 1000)])

    first = post(client, payload)
    second = post(client, payload)

    assert first.status_code == 201
    assert second.status_code == 400
    assert second.json()["detail"] == "INSUFFICIENT_STOCK"
    variant.refresh_from_db()
    assert variant.stock == 0
    assert OrderModel.objects.count() == 1


@pytest.mark.django_db
def test_disabled_payment_method(client, payment_settings, make_product, order_payload):
    payment_settings.bank_transfer_enabled = False
    payment_settings.save()
    product, (variant,) = make_product()

    r = post(client, order_payload([(product, variant, 1, 1000)], payment_method="BANK_TRANSFER"))

    assert r.status_code == 400
    assert r.json()["detail"] == "PAYMENT_METHOD_UNAVAILABLE"
    assert r.json()["message"] == "Bank transfer is not available"
    variant.refresh_from_db()
    assert variant.stock == 3


@pytest.mark.django_db
def test_coupon_discount_and_redemption(client, make_product, order_payload):
    product, (variant,) = make_product(price="3000.00", variants=[(0, 5)])
    coupon = Coupon.objects.create(code="SAVE10", type="PERCENTAGE", value=Decimal("10"), usage_limit=5)

    r = post(client, order_payload([(product, variant, 2, 3000)], couponCode="save10"))

    assert r.status_code == 201
    body = r.json()
    assert body["couponCode"] == "SAVE10"
    assert body["subtotal"] == 6000
    assert body["shipping"] == 0
    assert body["discount"] == 600
    assert body["total"] == 5400
    coupon.refresh_from_db()
    assert coupon.used_count == 1


@pytest.mark.django_db
def test_expired_coupon_rejected(client, make_product, order_payload):
    product, (variant,) = make_product()
    Coupon.objects.create(code="SAVE10", value=Decimal("10"), end_date=timezone.now() - timedelta(days=1))

    r = post(client, order_payload([(product, variant, 1, 1000)], couponCode="SAVE10"))

    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_COUPON"
    assert r.json()["reason"] == "expired"
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_price_mismatch(client, make_product, order_payload):
    product, (variant,) = make_product(price="1000.00")
    r = post(client, order_payload([(product, variant, 1, 800)]))
    assert r.status_code == 400
    assert r.json()["detail"] == "PRICE_MISMATCH"


@pytest.mark.django_db
def test_totals_mismatch(client, make_product, order_payload):
    product, (variant,) = make_product(price="1000.00")
    r = post(client, order_payload([(product, variant, 1, 1000)], total=1000))
    assert r.status_code == 400
    assert r.json()["detail"] == "TOTALS_MISMATCH"


@pytest.mark.django_db
def test_unknown_product_is_404(client, make_product, order_payload):
    product, (variant,) = make_product()
    payload = order_payload([(product, variant, 1, 1000)])
    payload["items"][0]["productId"] = str(uuid.uuid4())
    r = post(client, payload)
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


@pytest.mark.django_db
def test_validation_error_before_side_effects(client, make_product):
    _, (variant,) = make_product()
    payload = {
        "customerName": "",
        "customerEmail": "not-an-email",
        "paymentMethod": "CARD",
        "items": [{"productId": "x", "quantity": 0}],
    }
    r = post(client, payload)
    assert r.status_code == 400
    body = r.json()
    assert body["detail"] == "VALIDATION_ERROR"
    fields = {tuple(e["loc"])[0] for e in body["errors"]}
    assert {"customerName", "customerEmail", "paymentMethod", "items"} <= fields
    variant.refresh_from_db()
    assert variant.stock == 3


@pytest.mark.django_db
def test_empty_items_rejected(client, order_payload):
    r = post(client, order_payload([]))
    assert r.status_code == 400
    assert r.json()["detail"] == "VALIDATION_ERROR"


@pytest.mark.django_db
def test_unexpected_failure_is_500_and_rolls_back(client, make_product, order_payload, monkeypatch):
    product, (variant,) = make_product()
    real = providers.get_order_service

    def broken_service():
        service = real()

        class ExplodingInventory:
            def try_reserve(self, variant_id, quantity):
                service_inventory.try_reserve(variant_id, quantity)
                raise RuntimeError("connection lost")

        service_inventory = service.inventory
        service.inventory = ExplodingInventory()
        return service

    monkeypatch.setattr(providers, "get_order_service", broken_service)

    r = post(client, order_payload([(product, variant, 1, 1000)]))

    assert r.status_code == 500
    assert r.json()["detail"] == "PERSISTENCE_FAILURE"
    assert OrderModel.objects.count() == 0
    variant.refresh_from_db()
    assert variant.stock == 3


@pytest.mark.django_db
def test_order_number_collision_retried(client, make_product, order_payload, monkeypatch):
    product, (variant,) = make_product(variants=[(0, 5)])
    real = providers.get_order_service
    numbers = iter(["ZNX-FIXED-0001", "ZNX-FIXED-0001", "ZNX-FIXED-0002"])

    def service_with_fixed_numbers() -> OrderService:
        service = real()
        service.number_generator = lambda: next(numbers)
        return service

    monkeypatch.setattr(providers, "get_order_service", service_with_fixed_numbers)

    r1 = post(client, order_payload([(product, variant, 1, 1000)]))
    r2 = post(client, order_payload([(product, variant, 1, 1000)]))

    assert r1.status_code == 201 and r2.status_code == 201
    assert r1.json()["orderNumber"] == "ZNX-FIXED-0001"
    assert r2.json()["orderNumber"] == "ZNX-FIXED-0002"
    variant.refresh_from_db()
    assert variant.stock == 3


@pytest.mark.django_db
def test_successful_order_clears_session_cart(client, make_product, order_payload):
    product, (variant,) = make_product()
    client.post("/api/cart/", data={"productId": str(product.id), "variantId": str(variant.id)},
                content_type="application/json")
    assert client.get("/api/cart/").json()["itemCount"] == 1

    r = post(client, order_payload([(product, variant, 1, 1000)]))

    assert r.status_code == 201
    assert client.get("/api/cart/").json()["itemCount"] == 0


@pytest.mark.django_db
def test_unrounded_client_quote_accepted(client, make_product, order_payload):
    product, (variant,) = make_product(price="999.99", variants=[(0, 2)])
    Coupon.objects.create(code="SAVE10", type="PERCENTAGE", value=Decimal("10"))
    payload = order_payload(
        [(product, variant, 1, 999.99)],
        couponCode="SAVE10",
        subtotal=999.99,
        shipping=250,
        discount=99.999,
        total=1149.991,
    )

    r = post(client, payload)

    assert r.status_code == 201, r.json()
    body = r.json()
    assert body["discount"] == 100.0
    assert body["total"] == 1149.99
    order = OrderModel.objects.get(pk=body["id"])
    assert order.discount == Decimal("100.00")
    assert order.total == Decimal("1149.99")


@pytest.mark.django_db
def test_quote_off_by_more_than_rounding_rejected(client, make_product, order_payload):
    product, (variant,) = make_product(price="999.99")
    payload = order_payload([(product, variant, 1, 999.99)], total=1249.98)
    r = post(client, payload)
    assert r.status_code == 400
    assert r.json()["detail"] == "TOTALS_MISMATCH"
