"""Payment settings, order tracking and review eligibility endpoints."""

import pytest

from apps.orders.models import OrderModel, PaymentSettings

CREATE_URL = "/api/orders/"
SETTINGS_URL = "/api/payment-settings/"
ADMIN_SETTINGS_URL = "/api/admin/payment-settings/"
TRACKING_URL = "/api/tracking/"
CAN_REVIEW_URL = "/api/reviews/can-review/{pid}/"


def place(client, product, variant, order_payload):
    r = client.post(CREATE_URL, data=order_payload([(product, variant, 1, 1000)]), content_type="application/json")
    assert r.status_code == 201
    return r.json()


@pytest.mark.django_db
def test_payment_settings_created_lazily(client):
    assert PaymentSettings.objects.count() == 0
    r = client.get(SETTINGS_URL)
    assert r.status_code == 200
    assert r.json()["bankTransferEnabled"] is True
    assert r.json()["codEnabled"] is True
    assert PaymentSettings.objects.count() == 1


@pytest.mark.django_db
def test_admin_updates_payment_settings(admin_client, make_product, order_payload):
    r = admin_client.put(
        ADMIN_SETTINGS_URL,
        data={"codEnabled": False, "bankName": "Meezan Bank", "iban": "PK36MEZN0000000000000000"},
        content_type="application/json",
    )
    assert r.status_code == 200
    assert r.json()["codEnabled"] is False
    assert r.json()["bankTransferEnabled"] is True
    assert admin_client.get(ADMIN_SETTINGS_URL).json()["bankName"] == "Meezan Bank"

    product, (variant,) = make_product()
    r = admin_client.post(CREATE_URL, data=order_payload([(product, variant, 1, 1000)]), content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "PAYMENT_METHOD_UNAVAILABLE"


@pytest.mark.django_db
def test_payment_settings_admin_only(customer_client):
    r = customer_client.put(ADMIN_SETTINGS_URL, data={"codEnabled": False}, content_type="application/json")
    assert r.status_code == 403
    assert PaymentSettings.current().cod_enabled is True


@pytest.mark.django_db
def test_tracking_by_order_number(client, make_product, order_payload):
    product, (variant,) = make_product(name="Linen Shirt")
    order = place(client, product, variant, order_payload)

    r = client.get(TRACKING_URL, {"id": order["orderNumber"].lower()})

    assert r.status_code == 200
    body = r.json()
    assert body["orderNumber"] == order["orderNumber"]
    assert body["status"] == "PENDING"
    assert body["items"] == [{"name": "Linen Shirt", "quantity": 1}]
    assert "customerEmail" not in body
    assert "customerPhone" not in body


@pytest.mark.django_db
def test_tracking_errors(client):
    assert client.get(TRACKING_URL).status_code == 400
    r = client.get(TRACKING_URL, {"id": "ZNX-NOPE-0000"})
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


@pytest.mark.django_db
def test_can_review_reasons(client, customer, make_product, order_payload):
    product, (variant,) = make_product()
    url = CAN_REVIEW_URL.format(pid=product.id)

    assert client.get(url).json()["reason"] == "not_logged_in"

    client.force_login(customer)
    assert client.get(url).json() == {
        "canReview": False,
        "reason": "no_purchase",
        "message": "Purchase this product to leave a review",
    }

    order = place(client, product, variant, order_payload)
    assert client.get(url).json()["reason"] == "no_purchase"

    OrderModel.objects.filter(pk=order["id"]).update(status="DELIVERED")
    body = client.get(url).json()
    assert body["canReview"] is True
    assert body["reason"] == "eligible"
