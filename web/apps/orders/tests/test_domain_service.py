"""Unit tests for the OrderService checkout orchestration.

The service is wired to the in-memory adapters, whose ``atomic`` restores
state when the block raises, so rollback guarantees can be checked without a
database.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import threading

import pytest

from apps.orders.adapters import (
    InMemoryCatalog,
    InMemoryCouponStore,
    InMemoryInventory,
    InMemoryOrderRepository,
    InMemoryStore,
)
from apps.orders.coupons import CouponValidator
from apps.orders.domain import (
    Checkout,
    CheckoutLine,
    CouponReason,
    CouponType,
    Customer,
    InsufficientStock,
    InvalidCoupon,
    NotFound,
    OrderService,
    OrderStatus,
    PaymentConfig,
    PaymentMethod,
    PaymentMethodUnavailable,
    PersistenceFailure,
    Quote,
    ShippingPolicy,
    ValidationError,
)
from apps.orders.numbering import ORDER_NUMBER_RE, OrderNumberGenerator

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
CUSTOMER = Customer(
    name="Ayesha Khan",
    email="ayesha@example.com",
    phone="+923001234567",
    shipping_address="12 Main Boulevard",
    city="Lahore",
)
SHIPPING = ShippingPolicy(fee=Decimal("250"), free_threshold=Decimal("5000"))
BOTH_ENABLED = PaymentConfig(bank_transfer_enabled=True, cod_enabled=True)


@pytest.fixture
def store():
    return InMemoryStore()


def make_service(store, number_generator=None, **kwargs):
    return OrderService(
        catalog=InMemoryCatalog(store),
        coupons=CouponValidator(InMemoryCouponStore(store)),
        inventory=InMemoryInventory(store),
        orders=InMemoryOrderRepository(store),
        number_generator=number_generator or OrderNumberGenerator(),
        shipping=SHIPPING,
        unit_of_work=store.atomic,
        clock=lambda: NOW,
        **kwargs,
    )


def checkout(lines, method=PaymentMethod.COD, coupon_code=None, quote=Quote()):
    return Checkout(customer=CUSTOMER, payment_method=method, lines=lines, coupon_code=coupon_code, quote=quote)


def test_cod_order_totals_and_stock():
    store = InMemoryStore()
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("0"), 3)])
    service = make_service(store)

    order = service.create_order(
        checkout([CheckoutLine(product.id, v1.id, 2, Decimal("1000"))]), BOTH_ENABLED
    )

    assert order.totals.subtotal == Decimal("2000.00")
    assert order.totals.shipping == Decimal("250.00")
    assert order.totals.discount == Decimal("0.00")
    assert order.totals.total == Decimal("2250.00")
    assert order.status == OrderStatus.PENDING
    assert ORDER_NUMBER_RE.match(order.order_number)
    assert store.stock[v1.id] == 1


def test_free_shipping_at_threshold(store):
    product, (v1,) = store.add_product(Decimal("2500"), [(Decimal("0"), 5)])
    order = make_service(store).create_order(checkout([CheckoutLine(product.id, v1.id, 2)]), BOTH_ENABLED)
    assert order.totals.subtotal == Decimal("5000.00")
    assert order.totals.shipping == Decimal("0.00")
    assert order.totals.total == Decimal("5000.00")


def test_price_modifier_is_part_of_unit_price(store):
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("150"), 5)])
    order = make_service(store).create_order(checkout([CheckoutLine(product.id, v1.id, 3)]), BOTH_ENABLED)
    assert order.lines[0].price == Decimal("1150.00")
    assert order.totals.subtotal == sum(line.line_total for line in order.lines)
    assert order.totals.total == order.totals.subtotal + order.totals.shipping - order.totals.discount


def test_empty_checkout_rejected(store):
    with pytest.raises(ValidationError) as e:
        make_service(store).create_order(checkout([]), BOTH_ENABLED)
    assert str(e.value) == "EMPTY_ORDER"


def test_disabled_payment_method_has_no_side_effects(store):
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("0"), 3)])
    config = PaymentConfig(bank_transfer_enabled=False, cod_enabled=True)
    with pytest.raises(PaymentMethodUnavailable) as e:
        make_service(store).create_order(
            checkout([CheckoutLine(product.id, v1.id, 1)], method=PaymentMethod.BANK_TRANSFER), config
        )
    assert e.value.to_body()["paymentMethod"] == "BANK_TRANSFER"
    assert store.stock[v1.id] == 3
    assert store.orders == {}


def test_insufficient_stock_rolls_back_everything(store):
    product, (v1, v2) = store.add_product(Decimal("500"), [(Decimal("0"), 5), (Decimal("0"), 1)])
    coupon = store.add_coupon("TEN", type=CouponType.FIXED_AMOUNT, value=Decimal("10"), usage_limit=5)
    service = make_service(store)

    with pytest.raises(InsufficientStock) as e:
        service.create_order(
            checkout(
                [CheckoutLine(product.id, v1.id, 2), CheckoutLine(product.id, v2.id, 2)],
                coupon_code="ten",
            ),
            BOTH_ENABLED,
        )

    assert e.value.variant_id == v2.id
    assert store.stock == {v1.id: 5, v2.id: 1}
    assert store.orders == {}
    assert store.coupons[coupon.code].used_count == 0


def test_quantities_for_same_variant_are_aggregated(store):
    product, (v1,) = store.add_product(Decimal("100"), [(Decimal("0"), 3)])
    with pytest.raises(InsufficientStock):
        make_service(store).create_order(
            checkout([CheckoutLine(product.id, v1.id, 2), CheckoutLine(product.id, v1.id, 2)]),
            BOTH_ENABLED,
        )
    assert store.stock[v1.id] == 3


def test_last_unit_goes_to_exactly_one_buyer(store):
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("0"), 1)])
    service = make_service(store)
    request = checkout([CheckoutLine(product.id, v1.id, 1)])

    first = service.create_order(request, BOTH_ENABLED)
    with pytest.raises(InsufficientStock):
        service.create_order(request, BOTH_ENABLED)

    assert first.order_number
    assert store.stock[v1.id] == 0
    assert len(store.orders) == 1


def test_unknown_product_or_foreign_variant(store):
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("0"), 1)])
    other, (w1,) = store.add_product(Decimal("10"), [(Decimal("0"), 1)])
    service = make_service(store)

    with pytest.raises(NotFound) as e:
        service.create_order(checkout([CheckoutLine(product.id, w1.id, 1)]), BOTH_ENABLED)
    assert e.value.resource == "variant"
    assert e.value.status_code == 404


def test_stale_client_price_is_rejected(store):
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("0"), 3)])
    with pytest.raises(ValidationError) as e:
        make_service(store).create_order(
            checkout([CheckoutLine(product.id, v1.id, 1, Decimal("900"))]), BOTH_ENABLED
        )
    assert str(e.value) == "PRICE_MISMATCH"
    assert store.stock[v1.id] == 3


def test_client_totals_must_match(store):
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("0"), 3)])
    quote = Quote(subtotal=Decimal("1000"), shipping=Decimal("0"), total=Decimal("1000"))
    with pytest.raises(ValidationError) as e:
        make_service(store).create_order(checkout([CheckoutLine(product.id, v1.id, 1)], quote=quote), BOTH_ENABLED)
    assert str(e.value) == "TOTALS_MISMATCH"


def test_matching_client_totals_are_accepted(store):
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("0"), 3)])
    quote = Quote(subtotal=Decimal("1000"), shipping=Decimal("250"), discount=Decimal("0"), total=Decimal("1250"))
    order = make_service(store).create_order(checkout([CheckoutLine(product.id, v1.id, 1)], quote=quote), BOTH_ENABLED)
    assert order.totals.total == Decimal("1250.00")


def test_percentage_coupon_discount_and_redemption(store):
    product, (v1,) = store.add_product(Decimal("1999"), [(Decimal("0"), 3)])
    coupon = store.add_coupon("SAVE10", type=CouponType.PERCENTAGE, value=Decimal("10"))
    order = make_service(store).create_order(
        checkout([CheckoutLine(product.id, v1.id, 1)], coupon_code="save10"), BOTH_ENABLED
    )
    assert order.coupon_code == "SAVE10"
    assert order.totals.discount == Decimal("199.90")
    assert order.totals.total == Decimal("1999.00") + Decimal("250.00") - Decimal("199.90")
    assert store.coupons[coupon.code].used_count == 1


def test_fixed_coupon_is_capped_at_subtotal(store):
    product, (v1,) = store.add_product(Decimal("100"), [(Decimal("0"), 3)])
    store.add_coupon("BIG", type=CouponType.FIXED_AMOUNT, value=Decimal("500"))
    order = make_service(store).create_order(
        checkout([CheckoutLine(product.id, v1.id, 1)], coupon_code="BIG"), BOTH_ENABLED
    )
    assert order.totals.discount == Decimal("100.00")
    assert order.totals.total == Decimal("250.00")


def test_expired_coupon_rejected_without_side_effects(store):
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("0"), 3)])
    store.add_coupon("OLD", type=CouponType.PERCENTAGE, value=Decimal("10"), end_date=NOW - timedelta(days=1))
    with pytest.raises(InvalidCoupon) as e:
        make_service(store).create_order(
            checkout([CheckoutLine(product.id, v1.id, 1)], coupon_code="OLD"), BOTH_ENABLED
        )
    assert e.value.reason == CouponReason.EXPIRED
    assert e.value.to_body()["detail"] == "INVALID_COUPON"
    assert store.stock[v1.id] == 3


def test_stock_and_coupon_failures_are_distinguishable(store):
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("0"), 0)])
    store.add_coupon("OFF", type=CouponType.PERCENTAGE, value=Decimal("5"), is_active=False)
    service = make_service(store)

    with pytest.raises(InvalidCoupon) as coupon_err:
        service.create_order(checkout([CheckoutLine(product.id, v1.id, 1)], coupon_code="OFF"), BOTH_ENABLED)
    with pytest.raises(InsufficientStock) as stock_err:
        service.create_order(checkout([CheckoutLine(product.id, v1.id, 1)]), BOTH_ENABLED)

    assert coupon_err.value.code != stock_err.value.code
    assert coupon_err.value.message != stock_err.value.message
    assert coupon_err.value.step == "coupon"
    assert stock_err.value.step == "inventory"


def test_limited_coupon_runs_out_after_n_redemptions(store):
    product, (v1,) = store.add_product(Decimal("100"), [(Decimal("0"), 10)])
    store.add_coupon("TWICE", type=CouponType.FIXED_AMOUNT, value=Decimal("5"), usage_limit=2)
    service = make_service(store)
    request = checkout([CheckoutLine(product.id, v1.id, 1)], coupon_code="TWICE")

    service.create_order(request, BOTH_ENABLED)
    service.create_order(request, BOTH_ENABLED)
    with pytest.raises(InvalidCoupon) as e:
        service.create_order(request, BOTH_ENABLED)

    assert e.value.reason == CouponReason.USAGE_LIMIT_REACHED
    assert store.stock[v1.id] == 8


def test_order_number_collision_is_retried(store):
    product, (v1,) = store.add_product(Decimal("100"), [(Decimal("0"), 10)])
    numbers = iter(["ZNX-A-0001", "ZNX-A-0001", "ZNX-A-0002"])
    service = make_service(store, number_generator=lambda: next(numbers))
    request = checkout([CheckoutLine(product.id, v1.id, 1)])

    first = service.create_order(request, BOTH_ENABLED)
    second = service.create_order(request, BOTH_ENABLED)

    assert (first.order_number, second.order_number) == ("ZNX-A-0001", "ZNX-A-0002")


def test_persistent_collisions_give_persistence_failure(store):
    product, (v1,) = store.add_product(Decimal("100"), [(Decimal("0"), 10)])
    service = make_service(store, number_generator=lambda: "ZNX-A-0001", max_number_attempts=3)
    request = checkout([CheckoutLine(product.id, v1.id, 1)])
    service.create_order(request, BOTH_ENABLED)

    with pytest.raises(PersistenceFailure):
        service.create_order(request, BOTH_ENABLED)

    assert store.stock[v1.id] == 9
    assert len(store.orders) == 1


def test_last_unit_race_between_threads(store):
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("0"), 1)])
    service = make_service(store)
    request = checkout([CheckoutLine(product.id, v1.id, 1)])
    barrier = threading.Barrier(8)
    placed, refused = [], []

    def buy():
        barrier.wait()
        try:
            placed.append(service.create_order(request, BOTH_ENABLED))
        except InsufficientStock as exc:
            refused.append(exc)

    threads = [threading.Thread(target=buy) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(placed) == 1
    assert len(refused) == 7
    assert store.stock[v1.id] == 0
    assert len(store.orders) == 1


class StaleCouponStore(InMemoryCouponStore):
    """Hands out the coupon as it was before an admin switched it off."""

    def __init__(self, store, stale):
        super().__init__(store)
        self.stale = stale

    def find(self, code):
        return self.stale


def test_coupon_switched_off_after_validation_is_not_redeemed(store):
    product, (v1,) = store.add_product(Decimal("1000"), [(Decimal("0"), 3)])
    active = store.add_coupon("FLASH", type=CouponType.PERCENTAGE, value=Decimal("10"))
    store.coupons["FLASH"] = replace(active, is_active=False)
    service = make_service(store)
    service.coupons = CouponValidator(StaleCouponStore(store, active))

    with pytest.raises(InvalidCoupon):
        service.create_order(checkout([CheckoutLine(product.id, v1.id, 1)], coupon_code="FLASH"), BOTH_ENABLED)

    assert store.coupons["FLASH"].used_count == 0
    assert store.orders == {}
    assert store.stock[v1.id] == 3
