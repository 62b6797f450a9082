"""Repository layer backed by the Django ORM.

These adapters implement the domain ports (catalogue, coupon store, order
repository) and translate between ORM rows and domain dataclasses, so the
domain layer never sees a model instance.
"""

from datetime import datetime
from typing import Optional
import uuid

from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from .coupons import normalize_code
from .domain import (
    CatalogPort,
    CouponRecord,
    CouponType,
    Customer,
    Order,
    OrderLine,
    OrderNumberTaken,
    OrderRepositoryPort,
    OrderStatus,
    PaymentConfig,
    PaymentMethod,
    PaymentStatus,
    ProductRef,
    Totals,
    VariantRef,
)
from .models import Coupon, OrderItemModel, OrderModel, PaymentSettings, Product, ProductVariant


def load_payment_config() -> PaymentConfig:
    return PaymentSettings.current().as_config()


class DjangoCatalog(CatalogPort):
    def product(self, product_id: uuid.UUID) -> Optional[ProductRef]:
        row = Product.objects.filter(pk=product_id).values("id", "price").first()
        return ProductRef(id=row["id"], price=row["price"]) if row else None

    def variant(self, variant_id: uuid.UUID) -> Optional[VariantRef]:
        row = (
            ProductVariant.objects.filter(pk=variant_id)
            .values("id", "product_id", "price_modifier")
            .first()
        )
        if row is None:
            return None
        return VariantRef(id=row["id"], product_id=row["product_id"], price_modifier=row["price_modifier"])


def coupon_to_record(obj: Coupon) -> CouponRecord:
    return CouponRecord(
        id=obj.id,
        code=obj.code,
        type=CouponType(obj.type),
        value=obj.value,
        is_active=obj.is_active,
        start_date=obj.start_date,
        end_date=obj.end_date,
        usage_limit=obj.usage_limit,
        used_count=obj.used_count,
    )


class DjangoCouponStore:
    def find(self, code: str) -> Optional[CouponRecord]:
        obj = Coupon.objects.filter(code__iexact=normalize_code(code)).first()
        return coupon_to_record(obj) if obj else None

    def redeem(self, coupon_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
        """Count one redemption if the coupon is still usable at ``now``.

        Activity, the date window and the usage limit are all part of the
        UPDATE condition, so a coupon switched off or expired after
        validation is not redeemed.
        """
        now = now or timezone.now()
        updated = (
            Coupon.objects.filter(pk=coupon_id, is_active=True)
            .filter(Q(start_date__isnull=True) | Q(start_date__lte=now))
            .filter(Q(end_date__isnull=True) | Q(end_date__gte=now))
            .filter(Q(usage_limit__isnull=True) | Q(used_count__lt=F("usage_limit")))
            .update(used_count=F("used_count") + 1, updated_at=timezone.now())
        )
        return updated == 1


class OrderRepository(OrderRepositoryPort):
    """Persists orders and their items using the Django ORM."""

    def add(self, order: Order) -> Order:
        """Insert ``order`` and its items.

        The order row goes in under a savepoint so a unique-constraint hit on
        ``order_number`` only undoes that insert and the caller can retry
        with another number inside the same transaction.

        Raises:
            OrderNumberTaken: When the order number is already used.
        """
        try:
            with transaction.atomic():
                obj = OrderModel.objects.create(
                    order_number=order.order_number,
                    user_id=order.user_id,
                    customer_name=order.customer.name,
                    customer_email=order.customer.email,
                    customer_phone=order.customer.phone,
                    shipping_address=order.customer.shipping_address,
                    city=order.customer.city,
                    postal_code=order.customer.postal_code,
                    subtotal=order.totals.subtotal,
                    shipping=order.totals.shipping,
                    discount=order.totals.discount,
                    coupon_code=order.coupon_code,
                    total=order.totals.total,
                    payment_method=order.payment_method.value,
                    payment_status=order.payment_status.value,
                    status=order.status.value,
                    notes=order.notes,
                )
        except IntegrityError as exc:
            if OrderModel.objects.filter(order_number=order.order_number).exists():
                raise OrderNumberTaken(order.order_number) from exc
            raise

        items = OrderItemModel.objects.bulk_create(
            [
                OrderItemModel(
                    order=obj,
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    quantity=line.quantity,
                    price=line.price,
                )
                for line in order.lines
            ]
        )
        return to_domain(obj, items)

    def get(self, order_id: uuid.UUID) -> Optional[Order]:
        obj = OrderModel.objects.filter(pk=order_id).first()
        return to_domain(obj) if obj else None

    def get_by_number(self, order_number: str) -> Optional[Order]:
        obj = OrderModel.objects.filter(order_number=order_number.strip().upper()).first()
        return to_domain(obj) if obj else None

    def get_for_update(self, order_id: uuid.UUID) -> Optional[Order]:
        obj = OrderModel.objects.select_for_update().filter(pk=order_id).first()
        return to_domain(obj) if obj else None

    def save_status(self, order: Order) -> Order:
        now = timezone.now()
        OrderModel.objects.filter(pk=order.id).update(
            status=order.status.value,
            payment_status=order.payment_status.value,
            courier=order.courier,
            tracking_id=order.tracking_id,
            updated_at=now,
        )
        order.updated_at = now
        return order

    def has_delivered_purchase(self, user_id: int, product_id: uuid.UUID) -> bool:
        return OrderModel.objects.filter(
            user_id=user_id,
            status=OrderStatus.DELIVERED.value,
            items__product_id=product_id,
        ).exists()


def to_domain(obj: OrderModel, items=None) -> Order:
    if items is None:
        items = list(obj.items.all())
    return Order(
        id=obj.id,
        order_number=obj.order_number,
        customer=Customer(
            name=obj.customer_name,
            email=obj.customer_email,
            phone=obj.customer_phone,
            shipping_address=obj.shipping_address,
            city=obj.city,
            postal_code=obj.postal_code,
        ),
        lines=[
            OrderLine(
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity=item.quantity,
                price=item.price,
            )
            for item in items
        ],
        totals=Totals(
            subtotal=obj.subtotal,
            shipping=obj.shipping,
            discount=obj.discount,
            total=obj.total,
        ),
        payment_method=PaymentMethod(obj.payment_method),
        payment_status=PaymentStatus(obj.payment_status),
        status=OrderStatus(obj.status),
        coupon_code=obj.coupon_code,
        notes=obj.notes,
        user_id=obj.user_id,
        courier=obj.courier,
        tracking_id=obj.tracking_id,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )
