"""Pydantic schemas for the orders API.

Request schemas validate and normalise incoming JSON before anything touches
the database; response schemas shape domain objects and rows into the
camelCase JSON the storefront expects. Money is a ``Decimal`` internally and
a JSON number on the wire.
"""

import re
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Optional

from django.utils import timezone
from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .domain import (
    Checkout,
    CheckoutLine,
    CouponType,
    Customer,
    Order,
    PaymentMethod,
    PaymentStatus,
    Quote,
)

Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
COUPON_CODE_RE = re.compile(r"^[A-Z0-9_-]{2,64}$")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _blank_to_none(v):
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


# ---- Requests ----
class OrderItemIn(CamelModel):
    """One cart line as submitted at checkout.

    Attributes:
        product_id: Product being bought.
        variant_id: Variant, when the product has variants.
        quantity: Units requested, at least 1.
        price: Unit price the customer saw; checked against the live price.
    """

    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int = Field(gt=0, le=1000)
    price: Optional[Money] = Field(default=None, ge=0)


class CreateOrderDTO(CamelModel):
    """Checkout submission.

    The client-computed ``subtotal``, ``shipping``, ``discount`` and ``total``
    are optional; when present they must match what the server derives.
    """

    customer_name: str = Field(min_length=1, max_length=120)
    customer_email: str = Field(max_length=254)
    customer_phone: str = Field(min_length=5, max_length=32)
    shipping_address: str = Field(min_length=1)
    city: str = Field(min_length=1, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=20)
    payment_method: PaymentMethod
    notes: Optional[str] = Field(default=None, max_length=2000)
    coupon_code: Optional[str] = None
    items: List[OrderItemIn] = Field(min_length=1)
    subtotal: Optional[Money] = None
    shipping: Optional[Money] = None
    discount: Optional[Money] = None
    total: Optional[Money] = None

    @field_validator("customer_name", "customer_phone", "shipping_address", "city", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("postal_code", "notes", "coupon_code", mode="before")
    @classmethod
    def blank_is_none(cls, v):
        return _blank_to_none(v)

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v2 = v.strip().lower()
        if not EMAIL_RE.match(v2):
            raise ValueError("Invalid email address")
        return v2

    @field_validator("coupon_code")
    @classmethod
    def upper_coupon(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v

    def to_checkout(self, user_id: Optional[int] = None) -> Checkout:
        return Checkout(
            customer=Customer(
                name=self.customer_name,
                email=self.customer_email,
                phone=self.customer_phone,
                shipping_address=self.shipping_address,
                city=self.city,
                postal_code=self.postal_code,
            ),
            payment_method=self.payment_method,
            lines=[
                CheckoutLine(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    unit_price=item.price,
                )
                for item in self.items
            ],
            coupon_code=self.coupon_code,
            notes=self.notes,
            user_id=user_id,
            quote=Quote(
                subtotal=self.subtotal,
                shipping=self.shipping,
                discount=self.discount,
                total=self.total,
            ),
        )


class ValidateCouponDTO(CamelModel):
    code: str = Field(min_length=1, max_length=64)


class StatusUpdateDTO(CamelModel):
    # Plain string: unknown values are reported by the status machine
    status: str
    payment_status: Optional[PaymentStatus] = None
    courier: Optional[str] = Field(default=None, max_length=100)
    tracking_id: Optional[str] = Field(default=None, max_length=100)


class PaymentSettingsUpdateDTO(CamelModel):
    bank_transfer_enabled: Optional[bool] = None
    cod_enabled: Optional[bool] = None
    bank_name: Optional[str] = Field(default=None, max_length=120)
    account_title: Optional[str] = Field(default=None, max_length=120)
    account_number: Optional[str] = Field(default=None, max_length=64)
    iban: Optional[str] = Field(default=None, max_length=64)
    bank_instructions: Optional[str] = None


def check_coupon_fields(type_, value, start, end):
    if type_ == CouponType.PERCENTAGE and value is not None and value > 100:
        raise ValueError("Percentage coupons cannot exceed 100")
    if start and end and end < start:
        raise ValueError("endDate must be after startDate")


def _aware(v: Optional[datetime]) -> Optional[datetime]:
    # Dates without an offset are read in the project time zone, like the DB values
    if v is not None and timezone.is_naive(v):
        return timezone.make_aware(v)
    return v


class CouponIn(CamelModel):
    code: str
    type: CouponType = CouponType.PERCENTAGE
    value: Money = Field(gt=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(default=None, ge=1)
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        v2 = v.strip().upper()
        if not COUPON_CODE_RE.match(v2):
            raise ValueError("Invalid coupon code format")
        return v2

    @field_validator("start_date", "end_date")
    @classmethod
    def aware_dates(cls, v):
        return _aware(v)

    @model_validator(mode="after")
    def check_consistency(self):
        check_coupon_fields(self.type, self.value, self.start_date, self.end_date)
        return self


class CouponPatch(CamelModel):
    """Partial coupon update.

    ``usageLimit``, ``startDate`` and ``endDate`` may be sent as null to
    clear them; ``type``, ``value`` and ``isActive`` may only be omitted.
    """

    type: Optional[CouponType] = None
    value: Optional[Money] = Field(default=None, gt=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None

    @field_validator("type", "value", "is_active", mode="before")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v

    @field_validator("start_date", "end_date")
    @classmethod
    def aware_dates(cls, v):
        return _aware(v)


class CartItemIn(CamelModel):
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int = Field(default=1, gt=0, le=1000)


class CartQuantityIn(CamelModel):
    key: str
    quantity: int


# ---- Responses ----
class OrderItemOut(CamelModel):
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int
    price: Money


class OrderReadDTO(CamelModel):
    id: uuid.UUID
    order_number: str
    status: str
    payment_method: str
    payment_status: str
    customer_name: str
    customer_email: str
    customer_phone: str
    shipping_address: str
    city: str
    postal_code: Optional[str] = None
    subtotal: Money
    shipping: Money
    discount: Money
    coupon_code: Optional[str] = None
    total: Money
    notes: Optional[str] = None
    courier: Optional[str] = None
    tracking_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            payment_method=order.payment_method.value,
            payment_status=order.payment_status.value,
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
            notes=order.notes,
            courier=order.courier,
            tracking_id=order.tracking_id,
            created_at=order.created_at,
            updated_at=order.updated_at,
            items=[
                OrderItemOut(
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    quantity=line.quantity,
                    price=line.price,
                )
                for line in order.lines
            ],
        )


class TrackingItemOut(CamelModel):
    name: str
    quantity: int


class TrackingDTO(CamelModel):
    """What an anonymous visitor may see about an order."""

    id: uuid.UUID
    order_number: str
    status: str
    created_at: datetime
    updated_at: datetime
    courier: Optional[str] = None
    tracking_id: Optional[str] = None
    shipping_address: str
    city: str
    total: Money
    items: List[TrackingItemOut] = []


class PaymentSettingsDTO(CamelModel):
    bank_transfer_enabled: bool
    cod_enabled: bool
    bank_name: Optional[str] = None
    account_title: Optional[str] = None
    account_number: Optional[str] = None
    iban: Optional[str] = None
    bank_instructions: Optional[str] = None


class CouponOut(CamelModel):
    id: uuid.UUID
    code: str
    type: CouponType
    value: Money
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    used_count: int
    is_active: bool
    created_at: Optional[datetime] = None


class CartLineOut(CamelModel):
    key: str
    product_id: str
    variant_id: Optional[str] = None
    name: str
    unit_price: Money
    quantity: int
    available: Optional[int] = None
    short: bool = False


class CartOut(CamelModel):
    items: List[CartLineOut]
    item_count: int
    total: Money
