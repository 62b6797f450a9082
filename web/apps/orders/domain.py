"""Domain models, ports and services for checkout and the order lifecycle.

This module contains the dataclasses used as DTOs for checkouts and orders,
the error taxonomy raised by the order pipeline, protocol definitions (ports)
for the catalogue, coupons, the inventory ledger and order persistence, and
the two domain services:

- ``OrderService`` turns a checkout into a persisted order. Everything that
  writes (coupon redemption, order and item insertion, stock reservation)
  runs inside one unit of work supplied by the caller, so a failure at any
  step leaves no trace.
- ``OrderStatusService`` applies administrative status transitions.

Nothing here imports Django; the ORM-backed adapters live in
``repository.py`` and ``ledger.py``.
"""

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Callable, ContextManager, Dict, List, Optional, Protocol, Sequence
import uuid

logger = logging.getLogger("orders")

CENTS = Decimal("0.01")
ZERO = Decimal("0")


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle states of a persisted order."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


# Forward path; CANCELLED sits outside it.
LIFECYCLE = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)


class PaymentMethod(str, Enum):
    BANK_TRANSFER = "BANK_TRANSFER"
    COD = "COD"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class CouponType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class CouponReason(str, Enum):
    """Why a coupon was rejected, listed in evaluation precedence."""

    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_YET_ACTIVE = "not_yet_active"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"


COUPON_MESSAGES = {
    CouponReason.NOT_FOUND: "Invalid coupon code",
    CouponReason.INACTIVE: "Coupon is inactive",
    CouponReason.NOT_YET_ACTIVE: "Coupon not yet active",
    CouponReason.EXPIRED: "Coupon expired",
    CouponReason.USAGE_LIMIT_REACHED: "Coupon usage limit reached",
}

PAYMENT_METHOD_LABELS = {
    PaymentMethod.BANK_TRANSFER: "Bank transfer",
    PaymentMethod.COD: "Cash on delivery",
}


# ---- Errors ----
class OrderError(ValueError):
    """Base class for every failure the order pipeline reports to callers.

    ``str(exc)`` is the machine-readable code. ``status_code`` is the HTTP
    status the API maps the error to, ``step`` names the pipeline stage that
    failed and ``message`` is safe to show to the customer.
    """

    code = "ORDER_ERROR"
    status_code = 400
    step = "order"
    message = "The order could not be processed."

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None):
        if code:
            self.code = code
        if message:
            self.message = message
        super().__init__(self.code)

    def extra(self) -> dict:
        return {}

    def to_body(self) -> dict:
        body = {"detail": self.code, "message": self.message, "step": self.step}
        body.update(self.extra())
        return body


class ValidationError(OrderError):
    code = "VALIDATION_ERROR"
    step = "validation"
    message = "The request is invalid."


class PaymentMethodUnavailable(OrderError):
    code = "PAYMENT_METHOD_UNAVAILABLE"
    step = "payment"

    def __init__(self, method: PaymentMethod):
        self.method = PaymentMethod(method)
        super().__init__(message=f"{PAYMENT_METHOD_LABELS[self.method]} is not available")

    def extra(self) -> dict:
        return {"paymentMethod": self.method.value}


class InvalidCoupon(OrderError):
    code = "INVALID_COUPON"
    step = "coupon"

    def __init__(self, reason: CouponReason):
        self.reason = CouponReason(reason)
        super().__init__(message=f"{COUPON_MESSAGES[self.reason]}. Remove the coupon to continue.")

    def extra(self) -> dict:
        return {"reason": self.reason.value}


class InsufficientStock(OrderError):
    code = "INSUFFICIENT_STOCK"
    step = "inventory"
    message = "Not enough stock for an item in your cart. Reduce the quantity and try again."

    def __init__(self, variant_id):
        self.variant_id = variant_id
        super().__init__()

    def extra(self) -> dict:
        return {"variantId": str(self.variant_id)}


class NotFound(OrderError):
    code = "NOT_FOUND"
    status_code = 404
    step = "lookup"
    message = "Resource not found."

    def __init__(self, resource: str, resource_id=None):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(message=f"{resource.capitalize()} not found")

    def extra(self) -> dict:
        body = {"resource": self.resource}
        if self.resource_id is not None:
            body["id"] = str(self.resource_id)
        return body


class Unauthorized(OrderError):
    code = "UNAUTHORIZED"
    status_code = 403
    step = "authorization"
    message = "Only administrators may change order status."


class InvalidTransition(OrderError):
    code = "INVALID_TRANSITION"
    status_code = 409
    step = "status"

    def __init__(self, current: OrderStatus, requested: OrderStatus):
        self.current = current
        self.requested = requested
        super().__init__(message=f"Cannot move an order from {current.value} to {requested.value}")

    def extra(self) -> dict:
        return {"current": self.current.value, "requested": self.requested.value}


class PersistenceFailure(OrderError):
    code = "PERSISTENCE_FAILURE"
    status_code = 500
    step = "persistence"
    message = "The order could not be saved. Please retry."


class OrderNumberTaken(Exception):
    """Raised by repositories when the unique order-number constraint fires."""

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(order_number)


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class CheckoutLine:
    """One requested cart line as submitted at checkout.

    ``unit_price`` is the price the customer saw; it is compared against the
    live price but never trusted for the order itself.
    """

    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID]
    quantity: int
    unit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class Customer:
    name: str
    email: str
    phone: str
    shipping_address: str
    city: str
    postal_code: Optional[str] = None


@dataclass(frozen=True)
class Quote:
    """Totals the client computed; every field is optional."""

    subtotal: Optional[Decimal] = None
    shipping: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    total: Optional[Decimal] = None


@dataclass(frozen=True)
class Checkout:
    customer: Customer
    payment_method: PaymentMethod
    lines: Sequence[CheckoutLine]
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    user_id: Optional[int] = None
    quote: Quote = field(default_factory=Quote)


@dataclass(frozen=True)
class PaymentConfig:
    """Payment-method toggles, loaded once per request and passed explicitly."""

    bank_transfer_enabled: bool = True
    cod_enabled: bool = True

    def allows(self, method: PaymentMethod) -> bool:
        if method == PaymentMethod.BANK_TRANSFER:
            return self.bank_transfer_enabled
        if method == PaymentMethod.COD:
            return self.cod_enabled
        return False


@dataclass(frozen=True)
class ShippingPolicy:
    """Flat shipping fee waived once the subtotal reaches ``free_threshold``."""

    fee: Decimal
    free_threshold: Decimal

    def quote(self, subtotal: Decimal) -> Decimal:
        return ZERO if subtotal >= self.free_threshold else self.fee


@dataclass(frozen=True)
class ProductRef:
    id: uuid.UUID
    price: Decimal


@dataclass(frozen=True)
class VariantRef:
    id: uuid.UUID
    product_id: uuid.UUID
    price_modifier: Decimal = ZERO


@dataclass(frozen=True)
class CouponRecord:
    id: uuid.UUID
    code: str
    type: CouponType
    value: Decimal
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    used_count: int = 0


@dataclass(frozen=True)
class CouponCheck:
    """Outcome of a coupon validation: ``coupon`` when valid, else ``reason``."""

    coupon: Optional[CouponRecord] = None
    reason: Optional[CouponReason] = None

    @property
    def valid(self) -> bool:
        return self.coupon is not None and self.reason is None


@dataclass(frozen=True)
class OrderLine:
    """A persisted line item; ``price`` is captured at purchase time."""

    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID]
    quantity: int
    price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal


@dataclass
class Order:
    """Container for order data.

    Line items and totals never change after creation; ``status``,
    ``payment_status`` and the courier fields are the only mutable parts.
    """

    id: Optional[uuid.UUID]
    order_number: str
    customer: Customer
    lines: List[OrderLine]
    totals: Totals
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status: OrderStatus = OrderStatus.PENDING
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    user_id: Optional[int] = None
    courier: Optional[str] = None
    tracking_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Actor:
    """Whoever triggers a status transition."""

    id: Optional[int]
    is_admin: bool


# ---- Ports (DIP) ----
class CatalogPort(Protocol):
    """Read access to live product and variant prices."""

    def product(self, product_id: uuid.UUID) -> Optional[ProductRef]:
        raise NotImplementedError()

    def variant(self, variant_id: uuid.UUID) -> Optional[VariantRef]:
        raise NotImplementedError()


class CouponPort(Protocol):
    def validate(self, code: str, now: datetime) -> CouponCheck:
        raise NotImplementedError()

    def redeem(self, coupon_id: uuid.UUID, now: datetime) -> bool:
        """Record one redemption; False when the coupon is no longer usable at ``now``."""
        raise NotImplementedError()


class InventoryPort(Protocol):
    """Port describing the stock ledger used by the domain.

    ``try_reserve`` must be a single conditional write: it debits the stock
    only when enough is left and reports whether it did.
    """

    def try_reserve(self, variant_id: uuid.UUID, quantity: int) -> bool:
        raise NotImplementedError()

    def release(self, variant_id: uuid.UUID, quantity: int) -> None:
        raise NotImplementedError()


class OrderRepositoryPort(Protocol):
    def add(self, order: Order) -> Order:
        """Insert the order with its items.

        Raises:
            OrderNumberTaken: If ``order.order_number`` already exists.
        """
        raise NotImplementedError()

    def get_for_update(self, order_id: uuid.UUID) -> Optional[Order]:
        raise NotImplementedError()

    def save_status(self, order: Order) -> Order:
        raise NotImplementedError()


# ---- Pricing ----
def compute_discount(coupon: Optional[CouponRecord], subtotal: Decimal) -> Decimal:
    """Discount for ``coupon`` on ``subtotal``, never more than the subtotal."""
    if coupon is None:
        return ZERO
    if coupon.type == CouponType.PERCENTAGE:
        raw = subtotal * coupon.value / Decimal(100)
    else:
        raw = coupon.value
    return min(raw, subtotal).quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_totals(lines: Sequence[OrderLine], shipping: ShippingPolicy,
                   coupon: Optional[CouponRecord] = None) -> Totals:
    subtotal = sum((line.line_total for line in lines), ZERO).quantize(CENTS)
    shipping_cost = shipping.quote(subtotal).quantize(CENTS)
    discount = compute_discount(coupon, subtotal)
    return Totals(
        subtotal=subtotal,
        shipping=shipping_cost,
        discount=discount,
        total=subtotal + shipping_cost - discount,
    )


def reservation_plan(lines: Sequence[OrderLine]) -> List[tuple]:
    """Quantities per variant, in a stable order to keep lock order consistent."""
    wanted: Dict[uuid.UUID, int] = {}
    for line in lines:
        if line.variant_id is not None:
            wanted[line.variant_id] = wanted.get(line.variant_id, 0) + line.quantity
    return sorted(wanted.items(), key=lambda kv: str(kv[0]))


# ---- Status rules ----
def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError("INVALID_STATUS", f"Unknown order status: {value!r}") from None


def ensure_transition(current: OrderStatus, requested: OrderStatus) -> None:
    """Allow forward moves along ``LIFECYCLE`` and cancellation of open orders."""
    if current.is_terminal:
        raise InvalidTransition(current, requested)
    if requested == OrderStatus.CANCELLED:
        return
    if LIFECYCLE.index(requested) < LIFECYCLE.index(current):
        raise InvalidTransition(current, requested)


def _cents(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Domain services ----
class OrderService:
    """Domain service responsible for placing orders.

    Steps, in order: payment-method check, coupon validation, pricing from
    live catalogue prices, shipping and discount, order-number allocation,
    persistence of the order with its items and stock reservation. The
    writing steps share one unit of work; any exception raised inside it
    rolls every write back.
    """

    def __init__(
        self,
        catalog: CatalogPort,
        coupons: CouponPort,
        inventory: InventoryPort,
        orders: OrderRepositoryPort,
        number_generator: Callable[[], str],
        shipping: ShippingPolicy,
        unit_of_work: Callable[[], ContextManager] = nullcontext,
        max_number_attempts: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.catalog = catalog
        self.coupons = coupons
        self.inventory = inventory
        self.orders = orders
        self.number_generator = number_generator
        self.shipping = shipping
        self.unit_of_work = unit_of_work
        self.max_number_attempts = max_number_attempts
        self.clock = clock

    def create_order(self, checkout: Checkout, payment_config: PaymentConfig,
                     now: Optional[datetime] = None) -> Order:
        """Place an order for ``checkout``.

        Args:
            checkout: Validated checkout request.
            payment_config: Payment toggles read for this request.
            now: Evaluation time for coupon windows; defaults to the clock.

        Returns:
            The persisted Order, with id and order number set.

        Raises:
            ValidationError: Empty cart, or client prices/totals that do not
                match the live ones.
            PaymentMethodUnavailable: The chosen method is switched off.
            InvalidCoupon: The coupon failed validation or ran out of uses.
            NotFound: Unknown product or variant.
            InsufficientStock: A variant cannot cover the quantity.
            PersistenceFailure: No unique order number could be allocated.
        """
        if not checkout.lines:
            raise ValidationError("EMPTY_ORDER", "Your cart is empty.")

        # 1) Payment method
        if not payment_config.allows(checkout.payment_method):
            raise PaymentMethodUnavailable(checkout.payment_method)

        # 2) Coupon
        now = now or self.clock()
        coupon = None
        if checkout.coupon_code:
            check = self.coupons.validate(checkout.coupon_code, now)
            if not check.valid:
                raise InvalidCoupon(check.reason)
            coupon = check.coupon

        # 3-5) Prices and totals
        lines = self._price_lines(checkout.lines)
        totals = compute_totals(lines, self.shipping, coupon)
        self._check_quote(checkout.quote, totals)

        order = Order(
            id=None,
            order_number="",
            customer=checkout.customer,
            lines=lines,
            totals=totals,
            payment_method=PaymentMethod(checkout.payment_method),
            coupon_code=coupon.code if coupon else None,
            notes=checkout.notes,
            user_id=checkout.user_id,
        )

        # 6-8) Redeem, persist, reserve: all or nothing
        with self.unit_of_work():
            if coupon is not None and not self.coupons.redeem(coupon.id, now):
                # changed since validation; report what is wrong with it now
                recheck = self.coupons.validate(coupon.code, now)
                raise InvalidCoupon(recheck.reason or CouponReason.USAGE_LIMIT_REACHED)
            placed = self._persist(order)
            for variant_id, quantity in reservation_plan(lines):
                if not self.inventory.try_reserve(variant_id, quantity):
                    logger.warning(
                        "stock reservation refused",
                        extra={"variant_id": str(variant_id), "quantity": quantity},
                    )
                    raise InsufficientStock(variant_id)

        logger.info(
            "order placed",
            extra={
                "order_number": placed.order_number,
                "total": str(placed.totals.total),
                "payment_method": placed.payment_method.value,
                "coupon_code": placed.coupon_code,
            },
        )
        return placed

    def _price_lines(self, requested: Sequence[CheckoutLine]) -> List[OrderLine]:
        lines = []
        for line in requested:
            if line.quantity <= 0:
                raise ValidationError(message="Quantities must be positive.")
            product = self.catalog.product(line.product_id)
            if product is None:
                raise NotFound("product", line.product_id)
            modifier = ZERO
            if line.variant_id is not None:
                variant = self.catalog.variant(line.variant_id)
                if variant is None or variant.product_id != product.id:
                    raise NotFound("variant", line.variant_id)
                modifier = variant.price_modifier
            price = (product.price + modifier).quantize(CENTS)
            if line.unit_price is not None and _cents(line.unit_price) != price:
                raise ValidationError(
                    "PRICE_MISMATCH",
                    "The price of an item in your cart has changed. Review your cart and try again.",
                )
            lines.append(OrderLine(line.product_id, line.variant_id, line.quantity, price))
        return lines

    def _check_quote(self, quote: Quote, totals: Totals) -> None:
        for name in ("subtotal", "shipping", "discount", "total"):
            quoted = getattr(quote, name)
            # clients compute in floating point and post unrounded figures
            if quoted is not None and _cents(quoted) != getattr(totals, name):
                raise ValidationError(
                    "TOTALS_MISMATCH",
                    "Your order totals are out of date. Review your cart and try again.",
                )

    def _persist(self, order: Order) -> Order:
        for attempt in range(1, self.max_number_attempts + 1):
            order.order_number = self.number_generator()
            try:
                return self.orders.add(order)
            except OrderNumberTaken:
                logger.warning(
                    "order number collision",
                    extra={"order_number": order.order_number, "attempt": attempt},
                )
        raise PersistenceFailure(message="Could not allocate a unique order number. Please retry.")


class OrderStatusService:
    """Applies administrative status changes to persisted orders.

    The order row is loaded for update inside the unit of work, so two
    admins changing the same order are serialized. Cancelling releases the
    stock the order reserved.
    """

    def __init__(self, orders: OrderRepositoryPort, inventory: InventoryPort,
                 unit_of_work: Callable[[], ContextManager] = nullcontext):
        self.orders = orders
        self.inventory = inventory
        self.unit_of_work = unit_of_work

    def set_status(self, order_id: uuid.UUID, new_status, actor: Actor,
                   payment_status: Optional[PaymentStatus] = None,
                   courier: Optional[str] = None,
                   tracking_id: Optional[str] = None) -> Order:
        if not actor.is_admin:
            raise Unauthorized()
        requested = parse_status(new_status)

        with self.unit_of_work():
            order = self.orders.get_for_update(order_id)
            if order is None:
                raise NotFound("order", order_id)
            previous = order.status
            if requested != previous:
                ensure_transition(previous, requested)
                if requested == OrderStatus.CANCELLED:
                    for variant_id, quantity in reservation_plan(order.lines):
                        self.inventory.release(variant_id, quantity)
                order.status = requested
            if payment_status is not None:
                order.payment_status = PaymentStatus(payment_status)
            if courier is not None:
                order.courier = courier
            if tracking_id is not None:
                order.tracking_id = tracking_id
            order = self.orders.save_status(order)

        logger.info(
            "order status changed",
            extra={
                "order_number": order.order_number,
                "from_status": previous.value,
                "to_status": order.status.value,
                "actor_id": actor.id,
            },
        )
        return order
