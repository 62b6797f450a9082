"""HTTP views for the orders app.

Views are kept small: they validate the request body with a Pydantic
schema, call a domain service obtained from ``providers``, and turn the
result (or the ``OrderError`` it raised) into a DRF response. Error bodies
always look like ``{"detail": <code>, "message": <text>, "step": <step>}``
plus error-specific fields.

Order creation accepts an optional ``Idempotency-Key`` header. The first
request with a key stores its response; a retry with the same payload gets
the stored response back with ``Idempotent-Replay: true``; the same key with
another payload, or while the first request is still running, is a 409.
"""

import logging

import httpx
from django.conf import settings
from django.core.paginator import Paginator
from django.db import IntegrityError, transaction
from pydantic import ValidationError as SchemaError
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .cart import CartLine, SessionCartStore
from .domain import (
    COUPON_MESSAGES,
    Actor,
    CouponReason,
    InsufficientStock,
    NotFound,
    OrderError,
    OrderStatus,
    PersistenceFailure,
    ValidationError,
)
from .http_adapters import CircuitOpen
from .idempotency import claim, complete, release
from .models import Coupon, OrderModel, PaymentSettings, Product, ProductVariant
from .repository import OrderRepository, load_payment_config, to_domain
from .schemas import (
    CartItemIn,
    CartLineOut,
    CartOut,
    CartQuantityIn,
    CouponIn,
    CouponOut,
    CouponPatch,
    CreateOrderDTO,
    OrderReadDTO,
    PaymentSettingsDTO,
    PaymentSettingsUpdateDTO,
    StatusUpdateDTO,
    TrackingDTO,
    TrackingItemOut,
    ValidateCouponDTO,
    check_coupon_fields,
)

logger = logging.getLogger("orders")

MAX_PAGE_SIZE = 100


def _error_response(exc: OrderError) -> Response:
    return Response(exc.to_body(), status=exc.status_code)


def _validation_response(exc: SchemaError) -> Response:
    body = ValidationError().to_body()
    body["errors"] = [
        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
        for err in exc.errors(include_url=False)
    ]
    return Response(body, status=status.HTTP_400_BAD_REQUEST)


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, mode="json")


def _int_param(request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(message=f"{name} must be an integer") from None
    if value < 1:
        raise ValidationError(message=f"{name} must be positive")
    return value


class ScopedThrottleMixin:
    """Picks the throttle scope from ``throttle_scopes`` by HTTP method."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scopes: dict = {}

    def get_throttles(self):
        # DRF runs throttles in initial(), before the handler
        scope = self.throttle_scopes.get(self.request.method)
        if scope is None:
            return []
        self.throttle_scope = scope
        return [throttle() for throttle in self.throttle_classes]


# ---- Orders ----
class OrdersCollectionView(ScopedThrottleMixin, APIView):
    """List orders (admin) or place a new order (public)."""

    throttle_scopes = {"GET": "orders_list", "POST": "orders_create"}

    def get_permissions(self):
        if self.request.method == "GET":
            return [IsAdminUser()]
        return [AllowAny()]

    def get(self, request):
        try:
            page = _int_param(request, "page", 1)
            page_size = min(_int_param(request, "page_size", 20), MAX_PAGE_SIZE)
            qs = OrderModel.objects.prefetch_related("items").order_by("-created_at")
            wanted = request.query_params.get("status")
            if wanted:
                try:
                    qs = qs.filter(status=OrderStatus(wanted.upper()).value)
                except ValueError:
                    raise ValidationError("INVALID_STATUS", f"Unknown order status: {wanted!r}") from None
        except OrderError as exc:
            return _error_response(exc)

        paginator = Paginator(qs, page_size)
        page_obj = paginator.get_page(page)
        results = [_dump(OrderReadDTO.from_domain(to_domain(o))) for o in page_obj.object_list]
        return Response(
            {
                "count": paginator.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": results,
            },
            status=status.HTTP_200_OK,
        )

    def post(self, request):
        """Place an order.

        Returns:
            Response: 201 with the order and its items; 200 with the stored
            body on an idempotent replay; 400 for validation, payment,
            coupon and stock failures; 404 for unknown products; 409 for
            idempotency conflicts; 500 when the order could not be saved.
        """
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Schema validation, before any side effect
        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except SchemaError as e:
            return _validation_response(e)

        # 2) Idempotency claim
        rec = None
        if idem_key:
            try:
                rec, replay = claim(idem_key, request.data)
            except OrderError as exc:
                return _error_response(exc)
            if replay:
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Domain
        user_id = request.user.id if request.user.is_authenticated else None
        try:
            service = providers.get_order_service()
            order = service.create_order(dto.to_checkout(user_id), load_payment_config())
        except OrderError as exc:
            logger.warning(
                "checkout rejected",
                extra={"code": exc.code, "step": exc.step, **exc.extra()},
            )
            if rec is not None:
                if exc.status_code >= 500:
                    release(rec)
                else:
                    complete(rec, exc.status_code, exc.to_body())
            return _error_response(exc)
        except Exception:
            logger.exception("order creation failed")
            if rec is not None:
                release(rec)
            return _error_response(PersistenceFailure())

        # 4) Response
        body = _dump(OrderReadDTO.from_domain(order))
        if rec is not None:
            complete(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        request.session.pop(settings.CART_SESSION_KEY, None)
        return Response(body, status=status.HTTP_201_CREATED)


class AccountOrdersView(ScopedThrottleMixin, APIView):
    """Orders placed by the signed-in customer, newest first."""

    permission_classes = [IsAuthenticated]
    throttle_scopes = {"GET": "account_orders"}

    def get(self, request):
        """List the caller's own orders with their items.

        Args:
            request (Request): Authenticated DRF request.

        Returns:
            Response: 200 with a JSON array of orders; 401 when not signed in.
        """
        qs = (
            OrderModel.objects.filter(user_id=request.user.id)
            .prefetch_related("items")
            .order_by("-created_at")
        )
        return Response([_dump(OrderReadDTO.from_domain(to_domain(o))) for o in qs], status=status.HTTP_200_OK)


class RetrieveOrderView(ScopedThrottleMixin, APIView):
    permission_classes = [IsAdminUser]
    throttle_scopes = {"GET": "orders_detail"}

    def get(self, request, oid):
        """Return one order with its items.

        Args:
            request (Request): DRF request from a staff user.
            oid (UUID): Order id from the URL.

        Returns:
            Response: 200 with the order, or 404 ``NOT_FOUND``.
        """
        order = OrderRepository().get(oid)
        if order is None:
            return _error_response(NotFound("order", oid))
        return Response(_dump(OrderReadDTO.from_domain(order)), status=status.HTTP_200_OK)


class OrderStatusView(APIView):
    permission_classes = [IsAdminUser]

    def put(self, request, oid):
        """Move an order to a new status.

        Args:
            request (Request): DRF request from a staff user with
                ``{"status", "paymentStatus"?, "courier"?, "trackingId"?}``.
            oid (UUID): Order id from the URL.

        Returns:
            Response: 200 with the updated order; 400 ``INVALID_STATUS`` for
            an unknown status; 404 for an unknown order; 409
            ``INVALID_TRANSITION`` for a backward or post-terminal move.
        """
        try:
            dto = StatusUpdateDTO.model_validate(request.data)
        except SchemaError as e:
            return _validation_response(e)

        actor = Actor(id=request.user.id, is_admin=request.user.is_staff)
        try:
            order = providers.get_status_service().set_status(
                oid,
                dto.status,
                actor,
                payment_status=dto.payment_status,
                courier=dto.courier,
                tracking_id=dto.tracking_id,
            )
        except OrderError as exc:
            logger.warning(
                "status change rejected",
                extra={"order_id": str(oid), "code": exc.code, "requested": dto.status},
            )
            return _error_response(exc)
        return Response(_dump(OrderReadDTO.from_domain(order)), status=status.HTTP_200_OK)


# ---- Checkout helpers ----
class ValidateCouponView(ScopedThrottleMixin, APIView):
    """Tell the checkout page whether a coupon code can be applied."""

    permission_classes = [AllowAny]
    throttle_scopes = {"POST": "coupons_validate"}

    def post(self, request):
        """Check a coupon code without using it up.

        Returns:
            Response: 200 ``{"valid": true, "coupon": {...}}``; otherwise
            ``{"valid": false, "error": <reason>}`` with 404 for an unknown
            code and 400 for every other reason.
        """
        try:
            dto = ValidateCouponDTO.model_validate(request.data)
        except SchemaError as e:
            return _validation_response(e)

        check = providers.get_coupon_validator().validate(dto.code)
        if not check.valid:
            code = status.HTTP_404_NOT_FOUND if check.reason == CouponReason.NOT_FOUND else status.HTTP_400_BAD_REQUEST
            return Response(
                {"valid": False, "error": check.reason.value, "message": COUPON_MESSAGES[check.reason]},
                status=code,
            )
        coupon = check.coupon
        return Response(
            {
                "valid": True,
                "coupon": {"code": coupon.code, "type": coupon.type.value, "value": float(coupon.value)},
            },
            status=status.HTTP_200_OK,
        )


class TrackingView(ScopedThrottleMixin, APIView):
    """Public order tracking by order number, without customer contact data."""

    permission_classes = [AllowAny]
    throttle_scopes = {"GET": "tracking"}

    def get(self, request):
        """Look up an order by its number.

        Args:
            request (Request): DRF request with ``?id=<orderNumber>``;
                matching is case-insensitive.

        Returns:
            Response: 200 with status, shipping and item names; 400 when
            ``id`` is missing; 404 for an unknown number.
        """
        number = (request.query_params.get("id") or "").strip().upper()
        if not number:
            return _error_response(ValidationError(message="Order number is required"))
        obj = (
            OrderModel.objects.filter(order_number=number)
            .prefetch_related("items__product")
            .first()
        )
        if obj is None:
            return _error_response(NotFound("order", number))
        dto = TrackingDTO(
            id=obj.id,
            order_number=obj.order_number,
            status=obj.status,
            created_at=obj.created_at,
            updated_at=obj.updated_at,
            courier=obj.courier,
            tracking_id=obj.tracking_id,
            shipping_address=obj.shipping_address,
            city=obj.city,
            total=obj.total,
            items=[TrackingItemOut(name=item.product.name, quantity=item.quantity) for item in obj.items.all()],
        )
        return Response(_dump(dto), status=status.HTTP_200_OK)


def _payment_settings_dto(obj: PaymentSettings) -> PaymentSettingsDTO:
    return PaymentSettingsDTO(
        bank_transfer_enabled=obj.bank_transfer_enabled,
        cod_enabled=obj.cod_enabled,
        bank_name=obj.bank_name,
        account_title=obj.account_title,
        account_number=obj.account_number,
        iban=obj.iban,
        bank_instructions=obj.bank_instructions,
    )


class PaymentSettingsView(APIView):
    permission_classes = [AllowAny]

    def get(self, request):
        return Response(_dump(_payment_settings_dto(PaymentSettings.current())))


class AdminPaymentSettingsView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request):
        return Response(_dump(_payment_settings_dto(PaymentSettings.current())))

    def put(self, request):
        """Update payment toggles and bank details.

        Only the fields present in the body change; a null toggle is
        ignored.

        Returns:
            Response: 200 with the full settings.
        """
        try:
            dto = PaymentSettingsUpdateDTO.model_validate(request.data)
        except SchemaError as e:
            return _validation_response(e)
        obj = PaymentSettings.current()
        changes = dto.model_dump(exclude_unset=True)
        for name, value in changes.items():
            if name in ("bank_transfer_enabled", "cod_enabled") and value is None:
                continue
            setattr(obj, name, value)
        obj.save()
        logger.info("payment settings updated", extra={"fields": sorted(changes), "actor_id": request.user.id})
        return Response(_dump(_payment_settings_dto(obj)))


# ---- Coupon administration ----
def _coupon_dto(obj: Coupon) -> CouponOut:
    return CouponOut(
        id=obj.id,
        code=obj.code,
        type=obj.type,
        value=obj.value,
        start_date=obj.start_date,
        end_date=obj.end_date,
        usage_limit=obj.usage_limit,
        used_count=obj.used_count,
        is_active=obj.is_active,
        created_at=obj.created_at,
    )


class AdminCouponsView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request):
        return Response([_dump(_coupon_dto(c)) for c in Coupon.objects.order_by("-created_at")])

    def post(self, request):
        """Create a coupon.

        Returns:
            Response: 201 with the coupon; 400 ``VALIDATION_ERROR`` for bad
            fields or ``DUPLICATE_CODE`` when the code exists.
        """
        try:
            dto = CouponIn.model_validate(request.data)
        except SchemaError as e:
            return _validation_response(e)
        try:
            with transaction.atomic():
                obj = Coupon.objects.create(
                    code=dto.code,
                    type=dto.type.value,
                    value=dto.value,
                    start_date=dto.start_date,
                    end_date=dto.end_date,
                    usage_limit=dto.usage_limit,
                    is_active=dto.is_active,
                )
        except IntegrityError:
            return _error_response(ValidationError("DUPLICATE_CODE", "Coupon code already exists"))
        logger.info("coupon created", extra={"coupon_code": obj.code})
        return Response(_dump(_coupon_dto(obj)), status=status.HTTP_201_CREATED)


class AdminCouponDetailView(APIView):
    permission_classes = [IsAdminUser]

    def patch(self, request, cid):
        """Partially update a coupon.

        Args:
            request (Request): DRF request with any of the coupon fields.
            cid (UUID): Coupon id from the URL.

        Returns:
            Response: 200 with the coupon; 400 when the result would be
            inconsistent (percentage over 100, end before start, limit
            below redemptions); 404 for an unknown coupon.
        """
        obj = Coupon.objects.filter(pk=cid).first()
        if obj is None:
            return _error_response(NotFound("coupon", cid))
        try:
            dto = CouponPatch.model_validate(request.data)
        except SchemaError as e:
            return _validation_response(e)

        changes = dto.model_dump(exclude_unset=True)
        for name, value in changes.items():
            setattr(obj, name, value.value if name == "type" and value is not None else value)
        try:
            check_coupon_fields(obj.type, obj.value, obj.start_date, obj.end_date)
        except ValueError as e:
            return _error_response(ValidationError(message=str(e)))
        if obj.usage_limit is not None and obj.usage_limit < obj.used_count:
            return _error_response(
                ValidationError(message="usageLimit cannot be lower than the number of redemptions")
            )
        obj.save()
        return Response(_dump(_coupon_dto(obj)))

    def delete(self, request, cid):
        deleted, _ = Coupon.objects.filter(pk=cid).delete()
        if not deleted:
            return _error_response(NotFound("coupon", cid))
        return Response({"success": True})


# ---- Cart ----
class CartView(ScopedThrottleMixin, APIView):
    """The visitor's cart, kept in the session.

    Stock figures in the cart are a snapshot for display; checkout reserves
    stock itself.
    """

    permission_classes = [AllowAny]
    throttle_scopes = {"GET": "cart", "POST": "cart", "PATCH": "cart", "DELETE": "cart"}

    def _store(self, request) -> SessionCartStore:
        return SessionCartStore(request.session, settings.CART_SESSION_KEY)

    def _render(self, cart, code=status.HTTP_200_OK) -> Response:
        out = CartOut(
            items=[
                CartLineOut(
                    key=line.key,
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    name=line.name,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                    available=line.available,
                    short=line.short,
                )
                for line in cart.lines
            ],
            item_count=cart.item_count(),
            total=cart.total(),
        )
        return Response(_dump(out), status=code)

    def get(self, request):
        """Return the cart.

        Args:
            request (Request): DRF request; ``?refresh=1`` re-reads stock for
                every line and flags lines that no longer fit.

        Returns:
            Response: 200 with the cart. A stock-service failure during a
            refresh keeps the previous snapshot.
        """
        store = self._store(request)
        cart = store.load()
        if request.query_params.get("refresh") in ("1", "true"):
            try:
                cart.refresh(providers.get_stock_source())
            except (CircuitOpen, httpx.HTTPError) as exc:
                logger.warning("cart refresh skipped", extra={"error": str(exc)})
            else:
                store.save(cart)
        return self._render(cart)

    def post(self, request):
        """Add a product (and variant) to the cart at the live price.

        Returns:
            Response: 201 with the cart; 400 ``INSUFFICIENT_STOCK`` when the
            line would exceed current stock; 404 for an unknown product or
            variant.
        """
        try:
            dto = CartItemIn.model_validate(request.data)
        except SchemaError as e:
            return _validation_response(e)

        product = Product.objects.filter(pk=dto.product_id).first()
        if product is None:
            return _error_response(NotFound("product", dto.product_id))
        price = product.price
        available = None
        if dto.variant_id is not None:
            variant = ProductVariant.objects.filter(pk=dto.variant_id, product=product).first()
            if variant is None:
                return _error_response(NotFound("variant", dto.variant_id))
            price += variant.price_modifier
            available = variant.stock

        store = self._store(request)
        cart = store.load()
        line = CartLine(
            product_id=str(product.id),
            variant_id=str(dto.variant_id) if dto.variant_id else None,
            name=product.name,
            unit_price=price,
            quantity=dto.quantity,
            available=available,
        )
        if not cart.add(line):
            return _error_response(InsufficientStock(dto.variant_id))
        store.save(cart)
        return self._render(cart, status.HTTP_201_CREATED)

    def patch(self, request):
        """Set a line's quantity; zero or less removes the line."""
        try:
            dto = CartQuantityIn.model_validate(request.data)
        except SchemaError as e:
            return _validation_response(e)

        store = self._store(request)
        cart = store.load()
        line = cart.find(dto.key)
        if line is None:
            return _error_response(NotFound("cart item", dto.key))
        if not cart.update_quantity(dto.key, dto.quantity):
            return _error_response(InsufficientStock(line.variant_id))
        store.save(cart)
        return self._render(cart)

    def delete(self, request):
        """Remove the line given by ``?key=``, or empty the cart."""
        store = self._store(request)
        cart = store.load()
        key = request.query_params.get("key")
        if key:
            cart.remove(key)
        else:
            cart.clear()
        store.save(cart)
        return self._render(cart)


# ---- Reviews ----
class CanReviewView(APIView):
    """Whether the signed-in customer has a delivered order with this product."""

    permission_classes = [AllowAny]

    def get(self, request, product_id):
        """Report whether the caller may review ``product_id``.

        Returns:
            Response: 200 with ``{"canReview", "reason", "message"}``, where
            ``reason`` is ``not_logged_in``, ``no_purchase`` or ``eligible``.
        """
        if not request.user.is_authenticated:
            return Response(
                {"canReview": False, "reason": "not_logged_in", "message": "Please sign in to leave a review"}
            )
        if not OrderRepository().has_delivered_purchase(request.user.id, product_id):
            return Response(
                {"canReview": False, "reason": "no_purchase", "message": "Purchase this product to leave a review"}
            )
        return Response({"canReview": True, "reason": "eligible", "message": "You can review this product"})

