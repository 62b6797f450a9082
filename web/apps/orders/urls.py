from django.urls import path

from .views import (
    AccountOrdersView,
    AdminCouponDetailView,
    AdminCouponsView,
    AdminPaymentSettingsView,
    CanReviewView,
    CartView,
    OrdersCollectionView,
    OrderStatusView,
    PaymentSettingsView,
    RetrieveOrderView,
    TrackingView,
    ValidateCouponView,
)

app_name = "orders"

urlpatterns = [
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("orders/<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("orders/<uuid:oid>/status/", OrderStatusView.as_view(), name="orders-status"),
    path("account/orders/", AccountOrdersView.as_view(), name="account-orders"),
    path("checkout/validate-coupon/", ValidateCouponView.as_view(), name="validate-coupon"),
    path("tracking/", TrackingView.as_view(), name="tracking"),
    path("payment-settings/", PaymentSettingsView.as_view(), name="payment-settings"),
    path("admin/payment-settings/", AdminPaymentSettingsView.as_view(), name="admin-payment-settings"),
    path("admin/coupons/", AdminCouponsView.as_view(), name="admin-coupons"),
    path("admin/coupons/<uuid:cid>/", AdminCouponDetailView.as_view(), name="admin-coupon-detail"),
    path("cart/", CartView.as_view(), name="cart"),
    path("reviews/can-review/<uuid:product_id>/", CanReviewView.as_view(), name="can-review"),
]
