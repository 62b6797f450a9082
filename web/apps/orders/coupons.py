"""Coupon validation.

``evaluate`` holds the rules and their precedence; ``CouponValidator`` wraps
a coupon store (ORM-backed in production, in-memory in tests) and is the
``CouponPort`` the order service talks to. Validation never records a
redemption: that is ``redeem``, a conditional increment the order service
runs inside its transaction.
"""

from datetime import datetime, timezone
from typing import Optional, Protocol
import uuid

from .domain import CouponCheck, CouponReason, CouponRecord


class CouponStorePort(Protocol):
    def find(self, code: str) -> Optional[CouponRecord]:
        raise NotImplementedError()

    def redeem(self, coupon_id: uuid.UUID, now: datetime) -> bool:
        raise NotImplementedError()


def normalize_code(code: str) -> str:
    return code.strip().upper()


def evaluate(coupon: Optional[CouponRecord], now: datetime) -> Optional[CouponReason]:
    """Return the first rule ``coupon`` breaks at ``now``, or None if usable."""
    if coupon is None:
        return CouponReason.NOT_FOUND
    if not coupon.is_active:
        return CouponReason.INACTIVE
    if coupon.start_date is not None and now < coupon.start_date:
        return CouponReason.NOT_YET_ACTIVE
    if coupon.end_date is not None and now > coupon.end_date:
        return CouponReason.EXPIRED
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        return CouponReason.USAGE_LIMIT_REACHED
    return None


class CouponValidator:
    def __init__(self, store: CouponStorePort):
        self.store = store

    def validate(self, code: str, now: Optional[datetime] = None) -> CouponCheck:
        now = now or datetime.now(timezone.utc)
        code = normalize_code(code or "")
        coupon = self.store.find(code) if code else None
        reason = evaluate(coupon, now)
        if reason is not None:
            return CouponCheck(reason=reason)
        return CouponCheck(coupon=coupon)

    def redeem(self, coupon_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
        return self.store.redeem(coupon_id, now or datetime.now(timezone.utc))
