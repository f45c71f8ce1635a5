from app.db.base import Base  # noqa: F401
from app.models.coupon import Coupon, CouponRedemption  # noqa: F401

__all__ = [
    "Base",
    "Coupon",
    "CouponRedemption",
]
