from __future__ import annotations

from app.schemas.error import ErrorResponse


class CouponError(Exception):
    """Base class for expected coupon ledger outcomes."""

    code = "coupon_error"
    default_detail = "Coupon operation failed"

    def __init__(self, detail: str | None = None, *, coupon_code: str | None = None) -> None:
        self.detail = detail or self.default_detail
        self.coupon_code = coupon_code
        super().__init__(self.detail)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(detail=self.detail, code=self.code, coupon_code=self.coupon_code)


class InvalidCode(CouponError):
    code = "invalid_code"
    default_detail = "Invalid coupon code"


class InvalidDiscount(CouponError):
    code = "invalid_discount"
    default_detail = "Discount is out of bounds"


class DuplicateCode(CouponError):
    code = "duplicate_code"
    default_detail = "Coupon code already exists"


class NotFound(CouponError):
    code = "coupon_not_found"
    default_detail = "Coupon not found"


class Expired(CouponError):
    code = "coupon_expired"
    default_detail = "Coupon has expired"


class AlreadyRedeemed(CouponError):
    code = "already_redeemed"
    default_detail = "Coupon has already been redeemed"


class CouponInactive(CouponError):
    code = "coupon_inactive"
    default_detail = "Coupon is not active"
