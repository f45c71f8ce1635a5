from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CouponCreate(BaseModel):
    code: str
    discount: int
    expires_at: datetime
    # None falls back to the configured default cap.
    max_redemptions: int | None = Field(default=None, ge=1)
    unlimited: bool = False


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    discount: int
    expires_at: datetime
    max_redemptions: int | None = None
    redemption_count: int
    is_active: bool
    deactivated_at: datetime | None = None
    created_at: datetime


class CouponRedemptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    coupon_id: UUID
    registration_id: UUID | None = None
    discount: int
    redeemed_at: datetime
    voided_at: datetime | None = None
    void_reason: str | None = None


class CouponValidityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    coupon: CouponRead
    redeemable: bool
    reasons: list[str] = Field(default_factory=list)
    remaining: int | None = None
    checked_at: datetime


class RedemptionOutcomeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    discount: int
    redemption_id: UUID
    registration_id: UUID | None = None
    redeemed_at: datetime
    remaining: int | None = None
    price: Decimal | None = None
    discount_amount: Decimal | None = None
    total: Decimal | None = None
