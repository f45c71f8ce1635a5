from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import CouponPolicy
from app.models.coupon import Coupon, CouponRedemption
from app.schemas.coupon import CouponCreate
from app.services import coupons as coupons_service
from app.services.coupons import CouponValidity, RedemptionOutcome


class CouponLedger:
    """Coupon ledger bound to one database.

    Every call runs in its own short-lived session, so a ledger can be shared by
    independent request handlers. Redemption atomicity comes from the database,
    not from this object. Callers that need ``validate`` and ``redeem`` inside a
    larger transaction use :mod:`app.services.coupons` with their own session.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        policy: CouponPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.policy = policy or CouponPolicy()

    async def create(
        self,
        code: str,
        discount: int,
        expires_at: datetime,
        *,
        max_redemptions: int | None = None,
        unlimited: bool = False,
    ) -> Coupon:
        coupons_service.check_discount(discount, policy=self.policy, code=code)
        payload = CouponCreate(
            code=code,
            discount=discount,
            expires_at=expires_at,
            max_redemptions=max_redemptions,
            unlimited=unlimited,
        )
        async with self._session_factory() as session:
            return await coupons_service.create_coupon(session, payload, policy=self.policy)

    async def create_generated(
        self,
        *,
        prefix: str,
        discount: int,
        expires_at: datetime,
        length: int = 10,
        max_redemptions: int | None = None,
        unlimited: bool = False,
    ) -> Coupon:
        coupons_service.check_discount(discount, policy=self.policy)
        async with self._session_factory() as session:
            code = await coupons_service.generate_unique_code(session, prefix=prefix, policy=self.policy, length=length)
            payload = CouponCreate(
                code=code,
                discount=discount,
                expires_at=expires_at,
                max_redemptions=max_redemptions,
                unlimited=unlimited,
            )
            return await coupons_service.create_coupon(session, payload, policy=self.policy)

    async def lookup(self, code: str) -> Coupon:
        async with self._session_factory() as session:
            return await coupons_service.lookup_coupon(session, code=code)

    async def validate(self, code: str, at: datetime | None = None) -> CouponValidity:
        async with self._session_factory() as session:
            return await coupons_service.validate_coupon(session, code=code, at=at)

    async def redeem(
        self,
        code: str,
        at: datetime | None = None,
        *,
        registration_id: UUID | None = None,
        price: Decimal | None = None,
    ) -> RedemptionOutcome:
        async with self._session_factory() as session:
            return await coupons_service.redeem_coupon(
                session, code=code, at=at, registration_id=registration_id, price=price
            )

    async def deactivate(self, code: str, at: datetime | None = None) -> Coupon:
        async with self._session_factory() as session:
            return await coupons_service.deactivate_coupon(session, code=code, at=at)

    async def delete(self, code: str) -> None:
        async with self._session_factory() as session:
            await coupons_service.delete_coupon(session, code=code)

    async def list_coupons(self, *, active_only: bool = False) -> list[Coupon]:
        async with self._session_factory() as session:
            return await coupons_service.list_coupons(session, active_only=active_only)

    async def list_redemptions(self, code: str) -> list[CouponRedemption]:
        async with self._session_factory() as session:
            return await coupons_service.list_redemptions(session, code=code)

    async def void_redemption(
        self,
        code: str,
        registration_id: UUID,
        *,
        reason: str | None = None,
        at: datetime | None = None,
    ) -> CouponRedemption:
        async with self._session_factory() as session:
            return await coupons_service.void_redemption(
                session, code=code, registration_id=registration_id, reason=reason, at=at
            )
