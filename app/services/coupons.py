from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
import secrets
import string
from uuid import UUID

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.core import metrics
from app.core.config import CouponPolicy
from app.core.errors import (
    AlreadyRedeemed,
    CouponError,
    CouponInactive,
    DuplicateCode,
    Expired,
    InvalidCode,
    InvalidDiscount,
    NotFound,
)
from app.models.coupon import Coupon, CouponRedemption
from app.schemas.coupon import CouponCreate
from app.services import pricing

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
_CODE_GENERATION_ATTEMPTS = 10


def _now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _resolve_at(at: datetime | None) -> datetime:
    return as_utc(at) if at is not None else _now()


def _reject(exc: CouponError) -> CouponError:
    metrics.record("rejected", reason=exc.code)
    logger.info("coupon_rejected", extra={"coupon_code": exc.coupon_code, "outcome": exc.code})
    return exc


def check_code(code: str | None, *, policy: CouponPolicy) -> str:
    raw = code or ""
    if not raw.strip():
        raise _reject(InvalidCode("Coupon code is required"))
    if raw != raw.strip():
        raise _reject(InvalidCode("Coupon code must not start or end with whitespace", coupon_code=raw))
    if len(raw) > policy.code_max_length:
        raise _reject(
            InvalidCode(f"Coupon code must be at most {policy.code_max_length} characters", coupon_code=raw)
        )
    return raw


def check_discount(discount: int, *, policy: CouponPolicy, code: str | None = None) -> int:
    if isinstance(discount, bool) or not isinstance(discount, int):
        raise _reject(InvalidDiscount("Discount must be a whole percentage", coupon_code=code))
    if discount < policy.discount_min or discount > policy.discount_max:
        raise _reject(
            InvalidDiscount(
                f"Discount must be between {policy.discount_min} and {policy.discount_max}",
                coupon_code=code,
            )
        )
    return discount


def generate_coupon_code(*, prefix: str = "", length: int = 10, max_length: int = 40) -> str:
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    base = f"{prefix}-{suffix}".strip("-").upper()
    return base[:max_length]


def remaining_redemptions(coupon: Coupon) -> int | None:
    if coupon.max_redemptions is None:
        return None
    return max(0, int(coupon.max_redemptions) - int(coupon.redemption_count or 0))


def is_expired(coupon: Coupon, at: datetime) -> bool:
    return as_utc(at) > as_utc(coupon.expires_at)


def coupon_reasons(coupon: Coupon, at: datetime) -> list[str]:
    reasons: list[str] = []
    if is_expired(coupon, at):
        reasons.append("expired")
    if not coupon.is_active:
        reasons.append("inactive")
    if remaining_redemptions(coupon) == 0:
        reasons.append("already_redeemed")
    return reasons


async def _code_exists(session: AsyncSession, *, code: str) -> bool:
    return (await session.execute(select(Coupon.id).where(Coupon.code == code))).scalar_one_or_none() is not None


async def generate_unique_code(
    session: AsyncSession, *, prefix: str, policy: CouponPolicy, length: int = 10
) -> str:
    for _ in range(_CODE_GENERATION_ATTEMPTS):
        candidate = generate_coupon_code(prefix=prefix, length=length, max_length=policy.code_max_length)
        if not await _code_exists(session, code=candidate):
            return candidate
    raise _reject(DuplicateCode("Failed to generate a unique coupon code", coupon_code=prefix or None))


async def create_coupon(
    session: AsyncSession,
    payload: CouponCreate,
    *,
    policy: CouponPolicy,
    commit: bool = True,
) -> Coupon:
    code = check_code(payload.code, policy=policy)
    discount = check_discount(payload.discount, policy=policy, code=code)
    if await _code_exists(session, code=code):
        raise _reject(DuplicateCode(coupon_code=code))

    if payload.unlimited:
        max_redemptions = None
    elif payload.max_redemptions is not None:
        max_redemptions = payload.max_redemptions
    else:
        max_redemptions = policy.default_max_redemptions

    coupon = Coupon(
        code=code,
        discount=discount,
        expires_at=as_utc(payload.expires_at),
        max_redemptions=max_redemptions,
        redemption_count=0,
        is_active=True,
        created_at=_now(),
    )
    session.add(coupon)
    try:
        await session.flush()
    except IntegrityError as exc:
        # Lost a race against another writer inserting the same code.
        await session.rollback()
        raise _reject(DuplicateCode(coupon_code=code)) from exc
    if commit:
        await session.commit()

    metrics.record("created")
    logger.info(
        "coupon_created",
        extra={"coupon_code": code, "discount": discount, "outcome": "created"},
    )
    return coupon


async def get_coupon_by_code(session: AsyncSession, *, code: str) -> Coupon | None:
    if not code:
        return None
    res = await session.execute(
        select(Coupon).where(Coupon.code == code).execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def lookup_coupon(session: AsyncSession, *, code: str) -> Coupon:
    coupon = await get_coupon_by_code(session, code=code)
    if coupon is None:
        raise _reject(NotFound(coupon_code=code or None))
    return coupon


@dataclass(frozen=True)
class CouponValidity:
    coupon: Coupon
    redeemable: bool
    reasons: list[str]
    remaining: int | None
    checked_at: datetime


async def validate_coupon(session: AsyncSession, *, code: str, at: datetime | None = None) -> CouponValidity:
    """Report whether ``code`` can be redeemed at ``at``.

    Unknown codes raise ``NotFound`` and expired coupons raise ``Expired``.
    Deactivated or exhausted coupons are reported as not redeemable, with the
    reasons listed, so the caller can explain the outcome without redeeming.
    """
    checked_at = _resolve_at(at)
    coupon = await lookup_coupon(session, code=code)
    if is_expired(coupon, checked_at):
        raise _reject(Expired(coupon_code=coupon.code))
    reasons = coupon_reasons(coupon, checked_at)
    return CouponValidity(
        coupon=coupon,
        redeemable=not reasons,
        reasons=reasons,
        remaining=remaining_redemptions(coupon),
        checked_at=checked_at,
    )


@dataclass(frozen=True)
class RedemptionOutcome:
    code: str
    discount: int
    redemption_id: UUID
    registration_id: UUID | None
    redeemed_at: datetime
    remaining: int | None
    price: Decimal | None = None
    discount_amount: Decimal | None = None
    total: Decimal | None = None


async def _claim_redemption_slot(session: AsyncSession, *, coupon_id: UUID) -> bool:
    # Compare-and-set on the counter; concurrent callers serialise on the row.
    result = await session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.is_active.is_(True),
            or_(Coupon.max_redemptions.is_(None), Coupon.redemption_count < Coupon.max_redemptions),
        )
        .values(redemption_count=Coupon.redemption_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _sync_redemption_count(session: AsyncSession, coupon: Coupon) -> None:
    count = (await session.execute(select(Coupon.redemption_count).where(Coupon.id == coupon.id))).scalar_one()
    set_committed_value(coupon, "redemption_count", int(count))


async def _find_redemption(
    session: AsyncSession, *, coupon_id: UUID, registration_id: UUID
) -> CouponRedemption | None:
    return (
        await session.execute(
            select(CouponRedemption)
            .where(CouponRedemption.coupon_id == coupon_id, CouponRedemption.registration_id == registration_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def redeem_coupon(
    session: AsyncSession,
    *,
    code: str,
    at: datetime | None = None,
    registration_id: UUID | None = None,
    price: Decimal | None = None,
    commit: bool = True,
) -> RedemptionOutcome:
    """Record one redemption of ``code`` and return the discount to apply.

    With ``commit=False`` the caller owns the transaction; a rejected
    redemption that already wrote to the database still rolls the session back.
    """
    redeemed_at = _resolve_at(at)
    coupon = await lookup_coupon(session, code=code)
    coupon_code = coupon.code
    discount = coupon.discount
    if is_expired(coupon, redeemed_at):
        raise _reject(Expired(coupon_code=coupon_code))
    if not coupon.is_active:
        raise _reject(CouponInactive(coupon_code=coupon_code))

    coupon_id = coupon.id
    already_used = "Coupon has already been redeemed for this registration"

    previous: CouponRedemption | None = None
    if registration_id is not None:
        previous = await _find_redemption(session, coupon_id=coupon_id, registration_id=registration_id)
        if previous is not None and previous.voided_at is None:
            raise _reject(AlreadyRedeemed(already_used, coupon_code=coupon_code))

    if not await _claim_redemption_slot(session, coupon_id=coupon_id):
        current = await get_coupon_by_code(session, code=coupon_code)
        if current is not None and not current.is_active:
            raise _reject(CouponInactive(coupon_code=coupon_code))
        raise _reject(AlreadyRedeemed(coupon_code=coupon_code))

    if previous is not None:
        redemption_id = previous.id
        reopened = await session.execute(
            update(CouponRedemption)
            .where(CouponRedemption.id == redemption_id, CouponRedemption.voided_at.is_not(None))
            .values(voided_at=None, void_reason=None, discount=discount, redeemed_at=redeemed_at)
            .execution_options(synchronize_session=False)
        )
        if reopened.rowcount != 1:
            await session.rollback()
            raise _reject(AlreadyRedeemed(already_used, coupon_code=coupon_code))
    else:
        redemption = CouponRedemption(
            coupon_id=coupon_id,
            registration_id=registration_id,
            discount=discount,
            redeemed_at=redeemed_at,
        )
        session.add(redemption)
        try:
            await session.flush()
        except IntegrityError as exc:
            await session.rollback()
            raise _reject(AlreadyRedeemed(already_used, coupon_code=coupon_code)) from exc
        redemption_id = redemption.id

    await _sync_redemption_count(session, coupon)
    remaining = remaining_redemptions(coupon)
    if commit:
        await session.commit()
    else:
        await session.flush()

    breakdown = pricing.apply_percentage_discount(price, discount) if price is not None else None
    metrics.record("redeemed")
    logger.info(
        "coupon_redeemed",
        extra={
            "coupon_code": coupon_code,
            "discount": discount,
            "registration_id": registration_id,
            "outcome": "redeemed",
        },
    )
    return RedemptionOutcome(
        code=coupon_code,
        discount=discount,
        redemption_id=redemption_id,
        registration_id=registration_id,
        redeemed_at=redeemed_at,
        remaining=remaining,
        price=breakdown.price if breakdown else None,
        discount_amount=breakdown.discount_amount if breakdown else None,
        total=breakdown.total if breakdown else None,
    )


async def deactivate_coupon(
    session: AsyncSession, *, code: str, at: datetime | None = None, commit: bool = True
) -> Coupon:
    coupon = await lookup_coupon(session, code=code)
    if not coupon.is_active:
        return coupon
    coupon.is_active = False
    coupon.deactivated_at = _resolve_at(at)
    session.add(coupon)
    if commit:
        await session.commit()
    else:
        await session.flush()
    metrics.record("deactivated")
    logger.info("coupon_deactivated", extra={"coupon_code": code, "outcome": "deactivated"})
    return coupon


async def delete_coupon(session: AsyncSession, *, code: str, commit: bool = True) -> None:
    coupon = await lookup_coupon(session, code=code)
    await session.execute(delete(CouponRedemption).where(CouponRedemption.coupon_id == coupon.id))
    await session.delete(coupon)
    if commit:
        await session.commit()
    else:
        await session.flush()
    metrics.record("deleted")
    logger.info("coupon_deleted", extra={"coupon_code": code, "outcome": "deleted"})


async def list_coupons(session: AsyncSession, *, active_only: bool = False) -> list[Coupon]:
    stmt = select(Coupon).order_by(Coupon.created_at.desc(), Coupon.code).execution_options(populate_existing=True)
    if active_only:
        stmt = stmt.where(Coupon.is_active.is_(True))
    return list((await session.execute(stmt)).scalars().all())


async def list_redemptions(session: AsyncSession, *, code: str) -> list[CouponRedemption]:
    coupon = await lookup_coupon(session, code=code)
    result = await session.execute(
        select(CouponRedemption)
        .where(CouponRedemption.coupon_id == coupon.id)
        .order_by(CouponRedemption.redeemed_at, CouponRedemption.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def void_redemption(
    session: AsyncSession,
    *,
    code: str,
    registration_id: UUID,
    reason: str | None = None,
    at: datetime | None = None,
    commit: bool = True,
) -> CouponRedemption:
    """Release the redemption made for ``registration_id`` and give back its slot."""
    coupon = await lookup_coupon(session, code=code)
    redemption = await _find_redemption(session, coupon_id=coupon.id, registration_id=registration_id)
    if redemption is None:
        raise _reject(NotFound("No redemption recorded for this registration", coupon_code=coupon.code))
    if redemption.voided_at is not None:
        return redemption

    voided = await session.execute(
        update(CouponRedemption)
        .where(CouponRedemption.id == redemption.id, CouponRedemption.voided_at.is_(None))
        .values(voided_at=_resolve_at(at), void_reason=(reason or "")[:255] or None)
        .execution_options(synchronize_session=False)
    )
    if voided.rowcount == 1:
        await session.execute(
            update(Coupon)
            .where(Coupon.id == coupon.id, Coupon.redemption_count > 0)
            .values(redemption_count=Coupon.redemption_count - 1)
            .execution_options(synchronize_session=False)
        )
        metrics.record("voided")
        logger.info(
            "coupon_redemption_voided",
            extra={"coupon_code": coupon.code, "registration_id": registration_id, "outcome": "voided"},
        )
    if commit:
        await session.commit()
    else:
        await session.flush()
    await session.refresh(redemption)
    return redemption
