from datetime import datetime, timezone
from decimal import Decimal
import uuid

import pytest

from app.core import metrics
from app.core.config import CouponPolicy
from app.core.errors import (
    AlreadyRedeemed,
    CouponInactive,
    DuplicateCode,
    Expired,
    InvalidCode,
    InvalidDiscount,
    NotFound,
)
from app.services.ledger import CouponLedger


EXPIRES = datetime(2025, 1, 1, tzinfo=timezone.utc)
BEFORE = datetime(2024, 12, 1, tzinfo=timezone.utc)
AFTER = datetime(2025, 1, 1, 0, 0, 1, tzinfo=timezone.utc)


@pytest.mark.anyio
async def test_save10_example_flow(ledger: CouponLedger) -> None:
    coupon = await ledger.create("SAVE10", 10, EXPIRES)
    assert coupon.id is not None
    assert coupon.code == "SAVE10"
    assert coupon.max_redemptions == 1

    validity = await ledger.validate("SAVE10", BEFORE)
    assert validity.redeemable is True
    assert validity.reasons == []
    assert validity.remaining == 1

    outcome = await ledger.redeem("SAVE10", BEFORE)
    assert outcome.discount == 10
    assert outcome.remaining == 0

    with pytest.raises(AlreadyRedeemed):
        await ledger.redeem("SAVE10", datetime(2024, 12, 2, tzinfo=timezone.utc))

    after = await ledger.validate("SAVE10", BEFORE)
    assert after.redeemable is False
    assert after.reasons == ["already_redeemed"]

    assert metrics.count("created") == 1
    assert metrics.count("redeemed") == 1
    assert metrics.rejections() == {"already_redeemed": 1}


@pytest.mark.anyio
async def test_create_rejects_duplicate_code(ledger: CouponLedger) -> None:
    await ledger.create("EARLYBIRD", 15, EXPIRES)
    with pytest.raises(DuplicateCode) as excinfo:
        await ledger.create("EARLYBIRD", 20, EXPIRES)
    assert excinfo.value.coupon_code == "EARLYBIRD"
    assert (await ledger.lookup("EARLYBIRD")).discount == 15


@pytest.mark.anyio
async def test_codes_are_case_sensitive(ledger: CouponLedger) -> None:
    await ledger.create("Summer", 5, EXPIRES)
    other = await ledger.create("SUMMER", 25, EXPIRES)
    assert other.discount == 25
    with pytest.raises(NotFound):
        await ledger.lookup("summer")


@pytest.mark.anyio
@pytest.mark.parametrize("discount", [0, -5, 101, 250])
async def test_create_rejects_out_of_bounds_discount(ledger: CouponLedger, discount: int) -> None:
    with pytest.raises(InvalidDiscount):
        await ledger.create("BAD", discount, EXPIRES)
    with pytest.raises(NotFound):
        await ledger.lookup("BAD")


@pytest.mark.anyio
@pytest.mark.parametrize("discount", [10.5, 10.0, "10", True])
async def test_create_rejects_non_integer_discount(ledger: CouponLedger, discount: object) -> None:
    with pytest.raises(InvalidDiscount) as excinfo:
        await ledger.create("FRAC", discount, EXPIRES)  # type: ignore[arg-type]
    assert excinfo.value.coupon_code == "FRAC"
    with pytest.raises(InvalidDiscount):
        await ledger.create_generated(prefix="frac", discount=discount, expires_at=EXPIRES)  # type: ignore[arg-type]
    assert await ledger.list_coupons() == []
    assert metrics.rejections() == {"invalid_discount": 2}


@pytest.mark.anyio
async def test_create_accepts_discount_bounds(ledger: CouponLedger) -> None:
    assert (await ledger.create("ONE", 1, EXPIRES)).discount == 1
    assert (await ledger.create("FREE", 100, EXPIRES)).discount == 100


@pytest.mark.anyio
@pytest.mark.parametrize("code", ["", "   ", " PADDED", "X" * 41])
async def test_create_rejects_invalid_code(ledger: CouponLedger, code: str) -> None:
    with pytest.raises(InvalidCode):
        await ledger.create(code, 10, EXPIRES)


@pytest.mark.anyio
async def test_lookup_unknown_code(ledger: CouponLedger) -> None:
    with pytest.raises(NotFound) as excinfo:
        await ledger.lookup("MISSING")
    assert excinfo.value.to_response().code == "coupon_not_found"


@pytest.mark.anyio
async def test_validate_unknown_and_expired(ledger: CouponLedger) -> None:
    await ledger.create("SAVE10", 10, EXPIRES)

    with pytest.raises(NotFound):
        await ledger.validate("NOPE", BEFORE)
    with pytest.raises(Expired):
        await ledger.validate("SAVE10", AFTER)

    at_expiry = await ledger.validate("SAVE10", EXPIRES)
    assert at_expiry.redeemable is True


@pytest.mark.anyio
async def test_redeem_after_expiration_fails_even_if_unused(ledger: CouponLedger) -> None:
    await ledger.create("LATE", 30, EXPIRES)
    with pytest.raises(Expired):
        await ledger.redeem("LATE", AFTER)
    assert (await ledger.lookup("LATE")).redemption_count == 0


@pytest.mark.anyio
async def test_redeem_unknown_code(ledger: CouponLedger) -> None:
    with pytest.raises(NotFound):
        await ledger.redeem("GHOST", BEFORE)


@pytest.mark.anyio
async def test_naive_timestamps_are_utc(ledger: CouponLedger) -> None:
    await ledger.create("NAIVE", 10, datetime(2025, 1, 1))
    assert (await ledger.validate("NAIVE", datetime(2024, 12, 31, 23, 59))).redeemable is True
    with pytest.raises(Expired):
        await ledger.validate("NAIVE", datetime(2025, 1, 1, 0, 0, 1))


@pytest.mark.anyio
async def test_multi_use_coupon_is_single_use_per_registration(ledger: CouponLedger) -> None:
    await ledger.create("TEAM", 20, EXPIRES, unlimited=True)
    first = uuid.uuid4()
    second = uuid.uuid4()

    await ledger.redeem("TEAM", BEFORE, registration_id=first)
    await ledger.redeem("TEAM", BEFORE, registration_id=second)
    with pytest.raises(AlreadyRedeemed):
        await ledger.redeem("TEAM", BEFORE, registration_id=first)

    validity = await ledger.validate("TEAM", BEFORE)
    assert validity.redeemable is True
    assert validity.remaining is None
    assert (await ledger.lookup("TEAM")).redemption_count == 2


@pytest.mark.anyio
async def test_usage_cap(ledger: CouponLedger) -> None:
    await ledger.create("THREE", 10, EXPIRES, max_redemptions=3)
    for _ in range(3):
        await ledger.redeem("THREE", BEFORE, registration_id=uuid.uuid4())
    with pytest.raises(AlreadyRedeemed):
        await ledger.redeem("THREE", BEFORE, registration_id=uuid.uuid4())


@pytest.mark.anyio
async def test_redeem_applies_discount_to_price(ledger: CouponLedger) -> None:
    await ledger.create("QUARTER", 25, EXPIRES)
    outcome = await ledger.redeem("QUARTER", BEFORE, price=Decimal("79.99"))
    assert outcome.price == Decimal("79.99")
    assert outcome.discount_amount == Decimal("20.00")
    assert outcome.total == Decimal("59.99")


@pytest.mark.anyio
async def test_deactivated_coupon_is_not_redeemable(ledger: CouponLedger) -> None:
    await ledger.create("PAUSED", 10, EXPIRES)
    deactivated = await ledger.deactivate("PAUSED", BEFORE)
    assert deactivated.is_active is False
    assert deactivated.deactivated_at is not None

    validity = await ledger.validate("PAUSED", BEFORE)
    assert validity.redeemable is False
    assert validity.reasons == ["inactive"]
    with pytest.raises(CouponInactive):
        await ledger.redeem("PAUSED", BEFORE)

    again = await ledger.deactivate("PAUSED")
    assert again.is_active is False


@pytest.mark.anyio
async def test_delete_removes_coupon_and_redemptions(ledger: CouponLedger) -> None:
    await ledger.create("GONE", 10, EXPIRES)
    await ledger.redeem("GONE", BEFORE, registration_id=uuid.uuid4())
    await ledger.delete("GONE")

    with pytest.raises(NotFound):
        await ledger.lookup("GONE")
    with pytest.raises(NotFound):
        await ledger.delete("GONE")

    recreated = await ledger.create("GONE", 15, EXPIRES)
    assert recreated.redemption_count == 0
    assert await ledger.list_redemptions("GONE") == []


@pytest.mark.anyio
async def test_void_redemption_frees_the_slot(ledger: CouponLedger) -> None:
    registration = uuid.uuid4()
    await ledger.create("REFUND", 10, EXPIRES)
    await ledger.redeem("REFUND", BEFORE, registration_id=registration)

    voided = await ledger.void_redemption("REFUND", registration, reason="registration cancelled", at=BEFORE)
    assert voided.voided_at is not None
    assert voided.void_reason == "registration cancelled"
    assert (await ledger.lookup("REFUND")).redemption_count == 0

    repeat = await ledger.void_redemption("REFUND", registration)
    assert repeat.id == voided.id

    outcome = await ledger.redeem("REFUND", BEFORE, registration_id=registration)
    assert outcome.redemption_id == voided.id
    rows = await ledger.list_redemptions("REFUND")
    assert len(rows) == 1
    assert rows[0].voided_at is None

    with pytest.raises(NotFound):
        await ledger.void_redemption("REFUND", uuid.uuid4())


@pytest.mark.anyio
async def test_list_coupons(ledger: CouponLedger) -> None:
    await ledger.create("A1", 10, EXPIRES)
    await ledger.create("B2", 20, EXPIRES)
    await ledger.deactivate("A1")

    codes = {coupon.code for coupon in await ledger.list_coupons()}
    assert codes == {"A1", "B2"}
    active = [coupon.code for coupon in await ledger.list_coupons(active_only=True)]
    assert active == ["B2"]


@pytest.mark.anyio
async def test_create_generated_code(ledger: CouponLedger) -> None:
    coupon = await ledger.create_generated(prefix="fest", discount=10, expires_at=EXPIRES, length=8)
    assert coupon.code.startswith("FEST-")
    assert len(coupon.code) == len("FEST-") + 8
    assert (await ledger.lookup(coupon.code)).id == coupon.id


@pytest.mark.anyio
async def test_policy_bounds_are_configurable(session_factory) -> None:
    ledger = CouponLedger(session_factory, CouponPolicy(discount_max=50, default_max_redemptions=None))
    with pytest.raises(InvalidDiscount):
        await ledger.create("HALFPLUS", 51, EXPIRES)
    coupon = await ledger.create("HALF", 50, EXPIRES)
    assert coupon.max_redemptions is None
