import argparse
import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any
import uuid

from pydantic import BaseModel, ValidationError

from app.core.config import Settings, get_settings
from app.core.errors import CouponError
from app.core.logging_config import configure_logging
from app.core.sentry import init_sentry
from app.db.session import build_engine, build_session_factory, create_schema
from app.schemas.coupon import CouponRead, CouponRedemptionRead, CouponValidityRead, RedemptionOutcomeRead
from app.schemas.error import ErrorResponse
from app.services.ledger import CouponLedger


def _parse_timestamp(raw: str | None) -> datetime | None:
    value = (raw or "").strip()
    if not value:
        return None
    if value.endswith("Z"):
        value = f"{value[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise SystemExit(f"Invalid timestamp: {raw}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_uuid(raw: str | None) -> uuid.UUID | None:
    value = (raw or "").strip()
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        raise SystemExit(f"Invalid registration id: {raw}")


def _parse_price(raw: str | None) -> Decimal | None:
    value = (raw or "").strip()
    if not value:
        return None
    try:
        price = Decimal(value)
    except InvalidOperation:
        raise SystemExit(f"Invalid price: {raw}")
    if not price.is_finite() or price < 0:
        raise SystemExit(f"Invalid price: {raw}")
    return price


def _dump(payload: BaseModel | list[BaseModel] | dict[str, Any]) -> str:
    if isinstance(payload, BaseModel):
        data: Any = payload.model_dump(mode="json")
    elif isinstance(payload, list):
        data = [item.model_dump(mode="json") for item in payload]
    else:
        data = payload
    return json.dumps(data, indent=2, ensure_ascii=False)


def _add_coupon_commands(subparsers) -> None:
    create = subparsers.add_parser("create", help="Create a coupon")
    code_group = create.add_mutually_exclusive_group(required=True)
    code_group.add_argument("--code", help="Coupon code (case-sensitive)")
    code_group.add_argument("--generate-prefix", help="Generate a random code with this prefix")
    create.add_argument("--discount", type=int, required=True, help="Discount percentage")
    create.add_argument("--expires-at", required=True, help="Expiration timestamp (ISO 8601, UTC if no offset)")
    create.add_argument("--max-redemptions", type=int, help="Usage cap (defaults to the configured cap)")
    create.add_argument("--unlimited", action="store_true", help="No usage cap across distinct registrations")

    show = subparsers.add_parser("show", help="Show a coupon")
    show.add_argument("code")

    validate = subparsers.add_parser("validate", help="Check whether a coupon is redeemable")
    validate.add_argument("code")
    validate.add_argument("--at", help="Evaluation timestamp (defaults to now)")

    redeem = subparsers.add_parser("redeem", help="Redeem a coupon")
    redeem.add_argument("code")
    redeem.add_argument("--at", help="Redemption timestamp (defaults to now)")
    redeem.add_argument("--registration-id", help="Registration the coupon is applied to")
    redeem.add_argument("--price", help="Registration price to apply the discount to")

    deactivate = subparsers.add_parser("deactivate", help="Deactivate a coupon")
    deactivate.add_argument("code")

    delete = subparsers.add_parser("delete", help="Delete a coupon and its redemptions")
    delete.add_argument("code")

    listing = subparsers.add_parser("list", help="List coupons")
    listing.add_argument("--active-only", action="store_true", help="Hide deactivated coupons")

    redemptions = subparsers.add_parser("redemptions", help="List redemptions of a coupon")
    redemptions.add_argument("code")

    void = subparsers.add_parser("void", help="Void the redemption made for a registration")
    void.add_argument("code")
    void.add_argument("--registration-id", required=True, help="Registration whose redemption is released")
    void.add_argument("--reason", help="Why the redemption is voided")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Coupon ledger administration")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init-db", help="Create the coupon tables")
    _add_coupon_commands(subparsers)
    return parser


async def _run_ledger_command(ledger: CouponLedger, args: argparse.Namespace) -> str | None:
    if args.command == "create":
        expires_at = _parse_timestamp(args.expires_at)
        if args.generate_prefix is not None:
            coupon = await ledger.create_generated(
                prefix=args.generate_prefix,
                discount=args.discount,
                expires_at=expires_at,
                max_redemptions=args.max_redemptions,
                unlimited=args.unlimited,
            )
        else:
            coupon = await ledger.create(
                args.code,
                args.discount,
                expires_at,
                max_redemptions=args.max_redemptions,
                unlimited=args.unlimited,
            )
        return _dump(CouponRead.model_validate(coupon))

    if args.command == "show":
        return _dump(CouponRead.model_validate(await ledger.lookup(args.code)))

    if args.command == "validate":
        validity = await ledger.validate(args.code, _parse_timestamp(args.at))
        return _dump(CouponValidityRead.model_validate(validity))

    if args.command == "redeem":
        outcome = await ledger.redeem(
            args.code,
            _parse_timestamp(args.at),
            registration_id=_parse_uuid(args.registration_id),
            price=_parse_price(args.price),
        )
        return _dump(RedemptionOutcomeRead.model_validate(outcome))

    if args.command == "deactivate":
        return _dump(CouponRead.model_validate(await ledger.deactivate(args.code)))

    if args.command == "delete":
        await ledger.delete(args.code)
        return _dump({"deleted": args.code})

    if args.command == "list":
        coupons = await ledger.list_coupons(active_only=args.active_only)
        return _dump([CouponRead.model_validate(coupon) for coupon in coupons])

    if args.command == "redemptions":
        rows = await ledger.list_redemptions(args.code)
        return _dump([CouponRedemptionRead.model_validate(row) for row in rows])

    if args.command == "void":
        redemption = await ledger.void_redemption(
            args.code,
            _parse_uuid(args.registration_id),
            reason=args.reason,
        )
        return _dump(CouponRedemptionRead.model_validate(redemption))

    return None


async def _dispatch(args: argparse.Namespace, settings: Settings) -> tuple[int, str | None]:
    engine = build_engine(settings)
    try:
        if args.command == "init-db":
            await create_schema(engine)
            return 0, _dump({"initialized": True})

        ledger = CouponLedger(build_session_factory(engine), settings.coupon_policy())
        try:
            return 0, await _run_ledger_command(ledger, args)
        except CouponError as exc:
            return 1, _dump(exc.to_response())
        except ValidationError as exc:
            payload = ErrorResponse(detail=json.loads(exc.json()), code="validation_error")
            return 1, _dump(payload)
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    settings = get_settings()
    configure_logging(settings.log_json, settings.log_level)
    init_sentry(settings)

    exit_code, output = asyncio.run(_dispatch(args, settings))
    if output is None:
        parser.print_help()
        return 2
    print(output)
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
