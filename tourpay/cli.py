import argparse
import asyncio

from tourpay.core.config import settings
from tourpay.core.logging_config import configure_logging
from tourpay.db.base import Base
from tourpay.db.session import SessionLocal, engine
from tourpay import models  # noqa: F401
from tourpay.services import coupon_admin


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def expire_coupons() -> int:
    async with SessionLocal() as session:
        return await coupon_admin.deactivate_expired_coupons(session)


async def notify_expiring_coupons(days: int | None = None) -> int:
    async with SessionLocal() as session:
        return await coupon_admin.notify_expiring_coupons(session, days=days)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tourpay maintenance commands")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init-db", help="Create database tables from the model metadata")
    subparsers.add_parser("expire-coupons", help="Deactivate coupons past their validity window")
    notify = subparsers.add_parser("notify-expiring-coupons", help="Email partners about coupons close to expiry")
    notify.add_argument("--days", type=int, default=None, help="Look-ahead window in days")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "init-db":
        asyncio.run(init_db())
        print("Database tables created")
        return True

    if args.command == "expire-coupons":
        count = asyncio.run(expire_coupons())
        print(f"Deactivated {count} expired coupon(s)")
        return True

    if args.command == "notify-expiring-coupons":
        count = asyncio.run(notify_expiring_coupons(args.days))
        print(f"Sent {count} expiration notice(s)")
        return True

    return False


def main(argv: list[str] | None = None) -> None:
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
