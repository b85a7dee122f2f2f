"""
Management CLI

    python -m lessonbook init-db
    python -m lessonbook availability 2030-03-05 [--lesson-type intensive] [--user-id USER_ID]
    python -m lessonbook credit USER_ID HOURS [--description ...] [--package-id ...]
    python -m lessonbook quota USER_ID
    python -m lessonbook check-calendar
"""

import argparse
import asyncio
import logging
import sys

from lessonbook import api
from lessonbook.config import get_config
from lessonbook.database import init_database
from lessonbook.errors import BookingEngineError
from lessonbook.models import TransactionType
from lessonbook.services.calendar_connector import CalendarConnector

logger = logging.getLogger(__name__)


def cmd_init_db(args: argparse.Namespace) -> None:
    init_database()
    print("Database tables initialized")


def cmd_availability(args: argparse.Namespace) -> None:
    for slot in api.get_availability(args.date, args.lesson_type, args.user_id):
        status = "free" if slot.available else f"busy ({slot.reason})"
        print(f"{slot.label()}  {status}")


def cmd_credit(args: argparse.Namespace) -> None:
    transaction = api.credit_quota(
        args.user_id,
        args.hours,
        args.description,
        type=TransactionType(args.type),
        package_id=args.package_id,
    )
    quota = api.get_quota(args.user_id)
    print(f"Transaction {transaction.id}: +{args.hours:g}h, remaining {quota.remaining_hours:g}h")


def cmd_quota(args: argparse.Namespace) -> None:
    quota = api.get_quota(args.user_id)
    print(f"{quota.user_id}: total {quota.total_hours:g}h, used {quota.used_hours:g}h, remaining {quota.remaining_hours:g}h")


def cmd_check_calendar(args: argparse.Namespace) -> None:
    async def check_connection() -> bool:
        connector = CalendarConnector()
        try:
            return await connector.wait_until_connected(timeout=args.timeout)
        finally:
            await connector.aclose()

    connected = asyncio.run(check_connection())
    print("Calendar connected" if connected else "Calendar not connected")
    if not connected:
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lessonbook", description="Lesson booking engine management")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_db = subparsers.add_parser("init-db", help="Create database tables")
    init_db.set_defaults(func=cmd_init_db)

    availability = subparsers.add_parser("availability", help="List the slots of a day")
    availability.add_argument("date", help="YYYY-MM-DD")
    availability.add_argument("--lesson-type", default=None)
    availability.add_argument("--user-id", default=None, help="Apply this student's lesson limits")
    availability.set_defaults(func=cmd_availability)

    credit = subparsers.add_parser("credit", help="Add lesson hours to a user")
    credit.add_argument("user_id")
    credit.add_argument("hours", type=float)
    credit.add_argument("--description", default="Lesson package purchase")
    credit.add_argument("--type", default=TransactionType.PURCHASE.value,
                        choices=[TransactionType.PURCHASE.value, TransactionType.ADJUSTMENT.value])
    credit.add_argument("--package-id", default=None)
    credit.set_defaults(func=cmd_credit)

    quota = subparsers.add_parser("quota", help="Show a user's balance")
    quota.add_argument("user_id")
    quota.set_defaults(func=cmd_quota)

    check_calendar = subparsers.add_parser("check-calendar", help="Wait for the admin calendar to respond")
    check_calendar.add_argument("--timeout", type=float, default=10.0)
    check_calendar.set_defaults(func=cmd_check_calendar)

    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=get_config().log_level,
    )
    try:
        args.func(args)
    except BookingEngineError as e:
        logger.error(f"{args.command} failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
