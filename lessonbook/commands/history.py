"""
/history command - Show recent quota transactions and upcoming lessons
"""

import logging
from telegram import Update
from telegram.ext import ContextTypes

from lessonbook import api

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10

TYPE_ICONS = {
    "purchase": "💳",
    "booking": "📅",
    "refund": "↩️",
    "adjustment": "🛠",
}


async def history_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show quota history and bookings"""
    user_id = str(update.effective_user.id)

    transactions = api.list_quota_transactions(user_id, limit=HISTORY_LIMIT)
    bookings = api.get_user_bookings(user_id)

    if not transactions and not bookings:
        await update.message.reply_text("📜 No history yet.")
        return

    lines = ["📜 <b>Your History</b>\n"]
    if bookings:
        lines.append("<b>Lessons</b>")
        for booking in bookings:
            lines.append(
                f"#{booking.id} {booking.date} {booking.time} "
                f"({booking.lesson_type}, {booking.status})"
            )
        lines.append("")

    if transactions:
        lines.append("<b>Lesson hours</b>")
        for transaction in transactions:
            icon = TYPE_ICONS.get(transaction.type, "•")
            lines.append(
                f"{icon} {transaction.hours_change:+g}h {transaction.description} "
                f"({transaction.created_at:%Y-%m-%d})"
            )

    await update.message.reply_text("\n".join(lines), parse_mode="HTML")
