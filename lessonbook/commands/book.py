"""
/book command - Book a lesson and pay for it from the quota
"""

import logging
from telegram import Update
from telegram.ext import ContextTypes

from lessonbook import api
from lessonbook.errors import (
    InsufficientQuotaError,
    NotFoundError,
    SlotUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)

USAGE = "Usage: /book YYYY-MM-DD HH:MM [lesson_type] [minutes]"
DEFAULT_LESSON_TYPE = "standard"
DEFAULT_DURATION_MINUTES = 60


async def book_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /book YYYY-MM-DD HH:MM [lesson_type] [minutes]"""
    user_id = str(update.effective_user.id)
    args = context.args or []

    if len(args) < 2:
        await update.message.reply_text(USAGE)
        return

    day, start = args[0], args[1]
    lesson_type = args[2] if len(args) > 2 else DEFAULT_LESSON_TYPE
    try:
        duration = int(args[3]) if len(args) > 3 else DEFAULT_DURATION_MINUTES
    except ValueError:
        await update.message.reply_text(f"❌ Duration must be a number of minutes.\n\n{USAGE}")
        return

    try:
        result = api.create_booking(
            user_id=user_id,
            date=day,
            time=start,
            duration_minutes=duration,
            lesson_type=lesson_type,
            idempotency_key=f"tg-{update.message.chat_id}-{update.message.message_id}",
        )
    except ValidationError as e:
        await update.message.reply_text(f"❌ {e}\n\n{USAGE}")
        return
    except SlotUnavailableError as e:
        message = f"❌ {e.message}"
        if e.suggestion:
            message += f"\n💡 {e.suggestion}"
        await update.message.reply_text(message)
        return
    except InsufficientQuotaError as e:
        await update.message.reply_text(
            "❌ Not enough lesson hours.\n\n"
            f"Available: {e.available:g}h, needed: {e.requested:g}h"
        )
        return
    except NotFoundError:
        await update.message.reply_text(
            "❌ You have no lesson hours yet. Please purchase a package first."
        )
        return

    booking = result.booking
    message = (
        "✅ <b>Lesson booked</b>\n\n"
        f"📅 {booking.date} at {booking.time}\n"
        f"⏱ {booking.duration_minutes} minutes ({booking.lesson_type})\n"
        f"🎫 Booking ID: <code>{booking.id}</code>\n"
        f"Status: {booking.status}"
    )
    if result.warnings:
        message += "\n\n⚠️ " + "\n⚠️ ".join(finding.message for finding in result.warnings)

    await update.message.reply_text(message, parse_mode="HTML")
    logger.info(f"User {user_id} booked lesson {booking.id}")
