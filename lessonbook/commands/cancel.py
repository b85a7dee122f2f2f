"""
/cancel command - Cancel a booked lesson and refund its hours
"""

import logging
from telegram import Update
from telegram.ext import ContextTypes

from lessonbook import api

logger = logging.getLogger(__name__)


async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cancel <booking_id>"""
    user_id = str(update.effective_user.id)
    args = context.args or []

    if not args or not args[0].isdigit():
        await update.message.reply_text("Usage: /cancel <booking_id>\n\nSee /history for your bookings.")
        return

    booking_id = int(args[0])
    own_ids = {booking.id for booking in api.get_user_bookings(user_id)}
    if booking_id not in own_ids:
        await update.message.reply_text(f"❌ No active booking #{booking_id} found.")
        return

    booking, refund = api.cancel_booking(booking_id, reason="Cancelled via Telegram")

    message = f"🗑 Booking #{booking.id} on {booking.date} at {booking.time} cancelled."
    if refund is not None:
        message += f"\n↩️ {refund.hours_change:g}h returned to your quota."
    await update.message.reply_text(message)
    logger.info(f"User {user_id} cancelled booking {booking_id}")
