"""
/slots command - Show bookable lesson slots of a day
"""

import logging
from datetime import date, timedelta
from telegram import Update
from telegram.ext import ContextTypes

from lessonbook import api
from lessonbook.errors import ValidationError
from lessonbook.services.availability import availability_stats

logger = logging.getLogger(__name__)


async def slots_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /slots [YYYY-MM-DD] [lesson_type]"""
    args = context.args or []
    day = args[0] if args else (date.today() + timedelta(days=1)).isoformat()
    lesson_type = args[1] if len(args) > 1 else None

    try:
        slots = api.get_availability(day, lesson_type, str(update.effective_user.id))
    except ValidationError as e:
        await update.message.reply_text(
            f"❌ {e}\n\nUsage: /slots YYYY-MM-DD [lesson_type]"
        )
        return

    if not slots:
        await update.message.reply_text(f"📅 No lessons are available on {day}.")
        return

    stats = availability_stats(slots)
    lines = [f"📅 <b>Lessons on {day}</b>\n"]
    for slot in slots:
        if slot.available:
            lines.append(f"✅ {slot.label()}")
        else:
            lines.append(f"❌ {slot.label()} - {slot.reason}")
    lines.append(
        f"\n{stats['available_slots']}/{stats['total_slots']} free. "
        "Book with /book YYYY-MM-DD HH:MM"
    )

    await update.message.reply_text("\n".join(lines), parse_mode="HTML")
    logger.info(f"User {update.effective_user.id} viewed slots for {day}")
