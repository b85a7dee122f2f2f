"""
/quota command - Show remaining lesson hours
"""

import logging
from datetime import date
from telegram import Update
from telegram.ext import ContextTypes

from lessonbook import api
from lessonbook.errors import NotFoundError

logger = logging.getLogger(__name__)


async def quota_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show quota balance"""
    user_id = str(update.effective_user.id)

    try:
        quota = api.get_quota(user_id)
    except NotFoundError:
        await update.message.reply_text(
            "🎫 You have no lesson hours yet. Please purchase a package first."
        )
        return

    allowance = api.get_weekly_allowance(user_id, date.today().isoformat())
    message = (
        "🎫 <b>Your Lesson Hours</b>\n\n"
        f"Total: <b>{quota.total_hours:g}</b>\n"
        f"Used: {quota.used_hours:g}\n"
        f"Remaining: <b>{quota.remaining_hours:g}</b>\n\n"
        f"This week you can still book {allowance['remaining_lessons']} lessons "
        f"({allowance['remaining_hours']:g}h)"
    )
    await update.message.reply_text(message, parse_mode="HTML")
