"""
Driving School Lesson Bot - Main Entry Point
Minimal bot setup that wires the booking commands together.
"""
import logging
from telegram import BotCommand
from telegram.ext import Application, CommandHandler

from lessonbook.config import get_config
from lessonbook.database import init_database

# Import commands
from lessonbook.commands.slots import slots_command
from lessonbook.commands.book import book_command
from lessonbook.commands.quota import quota_command
from lessonbook.commands.history import history_command
from lessonbook.commands.cancel import cancel_command

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)


async def post_init(application: Application) -> None:
    """Post-initialization callback - set bot commands"""
    commands = [
        BotCommand("slots", "Show free lesson slots of a day"),
        BotCommand("book", "Book a lesson"),
        BotCommand("quota", "Show remaining lesson hours"),
        BotCommand("history", "Show lessons and hour history"),
        BotCommand("cancel", "Cancel a lesson"),
    ]
    await application.bot.set_my_commands(commands)
    logger.info("Bot commands set")


def main() -> None:
    """Start the bot"""
    config = get_config()
    logging.getLogger().setLevel(config.log_level)
    if not config.telegram_bot_token:
        raise SystemExit("TELEGRAM_BOT_TOKEN is not set")

    # Initialize database
    logger.info("Initializing database...")
    init_database()

    # Create application
    application = Application.builder().token(config.telegram_bot_token).post_init(post_init).build()

    # Register command handlers
    application.add_handler(CommandHandler("slots", slots_command))
    application.add_handler(CommandHandler("book", book_command))
    application.add_handler(CommandHandler("quota", quota_command))
    application.add_handler(CommandHandler("history", history_command))
    application.add_handler(CommandHandler("cancel", cancel_command))

    # Start bot
    logger.info("Starting bot...")
    application.run_polling(allowed_updates=["message"])


if __name__ == '__main__':
    main()
