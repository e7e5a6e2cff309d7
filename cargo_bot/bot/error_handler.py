"""Application-level error handler.

Receives every exception a handler did not turn into a user reply: store
and queue failures, exchange rate outages, Telegram errors and bugs. Logs
them with context and apologizes to the user without exposing details.
"""

import logging

from telegram import Update
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from ..errors import CargoError
from .messages import ERROR_GENERIC

logger = logging.getLogger(__name__)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Log the error and send a generic apology.

    Args:
        update: Update that caused the error, if any.
        context: Context carrying the exception in `context.error`.
    """
    error = context.error
    user_id = None
    if isinstance(update, Update) and update.effective_user:
        user_id = update.effective_user.id

    if isinstance(error, CargoError):
        logger.error(f"Unhandled {error.code} for user {user_id}: {error}", exc_info=error)
    else:
        logger.error(f"Unhandled error for user {user_id}: {error}", exc_info=error)

    if isinstance(update, Update) and update.effective_message:
        try:
            await update.effective_message.reply_text(ERROR_GENERIC)
        except TelegramError as e:
            logger.warning(f"Could not send error reply to {user_id}: {e}")
