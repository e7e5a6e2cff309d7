"""Bot utility functions.

Provides per-user command serialization, access to the DI container from a
handler context, rendering of user-facing domain errors, and small
formatting helpers shared by the handlers.
"""

import asyncio
import contextlib
import functools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from telegram import Update
from telegram.ext import ContextTypes

from ..errors import USER_FACING_ERRORS, ValidationFailed
from .messages import ERROR_INVALID_NUMBER

if TYPE_CHECKING:
    from ..core.container import Container

logger = logging.getLogger(__name__)

Handler = Callable[[Update, ContextTypes.DEFAULT_TYPE], Awaitable[None]]


class UserLocks:
    """One asyncio.Lock per Telegram user.

    Commands of the same user run one at a time; different users never
    wait for each other. A lock is dropped once nobody holds or awaits it.
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._pending: dict[int, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, user_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._pending[user_id] = self._pending.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._pending[user_id] -= 1
            if not self._pending[user_id]:
                del self._pending[user_id]
                del self._locks[user_id]

    def __len__(self) -> int:
        return len(self._locks)


user_locks = UserLocks()


def get_container(context: ContextTypes.DEFAULT_TYPE) -> "Container":
    return context.application.bot_data["container"]


def user_command(handler: Handler) -> Handler:
    """Wrap a command handler.

    Serializes the handler per user and replies with the message of any
    validation, not-found or business-rule error. Other errors propagate to
    the application error handler.
    """

    @functools.wraps(handler)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.effective_user or not update.message:
            return

        async with user_locks.hold(update.effective_user.id):
            try:
                await handler(update, context)
            except USER_FACING_ERRORS as e:
                logger.info(f"Command rejected for {update.effective_user.id}: {e}")
                await update.message.reply_text(e.user_message)

    return wrapper


def parse_decimal(value: str) -> Decimal:
    """Parse user input such as '2,5' or '2.5'."""
    try:
        result = Decimal(value.replace(",", ".").strip())
    except InvalidOperation:
        raise ValidationFailed(ERROR_INVALID_NUMBER.format(value=value)) from None
    if not result.is_finite():
        raise ValidationFailed(ERROR_INVALID_NUMBER.format(value=value))
    return result


def format_money(value: Decimal) -> str:
    """Format a ruble amount as '1 625.00'."""
    return f"{value:,.2f}".replace(",", " ")


def format_weight(value: Decimal) -> str:
    return format(value.normalize(), "f")
