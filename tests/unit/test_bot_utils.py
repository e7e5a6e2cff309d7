"""Tests for bot helpers: per-user locks, input parsing and formatting."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from cargo_bot.bot.utils import (
    UserLocks,
    format_money,
    format_weight,
    parse_decimal,
    user_command,
    user_locks,
)
from cargo_bot.errors import OrderNotFound, ValidationFailed


class TestUserLocks:
    @pytest.mark.asyncio
    async def test_same_user_is_serialized(self):
        locks = UserLocks()
        running = 0
        peak = 0

        async def command():
            nonlocal running, peak
            async with locks.hold(1):
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1

        await asyncio.gather(*(command() for _ in range(5)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_users_run_concurrently(self):
        locks = UserLocks()
        both_inside = asyncio.Event()
        inside = 0

        async def command(user_id):
            nonlocal inside
            async with locks.hold(user_id):
                inside += 1
                if inside == 2:
                    both_inside.set()
                await asyncio.wait_for(both_inside.wait(), timeout=1)

        await asyncio.gather(command(1), command(2))

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self):
        locks = UserLocks()
        async with locks.hold(1):
            assert len(locks) == 1
        assert len(locks) == 0

        with pytest.raises(RuntimeError):
            async with locks.hold(2):
                raise RuntimeError("boom")
        assert len(locks) == 0


class TestUserCommand:
    @staticmethod
    def make_update():
        update = MagicMock()
        update.effective_user.id = 42
        update.message.reply_text = AsyncMock()
        return update

    @pytest.mark.asyncio
    async def test_domain_error_is_replied(self):
        @user_command
        async def handler(update, context):
            raise OrderNotFound(order_number="SP1")

        update = self.make_update()
        await handler(update, MagicMock())
        update.message.reply_text.assert_awaited_once_with("Заказ не найден")
        assert len(user_locks) == 0

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        @user_command
        async def handler(update, context):
            raise RuntimeError("boom")

        update = self.make_update()
        with pytest.raises(RuntimeError):
            await handler(update, MagicMock())
        update.message.reply_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_updates_without_message_are_ignored(self):
        handler_body = AsyncMock()
        handler = user_command(handler_body)

        update = MagicMock()
        update.message = None
        await handler(update, MagicMock())
        handler_body.assert_not_awaited()


class TestParsing:
    @pytest.mark.parametrize("raw,expected", [("2.5", "2.5"), ("2,5", "2.5"), (" 10 ", "10")])
    def test_parse_decimal(self, raw, expected):
        assert parse_decimal(raw) == Decimal(expected)

    @pytest.mark.parametrize("raw", ["abc", "", "NaN", "Infinity"])
    def test_parse_decimal_rejects(self, raw):
        with pytest.raises(ValidationFailed):
            parse_decimal(raw)


class TestFormatting:
    def test_money(self):
        assert format_money(Decimal("1625")) == "1 625.00"
        assert format_money(Decimal("1234567.891")) == "1 234 567.89"
        assert format_money(Decimal("0")) == "0.00"

    def test_weight(self):
        assert format_weight(Decimal("2.50")) == "2.5"
        assert format_weight(Decimal("10")) == "10"
