"""Integration tests for the Telegram command handlers.

Runs the handlers against a real container over a throwaway SQLite store,
with Telegram objects mocked out.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from dependency_injector import providers
from telegram import Update

from cargo_bot.bot import handlers
from cargo_bot.bot.error_handler import error_handler
from cargo_bot.bot.messages import (
    CALC_USAGE,
    ERROR_GENERIC,
    ERROR_NOT_REGISTERED,
    NO_ACTIVE_ORDERS,
)
from cargo_bot.config import CacheConfig, Config
from cargo_bot.core.container import Container
from cargo_bot.models import AdminRole, OrderStatus

USER_TG_ID = 100500


@pytest.fixture
def container(store_config, reference_data):
    config = Config()
    config.store = store_config
    config.cache = CacheConfig(enabled=False)
    container = Container()
    container.config.override(providers.Object(config))
    container.bot.override(providers.Object(MagicMock()))
    return container


def make_update(user_id=USER_TG_ID, first_name="Иван"):
    update = MagicMock()
    update.effective_user.id = user_id
    update.effective_user.first_name = first_name
    update.effective_user.username = "ivan"
    update.effective_user.last_name = None
    update.message.reply_text = AsyncMock()
    return update


def make_context(container, args=None):
    context = MagicMock()
    context.application.bot_data = {"container": container}
    context.args = args or []
    return context


def reply_of(update) -> str:
    update.message.reply_text.assert_awaited_once()
    return update.message.reply_text.await_args.args[0]


async def register(container, user_id=USER_TG_ID):
    update = make_update(user_id)
    await handlers.start(update, make_context(container))
    return await container.user_service().get_by_telegram_id(user_id)


@pytest.mark.integration
class TestStartAndCalc:
    @pytest.mark.asyncio
    async def test_start_registers_user(self, container):
        update = make_update()
        await handlers.start(update, make_context(container))

        user = await container.user_service().get_by_telegram_id(USER_TG_ID)
        assert user is not None
        text = reply_of(update)
        assert "Иван" in text
        assert user.custom_id in text

    @pytest.mark.asyncio
    async def test_calc_quote(self, container):
        update = make_update()
        await handlers.calc(update, make_context(container, ["us", "2,5"]))

        text = reply_of(update)
        assert "US → RU" in text
        assert "2.5 кг" in text
        assert "1 625.00" in text
        assert "10–14 дней" in text

    @pytest.mark.asyncio
    async def test_calc_minimum_price_note(self, container):
        update = make_update()
        await handlers.calc(update, make_context(container, ["US", "0.5"]))
        assert "минимальная стоимость 1 000.00" in reply_of(update)

    @pytest.mark.asyncio
    async def test_calc_usage(self, container):
        update = make_update()
        await handlers.calc(update, make_context(container, ["US"]))
        assert reply_of(update) == CALC_USAGE

    @pytest.mark.asyncio
    async def test_calc_invalid_number(self, container):
        update = make_update()
        await handlers.calc(update, make_context(container, ["US", "abc"]))
        assert reply_of(update) == "Некорректное число: abc"

    @pytest.mark.asyncio
    async def test_calc_unknown_route(self, container):
        update = make_update()
        await handlers.calc(update, make_context(container, ["DE", "1"]))
        assert reply_of(update) == "Тариф для этого маршрута не найден"


@pytest.mark.integration
class TestTrackingCommands:
    @pytest.mark.asyncio
    async def test_unregistered_user(self, container):
        update = make_update()
        await handlers.track(update, make_context(container, ["SP123"]))
        assert reply_of(update) == ERROR_NOT_REGISTERED

    @pytest.mark.asyncio
    async def test_unknown_order(self, container):
        await register(container)
        update = make_update()
        await handlers.track(update, make_context(container, ["SP123"]))
        assert reply_of(update) == "Заказ не найден"

    @pytest.mark.asyncio
    async def test_track_own_order(self, container):
        user = await register(container)
        order = await container.order_service().create_shipping_order(
            user.id, "US", Decimal("2.5"), Decimal("100"), "Кроссовки", None
        )

        update = make_update()
        await handlers.track(update, make_context(container, [order.order_number.lower()]))

        text = reply_of(update)
        assert order.order_number in text
        assert "История:" in text

    @pytest.mark.asyncio
    async def test_orders_empty(self, container):
        await register(container)
        update = make_update()
        await handlers.orders(update, make_context(container))
        assert reply_of(update) == NO_ACTIVE_ORDERS

    @pytest.mark.asyncio
    async def test_orders_listed(self, container):
        user = await register(container)
        order = await container.order_service().create_shipping_order(
            user.id, "US", Decimal("2.5"), Decimal("100"), None, None
        )

        update = make_update()
        await handlers.orders(update, make_context(container))

        text = reply_of(update)
        assert order.order_number in text
        assert "1 625.00" in text

    @pytest.mark.asyncio
    async def test_balance(self, container):
        await register(container)
        update = make_update()
        await handlers.balance(update, make_context(container))

        text = reply_of(update)
        assert "Баланс: 0.00" in text
        assert "Всего заказов: 0" in text


@pytest.mark.integration
class TestAdminCommands:
    @pytest.fixture
    async def order(self, container):
        user = await register(container)
        return await container.order_service().create_shipping_order(
            user.id, "US", Decimal("2.5"), Decimal("100"), None, None
        )

    @pytest.mark.asyncio
    async def test_setstatus_requires_admin(self, container, order):
        update = make_update()
        await handlers.set_status(update, make_context(container, [order.order_number, "PAID"]))

        assert reply_of(update) == "Недостаточно прав"
        unchanged = await container.order_service().get_order(order.id)
        assert unchanged.status is OrderStatus.CREATED

    @pytest.mark.asyncio
    async def test_setstatus_by_super_admin(self, container, order, super_admin_id):
        update = make_update(super_admin_id, "Admin")
        await handlers.set_status(
            update, make_context(container, [order.order_number, "paid", "оплачен", "наличными"])
        )

        assert reply_of(update) == f"Статус заказа #{order.order_number} изменен: Оплачен"
        history = await container.order_service().get_status_history(order.id)
        assert history[-1].new_status is OrderStatus.PAID
        assert history[-1].comment == "оплачен наличными"

    @pytest.mark.asyncio
    async def test_setstatus_unknown_status(self, container, order, super_admin_id):
        update = make_update(super_admin_id, "Admin")
        await handlers.set_status(update, make_context(container, [order.order_number, "LOST"]))
        assert reply_of(update).startswith("Неизвестный статус: LOST")

    @pytest.mark.asyncio
    async def test_setstatus_invalid_transition(self, container, order, super_admin_id):
        update = make_update(super_admin_id, "Admin")
        await handlers.set_status(
            update, make_context(container, [order.order_number, "DELIVERED"])
        )
        assert reply_of(update).startswith("Нельзя перевести заказ")

    @pytest.mark.asyncio
    async def test_broadcast_requires_super_admin(self, container):
        await register(container)
        update = make_update()
        await handlers.broadcast(update, make_context(container, ["Привет"]))
        assert reply_of(update) == "Недостаточно прав"

    @pytest.mark.asyncio
    async def test_broadcast_queued(self, container, super_admin_id):
        await register(container)
        update = make_update(super_admin_id, "Admin")
        await handlers.broadcast(update, make_context(container, ["Скидки", "до", "пятницы"]))

        assert reply_of(update).startswith("Рассылка ")
        job_types = await container.database().run(
            lambda repo: [row["job_type"] for row in repo.conn.execute("SELECT job_type FROM jobs")],
            write=False,
        )
        assert job_types == ["broadcast"]

    @pytest.mark.asyncio
    async def test_stats_requires_admin(self, container, order):
        update = make_update()
        await handlers.stats(update, make_context(container))
        assert reply_of(update) == "Недостаточно прав"

    @pytest.mark.asyncio
    async def test_stats_for_admin(self, container, order, super_admin_id):
        update = make_update(super_admin_id, "Admin")
        await handlers.stats(update, make_context(container))

        text = reply_of(update)
        assert "Заказов сегодня: 1" in text
        assert "Активных заказов: 1" in text

    @pytest.mark.asyncio
    async def test_dashboard_for_order_manager(self, container, order):
        await container.admin_directory().add_admin(501, AdminRole.ORDER_MANAGER)
        update = make_update(501, "Manager")
        await handlers.dashboard(update, make_context(container))

        text = reply_of(update)
        assert "Создано сегодня: 1" in text
        assert "Посылки: 1 | Выкупы: 0" in text
        assert "Ожидают оплаты: 1" in text
        assert "Всего: 1 | Новых сегодня: 1" in text


@pytest.mark.integration
class TestErrorHandler:
    @pytest.mark.asyncio
    async def test_generic_reply(self):
        update = MagicMock(spec=Update)
        update.effective_user = MagicMock(id=USER_TG_ID)
        update.effective_message = MagicMock()
        update.effective_message.reply_text = AsyncMock()
        context = MagicMock()
        context.error = RuntimeError("boom")

        await error_handler(update, context)

        update.effective_message.reply_text.assert_awaited_once_with(ERROR_GENERIC)

    @pytest.mark.asyncio
    async def test_without_update(self):
        context = MagicMock()
        context.error = RuntimeError("boom")
        await error_handler(None, context)
