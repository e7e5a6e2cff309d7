"""Telegram bot command handlers.

Thin handlers that parse command arguments, delegate to the services in the
DI container, and format replies. Domain rejections are rendered to the user
by the user_command wrapper; everything else reaches the error handler.
"""

import logging

from telegram import Update
from telegram.ext import ContextTypes

from ..errors import UserNotFound
from ..models import AdminRole, OrderStatus, User, utc_now
from ..services.order_status import status_label
from .messages import (
    ACTIVE_ORDERS_HEADER,
    BALANCE_MESSAGE,
    BROADCAST_QUEUED,
    BROADCAST_USAGE,
    CALC_DISCOUNT_LINE,
    CALC_MIN_PRICE_NOTE,
    CALC_RESULT,
    CALC_USAGE,
    DASHBOARD_MESSAGE,
    DELIVERY_DAYS_EXACT,
    DELIVERY_DAYS_RANGE,
    ERROR_NOT_REGISTERED,
    NO_ACTIVE_ORDERS,
    ORDER_LINE,
    QUICK_STATS_HEADER,
    QUICK_STATS_LINE,
    SETSTATUS_USAGE,
    START_MESSAGE,
    STATUS_UPDATED,
    TRACK_HEADER,
    TRACK_HISTORY_HEADER,
    TRACK_HISTORY_LINE,
    TRACK_USAGE,
    UNKNOWN_STATUS,
)
from .utils import format_money, format_weight, get_container, parse_decimal, user_command

logger = logging.getLogger(__name__)


async def _current_user(update: Update, context: ContextTypes.DEFAULT_TYPE) -> User:
    assert update.effective_user is not None
    user = await get_container(context).user_service().get_by_telegram_id(
        update.effective_user.id
    )
    if user is None:
        raise UserNotFound(ERROR_NOT_REGISTERED)
    return user


@user_command
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start command.

    Registers the user on first contact and sends the welcome message with
    their custom ID.

    Args:
        update: Telegram update object containing message data.
        context: Bot context for accessing application instance.
    """
    assert update.effective_user is not None and update.message is not None
    tg_user = update.effective_user
    user = await get_container(context).user_service().register_user(
        telegram_id=tg_user.id,
        first_name=tg_user.first_name,
        username=tg_user.username,
        last_name=tg_user.last_name,
    )
    await update.message.reply_text(
        START_MESSAGE.format(first_name=user.first_name, custom_id=user.custom_id)
    )


@user_command
async def calc(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /calc <country> <weight>: quote shipping with the user's VIP discount."""
    assert update.effective_user is not None and update.message is not None
    args = context.args or []
    if len(args) != 2:
        await update.message.reply_text(CALC_USAGE)
        return

    container = get_container(context)
    from_country = args[0].upper()
    weight = parse_decimal(args[1])

    pricing = container.pricing_service()
    shipping = await pricing.compute_shipping_cost(from_country, weight)

    if shipping.delivery_days_min == shipping.delivery_days_max:
        delivery_days = DELIVERY_DAYS_EXACT.format(days=shipping.delivery_days_min)
    else:
        delivery_days = DELIVERY_DAYS_RANGE.format(
            min_days=shipping.delivery_days_min, max_days=shipping.delivery_days_max
        )

    text = CALC_RESULT.format(
        from_country=from_country,
        to_country=pricing.home_country,
        weight=format_weight(weight),
        cost=format_money(shipping.cost),
        delivery_days=delivery_days,
    )
    if shipping.cost == shipping.min_price:
        text += CALC_MIN_PRICE_NOTE.format(min_price=format_money(shipping.min_price))

    user = await container.user_service().get_by_telegram_id(update.effective_user.id)
    if user is not None:
        breakdown = pricing.apply_vip_discount(shipping.cost, user)
        if breakdown.discount_percent:
            text += CALC_DISCOUNT_LINE.format(
                percent=breakdown.discount_percent,
                discount=format_money(breakdown.discount),
                final_cost=format_money(breakdown.final_cost),
            )

    await update.message.reply_text(text)


@user_command
async def track(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /track <order number>."""
    assert update.message is not None
    args = context.args or []
    if len(args) != 1:
        await update.message.reply_text(TRACK_USAGE)
        return

    user = await _current_user(update, context)
    info = await get_container(context).tracking_service().track_order(args[0], user_id=user.id)

    text = TRACK_HEADER.format(
        order_number=info.order_number,
        status=status_label(info.status),
        location=info.location,
    )
    if info.history:
        text += TRACK_HISTORY_HEADER
        for item in info.history:
            text += TRACK_HISTORY_LINE.format(
                date=item.date.strftime("%d.%m.%Y %H:%M"),
                status=status_label(item.status),
                location=item.location,
            )
    await update.message.reply_text(text)


@user_command
async def orders(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /orders: list the user's active orders."""
    assert update.message is not None
    user = await _current_user(update, context)
    active = await get_container(context).tracking_service().get_user_active_orders(user.id)

    if not active:
        await update.message.reply_text(NO_ACTIVE_ORDERS)
        return

    text = ACTIVE_ORDERS_HEADER
    for order in active:
        text += ORDER_LINE.format(
            order_number=order.order_number,
            status=status_label(order.status),
            total_cost=format_money(order.total_cost),
        )
    await update.message.reply_text(text)


@user_command
async def balance(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /balance: balance, VIP tier and order statistics."""
    assert update.message is not None
    user = await _current_user(update, context)
    assert user.id is not None
    stats = await get_container(context).user_service().get_user_stats(user.id)

    await update.message.reply_text(
        BALANCE_MESSAGE.format(
            balance=format_money(stats.balance),
            vip_tier=stats.vip_tier.value,
            total_orders=stats.total_orders,
            active_orders=stats.active_orders,
            completed_orders=stats.completed_orders,
            total_spent=format_money(stats.total_spent),
            total_saved=format_money(stats.total_saved),
        )
    )


@user_command
async def set_status(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /setstatus <order number> <STATUS> [comment] for order managers."""
    assert update.effective_user is not None and update.message is not None
    args = context.args or []
    if len(args) < 2:
        await update.message.reply_text(SETSTATUS_USAGE)
        return

    try:
        new_status = OrderStatus(args[1].upper())
    except ValueError:
        await update.message.reply_text(
            UNKNOWN_STATUS.format(
                status=args[1], available=", ".join(status.value for status in OrderStatus)
            )
        )
        return

    comment = " ".join(args[2:]) or None
    order_service = get_container(context).order_service()
    order = await order_service.get_order_by_number(args[0])
    assert order.id is not None
    order = await order_service.transition_status(
        order.id, new_status, comment=comment, actor_admin_id=update.effective_user.id
    )
    await update.message.reply_text(
        STATUS_UPDATED.format(order_number=order.order_number, status=status_label(order.status))
    )


@user_command
async def broadcast(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /broadcast <text> for super admins."""
    assert update.effective_user is not None and update.message is not None
    container = get_container(context)
    await container.admin_directory().require(update.effective_user.id, {AdminRole.SUPER_ADMIN})

    text = " ".join(context.args or []).strip()
    if not text:
        await update.message.reply_text(BROADCAST_USAGE)
        return

    broadcast_id = await container.notification_service().broadcast(text)
    logger.info(f"Broadcast {broadcast_id} started by {update.effective_user.id}")
    await update.message.reply_text(BROADCAST_QUEUED.format(broadcast_id=broadcast_id))


@user_command
async def stats(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stats: headline figures for any admin."""
    assert update.effective_user is not None and update.message is not None
    container = get_container(context)
    await container.admin_directory().require(update.effective_user.id, set(AdminRole))

    text = QUICK_STATS_HEADER
    for label, value in await container.stats_service().get_quick_stats():
        text += QUICK_STATS_LINE.format(label=label, value=value)
    await update.message.reply_text(text)


@user_command
async def dashboard(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /dashboard: today's finances, orders and users for any admin."""
    assert update.effective_user is not None and update.message is not None
    container = get_container(context)
    await container.admin_directory().require(update.effective_user.id, set(AdminRole))

    figures = await container.stats_service().get_dashboard_stats()
    await update.message.reply_text(
        DASHBOARD_MESSAGE.format(
            date=utc_now().strftime("%d.%m.%Y"),
            today_revenue=format_money(figures.today_revenue),
            revenue_change=figures.revenue_change,
            today_payments=figures.today_payments,
            avg_order_value=format_money(figures.avg_order_value),
            pending_payments=figures.pending_payments,
            today_orders=figures.today_orders,
            shipping_orders=figures.shipping_orders,
            purchase_orders=figures.purchase_orders,
            active_orders=figures.active_orders,
            problem_orders=figures.problem_orders,
            processing_orders=figures.processing_orders,
            total_users=figures.total_users,
            today_users=figures.today_users,
            vip_users=figures.vip_users,
        )
    )
