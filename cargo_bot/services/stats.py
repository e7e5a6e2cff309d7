"""Business statistics for the admin dashboard."""

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from ..models import DashboardStats, OrderStatus, OrderType, VipTier, as_utc, utc_now
from .database import Database
from .order_status import TERMINAL_STATUSES
from .repository import Repository
from .users import money

logger = logging.getLogger(__name__)

PURCHASE_TYPES = (OrderType.PURCHASE, OrderType.FIXED_PRICE)


def day_start(moment: datetime) -> datetime:
    """Midnight UTC of the day containing `moment`."""
    return as_utc(moment).replace(hour=0, minute=0, second=0, microsecond=0)


def percent_change(current: Decimal, previous: Decimal) -> Decimal:
    if previous == 0:
        return Decimal("0")
    change = (current - previous) / previous * 100
    return change.quantize(Decimal("0.1"), ROUND_HALF_UP)


class StatsService:
    """Read-only aggregates over orders, payments and users."""

    def __init__(self, database: Database):
        self.database = database

    async def get_dashboard_stats(self, now: datetime | None = None) -> DashboardStats:
        """Collect dashboard figures in one read transaction.

        Args:
            now: Reference time, defaults to the current time.

        Returns:
            Today's revenue and order counts compared with yesterday, plus
            current order and user totals.
        """
        now = as_utc(now) if now is not None else utc_now()
        today = day_start(now)
        yesterday = today - timedelta(days=1)

        def work(repo: Repository) -> DashboardStats:
            today_revenue = repo.sum_payments(since=today)
            yesterday_revenue = repo.sum_payments(since=yesterday, until=today)
            today_orders = repo.count_orders(since=today)
            vip_users = sum(
                1
                for user in repo.list_vip_users()
                if user.effective_vip_tier(now) is not VipTier.REGULAR
            )
            return DashboardStats(
                today_revenue=today_revenue,
                yesterday_revenue=yesterday_revenue,
                revenue_change=percent_change(today_revenue, yesterday_revenue),
                avg_order_value=(
                    money(today_revenue / today_orders) if today_orders else Decimal("0")
                ),
                today_orders=today_orders,
                today_users=repo.count_users(since=today),
                today_payments=repo.count_payments(since=today),
                pending_payments=repo.count_orders(since=today, statuses=[OrderStatus.CREATED]),
                shipping_orders=repo.count_orders(since=today, types=[OrderType.SHIPPING]),
                purchase_orders=repo.count_orders(since=today, types=PURCHASE_TYPES),
                active_orders=repo.count_orders(exclude_statuses=TERMINAL_STATUSES),
                problem_orders=repo.count_orders(statuses=[OrderStatus.PROBLEM]),
                processing_orders=repo.count_orders(statuses=[OrderStatus.PROCESSING]),
                vip_users=vip_users,
                total_users=repo.count_users(),
            )

        stats = await self.database.run(work, write=False)
        logger.debug(f"Dashboard stats for {today.date()}: {stats.today_orders} orders today")
        return stats

    async def get_quick_stats(self, now: datetime | None = None) -> list[tuple[str, str]]:
        """Four headline figures as (label, value) pairs for the /stats command."""
        now = as_utc(now) if now is not None else utc_now()
        today = day_start(now)

        def work(repo: Repository) -> list[tuple[str, str]]:
            revenue = repo.sum_payments(since=today)
            return [
                ("Выручка сегодня", f"{revenue:,.0f} ₽".replace(",", " ")),
                ("Заказов сегодня", str(repo.count_orders(since=today))),
                ("Новых пользователей", str(repo.count_users(since=today))),
                ("Активных заказов", str(repo.count_orders(exclude_statuses=TERMINAL_STATUSES))),
            ]

        return await self.database.run(work, write=False)
