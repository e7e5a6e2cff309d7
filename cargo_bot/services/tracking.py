"""Order tracking by order number."""

import logging

from ..errors import OrderNotFound
from ..models import Order, TrackingHistoryItem, TrackingInfo
from .database import Database
from .order_status import TERMINAL_STATUSES, location_by_status
from .repository import Repository

logger = logging.getLogger(__name__)


class TrackingService:
    def __init__(self, database: Database):
        self.database = database

    async def track_order(self, order_number: str, user_id: int | None = None) -> TrackingInfo:
        """Build tracking details for an order.

        Args:
            order_number: Public order number, case-insensitive.
            user_id: When given, only this user's orders are visible.

        Raises:
            OrderNotFound: Unknown number, or an order of another user.
        """
        order_number = order_number.strip().upper()

        def work(repo: Repository) -> TrackingInfo:
            order = repo.get_order_by_number(order_number)
            if order is None or (user_id is not None and order.user_id != user_id):
                raise OrderNotFound(order_number=order_number)
            assert order.id is not None

            from_country = repo.get_country(order.from_country)
            to_country = repo.get_country(order.to_country)
            from_name = from_country.name if from_country else order.from_country
            to_name = to_country.name if to_country else order.to_country

            history = [
                TrackingHistoryItem(
                    date=entry.created_at,
                    status=entry.new_status,
                    location=location_by_status(entry.new_status, from_name, to_name),
                )
                for entry in repo.list_status_history(order.id)
            ]
            location = location_by_status(order.status, from_name, to_name)
            if not history or history[-1].status != order.status:
                history.append(
                    TrackingHistoryItem(date=order.updated_at, status=order.status, location=location)
                )

            return TrackingInfo(
                order_number=order.order_number,
                status=order.status,
                location=location,
                from_country=from_name,
                to_country=to_name,
                weight=order.weight,
                updated_at=order.updated_at,
                history=history,
            )

        return await self.database.run(work, write=False)

    async def get_user_active_orders(self, user_id: int, limit: int = 10) -> list[Order]:
        """Most recent orders that have not reached a terminal status."""

        def work(repo: Repository) -> list[Order]:
            orders = repo.list_user_orders(user_id)
            return [o for o in orders if o.status not in TERMINAL_STATUSES][:limit]

        return await self.database.run(work, write=False)
