"""Background job payloads and their handlers.

Every job is one member of a discriminated union keyed on `type`. Handlers
are dispatched exhaustively, so adding a payload type without a handler is a
type error rather than a silently dropped job.

Job chains are acyclic: `order_status` and `broadcast` enqueue only
`notification` jobs, and `notification` jobs never enqueue anything.
"""

import logging
from typing import TYPE_CHECKING, Annotated, Literal, assert_never

from pydantic import BaseModel, Field, TypeAdapter

from ..models import OrderStatus

if TYPE_CHECKING:
    from .cache_service import CacheService
    from .job_queue import JobQueue
    from .notifications import NotificationService
    from .orders import OrderService

logger = logging.getLogger(__name__)


class NotificationJob(BaseModel):
    """Deliver one message to one user.

    Attributes:
        user_id: Internal user ID of the recipient.
        text: Message text.
        dedup_key: Unique key; a notification already sent under it is skipped.
        order_id: Related order, if any.
    """

    type: Literal["notification"] = "notification"
    user_id: int
    text: str
    dedup_key: str
    order_id: int | None = None


class OrderStatusJob(BaseModel):
    """Move an order to a status, then notify its owner."""

    type: Literal["order_status"] = "order_status"
    order_id: int
    new_status: OrderStatus
    comment: str | None = None
    admin_id: int | None = None
    notify_user: bool = True


class BroadcastJob(BaseModel):
    """Fan one message out to a batch of users."""

    type: Literal["broadcast"] = "broadcast"
    broadcast_id: str
    text: str
    user_ids: list[int]


class CleanupJob(BaseModel):
    """Maintenance: drop derived cache entries or purge finished jobs."""

    type: Literal["cleanup"] = "cleanup"
    target: Literal["cache", "jobs"]


JobPayload = Annotated[
    NotificationJob | OrderStatusJob | BroadcastJob | CleanupJob,
    Field(discriminator="type"),
]

JOB_PAYLOAD_ADAPTER: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)

# Exchange rates are left to expire on their own TTL
CLEANUP_PREFIXES: dict[str, tuple[str, ...]] = {
    "cache": ("shipping:", "stats:"),
}


def status_dedup_key(history_entry_id: int) -> str:
    """Dedup key of the notification announcing one status change."""
    return f"order-status:{history_entry_id}"


class JobHandlers:
    """Executes job payloads against the services."""

    def __init__(
        self,
        queue: "JobQueue",
        orders: "OrderService",
        notifications: "NotificationService",
        cache: "CacheService",
    ):
        self.queue = queue
        self.orders = orders
        self.notifications = notifications
        self.cache = cache

    async def handle(self, job: JobPayload) -> None:
        match job:
            case NotificationJob():
                await self.notifications.deliver(job)
            case OrderStatusJob():
                await self._handle_order_status(job)
            case BroadcastJob():
                await self._handle_broadcast(job)
            case CleanupJob():
                await self._handle_cleanup(job)
            case _:
                assert_never(job)

    async def _handle_order_status(self, job: OrderStatusJob) -> None:
        """Apply the transition unless an earlier attempt already did."""
        order = await self.orders.get_order(job.order_id)
        if order.status != job.new_status:
            order = await self.orders.transition_status(
                job.order_id,
                job.new_status,
                comment=job.comment or "Автоматическое обновление",
                actor_admin_id=job.admin_id,
                notify=False,
            )
        else:
            logger.info(f"Order {order.order_number} already {job.new_status}, skipping transition")

        if job.notify_user:
            await self.orders.enqueue_status_notification(order)

    async def _handle_broadcast(self, job: BroadcastJob) -> None:
        for user_id in job.user_ids:
            await self.queue.enqueue(
                NotificationJob(
                    user_id=user_id,
                    text=job.text,
                    dedup_key=f"broadcast:{job.broadcast_id}:{user_id}",
                )
            )
        logger.info(f"Broadcast {job.broadcast_id} queued for {len(job.user_ids)} users")

    async def _handle_cleanup(self, job: CleanupJob) -> None:
        if job.target == "jobs":
            purged = await self.queue.purge_finished()
            logger.info(f"Purged {purged} finished jobs")
            return

        removed = 0
        for prefix in CLEANUP_PREFIXES[job.target]:
            removed += await self.cache.invalidate_prefix(prefix)
        logger.info(f"Cleanup '{job.target}' removed {removed} cache entries")
