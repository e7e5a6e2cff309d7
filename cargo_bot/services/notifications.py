"""User notifications and broadcasts.

Notifications are persisted under a unique dedup key before delivery and
marked sent afterwards, so a retried notification job does not message the
user twice once the first delivery was recorded. A crash between the
Telegram send and the sent mark can still produce a duplicate.
"""

import logging
import uuid
from collections.abc import Sequence
from typing import Any, Protocol

from telegram import Bot
from telegram.error import TelegramError

from ..errors import NotificationDeliveryError
from ..models import Notification
from .database import Database
from .job_queue import JobQueue
from .jobs import BroadcastJob, NotificationJob
from .repository import Repository

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def send(self, chat_id: int, message: str, context: dict[str, Any] | None = None) -> bool:
        """Deliver a message; False when the transport refused it."""
        ...


class TelegramNotificationSink:
    """Sends notifications as Telegram messages."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send(self, chat_id: int, message: str, context: dict[str, Any] | None = None) -> bool:
        try:
            await self.bot.send_message(chat_id=chat_id, text=message)
            return True
        except TelegramError as e:
            logger.warning(f"Failed to send notification to {chat_id}: {e} ({context or {}})")
            return False


class NotificationService:
    """Queues, persists and delivers user notifications.

    Attributes:
        database: Store for notification records.
        queue: Queue notification and broadcast jobs go to.
        sink: Delivery transport.
        batch_size: User IDs per broadcast job.
    """

    def __init__(
        self,
        database: Database,
        queue: JobQueue,
        sink: NotificationSink,
        batch_size: int = 100,
    ):
        self.database = database
        self.queue = queue
        self.sink = sink
        self.batch_size = batch_size

    async def notify_user(
        self, user_id: int, text: str, dedup_key: str, order_id: int | None = None
    ) -> int:
        """Queue a notification for one user; returns the job ID."""
        return await self.queue.enqueue(
            NotificationJob(user_id=user_id, text=text, dedup_key=dedup_key, order_id=order_id)
        )

    async def deliver(self, job: NotificationJob) -> bool:
        """Persist and send a notification.

        Returns:
            False when the notification was skipped (already sent or the
            user no longer exists), True when it was delivered now.

        Raises:
            NotificationDeliveryError: The transport refused the message;
                the job is retried.
        """

        def persist(repo: Repository) -> tuple[Notification, int] | None:
            user = repo.get_user(job.user_id)
            if user is None:
                return None
            notification, _ = repo.insert_notification(
                Notification(
                    user_id=job.user_id,
                    text=job.text,
                    order_id=job.order_id,
                    dedup_key=job.dedup_key,
                )
            )
            return notification, user.telegram_id

        stored = await self.database.run(persist)
        if stored is None:
            logger.warning(f"Notification {job.dedup_key} dropped: user {job.user_id} not found")
            return False

        notification, chat_id = stored
        if notification.is_sent:
            logger.info(f"Notification {job.dedup_key} already sent, skipping")
            return False

        delivered = await self.sink.send(
            chat_id, job.text, {"dedup_key": job.dedup_key, "order_id": job.order_id}
        )
        if not delivered:
            raise NotificationDeliveryError(dedup_key=job.dedup_key, user_id=job.user_id)

        assert notification.id is not None
        await self.database.run(lambda repo: repo.mark_notification_sent(notification.id))
        logger.debug(f"Notification {job.dedup_key} delivered to {chat_id}")
        return True

    async def broadcast(self, text: str, user_ids: Sequence[int] | None = None) -> str:
        """Queue a message for many users in batches.

        Args:
            text: Message text.
            user_ids: Recipients; every non-blocked user when omitted.

        Returns:
            Broadcast ID used in the recipients' dedup keys.
        """
        if user_ids is None:
            user_ids = await self.database.run(
                lambda repo: repo.list_broadcast_user_ids(), write=False
            )

        broadcast_id = uuid.uuid4().hex[:12]
        batches = 0
        for start in range(0, len(user_ids), self.batch_size):
            await self.queue.enqueue(
                BroadcastJob(
                    broadcast_id=broadcast_id,
                    text=text,
                    user_ids=list(user_ids[start : start + self.batch_size]),
                )
            )
            batches += 1

        logger.info(
            f"Broadcast {broadcast_id} queued: {len(user_ids)} users in {batches} batches"
        )
        return broadcast_id
