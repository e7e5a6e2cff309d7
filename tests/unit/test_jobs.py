"""Tests for job payloads, job handlers and notification delivery."""

from decimal import Decimal

import pytest

from cargo_bot.models import JobStatus, OrderStatus
from cargo_bot.services.jobs import (
    JOB_PAYLOAD_ADAPTER,
    BroadcastJob,
    CleanupJob,
    NotificationJob,
    OrderStatusJob,
)


class TestPayloads:
    def test_discriminated_union(self):
        job = JOB_PAYLOAD_ADAPTER.validate_json('{"type": "cleanup", "target": "cache"}')
        assert isinstance(job, CleanupJob)

        job = JOB_PAYLOAD_ADAPTER.validate_python(
            {"type": "order_status", "order_id": 1, "new_status": "PAID"}
        )
        assert isinstance(job, OrderStatusJob)
        assert job.new_status is OrderStatus.PAID
        assert job.notify_user

    @pytest.mark.parametrize("target", ["everything", "sessions", "temp"])
    def test_unknown_cleanup_target_rejected(self, target):
        with pytest.raises(ValueError):
            JOB_PAYLOAD_ADAPTER.validate_python({"type": "cleanup", "target": target})


class TestNotificationDelivery:
    """Persist-then-send with dedup keys."""

    @pytest.mark.asyncio
    async def test_delivers_once_per_dedup_key(
        self, notification_service, job_queue, job_handlers, sink, user
    ):
        await notification_service.notify_user(user.id, "Посылка прибыла", "parcel-1")
        await notification_service.notify_user(user.id, "Посылка прибыла", "parcel-1")
        assert await job_queue.run_pending() == 2

        assert sink.sent == [(user.telegram_id, "Посылка прибыла")]

    @pytest.mark.asyncio
    async def test_transport_failure_is_retried(
        self, notification_service, job_queue, job_handlers, sink, user
    ):
        sink.failures = 1
        job_id = await notification_service.notify_user(user.id, "Привет", "hello-1")
        await job_queue.run_pending()

        assert sink.sent == [(user.telegram_id, "Привет")]
        record = await job_queue.get_job(job_id)
        assert record.status is JobStatus.COMPLETED
        assert record.attempts_made == 2

    @pytest.mark.asyncio
    async def test_missing_user_is_dropped(self, notification_service, job_queue, job_handlers, sink):
        job_id = await notification_service.notify_user(404, "Привет", "hello-404")
        await job_queue.run_pending()

        assert sink.sent == []
        assert (await job_queue.get_job(job_id)).status is JobStatus.COMPLETED


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_broadcast_fans_out_in_batches(
        self, notification_service, user_service, job_queue, job_handlers, sink
    ):
        users = [
            await user_service.register_user(telegram_id=1000 + i, first_name=f"User{i}")
            for i in range(5)
        ]
        await user_service.set_blocked(users[-1].id, True)

        broadcast_id = await notification_service.broadcast("Новости")
        assert len(broadcast_id) == 12

        # 4 recipients in batches of 2
        assert (await job_queue.stats())[JobStatus.WAITING] == 2

        await job_queue.run_pending()
        assert sorted(chat_id for chat_id, _ in sink.sent) == [1000, 1001, 1002, 1003]
        assert all(text == "Новости" for _, text in sink.sent)

    @pytest.mark.asyncio
    async def test_replayed_batch_does_not_duplicate(
        self, job_handlers, job_queue, user_service, sink
    ):
        user = await user_service.register_user(telegram_id=1000, first_name="User")
        batch = BroadcastJob(broadcast_id="abc", text="Новости", user_ids=[user.id])

        await job_queue.enqueue(batch)
        await job_queue.enqueue(batch)
        await job_queue.run_pending()

        assert sink.sent == [(1000, "Новости")]


class TestOrderStatusJob:
    @pytest.mark.asyncio
    async def test_transition_and_notify(
        self, order_service, job_queue, job_handlers, sink, user, reference_data
    ):
        order = await order_service.create_shipping_order(
            user.id, "US", Decimal("2.5"), Decimal("100"), "Куртка", None
        )
        job = OrderStatusJob(order_id=order.id, new_status=OrderStatus.PAID, comment="Оплата получена")

        await job_queue.enqueue(job)
        await job_queue.run_pending()

        assert (await order_service.get_order(order.id)).status is OrderStatus.PAID
        assert len(sink.sent) == 1
        assert order.order_number in sink.sent[0][1]

        # A second delivery of the same job neither transitions nor messages again
        await job_queue.enqueue(job)
        await job_queue.run_pending()

        assert len(await order_service.get_status_history(order.id)) == 1
        assert len(sink.sent) == 1

    @pytest.mark.asyncio
    async def test_invalid_transition_is_dead_lettered(
        self, order_service, job_queue, job_handlers, user, reference_data
    ):
        order = await order_service.create_shipping_order(
            user.id, "US", Decimal("2.5"), Decimal("100"), "Куртка", None
        )
        job_id = await job_queue.enqueue(
            OrderStatusJob(order_id=order.id, new_status=OrderStatus.DELIVERED)
        )
        await job_queue.run_pending()

        record = await job_queue.get_job(job_id)
        assert record.status is JobStatus.FAILED
        assert record.attempts_made == 1


class TestCleanupJob:
    @pytest.mark.asyncio
    async def test_cache_cleanup(self, job_queue, job_handlers, fake_redis):
        fake_redis.data.update(
            {
                "cargo:shipping:US:RU:1": "{}",
                "cargo:stats:1": "{}",
                "cargo:rates:cbr:USD": "{}",
            }
        )
        await job_handlers.handle(CleanupJob(target="cache"))
        assert sorted(fake_redis.data) == ["cargo:rates:cbr:USD"]

    @pytest.mark.asyncio
    async def test_jobs_cleanup_purges_queue(self, job_queue, job_handlers, monkeypatch):
        purged = []

        async def fake_purge():
            purged.append(True)
            return 0

        monkeypatch.setattr(job_queue, "purge_finished", fake_purge)
        await job_handlers.handle(CleanupJob(target="jobs"))
        assert purged == [True]

    @pytest.mark.asyncio
    async def test_notification_job_dispatch(self, job_handlers, sink, user):
        await job_handlers.handle(NotificationJob(user_id=user.id, text="Тест", dedup_key="t-1"))
        assert sink.sent == [(user.telegram_id, "Тест")]
