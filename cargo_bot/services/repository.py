"""Synchronous data access bound to one store transaction.

A Repository wraps the connection of a single transaction opened by
Database.run. Methods never commit; the caller's transaction boundary does.
Decimals are stored as TEXT and datetimes as ISO-8601 strings so values
round-trip exactly.
"""

import json
import sqlite3
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel

from ..models import (
    Address,
    Admin,
    Country,
    JobRecord,
    JobStatus,
    Notification,
    Order,
    OrderItem,
    OrderStatus,
    OrderType,
    Product,
    ShippingTariff,
    StatusHistoryEntry,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    VipTier,
    Warehouse,
    utc_now,
)

M = TypeVar("M", bound=BaseModel)


def _param(value: Any) -> Any:
    """Convert a Python value into something sqlite3 stores losslessly."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, list):
        return json.dumps(value, ensure_ascii=False)
    return value


def _model(model: type[M], row: sqlite3.Row | None) -> M | None:
    if row is None:
        return None
    return model.model_validate(dict(row))


class Repository:
    """Table-level operations on one open transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _insert(self, table: str, model: BaseModel, verb: str = "INSERT") -> int:
        data = model.model_dump(exclude={"id"})
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        cursor = self.conn.execute(
            f"{verb} INTO {table} ({columns}) VALUES ({placeholders})",
            [_param(value) for value in data.values()],
        )
        return int(cursor.lastrowid or 0)

    def _update(self, table: str, row_id: int, **fields: Any) -> int:
        assignments = ", ".join(f"{column} = ?" for column in fields)
        cursor = self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            [*(_param(value) for value in fields.values()), row_id],
        )
        return cursor.rowcount

    def _one(self, sql: str, *params: Any) -> sqlite3.Row | None:
        return self.conn.execute(sql, [_param(p) for p in params]).fetchone()

    def _all(self, sql: str, *params: Any) -> list[sqlite3.Row]:
        return self.conn.execute(sql, [_param(p) for p in params]).fetchall()

    # Reference data

    def upsert_country(self, country: Country) -> Country:
        data = country.model_dump()
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        self.conn.execute(
            f"INSERT OR REPLACE INTO countries ({columns}) VALUES ({placeholders})",
            [_param(value) for value in data.values()],
        )
        return country

    def get_country(self, code: str) -> Country | None:
        return _model(Country, self._one("SELECT * FROM countries WHERE code = ?", code))

    def add_warehouse(self, warehouse: Warehouse) -> Warehouse:
        return warehouse.model_copy(update={"id": self._insert("warehouses", warehouse)})

    def _warehouse(self, row: sqlite3.Row | None) -> Warehouse | None:
        if row is None:
            return None
        data = dict(row)
        data["restrictions"] = json.loads(data["restrictions"] or "[]")
        return Warehouse.model_validate(data)

    def get_warehouse(self, warehouse_id: int) -> Warehouse | None:
        return self._warehouse(self._one("SELECT * FROM warehouses WHERE id = ?", warehouse_id))

    def list_warehouses(self, country_code: str, active_only: bool = True) -> list[Warehouse]:
        sql = "SELECT * FROM warehouses WHERE country_code = ?"
        if active_only:
            sql += " AND is_active = 1"
        rows = self._all(sql + " ORDER BY id", country_code)
        return [w for w in (self._warehouse(row) for row in rows) if w is not None]

    def add_tariff(self, tariff: ShippingTariff) -> ShippingTariff:
        return tariff.model_copy(update={"id": self._insert("shipping_tariffs", tariff)})

    def find_active_tariff(self, from_country: str, to_country: str) -> ShippingTariff | None:
        """Newest active tariff for a directed route."""
        row = self._one(
            """
            SELECT * FROM shipping_tariffs
            WHERE from_country = ? AND to_country = ? AND is_active = 1
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            from_country,
            to_country,
        )
        return _model(ShippingTariff, row)

    def list_active_tariffs(self, from_country: str) -> list[ShippingTariff]:
        """Effective outbound tariffs, one per destination."""
        rows = self._all(
            """
            SELECT * FROM shipping_tariffs
            WHERE from_country = ? AND is_active = 1
            ORDER BY to_country, created_at DESC, id DESC
            """,
            from_country,
        )
        tariffs: dict[str, ShippingTariff] = {}
        for row in rows:
            tariff = ShippingTariff.model_validate(dict(row))
            tariffs.setdefault(tariff.to_country, tariff)
        return list(tariffs.values())

    def add_product(self, product: Product) -> Product:
        return product.model_copy(update={"id": self._insert("products", product)})

    def get_product(self, product_id: int) -> Product | None:
        return _model(Product, self._one("SELECT * FROM products WHERE id = ?", product_id))

    # Users

    def add_user(self, user: User) -> User:
        return user.model_copy(update={"id": self._insert("users", user)})

    def get_user(self, user_id: int) -> User | None:
        return _model(User, self._one("SELECT * FROM users WHERE id = ?", user_id))

    def get_user_by_telegram_id(self, telegram_id: int) -> User | None:
        return _model(User, self._one("SELECT * FROM users WHERE telegram_id = ?", telegram_id))

    def get_user_by_custom_id(self, custom_id: str) -> User | None:
        return _model(User, self._one("SELECT * FROM users WHERE custom_id = ?", custom_id))

    def custom_id_exists(self, custom_id: str) -> bool:
        return self._one("SELECT 1 FROM users WHERE custom_id = ?", custom_id) is not None

    def update_user(self, user_id: int, **fields: Any) -> None:
        self._update("users", user_id, **fields)

    def set_balance(self, user_id: int, balance: Decimal) -> None:
        self._update("users", user_id, balance=balance)

    def list_broadcast_user_ids(self) -> list[int]:
        rows = self._all("SELECT id FROM users WHERE is_blocked = 0 ORDER BY id")
        return [row["id"] for row in rows]

    def add_address(self, address: Address) -> Address:
        return address.model_copy(update={"id": self._insert("addresses", address)})

    def get_address(self, address_id: int) -> Address | None:
        return _model(Address, self._one("SELECT * FROM addresses WHERE id = ?", address_id))

    def list_addresses(self, user_id: int) -> list[Address]:
        rows = self._all(
            "SELECT * FROM addresses WHERE user_id = ? AND is_active = 1 "
            "ORDER BY is_default DESC, id",
            user_id,
        )
        return [Address.model_validate(dict(row)) for row in rows]

    def clear_default_address(self, user_id: int) -> None:
        self.conn.execute("UPDATE addresses SET is_default = 0 WHERE user_id = ?", [user_id])

    def update_address(self, address_id: int, **fields: Any) -> None:
        self._update("addresses", address_id, **fields)

    def deactivate_address(self, address_id: int) -> None:
        self._update("addresses", address_id, is_active=False, is_default=False)

    def add_admin(self, admin: Admin) -> Admin:
        return admin.model_copy(update={"id": self._insert("admins", admin)})

    def get_admin_by_telegram_id(self, telegram_id: int) -> Admin | None:
        return _model(Admin, self._one("SELECT * FROM admins WHERE telegram_id = ?", telegram_id))

    # Orders

    def order_number_exists(self, order_number: str) -> bool:
        return self._one("SELECT 1 FROM orders WHERE order_number = ?", order_number) is not None

    def add_order(self, order: Order) -> Order:
        return order.model_copy(update={"id": self._insert("orders", order)})

    def get_order(self, order_id: int) -> Order | None:
        return _model(Order, self._one("SELECT * FROM orders WHERE id = ?", order_id))

    def get_order_by_number(self, order_number: str) -> Order | None:
        return _model(Order, self._one("SELECT * FROM orders WHERE order_number = ?", order_number))

    def list_user_orders(
        self,
        user_id: int,
        statuses: Iterable[OrderStatus] | None = None,
        limit: int | None = None,
    ) -> list[Order]:
        sql = "SELECT * FROM orders WHERE user_id = ?"
        params: list[Any] = [user_id]
        if statuses is not None:
            wanted = list(statuses)
            sql += f" AND status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        sql += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [Order.model_validate(dict(row)) for row in self._all(sql, *params)]

    def update_order_status(self, order_id: int, status: OrderStatus) -> None:
        self._update("orders", order_id, status=status, updated_at=utc_now())

    def add_order_item(self, item: OrderItem) -> OrderItem:
        return item.model_copy(update={"id": self._insert("order_items", item)})

    def list_order_items(self, order_id: int) -> list[OrderItem]:
        rows = self._all("SELECT * FROM order_items WHERE order_id = ? ORDER BY id", order_id)
        return [OrderItem.model_validate(dict(row)) for row in rows]

    def add_status_history(self, entry: StatusHistoryEntry) -> StatusHistoryEntry:
        return entry.model_copy(update={"id": self._insert("status_history", entry)})

    def list_status_history(self, order_id: int) -> list[StatusHistoryEntry]:
        rows = self._all("SELECT * FROM status_history WHERE order_id = ? ORDER BY id", order_id)
        return [StatusHistoryEntry.model_validate(dict(row)) for row in rows]

    # Ledger

    def transaction_id_exists(self, transaction_id: str) -> bool:
        row = self._one("SELECT 1 FROM transactions WHERE transaction_id = ?", transaction_id)
        return row is not None

    def add_transaction(self, transaction: Transaction) -> Transaction:
        return transaction.model_copy(update={"id": self._insert("transactions", transaction)})

    def list_transactions(
        self, user_id: int, status: TransactionStatus | None = None
    ) -> list[Transaction]:
        sql = "SELECT * FROM transactions WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        rows = self._all(sql + " ORDER BY id", *params)
        return [Transaction.model_validate(dict(row)) for row in rows]

    # Notifications

    def insert_notification(self, notification: Notification) -> tuple[Notification, bool]:
        """Insert unless the dedup key exists.

        Returns:
            The stored notification and whether this call created it.
        """
        self._insert("notifications", notification, verb="INSERT OR IGNORE")
        created = self.conn.execute("SELECT changes()").fetchone()[0] > 0
        row = self._one("SELECT * FROM notifications WHERE dedup_key = ?", notification.dedup_key)
        stored = _model(Notification, row)
        assert stored is not None
        return stored, created

    def mark_notification_sent(self, notification_id: int) -> None:
        self._update("notifications", notification_id, is_sent=True, sent_at=utc_now())

    # Jobs

    def insert_job(
        self,
        job_type: str,
        payload: str,
        max_attempts: int,
        backoff_delay: float,
        run_at: float,
        now: float,
        repeat_key: str | None = None,
        repeat_every: float | None = None,
        repeat_cron: str | None = None,
    ) -> int:
        """Insert a job; a repeat key already present updates that row instead."""
        self.conn.execute(
            """
            INSERT INTO jobs (job_type, payload, status, max_attempts, backoff_delay,
                              run_at, repeat_key, repeat_every, repeat_cron, created_at)
            VALUES (?, ?, 'waiting', ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(repeat_key) DO UPDATE SET
                payload = excluded.payload,
                max_attempts = excluded.max_attempts,
                backoff_delay = excluded.backoff_delay,
                repeat_every = excluded.repeat_every,
                repeat_cron = excluded.repeat_cron,
                run_at = CASE WHEN jobs.status = 'waiting' THEN jobs.run_at
                              WHEN jobs.status = 'active' THEN jobs.run_at
                              ELSE excluded.run_at END,
                attempts_made = CASE WHEN jobs.status = 'failed' THEN 0
                                     ELSE jobs.attempts_made END,
                status = CASE WHEN jobs.status = 'active' THEN 'active' ELSE 'waiting' END
            """,
            [
                job_type,
                payload,
                max_attempts,
                backoff_delay,
                run_at,
                repeat_key,
                repeat_every,
                repeat_cron,
                now,
            ],
        )
        if repeat_key is None:
            return int(self.conn.execute("SELECT last_insert_rowid()").fetchone()[0])
        row = self._one("SELECT id FROM jobs WHERE repeat_key = ?", repeat_key)
        assert row is not None
        return int(row["id"])

    def get_job(self, job_id: int) -> JobRecord | None:
        return _model(JobRecord, self._one("SELECT * FROM jobs WHERE id = ?", job_id))

    def fail_abandoned_jobs(self, now: float) -> int:
        """Dead-letter active jobs whose lease expired on their last attempt."""
        cursor = self.conn.execute(
            """
            UPDATE jobs
            SET status = 'failed', locked_until = NULL, finished_at = ?,
                last_error = COALESCE(last_error, 'lease expired')
            WHERE status = 'active' AND locked_until < ? AND attempts_made >= max_attempts
            """,
            [now, now],
        )
        return cursor.rowcount

    def claim_job(self, now: float, lease: float) -> JobRecord | None:
        """Take the next due job, or one whose lease expired, and lease it."""
        row = self._one(
            """
            SELECT id FROM jobs
            WHERE (status = 'waiting' AND run_at <= ?)
               OR (status = 'active' AND locked_until < ?)
            ORDER BY run_at, id
            LIMIT 1
            """,
            now,
            now,
        )
        if row is None:
            return None
        self.conn.execute(
            """
            UPDATE jobs
            SET status = 'active', locked_until = ?, attempts_made = attempts_made + 1
            WHERE id = ?
            """,
            [now + lease, row["id"]],
        )
        return self.get_job(row["id"])

    def complete_job(self, job_id: int, now: float) -> None:
        self._update(
            "jobs", job_id, status=JobStatus.COMPLETED, locked_until=None, finished_at=now
        )

    def reschedule_job(self, job_id: int, run_at: float) -> None:
        """Return a repeating job to the waiting set for its next run."""
        self._update(
            "jobs",
            job_id,
            status=JobStatus.WAITING,
            attempts_made=0,
            locked_until=None,
            run_at=run_at,
            last_error=None,
        )

    def retry_job(self, job_id: int, run_at: float, error: str) -> None:
        self._update(
            "jobs",
            job_id,
            status=JobStatus.WAITING,
            locked_until=None,
            run_at=run_at,
            last_error=error,
        )

    def fail_job(self, job_id: int, error: str, now: float) -> None:
        self._update(
            "jobs",
            job_id,
            status=JobStatus.FAILED,
            locked_until=None,
            last_error=error,
            finished_at=now,
        )

    def replay_job(self, job_id: int, now: float) -> bool:
        cursor = self.conn.execute(
            """
            UPDATE jobs
            SET status = 'waiting', attempts_made = 0, run_at = ?, last_error = NULL,
                finished_at = NULL, locked_until = NULL
            WHERE id = ? AND status = 'failed'
            """,
            [now, job_id],
        )
        return cursor.rowcount > 0

    def list_jobs(self, status: JobStatus, limit: int = 100) -> list[JobRecord]:
        rows = self._all("SELECT * FROM jobs WHERE status = ? ORDER BY id LIMIT ?", status, limit)
        return [JobRecord.model_validate(dict(row)) for row in rows]

    def count_jobs_by_status(self) -> dict[str, int]:
        rows = self._all("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status")
        counts = {status.value: 0 for status in JobStatus}
        counts.update({row["status"]: row["count"] for row in rows})
        return counts

    def purge_jobs(self, status: JobStatus, finished_before: float) -> int:
        """Delete finished one-shot jobs older than a cutoff."""
        cursor = self.conn.execute(
            "DELETE FROM jobs WHERE status = ? AND repeat_key IS NULL AND finished_at < ?",
            [_param(status), finished_before],
        )
        return cursor.rowcount

    # Statistics

    def sum_payments(self, since: datetime, until: datetime | None = None) -> Decimal:
        """Total of successful payments created in [since, until)."""
        sql = "SELECT amount FROM transactions WHERE type = ? AND status = ? AND created_at >= ?"
        params: list[Any] = [TransactionType.PAYMENT, TransactionStatus.SUCCESS, since]
        if until is not None:
            sql += " AND created_at < ?"
            params.append(until)
        # Amounts are TEXT, so SQL SUM would go through floats
        return sum((Decimal(row["amount"]) for row in self._all(sql, *params)), Decimal("0"))

    def count_payments(self, since: datetime) -> int:
        row = self._one(
            "SELECT COUNT(*) AS count FROM transactions WHERE type = ? AND created_at >= ?",
            TransactionType.PAYMENT,
            since,
        )
        return row["count"] if row else 0

    def count_orders(
        self,
        since: datetime | None = None,
        statuses: Iterable[OrderStatus] | None = None,
        exclude_statuses: Iterable[OrderStatus] | None = None,
        types: Iterable[OrderType] | None = None,
    ) -> int:
        """Count orders matching every given filter."""
        clauses: list[str] = []
        params: list[Any] = []
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since)
        for column, values, operator in (
            ("status", statuses, "IN"),
            ("status", exclude_statuses, "NOT IN"),
            ("type", types, "IN"),
        ):
            if values is None:
                continue
            wanted = list(values)
            clauses.append(f"{column} {operator} ({', '.join('?' for _ in wanted)})")
            params.extend(wanted)

        sql = "SELECT COUNT(*) AS count FROM orders"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        row = self._one(sql, *params)
        return row["count"] if row else 0

    def count_users(self, since: datetime | None = None) -> int:
        if since is None:
            row = self._one("SELECT COUNT(*) AS count FROM users")
        else:
            row = self._one("SELECT COUNT(*) AS count FROM users WHERE created_at >= ?", since)
        return row["count"] if row else 0

    def list_vip_users(self) -> list[User]:
        """Users holding a paid tier, expired or not."""
        rows = self._all("SELECT * FROM users WHERE vip_tier != ? ORDER BY id", VipTier.REGULAR)
        return [User.model_validate(dict(row)) for row in rows]
