"""Transactional SQLite store.

Every unit of work runs on its own connection inside one transaction, in a
worker thread so the event loop never blocks on disk or lock waits. Writers
take the database lock up front with BEGIN IMMEDIATE; a busy timeout bounds
the lock wait and a progress handler bounds execution time. Transient
failures (locked database, interrupted statement) are retried with
exponential backoff, constraint violations are not.
"""

import asyncio
import logging
import sqlite3
import time
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from ..config import StoreConfig
from ..errors import ConstraintViolation, StoreError, TransientStoreError
from .repository import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fragments of sqlite3.OperationalError messages worth retrying
TRANSIENT_MARKERS = ("locked", "busy", "interrupted")


def is_transient(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


SCHEMA = """
CREATE TABLE IF NOT EXISTS countries (
    code TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    currency TEXT NOT NULL,
    shipping_available INTEGER NOT NULL DEFAULT 1,
    purchase_available INTEGER NOT NULL DEFAULT 1,
    purchase_commission TEXT NOT NULL DEFAULT '0',
    popularity_score INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS warehouses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    country_code TEXT NOT NULL REFERENCES countries(code),
    name TEXT NOT NULL,
    address TEXT NOT NULL DEFAULT '',
    max_weight_kg TEXT NOT NULL,
    max_declared_value TEXT NOT NULL,
    restrictions TEXT NOT NULL DEFAULT '[]',
    operating_hours TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS shipping_tariffs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    from_country TEXT NOT NULL REFERENCES countries(code),
    to_country TEXT NOT NULL REFERENCES countries(code),
    price_per_kg TEXT NOT NULL,
    min_price TEXT NOT NULL,
    delivery_days_min INTEGER NOT NULL,
    delivery_days_max INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    CHECK (delivery_days_min <= delivery_days_max)
);
CREATE INDEX IF NOT EXISTS idx_tariffs_route
    ON shipping_tariffs(from_country, to_country, is_active);

CREATE TABLE IF NOT EXISTS products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    country_code TEXT NOT NULL REFERENCES countries(code),
    name TEXT NOT NULL,
    price TEXT NOT NULL,
    currency TEXT NOT NULL,
    estimated_weight TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_id INTEGER NOT NULL UNIQUE,
    custom_id TEXT NOT NULL UNIQUE,
    username TEXT,
    first_name TEXT NOT NULL,
    last_name TEXT,
    phone TEXT,
    email TEXT,
    balance TEXT NOT NULL DEFAULT '0',
    vip_tier TEXT NOT NULL DEFAULT 'REGULAR',
    vip_expires_at TEXT,
    is_blocked INTEGER NOT NULL DEFAULT 0,
    block_reason TEXT,
    created_at TEXT NOT NULL,
    last_activity TEXT
);

CREATE TABLE IF NOT EXISTS addresses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    alias TEXT NOT NULL,
    city TEXT NOT NULL,
    address TEXT NOT NULL,
    postal_code TEXT,
    is_default INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS admins (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_id INTEGER NOT NULL UNIQUE,
    role TEXT NOT NULL,
    first_name TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_number TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    user_id INTEGER NOT NULL REFERENCES users(id),
    from_country TEXT NOT NULL,
    to_country TEXT NOT NULL,
    warehouse_id INTEGER REFERENCES warehouses(id),
    address_id INTEGER REFERENCES addresses(id),
    weight TEXT,
    declared_value TEXT,
    declared_currency TEXT,
    description TEXT,
    purchase_url TEXT,
    purchase_notes TEXT,
    exchange_rate TEXT,
    product_cost TEXT NOT NULL DEFAULT '0',
    commission TEXT NOT NULL DEFAULT '0',
    delivery_cost TEXT NOT NULL DEFAULT '0',
    discount TEXT NOT NULL DEFAULT '0',
    prepaid_amount TEXT NOT NULL DEFAULT '0',
    total_cost TEXT NOT NULL DEFAULT '0',
    tracking_number TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id, status);

CREATE TABLE IF NOT EXISTS order_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
    product_id INTEGER REFERENCES products(id),
    name TEXT NOT NULL,
    quantity INTEGER NOT NULL CHECK (quantity > 0),
    price TEXT NOT NULL,
    currency TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS status_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
    old_status TEXT,
    new_status TEXT NOT NULL,
    comment TEXT,
    admin_id INTEGER,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_status_history_order ON status_history(order_id, id);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transaction_id TEXT NOT NULL UNIQUE,
    user_id INTEGER NOT NULL REFERENCES users(id),
    order_id INTEGER REFERENCES orders(id),
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL DEFAULT 'RUB',
    description TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    text TEXT NOT NULL,
    order_id INTEGER REFERENCES orders(id),
    dedup_key TEXT NOT NULL UNIQUE,
    is_sent INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    sent_at TEXT
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'waiting',
    attempts_made INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    backoff_delay REAL NOT NULL,
    run_at REAL NOT NULL,
    locked_until REAL,
    repeat_key TEXT UNIQUE,
    repeat_every REAL,
    repeat_cron TEXT,
    last_error TEXT,
    created_at REAL NOT NULL,
    finished_at REAL
);
CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs(status, run_at);
"""


class Database:
    """SQLite store with one transaction per unit of work.

    Attributes:
        config: Store settings (path, timeouts, retry budget).
    """

    def __init__(self, config: StoreConfig):
        self.config = config

    def initialize(self) -> None:
        """Create the database file and schema if missing."""
        Path(self.config.path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        finally:
            conn.close()
        logger.info(f"Database initialized: {self.config.path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.config.path,
            timeout=self.config.lock_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _run_once(self, work: Callable[[Repository], T], write: bool) -> T:
        conn = self._connect()
        deadline = time.monotonic() + self.config.statement_timeout
        # Non-zero return aborts the running statement with "interrupted"
        conn.set_progress_handler(lambda: int(time.monotonic() > deadline), 1000)
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                result = work(Repository(conn))
            except BaseException:
                if conn.in_transaction:
                    conn.rollback()
                raise
            conn.commit()
            return result
        finally:
            conn.close()

    async def run(self, work: Callable[[Repository], T], write: bool = True) -> T:
        """Execute a unit of work in a single transaction.

        The callable receives a Repository bound to the transaction's
        connection. Anything it raises rolls the transaction back. Domain
        errors propagate unchanged.

        Args:
            work: Synchronous function performing reads and writes.
            write: Take the writer lock up front.

        Returns:
            Whatever `work` returns.

        Raises:
            ConstraintViolation: A unique or foreign-key constraint failed.
            StoreError: A non-transient store failure such as broken SQL.
            TransientStoreError: The store stayed locked or slow after all retries.
        """
        attempts = max(1, self.config.max_retries)
        for attempt in range(attempts):
            try:
                return await asyncio.to_thread(self._run_once, work, write)
            except sqlite3.IntegrityError as e:
                raise ConstraintViolation(reason=str(e)) from e
            except sqlite3.OperationalError as e:
                if not is_transient(e):
                    logger.error(f"Store operation failed: {e}")
                    raise StoreError(reason=str(e)) from e
                if attempt == attempts - 1:
                    logger.error(f"Store operation failed after {attempts} attempts: {e}")
                    raise TransientStoreError(reason=str(e)) from e
                delay = self.config.retry_base_delay * 2**attempt
                logger.warning(
                    f"Transient store error (attempt {attempt + 1}/{attempts}): {e}, "
                    f"retrying in {delay}s"
                )
                await asyncio.sleep(delay)

        raise AssertionError("unreachable")
