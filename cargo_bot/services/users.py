"""User accounts, balances and addresses.

Registration assigns a random five-digit custom ID with collision retry.
Every balance change goes through apply_balance_change, which writes the new
balance and its SUCCESS ledger row in the caller's transaction and refuses to
take the balance below zero.
"""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from ..config import CacheConfig, OrderLimitsConfig
from ..errors import (
    AddressNotFound,
    IdentifierExhausted,
    InsufficientFunds,
    UserNotFound,
    ValidationFailed,
)
from ..models import (
    CREDIT_TRANSACTION_TYPES,
    Address,
    OrderStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    UserStats,
    VipTier,
    as_utc,
    utc_now,
)
from .cache_service import CacheService
from .database import Database
from .identifiers import generate_custom_id, generate_transaction_id
from .order_status import TERMINAL_STATUSES
from .repository import Repository

logger = logging.getLogger(__name__)

BalanceOperation = Literal["add", "subtract", "set"]

CENT = Decimal("0.01")


def money(value: Decimal) -> Decimal:
    """Round a money amount to kopecks, half up."""
    return value.quantize(CENT, ROUND_HALF_UP)


def unique_transaction_id(repo: Repository, attempts: int = 5) -> str:
    for _ in range(attempts):
        transaction_id = generate_transaction_id()
        if not repo.transaction_id_exists(transaction_id):
            return transaction_id
    raise IdentifierExhausted(kind="transaction_id")


def apply_balance_change(
    repo: Repository,
    user: User,
    amount: Decimal,
    operation: BalanceOperation,
    transaction_type: TransactionType | None = None,
    description: str | None = None,
    order_id: int | None = None,
) -> User:
    """Change a user's balance and record it in the ledger.

    Must run inside a write transaction; the read of the current balance and
    the write of the new one happen in the same transaction.

    Args:
        repo: Repository of the open transaction.
        user: User as read in this transaction.
        amount: Positive amount for add/subtract, target balance for set.
        operation: 'add', 'subtract' or 'set'.
        transaction_type: Ledger type; must be a credit type for 'add' and a
            debit type for 'subtract'. Derived from the direction for 'set'.
        description: Ledger description.
        order_id: Related order.

    Returns:
        The user with the updated balance.

    Raises:
        ValidationFailed: Bad amount or a type that contradicts the operation.
        InsufficientFunds: The balance would go negative.
    """
    assert user.id is not None
    amount = money(amount)

    if operation == "set":
        if amount < 0:
            raise ValidationFailed("Баланс не может быть отрицательным")
        delta = amount - user.balance
        if delta == 0:
            return user
        new_balance = amount
        transaction_type = TransactionType.BONUS if delta > 0 else TransactionType.WITHDRAWAL
        ledger_amount = abs(delta)
    else:
        if amount <= 0:
            raise ValidationFailed("Сумма должна быть больше 0", amount=str(amount))
        if transaction_type is None:
            transaction_type = (
                TransactionType.TOPUP if operation == "add" else TransactionType.WITHDRAWAL
            )
        is_credit = transaction_type in CREDIT_TRANSACTION_TYPES
        if is_credit != (operation == "add"):
            raise ValidationFailed(
                f"Тип операции {transaction_type} не соответствует действию {operation}"
            )
        new_balance = user.balance + amount if operation == "add" else user.balance - amount
        ledger_amount = amount

    if new_balance < 0:
        raise InsufficientFunds(
            user_id=user.id, balance=str(user.balance), requested=str(amount)
        )

    repo.set_balance(user.id, new_balance)
    now = utc_now()
    repo.add_transaction(
        Transaction(
            transaction_id=unique_transaction_id(repo),
            user_id=user.id,
            order_id=order_id,
            type=transaction_type,
            status=TransactionStatus.SUCCESS,
            amount=ledger_amount,
            description=description,
            created_at=now,
            completed_at=now,
        )
    )
    return user.model_copy(update={"balance": new_balance})


def ledger_balance(transactions: list[Transaction]) -> Decimal:
    """Balance implied by SUCCESS ledger rows."""
    total = Decimal("0")
    for transaction in transactions:
        if transaction.status is not TransactionStatus.SUCCESS:
            continue
        if transaction.type in CREDIT_TRANSACTION_TYPES:
            total += transaction.amount
        else:
            total -= transaction.amount
    return total


class UserService:
    """Registration, balance, VIP status and address management."""

    def __init__(
        self,
        database: Database,
        cache: CacheService,
        cache_config: CacheConfig,
        limits: OrderLimitsConfig,
    ):
        self.database = database
        self.cache = cache
        self.cache_config = cache_config
        self.limits = limits

    async def register_user(
        self,
        telegram_id: int,
        first_name: str,
        username: str | None = None,
        last_name: str | None = None,
    ) -> User:
        """Return the user for a Telegram account, creating it on first contact."""

        def work(repo: Repository) -> User:
            existing = repo.get_user_by_telegram_id(telegram_id)
            now = utc_now()
            if existing is not None:
                assert existing.id is not None
                repo.update_user(existing.id, last_activity=now, username=username)
                return existing.model_copy(update={"last_activity": now, "username": username})

            for _ in range(self.limits.custom_id_attempts):
                custom_id = generate_custom_id()
                if not repo.custom_id_exists(custom_id):
                    break
            else:
                raise IdentifierExhausted(kind="custom_id")

            return repo.add_user(
                User(
                    telegram_id=telegram_id,
                    custom_id=custom_id,
                    username=username,
                    first_name=first_name,
                    last_name=last_name,
                    created_at=now,
                    last_activity=now,
                )
            )

        user = await self.database.run(work)
        logger.debug(f"User {user.custom_id} (telegram {telegram_id}) registered or seen")
        return user

    async def get_user(self, user_id: int) -> User:
        user = await self.database.run(lambda repo: repo.get_user(user_id), write=False)
        if user is None:
            raise UserNotFound(user_id=user_id)
        return user

    async def get_by_telegram_id(self, telegram_id: int) -> User | None:
        return await self.database.run(
            lambda repo: repo.get_user_by_telegram_id(telegram_id), write=False
        )

    async def get_by_custom_id(self, custom_id: str) -> User | None:
        """Look up a user by the five-digit ID shown to them at registration."""
        custom_id = custom_id.strip()
        return await self.database.run(
            lambda repo: repo.get_user_by_custom_id(custom_id), write=False
        )

    async def update_balance(
        self,
        user_id: int,
        amount: Decimal,
        operation: BalanceOperation,
        transaction_type: TransactionType | None = None,
        description: str | None = None,
        order_id: int | None = None,
    ) -> User:
        """Atomically change a balance and write its ledger row.

        Raises:
            UserNotFound: Unknown user.
            InsufficientFunds: The balance would go negative.
        """

        def work(repo: Repository) -> User:
            user = repo.get_user(user_id)
            if user is None:
                raise UserNotFound(user_id=user_id)
            return apply_balance_change(
                repo, user, amount, operation, transaction_type, description, order_id
            )

        user = await self.database.run(work)
        await self.invalidate_stats(user_id)
        logger.info(f"Balance of user {user_id} {operation} {amount}: now {user.balance}")
        return user

    async def update_vip_status(
        self, user_id: int, tier: VipTier, expires_at: datetime | None = None
    ) -> User:
        """Grant a VIP tier; naive expiry times are read as UTC."""
        if expires_at is not None:
            expires_at = as_utc(expires_at)

        def work(repo: Repository) -> User:
            user = repo.get_user(user_id)
            if user is None:
                raise UserNotFound(user_id=user_id)
            repo.update_user(user_id, vip_tier=tier, vip_expires_at=expires_at)
            return user.model_copy(update={"vip_tier": tier, "vip_expires_at": expires_at})

        user = await self.database.run(work)
        await self.invalidate_stats(user_id)
        return user

    async def set_blocked(self, user_id: int, blocked: bool, reason: str | None = None) -> User:
        def work(repo: Repository) -> User:
            user = repo.get_user(user_id)
            if user is None:
                raise UserNotFound(user_id=user_id)
            block_reason = reason if blocked else None
            repo.update_user(user_id, is_blocked=blocked, block_reason=block_reason)
            return user.model_copy(update={"is_blocked": blocked, "block_reason": block_reason})

        return await self.database.run(work)

    async def add_address(
        self,
        user_id: int,
        alias: str,
        city: str,
        address: str,
        postal_code: str | None = None,
        is_default: bool = False,
    ) -> Address:
        """Save a delivery address; the first one becomes the default."""
        if not alias.strip() or not city.strip() or not address.strip():
            raise ValidationFailed("Заполните название, город и адрес")

        def work(repo: Repository) -> Address:
            if repo.get_user(user_id) is None:
                raise UserNotFound(user_id=user_id)
            make_default = is_default or not repo.list_addresses(user_id)
            if make_default:
                repo.clear_default_address(user_id)
            return repo.add_address(
                Address(
                    user_id=user_id,
                    alias=alias.strip(),
                    city=city.strip(),
                    address=address.strip(),
                    postal_code=postal_code,
                    is_default=make_default,
                )
            )

        return await self.database.run(work)

    async def update_address(
        self,
        user_id: int,
        address_id: int,
        alias: str | None = None,
        city: str | None = None,
        address: str | None = None,
        postal_code: str | None = None,
        is_default: bool | None = None,
    ) -> Address:
        """Edit a saved address.

        Only the given fields change. Making an address the default clears
        the flag on the user's other addresses in the same transaction.

        Raises:
            AddressNotFound: Unknown, deleted, or another user's address.
            ValidationFailed: A text field was given blank.
        """
        changes: dict[str, str | bool] = {}
        for field, value in (("alias", alias), ("city", city), ("address", address)):
            if value is None:
                continue
            if not value.strip():
                raise ValidationFailed("Заполните название, город и адрес")
            changes[field] = value.strip()
        if postal_code is not None:
            changes["postal_code"] = postal_code.strip()
        if is_default is not None:
            changes["is_default"] = is_default

        def work(repo: Repository) -> Address:
            existing = repo.get_address(address_id)
            if existing is None or existing.user_id != user_id or not existing.is_active:
                raise AddressNotFound(address_id=address_id)
            if is_default:
                repo.clear_default_address(user_id)
            if changes:
                repo.update_address(address_id, **changes)
            return existing.model_copy(update=changes)

        return await self.database.run(work)

    async def list_addresses(self, user_id: int) -> list[Address]:
        return await self.database.run(lambda repo: repo.list_addresses(user_id), write=False)

    async def delete_address(self, user_id: int, address_id: int) -> None:
        """Soft-delete an address; orders keep referencing it."""

        def work(repo: Repository) -> None:
            address = repo.get_address(address_id)
            if address is None or address.user_id != user_id or not address.is_active:
                raise AddressNotFound(address_id=address_id)
            repo.deactivate_address(address_id)

        await self.database.run(work)

    async def get_user_stats(self, user_id: int) -> UserStats:
        """Order and spending summary, cached for a few minutes."""
        cache_key = f"stats:{user_id}"
        cached = await self.cache.get_model(cache_key, UserStats)
        if cached is not None:
            return cached

        def work(repo: Repository) -> UserStats:
            user = repo.get_user(user_id)
            if user is None:
                raise UserNotFound(user_id=user_id)
            orders = repo.list_user_orders(user_id)
            payments = [
                t
                for t in repo.list_transactions(user_id, TransactionStatus.SUCCESS)
                if t.type is TransactionType.PAYMENT
            ]
            return UserStats(
                balance=user.balance,
                total_orders=len(orders),
                active_orders=sum(1 for o in orders if o.status not in TERMINAL_STATUSES),
                completed_orders=sum(1 for o in orders if o.status is OrderStatus.DELIVERED),
                total_spent=sum((t.amount for t in payments), Decimal("0")),
                total_saved=sum((o.discount for o in orders), Decimal("0")),
                vip_tier=user.effective_vip_tier(),
                vip_expires_at=user.vip_expires_at,
            )

        stats = await self.database.run(work, write=False)
        await self.cache.set_model(cache_key, stats, self.cache_config.stats_ttl)
        return stats

    async def invalidate_stats(self, user_id: int) -> None:
        await self.cache.delete(f"stats:{user_id}")

    async def reconcile_balance(self, user_id: int) -> tuple[Decimal, Decimal]:
        """Compare the stored balance with the ledger.

        Returns:
            (stored balance, balance implied by the ledger). A mismatch is
            logged as an error.
        """

        def work(repo: Repository) -> tuple[Decimal, Decimal]:
            user = repo.get_user(user_id)
            if user is None:
                raise UserNotFound(user_id=user_id)
            return user.balance, ledger_balance(repo.list_transactions(user_id))

        stored, ledger = await self.database.run(work, write=False)
        if stored != ledger:
            logger.error(f"Balance drift for user {user_id}: stored {stored}, ledger {ledger}")
        return stored, ledger
