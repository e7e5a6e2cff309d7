"""Order creation and lifecycle management.

Creates shipping, purchase-by-link and fixed-price orders with a frozen cost
snapshot, and moves orders through the status state machine. Each status
change and its history row are written in one store transaction; the user
notification is queued only after that transaction commits.
"""

import logging
from decimal import Decimal
from urllib.parse import urlparse

from ..config import OrderLimitsConfig
from ..errors import (
    AddressNotFound,
    BusinessRuleViolation,
    CountryNotFound,
    IdentifierExhausted,
    InvalidTransition,
    OrderNotFound,
    ProductNotFound,
    QueueClosedError,
    RestrictionViolation,
    UserBlocked,
    UserNotFound,
    ValidationFailed,
    WarehouseNotFound,
)
from ..models import (
    AdminRole,
    Order,
    OrderItem,
    OrderStatus,
    OrderType,
    StatusHistoryEntry,
    TransactionType,
    User,
    Warehouse,
    utc_now,
)
from .admin import AdminDirectory
from .currency import ExchangeRateProvider
from .database import Database
from .identifiers import generate_order_number
from .job_queue import JobQueue
from .jobs import NotificationJob, status_dedup_key
from .order_status import USER_VISIBLE_STATUSES, can_transition, status_label
from .pricing import PricingService
from .repository import Repository
from .users import UserService, apply_balance_change, money

logger = logging.getLogger(__name__)

STATUS_MANAGER_ROLES = frozenset({AdminRole.ORDER_MANAGER, AdminRole.SUPER_ADMIN})


def _active_user(repo: Repository, user_id: int) -> User:
    user = repo.get_user(user_id)
    if user is None:
        raise UserNotFound(user_id=user_id)
    if user.is_blocked:
        raise UserBlocked(user_id=user_id)
    return user


def _check_address(repo: Repository, user_id: int, address_id: int | None) -> None:
    if address_id is None:
        return
    address = repo.get_address(address_id)
    if address is None or address.user_id != user_id or not address.is_active:
        raise AddressNotFound(address_id=address_id)


def _check_quantity(quantity: int, limit: int) -> None:
    if quantity < 1 or quantity > limit:
        raise ValidationFailed(f"Количество должно быть от 1 до {limit}", quantity=quantity)


class OrderService:
    """Creates orders and applies status transitions.

    Attributes:
        database: Order store.
        pricing: Shipping cost engine.
        users: User service, used to refresh cached statistics.
        rates: Exchange rates into the home currency.
        admins: Role checks for admin-initiated transitions.
        queue: Queue for status notifications.
        limits: Weight, value and quantity ceilings.
    """

    def __init__(
        self,
        database: Database,
        pricing: PricingService,
        users: UserService,
        rates: ExchangeRateProvider,
        admins: AdminDirectory,
        queue: JobQueue,
        limits: OrderLimitsConfig,
        home_country: str = "RU",
    ):
        self.database = database
        self.pricing = pricing
        self.users = users
        self.rates = rates
        self.admins = admins
        self.queue = queue
        self.limits = limits
        self.home_country = home_country

    def _unique_order_number(self, repo: Repository, order_type: OrderType) -> str:
        """Generate an order number not yet present in the store."""
        for attempt in range(self.limits.order_number_attempts):
            order_number = generate_order_number(order_type)
            if not repo.order_number_exists(order_number):
                return order_number
            logger.warning(f"Order number collision on {order_number} (attempt {attempt + 1})")
        raise IdentifierExhausted(kind="order_number")

    def _insert_order(
        self, repo: Repository, order: Order, items: list[OrderItem] | None = None
    ) -> Order:
        """Persist an order with its items; history starts with the first transition."""
        order = order.model_copy(
            update={"order_number": self._unique_order_number(repo, order.type)}
        )
        stored = repo.add_order(order)
        assert stored.id is not None
        for item in items or []:
            repo.add_order_item(item.model_copy(update={"order_id": stored.id}))
        return stored

    @staticmethod
    def _pick_warehouse(
        repo: Repository, from_country: str, warehouse_id: int | None
    ) -> Warehouse:
        if warehouse_id is not None:
            warehouse = repo.get_warehouse(warehouse_id)
            if warehouse is None or warehouse.country_code != from_country:
                raise WarehouseNotFound(warehouse_id=warehouse_id)
            return warehouse
        warehouses = repo.list_warehouses(from_country)
        if not warehouses:
            raise WarehouseNotFound(country=from_country)
        return warehouses[0]

    async def create_shipping_order(
        self,
        user_id: int,
        from_country: str,
        weight: Decimal,
        declared_value: Decimal,
        description: str | None,
        address_id: int | None,
        to_country: str | None = None,
        warehouse_id: int | None = None,
        declared_currency: str = "USD",
        categories: tuple[str, ...] = (),
    ) -> Order:
        """Create a parcel forwarding order.

        Args:
            user_id: Ordering user.
            from_country: Origin country code.
            weight: Parcel weight in kilograms.
            declared_value: Declared parcel value in `declared_currency`.
            description: Parcel contents.
            address_id: Delivery address of the user.
            to_country: Destination, home country by default.
            warehouse_id: Receiving warehouse, the country's first active one by default.
            declared_currency: Currency of the declared value.
            categories: Item categories checked against warehouse restrictions.

        Returns:
            The persisted order in status CREATED.

        Raises:
            ValidationFailed: Weight or declared value out of range.
            UserNotFound, UserBlocked, AddressNotFound, WarehouseNotFound,
            TariffNotFound: Referenced data missing or unusable.
            RestrictionViolation: The warehouse refuses the parcel.
        """
        if weight <= 0 or weight > self.limits.max_weight_kg:
            raise ValidationFailed(
                f"Вес должен быть от 0 до {self.limits.max_weight_kg} кг", weight=str(weight)
            )
        if declared_value <= 0 or declared_value > self.limits.max_declared_value:
            raise ValidationFailed(
                f"Объявленная стоимость должна быть от 0 до ${self.limits.max_declared_value}",
                declared_value=str(declared_value),
            )
        to_country = to_country or self.home_country

        def load(repo: Repository) -> tuple[User, Warehouse]:
            user = _active_user(repo, user_id)
            _check_address(repo, user_id, address_id)
            return user, self._pick_warehouse(repo, from_country, warehouse_id)

        user, warehouse = await self.database.run(load, write=False)

        check = self.pricing.check_warehouse_restrictions(
            warehouse, weight, declared_value, categories
        )
        if not check.allowed:
            raise RestrictionViolation(check.reason, warehouse_id=warehouse.id)

        shipping = await self.pricing.compute_shipping_cost(from_country, weight, to_country)
        delivery_cost = money(shipping.cost)
        breakdown = self.pricing.apply_vip_discount(delivery_cost, user)
        discount = money(breakdown.discount)

        now = utc_now()
        draft = Order(
            order_number="",
            type=OrderType.SHIPPING,
            user_id=user_id,
            from_country=from_country,
            to_country=to_country,
            warehouse_id=warehouse.id,
            address_id=address_id,
            weight=weight,
            declared_value=declared_value,
            declared_currency=declared_currency,
            description=description,
            delivery_cost=delivery_cost,
            discount=discount,
            total_cost=delivery_cost - discount,
            created_at=now,
            updated_at=now,
        )

        def persist(repo: Repository) -> Order:
            _active_user(repo, user_id)
            return self._insert_order(repo, draft)

        order = await self.database.run(persist)
        await self.users.invalidate_stats(user_id)
        logger.info(
            f"Shipping order {order.order_number} created: {from_country}->{to_country} "
            f"{weight}kg, total {order.total_cost}"
        )
        return order

    async def create_purchase_order(
        self,
        user_id: int,
        country: str,
        product_url: str,
        product_name: str,
        unit_price: Decimal,
        quantity: int,
        notes: str | None = None,
        address_id: int | None = None,
    ) -> Order:
        """Create a purchase-by-link order.

        The user prepays the item total plus the country's purchase
        commission, converted to the home currency at today's rate. Delivery
        is charged separately once the parcel is weighed.
        """
        parsed = urlparse(product_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationFailed("Некорректная ссылка на товар", url=product_url)
        if not product_name.strip():
            raise ValidationFailed("Укажите название товара")
        if unit_price <= 0:
            raise ValidationFailed("Цена должна быть больше 0", unit_price=str(unit_price))
        _check_quantity(quantity, self.limits.max_quantity)

        def load(repo: Repository):
            _active_user(repo, user_id)
            _check_address(repo, user_id, address_id)
            origin = repo.get_country(country)
            if origin is None or not origin.is_active:
                raise CountryNotFound(country=country)
            if not origin.purchase_available:
                raise BusinessRuleViolation("Выкуп из этой страны недоступен", country=country)
            return origin

        origin = await self.database.run(load, write=False)
        rate = await self.rates.rate(origin.currency)

        product_total = unit_price * quantity
        commission = product_total * origin.purchase_commission / 100
        product_cost = money(product_total * rate)
        commission_home = money(commission * rate)
        prepayment = product_cost + commission_home

        now = utc_now()
        draft = Order(
            order_number="",
            type=OrderType.PURCHASE,
            user_id=user_id,
            from_country=origin.code,
            to_country=self.home_country,
            address_id=address_id,
            declared_value=product_total,
            declared_currency=origin.currency,
            description=product_name.strip(),
            purchase_url=product_url,
            purchase_notes=notes,
            exchange_rate=rate,
            product_cost=product_cost,
            commission=commission_home,
            prepaid_amount=prepayment,
            total_cost=prepayment,
            created_at=now,
            updated_at=now,
        )
        item = OrderItem(
            name=product_name.strip(),
            quantity=quantity,
            price=unit_price,
            currency=origin.currency,
        )

        order = await self.database.run(lambda repo: self._insert_order(repo, draft, [item]))
        await self.users.invalidate_stats(user_id)
        logger.info(
            f"Purchase order {order.order_number} created: {quantity} x {unit_price} "
            f"{origin.currency}, prepayment {prepayment}"
        )
        return order

    async def create_fixed_price_order(
        self,
        user_id: int,
        product_id: int,
        quantity: int = 1,
        address_id: int | None = None,
    ) -> Order:
        """Order a catalogue product whose price already includes commission."""
        _check_quantity(quantity, self.limits.max_quantity)

        def load(repo: Repository):
            _active_user(repo, user_id)
            _check_address(repo, user_id, address_id)
            product = repo.get_product(product_id)
            if product is None or not product.is_active:
                raise ProductNotFound(product_id=product_id)
            return product

        product = await self.database.run(load, write=False)
        rate = await self.rates.rate(product.currency)
        product_cost = money(product.price * quantity * rate)

        now = utc_now()
        draft = Order(
            order_number="",
            type=OrderType.FIXED_PRICE,
            user_id=user_id,
            from_country=product.country_code,
            to_country=self.home_country,
            address_id=address_id,
            weight=product.estimated_weight * quantity,
            description=product.name,
            exchange_rate=rate,
            product_cost=product_cost,
            prepaid_amount=product_cost,
            total_cost=product_cost,
            created_at=now,
            updated_at=now,
        )
        item = OrderItem(
            product_id=product.id,
            name=product.name,
            quantity=quantity,
            price=product.price,
            currency=product.currency,
        )

        order = await self.database.run(lambda repo: self._insert_order(repo, draft, [item]))
        await self.users.invalidate_stats(user_id)
        logger.info(f"Fixed-price order {order.order_number} created: product {product_id} x {quantity}")
        return order

    @staticmethod
    def _apply_transition(
        repo: Repository,
        order: Order,
        new_status: OrderStatus,
        comment: str | None,
        admin_id: int | None,
    ) -> tuple[Order, StatusHistoryEntry]:
        if not can_transition(order.status, new_status, order.type):
            raise InvalidTransition(
                f"Нельзя перевести заказ из статуса «{status_label(order.status)}» "
                f"в «{status_label(new_status)}»",
                order_id=order.id,
                current=order.status.value,
                requested=new_status.value,
            )
        assert order.id is not None
        repo.update_order_status(order.id, new_status)
        entry = repo.add_status_history(
            StatusHistoryEntry(
                order_id=order.id,
                old_status=order.status,
                new_status=new_status,
                comment=comment,
                admin_id=admin_id,
            )
        )
        return order.model_copy(update={"status": new_status, "updated_at": entry.created_at}), entry

    async def transition_status(
        self,
        order_id: int,
        new_status: OrderStatus,
        comment: str | None = None,
        actor_admin_id: int | None = None,
        notify: bool = True,
    ) -> Order:
        """Move an order to a new status.

        Args:
            order_id: Order to update.
            new_status: Target status.
            comment: Reason stored in the history row.
            actor_admin_id: Telegram ID of the admin making the change; must
                hold ORDER_MANAGER or SUPER_ADMIN when given.
            notify: Queue a user notification for user-visible statuses.

        Returns:
            The updated order.

        Raises:
            Unauthorized: The actor may not change order statuses.
            OrderNotFound: Unknown order.
            InvalidTransition: The state machine forbids the change.
        """
        if actor_admin_id is not None:
            await self.admins.require(actor_admin_id, STATUS_MANAGER_ROLES)

        def work(repo: Repository) -> tuple[Order, StatusHistoryEntry]:
            order = repo.get_order(order_id)
            if order is None:
                raise OrderNotFound(order_id=order_id)
            return self._apply_transition(repo, order, new_status, comment, actor_admin_id)

        order, entry = await self.database.run(work)
        logger.info(
            f"Order {order.order_number}: {entry.old_status} -> {entry.new_status}"
            + (f" by admin {actor_admin_id}" if actor_admin_id else "")
        )

        await self.users.invalidate_stats(order.user_id)
        if notify:
            await self._notify_status(order, entry)
        return order

    async def pay_order_from_balance(self, order_id: int, user_id: int) -> Order:
        """Pay a new order from the user's balance.

        The balance debit, its ledger row, the CREATED -> PAID transition and
        its history row commit together or not at all.

        Raises:
            OrderNotFound: Unknown order or one belonging to another user.
            InvalidTransition: The order is not awaiting payment.
            InsufficientFunds: The balance does not cover the total.
        """

        def work(repo: Repository) -> tuple[Order, StatusHistoryEntry]:
            order = repo.get_order(order_id)
            if order is None or order.user_id != user_id:
                raise OrderNotFound(order_id=order_id)
            if order.status is not OrderStatus.CREATED:
                raise InvalidTransition("Заказ уже оплачен или недоступен для оплаты")
            user = _active_user(repo, user_id)
            apply_balance_change(
                repo,
                user,
                order.total_cost,
                "subtract",
                TransactionType.PAYMENT,
                description=f"Оплата заказа {order.order_number}",
                order_id=order.id,
            )
            return self._apply_transition(
                repo, order, OrderStatus.PAID, "Оплата с баланса", None
            )

        order, entry = await self.database.run(work)
        logger.info(f"Order {order.order_number} paid from balance: {order.total_cost}")
        await self.users.invalidate_stats(user_id)
        await self._notify_status(order, entry)
        return order

    async def _notify_status(self, order: Order, entry: StatusHistoryEntry) -> None:
        if entry.new_status not in USER_VISIBLE_STATUSES:
            return
        assert entry.id is not None
        job = NotificationJob(
            user_id=order.user_id,
            order_id=order.id,
            text=f"Статус заказа #{order.order_number} изменен: {status_label(entry.new_status)}",
            dedup_key=status_dedup_key(entry.id),
        )
        try:
            await self.queue.enqueue(job)
        except QueueClosedError:
            logger.warning(f"Queue closed, status notification for {order.order_number} not sent")

    async def enqueue_status_notification(self, order: Order) -> None:
        """Queue the notification for the order's latest status change."""
        assert order.id is not None
        history = await self.get_status_history(order.id)
        for entry in reversed(history):
            if entry.new_status == order.status:
                await self._notify_status(order, entry)
                return

    async def get_order(self, order_id: int) -> Order:
        order = await self.database.run(lambda repo: repo.get_order(order_id), write=False)
        if order is None:
            raise OrderNotFound(order_id=order_id)
        return order

    async def get_order_items(self, order_id: int) -> list[OrderItem]:
        return await self.database.run(lambda repo: repo.list_order_items(order_id), write=False)

    async def get_status_history(self, order_id: int) -> list[StatusHistoryEntry]:
        return await self.database.run(
            lambda repo: repo.list_status_history(order_id), write=False
        )

    async def list_user_orders(self, user_id: int, limit: int = 10) -> list[Order]:
        return await self.database.run(
            lambda repo: repo.list_user_orders(user_id, limit=limit), write=False
        )

    async def get_order_by_number(self, order_number: str) -> Order:
        order_number = order_number.strip().upper()
        order = await self.database.run(
            lambda repo: repo.get_order_by_number(order_number), write=False
        )
        if order is None:
            raise OrderNotFound(order_number=order_number)
        return order
