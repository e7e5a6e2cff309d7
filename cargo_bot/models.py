"""Data models for the CargoExpress bot.

Defines Pydantic models for reference data (countries, warehouses, tariffs,
products), customer data (users, addresses, ledger transactions), orders with
their status history, and the value objects returned by the pricing engine.
All monetary fields are Decimal; nothing money-related is ever a float.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class VipTier(StrEnum):
    REGULAR = "REGULAR"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"


VIP_DISCOUNT_PERCENT: dict[VipTier, int] = {
    VipTier.REGULAR: 0,
    VipTier.SILVER: 5,
    VipTier.GOLD: 10,
    VipTier.PLATINUM: 15,
}


class OrderType(StrEnum):
    SHIPPING = "SHIPPING"
    PURCHASE = "PURCHASE"
    FIXED_PRICE = "FIXED_PRICE"


ORDER_NUMBER_PREFIX: dict[OrderType, str] = {
    OrderType.SHIPPING: "SP",
    OrderType.PURCHASE: "PU",
    OrderType.FIXED_PRICE: "FP",
}


class OrderStatus(StrEnum):
    CREATED = "CREATED"
    PAID = "PAID"
    WAREHOUSE_RECEIVED = "WAREHOUSE_RECEIVED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    CUSTOMS = "CUSTOMS"
    IN_TRANSIT = "IN_TRANSIT"
    READY_PICKUP = "READY_PICKUP"
    DELIVERED = "DELIVERED"
    PURCHASING = "PURCHASING"
    PURCHASED = "PURCHASED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PROBLEM = "PROBLEM"


class TransactionType(StrEnum):
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"
    TOPUP = "TOPUP"
    WITHDRAWAL = "WITHDRAWAL"
    BONUS = "BONUS"
    COMMISSION = "COMMISSION"


CREDIT_TRANSACTION_TYPES = frozenset(
    {TransactionType.TOPUP, TransactionType.REFUND, TransactionType.BONUS}
)


class TransactionStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class AdminRole(StrEnum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ORDER_MANAGER = "ORDER_MANAGER"
    FINANCE_MANAGER = "FINANCE_MANAGER"
    SUPPORT_OPERATOR = "SUPPORT_OPERATOR"
    CONTENT_MANAGER = "CONTENT_MANAGER"


class Country(BaseModel):
    """Origin or destination country.

    Attributes:
        code: ISO-2 code, also the primary key (e.g. 'US').
        name: Display name.
        currency: ISO currency code used by shops in this country.
        shipping_available: Whether parcels can be forwarded from here.
        purchase_available: Whether purchase-by-link is offered.
        purchase_commission: Purchase commission in percent.
        popularity_score: Sort weight for country menus.
    """

    code: str
    name: str
    currency: str
    shipping_available: bool = True
    purchase_available: bool = True
    purchase_commission: Decimal = Decimal("0")
    popularity_score: int = 0
    is_active: bool = True


class Warehouse(BaseModel):
    """Receiving warehouse in an origin country."""

    id: int | None = None
    country_code: str
    name: str
    address: str = ""
    max_weight_kg: Decimal
    max_declared_value: Decimal
    restrictions: list[str] = Field(default_factory=list)
    operating_hours: str = ""
    is_active: bool = True


class ShippingTariff(BaseModel):
    """Priced directed route between two countries."""

    id: int | None = None
    from_country: str
    to_country: str
    price_per_kg: Decimal
    min_price: Decimal = Field(ge=0)
    delivery_days_min: int = Field(ge=0)
    delivery_days_max: int = Field(ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_delivery_window(self) -> "ShippingTariff":
        if self.delivery_days_min > self.delivery_days_max:
            raise ValueError("delivery_days_min must not exceed delivery_days_max")
        return self


class Product(BaseModel):
    """Fixed-price catalogue product; price already includes commission."""

    id: int | None = None
    country_code: str
    name: str
    price: Decimal = Field(gt=0)
    currency: str
    estimated_weight: Decimal = Field(gt=0)
    is_active: bool = True


class User(BaseModel):
    """Registered bot user."""

    id: int | None = None
    telegram_id: int
    custom_id: str
    username: str | None = None
    first_name: str
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    balance: Decimal = Decimal("0")
    vip_tier: VipTier = VipTier.REGULAR
    vip_expires_at: datetime | None = None
    is_blocked: bool = False
    block_reason: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    last_activity: datetime | None = None

    @field_validator("vip_expires_at")
    @classmethod
    def _vip_expiry_in_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    def effective_vip_tier(self, now: datetime | None = None) -> VipTier:
        """Tier used for discounts: an expired VIP counts as REGULAR."""
        now = as_utc(now) if now is not None else utc_now()
        if self.vip_expires_at is not None and self.vip_expires_at < now:
            return VipTier.REGULAR
        return self.vip_tier


class Address(BaseModel):
    id: int | None = None
    user_id: int
    alias: str
    city: str
    address: str
    postal_code: str | None = None
    is_default: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class Admin(BaseModel):
    id: int | None = None
    telegram_id: int
    role: AdminRole
    first_name: str = ""
    is_active: bool = True


class Order(BaseModel):
    """Shipping, purchase or fixed-price order.

    Monetary fields are in the home currency (RUB) and frozen at creation:
    later tariff or rate changes never rewrite an existing order.
    """

    id: int | None = None
    order_number: str
    type: OrderType
    status: OrderStatus = OrderStatus.CREATED
    user_id: int
    from_country: str
    to_country: str
    warehouse_id: int | None = None
    address_id: int | None = None
    weight: Decimal | None = None
    declared_value: Decimal | None = None
    declared_currency: str | None = None
    description: str | None = None
    purchase_url: str | None = None
    purchase_notes: str | None = None
    exchange_rate: Decimal | None = None
    product_cost: Decimal = Decimal("0")
    commission: Decimal = Decimal("0")
    delivery_cost: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    prepaid_amount: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    tracking_number: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class OrderItem(BaseModel):
    id: int | None = None
    order_id: int | None = None
    product_id: int | None = None
    name: str
    quantity: int = Field(gt=0)
    price: Decimal
    currency: str


class StatusHistoryEntry(BaseModel):
    """One audited order status transition."""

    id: int | None = None
    order_id: int
    old_status: OrderStatus | None
    new_status: OrderStatus
    comment: str | None = None
    admin_id: int | None = None
    created_at: datetime = Field(default_factory=utc_now)


class Transaction(BaseModel):
    """Ledger entry; amount is always positive, the type gives the sign."""

    id: int | None = None
    transaction_id: str
    user_id: int
    order_id: int | None = None
    type: TransactionType
    status: TransactionStatus = TransactionStatus.SUCCESS
    amount: Decimal = Field(ge=0)
    currency: str = "RUB"
    description: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


class Notification(BaseModel):
    id: int | None = None
    user_id: int
    text: str
    order_id: int | None = None
    dedup_key: str
    is_sent: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    sent_at: datetime | None = None


class ShippingCost(BaseModel):
    """Shipping cost breakdown for one route and weight.

    Attributes:
        cost: max(weight * price_per_kg, min_price).
        price_per_kg: Tariff rate used.
        min_price: Tariff floor used.
        delivery_days_min: Lower delivery estimate in days.
        delivery_days_max: Upper delivery estimate in days.
        tariff_id: Tariff the cost was computed from.
    """

    cost: Decimal
    price_per_kg: Decimal
    min_price: Decimal
    delivery_days_min: int
    delivery_days_max: int
    tariff_id: int | None = None


class DiscountBreakdown(BaseModel):
    original_cost: Decimal
    discount: Decimal
    discount_percent: int
    final_cost: Decimal


class RestrictionCheck(BaseModel):
    """Outcome of a warehouse restriction check.

    A denial is an expected business outcome, so it is a value with a
    user-facing reason rather than an exception.
    """

    allowed: bool
    reason: str | None = None


class UserStats(BaseModel):
    balance: Decimal = Decimal("0")
    total_orders: int = 0
    active_orders: int = 0
    completed_orders: int = 0
    total_spent: Decimal = Decimal("0")
    total_saved: Decimal = Decimal("0")
    vip_tier: VipTier = VipTier.REGULAR
    vip_expires_at: datetime | None = None


class DashboardStats(BaseModel):
    """Admin dashboard figures; "today" is the current UTC day.

    Attributes:
        today_revenue: Successful payments created today.
        yesterday_revenue: Successful payments created yesterday.
        revenue_change: Percent change against yesterday, 0 when yesterday had none.
        avg_order_value: Today's revenue per order created today.
        today_orders: Orders created today.
        today_users: Users registered today.
        today_payments: Payment transactions created today, any status.
        pending_payments: Orders created today still waiting for payment.
        shipping_orders: Shipping orders created today.
        purchase_orders: Purchase and fixed-price orders created today.
        active_orders: Orders not yet in a terminal status.
        problem_orders: Orders in PROBLEM.
        processing_orders: Orders in PROCESSING.
        vip_users: Users with an unexpired paid tier.
        total_users: All registered users.
    """

    today_revenue: Decimal = Decimal("0")
    yesterday_revenue: Decimal = Decimal("0")
    revenue_change: Decimal = Decimal("0")
    avg_order_value: Decimal = Decimal("0")
    today_orders: int = 0
    today_users: int = 0
    today_payments: int = 0
    pending_payments: int = 0
    shipping_orders: int = 0
    purchase_orders: int = 0
    active_orders: int = 0
    problem_orders: int = 0
    processing_orders: int = 0
    vip_users: int = 0
    total_users: int = 0


class TrackingHistoryItem(BaseModel):
    date: datetime
    status: OrderStatus
    location: str


class TrackingInfo(BaseModel):
    order_number: str
    status: OrderStatus
    location: str
    from_country: str
    to_country: str
    weight: Decimal | None = None
    updated_at: datetime
    history: list[TrackingHistoryItem] = Field(default_factory=list)


class CurrencyRate(BaseModel):
    """Exchange rate to the home currency.

    Attributes:
        currency: Source currency code (e.g., 'USD').
        rate: Home-currency units per one unit of `currency`.
        source: Provider identifier (e.g., 'cbr', 'static').
        fetched_at: When the rate was retrieved.
    """

    currency: str
    rate: Decimal
    source: str
    fetched_at: datetime = Field(default_factory=utc_now)


class JobStatus(StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobRecord(BaseModel):
    """Persisted background job row.

    Attributes:
        id: Row identifier.
        job_type: Payload discriminant.
        payload: Raw JSON payload, validated by the queue on claim.
        status: Lifecycle state; `failed` is the dead-letter set.
        attempts_made: Attempts started so far.
        max_attempts: Attempt budget.
        backoff_delay: Base retry delay in seconds.
        run_at: Epoch seconds the job becomes due.
        locked_until: Lease expiry of an active job.
        repeat_key: Identity of a repeating job.
        repeat_every: Repeat interval in seconds.
        repeat_cron: Repeat cron expression.
        last_error: Message of the last failure.
    """

    id: int
    job_type: str
    payload: str
    status: JobStatus
    attempts_made: int = 0
    max_attempts: int
    backoff_delay: float
    run_at: float
    locked_until: float | None = None
    repeat_key: str | None = None
    repeat_every: float | None = None
    repeat_cron: str | None = None
    last_error: str | None = None
    created_at: float
    finished_at: float | None = None
