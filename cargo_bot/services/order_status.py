"""Order status state machine.

Main shipping flow:
    CREATED -> PAID -> WAREHOUSE_RECEIVED -> PROCESSING -> SHIPPED -> CUSTOMS
    -> IN_TRANSIT -> READY_PICKUP -> DELIVERED

Purchase flow (purchase and fixed-price orders only):
    CREATED | PAID -> PURCHASING -> PURCHASED -> WAREHOUSE_RECEIVED

Any non-terminal status may move to CANCELLED, REFUNDED or PROBLEM, and an
admin resolves PROBLEM by moving the order to any other status. DELIVERED,
CANCELLED and REFUNDED are terminal.
"""

from ..models import OrderStatus, OrderType

S = OrderStatus

TERMINAL_STATUSES = frozenset({S.DELIVERED, S.CANCELLED, S.REFUNDED})

PURCHASE_ONLY_STATUSES = frozenset({S.PURCHASING, S.PURCHASED})

EXCEPTION_STATUSES = frozenset({S.CANCELLED, S.REFUNDED, S.PROBLEM})

FORWARD_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    S.CREATED: frozenset({S.PAID, S.PURCHASING}),
    S.PAID: frozenset({S.WAREHOUSE_RECEIVED, S.PURCHASING}),
    S.PURCHASING: frozenset({S.PURCHASED}),
    S.PURCHASED: frozenset({S.WAREHOUSE_RECEIVED}),
    S.WAREHOUSE_RECEIVED: frozenset({S.PROCESSING}),
    S.PROCESSING: frozenset({S.SHIPPED}),
    S.SHIPPED: frozenset({S.CUSTOMS}),
    S.CUSTOMS: frozenset({S.IN_TRANSIT}),
    S.IN_TRANSIT: frozenset({S.READY_PICKUP}),
    S.READY_PICKUP: frozenset({S.DELIVERED}),
    S.PROBLEM: frozenset(status for status in OrderStatus if status is not S.PROBLEM),
}

# The user is told about every status change except internal processing
USER_VISIBLE_STATUSES = frozenset(status for status in OrderStatus if status is not S.PROCESSING)

STATUS_LABELS: dict[OrderStatus, str] = {
    S.CREATED: "Создан",
    S.PAID: "Оплачен",
    S.CANCELLED: "Отменен",
    S.REFUNDED: "Возврат средств",
    S.WAREHOUSE_RECEIVED: "Получен на складе",
    S.PROCESSING: "Обрабатывается",
    S.SHIPPED: "Отправлен",
    S.CUSTOMS: "Таможенное оформление",
    S.IN_TRANSIT: "В пути",
    S.READY_PICKUP: "Готов к получению",
    S.DELIVERED: "Доставлен",
    S.PURCHASING: "Покупаем товар",
    S.PURCHASED: "Товар выкуплен",
    S.PROBLEM: "Проблема",
}


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def allowed_targets(current: OrderStatus, order_type: OrderType | None = None) -> frozenset[OrderStatus]:
    """Statuses reachable from `current` in one transition."""
    if is_terminal(current):
        return frozenset()

    targets = set(FORWARD_TRANSITIONS.get(current, frozenset()))
    targets |= EXCEPTION_STATUSES - {current}

    if order_type is OrderType.SHIPPING:
        targets -= PURCHASE_ONLY_STATUSES
    return frozenset(targets)


def can_transition(
    current: OrderStatus, new_status: OrderStatus, order_type: OrderType | None = None
) -> bool:
    """Check whether an order may move from `current` to `new_status`.

    Args:
        current: Status the order is in now.
        new_status: Requested status.
        order_type: Restricts the purchase flow to purchase-capable orders.
    """
    return new_status in allowed_targets(current, order_type)


def status_label(status: OrderStatus) -> str:
    return STATUS_LABELS.get(status, status.value)


def location_by_status(status: OrderStatus, from_country: str, to_country: str) -> str:
    """Human-readable parcel location for a status."""
    locations = {
        S.CREATED: to_country,
        S.PAID: to_country,
        S.WAREHOUSE_RECEIVED: f"{from_country}, склад",
        S.PROCESSING: f"{from_country}, склад",
        S.SHIPPED: f"{from_country} → {to_country}",
        S.CUSTOMS: f"{to_country}, таможня",
        S.IN_TRANSIT: f"{to_country}, в пути",
        S.READY_PICKUP: f"{to_country}, пункт выдачи",
        S.DELIVERED: f"{to_country}, доставлен",
        S.PURCHASING: from_country,
        S.PURCHASED: from_country,
        S.PROBLEM: "Уточняется",
        S.CANCELLED: "-",
        S.REFUNDED: "-",
    }
    return locations.get(status, "Неизвестно")
