"""Domain exception hierarchy.

Every error raised by the services derives from CargoError and carries a
stable machine code plus a short user-facing message. The bot layer renders
validation, not-found and business-rule errors to the user as-is; anything
deriving from InfrastructureError is logged and replaced by a generic apology.
"""

from typing import Any


class CargoError(Exception):
    """Base domain error.

    Attributes:
        code: Stable snake_case error code for logs.
        user_message: Safe message that may be shown to the user.
        details: Extra context for logs, never shown to the user.
    """

    code = "cargo_error"
    default_message = "Произошла ошибка при обработке запроса"

    def __init__(self, user_message: str | None = None, **details: Any):
        self.user_message = user_message or self.default_message
        self.details = details
        super().__init__(self.user_message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.code}: {self.user_message} {self.details}"
        return f"{self.code}: {self.user_message}"


# Validation

class ValidationFailed(CargoError):
    """Input rejected before any write."""

    code = "validation_error"
    default_message = "Некорректные данные"


# Not found

class NotFoundError(CargoError):
    code = "not_found"
    default_message = "Запись не найдена"


class TariffNotFound(NotFoundError):
    code = "tariff_not_found"
    default_message = "Тариф для этого маршрута не найден"


class WarehouseNotFound(NotFoundError):
    code = "warehouse_not_found"
    default_message = "Склад не найден"


class OrderNotFound(NotFoundError):
    code = "order_not_found"
    default_message = "Заказ не найден"


class UserNotFound(NotFoundError):
    code = "user_not_found"
    default_message = "Пользователь не найден"


class AddressNotFound(NotFoundError):
    code = "address_not_found"
    default_message = "Адрес не найден"


class ProductNotFound(NotFoundError):
    code = "product_not_found"
    default_message = "Товар не найден"


class CountryNotFound(NotFoundError):
    code = "country_not_found"
    default_message = "Страна не найдена"


# Business rules

class BusinessRuleViolation(CargoError):
    """The entity exists but the operation is not allowed."""

    code = "business_rule"
    default_message = "Операция недоступна"


class RestrictionViolation(BusinessRuleViolation):
    code = "warehouse_restriction"
    default_message = "Посылка не проходит ограничения склада"


class InsufficientFunds(BusinessRuleViolation):
    code = "insufficient_funds"
    default_message = "Недостаточно средств на балансе"


class UserBlocked(BusinessRuleViolation):
    code = "user_blocked"
    default_message = "Ваш аккаунт заблокирован"


class Unauthorized(BusinessRuleViolation):
    code = "unauthorized"
    default_message = "Недостаточно прав"


class InvalidTransition(BusinessRuleViolation):
    code = "invalid_transition"
    default_message = "Недопустимая смена статуса заказа"


# Infrastructure

class InfrastructureError(CargoError):
    code = "infrastructure_error"


class StoreError(InfrastructureError):
    code = "store_error"


class ConstraintViolation(StoreError):
    """Unique or foreign-key violation; retrying cannot help."""

    code = "constraint_violation"


class TransientStoreError(StoreError):
    """Store still failing after the retry budget was spent."""

    code = "store_unavailable"


class ExchangeRateUnavailable(InfrastructureError):
    code = "exchange_rate_unavailable"
    default_message = "Курс валюты недоступен"


class QueueClosedError(InfrastructureError):
    code = "queue_closed"


class IdentifierExhausted(InfrastructureError):
    code = "identifier_exhausted"


class NotificationDeliveryError(InfrastructureError):
    code = "notification_delivery_failed"


USER_FACING_ERRORS = (ValidationFailed, NotFoundError, BusinessRuleViolation)
