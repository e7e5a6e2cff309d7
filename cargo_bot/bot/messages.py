"""Telegram bot message templates and constants.

Contains all user-facing message templates in Russian. Centralizes message
management for easy localization and consistent wording across commands.
"""

START_MESSAGE = (
    "Добро пожаловать в CargoExpress, {first_name}!\n\n"
    "Ваш личный номер: {custom_id}\n\n"
    "Команды:\n"
    "/calc <страна> <вес> — рассчитать стоимость доставки\n"
    "/track <номер заказа> — отследить заказ\n"
    "/orders — активные заказы\n"
    "/balance — баланс и статистика"
)

# Usage hints
CALC_USAGE = "Использование: /calc <код страны> <вес в кг>\nНапример: /calc US 2.5"
TRACK_USAGE = "Использование: /track <номер заказа>"
SETSTATUS_USAGE = "Использование: /setstatus <номер заказа> <СТАТУС> [комментарий]"
BROADCAST_USAGE = "Использование: /broadcast <текст сообщения>"

# Shipping calculator
CALC_RESULT = (
    "📦 Доставка {from_country} → {to_country}, {weight} кг\n"
    "Стоимость: {cost} ₽\n"
    "Срок: {delivery_days}"
)
CALC_DISCOUNT_LINE = "\nСкидка VIP {percent}%: −{discount} ₽\nИтого: {final_cost} ₽"
CALC_MIN_PRICE_NOTE = "\n(применена минимальная стоимость {min_price} ₽)"
DELIVERY_DAYS_RANGE = "{min_days}–{max_days} дней"
DELIVERY_DAYS_EXACT = "{days} дней"

# Tracking
TRACK_HEADER = "🚚 Заказ #{order_number}\n📍 Статус: {status}\n📍 Местоположение: {location}"
TRACK_HISTORY_HEADER = "\n\nИстория:"
TRACK_HISTORY_LINE = "\n{date} — {status} ({location})"

# Orders
NO_ACTIVE_ORDERS = "У вас нет активных заказов"
ACTIVE_ORDERS_HEADER = "Активные заказы:"
ORDER_LINE = "\n#{order_number} — {status}, {total_cost} ₽"

# Balance
BALANCE_MESSAGE = (
    "💰 Баланс: {balance} ₽\n"
    "VIP статус: {vip_tier}\n\n"
    "Всего заказов: {total_orders}\n"
    "Активных: {active_orders}\n"
    "Доставлено: {completed_orders}\n"
    "Потрачено: {total_spent} ₽\n"
    "Сэкономлено: {total_saved} ₽"
)

# Admin
STATUS_UPDATED = "Статус заказа #{order_number} изменен: {status}"
UNKNOWN_STATUS = "Неизвестный статус: {status}\nДоступные: {available}"
BROADCAST_QUEUED = "Рассылка {broadcast_id} поставлена в очередь"
QUICK_STATS_HEADER = "📊 Быстрая статистика\n"
QUICK_STATS_LINE = "\n{label}: {value}"
DASHBOARD_MESSAGE = (
    "📊 Сводка за {date}\n\n"
    "💰 Финансы:\n"
    "├ Выручка: {today_revenue} ₽ ({revenue_change:+}%)\n"
    "├ Новых платежей: {today_payments}\n"
    "├ Средний чек: {avg_order_value} ₽\n"
    "└ Ожидают оплаты: {pending_payments}\n\n"
    "📦 Заказы:\n"
    "├ Создано сегодня: {today_orders}\n"
    "├ Посылки: {shipping_orders} | Выкупы: {purchase_orders}\n"
    "├ Активных: {active_orders}\n"
    "├ Требуют внимания: {problem_orders}\n"
    "└ В обработке: {processing_orders}\n\n"
    "👥 Пользователи:\n"
    "├ Всего: {total_users} | Новых сегодня: {today_users}\n"
    "└ VIP клиентов: {vip_users}"
)

# Errors
ERROR_INVALID_NUMBER = "Некорректное число: {value}"
ERROR_NOT_REGISTERED = "Сначала отправьте /start"
ERROR_GENERIC = "Произошла ошибка. Попробуйте позже или обратитесь в поддержку."
