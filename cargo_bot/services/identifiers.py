"""Human-facing identifier generators.

Order numbers and transaction IDs are a type prefix, the current time in
milliseconds in base 36, and a random base-36 suffix. Custom user IDs are
random five-digit numbers. None of these are guaranteed unique on their own;
callers check for collisions inside their store transaction and rely on the
UNIQUE constraints as the backstop.
"""

import secrets
import string
import time

from ..models import ORDER_NUMBER_PREFIX, OrderType

BASE36_ALPHABET = string.digits + string.ascii_uppercase


def to_base36(value: int) -> str:
    """Encode a non-negative integer in upper-case base 36."""
    if value < 0:
        raise ValueError("base36 encoding requires a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def _random_base36(length: int) -> str:
    return "".join(secrets.choice(BASE36_ALPHABET) for _ in range(length))


def _timestamp36() -> str:
    return to_base36(time.time_ns() // 1_000_000)


def generate_order_number(order_type: OrderType) -> str:
    """Build an order number such as 'SPM1ABC2DEFXY'."""
    return f"{ORDER_NUMBER_PREFIX[order_type]}{_timestamp36()}{_random_base36(3)}"


def generate_custom_id() -> str:
    """Random five-digit user ID in 10000-99999."""
    return str(10000 + secrets.randbelow(90000))


def generate_transaction_id() -> str:
    return f"TX{_timestamp36()}{_random_base36(6)}"
