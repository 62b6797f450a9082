"""Human-readable order numbers.

Format: ``<PREFIX>-<base36 millisecond timestamp>-<4 base36 random chars>``,
upper-case, e.g. ``ZNX-M3K2J9QZ-7F2A``. The format shows up in tracking URLs
and confirmation emails, so it must not change. Uniqueness is enforced by
the unique constraint on ``orders.order_number``; the order service retries
with a fresh number when it fires.
"""

import re
import secrets
import string
import time
from typing import Callable

ALPHABET = string.digits + string.ascii_uppercase
SUFFIX_LENGTH = 4

ORDER_NUMBER_RE = re.compile(r"^[A-Z0-9]+-[0-9A-Z]+-[0-9A-Z]{4}$")


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding needs a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(ALPHABET[rem])
    return "".join(reversed(digits))


class OrderNumberGenerator:
    """Callable producing order numbers.

    Args:
        prefix: Leading segment, ``ZNX`` by default.
        clock: Returns the current time in seconds (``time.time``).
        randbelow: Returns a random int in ``[0, n)`` (``secrets.randbelow``).
    """

    def __init__(self, prefix: str = "ZNX", clock: Callable[[], float] = time.time,
                 randbelow: Callable[[int], int] = secrets.randbelow):
        self.prefix = prefix.upper()
        self.clock = clock
        self.randbelow = randbelow

    def __call__(self) -> str:
        # round: float seconds * 1000 can land just under the whole millisecond
        stamp = to_base36(round(self.clock() * 1000))
        suffix = "".join(ALPHABET[self.randbelow(36)] for _ in range(SUFFIX_LENGTH))
        return f"{self.prefix}-{stamp}-{suffix}"
