import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import bleach

# Business rule: money stored rounded to 2 decimals


def round_amount(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def sanitize_input(value: Optional[str]) -> str:
    """Sanitize a user-supplied string before it is stored or displayed.

    - Strips HTML tags using bleach.clean(..., strip=True)
    - Removes NULL bytes and collapses runs of whitespace
    - Trims whitespace
    """
    if value is None:
        return ""
    val = str(value).replace("\x00", "")
    val = bleach.clean(val, tags=set(), strip=True)
    val = re.sub(r"\s+", " ", val)
    return val.strip()


def sanitize_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return sanitize_input(value) or None
