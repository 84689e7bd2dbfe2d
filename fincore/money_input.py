from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

ZERO = Decimal("0")


def parse_money_input(raw: str | int | float | Decimal | None) -> Decimal:
    """Parse a user-typed amount such as ``"1.234,56"`` or ``"1,234.56"``.

    The last ``.`` or ``,`` is taken as the decimal separator; other separators
    and whitespace are dropped. Unparseable input yields ``0``.
    """
    if raw is None or raw == "":
        return ZERO
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else ZERO
    if isinstance(raw, (int, float)):
        value = Decimal(str(raw))
        return value if value.is_finite() else ZERO

    text = re.sub(r"\s", "", str(raw))
    if not text:
        return ZERO

    last_comma = text.rfind(",")
    last_dot = text.rfind(".")
    if last_comma == -1 and last_dot == -1:
        return _to_decimal(re.sub(r"[^0-9-]", "", text))

    split_at = max(last_comma, last_dot)
    whole = re.sub(r"[^0-9-]", "", text[:split_at])
    fraction = re.sub(r"[^0-9]", "", text[split_at + 1:])
    return _to_decimal(f"{whole}.{fraction}" if fraction else whole)


def _to_decimal(text: str) -> Decimal:
    try:
        value = Decimal(text)
    except InvalidOperation:
        return ZERO
    return value if value.is_finite() else ZERO
