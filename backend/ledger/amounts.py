from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

CENTS = Decimal("0.01")
ZERO = Decimal("0")


def d(v: Any) -> Decimal:
    if v is None or v == "":
        return ZERO
    if isinstance(v, Decimal):
        return v
    try:
        return Decimal(str(v).strip())
    except InvalidOperation:
        raise ValueError(f"not a number: {v!r}")


def q_cents(v: Optional[Decimal]) -> Decimal:
    return (v or ZERO).quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_accounting_amount(v: Any) -> Decimal:
    """
    Spreadsheet-style amounts: "(1,234.50)" is negative, "$" and commas are
    ignored, a bare "-" means zero. Raises ValueError for anything else that is
    not a number.
    """
    if v is None:
        return ZERO
    if isinstance(v, (int, float, Decimal)):
        return Decimal(str(v))
    t = str(v).strip()
    if len(t) >= 2 and t[0] == '"' and t[-1] == '"':
        t = t[1:-1].strip()
    if not t or t.strip("- ") == "":
        return ZERO
    neg = False
    if t.startswith("(") and t.endswith(")"):
        neg = True
        t = t[1:-1]
    t = re.sub(r"[,$\s]", "", t)
    try:
        num = Decimal(t)
    except InvalidOperation:
        raise ValueError(f"not an amount: {v!r}")
    return -num if neg else num


_MDY = re.compile(r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{2,4})$")


def parse_date(v: Any) -> Optional[date]:
    """ISO (YYYY-MM-DD) or M/D/Y with two- or four-digit years; None when empty."""
    if v is None:
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    s = str(v).strip()
    if not s:
        return None
    m = _MDY.match(s)
    if m:
        mm, dd, yy = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if yy < 100:
            yy += 1900 if yy >= 70 else 2000
        return date(yy, mm, dd)
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        raise ValueError(f"not a date: {v!r}")
