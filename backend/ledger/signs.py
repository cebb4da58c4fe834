from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .amounts import d


class Classification(str, Enum):
    ASSET = "Asset"
    LIABILITY = "Liability"
    EQUITY = "Equity"
    REVENUE = "Revenue"
    EXPENSE = "Expense"


# Credit-normal classifications; everything else (including unknown) is debit-normal.
CREDIT_NORMAL = frozenset({Classification.LIABILITY, Classification.EQUITY, Classification.REVENUE})


def normalize_classification(raw: Any) -> Optional[Classification]:
    """
    Map free-text classification / line type to Classification.

    Chart-of-accounts data carries values like "Assets", "Liabilities - Credit
    Card", "Net Assets without Donor Restrictions", "Revenues". Returns None
    when nothing matches.
    """
    if raw is None:
        return None
    if isinstance(raw, Classification):
        return raw
    s = str(raw).strip().lower()
    if not s:
        return None
    if s.startswith("asset"):
        return Classification.ASSET
    if s.startswith("liab") or "credit card" in s:
        return Classification.LIABILITY
    if s.startswith("equity") or "net asset" in s:
        return Classification.EQUITY
    if s.startswith("rev") or s.startswith("income"):
        return Classification.REVENUE
    if s.startswith("exp"):
        return Classification.EXPENSE
    return None


def signed_delta(classification: Any, debit: Any, credit: Any) -> Decimal:
    """
    Balance change for one line.

    Asset/Expense: debit - credit. Liability/Equity/Revenue: credit - debit.
    An unrecognized classification is treated as debit-normal so the amount is
    never dropped.
    """
    dr = d(debit)
    cr = d(credit)
    if normalize_classification(classification) in CREDIT_NORMAL:
        return cr - dr
    return dr - cr
