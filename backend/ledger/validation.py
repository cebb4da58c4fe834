from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional

from pydantic import BeforeValidator, StringConstraints

from .amounts import d, q_cents


class EntryStatus(str, Enum):
    DRAFT = "Draft"
    PENDING = "Pending"
    POSTED = "Posted"


class EntryMode(str, Enum):
    MANUAL = "Manual"
    AUTO = "Auto"


_ABSENT = object()


def canonical_status(raw: Any = _ABSENT, posted: Any = _ABSENT) -> EntryStatus:
    """
    Single mapping from whatever the store holds (status text, a `posted`
    boolean, or both) to EntryStatus. Anything starting with "post" is Posted;
    a true `posted` flag wins over a stale status string. Pass only the values
    of columns that exist: with neither column the entry counts as Posted,
    which is how the oldest installations stored every entry.
    """
    if raw is _ABSENT and posted is _ABSENT:
        return EntryStatus.POSTED
    if posted is True:
        return EntryStatus.POSTED
    s = "" if raw is _ABSENT else str(raw or "").strip().lower()
    if s.startswith("post"):
        return EntryStatus.POSTED
    if s.startswith("pend"):
        return EntryStatus.PENDING
    return EntryStatus.DRAFT


def canonical_entry_mode(raw: Any = None) -> EntryMode:
    s = str(raw or "").strip().lower()
    return EntryMode.AUTO if s.startswith("auto") else EntryMode.MANUAL


def _to_status(v):
    if v is None or isinstance(v, EntryStatus):
        return v
    s = str(v).strip().lower()
    for st in EntryStatus:
        if st.value.lower() == s:
            return st
    return v


def _to_mode(v):
    if v is None or isinstance(v, EntryMode):
        return v
    s = str(v).strip().lower()
    for m in EntryMode:
        if m.value.lower() == s:
            return m
    return v


def _strip_or_none(v):
    if v is None:
        return None
    s = str(v).strip()
    return s or None


StatusIn = Annotated[EntryStatus, BeforeValidator(_to_status)]
EntryModeIn = Annotated[EntryMode, BeforeValidator(_to_mode)]
OptionalText = Annotated[Optional[str], BeforeValidator(_strip_or_none)]

# Payments files describe each row as still owed (pending EFT) or already settled.
PaymentRowStatus = Annotated[Literal["pending", "completed"], BeforeValidator(lambda v: str(v or "").strip().lower())]

Reference = Annotated[str, BeforeValidator(lambda v: str(v or "").strip()), StringConstraints(max_length=50)]

# Line amounts are rounded to cents once, on the way in; the balance check,
# the stored line and the balance delta all see this one value.
Cents = Annotated[Decimal, BeforeValidator(lambda v: q_cents(d(v)))]
