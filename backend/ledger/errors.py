from __future__ import annotations

from typing import Any, Optional


class LedgerError(Exception):
    """Base for every failure the ledger engine reports to its callers."""

    kind = "ledger_error"

    def __init__(
        self,
        detail: str,
        *,
        field: Optional[str] = None,
        row: Optional[int] = None,
        token: Optional[str] = None,
    ):
        super().__init__(detail)
        self.detail = detail
        self.field = field
        self.row = row
        self.token = token

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.kind, "detail": self.detail}
        if self.field is not None:
            out["field"] = self.field
        if self.row is not None:
            out["row"] = self.row
        if self.token is not None:
            out["token"] = self.token
        return out


class ValidationError(LedgerError):
    """Input is wrong; nothing was written."""

    kind = "validation_error"


class BalanceError(ValidationError):
    kind = "balance_error"


class ResolutionError(LedgerError):
    """A reference (entity, fund, account, vendor, bank) does not resolve."""

    kind = "resolution_error"


class NotFoundError(LedgerError):
    kind = "not_found"


class SchemaCapabilityError(LedgerError):
    """This installation's schema lacks a table/column the operation cannot do without."""

    kind = "schema_capability_error"

    def __init__(self, detail: str, *, capability: Optional[str] = None):
        super().__init__(detail, field=capability)
        self.capability = capability


class TransactionError(LedgerError):
    """The store failed mid-transaction; the whole unit was rolled back."""

    kind = "transaction_error"
