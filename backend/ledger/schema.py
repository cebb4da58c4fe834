"""
Schema adapter.

Installations have been migrated through several versions, so the same logical
column can live under different names (a debit amount is `debit` on one
database and `dr_amount` on another). The catalog is read once, every alias is
resolved once, and the result is a frozen capability struct the rest of the
engine reads column names from.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import Iterable, Optional, Sequence

from .config import settings
from .errors import SchemaCapabilityError
from .logs import json_log

LEDGER_TABLES = (
    "entities",
    "funds",
    "accounts",
    "journal_entries",
    "journal_entry_items",
    "gl_codes",
    "vendors",
    "bank_accounts",
    "payment_batches",
    "payment_items",
)

REQUIRED_TABLES = ("entities", "funds", "accounts", "journal_entries", "journal_entry_items")


class Catalog:
    """Column names per table, as reported by information_schema."""

    def __init__(self, columns: dict[str, Iterable[str]]):
        self._cols = {t.lower(): {c.lower() for c in cols} for t, cols in columns.items()}

    @classmethod
    def load(cls, cur, schema_name: Optional[str] = None, tables: Sequence[str] = LEDGER_TABLES) -> "Catalog":
        cur.execute(
            """
            SELECT table_name, column_name
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = ANY(%s)
            """,
            (schema_name or settings.db_schema, list(tables)),
        )
        cols: dict[str, set[str]] = {}
        for r in cur.fetchall():
            cols.setdefault(r["table_name"], set()).add(r["column_name"])
        return cls(cols)

    def has_table(self, table: str) -> bool:
        return table.lower() in self._cols

    def has_column(self, table: str, column: str) -> bool:
        return column.lower() in self._cols.get(table.lower(), ())

    def resolve_column(
        self,
        table: str,
        logical: str,
        candidates: Sequence[str],
        default: Optional[str] = "",
    ) -> Optional[str]:
        """
        First candidate present on `table`. When none is present the default is
        returned (the first candidate unless given), so a later write against a
        missing column fails loudly instead of being skipped. Pass default=None
        for optional capabilities.
        """
        for c in candidates:
            if self.has_column(table, c):
                return c
        if default == "":
            return candidates[0] if candidates else None
        return default

    def optional(self, table: str, *candidates: str) -> Optional[str]:
        return self.resolve_column(table, candidates[0], candidates, default=None)


@dataclass(frozen=True)
class EntityColumns:
    code: str
    label: str
    parent: Optional[str]
    is_consolidated: Optional[str]


@dataclass(frozen=True)
class FundColumns:
    number: str
    entity_code: Optional[str]
    entity_id: Optional[str]
    restriction: Optional[str]
    balance: Optional[str]
    starting_balance: Optional[str]
    label: Optional[str]
    updated_at: Optional[str]


@dataclass(frozen=True)
class AccountColumns:
    code: Optional[str]
    legacy_code: Optional[str]
    label: Optional[str]
    entity_code: Optional[str]
    gl_code: Optional[str]
    fund_number: Optional[str]
    restriction: Optional[str]
    classification: Optional[str]
    beginning_balance: Optional[str]
    beginning_balance_date: Optional[str]
    balance: Optional[str]
    status: Optional[str]
    balance_sheet: Optional[str]
    last_used: Optional[str]
    updated_at: Optional[str]


@dataclass(frozen=True)
class EntryColumns:
    entity: str
    entry_date: str
    reference: Optional[str]
    type: Optional[str]
    status: Optional[str]
    posted: Optional[str]
    entry_mode: Optional[str]
    total_amount: Optional[str]
    target_entity: Optional[str]
    is_inter_entity: Optional[str]
    description: Optional[str]
    created_by: Optional[str]
    import_id: Optional[str]
    updated_at: Optional[str]


@dataclass(frozen=True)
class ItemColumns:
    entry: str
    account: str
    fund: str
    debit: str
    credit: str
    description: Optional[str]
    classification: Optional[str]


@dataclass(frozen=True)
class GlCodeColumns:
    code: str
    classification: Optional[str]


@dataclass(frozen=True)
class VendorColumns:
    zid: Optional[str]
    name: Optional[str]


@dataclass(frozen=True)
class BankColumns:
    name: Optional[str]
    gl_account: Optional[str]


@dataclass(frozen=True)
class BatchColumns:
    batch_number: Optional[str]
    entity: Optional[str]
    fund: Optional[str]
    bank_account: Optional[str]
    batch_date: Optional[str]
    effective_date: Optional[str]
    total_amount: Optional[str]
    status: Optional[str]
    description: Optional[str]
    created_by: Optional[str]


@dataclass(frozen=True)
class PaymentItemColumns:
    batch: str
    vendor: Optional[str]
    amount: str
    memo: Optional[str]
    reference: Optional[str]
    status: Optional[str]
    account: Optional[str]
    fund: Optional[str]


@dataclass(frozen=True)
class LedgerSchema:
    entities: EntityColumns
    funds: FundColumns
    accounts: AccountColumns
    entries: EntryColumns
    items: ItemColumns
    gl_codes: Optional[GlCodeColumns]
    vendors: Optional[VendorColumns]
    bank_accounts: Optional[BankColumns]
    batches: Optional[BatchColumns]
    payment_items: Optional[PaymentItemColumns]

    def require(self, capability: str, value):
        if value is None:
            raise SchemaCapabilityError(f"schema incompatible: missing {capability}", capability=capability)
        return value

    def summary(self) -> dict:
        return asdict(self)


def _entities(cat: Catalog) -> EntityColumns:
    t = "entities"
    return EntityColumns(
        code=cat.resolve_column(t, "code", ("code", "entity_code")),
        label=cat.resolve_column(t, "label", ("name", "code", "description")),
        parent=cat.optional(t, "parent_entity_id", "parent_id"),
        is_consolidated=cat.optional(t, "is_consolidated"),
    )


def _funds(cat: Catalog) -> FundColumns:
    t = "funds"
    return FundColumns(
        number=cat.resolve_column(t, "number", ("fund_number", "fund_code", "code")),
        entity_code=cat.optional(t, "entity_code"),
        entity_id=cat.optional(t, "entity_id"),
        restriction=cat.optional(t, "restriction", "restriction_code"),
        balance=cat.optional(t, "balance", "current_balance"),
        starting_balance=cat.optional(t, "starting_balance", "beginning_balance"),
        label=cat.optional(t, "fund_name", "name"),
        updated_at=cat.optional(t, "updated_at"),
    )


def _accounts(cat: Catalog) -> AccountColumns:
    t = "accounts"
    code = cat.optional(t, "account_code", "code")
    legacy = None
    for c in ("legacy_code", "alias", "code"):
        if c != code and cat.has_column(t, c):
            legacy = c
            break
    return AccountColumns(
        code=code,
        legacy_code=legacy,
        label=cat.optional(t, "description", "name", "title"),
        entity_code=cat.optional(t, "entity_code"),
        gl_code=cat.optional(t, "gl_code"),
        fund_number=cat.optional(t, "fund_number"),
        restriction=cat.optional(t, "restriction"),
        classification=cat.optional(t, "classification", "line_type"),
        beginning_balance=cat.optional(t, "beginning_balance"),
        beginning_balance_date=cat.optional(t, "beginning_balance_date"),
        balance=cat.optional(t, "balance", "current_balance"),
        status=cat.optional(t, "status"),
        balance_sheet=cat.optional(t, "balance_sheet"),
        last_used=cat.optional(t, "last_used"),
        updated_at=cat.optional(t, "updated_at"),
    )


def _entries(cat: Catalog) -> EntryColumns:
    t = "journal_entries"
    for required in ("entity_id", "entry_date"):
        if not cat.has_column(t, required):
            raise SchemaCapabilityError(
                f"schema incompatible: journal_entries.{required} is missing",
                capability=f"journal_entries.{required}",
            )
    return EntryColumns(
        entity="entity_id",
        entry_date="entry_date",
        reference=cat.optional(t, "reference_number", "reference"),
        type=cat.optional(t, "type", "entry_type"),
        status=cat.optional(t, "status"),
        posted=cat.optional(t, "posted"),
        entry_mode=cat.optional(t, "entry_mode"),
        total_amount=cat.optional(t, "total_amount"),
        target_entity=cat.optional(t, "target_entity_id"),
        is_inter_entity=cat.optional(t, "is_inter_entity"),
        description=cat.optional(t, "description"),
        created_by=cat.optional(t, "created_by"),
        import_id=cat.optional(t, "import_id"),
        updated_at=cat.optional(t, "updated_at"),
    )


def _items(cat: Catalog) -> ItemColumns:
    t = "journal_entry_items"
    return ItemColumns(
        entry=cat.resolve_column(t, "entry", ("journal_entry_id", "entry_id", "je_id")),
        account=cat.resolve_column(t, "account", ("account_id", "gl_account_id", "acct_id", "account")),
        fund=cat.resolve_column(t, "fund", ("fund_id", "fund", "fundid")),
        debit=cat.resolve_column(t, "debit", ("debit", "debits", "dr_amount", "debit_amount", "dr")),
        credit=cat.resolve_column(t, "credit", ("credit", "credits", "cr_amount", "credit_amount", "cr")),
        description=cat.optional(t, "description", "memo", "note"),
        classification=cat.optional(t, "classification", "line_type"),
    )


def _gl_codes(cat: Catalog) -> Optional[GlCodeColumns]:
    t = "gl_codes"
    if not cat.has_table(t):
        return None
    return GlCodeColumns(
        code=cat.resolve_column(t, "code", ("code", "gl_code")),
        classification=cat.optional(t, "classification", "line_type"),
    )


def _vendors(cat: Catalog) -> Optional[VendorColumns]:
    t = "vendors"
    if not cat.has_table(t):
        return None
    return VendorColumns(zid=cat.optional(t, "zid", "vendor_id", "vendor_code"), name=cat.optional(t, "name", "vendor_name"))


def _banks(cat: Catalog) -> Optional[BankColumns]:
    t = "bank_accounts"
    if not cat.has_table(t):
        return None
    return BankColumns(
        name=cat.optional(t, "account_name", "name"),
        gl_account=cat.optional(t, "gl_account_id", "cash_account_id"),
    )


def _batches(cat: Catalog) -> Optional[BatchColumns]:
    t = "payment_batches"
    if not cat.has_table(t):
        return None
    return BatchColumns(
        batch_number=cat.optional(t, "batch_number", "reference"),
        entity=cat.optional(t, "entity_id"),
        fund=cat.optional(t, "fund_id"),
        bank_account=cat.optional(t, "bank_account_id"),
        batch_date=cat.optional(t, "batch_date"),
        effective_date=cat.optional(t, "effective_date", "settlement_date"),
        total_amount=cat.optional(t, "total_amount"),
        status=cat.optional(t, "status"),
        description=cat.optional(t, "description"),
        created_by=cat.optional(t, "created_by"),
    )


def _payment_items(cat: Catalog) -> Optional[PaymentItemColumns]:
    t = "payment_items"
    if not cat.has_table(t):
        return None
    return PaymentItemColumns(
        batch=cat.resolve_column(t, "batch", ("batch_id", "payment_batch_id")),
        vendor=cat.optional(t, "vendor_id"),
        amount=cat.resolve_column(t, "amount", ("amount",)),
        memo=cat.optional(t, "memo", "description"),
        reference=cat.optional(t, "reference", "invoice_number"),
        status=cat.optional(t, "status"),
        account=cat.optional(t, "account_id"),
        fund=cat.optional(t, "fund_id"),
    )


def build_schema(cat: Catalog) -> LedgerSchema:
    missing = [t for t in REQUIRED_TABLES if not cat.has_table(t)]
    if missing:
        raise SchemaCapabilityError(f"schema incompatible: missing table(s) {', '.join(missing)}", capability=missing[0])
    return LedgerSchema(
        entities=_entities(cat),
        funds=_funds(cat),
        accounts=_accounts(cat),
        entries=_entries(cat),
        items=_items(cat),
        gl_codes=_gl_codes(cat),
        vendors=_vendors(cat),
        bank_accounts=_banks(cat),
        batches=_batches(cat),
        payment_items=_payment_items(cat),
    )


_lock = threading.Lock()
_cached: Optional[LedgerSchema] = None


def get_schema(cur, *, refresh: bool = False) -> LedgerSchema:
    """The adapter for this process; built on first use from the live catalog."""
    global _cached
    with _lock:
        if _cached is not None and not refresh:
            return _cached
    built = build_schema(Catalog.load(cur))
    json_log("info", "ledger.schema.resolved", schema=settings.db_schema, columns=built.summary())
    with _lock:
        _cached = built
    return built


def reset_schema_cache() -> None:
    global _cached
    with _lock:
        _cached = None
