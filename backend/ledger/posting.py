"""
Posting engine: create / replace lines / post / delete journal entries.

Every operation is one atomic unit. Validation that needs no database runs
before the transaction opens; everything else (resolution, uniqueness, writes,
balance propagation) runs inside it, so a failure anywhere leaves neither a
partial entry nor a half-applied balance.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from . import queries as q
from .amounts import d, q_cents
from .balances import apply_line, entry_lines, entry_totals, reverse_entry_lines
from .db import atomic
from .errors import BalanceError, NotFoundError, ResolutionError, SchemaCapabilityError, ValidationError
from .logs import json_log
from .resolver import Resolver
from .schema import LedgerSchema, get_schema
from .validation import (
    EntryMode,
    EntryModeIn,
    Cents,
    EntryStatus,
    OptionalText,
    StatusIn,
    canonical_entry_mode,
    canonical_status,
)


class EntryLine(BaseModel):
    account: OptionalText = None
    fund: OptionalText = None
    debit: Cents = Decimal("0.00")
    credit: Cents = Decimal("0.00")
    description: OptionalText = None


class EntryHeader(BaseModel):
    entity: OptionalText = None
    entry_date: Optional[date] = None
    reference_number: OptionalText = Field(default=None, max_length=50)
    type: OptionalText = None
    description: OptionalText = None
    status: Optional[StatusIn] = None
    entry_mode: Optional[EntryModeIn] = None
    target_entity: OptionalText = None
    is_inter_entity: Optional[bool] = None
    created_by: OptionalText = None
    import_id: OptionalText = None


class EntryHeaderUpdate(BaseModel):
    entity: OptionalText = None
    entry_date: Optional[date] = None
    reference_number: OptionalText = Field(default=None, max_length=50)
    type: OptionalText = None
    description: OptionalText = None
    target_entity: OptionalText = None
    is_inter_entity: Optional[bool] = None
    # Accepted only to be refused: status moves through post_entry.
    status: Optional[str] = None


# -- validation --------------------------------------------------------------


def validate_lines(lines: List[EntryLine], status: EntryStatus) -> tuple[Decimal, Decimal]:
    """
    Structural checks that need no database. Returns (total debits, total
    credits), rounded to cents.
    """
    if status == EntryStatus.POSTED and not lines:
        raise ValidationError("a posted entry needs at least one line", field="lines")
    for n, ln in enumerate(lines, start=1):
        if not ln.account:
            raise ValidationError(f"line {n}: account is required", field="account", row=n)
        dr, cr = ln.debit, ln.credit
        if dr < 0 or cr < 0:
            raise ValidationError(f"line {n}: debit/credit must not be negative", field="debit" if dr < 0 else "credit", row=n)
        if (dr != 0) == (cr != 0):
            raise ValidationError(
                f"line {n}: exactly one of debit or credit must be non-zero",
                field="debit" if dr == 0 else "credit",
                row=n,
            )
    dr_total, cr_total = entry_totals([ln.model_dump() for ln in lines])
    if status != EntryStatus.PENDING:
        assert_balanced(dr_total, cr_total)
    return dr_total, cr_total


def assert_balanced(dr_total: Decimal, cr_total: Decimal) -> None:
    if q_cents(dr_total) != q_cents(cr_total):
        raise BalanceError(
            f"entry is out of balance: debits {q_cents(dr_total)} != credits {q_cents(cr_total)}",
            field="lines",
        )


def _validate_header(header: EntryHeader) -> None:
    if not header.entity:
        raise ValidationError("entity is required", field="entity")
    if header.entry_date is None:
        raise ValidationError("entry_date is required", field="entry_date")


def _assert_reference_free(cur, schema: LedgerSchema, reference: Optional[str], *, exclude_id: Any = None) -> None:
    col = schema.entries.reference
    if not reference or not col:
        return
    rows = q.fetch_all(cur, q.select("journal_entries", ["id"], [q.IEq(col, reference)], limit=2))
    if any(str(r["id"]) != str(exclude_id) for r in rows):
        raise ValidationError(
            f"reference number {reference!r} already exists",
            field="reference_number",
            token=reference,
        )


# -- storage boundary --------------------------------------------------------


def entry_select(schema: LedgerSchema) -> list:
    e = schema.entries
    return [
        "id",
        (e.entity, "entity_id"),
        (e.entry_date, "entry_date"),
        (e.reference, "reference_number"),
        (e.type, "type"),
        (e.description, "description"),
        (e.status, "status"),
        (e.posted, "posted"),
        (e.entry_mode, "entry_mode"),
        (e.total_amount, "total_amount"),
        (e.target_entity, "target_entity_id"),
        (e.is_inter_entity, "is_inter_entity"),
    ]


def row_status(schema: LedgerSchema, row: dict) -> EntryStatus:
    kw = {}
    if schema.entries.status:
        kw["raw"] = row.get("status")
    if schema.entries.posted:
        kw["posted"] = row.get("posted")
    return canonical_status(**kw)


def status_columns(schema: LedgerSchema, status: EntryStatus) -> dict[str, Any]:
    e = schema.entries
    out: dict[str, Any] = {}
    if e.status:
        out[e.status] = status.value
    if e.posted:
        out[e.posted] = status == EntryStatus.POSTED
    if not out and status != EntryStatus.POSTED:
        raise SchemaCapabilityError(
            "schema incompatible: journal_entries has no status/posted column, every entry is posted",
            capability="journal_entries.status",
        )
    if status == EntryStatus.PENDING and not e.status:
        # A lone posted flag can only say Posted or not; Pending would read back as Draft.
        raise SchemaCapabilityError(
            "schema incompatible: journal_entries has no status column, Pending cannot be stored",
            capability="journal_entries.status",
        )
    return out


def _load_entry(cur, schema: LedgerSchema, entry_id: Any, *, for_update: bool = False) -> dict:
    row = q.fetch_one(
        cur,
        q.select("journal_entries", entry_select(schema), [q.TextEq("id", entry_id)], limit=1, for_update=for_update),
    )
    if row is None:
        raise NotFoundError(f"journal entry {entry_id} not found", field="entry_id", token=str(entry_id))
    return row


def _insert_lines(cur, schema: LedgerSchema, resolver: Resolver, entry: dict, lines: List[EntryLine], *, posted: bool) -> int:
    """Resolve and write `lines`; apply their deltas when the entry is Posted."""
    i = schema.items
    entity_code = entry.get("entity_code")
    for n, ln in enumerate(lines, start=1):
        try:
            account = resolver.account(ln.account)
            if ln.fund:
                fund = resolver.fund(account.get("entity_code") or entity_code, ln.fund)
            else:
                fund = resolver.fund_for_account(account)
        except ResolutionError as exc:
            raise ResolutionError(f"line {n}: {exc.detail}", field=exc.field, row=n, token=exc.token) from exc
        cls = resolver.classification(account)
        values: dict[str, Any] = {
            i.entry: entry["id"],
            i.account: account["id"],
            i.fund: fund["id"],
            i.debit: ln.debit,
            i.credit: ln.credit,
        }
        if i.description:
            values[i.description] = ln.description
        if i.classification and cls is not None:
            values[i.classification] = cls.value
        q.run(cur, q.insert("journal_entry_items", values))
        if posted:
            apply_line(
                cur,
                schema,
                resolver,
                account=account,
                fund_id=fund["id"],
                debit=ln.debit,
                credit=ln.credit,
                snapshot=cls.value if cls is not None else None,
            )
    return len(lines)


def _read_entry(cur, schema: LedgerSchema, entry_id: Any) -> dict:
    row = _load_entry(cur, schema, entry_id)
    resolver = Resolver(cur, schema)
    out = {
        "id": row["id"],
        "entity_id": row.get("entity_id"),
        "entry_date": row.get("entry_date"),
        "reference_number": row.get("reference_number"),
        "type": row.get("type"),
        "description": row.get("description"),
        "status": row_status(schema, row).value,
        "entry_mode": canonical_entry_mode(row.get("entry_mode")).value,
        "total_amount": row.get("total_amount"),
        "target_entity_id": row.get("target_entity_id"),
        "is_inter_entity": bool(row.get("is_inter_entity")),
        "lines": [],
    }
    for ln in entry_lines(cur, schema, row["id"]):
        account = resolver.account(ln["account_id"])
        fund = resolver.fund(None, ln["fund_id"])
        out["lines"].append(
            {
                "id": ln["id"],
                "account_id": ln["account_id"],
                "account_code": account.get("account_code"),
                "account_label": account.get("label"),
                "fund_id": ln["fund_id"],
                "fund_number": fund.get("fund_number"),
                "fund_label": fund.get("label"),
                "debit": d(ln["debit"]),
                "credit": d(ln["credit"]),
                "description": ln.get("description"),
            }
        )
    if out["total_amount"] is None:
        out["total_amount"] = entry_totals(out["lines"])[0]
    return out


# -- operations --------------------------------------------------------------


def create_entry(conn, header: EntryHeader, lines: List[EntryLine]) -> dict:
    """
    Validate and persist one journal entry with its lines.

    Defaults: status Posted, entry mode Manual. Posted entries move the cached
    account and fund balances in the same transaction.
    """
    _validate_header(header)
    status = header.status or EntryStatus.POSTED
    mode = header.entry_mode or EntryMode.MANUAL
    dr_total, _ = validate_lines(lines, status)

    with atomic(conn) as cur:
        schema = get_schema(cur)
        e = schema.entries
        resolver = Resolver(cur, schema)
        entity = resolver.entity(header.entity)
        target = resolver.entity(header.target_entity) if header.target_entity else None
        _assert_reference_free(cur, schema, header.reference_number)

        values: dict[str, Any] = {e.entity: entity["id"], e.entry_date: header.entry_date}
        values.update(status_columns(schema, status))
        optional = {
            e.reference: header.reference_number,
            e.type: header.type,
            e.description: header.description,
            e.entry_mode: mode.value,
            e.total_amount: dr_total,
            e.target_entity: target["id"] if target else None,
            e.is_inter_entity: (
                header.is_inter_entity
                if header.is_inter_entity is not None
                else bool(target and str(target["id"]) != str(entity["id"]))
            ),
            e.created_by: header.created_by,
            e.import_id: header.import_id,
        }
        for col, v in optional.items():
            if col and v is not None:
                values[col] = v

        entry = q.fetch_one(cur, q.insert("journal_entries", values))
        entry["entity_code"] = entity.get("code")
        _insert_lines(cur, schema, resolver, entry, lines, posted=status == EntryStatus.POSTED)
        out = _read_entry(cur, schema, entry["id"])

    json_log(
        "info",
        "ledger.entry.created",
        entry_id=out["id"],
        status=status.value,
        entry_mode=mode.value,
        lines=len(lines),
        total=dr_total,
        reference=header.reference_number,
    )
    return out


def replace_lines(conn, entry_id: Any, lines: List[EntryLine]) -> dict:
    """Swap the full line set of an entry; a Posted entry's old deltas are reversed first."""
    with atomic(conn) as cur:
        schema = get_schema(cur)
        e = schema.entries
        i = schema.items
        row = _load_entry(cur, schema, entry_id, for_update=True)
        status = row_status(schema, row)
        dr_total, _ = validate_lines(lines, status)
        resolver = Resolver(cur, schema)
        posted = status == EntryStatus.POSTED

        removed = reverse_entry_lines(cur, schema, resolver, row["id"]) if posted else None
        q.run(cur, q.delete("journal_entry_items", [q.Eq(i.entry, row["id"])]))
        entity = resolver.entity(row["entity_id"])
        row["entity_code"] = entity.get("code")
        _insert_lines(cur, schema, resolver, row, lines, posted=posted)
        if e.total_amount:
            q.run(cur, q.update("journal_entries", {e.total_amount: dr_total}, [q.Eq("id", row["id"])], touch=e.updated_at))
        out = _read_entry(cur, schema, row["id"])

    json_log("info", "ledger.entry.lines_replaced", entry_id=out["id"], status=status.value, lines=len(lines), reversed=removed)
    return out


def post_entry(conn, entry_id: Any) -> dict:
    """Draft/Pending -> Posted. Re-checks balance; posting a Posted entry changes nothing."""
    with atomic(conn) as cur:
        schema = get_schema(cur)
        e = schema.entries
        row = _load_entry(cur, schema, entry_id, for_update=True)
        if row_status(schema, row) == EntryStatus.POSTED:
            return _read_entry(cur, schema, row["id"])
        lines = entry_lines(cur, schema, row["id"])
        if not lines:
            raise ValidationError("a posted entry needs at least one line", field="lines")
        dr_total, cr_total = entry_totals(lines)
        assert_balanced(dr_total, cr_total)

        resolver = Resolver(cur, schema)
        for ln in lines:
            apply_line(
                cur,
                schema,
                resolver,
                account=resolver.account(ln["account_id"]),
                fund_id=ln["fund_id"],
                debit=ln["debit"],
                credit=ln["credit"],
                snapshot=ln.get("classification"),
            )
        values = status_columns(schema, EntryStatus.POSTED)
        if e.total_amount:
            values[e.total_amount] = dr_total
        q.run(cur, q.update("journal_entries", values, [q.Eq("id", row["id"])], touch=e.updated_at))
        out = _read_entry(cur, schema, row["id"])

    json_log("info", "ledger.entry.posted", entry_id=out["id"], lines=len(lines), total=dr_total)
    return out


def delete_entry(conn, entry_id: Any) -> None:
    """Remove an entry and its lines, reversing a Posted entry's balance effect first."""
    with atomic(conn) as cur:
        schema = get_schema(cur)
        row = _load_entry(cur, schema, entry_id, for_update=True)
        status = row_status(schema, row)
        reversed_lines = 0
        if status == EntryStatus.POSTED:
            reversed_lines = reverse_entry_lines(cur, schema, Resolver(cur, schema), row["id"])
        q.run(cur, q.delete("journal_entry_items", [q.Eq(schema.items.entry, row["id"])]))
        q.run(cur, q.delete("journal_entries", [q.Eq("id", row["id"])]))

    json_log("info", "ledger.entry.deleted", entry_id=row["id"], status=status.value, reversed_lines=reversed_lines)


def update_entry_header(conn, entry_id: Any, fields: EntryHeaderUpdate) -> dict:
    if fields.status is not None:
        raise ValidationError("status cannot be changed here; post the entry instead", field="status")
    with atomic(conn) as cur:
        schema = get_schema(cur)
        e = schema.entries
        row = _load_entry(cur, schema, entry_id, for_update=True)
        resolver = Resolver(cur, schema)
        values: dict[str, Any] = {}
        if fields.entity is not None:
            values[e.entity] = resolver.entity(fields.entity)["id"]
        if fields.entry_date is not None:
            values[e.entry_date] = fields.entry_date
        if fields.reference_number is not None and e.reference:
            _assert_reference_free(cur, schema, fields.reference_number, exclude_id=row["id"])
            values[e.reference] = fields.reference_number
        if fields.description is not None and e.description:
            values[e.description] = fields.description
        if fields.type is not None and e.type:
            values[e.type] = fields.type
        if fields.target_entity is not None and e.target_entity:
            values[e.target_entity] = resolver.entity(fields.target_entity)["id"]
        if fields.is_inter_entity is not None and e.is_inter_entity:
            values[e.is_inter_entity] = fields.is_inter_entity
        if values:
            q.run(cur, q.update("journal_entries", values, [q.Eq("id", row["id"])], touch=e.updated_at))
        return _read_entry(cur, schema, row["id"])


def get_entry(conn, entry_id: Any) -> dict:
    with conn.cursor() as cur:
        schema = get_schema(cur)
        return _read_entry(cur, schema, entry_id)
