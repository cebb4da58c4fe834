"""
Batched payments import.

Rows are grouped by (status, reference, effective date, bank). A pending group
becomes one EFT payment batch; a completed group becomes one Posted journal
entry (debit the expense accounts, credit the bank's GL account). Both paths
are idempotent: a batch is found again by its batch number and an entry by
its reference number, so re-running a file adds nothing.

Rows whose vendor, account, fund or bank do not resolve are logged and
skipped; they never abort the rest of the file.
"""

from __future__ import annotations

import csv
import io
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel

from .. import queries as q
from ..amounts import ZERO, d, parse_accounting_amount, parse_date, q_cents
from ..config import settings
from ..db import atomic
from ..errors import LedgerError, ResolutionError, SchemaCapabilityError, ValidationError
from ..logs import json_log
from ..posting import EntryHeader, EntryLine, create_entry
from ..resolver import Resolver
from ..schema import LedgerSchema, get_schema
from ..validation import EntryMode, EntryStatus, PaymentRowStatus


class PaymentMapping(BaseModel):
    """Which file column feeds which field; values are header names as they appear in the file."""

    reference: Optional[str] = None
    effective_date: Optional[str] = None
    amount: Optional[str] = None
    account_no: Optional[str] = None
    bank_account_name: Optional[str] = None
    vendor_zid: Optional[str] = None
    vendor_name: Optional[str] = None
    memo: Optional[str] = None
    invoice_number: Optional[str] = None
    payment_id: Optional[str] = None
    status: Optional[str] = None
    # Used when the file has no status column.
    default_status: PaymentRowStatus = "pending"


def suggest_payment_mapping(headers: list[str]) -> dict[str, str]:
    """Best-effort header -> field guess for a payments file, for the caller to confirm."""
    out: dict[str, str] = {}
    for header in headers:
        h = header.strip().lower()
        if ("post" in h or "effective" in h) and "date" in h:
            out.setdefault("effective_date", header)
        elif h == "amount":
            out.setdefault("amount", header)
        elif "payment" in h and "id" in h:
            out.setdefault("payment_id", header)
        elif "account" in h and "no" in h:
            out.setdefault("account_no", header)
        elif "bank" in h:
            out.setdefault("bank_account_name", header)
        elif "payee_zid" in h or h == "zid":
            out.setdefault("vendor_zid", header)
        elif "payee" in h or "vendor" in h:
            out.setdefault("vendor_name", header)
        elif "description" in h or "memo" in h:
            out.setdefault("memo", header)
        elif "invoice" in h and "date" not in h:
            out.setdefault("invoice_number", header)
        elif "reference" in h:
            out.setdefault("reference", header)
        elif "status" in h:
            out.setdefault("status", header)
    if "effective_date" not in out:
        generic = next((h for h in headers if "date" in h.strip().lower()), None)
        if generic:
            out["effective_date"] = generic
    if "amount" not in out:
        generic = next((h for h in headers if "amount" in h.strip().lower()), None)
        if generic:
            out["amount"] = generic
    return out


def parse_account_number(raw: Any, default_restriction: Optional[str] = None) -> Optional[tuple[str, str, str, str]]:
    """'TPF 5100 GEN' -> ('TPF', '5100', 'GEN', default restriction); None when fewer than three parts."""
    parts = str(raw or "").split()
    if len(parts) < 3:
        return None
    restriction = parts[3] if len(parts) > 3 else (default_restriction or settings.default_restriction)
    return parts[0], parts[1], parts[2], restriction


def parse_payments_csv(text: str) -> tuple[list[str], list[dict]]:
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.DictReader(io.StringIO(text))
    headers = [h.strip() for h in (reader.fieldnames or [])]
    rows = []
    for raw in reader:
        row = {(k or "").strip(): (v or "").strip() for k, v in raw.items() if k is not None}
        if any(row.values()):
            rows.append(row)
    return headers, rows


@dataclass
class PaymentRow:
    row: int
    status: str
    reference: str
    effective_date: date
    amount: Decimal
    account_no: str
    bank_name: str
    vendor_zid: str
    vendor_name: str
    memo: Optional[str]
    invoice_number: Optional[str]


@dataclass
class ResolvedRow:
    src: PaymentRow
    entity: dict
    account: dict
    fund: dict
    vendor_id: Any
    bank: Optional[dict]


@dataclass
class PaymentsImportResult:
    batches: list = field(default_factory=list)
    journal_entries: list = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    log: list[str] = field(default_factory=list)
    skipped: int = 0

    def error(self, row: int, reference: str, message: str) -> None:
        self.errors.append({"row": row, "reference": reference, "message": message})
        self.log.append(f"ERROR,{row},{reference},{message}")

    def to_dict(self) -> dict:
        return {
            "batches": self.batches,
            "journal_entries": self.journal_entries,
            "errors": self.errors,
            "log": self.log,
            "skipped": self.skipped,
        }


def _read_rows(rows: list[dict], mapping: PaymentMapping, result: PaymentsImportResult) -> list[PaymentRow]:
    def cell(raw: dict, key: Optional[str]) -> str:
        return str(raw.get(key) or "").strip() if key else ""

    out: list[PaymentRow] = []
    for n, raw in enumerate(rows, start=1):
        reference = cell(raw, mapping.reference) or cell(raw, mapping.invoice_number)
        if not reference:
            result.error(n, "", "reference is required")
            continue
        status = (cell(raw, mapping.status) or mapping.default_status).lower()
        if status not in {"pending", "completed"}:
            result.error(n, reference, f"status {status!r} must be pending or completed")
            continue
        try:
            amount = q_cents(parse_accounting_amount(cell(raw, mapping.amount)))
        except ValueError:
            result.error(n, reference, f"amount {cell(raw, mapping.amount)!r} is not an amount")
            continue
        if amount <= 0:
            result.error(n, reference, "amount must be greater than zero")
            continue
        try:
            eff = parse_date(cell(raw, mapping.effective_date))
        except ValueError:
            eff = None
        if eff is None:
            eff = date.today()
            result.log.append(f"WARN,{n},{reference},missing or invalid effective date; using {eff.isoformat()}")
        out.append(
            PaymentRow(
                row=n,
                status=status,
                reference=reference,
                effective_date=eff,
                amount=amount,
                account_no=cell(raw, mapping.account_no),
                bank_name=cell(raw, mapping.bank_account_name),
                vendor_zid=cell(raw, mapping.vendor_zid),
                vendor_name=cell(raw, mapping.vendor_name),
                memo=cell(raw, mapping.memo) or None,
                invoice_number=cell(raw, mapping.invoice_number) or None,
            )
        )
    return out


def _vendor_id(cur, schema: LedgerSchema, zid: str, name: str) -> Any:
    v = schema.vendors
    if v is None:
        raise ResolutionError("vendors are not available on this installation", field="vendor")
    if zid and v.zid:
        row = q.fetch_one(cur, q.select("vendors", ["id"], [q.IEq(v.zid, zid)], limit=1))
        if row:
            return row["id"]
    if name and v.name:
        rows = q.fetch_all(cur, q.select("vendors", ["id"], [q.IEq(v.name, name)], limit=2))
        if len(rows) == 1:
            return rows[0]["id"]
    token = zid or name
    raise ResolutionError(f"vendor {token!r} not found", field="vendor", token=token)


def _bank(cur, schema: LedgerSchema, name: str) -> dict:
    b = schema.bank_accounts
    if b is None or not b.name or not b.gl_account:
        raise ResolutionError("bank account mapping is not available on this installation", field="bank_account")
    if not name:
        raise ResolutionError("bank account is required", field="bank_account")
    row = q.fetch_one(cur, q.select("bank_accounts", ["id", (b.gl_account, "gl_account_id")], [q.IEq(b.name, name)], limit=1))
    if row is None:
        raise ResolutionError(f"bank account {name!r} not found", field="bank_account", token=name)
    return row


def _expense_account(resolver: Resolver, account_no: str) -> dict:
    try:
        return resolver.account(account_no)
    except ResolutionError:
        parts = parse_account_number(account_no)
        if parts is None:
            raise
        row = resolver.account_by_parts(*parts) or resolver.account_by_parts(*parts[:3])
        if row is None:
            raise
        return row


def _resolve(cur, schema: LedgerSchema, resolver: Resolver, r: PaymentRow) -> ResolvedRow:
    account = _expense_account(resolver, r.account_no)
    fund = resolver.fund_for_account(account)
    entity = resolver.entity(account.get("entity_code") or (parse_account_number(r.account_no) or ("",))[0])
    vendor_id = None
    if r.status == "pending" or r.vendor_zid or r.vendor_name:
        vendor_id = _vendor_id(cur, schema, r.vendor_zid, r.vendor_name)
    bank = None
    if r.status == "completed" or r.bank_name:
        bank = _bank(cur, schema, r.bank_name)
        if r.status == "completed" and bank.get("gl_account_id") is None:
            raise ResolutionError(f"bank account {r.bank_name!r} has no GL account", field="bank_account", token=r.bank_name)
    return ResolvedRow(src=r, entity=entity, account=account, fund=fund, vendor_id=vendor_id, bank=bank)


def _memo_key(v: Optional[str]) -> str:
    return " ".join(str(v or "").lower().split())


def _write_batch(cur, schema: LedgerSchema, group: list[ResolvedRow], created_by: Optional[str], result: PaymentsImportResult) -> None:
    bt = schema.batches
    it = schema.payment_items
    first = group[0]
    ref = first.src.reference

    conds = [q.IEq(bt.batch_number, ref)] if bt.batch_number else []
    if conds and bt.effective_date:
        conds.append(q.Eq(bt.effective_date, first.src.effective_date))
    batch = q.fetch_one(cur, q.select("payment_batches", ["id"], conds, limit=1, for_update=True)) if conds else None
    if batch is None:
        values: dict[str, Any] = {}
        for col, v in (
            (bt.batch_number, ref),
            (bt.entity, first.entity["id"]),
            (bt.fund, first.fund["id"]),
            (bt.bank_account, first.bank["id"] if first.bank else None),
            (bt.batch_date, date.today()),
            (bt.effective_date, first.src.effective_date),
            (bt.total_amount, ZERO),
            (bt.status, "pending"),
            (bt.description, first.src.memo or f"Payments {ref}"),
            (bt.created_by, created_by),
        ):
            if col and v is not None:
                values[col] = v
        batch = q.fetch_one(cur, q.insert("payment_batches", values))

    item_cols = ["id", (it.vendor, "vendor_id"), (it.amount, "amount"), (it.memo, "memo")]
    existing = q.fetch_all(cur, q.select("payment_items", item_cols, [q.Eq(it.batch, batch["id"])]))
    seen = {(str(x.get("vendor_id")), q_cents(d(x.get("amount"))), _memo_key(x.get("memo"))) for x in existing}
    total = sum((d(x.get("amount")) for x in existing), ZERO)

    for rr in group:
        key = (str(rr.vendor_id), rr.src.amount, _memo_key(rr.src.memo))
        if key in seen:
            result.skipped += 1
            result.log.append(f"SKIP,{rr.src.row},{ref},duplicate payment item")
            continue
        seen.add(key)
        values = {it.batch: batch["id"], it.amount: rr.src.amount}
        for col, v in (
            (it.vendor, rr.vendor_id),
            (it.memo, rr.src.memo),
            (it.reference, rr.src.invoice_number),
            (it.status, "pending"),
            (it.account, rr.account["id"]),
            (it.fund, rr.fund["id"]),
        ):
            if col and v is not None:
                values[col] = v
        q.run(cur, q.insert("payment_items", values))
        total += rr.src.amount
        result.log.append(f"OK,Batch,{rr.src.row},{ref}")

    if bt.total_amount:
        q.run(cur, q.update("payment_batches", {bt.total_amount: q_cents(total)}, [q.Eq("id", batch["id"])]))
    if batch["id"] not in result.batches:
        result.batches.append(batch["id"])


def _reference_taken(cur, schema: LedgerSchema, reference: str) -> bool:
    col = schema.entries.reference
    if not col:
        return False
    return q.fetch_one(cur, q.select("journal_entries", ["id"], [q.IEq(col, reference)], limit=1)) is not None


def _entry_lines(group: list[ResolvedRow]) -> list[EntryLine]:
    debits: "OrderedDict[tuple, Decimal]" = OrderedDict()
    credits: "OrderedDict[Any, Decimal]" = OrderedDict()
    for rr in group:
        dk = (str(rr.account["id"]), str(rr.fund["id"]))
        debits[dk] = debits.get(dk, ZERO) + rr.src.amount
        ck = (str(rr.bank["gl_account_id"]), str(rr.fund["id"]))
        credits[ck] = credits.get(ck, ZERO) + rr.src.amount
    lines = [EntryLine(account=a, fund=f, debit=amt) for (a, f), amt in debits.items()]
    # One credit to the bank per fund keeps every fund self-balancing.
    lines += [EntryLine(account=a, fund=f, credit=amt) for (a, f), amt in credits.items()]
    return lines


def import_batched_payments(
    conn,
    rows: list[dict],
    mapping: PaymentMapping,
    *,
    created_by: Optional[str] = None,
    import_id: Optional[str] = None,
) -> PaymentsImportResult:
    result = PaymentsImportResult()
    if len(rows) > settings.import_max_rows:
        raise ValidationError(f"file has {len(rows)} rows; the limit is {settings.import_max_rows}", field="file")
    if not mapping.amount or not mapping.account_no:
        raise ValidationError("mapping must name the amount and account_no columns", field="mapping")
    parsed = _read_rows(rows, mapping, result)

    with atomic(conn) as cur:
        schema = get_schema(cur)
        if any(r.status == "pending" for r in parsed) and (schema.batches is None or schema.payment_items is None):
            raise SchemaCapabilityError(
                "schema incompatible: payment_batches/payment_items are required for pending payments",
                capability="payment_batches",
            )
        resolver = Resolver(cur, schema)

        groups: "OrderedDict[tuple, list[ResolvedRow]]" = OrderedDict()
        for r in parsed:
            try:
                rr = _resolve(cur, schema, resolver, r)
            except ResolutionError as exc:
                result.error(r.row, r.reference, exc.detail)
                continue
            key = (r.status, q.canon(r.reference), r.effective_date, q.canon(r.bank_name))
            groups.setdefault(key, []).append(rr)

        for (status, _, eff, _), group in groups.items():
            ref = group[0].src.reference
            rows_in_group = [rr.src.row for rr in group]
            if status == "pending":
                try:
                    with atomic(conn) as gcur:
                        _write_batch(gcur, schema, group, created_by, result)
                except LedgerError as exc:
                    for n in rows_in_group:
                        result.error(n, ref, exc.detail)
                continue

            if _reference_taken(cur, schema, ref):
                result.skipped += len(group)
                result.log.extend(f"SKIP,{n},{ref},duplicate reference" for n in rows_in_group)
                continue
            header = EntryHeader(
                entity=str(group[0].entity["id"]),
                entry_date=eff,
                reference_number=ref,
                type="Payment",
                description=group[0].src.memo or f"{ref} - Payment",
                status=EntryStatus.POSTED,
                entry_mode=EntryMode.AUTO,
                created_by=created_by,
                import_id=import_id,
            )
            try:
                entry = create_entry(conn, header, _entry_lines(group))
            except LedgerError as exc:
                for n in rows_in_group:
                    result.error(n, ref, exc.detail)
                continue
            result.journal_entries.append(entry["id"])
            result.log.extend(f"OK,Entry,{n},{ref}" for n in rows_in_group)

    json_log(
        "info",
        "ledger.import.payments.completed",
        rows=len(rows),
        batches=len(result.batches),
        journal_entries=len(result.journal_entries),
        errors=len(result.errors),
        skipped=result.skipped,
    )
    return result
