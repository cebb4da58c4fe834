"""
Chart-of-accounts CSV import.

Phase 1 validates every row against the entities / GL codes / funds already
on file and against the canonical account code rule, collecting all failures.
Phase 2 runs only when phase 1 found nothing: each row is upserted by
canonical account code inside the same transaction. The result carries an
audit log, one line per row.
"""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional

from .. import queries as q
from ..amounts import d, parse_accounting_amount, parse_date, q_cents
from ..balances import apply_opening_delta, rebase_account
from ..config import settings
from ..db import atomic
from ..errors import ValidationError
from ..logs import json_log
from ..resolver import Resolver, canonical_code, display_code
from ..schema import LedgerSchema, get_schema
from ..signs import CREDIT_NORMAL, normalize_classification

REQUIRED_HEADERS = (
    "account_code",
    "entity_code",
    "gl_code",
    "fund_number",
    "description",
    "status",
    "balance_sheet",
    "beginning_balance",
    "beginning_balance_date",
    "last_used",
    "restriction",
    "classification",
)

_ACCOUNT_STATUSES = {"active": "Active", "inactive": "Inactive"}


def normalize_header_key(h: Any) -> str:
    """' Beginning Balance ' -> 'beginning_balance', '"GL Code"' -> 'gl_code'."""
    s = str(h or "").replace('"', "").replace("'", "").strip().lower()
    s = re.sub(r"[^a-z0-9]+", "_", s)
    return s.strip("_")


def normalize_yes_no(v: Any) -> str:
    return "Yes" if str(v or "").strip().lower() in {"1", "yes", "y", "true"} else "No"


def parse_accounts_csv(text: str) -> tuple[list[str], list[dict]]:
    """Header keys (normalised) and the non-blank data rows keyed by them."""
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.reader(io.StringIO(text))
    try:
        raw_headers = next(reader)
    except StopIteration:
        return [], []
    headers = [normalize_header_key(h) for h in raw_headers]
    rows: list[dict] = []
    for raw in reader:
        if not any((c or "").strip() for c in raw):
            continue
        rows.append({h: (raw[i].strip() if i < len(raw) else "") for i, h in enumerate(headers) if h})
    return headers, rows


@dataclass
class AccountRow:
    row: int
    account_code: str
    entity_code: str
    gl_code: str
    fund_number: str
    restriction: str
    description: Optional[str]
    classification: Optional[str]
    status: str
    balance_sheet: str
    beginning_balance: Decimal
    beginning_balance_date: Optional[date]
    last_used: Optional[date]


@dataclass
class RowFailure:
    row: int
    code: str
    message: str

    def line(self) -> str:
        return f"ERROR,{self.row},{self.code},{self.message}"


@dataclass
class AccountsImportResult:
    ok: bool
    log: list[str] = field(default_factory=list)
    inserted: int = 0
    updated: int = 0
    failures: list[RowFailure] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "log": self.log,
            "inserted": self.inserted,
            "updated": self.updated,
            "errors": [{"row": f.row, "account_code": f.code, "message": f.message} for f in self.failures],
        }


class _Lookups:
    """Entities, GL codes and funds loaded once for the whole file."""

    def __init__(self, cur, schema: LedgerSchema):
        ent = schema.entities
        entity_rows = q.fetch_all(cur, q.select("entities", ["id", (ent.code, "code")]))
        self.entities = {q.canon(r["code"]): r for r in entity_rows if r.get("code")}
        entity_code_by_id = {str(r["id"]): r.get("code") for r in entity_rows}

        self.gl_codes: Optional[dict[str, dict]] = None
        if schema.gl_codes is not None:
            gl = schema.gl_codes
            self.gl_codes = {
                q.canon(r["code"]): r
                for r in q.fetch_all(cur, q.select("gl_codes", [(gl.code, "code"), (gl.classification, "classification")]))
                if r.get("code")
            }

        f = schema.funds
        self.funds: dict[tuple[str, str], list[dict]] = {}
        cols = ["id", (f.number, "fund_number"), (f.entity_code, "entity_code"), (f.entity_id, "entity_id"), (f.restriction, "restriction")]
        for r in q.fetch_all(cur, q.select("funds", cols)):
            code = r.get("entity_code") or entity_code_by_id.get(str(r.get("entity_id")))
            self.funds.setdefault((q.canon(code), q.canon(r.get("fund_number"))), []).append(r)


def _code_mismatch(supplied: str, parts: dict[str, str]) -> Optional[str]:
    """Diagnostic naming the first token of `supplied` that disagrees with the key parts."""
    if q.canon(supplied) == canonical_code(*parts.values()):
        return None
    tokens = [t for t in re.split(r"[^A-Za-z0-9]+", supplied) if t]
    if len(tokens) == len(parts):
        for tok, (name, value) in zip(tokens, parts.items()):
            if q.canon(tok) != q.canon(value):
                if name == "restriction":
                    return f"restriction mismatch: account_code says {tok!r} but the row's restriction is {value!r}"
                return f"account_code {name} token {tok!r} does not match {name} {value!r}"
    return f"account_code {supplied!r} does not match expected {display_code(*parts.values())!r}"


def _parse_row(n: int, raw: dict, problems: list[str]) -> AccountRow:
    def text(key: str) -> str:
        return str(raw.get(key) or "").strip()

    try:
        bb = parse_accounting_amount(raw.get("beginning_balance"))
    except ValueError:
        problems.append(f"beginning_balance {text('beginning_balance')!r} is not an amount")
        bb = Decimal("0")
    dates: dict[str, Optional[date]] = {}
    for key in ("beginning_balance_date", "last_used"):
        try:
            dates[key] = parse_date(raw.get(key))
        except ValueError:
            problems.append(f"{key} {text(key)!r} is not a date")
            dates[key] = None
    status = _ACCOUNT_STATUSES.get(text("status").lower() or "active")
    if status is None:
        problems.append(f"status {text('status')!r} must be Active or Inactive")
        status = text("status")
    classification = text("classification") or None
    if classification and normalize_classification(classification) is None:
        problems.append(f"classification {classification!r} is not Asset/Liability/Equity/Revenue/Expense")
    for key in ("entity_code", "gl_code", "fund_number"):
        if not text(key):
            problems.append(f"{key} is required")
    return AccountRow(
        row=n,
        account_code=text("account_code"),
        entity_code=text("entity_code"),
        gl_code=text("gl_code"),
        fund_number=text("fund_number"),
        restriction=text("restriction"),
        description=text("description") or None,
        classification=classification,
        status=status,
        balance_sheet=normalize_yes_no(raw.get("balance_sheet")),
        beginning_balance=q_cents(bb),
        beginning_balance_date=dates["beginning_balance_date"],
        last_used=dates["last_used"],
    )


def validate_accounts(cur, schema: LedgerSchema, headers: Iterable[str], rows: list[dict]) -> tuple[list[AccountRow], list[RowFailure]]:
    missing = [h for h in REQUIRED_HEADERS if h not in set(headers)]
    if missing:
        return [], [RowFailure(0, "", f"missing required column(s): {' '.join(missing)}")]
    if len(rows) > settings.import_max_rows:
        return [], [RowFailure(0, "", f"file has {len(rows)} rows; the limit is {settings.import_max_rows}")]

    look = _Lookups(cur, schema)
    parsed: list[AccountRow] = []
    failures: list[RowFailure] = []
    seen: dict[str, int] = {}

    for n, raw in enumerate(rows, start=1):
        problems: list[str] = []
        r = _parse_row(n, raw, problems)

        if r.entity_code and q.canon(r.entity_code) not in look.entities:
            problems.append(f"entity {r.entity_code!r} not found")
        if r.gl_code and look.gl_codes is not None and q.canon(r.gl_code) not in look.gl_codes:
            problems.append(f"gl_code {r.gl_code!r} not found")
        gl_row = look.gl_codes.get(q.canon(r.gl_code)) if look.gl_codes and r.gl_code else None
        if gl_row and r.classification:
            gl_cls = normalize_classification(gl_row.get("classification"))
            row_cls = normalize_classification(r.classification)
            if gl_cls and row_cls and gl_cls != row_cls:
                problems.append(
                    f"classification {r.classification!r} contradicts gl_code {r.gl_code} classification "
                    f"{gl_row.get('classification')!r}"
                )

        funds = look.funds.get((q.canon(r.entity_code), q.canon(r.fund_number)), [])
        if r.fund_number and not funds:
            problems.append(f"fund {r.fund_number!r} not found for entity {r.entity_code!r}")
        elif funds and schema.funds.restriction:
            carried = [f.get("restriction") for f in funds if f.get("restriction")]
            if not r.restriction and len(carried) == 1:
                r.restriction = str(carried[0])
            elif carried and q.canon(r.restriction) not in {q.canon(c) for c in carried}:
                problems.append(
                    f"restriction mismatch: row says {r.restriction!r} but fund {r.fund_number} carries "
                    f"{'/'.join(str(c) for c in carried)!r}"
                )

        parts = {"entity": r.entity_code, "gl": r.gl_code, "fund": r.fund_number, "restriction": r.restriction}
        if not r.account_code:
            r.account_code = display_code(*parts.values())
        else:
            mismatch = _code_mismatch(r.account_code, parts)
            if mismatch:
                problems.append(mismatch)

        key = q.canon(r.account_code)
        if key in seen:
            problems.append(f"duplicate account_code, first seen on row {seen[key]}")
        else:
            seen[key] = n

        if problems:
            failures.extend(RowFailure(n, r.account_code, p) for p in problems)
        else:
            parsed.append(r)
    return parsed, failures


def _upsert(cur, schema: LedgerSchema, resolver: Resolver, r: AccountRow) -> str:
    a = schema.accounts
    code_col = schema.require("accounts.account_code", a.code)
    values: dict[str, Any] = {code_col: r.account_code}
    for col, v in (
        (a.entity_code, r.entity_code),
        (a.gl_code, r.gl_code),
        (a.fund_number, r.fund_number),
        (a.restriction, r.restriction),
        (a.label, r.description),
        (a.classification, r.classification),
        (a.status, r.status),
        (a.balance_sheet, r.balance_sheet),
        (a.beginning_balance, r.beginning_balance),
        (a.beginning_balance_date, r.beginning_balance_date),
        (a.last_used, r.last_used),
    ):
        if col:
            values[col] = v

    cols = [
        "id",
        (a.beginning_balance, "beginning_balance"),
        (a.gl_code, "gl_code"),
        (a.classification, "classification"),
    ]
    existing = q.fetch_one(
        cur,
        q.select("accounts", cols, [q.CanonEq(code_col, r.account_code)], limit=1, for_update=True),
    )
    if existing is not None:
        q.run(cur, q.update("accounts", values, [q.Eq("id", existing["id"])], touch=a.updated_at))
        account_id = existing["id"]
        old_bb = d(existing.get("beginning_balance"))
        action = "Updated"
        _rebase_if_sign_changed(cur, schema, resolver, existing, r)
    else:
        account_id = q.fetch_one(cur, q.insert("accounts", values))["id"]
        old_bb = Decimal("0")
        action = "Inserted"
    if a.beginning_balance:
        apply_opening_delta(cur, schema, account_id=account_id, delta=r.beginning_balance - old_bb)
    return action


def _rebase_if_sign_changed(cur, schema: LedgerSchema, resolver: Resolver, existing: dict, r: AccountRow) -> None:
    """
    An updated gl_code or classification can flip the account between debit
    and credit normal. Lines posted under the old sign are re-based so the
    cache (and any later reversal) follows the new one.
    """
    a = schema.accounts
    old = resolver.effective_classification(existing.get("gl_code"), existing.get("classification"))
    new = resolver.effective_classification(
        r.gl_code if a.gl_code else existing.get("gl_code"),
        r.classification if a.classification else existing.get("classification"),
    )
    if (old in CREDIT_NORMAL) == (new in CREDIT_NORMAL):
        return
    rebase_account(cur, schema, account_id=existing["id"], old=old, new=new)


def import_accounts(conn, headers: Iterable[str], rows: list[dict], *, dry_run: bool = False) -> AccountsImportResult:
    """
    Validate then commit. With any failure nothing is written and the log
    holds every ERROR line; with dry_run the commit phase is skipped.
    """
    headers = list(headers)
    with atomic(conn) as cur:
        schema = get_schema(cur)
        valid, failures = validate_accounts(cur, schema, headers, rows)
        if failures:
            json_log("warning", "ledger.import.accounts.rejected", rows=len(rows), failures=len(failures))
            return AccountsImportResult(ok=False, log=[f.line() for f in failures], failures=failures)
        if dry_run:
            json_log("info", "ledger.import.accounts.validated", rows=len(valid))
            return AccountsImportResult(ok=True, log=[f"OK,Valid,{r.row},{r.account_code}" for r in valid])

        result = AccountsImportResult(ok=True)
        resolver = Resolver(cur, schema)
        for r in valid:
            action = _upsert(cur, schema, resolver, r)
            if action == "Inserted":
                result.inserted += 1
            else:
                result.updated += 1
            result.log.append(f"OK,{action},{r.row},{r.account_code}")

    json_log("info", "ledger.import.accounts.committed", rows=len(valid), inserted=result.inserted, updated=result.updated)
    return result


def import_accounts_csv(conn, text: str, *, dry_run: bool = False) -> AccountsImportResult:
    headers, rows = parse_accounts_csv(text)
    if not headers:
        raise ValidationError("file is empty", field="file")
    if not rows:
        raise ValidationError("file has no data rows", field="file")
    return import_accounts(conn, headers, rows, dry_run=dry_run)
