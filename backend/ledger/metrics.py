"""
Read-only rollups over Posted history.

Every figure is rebuilt from beginning balances plus `signed_delta` over
Posted lines, the same rule Balance Propagation uses, so reports and cached
balances cannot drift apart by construction.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from . import queries as q
from .amounts import ZERO, d, q_cents
from .balances import line_classification, posted_lines
from .resolver import Resolver, account_select, fund_select
from .schema import LedgerSchema, get_schema
from .signs import Classification, normalize_classification, signed_delta


def _as_date(v: Any) -> Optional[date]:
    if v is None:
        return None
    if isinstance(v, date):
        return v
    return date.fromisoformat(str(v)[:10])


def _rollup(cur, schema: LedgerSchema, as_of: Optional[date]):
    resolver = Resolver(cur, schema)
    accounts = {str(a["id"]): a for a in q.fetch_all(cur, q.select("accounts", account_select(schema)))}
    resolver.prime_accounts(accounts.values())
    lines = posted_lines(cur, schema, as_of=as_of)
    return resolver, accounts, lines


def account_balances(conn, as_of: Optional[date] = None) -> list[dict]:
    with conn.cursor() as cur:
        schema = get_schema(cur)
        resolver, accounts, lines = _rollup(cur, schema, as_of)
        sums: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for ln in lines:
            account = accounts.get(str(ln["account_id"]))
            if account is None:
                continue
            cls = line_classification(resolver, account, ln.get("classification"))
            sums[str(ln["account_id"])] += signed_delta(cls, ln["debit"], ln["credit"])

        out = []
        for key, a in accounts.items():
            cls = resolver.classification(a)
            out.append(
                {
                    "account_id": a["id"],
                    "account_code": a.get("account_code"),
                    "label": a.get("label"),
                    "classification": cls.value if cls else None,
                    "beginning_balance": q_cents(d(a.get("beginning_balance"))),
                    "balance": q_cents(d(a.get("beginning_balance")) + sums[key]),
                    "cached_balance": q_cents(d(a["balance"])) if schema.accounts.balance else None,
                }
            )
        out.sort(key=lambda r: str(r["account_code"] or r["account_id"]))
        return out


def fund_balances(conn, as_of: Optional[date] = None) -> list[dict]:
    with conn.cursor() as cur:
        schema = get_schema(cur)
        resolver, accounts, lines = _rollup(cur, schema, as_of)
        funds = q.fetch_all(cur, q.select("funds", fund_select(schema)))
        sums: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for ln in lines:
            account = accounts.get(str(ln["account_id"]))
            if account is None:
                continue
            cls = line_classification(resolver, account, ln.get("classification"))
            sums[str(ln["fund_id"])] += signed_delta(cls, ln["debit"], ln["credit"])
        out = []
        for f in funds:
            start = d(f.get("starting_balance"))
            out.append(
                {
                    "fund_id": f["id"],
                    "fund_number": f.get("fund_number"),
                    "entity_code": f.get("entity_code"),
                    "restriction": f.get("restriction"),
                    "label": f.get("label"),
                    "starting_balance": q_cents(start),
                    "balance": q_cents(start + sums[str(f["id"])]),
                    "cached_balance": q_cents(d(f["balance"])) if schema.funds.balance else None,
                }
            )
        out.sort(key=lambda r: (str(r["entity_code"] or ""), str(r["fund_number"] or "")))
        return out


def ledger_metrics(conn, as_of: Optional[date] = None) -> dict:
    """
    Dashboard figures: assets, liabilities, net assets (assets - liabilities)
    as of `as_of` (default today), and revenue / expenses for the calendar year
    to date.
    """
    as_of = as_of or date.today()
    year_start = date(as_of.year, 1, 1)
    with conn.cursor() as cur:
        schema = get_schema(cur)
        resolver, accounts, lines = _rollup(cur, schema, as_of)

        by_class: dict[Optional[Classification], Decimal] = defaultdict(lambda: ZERO)
        ytd: dict[Optional[Classification], Decimal] = defaultdict(lambda: ZERO)
        for a in accounts.values():
            by_class[resolver.classification(a)] += d(a.get("beginning_balance"))
        for ln in lines:
            account = accounts.get(str(ln["account_id"]))
            if account is None:
                continue
            cls = normalize_classification(line_classification(resolver, account, ln.get("classification")))
            delta = signed_delta(cls, ln["debit"], ln["credit"])
            by_class[cls] += delta
            entry_date = _as_date(ln.get("entry_date"))
            if entry_date is not None and entry_date >= year_start:
                ytd[cls] += delta

    assets = q_cents(by_class[Classification.ASSET])
    liabilities = q_cents(by_class[Classification.LIABILITY])
    return {
        "as_of": as_of,
        "assets": assets,
        "liabilities": liabilities,
        "net_assets": q_cents(assets - liabilities),
        "revenue_ytd": q_cents(ytd[Classification.REVENUE]),
        "expenses_ytd": q_cents(ytd[Classification.EXPENSE]),
    }
