"""
Balance propagation and derivation.

Cached `balance` columns on accounts and funds are written only from here.
They track Posted entries (plus opening balances) and can always be rebuilt
from the line history; when the two disagree the line history wins and the
difference is reported, never silently corrected.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Optional

from psycopg import sql

from . import queries as q
from .amounts import ZERO, d, q_cents
from .logs import json_log
from .resolver import Resolver
from .schema import LedgerSchema
from .signs import signed_delta


def line_classification(resolver: Resolver, account: dict, snapshot: Any = None):
    # A line that recorded its classification when it was written keeps it, so
    # reversal undoes exactly what was applied.
    if snapshot:
        return snapshot
    return resolver.classification(account)


def apply_delta(cur, schema: LedgerSchema, *, account_id: Any, fund_id: Any, delta: Decimal) -> None:
    """Add `delta` to the cached balances of one account and one fund; absent caches are skipped."""
    if not delta:
        return
    a = schema.accounts
    f = schema.funds
    if a.balance and account_id is not None:
        q.run(cur, q.increment("accounts", a.balance, delta, [q.Eq("id", account_id)], touch=a.updated_at))
    if f.balance and fund_id is not None:
        q.run(cur, q.increment("funds", f.balance, delta, [q.Eq("id", fund_id)], touch=f.updated_at))


def apply_line(
    cur,
    schema: LedgerSchema,
    resolver: Resolver,
    *,
    account: dict,
    fund_id: Any,
    debit: Any,
    credit: Any,
    snapshot: Any = None,
    reverse: bool = False,
) -> Decimal:
    delta = signed_delta(line_classification(resolver, account, snapshot), debit, credit)
    if reverse:
        delta = -delta
    apply_delta(cur, schema, account_id=account["id"], fund_id=fund_id, delta=delta)
    return delta


def apply_opening_delta(cur, schema: LedgerSchema, *, account_id: Any, delta: Any, fund_id: Any = None) -> None:
    """Beginning-balance changes move the cache the same way a posted line does."""
    apply_delta(cur, schema, account_id=account_id, fund_id=fund_id, delta=d(delta))


def entry_lines(cur, schema: LedgerSchema, entry_id: Any) -> list[dict]:
    i = schema.items
    cols = [
        "id",
        (i.account, "account_id"),
        (i.fund, "fund_id"),
        (i.debit, "debit"),
        (i.credit, "credit"),
        (i.description, "description"),
        (i.classification, "classification"),
    ]
    return q.fetch_all(cur, q.select("journal_entry_items", cols, [q.Eq(i.entry, entry_id)], order_by="id"))


def reverse_entry_lines(cur, schema: LedgerSchema, resolver: Resolver, entry_id: Any) -> int:
    """Undo the cached effect of every existing line of a Posted entry."""
    lines = entry_lines(cur, schema, entry_id)
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
            reverse=True,
        )
    return len(lines)


def rebase_account(cur, schema: LedgerSchema, *, account_id: Any, old: Any, new: Any) -> Decimal:
    """
    Move an account from classification `old` to `new`: every Posted line
    that carries no classification of its own is taken back out under the old
    sign and put in again under the new one, on the account and on the
    line's fund. Returns the net change to the account cache.
    """
    total = ZERO
    for ln in posted_lines(cur, schema, account_id=account_id):
        if ln.get("classification"):
            continue
        delta = signed_delta(new, ln["debit"], ln["credit"]) - signed_delta(old, ln["debit"], ln["credit"])
        apply_delta(cur, schema, account_id=account_id, fund_id=ln["fund_id"], delta=delta)
        total += delta
    if total:
        json_log("info", "ledger.balance.rebased", account_id=account_id, old=old, new=new, delta=total)
    return total


def posted_predicate(schema: LedgerSchema, alias: str = "e") -> Optional[sql.Composable]:
    """`status ILIKE 'post%'` / `posted = TRUE`, whichever columns exist; None means every entry counts."""
    e = schema.entries
    parts: list[sql.Composable] = []
    if e.status:
        parts.append(sql.SQL("{} ILIKE 'post%%'").format(sql.Identifier(alias, e.status)))
    if e.posted:
        parts.append(sql.SQL("{} = TRUE").format(sql.Identifier(alias, e.posted)))
    if not parts:
        return None
    return sql.SQL("(") + sql.SQL(" OR ").join(parts) + sql.SQL(")")


def posted_lines(
    cur,
    schema: LedgerSchema,
    *,
    account_id: Any = None,
    fund_id: Any = None,
    as_of: Optional[date] = None,
) -> list[dict]:
    i = schema.items
    e = schema.entries

    def ic(col: str, name: str) -> sql.Composable:
        return sql.SQL("{} AS {}").format(sql.Identifier("i", col), sql.Identifier(name))

    cols = [
        ic(i.account, "account_id"),
        ic(i.fund, "fund_id"),
        ic(i.debit, "debit"),
        ic(i.credit, "credit"),
        sql.SQL("{} AS {}").format(sql.Identifier("e", "id"), sql.Identifier("entry_id")),
        sql.SQL("{} AS {}").format(sql.Identifier("e", e.entry_date), sql.Identifier("entry_date")),
    ]
    if i.classification:
        cols.append(ic(i.classification, "classification"))

    where: list[sql.Composable] = []
    params: list = []
    pred = posted_predicate(schema)
    if pred is not None:
        where.append(pred)
    if account_id is not None:
        where.append(sql.SQL("{} = %s").format(sql.Identifier("i", i.account)))
        params.append(account_id)
    if fund_id is not None:
        where.append(sql.SQL("{} = %s").format(sql.Identifier("i", i.fund)))
        params.append(fund_id)
    if as_of is not None:
        where.append(sql.SQL("{} <= %s").format(sql.Identifier("e", e.entry_date)))
        params.append(as_of)

    query = sql.SQL("SELECT {cols} FROM {items} i JOIN {entries} e ON {eid} = {ref}").format(
        cols=sql.SQL(", ").join(cols),
        items=sql.Identifier("journal_entry_items"),
        entries=sql.Identifier("journal_entries"),
        eid=sql.Identifier("e", "id"),
        ref=sql.Identifier("i", i.entry),
    )
    if where:
        query += sql.SQL(" WHERE ") + sql.SQL(" AND ").join(where)
    cur.execute(query, params)
    return list(cur.fetchall())


def derived_account_balance(cur, schema: LedgerSchema, resolver: Resolver, account: dict, as_of: Optional[date] = None) -> Decimal:
    """beginning_balance + sum of signed deltas over Posted lines, rounded to cents."""
    total = d(account.get("beginning_balance"))
    for ln in posted_lines(cur, schema, account_id=account["id"], as_of=as_of):
        total += signed_delta(line_classification(resolver, account, ln.get("classification")), ln["debit"], ln["credit"])
    return q_cents(total)


def derived_fund_balance(cur, schema: LedgerSchema, resolver: Resolver, fund: dict, as_of: Optional[date] = None) -> Decimal:
    total = d(fund.get("starting_balance"))
    for ln in posted_lines(cur, schema, fund_id=fund["id"], as_of=as_of):
        account = resolver.account(ln["account_id"])
        total += signed_delta(line_classification(resolver, account, ln.get("classification")), ln["debit"], ln["credit"])
    return q_cents(total)


def check_balance_divergence(cur, schema: LedgerSchema, resolver: Resolver, account: dict) -> Optional[dict]:
    """
    Compare the cached account balance with the line-derived one. Returns a
    report dict (and logs a warning) when they differ, None when they agree or
    the installation keeps no cache.
    """
    if not schema.accounts.balance:
        return None
    derived = derived_account_balance(cur, schema, resolver, account)
    cached = q_cents(d(account.get("balance")))
    if cached == derived:
        return None
    report = {
        "account_id": account["id"],
        "account_code": account.get("account_code"),
        "cached": cached,
        "derived": derived,
        "difference": cached - derived,
    }
    json_log("warning", "ledger.balance.divergence", **report)
    return report


def entry_totals(lines: list[dict]) -> tuple[Decimal, Decimal]:
    dr = ZERO
    cr = ZERO
    for ln in lines:
        dr += d(ln.get("debit"))
        cr += d(ln.get("credit"))
    return q_cents(dr), q_cents(cr)
