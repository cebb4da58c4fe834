#!/usr/bin/env python3
"""
Read-only ledger audit.

Reports Posted entries whose debits and credits differ, and accounts whose
cached balance differs from beginning balance + posted line history. Exits 1
when anything is found.
"""
import argparse
import json
import os
import sys

import psycopg
from psycopg.rows import dict_row

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from backend.ledger import queries as q  # noqa: E402
from backend.ledger.amounts import ZERO, d, q_cents  # noqa: E402
from backend.ledger.balances import check_balance_divergence, posted_lines  # noqa: E402
from backend.ledger.config import settings  # noqa: E402
from backend.ledger.resolver import Resolver, account_select  # noqa: E402
from backend.ledger.schema import get_schema  # noqa: E402


def unbalanced_entries(cur, schema) -> list[dict]:
    totals: dict[str, list] = {}
    for ln in posted_lines(cur, schema):
        t = totals.setdefault(str(ln["entry_id"]), [ZERO, ZERO])
        t[0] += d(ln["debit"])
        t[1] += d(ln["credit"])
    out = []
    for entry_id, (dr, cr) in totals.items():
        if q_cents(dr) != q_cents(cr):
            out.append({"entry_id": entry_id, "debits": q_cents(dr), "credits": q_cents(cr)})
    return out


def run(conn) -> dict:
    with conn.cursor() as cur:
        schema = get_schema(cur)
        resolver = Resolver(cur, schema)
        accounts = q.fetch_all(cur, q.select("accounts", account_select(schema)))
        resolver.prime_accounts(accounts)
        divergent = []
        for a in accounts:
            report = check_balance_divergence(cur, schema, resolver, a)
            if report:
                divergent.append(report)
        return {
            "unbalanced_entries": unbalanced_entries(cur, schema),
            "divergent_accounts": divergent,
            "accounts_checked": len(accounts),
        }


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--db", default=settings.db_url)
    args = parser.parse_args(argv)

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        report = run(conn)
        conn.rollback()

    print(json.dumps(report, indent=2, default=str))
    return 1 if report["unbalanced_entries"] or report["divergent_accounts"] else 0


if __name__ == "__main__":
    sys.exit(main())
