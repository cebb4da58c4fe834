#!/usr/bin/env python3
import argparse
import os
import sys

import psycopg
from psycopg.rows import dict_row

# Allow `python backend/scripts/import_accounts_csv.py` from the repo root.
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from backend.ledger.config import settings  # noqa: E402
from backend.ledger.errors import LedgerError  # noqa: E402
from backend.ledger.importers.accounts_csv import import_accounts_csv  # noqa: E402


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Validate and import a chart-of-accounts CSV.")
    parser.add_argument("--db", default=settings.db_url)
    parser.add_argument("--csv", required=True)
    parser.add_argument("--dry-run", action="store_true", help="validate only; write nothing")
    args = parser.parse_args(argv)

    with open(args.csv, newline="", encoding="utf-8-sig") as f:
        text = f.read()

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        try:
            result = import_accounts_csv(conn, text, dry_run=args.dry_run)
        except LedgerError as exc:
            print(f"ERROR,0,,{exc.detail}", file=sys.stderr)
            return 2

    for line in result.log:
        print(line)
    if not result.ok:
        print(f"{len(result.failures)} problem(s); nothing was imported", file=sys.stderr)
        return 1
    if not args.dry_run:
        print(f"inserted={result.inserted} updated={result.updated}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
