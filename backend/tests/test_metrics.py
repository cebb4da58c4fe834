from datetime import date
from decimal import Decimal

import pytest

from backend.ledger.metrics import account_balances, fund_balances, ledger_metrics
from backend.ledger.posting import EntryHeader, EntryLine, create_entry


def _post(conn, on, debit_account, credit_account, amount, status=None):
    create_entry(
        conn,
        EntryHeader(entity="TPF", entry_date=on, status=status),
        [EntryLine(account=debit_account, debit=amount), EntryLine(account=credit_account, credit=amount)],
    )


@pytest.fixture
def history(db, ledger, conn):
    db.row("accounts", ledger["cash"])["beginning_balance"] = Decimal("500.00")
    _post(conn, date(2025, 12, 20), "TPF 1000 GEN U", "TPF 4000 GEN U", "40")
    _post(conn, date(2026, 1, 15), "TPF 1000 GEN U", "TPF 4000 GEN U", "100")
    _post(conn, date(2026, 2, 10), "TPF 5100 GEN U", "TPF 1000 GEN U", "30")
    _post(conn, date(2026, 2, 11), "TPF 5100 GEN U", "TPF 1000 GEN U", "999", status="Draft")
    return ledger


def test_ledger_metrics_year_to_date(history, conn):
    out = ledger_metrics(conn, as_of=date(2026, 6, 30))
    assert out["assets"] == Decimal("610.00")
    assert out["liabilities"] == Decimal("0.00")
    assert out["net_assets"] == Decimal("610.00")
    # Revenue from December 2025 belongs to the prior year.
    assert out["revenue_ytd"] == Decimal("100.00")
    assert out["expenses_ytd"] == Decimal("30.00")


def test_ledger_metrics_as_of_excludes_later_entries(history, conn):
    out = ledger_metrics(conn, as_of=date(2026, 1, 31))
    assert out["assets"] == Decimal("640.00")
    assert out["expenses_ytd"] == Decimal("0.00")
    assert out["as_of"] == date(2026, 1, 31)


def test_account_balances_include_opening_balance(history, conn):
    rows = {r["account_code"]: r for r in account_balances(conn)}
    cash = rows["TPF 1000 GEN U"]
    assert cash["classification"] == "Asset"
    assert cash["beginning_balance"] == Decimal("500.00")
    assert cash["balance"] == Decimal("610.00")
    assert rows["TPF 4000 GEN U"]["balance"] == Decimal("140.00")
    assert rows["TPF 5100 GEN U"]["balance"] == Decimal("30.00")
    assert rows["TPF 2000 GEN U"]["balance"] == Decimal("0.00")


def test_fund_balances_agree_with_cache(history, conn):
    (gen,) = fund_balances(conn)
    assert gen["fund_number"] == "GEN"
    assert gen["balance"] == Decimal("280.00")
    assert gen["cached_balance"] == gen["balance"]
