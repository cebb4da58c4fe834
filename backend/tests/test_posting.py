from datetime import date
from decimal import Decimal

import pytest

from backend.ledger.balances import check_balance_divergence, derived_account_balance, derived_fund_balance
from backend.ledger.errors import BalanceError, NotFoundError, ResolutionError, TransactionError, ValidationError
from backend.ledger.posting import (
    EntryHeader,
    EntryHeaderUpdate,
    EntryLine,
    create_entry,
    delete_entry,
    get_entry,
    post_entry,
    replace_lines,
    update_entry_header,
)
from backend.ledger.resolver import Resolver
from backend.ledger.schema import get_schema


def _header(**kw):
    kw.setdefault("entity", "TPF")
    kw.setdefault("entry_date", date(2026, 1, 15))
    return EntryHeader(**kw)


def _donation(amount="100"):
    return [
        EntryLine(account="TPF-1000-GEN-U", debit=amount),
        EntryLine(account="tpf 4000 gen u", credit=amount),
    ]


def _balance(db, table, id_):
    return Decimal(str(db.row(table, id_)["balance"] or 0))


def test_posted_donation_moves_both_account_caches(db, ledger, conn):
    out = create_entry(conn, _header(reference_number="JE-1", description="Sunday offering"), _donation())

    assert out["status"] == "Posted"
    assert out["entry_mode"] == "Manual"
    assert out["reference_number"] == "JE-1"
    assert out["total_amount"] == Decimal("100.00")
    assert [ln["account_code"] for ln in out["lines"]] == ["TPF 1000 GEN U", "TPF 4000 GEN U"]
    assert [ln["fund_number"] for ln in out["lines"]] == ["GEN", "GEN"]

    # Asset is debit-normal, revenue credit-normal: both go up by 100.
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("100.00")
    assert _balance(db, "accounts", ledger["donations"]) == Decimal("100.00")
    assert len(db.tables["journal_entry_items"]) == 2


def test_unbalanced_entry_is_rejected_before_any_write(db, ledger, conn):
    lines = [EntryLine(account="TPF 1000 GEN U", debit="100"), EntryLine(account="TPF 4000 GEN U", credit="90")]
    with pytest.raises(BalanceError) as ei:
        create_entry(conn, _header(), lines)
    assert "out of balance" in ei.value.detail
    assert db.tables["journal_entries"] == []
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("0")


def test_sub_cent_lines_are_rounded_before_the_balance_check(db, ledger, conn):
    lines = [
        EntryLine(account="TPF 1000 GEN U", debit="0.005"),
        EntryLine(account="TPF 1000 GEN U", debit="0.005"),
        EntryLine(account="TPF 4000 GEN U", credit="0.01"),
    ]
    # Each half cent rounds up on its own line: 0.02 of debits against 0.01.
    with pytest.raises(BalanceError) as ei:
        create_entry(conn, _header(), lines)
    assert "debits 0.02 != credits 0.01" in ei.value.detail
    assert db.tables["journal_entries"] == []
    assert db.tables["journal_entry_items"] == []


def test_stored_line_and_cache_carry_the_same_rounded_amount(db, ledger, conn):
    create_entry(conn, _header(), _donation("100.005"))

    assert [it["debit"] for it in db.tables["journal_entry_items"]] == [Decimal("100.01"), Decimal("0.00")]
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("100.01")
    assert _balance(db, "accounts", ledger["donations"]) == Decimal("100.01")
    with conn.cursor() as cur:
        schema = get_schema(cur)
        resolver = Resolver(cur, schema)
        cash = resolver.account(ledger["cash"])
        assert derived_account_balance(cur, schema, resolver, cash) == Decimal("100.01")
        assert check_balance_divergence(cur, schema, resolver, cash) is None


@pytest.mark.parametrize(
    "line,msg",
    [
        (EntryLine(account="TPF 1000 GEN U", debit="0", credit="0"), "exactly one"),
        (EntryLine(account="TPF 1000 GEN U", debit="5", credit="5"), "exactly one"),
        (EntryLine(account="TPF 1000 GEN U", debit="-5"), "negative"),
        (EntryLine(account=None, debit="5"), "account is required"),
    ],
)
def test_line_shape_is_validated(db, ledger, conn, line, msg):
    with pytest.raises(ValidationError) as ei:
        create_entry(conn, _header(status="Pending"), [line])
    assert msg in ei.value.detail
    assert ei.value.row == 1


def test_posted_entry_needs_lines(db, ledger, conn):
    with pytest.raises(ValidationError):
        create_entry(conn, _header(), [])


def test_pending_entry_skips_balance_check_until_posted(db, ledger, conn):
    lines = [EntryLine(account="TPF 1000 GEN U", debit="100"), EntryLine(account="TPF 4000 GEN U", credit="60")]
    out = create_entry(conn, _header(status="pending"), lines)

    assert out["status"] == "Pending"
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("0")

    with pytest.raises(BalanceError):
        post_entry(conn, out["id"])
    assert get_entry(conn, out["id"])["status"] == "Pending"
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("0")


def test_posting_a_draft_applies_its_lines_once(db, ledger, conn):
    out = create_entry(conn, _header(status="Draft"), _donation("40"))
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("0")

    posted = post_entry(conn, out["id"])
    assert posted["status"] == "Posted"
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("40.00")

    # Posting again is a no-op.
    post_entry(conn, out["id"])
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("40.00")
    assert _balance(db, "accounts", ledger["donations"]) == Decimal("40.00")


def test_delete_reverses_a_posted_entry(db, ledger, conn):
    first = create_entry(conn, _header(reference_number="JE-7"), _donation("100"))
    delete_entry(conn, first["id"])

    assert _balance(db, "accounts", ledger["cash"]) == Decimal("0")
    assert _balance(db, "accounts", ledger["donations"]) == Decimal("0")
    assert _balance(db, "funds", ledger["gen"]) == Decimal("0")
    assert db.tables["journal_entries"] == []
    assert db.tables["journal_entry_items"] == []

    # Same reference can be used again once the entry is gone.
    create_entry(conn, _header(reference_number="JE-7"), _donation("100"))
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("100.00")


def test_delete_draft_leaves_balances_alone(db, ledger, conn):
    create_entry(conn, _header(), _donation("10"))
    draft = create_entry(conn, _header(status="Draft"), _donation("99"))
    delete_entry(conn, draft["id"])
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("10.00")


def test_delete_missing_entry(db, ledger, conn):
    with pytest.raises(NotFoundError):
        delete_entry(conn, 404)


def test_replace_lines_swaps_the_balance_effect(db, ledger, conn):
    out = create_entry(conn, _header(), _donation("100"))
    new_lines = [
        EntryLine(account="TPF 5100 GEN U", debit="40", description="paper"),
        EntryLine(account="TPF 1000 GEN U", credit="40"),
    ]
    updated = replace_lines(conn, out["id"], new_lines)

    assert updated["total_amount"] == Decimal("40.00")
    assert [ln["description"] for ln in updated["lines"]] == ["paper", None]
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("-40.00")
    assert _balance(db, "accounts", ledger["donations"]) == Decimal("0")
    assert _balance(db, "accounts", ledger["supplies"]) == Decimal("40.00")
    assert len(db.tables["journal_entry_items"]) == 2


def test_replace_lines_rejects_unbalanced_set_for_posted_entry(db, ledger, conn):
    out = create_entry(conn, _header(), _donation("100"))
    with pytest.raises(BalanceError):
        replace_lines(conn, out["id"], [EntryLine(account="TPF 1000 GEN U", debit="1")])
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("100.00")
    assert len(db.tables["journal_entry_items"]) == 2


def test_unknown_account_rolls_back_the_whole_entry(db, ledger, conn):
    lines = [EntryLine(account="TPF 1000 GEN U", debit="100"), EntryLine(account="TPF 4999 GEN U", credit="100")]
    with pytest.raises(ResolutionError) as ei:
        create_entry(conn, _header(), lines)

    assert ei.value.detail.startswith("line 2:")
    assert ei.value.row == 2
    assert conn.rollbacks == 1
    assert db.tables["journal_entries"] == []
    assert db.tables["journal_entry_items"] == []
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("0")


def test_storage_failure_surfaces_as_transaction_error(db, ledger, conn):
    db.fail_on = "UPDATE funds"
    with pytest.raises(TransactionError):
        create_entry(conn, _header(), _donation())
    db.fail_on = None

    assert db.tables["journal_entries"] == []
    assert _balance(db, "accounts", ledger["cash"]) == Decimal("0")


def test_duplicate_reference_number_is_refused(db, ledger, conn):
    create_entry(conn, _header(reference_number="INV-100"), _donation())
    with pytest.raises(ValidationError) as ei:
        create_entry(conn, _header(reference_number="inv-100"), _donation())
    assert "already exists" in ei.value.detail
    assert len(db.tables["journal_entries"]) == 1


def test_explicit_fund_on_a_line(db, ledger, conn):
    bld = db.seed("funds", entity_code="TPF", fund_number="BLD", restriction="R", fund_name="Building", balance=Decimal("0"))
    lines = [
        EntryLine(account="TPF 1000 GEN U", fund="BLD", debit="25"),
        EntryLine(account="TPF 4000 GEN U", fund="bld", credit="25"),
    ]
    out = create_entry(conn, _header(), lines)
    assert {ln["fund_id"] for ln in out["lines"]} == {bld["id"]}
    assert _balance(db, "funds", bld["id"]) == Decimal("50.00")
    assert _balance(db, "funds", ledger["gen"]) == Decimal("0")


def test_update_header_refuses_status(db, ledger, conn):
    out = create_entry(conn, _header(), _donation())
    with pytest.raises(ValidationError):
        update_entry_header(conn, out["id"], EntryHeaderUpdate(status="Draft"))

    changed = update_entry_header(conn, out["id"], EntryHeaderUpdate(description="Easter offering", entry_date=date(2026, 4, 5)))
    assert changed["description"] == "Easter offering"
    assert changed["entry_date"] == date(2026, 4, 5)
    assert changed["status"] == "Posted"


def test_cached_balances_match_line_history(db, ledger, conn):
    create_entry(conn, _header(), _donation("250"))
    create_entry(
        conn,
        _header(entry_date=date(2026, 2, 1)),
        [EntryLine(account="TPF 5100 GEN U", debit="75.25"), EntryLine(account="TPF 1000 GEN U", credit="75.25")],
    )
    create_entry(conn, _header(status="Draft"), _donation("1000"))

    with conn.cursor() as cur:
        schema = get_schema(cur)
        resolver = Resolver(cur, schema)
        for key in ("cash", "donations", "supplies"):
            account = resolver.account(ledger[key])
            assert derived_account_balance(cur, schema, resolver, account) == _balance(db, "accounts", ledger[key])
            assert check_balance_divergence(cur, schema, resolver, account) is None
        fund = resolver.fund("TPF", "GEN")
        assert derived_fund_balance(cur, schema, resolver, fund) == _balance(db, "funds", ledger["gen"])

        cash = resolver.account(ledger["cash"])
        assert derived_account_balance(cur, schema, resolver, cash) == Decimal("174.75")
        assert derived_account_balance(cur, schema, resolver, cash, as_of=date(2026, 1, 31)) == Decimal("250.00")


def test_divergence_is_reported_not_corrected(db, ledger, conn):
    create_entry(conn, _header(), _donation("100"))
    db.row("accounts", ledger["cash"])["balance"] = Decimal("90.00")

    with conn.cursor() as cur:
        schema = get_schema(cur)
        resolver = Resolver(cur, schema)
        report = check_balance_divergence(cur, schema, resolver, resolver.account(ledger["cash"]))

    assert report["derived"] == Decimal("100.00")
    assert report["cached"] == Decimal("90.00")
    assert report["difference"] == Decimal("-10.00")
    assert db.row("accounts", ledger["cash"])["balance"] == Decimal("90.00")
