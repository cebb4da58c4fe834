import copy
import os
import re
import sys
from contextlib import contextmanager
from decimal import Decimal

import psycopg
import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.ledger.schema import reset_schema_cache  # noqa: E402


MODERN_SCHEMA = {
    "entities": ["id", "code", "name", "parent_entity_id", "is_consolidated"],
    "funds": ["id", "entity_code", "fund_number", "restriction", "fund_name", "balance", "starting_balance", "updated_at"],
    "accounts": [
        "id",
        "account_code",
        "entity_code",
        "gl_code",
        "fund_number",
        "restriction",
        "description",
        "classification",
        "status",
        "balance_sheet",
        "beginning_balance",
        "beginning_balance_date",
        "last_used",
        "balance",
        "updated_at",
    ],
    "journal_entries": [
        "id",
        "entity_id",
        "entry_date",
        "reference_number",
        "type",
        "description",
        "status",
        "posted",
        "entry_mode",
        "total_amount",
        "target_entity_id",
        "is_inter_entity",
        "created_by",
        "import_id",
        "updated_at",
    ],
    "journal_entry_items": ["id", "journal_entry_id", "account_id", "fund_id", "debit", "credit", "description"],
    "gl_codes": ["id", "code", "description", "classification"],
    "vendors": ["id", "zid", "name"],
    "bank_accounts": ["id", "account_name", "gl_account_id"],
    "payment_batches": [
        "id",
        "entity_id",
        "fund_id",
        "bank_account_id",
        "batch_number",
        "batch_date",
        "effective_date",
        "total_amount",
        "status",
        "description",
        "created_by",
    ],
    "payment_items": ["id", "batch_id", "vendor_id", "amount", "memo", "reference", "status", "account_id", "fund_id"],
}


def _norm_sql(query) -> str:
    if not isinstance(query, str):
        query = query.as_string(None)
    return " ".join(query.replace('"', "").split())


def _canon(v) -> str:
    return re.sub(r"[^a-z0-9]", "", str(v).lower())


def _same(a, b) -> bool:
    if a is None or b is None:
        return False
    return a == b or str(a) == str(b)


_COND_PATTERNS = [
    (re.compile(r"^lower\(regexp_replace\(([\w.]+)::text, '\[\^a-zA-Z0-9\]', '', 'g'\)\) = %s$"), "canon"),
    (re.compile(r"^lower\(([\w.]+)::text\) = lower\(%s\)$"), "ieq"),
    (re.compile(r"^([\w.]+)::text = %s$"), "texteq"),
    (re.compile(r"^([\w.]+) = ANY\(%s\)$"), "any"),
    (re.compile(r"^([\w.]+) <= %s$"), "le"),
    (re.compile(r"^([\w.]+) = %s$"), "eq"),
]


class FakeLedgerDB:
    """
    In-memory stand-in for the handful of statement shapes the ledger emits:
    the information_schema catalog read, single-table SELECT/INSERT/UPDATE/
    DELETE with AND-ed conditions, and the posted-lines join.
    """

    def __init__(self, schema=None):
        self.schema = copy.deepcopy(schema or MODERN_SCHEMA)
        self.tables = {t: [] for t in self.schema}
        self._next_id = {t: 1 for t in self.schema}
        self.statements: list[str] = []
        self.fail_on = None

    # -- helpers for tests -------------------------------------------------

    def seed(self, table, **values):
        row = {c: None for c in self.schema[table]}
        row["id"] = self._next_id[table]
        self._next_id[table] += 1
        for k, v in values.items():
            if k not in row:
                raise KeyError(f"{table}.{k} is not in the fake schema")
            row[k] = v
        self.tables[table].append(row)
        return row

    def row(self, table, id_):
        return next(r for r in self.tables[table] if str(r["id"]) == str(id_))

    def find(self, table, **match):
        return [r for r in self.tables[table] if all(_same(r.get(k), v) for k, v in match.items())]

    def connect(self):
        return FakeConn(self)

    # -- statement interpreter --------------------------------------------

    def execute(self, query, params):
        text = _norm_sql(query)
        self.statements.append(text)
        params = list(params or [])
        if self.fail_on and self.fail_on in text:
            raise psycopg.errors.CheckViolation(f"forced failure on {self.fail_on}")
        if "information_schema.columns" in text:
            tables = params[1]
            return [
                {"table_name": t, "column_name": c}
                for t in tables
                if t in self.schema
                for c in self.schema[t]
            ], 0
        if text.startswith("SELECT") and " JOIN " in text:
            return self._join(text, params), 0
        if text.startswith("SELECT"):
            return self._select(text, params), 0
        if text.startswith("INSERT"):
            return self._insert(text, params)
        if text.startswith("UPDATE"):
            return self._update(text, params)
        if text.startswith("DELETE"):
            return self._delete(text, params)
        raise AssertionError(f"fake db cannot run: {text}")

    def _check_column(self, table, col):
        if col not in self.schema[table]:
            raise psycopg.errors.UndefinedColumn(f'column "{col}" of relation "{table}" does not exist')

    def _conditions(self, where, params):
        conds = []
        if not where:
            return conds
        for part in where.split(" AND "):
            part = part.strip()
            if part.startswith("(") and part.endswith(")"):
                conds.append(("posted", part[1:-1], None))
                continue
            for pat, kind in _COND_PATTERNS:
                m = pat.match(part)
                if m:
                    conds.append((kind, m.group(1), params.pop(0)))
                    break
            else:
                raise AssertionError(f"fake db cannot evaluate condition: {part}")
        return conds

    def _match(self, row, conds):
        for kind, col, val in conds:
            have = row.get(col)
            if kind == "posted":
                ok = False
                for alt in col.split(" OR "):
                    c = alt.split(" ", 1)[0]
                    if "ILIKE" in alt:
                        ok = ok or str(row.get(c) or "").lower().startswith("post")
                    elif alt.endswith("= TRUE"):
                        ok = ok or row.get(c) is True
                if not ok:
                    return False
            elif kind == "eq" and not _same(have, val):
                return False
            elif kind == "texteq" and (have is None or str(have) != str(val)):
                return False
            elif kind == "ieq" and (have is None or str(have).lower() != str(val).lower()):
                return False
            elif kind == "canon" and (have is None or _canon(have) != val):
                return False
            elif kind == "any" and not any(_same(have, v) for v in val):
                return False
            elif kind == "le" and (have is None or have > val):
                return False
        return True

    def _project(self, row, cols_text):
        out = {}
        for item in cols_text.split(", "):
            if item == "*":
                out.update(row)
                continue
            m = re.match(r"^(.+) AS (\w+)$", item)
            src, alias = (m.group(1), m.group(2)) if m else (item, item)
            out[alias] = None if src == "NULL" else row[src]
        return out

    def _select(self, text, params):
        m = re.match(
            r"^SELECT (.+?) FROM (\w+)(?: WHERE (.+?))?(?: ORDER BY (\w+))?(?: LIMIT (\d+))?(?: FOR UPDATE)?$",
            text,
        )
        assert m, f"fake db cannot parse: {text}"
        cols, table, where, order, limit = m.groups()
        for item in cols.split(", "):
            src = item.split(" AS ")[0]
            if src not in ("*", "NULL"):
                self._check_column(table, src)
        conds = self._conditions(where, params)
        rows = [r for r in self.tables[table] if self._match(r, conds)]
        if order:
            rows.sort(key=lambda r: r[order])
        if limit:
            rows = rows[: int(limit)]
        return [self._project(r, cols) for r in rows]

    def _join(self, text, params):
        m = re.match(
            r"^SELECT (.+?) FROM journal_entry_items i JOIN journal_entries e ON e\.id = i\.(\w+)(?: WHERE (.+))?$",
            text,
        )
        assert m, f"fake db cannot parse join: {text}"
        cols, ref, where = m.groups()
        conds = self._conditions(where, params)
        entries = {str(e["id"]): e for e in self.tables["journal_entries"]}
        out = []
        for item in sorted(self.tables["journal_entry_items"], key=lambda r: r["id"]):
            entry = entries.get(str(item[ref]))
            if entry is None:
                continue
            combined = {f"i.{k}": v for k, v in item.items()}
            combined.update({f"e.{k}": v for k, v in entry.items()})
            if self._match(combined, conds):
                out.append(self._project(combined, cols))
        return out

    def _insert(self, text, params):
        m = re.match(r"^INSERT INTO (\w+) \((.+?)\) VALUES \((.+?)\) RETURNING \*$", text)
        assert m, f"fake db cannot parse: {text}"
        table, cols = m.group(1), m.group(2).split(", ")
        for c in cols:
            self._check_column(table, c)
        row = self.seed(table, **dict(zip(cols, params)))
        return [dict(row)], 1

    def _split_where(self, rest):
        if " WHERE " in rest:
            return rest.split(" WHERE ", 1)
        return rest, None

    def _update(self, text, params):
        m = re.match(r"^UPDATE (\w+) SET (.+)$", text)
        assert m, f"fake db cannot parse: {text}"
        table = m.group(1)
        sets_text, where = self._split_where(m.group(2))
        assigns = re.findall(r"(\w+) = (COALESCE\(\w+, 0\) \+ %s|%s|now\(\))", sets_text)
        values = []
        for col, expr in assigns:
            self._check_column(table, col)
            if expr == "now()":
                values.append((col, "now", None))
            elif expr.startswith("COALESCE"):
                values.append((col, "inc", params.pop(0)))
            else:
                values.append((col, "set", params.pop(0)))
        conds = self._conditions(where, params)
        n = 0
        for r in self.tables[table]:
            if not self._match(r, conds):
                continue
            n += 1
            for col, kind, val in values:
                if kind == "now":
                    r[col] = "now"
                elif kind == "inc":
                    r[col] = Decimal(str(r[col] or 0)) + Decimal(str(val))
                else:
                    r[col] = val
        return [], n

    def _delete(self, text, params):
        m = re.match(r"^DELETE FROM (\w+) WHERE (.+)$", text)
        assert m, f"fake db cannot parse: {text}"
        table = m.group(1)
        conds = self._conditions(m.group(2), params)
        keep = [r for r in self.tables[table] if not self._match(r, conds)]
        n = len(self.tables[table]) - len(keep)
        self.tables[table] = keep
        return [], n


class FakeCursor:
    def __init__(self, db: FakeLedgerDB):
        self.db = db
        self._rows = []
        self.rowcount = -1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query, params=None):
        self._rows, self.rowcount = self.db.execute(query, params)

    def fetchone(self):
        return dict(self._rows[0]) if self._rows else None

    def fetchall(self):
        return [dict(r) for r in self._rows]


class FakeConn:
    def __init__(self, db: FakeLedgerDB):
        self.db = db
        self.rollbacks = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return FakeCursor(self.db)

    @contextmanager
    def transaction(self):
        saved = (copy.deepcopy(self.db.tables), dict(self.db._next_id))
        try:
            yield self
        except BaseException:
            self.db.tables, self.db._next_id = saved
            self.rollbacks += 1
            raise

    def commit(self):
        pass

    def rollback(self):
        pass


@pytest.fixture(autouse=True)
def _fresh_schema_cache():
    reset_schema_cache()
    yield
    reset_schema_cache()


def seed_ledger(db: FakeLedgerDB) -> dict:
    """One entity (TPF), one fund (GEN, restriction U) and a small chart of accounts."""
    ids = {}
    ids["tpf"] = db.seed("entities", code="TPF", name="The Parish Fund")["id"]
    ids["gen"] = db.seed("funds", entity_code="TPF", fund_number="GEN", restriction="U", fund_name="General", balance=Decimal("0"))["id"]
    for code, cls, desc in (
        ("1000", "Assets", "Cash"),
        ("2000", "Liabilities", "Accounts Payable"),
        ("4000", "Revenues", "Donations"),
        ("5100", "Expenses", "Supplies"),
    ):
        db.seed("gl_codes", code=code, classification=cls, description=desc)
    for key, gl, desc in (
        ("cash", "1000", "Cash"),
        ("ap", "2000", "Accounts Payable"),
        ("donations", "4000", "Donations"),
        ("supplies", "5100", "Supplies"),
    ):
        ids[key] = db.seed(
            "accounts",
            account_code=f"TPF {gl} GEN U",
            entity_code="TPF",
            gl_code=gl,
            fund_number="GEN",
            restriction="U",
            description=desc,
            status="Active",
            beginning_balance=Decimal("0"),
            balance=Decimal("0"),
        )["id"]
    ids["bank"] = db.seed("bank_accounts", account_name="Operating", gl_account_id=ids["cash"])["id"]
    ids["acme"] = db.seed("vendors", zid="V001", name="Acme Supply")["id"]
    return ids


@pytest.fixture
def db():
    return FakeLedgerDB()


@pytest.fixture
def ledger(db):
    return seed_ledger(db)


@pytest.fixture
def conn(db):
    return db.connect()


@pytest.fixture
def make_db():
    """Factory for a fake database with a custom column layout."""
    return FakeLedgerDB


@pytest.fixture
def seed():
    return seed_ledger
