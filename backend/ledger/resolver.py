"""
Account / fund / entity resolution.

A line item or import row names its account by id, by composite code in any
punctuation ("TPF-1000-GEN-U", "tpf 1000 gen u") or by a legacy alias. The
resolver tries those in that order and memoises results for the lifetime of
one unit of work.
"""

from __future__ import annotations

from typing import Any, Optional

from . import queries as q
from .errors import ResolutionError
from .schema import LedgerSchema
from .signs import Classification, normalize_classification


def canonical_code(*parts: Any) -> str:
    return "".join(q.canon(p) for p in parts)


def display_code(*parts: Any) -> str:
    return " ".join(str(p).strip() for p in parts if p is not None and str(p).strip())


def account_select(schema: LedgerSchema) -> list:
    a = schema.accounts
    return [
        "id",
        (a.code, "account_code"),
        (a.legacy_code, "legacy_code"),
        (a.label, "label"),
        (a.entity_code, "entity_code"),
        (a.gl_code, "gl_code"),
        (a.fund_number, "fund_number"),
        (a.restriction, "restriction"),
        (a.classification, "classification"),
        (a.beginning_balance, "beginning_balance"),
        (a.balance, "balance"),
    ]


def fund_select(schema: LedgerSchema) -> list:
    f = schema.funds
    return [
        "id",
        (f.number, "fund_number"),
        (f.entity_code, "entity_code"),
        (f.entity_id, "entity_id"),
        (f.restriction, "restriction"),
        (f.label, "label"),
        (f.starting_balance, "starting_balance"),
        (f.balance, "balance"),
    ]


def entity_select(schema: LedgerSchema) -> list:
    e = schema.entities
    return ["id", (e.code, "code"), (e.label, "label")]


class Resolver:
    def __init__(self, cur, schema: LedgerSchema):
        self.cur = cur
        self.schema = schema
        self._accounts: dict[str, dict] = {}
        self._account_codes: dict[str, dict] = {}
        self._funds: dict[tuple, dict] = {}
        self._entities: dict[str, dict] = {}
        self._classes: dict[str, Optional[Classification]] = {}
        self._gl: dict[str, Optional[dict]] = {}

    # -- accounts ---------------------------------------------------------

    def _one(self, stmt, what: str, token: str) -> Optional[dict]:
        rows = q.fetch_all(self.cur, stmt)
        if len(rows) > 1:
            raise ResolutionError(f"{what} {token!r} is ambiguous ({len(rows)} matches)", field=what, token=token)
        return rows[0] if rows else None

    def account(self, raw_ref: Any) -> dict:
        token = str(raw_ref if raw_ref is not None else "").strip()
        if not token:
            raise ResolutionError("account is required", field="account")
        if token in self._accounts:
            return self._accounts[token]
        key = q.canon(token) or token
        if key in self._account_codes:
            return self._account_codes[key]
        cols = account_select(self.schema)
        a = self.schema.accounts

        row = q.fetch_one(self.cur, q.select("accounts", cols, [q.TextEq("id", token)], limit=1))
        if row is not None:
            self._accounts[token] = row
            return row
        if a.code:
            row = self._one(q.select("accounts", cols, [q.CanonEq(a.code, token)], limit=2), "account", token)
        if row is None and a.legacy_code:
            row = self._one(q.select("accounts", cols, [q.CanonEq(a.legacy_code, token)], limit=2), "account", token)
        if row is None:
            raise ResolutionError(f"account {token!r} not found", field="account", token=token)
        self._account_codes[key] = row
        self._accounts[str(row["id"])] = row
        return row

    def account_by_parts(self, entity_code: Any, gl_code: Any, fund_number: Any, restriction: Any = None) -> Optional[dict]:
        a = self.schema.accounts
        if not (a.entity_code and a.gl_code and a.fund_number):
            return None
        conds = [q.IEq(a.entity_code, entity_code), q.IEq(a.gl_code, gl_code), q.IEq(a.fund_number, fund_number)]
        if restriction and a.restriction:
            conds.append(q.IEq(a.restriction, restriction))
        token = display_code(entity_code, gl_code, fund_number, restriction)
        return self._one(q.select("accounts", account_select(self.schema), conds, limit=2), "account", token)

    def prime_accounts(self, rows) -> None:
        for row in rows:
            self._accounts[str(row["id"])] = row

    # -- entities ---------------------------------------------------------

    def entity(self, token: Any) -> dict:
        t = str(token if token is not None else "").strip()
        if not t:
            raise ResolutionError("entity is required", field="entity")
        key = t.lower()
        if key in self._entities:
            return self._entities[key]
        cols = entity_select(self.schema)
        row = q.fetch_one(self.cur, q.select("entities", cols, [q.TextEq("id", t)], limit=1))
        if row is None:
            row = q.fetch_one(self.cur, q.select("entities", cols, [q.IEq(self.schema.entities.code, t)], limit=1))
        if row is None:
            raise ResolutionError(f"entity {t!r} not found", field="entity", token=t)
        self._entities[key] = row
        self._entities[str(row["id"]).lower()] = row
        return row

    # -- funds ------------------------------------------------------------

    def fund(self, entity_code: Any, token: Any, restriction: Any = None) -> dict:
        """
        Fund for `token` within the entity named by `entity_code`. A fund id is
        accepted as-is; otherwise the fund number is matched case-insensitively,
        then with punctuation stripped. With several restrictions under one fund
        number the caller must name the restriction.
        """
        t = str(token if token is not None else "").strip()
        if not t:
            raise ResolutionError("fund is required", field="fund")
        ent = str(entity_code or "").strip()
        key = (ent.lower(), t.lower(), str(restriction or "").strip().lower())
        if key in self._funds:
            return self._funds[key]
        f = self.schema.funds
        cols = fund_select(self.schema)

        row = q.fetch_one(self.cur, q.select("funds", cols, [q.TextEq("id", t)], limit=1))
        if row is None:
            scope: list = []
            if ent and f.entity_code:
                scope.append(q.IEq(f.entity_code, ent))
            elif ent and f.entity_id:
                scope.append(q.Eq(f.entity_id, self.entity(ent)["id"]))
            if restriction and f.restriction:
                scope.append(q.IEq(f.restriction, restriction))
            label = f"{ent} {t}".strip()
            row = self._one(q.select("funds", cols, scope + [q.IEq(f.number, t)], limit=2), "fund", label)
            if row is None:
                row = self._one(q.select("funds", cols, scope + [q.CanonEq(f.number, t)], limit=2), "fund", label)
        if row is None:
            where = f" for entity {ent!r}" if ent else ""
            raise ResolutionError(f"fund {t!r} not found{where}", field="fund", token=t)
        self._funds[key] = row
        return row

    def fund_for_account(self, account: dict) -> dict:
        """The fund an account's composite key names (entity_code + fund_number)."""
        if not account.get("fund_number"):
            raise ResolutionError(
                f"fund is required: account {account.get('account_code') or account['id']!r} does not name one",
                field="fund",
            )
        return self.fund(account.get("entity_code"), account["fund_number"], account.get("restriction"))

    # -- classification ---------------------------------------------------

    def gl_code(self, code: Any) -> Optional[dict]:
        gl = self.schema.gl_codes
        c = str(code or "").strip()
        if gl is None or not c:
            return None
        if c.lower() not in self._gl:
            self._gl[c.lower()] = q.fetch_one(
                self.cur,
                q.select("gl_codes", ["id", (gl.code, "code"), (gl.classification, "classification")], [q.IEq(gl.code, c)], limit=1),
            )
        return self._gl[c.lower()]

    def classification(self, account: dict) -> Optional[Classification]:
        """GL-code lookup wins over the account's own classification column."""
        key = str(account["id"])
        if key in self._classes:
            return self._classes[key]
        out = self.effective_classification(account.get("gl_code"), account.get("classification"))
        self._classes[key] = out
        return out

    def effective_classification(self, gl_code: Any, classification: Any) -> Optional[Classification]:
        gl = self.gl_code(gl_code)
        out = normalize_classification(gl.get("classification")) if gl is not None else None
        return out or normalize_classification(classification)
