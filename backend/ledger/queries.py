"""
Parameterised statement builder.

Identifiers come only from the schema adapter (catalog-verified alias lists),
values always travel as bind parameters. Nothing here concatenates user input
into SQL text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence, Union

from psycopg import sql


def canon(v: Any) -> str:
    """Strip every non-alphanumeric and lower-case ("TPF-1000-GEN-U" -> "tpf1000genu")."""
    return re.sub(r"[^a-z0-9]", "", ("" if v is None else str(v)).lower())


@dataclass(frozen=True)
class Eq:
    column: str
    value: Any


@dataclass(frozen=True)
class TextEq:
    """Compare as text; safe for raw user tokens against uuid/int id columns."""

    column: str
    value: Any


@dataclass(frozen=True)
class IEq:
    column: str
    value: Any


@dataclass(frozen=True)
class CanonEq:
    column: str
    value: Any


@dataclass(frozen=True)
class AnyOf:
    column: str
    values: Sequence[Any]


Condition = Union[Eq, TextEq, IEq, CanonEq, AnyOf]
Column = Union[str, tuple]


def _col(c: Column) -> sql.Composable:
    if c == "*":
        return sql.SQL("*")
    if isinstance(c, tuple):
        name, alias = c
        if name is None:
            return sql.SQL("NULL AS {}").format(sql.Identifier(alias))
        return sql.SQL("{} AS {}").format(sql.Identifier(name), sql.Identifier(alias))
    return sql.Identifier(c)


def _where(conds: Iterable[Condition]) -> tuple[sql.Composable, list]:
    parts: list[sql.Composable] = []
    params: list = []
    for c in conds:
        col = sql.Identifier(c.column)
        if isinstance(c, Eq):
            parts.append(sql.SQL("{} = %s").format(col))
            params.append(c.value)
        elif isinstance(c, TextEq):
            parts.append(sql.SQL("{}::text = %s").format(col))
            params.append(str(c.value))
        elif isinstance(c, IEq):
            parts.append(sql.SQL("lower({}::text) = lower(%s)").format(col))
            params.append(str(c.value).strip())
        elif isinstance(c, CanonEq):
            parts.append(sql.SQL("lower(regexp_replace({}::text, '[^a-zA-Z0-9]', '', 'g')) = %s").format(col))
            params.append(canon(c.value))
        elif isinstance(c, AnyOf):
            parts.append(sql.SQL("{} = ANY(%s)").format(col))
            params.append(list(c.values))
        else:  # pragma: no cover
            raise TypeError(f"unsupported condition {c!r}")
    if not parts:
        return sql.SQL(""), params
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(parts), params


def select(
    table: str,
    columns: Sequence[Column] = ("*",),
    where: Sequence[Condition] = (),
    *,
    order_by: Optional[str] = None,
    limit: Optional[int] = None,
    for_update: bool = False,
) -> tuple[sql.Composed, list]:
    w, params = _where(where)
    q = sql.SQL("SELECT {cols} FROM {table}").format(
        cols=sql.SQL(", ").join(_col(c) for c in columns),
        table=sql.Identifier(table),
    ) + w
    if order_by:
        q += sql.SQL(" ORDER BY {}").format(sql.Identifier(order_by))
    if limit:
        q += sql.SQL(" LIMIT {}").format(sql.Literal(int(limit)))
    if for_update:
        q += sql.SQL(" FOR UPDATE")
    return q, params


def insert(table: str, values: dict[str, Any]) -> tuple[sql.Composed, list]:
    cols = list(values.keys())
    q = sql.SQL("INSERT INTO {table} ({cols}) VALUES ({ph}) RETURNING *").format(
        table=sql.Identifier(table),
        cols=sql.SQL(", ").join(sql.Identifier(c) for c in cols),
        ph=sql.SQL(", ").join(sql.Placeholder() for _ in cols),
    )
    return q, [values[c] for c in cols]


def update(
    table: str,
    values: dict[str, Any],
    where: Sequence[Condition],
    *,
    touch: Optional[str] = None,
) -> tuple[sql.Composed, list]:
    sets = [sql.SQL("{} = %s").format(sql.Identifier(c)) for c in values]
    if touch:
        sets.append(sql.SQL("{} = now()").format(sql.Identifier(touch)))
    w, wparams = _where(where)
    q = sql.SQL("UPDATE {table} SET {sets}").format(
        table=sql.Identifier(table),
        sets=sql.SQL(", ").join(sets),
    ) + w
    return q, list(values.values()) + wparams


def increment(
    table: str,
    column: str,
    amount: Any,
    where: Sequence[Condition],
    *,
    touch: Optional[str] = None,
) -> tuple[sql.Composed, list]:
    sets = [sql.SQL("{col} = COALESCE({col}, 0) + %s").format(col=sql.Identifier(column))]
    if touch:
        sets.append(sql.SQL("{} = now()").format(sql.Identifier(touch)))
    w, wparams = _where(where)
    q = sql.SQL("UPDATE {table} SET {sets}").format(
        table=sql.Identifier(table),
        sets=sql.SQL(", ").join(sets),
    ) + w
    return q, [amount] + wparams


def delete(table: str, where: Sequence[Condition]) -> tuple[sql.Composed, list]:
    if not where:
        raise ValueError("refusing to build an unqualified DELETE")
    w, params = _where(where)
    return sql.SQL("DELETE FROM {}").format(sql.Identifier(table)) + w, params


def run(cur, stmt: tuple[sql.Composed, list]):
    q, params = stmt
    cur.execute(q, params)
    return cur


def fetch_one(cur, stmt) -> Optional[dict]:
    return run(cur, stmt).fetchone()


def fetch_all(cur, stmt) -> list[dict]:
    return list(run(cur, stmt).fetchall())
