from datetime import date
from typing import Optional

from fastapi import APIRouter, Query

from ..db import get_conn
from ..metrics import account_balances, fund_balances, ledger_metrics

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("")
def summary(as_of: Optional[date] = Query(default=None)):
    with get_conn() as conn:
        return ledger_metrics(conn, as_of)


@router.get("/accounts")
def accounts(as_of: Optional[date] = Query(default=None)):
    with get_conn() as conn:
        return {"accounts": account_balances(conn, as_of)}


@router.get("/funds")
def funds(as_of: Optional[date] = Query(default=None)):
    with get_conn() as conn:
        return {"funds": fund_balances(conn, as_of)}
