from typing import List

from fastapi import APIRouter
from pydantic import BaseModel

from ..db import get_conn
from ..posting import (
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

router = APIRouter(prefix="/journal-entries", tags=["journal-entries"])


class EntryIn(EntryHeader):
    lines: List[EntryLine] = []


class LinesIn(BaseModel):
    lines: List[EntryLine]


@router.post("", status_code=201)
def create(data: EntryIn):
    header = EntryHeader(**data.model_dump(exclude={"lines"}))
    with get_conn() as conn:
        return create_entry(conn, header, data.lines)


@router.get("/{entry_id}")
def read(entry_id: str):
    with get_conn() as conn:
        return get_entry(conn, entry_id)


@router.patch("/{entry_id}")
def update_header(entry_id: str, data: EntryHeaderUpdate):
    with get_conn() as conn:
        return update_entry_header(conn, entry_id, data)


@router.put("/{entry_id}/lines")
def put_lines(entry_id: str, data: LinesIn):
    with get_conn() as conn:
        return replace_lines(conn, entry_id, data.lines)


@router.post("/{entry_id}/post")
def post(entry_id: str):
    with get_conn() as conn:
        return post_entry(conn, entry_id)


@router.delete("/{entry_id}")
def delete(entry_id: str):
    with get_conn() as conn:
        delete_entry(conn, entry_id)
    return {"ok": True}
