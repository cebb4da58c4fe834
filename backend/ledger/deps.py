from typing import Optional

from fastapi import Header, Request

from .jobs import JobStore


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_owner(x_user: Optional[str] = Header(default=None)) -> str:
    # Authentication happens upstream; the proxy forwards the user id.
    return (x_user or "").strip() or "anonymous"
