# app/core/request_id.py
from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Iterator, Optional
import contextvars

_request_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)
_event_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("ledger_event_id", default=None)

# -------- Request ID (API) ---------------------------------------------------

def set_request_id(request_id: Optional[str]) -> None:
    _request_id_ctx.set(request_id)

def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()

def clear_request_id() -> None:
    _request_id_ctx.set(None)

# -------- Ledger event ID ----------------------------------------------------

def get_event_id() -> Optional[str]:
    return _event_id_ctx.get()

@contextmanager
def with_event_id(event_id: Optional[str] = None) -> Iterator[str]:
    """
    Tags every log line emitted while one ledger event is processed:
        with with_event_id() as eid:
            ... apply + evaluate ...
    """
    previous = _event_id_ctx.get()
    eid = event_id or uuid.uuid4().hex
    _event_id_ctx.set(eid)
    try:
        yield eid
    finally:
        _event_id_ctx.set(previous)
