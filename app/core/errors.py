# app/core/errors.py
"""
Error taxonomy of the gamification ledger.

Every error is per-request; none of them is fatal to the process.

- ValidationError: rejected before any mutation, caller may fix and resend.
- ConflictError: optimistic-concurrency mismatch, retried inside the ledger.
- NotFoundError: unknown reward id or a user that must exist but does not.
- PersistenceError: storage unreachable or too slow; nothing was committed.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    code: str = "ledger_error"
    status_code: int = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LedgerError):
    code = "validation_error"
    status_code = 400


class ConflictError(LedgerError):
    code = "conflict"
    status_code = 503


class NotFoundError(LedgerError):
    code = "not_found"
    status_code = 404


class PersistenceError(LedgerError):
    code = "persistence_error"
    status_code = 503

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.retryable = retryable
        if not retryable:
            self.status_code = 500


def to_http_exception(exc: LedgerError):
    """Map a ledger error onto the HTTP status the API reports."""
    from fastapi import HTTPException

    headers = None
    if isinstance(exc, ConflictError) or (isinstance(exc, PersistenceError) and exc.retryable):
        headers = {"Retry-After": "1"}
    return HTTPException(
        status_code=exc.status_code,
        detail={"code": exc.code, "message": exc.message, **exc.details},
        headers=headers,
    )
