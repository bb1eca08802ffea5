# Overview: Domain error taxonomy and the tagged result returned by ledger operations.

"""
Ledger & settlement errors

Services raise these inside their unit of work so SQLAlchemy rolls back,
then hand them to callers wrapped in a LedgerResult. Routes turn a failed
result into JSON with error_response().

FATAL: LedgerCorruptionError halts writes for the affected customer until an
admin reconciles. Its user-facing message never carries reconciliation
detail, only an incident reference.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from flask import jsonify


T = TypeVar("T")


class LedgerError(Exception):
    """Base class for expected ledger/settlement failures."""

    code = "LEDGER_ERROR"
    http_status = 400
    fatal = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def user_message(self) -> str:
        return self.message


class InvalidAmountError(LedgerError):
    code = "INVALID_AMOUNT"
    http_status = 400


class CustomerNotFoundError(LedgerError):
    code = "CUSTOMER_NOT_FOUND"
    http_status = 404


class OrderNotFoundError(LedgerError):
    code = "ORDER_NOT_FOUND"
    http_status = 404


class InsufficientCreditError(LedgerError):
    code = "INSUFFICIENT_CREDIT"
    http_status = 409


class AlreadySettledError(LedgerError):
    code = "ALREADY_SETTLED"
    http_status = 409


class EmptyOrderError(LedgerError):
    code = "EMPTY_ORDER"
    http_status = 400


class InvalidItemError(LedgerError):
    """Order line references an unknown or inactive product."""
    code = "INVALID_ITEM"
    http_status = 400


class InvalidTransitionError(LedgerError):
    code = "INVALID_TRANSITION"
    http_status = 409


class ConcurrentModificationError(LedgerError):
    code = "CONCURRENT_MODIFICATION"
    http_status = 503


class LedgerCorruptionError(LedgerError):
    code = "LEDGER_CORRUPTION"
    http_status = 500
    fatal = True

    def __init__(self, message: str, details: dict | None = None, incident_id: str | None = None):
        super().__init__(message, details)
        self.incident_id = incident_id or uuid.uuid4().hex[:12]

    @property
    def user_message(self) -> str:
        return f"Internal ledger error. Reference: {self.incident_id}"


@dataclass(frozen=True)
class LedgerResult(Generic[T]):
    """
    Tagged result: exactly one of value/error is meaningful.

    ok=True  -> value holds the success payload
    ok=False -> error holds a LedgerError
    """
    ok: bool
    value: Optional[T] = None
    error: Optional[LedgerError] = None

    @classmethod
    def success(cls, value: T) -> "LedgerResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: LedgerError) -> "LedgerResult[T]":
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        if not self.ok:
            raise self.error
        return self.value


def error_response(error: LedgerError, status: int | None = None):
    """Map a LedgerError to a Flask (json, status) tuple."""
    body: dict[str, Any] = {"error": error.user_message, "code": error.code}
    if error.fatal:
        body["incident_id"] = error.incident_id
    elif error.details:
        body["details"] = error.details
    return jsonify(body), status or error.http_status
