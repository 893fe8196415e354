"""Failure taxonomy shared by every engine operation.

Domain code raises these; the operation boundary in
``marketplace.services.operations`` catches them, rolls the session back and
hands them to the caller inside a ``Result``.
"""
from __future__ import annotations

from typing import Any


class EngineError(Exception):
    code = "engine_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ValidationError(EngineError):
    """Malformed input; the caller may retry with corrected values."""

    code = "validation_error"
    status_code = 422


class BusinessRuleError(EngineError):
    """Well-formed input that a business rule forbids."""

    code = "business_rule"
    status_code = 409


class NotFoundError(EngineError):
    code = "not_found"
    status_code = 404


class ConflictError(EngineError):
    """A concurrent writer changed the entity; retry the whole operation."""

    code = "conflict"
    status_code = 409
    retryable = True


class StorageError(EngineError):
    code = "storage_error"
    status_code = 503
    retryable = True
