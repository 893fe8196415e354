from __future__ import annotations

from contextvars import ContextVar


_REQUEST_ID_CTX: ContextVar[str | None] = ContextVar("request_id", default=None)
_ACTOR_ID_CTX: ContextVar[str | None] = ContextVar("actor_id", default=None)
_OPERATION_CTX: ContextVar[str | None] = ContextVar("operation", default=None)


def set_request_context(
    *, request_id: str | None = None, actor_id: str | None = None, operation: str | None = None
) -> None:
    if request_id is not None:
        _REQUEST_ID_CTX.set(request_id)
    if actor_id is not None:
        _ACTOR_ID_CTX.set(actor_id)
    if operation is not None:
        _OPERATION_CTX.set(operation)


def get_request_id() -> str | None:
    return _REQUEST_ID_CTX.get()


def get_actor_id() -> str | None:
    return _ACTOR_ID_CTX.get()


def get_operation() -> str | None:
    return _OPERATION_CTX.get()


def clear_request_context() -> None:
    _REQUEST_ID_CTX.set(None)
    _ACTOR_ID_CTX.set(None)
    _OPERATION_CTX.set(None)
