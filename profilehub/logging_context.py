from __future__ import annotations

from contextvars import ContextVar

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
_collector_ctx: ContextVar[str | None] = ContextVar("collector", default=None)
_run_id_ctx: ContextVar[int | None] = ContextVar("run_id", default=None)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def set_request_id(value: str | None) -> None:
    _request_id_ctx.set(value)


def get_collector_context() -> tuple[str | None, int | None]:
    return _collector_ctx.get(), _run_id_ctx.get()


def bind_collector_context(*, collector: str | None, run_id: int | None) -> None:
    # Each run executes in its own task, so the binding never leaks across collectors.
    _collector_ctx.set(collector)
    _run_id_ctx.set(run_id)
