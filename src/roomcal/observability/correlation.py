"""Correlation IDs for sync passes.

Each polling tick or engine operation runs under its own id so that the
fetch, the detector pass and any notifications it emits can be traced
together. ContextVar values are copied into asyncio tasks, so concurrent
loops never see each other's id.
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id(prefix: str = "") -> str:
    """Generate a new correlation ID, optionally tagged with the pass name."""
    cid = uuid.uuid4().hex[:16]
    return f"{prefix}-{cid}" if prefix else cid


def get_correlation_id() -> str:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    """Set correlation ID in context."""
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    """Reset correlation ID to previous value."""
    correlation_id_var.reset(token)


@contextmanager
def correlation_scope(prefix: str = "") -> Iterator[str]:
    """Run a block under a fresh correlation ID."""
    token = set_correlation_id(generate_correlation_id(prefix))
    try:
        yield get_correlation_id()
    finally:
        reset_correlation_id(token)
