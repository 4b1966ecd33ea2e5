"""Correlation ids for following one unit of work through the logs.

A unit is a discovery pass, a poll tick, an accessory command or a long-lived
task such as the broker session loop. The id lives in a ContextVar: every
asyncio task works on its own copy, and a nested unit hands the outer id back
when it ends.
"""

from __future__ import annotations

import secrets
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

__all__ = [
    "CORRELATION_ID_LENGTH",
    "correlation_context",
    "ensure_correlation_id",
    "get_correlation_id",
    "new_correlation_id",
    "set_correlation_id",
]

CORRELATION_ID_LENGTH = 12

_current: ContextVar[str | None] = ContextVar("tesy_correlation_id", default=None)


def new_correlation_id() -> str:
    return secrets.token_hex(CORRELATION_ID_LENGTH // 2)


def get_correlation_id() -> str | None:
    return _current.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _ = _current.set(correlation_id)


@contextmanager
def correlation_context(correlation_id: str | None = None) -> Iterator[str]:
    """Run the body under ``correlation_id``, or under a fresh id when none is given."""
    cid = correlation_id or new_correlation_id()
    token = _current.set(cid)
    try:
        yield cid
    finally:
        _current.reset(token)


def ensure_correlation_id() -> str:
    """Return the current id, creating one for a task that has none yet."""
    cid = _current.get()
    if cid is None:
        cid = new_correlation_id()
        _ = _current.set(cid)
    return cid
