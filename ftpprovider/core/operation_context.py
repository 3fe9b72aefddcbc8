"""Operation context helpers for logging."""
from __future__ import annotations

import itertools
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_operation_id: ContextVar[str | None] = ContextVar("operation_id", default=None)


def get_operation_id() -> str | None:
    return _operation_id.get()


@contextmanager
def operation_context(operation_id: str) -> Iterator[None]:
    token = _operation_id.set(operation_id)
    try:
        yield
    finally:
        _operation_id.reset(token)


class OperationIdGenerator:
    """Monotonic id source owned by one provider instance."""

    def __init__(self, prefix: str = "op", start: int = 1) -> None:
        self._prefix = prefix
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self, kind: str | None = None) -> str:
        with self._lock:
            value = next(self._counter)
        if kind:
            return f"{self._prefix}-{kind}-{value}"
        return f"{self._prefix}-{value}"
