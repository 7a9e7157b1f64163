"""
Execution context stack for dispatched calls.

Each asyncio task (and each thread) owns its own stack through a
ContextVar, so re-entrancy detection never leaks between concurrent
deliveries or callers.
"""
from __future__ import annotations

import contextlib
from contextvars import ContextVar, Token
from typing import Iterator, Optional

_execution_stack: ContextVar[tuple[str, ...]] = ContextVar("dispatch_execution_stack", default=())


class ReentrancyGuard:
    """Tracks which dispatched handlers are executing in the current context."""

    def push(self, handler_id: str) -> Token:
        return _execution_stack.set(_execution_stack.get() + (handler_id,))

    def pop(self, token: Token) -> None:
        _execution_stack.reset(token)

    @contextlib.contextmanager
    def executing(self, handler_id: str) -> Iterator[None]:
        """Mark handler_id as executing for the duration of the block."""
        token = self.push(handler_id)
        try:
            yield
        finally:
            self.pop(token)

    def current(self) -> Optional[str]:
        """Handler id on top of the stack, or None outside dispatched execution."""
        stack = _execution_stack.get()
        return stack[-1] if stack else None

    def is_reentrant(self, handler_id: str) -> bool:
        """True when handler_id is the call currently being processed in this context."""
        return self.current() == handler_id

    def is_active(self) -> bool:
        return bool(_execution_stack.get())

    def depth(self) -> int:
        return len(_execution_stack.get())
