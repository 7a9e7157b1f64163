"""
Handler Registry — explicit registration of dispatchable handlers.

Call-sites do not rely on interception: a handler is registered once at
startup under a handler id, together with its default durability and
delay, and callers go through Dispatcher.dispatch(handler_id, ...).

Handlers can be registered two ways:
  1. A plain callable (function, bound method, async function).
  2. An owner object plus attribute name. The attribute is looked up on the
     owner at call time, so any wrapper or decorator applied to the owner
     (or swapped in later) is what actually runs.
"""
from __future__ import annotations

import inspect
import structlog
from dataclasses import dataclass
from typing import Any, Callable, Optional

from core.delay import DelaySpec
from core.exceptions import HandlerNotFound
from models.schemas import Durability

logger = structlog.get_logger()


@dataclass(frozen=True)
class HandlerRegistration:
    """One dispatchable handler and its dispatch defaults."""
    handler_id: str
    target: Optional[Callable[..., Any]] = None
    owner: Any = None
    attribute: str = ""
    durability: Durability = Durability.TRANSIENT
    delay: DelaySpec = None
    description: str = ""

    def resolve(self) -> Callable[..., Any]:
        """Return the callable to invoke, resolving owner attributes late."""
        if self.owner is not None:
            return getattr(self.owner, self.attribute)
        return self.target

    def parameter_count(self) -> int:
        """Number of parameters the resolved callable accepts (bound methods exclude self)."""
        signature = inspect.signature(self.resolve())
        return len(signature.parameters)


class HandlerRegistry:
    """Maps handler ids to exactly one registration each."""

    def __init__(self):
        self._handlers: dict[str, HandlerRegistration] = {}

    # ── Registration ──────────────────────────────────

    def add(self, registration: HandlerRegistration) -> HandlerRegistration:
        if registration.handler_id in self._handlers:
            raise ValueError(f"Handler '{registration.handler_id}' is already registered")
        self._handlers[registration.handler_id] = registration
        logger.debug("dispatch_handler_registered",
                     handler_id=registration.handler_id,
                     durability=registration.durability.value,
                     delay=registration.delay)
        return registration

    def register_handler(
        self,
        handler_id: str,
        handler: Callable[..., Any],
        durability: Durability = Durability.TRANSIENT,
        delay: DelaySpec = None,
        description: str = None,
    ) -> HandlerRegistration:
        """Register a callable under handler_id."""
        desc = description
        if not desc and handler.__doc__:
            desc = handler.__doc__.strip().split("\n")[0].strip()
        return self.add(HandlerRegistration(
            handler_id=handler_id,
            target=handler,
            durability=durability,
            delay=delay,
            description=desc or "",
        ))

    def register_method(
        self,
        handler_id: str,
        owner: Any,
        attribute: str,
        durability: Durability = Durability.TRANSIENT,
        delay: DelaySpec = None,
    ) -> HandlerRegistration:
        """Register owner.attribute, looked up on every invocation."""
        if not callable(getattr(owner, attribute, None)):
            raise ValueError(f"{type(owner).__name__}.{attribute} is not callable")
        return self.add(HandlerRegistration(
            handler_id=handler_id,
            owner=owner,
            attribute=attribute,
            durability=durability,
            delay=delay,
        ))

    def register(
        self,
        handler_id: str,
        durability: Durability = Durability.TRANSIENT,
        delay: DelaySpec = None,
    ):
        """
        Decorator form of register_handler.

        Usage:
            @registry.register("billing.recalculate", durability=Durability.JOURNAL)
            async def recalculate(account_id: str): ...
        """
        def decorator(func):
            self.register_handler(handler_id, func, durability=durability, delay=delay)
            return func
        return decorator

    # ── Lookup ────────────────────────────────────────

    def get(self, handler_id: str) -> HandlerRegistration:
        registration = self._handlers.get(handler_id)
        if registration is None:
            raise HandlerNotFound(handler_id)
        return registration

    def exists(self, handler_id: str) -> bool:
        return handler_id in self._handlers

    def list_handlers(self) -> list[str]:
        return sorted(self._handlers)
