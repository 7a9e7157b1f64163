"""Invoker — resolves a handler id and calls it with deserialized arguments."""
from __future__ import annotations

import inspect
import structlog
from typing import Any, Sequence

from core.exceptions import InvocationFailure
from core.registry import HandlerRegistry

logger = structlog.get_logger()


class Invoker:
    """
    Calls registered handlers.

    Handler exceptions (RetrySignal included) propagate unchanged; only
    failures to bind the call are wrapped in InvocationFailure.
    """

    def __init__(self, registry: HandlerRegistry):
        self.registry = registry

    async def invoke(self, handler_id: str, args: Sequence[Any]) -> Any:
        registration = self.registry.get(handler_id)

        try:
            target = registration.resolve()
            _bind(target, args)
        except (AttributeError, TypeError) as e:
            logger.error("dispatch_invocation_failed",
                         handler_id=handler_id,
                         arg_types=[type(a).__name__ for a in args],
                         error=str(e))
            raise InvocationFailure(
                f"Failed to call {handler_id}({', '.join(type(a).__name__ for a in args)}): {e}",
                handler_id=handler_id,
            ) from e

        result = target(*args)
        if inspect.isawaitable(result):
            result = await result
        return result


def _bind(target: Any, args: Sequence[Any]) -> None:
    """Raise TypeError if target cannot take args positionally."""
    try:
        signature = inspect.signature(target)
    except ValueError:
        return  # builtins without introspectable signatures
    signature.bind(*args)
