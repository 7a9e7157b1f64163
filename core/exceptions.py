"""Error taxonomy for distributed dispatch."""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch errors."""


class RetrySignal(DispatchError):
    """
    Raised by a handler to ask for the call to be retried later.

    This is expected control flow, not a bug: it is logged at info level
    and goes through the normal backoff arithmetic.
    """


class HandlerNotFound(DispatchError):
    """No handler is registered under the given id."""

    def __init__(self, handler_id: str):
        self.handler_id = handler_id
        super().__init__(f"No handler registered for '{handler_id}'")


class InvocationFailure(DispatchError):
    """The handler could not be resolved, bound to its arguments, or called."""

    def __init__(self, message: str, handler_id: str = ""):
        self.handler_id = handler_id
        super().__init__(message)


class SerializationError(InvocationFailure):
    """Arguments could not be serialized or deserialized."""


class SendFailure(DispatchError):
    """The transport failed to accept a message."""

    def __init__(self, message: str, destination: str = ""):
        self.destination = destination
        super().__init__(message)


class RetryBudgetExhausted(DispatchError):
    """A JOURNAL message ran out of fast-path retries and must be dead-lettered."""

    def __init__(self, message: str, message_id: str = ""):
        self.message_id = message_id
        super().__init__(message)


class DeadLetterProcessingError(DispatchError):
    """An unexpected failure while reprocessing a dead-lettered message."""


class ConfigurationError(DispatchError):
    """Invalid configuration, delay spec, or unresolvable placeholder."""
