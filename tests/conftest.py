"""Shared test fixtures for distributed dispatch."""
import random
import pytest
from dataclasses import dataclass
from typing import Optional

from core.dispatcher import Dispatcher
from core.exceptions import RetrySignal
from core.registry import HandlerRegistry
from core.retry import RetryPolicy
from job_queue.consumer import DispatchConsumer
from job_queue.message_queue import InMemoryMessageTransport
from models.schemas import Durability, Envelope


@dataclass
class SentMessage:
    envelope: Envelope
    delay_seconds: int
    dead_letter: bool


class RecordingTransport(InMemoryMessageTransport):
    """In-memory transport that remembers every send, and can be told to fail them."""

    def __init__(self, *args, **kwargs):
        kwargs.setdefault("queue_name", "orders")
        kwargs.setdefault("deadletter_name", "orders-deadletter")
        kwargs.setdefault("visibility_timeout", 0)
        super().__init__(*args, **kwargs)
        self.sent: list[SentMessage] = []
        self.fail_with: Optional[Exception] = None

    async def send(self, envelope: Envelope, delay_seconds: int = 0, dead_letter: bool = False):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(SentMessage(envelope, delay_seconds, dead_letter))
        await super().send(envelope, delay_seconds=delay_seconds, dead_letter=dead_letter)


class CounterService:
    """A small service whose methods get registered as handlers."""

    def __init__(self):
        self.value = 0
        self.calls: list[tuple] = []
        self.retries_requested = 0

    def increment(self):
        self.value += 1
        return self.value

    async def add(self, amount: int):
        self.calls.append((amount,))
        self.value += amount
        return self.value

    async def always_retry(self):
        self.retries_requested += 1
        raise RetrySignal("downstream not ready")

    async def explode(self):
        raise RuntimeError("boom")


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def counter() -> CounterService:
    return CounterService()


@pytest.fixture
def counter_registry(registry, counter) -> HandlerRegistry:
    registry.register_method("counter.increment", counter, "increment")
    registry.register_method("counter.add", counter, "add")
    registry.register_method("counter.add_journal", counter, "add", durability=Durability.JOURNAL)
    registry.register_method("counter.always_retry", counter, "always_retry", durability=Durability.JOURNAL)
    registry.register_method("counter.always_retry_transient", counter, "always_retry")
    registry.register_method("counter.explode", counter, "explode", durability=Durability.JOURNAL)
    return registry


@pytest.fixture
def dispatcher(counter_registry, transport) -> Dispatcher:
    return Dispatcher(
        counter_registry,
        transport,
        retry_policy=RetryPolicy(rng=random.Random(7)),
    )


@pytest.fixture
def consumer(dispatcher) -> DispatchConsumer:
    return DispatchConsumer(dispatcher, dead_letter_backoff=(0.0, 0.0))


@pytest.fixture
def make_transport():
    """Factory for transports with non-default names or resolvers."""
    return RecordingTransport
