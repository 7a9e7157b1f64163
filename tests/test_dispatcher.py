"""
Tests for the Dispatcher:
- Disabled dispatch runs inline, retries included
- JOURNAL vs TRANSIENT send paths
- Re-entrant passthrough and chained dispatch
- Status check
"""
import asyncio
import pytest

from config.settings import resolve_placeholders
from core.dispatcher import Dispatcher
from core.exceptions import HandlerNotFound, InvocationFailure, SendFailure, SerializationError
from job_queue.destinations import DestinationResolver
from models.schemas import Durability, Envelope


class TestDisabledDispatch:
    @pytest.mark.asyncio
    async def test_runs_inline_without_sending(self, counter_registry, transport, counter):
        dispatcher = Dispatcher(counter_registry, transport, enabled=False)
        result = await dispatcher.dispatch("counter.increment")
        assert result is None
        assert counter.value == 1
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_handler_errors_go_through_retry(self, counter_registry, transport):
        dispatcher = Dispatcher(counter_registry, transport, enabled=False)
        await dispatcher.dispatch("counter.explode")
        assert len(transport.sent) == 1
        assert transport.sent[0].envelope.handler_id == "counter.explode"
        assert transport.sent[0].envelope.retry_count == 1

    @pytest.mark.asyncio
    async def test_retry_signal_schedules_a_retry(self, counter_registry, transport, counter):
        dispatcher = Dispatcher(counter_registry, transport, enabled=False)
        assert await dispatcher.dispatch("counter.always_retry") is None

        assert counter.retries_requested == 1
        assert len(transport.sent) == 1
        retry = transport.sent[0]
        assert retry.envelope.retry_count == 1
        assert retry.envelope.durability == Durability.JOURNAL
        assert not retry.dead_letter
        assert retry.delay_seconds > 0

    @pytest.mark.asyncio
    async def test_transient_retry_signal_is_retried_too(self, counter_registry, transport):
        dispatcher = Dispatcher(counter_registry, transport, enabled=False)
        await dispatcher.dispatch("counter.always_retry_transient")
        assert [s.envelope.retry_count for s in transport.sent] == [1]

    @pytest.mark.asyncio
    async def test_matches_worker_processing(self, counter_registry, transport):
        dispatcher = Dispatcher(counter_registry, transport, enabled=False)
        await dispatcher.dispatch("counter.always_retry")
        await dispatcher.process(Envelope(handler_id="counter.always_retry", durability=Durability.JOURNAL))
        inline, worker = transport.sent
        assert inline.envelope.retry_count == worker.envelope.retry_count
        assert inline.dead_letter == worker.dead_letter

    @pytest.mark.asyncio
    async def test_arguments_go_through_serialization(self, counter_registry, transport, counter):
        dispatcher = Dispatcher(counter_registry, transport, enabled=False)
        await dispatcher.dispatch("counter.add", 4)
        assert counter.value == 4
        assert counter.calls == [(4,)]


class TestQueuedDispatch:
    @pytest.mark.asyncio
    async def test_transient_with_delay(self, registry, transport, counter):
        registry.register_method("counter.delayed", counter, "increment", delay="5")
        dispatcher = Dispatcher(registry, transport)

        assert await dispatcher.dispatch("counter.delayed") is None
        await dispatcher.senders.join()

        assert counter.value == 0
        assert len(transport.sent) == 1
        sent = transport.sent[0]
        assert sent.envelope.handler_id == "counter.delayed"
        assert sent.envelope.retry_count == 0
        assert sent.envelope.durability == Durability.TRANSIENT
        assert sent.delay_seconds == 5
        assert not sent.dead_letter
        assert transport.delayed_count("orders") == 1
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_journal_sent_before_returning(self, dispatcher, transport):
        await dispatcher.dispatch("counter.add_journal", 3)
        # No join: JOURNAL sends are awaited by dispatch itself
        assert len(transport.sent) == 1
        assert transport.sent[0].envelope.payload == "[3]"
        assert transport.sent[0].envelope.durability == Durability.JOURNAL
        assert await transport.queue_length("orders") == 1

    @pytest.mark.asyncio
    async def test_call_site_overrides_registration(self, dispatcher, transport):
        await dispatcher.dispatch("counter.add", 1, durability=Durability.JOURNAL, delay=30)
        assert transport.sent[0].envelope.durability == Durability.JOURNAL
        assert transport.sent[0].delay_seconds == 30

    @pytest.mark.asyncio
    async def test_delay_clamped(self, dispatcher, transport):
        await dispatcher.dispatch("counter.add_journal", 1, delay=3600)
        assert transport.sent[0].delay_seconds == 900

    @pytest.mark.asyncio
    async def test_random_delay_within_configured_bound(self, counter_registry, transport):
        dispatcher = Dispatcher(counter_registry, transport, max_random_delay=30)
        for _ in range(10):
            await dispatcher.dispatch("counter.add_journal", 1, delay="random")
        assert all(0 <= s.delay_seconds < 30 for s in transport.sent)

    @pytest.mark.asyncio
    async def test_journal_send_failure_propagates(self, dispatcher, transport):
        transport.fail_with = SendFailure("queue unavailable", destination="orders")
        with pytest.raises(SendFailure):
            await dispatcher.dispatch("counter.add_journal", 1)

    @pytest.mark.asyncio
    async def test_transient_send_failure_is_swallowed(self, dispatcher, transport):
        transport.fail_with = SendFailure("queue unavailable", destination="orders")
        assert await dispatcher.dispatch("counter.add", 1) is None
        await dispatcher.senders.join()
        assert transport.sent == []
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_transient_dropped_when_sender_queue_full(self, counter_registry, transport):
        dispatcher = Dispatcher(counter_registry, transport, sender_pool_size=1, sender_queue_size=2)
        for i in range(5):
            await dispatcher.dispatch("counter.add", i)
        # Nothing has yielded to the worker yet, so only two fit
        assert dispatcher.senders.pending == 2
        await dispatcher.senders.join()
        assert [s.envelope.payload for s in transport.sent] == ["[0]", "[1]"]
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_sender_pool_bounded(self, counter_registry, transport):
        dispatcher = Dispatcher(counter_registry, transport, sender_pool_size=3)
        for i in range(20):
            await dispatcher.dispatch("counter.add", i)
        assert dispatcher.senders.worker_count == 3
        await dispatcher.senders.join()
        assert len(transport.sent) == 20
        await dispatcher.close()


class TestDispatchErrors:
    @pytest.mark.asyncio
    async def test_unknown_handler(self, dispatcher):
        with pytest.raises(HandlerNotFound):
            await dispatcher.dispatch("nobody.home")

    @pytest.mark.asyncio
    async def test_unserializable_argument(self, dispatcher, transport):
        with pytest.raises(SerializationError):
            await dispatcher.dispatch("counter.add_journal", object())
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_wrong_arity_fails_at_execution(self, dispatcher):
        envelope = Envelope(handler_id="counter.add", payload="[1, 2, 3]")
        with pytest.raises(InvocationFailure):
            await dispatcher.execute(envelope)


class TestReentrancy:
    @pytest.mark.asyncio
    async def test_self_call_runs_inline(self, registry, transport):
        dispatcher = Dispatcher(registry, transport)

        async def countdown(n: int):
            if n == 0:
                return 0
            return 1 + await dispatcher.dispatch("countdown", n - 1)

        registry.register_handler("countdown", countdown, durability=Durability.JOURNAL)
        result = await dispatcher.execute(Envelope(handler_id="countdown", payload="[3]"))

        assert result == 3
        assert transport.sent == []
        assert not dispatcher.is_processing()

    @pytest.mark.asyncio
    async def test_chained_dispatch_is_queued(self, counter_registry, transport, counter):
        dispatcher = Dispatcher(counter_registry, transport)

        async def outer():
            assert dispatcher.is_processing()
            await dispatcher.dispatch("counter.add_journal", 7)

        counter_registry.register_handler("outer", outer)
        await dispatcher.execute(Envelope(handler_id="outer"))

        assert counter.value == 0
        assert len(transport.sent) == 1
        assert transport.sent[0].envelope.handler_id == "counter.add_journal"
        assert transport.sent[0].envelope.payload == "[7]"

    @pytest.mark.asyncio
    async def test_concurrent_executions_do_not_share_context(self, registry, transport):
        dispatcher = Dispatcher(registry, transport)
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(0.05)

        async def other():
            await started.wait()
            # "slow" is executing in another task, so this is not a self-call
            await dispatcher.dispatch("slow")

        registry.register_handler("slow", slow, durability=Durability.JOURNAL)
        registry.register_handler("other", other)

        await asyncio.gather(
            dispatcher.execute(Envelope(handler_id="slow")),
            dispatcher.execute(Envelope(handler_id="other")),
        )
        assert [s.envelope.handler_id for s in transport.sent] == ["slow"]


class TestLateBinding:
    @pytest.mark.asyncio
    async def test_owner_attribute_resolved_at_call_time(self, registry, transport, counter):
        registry.register_method("counter.increment", counter, "increment")
        dispatcher = Dispatcher(registry, transport, enabled=False)

        calls = []
        original = counter.increment

        def wrapped():
            calls.append("wrapper")
            return original()

        counter.increment = wrapped
        await dispatcher.dispatch("counter.increment")
        assert calls == ["wrapper"]
        assert counter.value == 1


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_ok(self, dispatcher):
        assert await dispatcher.get_status() is True

    @pytest.mark.asyncio
    async def test_status_false_on_unresolvable_destination(self, registry, make_transport, monkeypatch):
        monkeypatch.delenv("MISSING_QUEUE", raising=False)
        resolver = DestinationResolver(lambda v: resolve_placeholders(v, {}))
        transport = make_transport(queue_name="${missing.queue}", resolver=resolver)
        dispatcher = Dispatcher(registry, transport)
        assert await dispatcher.get_status() is False

    @pytest.mark.asyncio
    async def test_status_resolves_placeholders(self, registry, make_transport):
        props = {"orders.queue": "orders-prod"}
        resolver = DestinationResolver(lambda v: resolve_placeholders(v, props))
        transport = make_transport(
            queue_name="${orders.queue}",
            deadletter_name="${orders.deadletter:orders-prod-dl}",
            resolver=resolver,
        )
        dispatcher = Dispatcher(registry, transport)
        assert await dispatcher.get_status() is True
        assert transport.destination() == "orders-prod"
        assert transport.destination(dead_letter=True) == "orders-prod-dl"
