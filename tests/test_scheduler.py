"""Tests for the scheduler bridge."""
import asyncio
import pytest

from config.settings import resolve_placeholders
from core.dispatcher import Dispatcher
from core.exceptions import ConfigurationError
from core.scheduler import INITIAL_DELAY_FIXED_RATE, SchedulerBridge
from models.schemas import Durability


@pytest.fixture
def bridge(dispatcher) -> SchedulerBridge:
    props = {"counter.rate": "120", "counter.off": "-"}
    return SchedulerBridge(dispatcher, resolve_placeholders=lambda v: resolve_placeholders(v, props))


class TestSchedule:
    def test_registers_job(self, bridge):
        job = bridge.schedule("counter.increment", fixed_rate=60, initial_delay=INITIAL_DELAY_FIXED_RATE)
        assert job.fixed_rate == 60
        assert job.initial_delay == 600
        assert not job.disabled
        assert bridge.jobs == [job]

    def test_rate_from_placeholder(self, bridge):
        job = bridge.schedule("counter.increment", fixed_rate="${counter.rate}")
        assert job.fixed_rate == 120

    def test_dash_disables_job(self, bridge):
        assert bridge.schedule("counter.increment", fixed_rate="-").disabled
        assert bridge.schedule("counter.always_retry", fixed_rate="${counter.off}").disabled

    def test_handler_with_arguments_rejected(self, bridge):
        with pytest.raises(ValueError, match="zero-argument"):
            bridge.schedule("counter.add", fixed_rate=60)

    def test_non_positive_rate_rejected(self, bridge):
        with pytest.raises(ConfigurationError):
            bridge.schedule("counter.increment", fixed_rate=0)

    def test_invalid_rate_rejected(self, bridge):
        with pytest.raises(ConfigurationError):
            bridge.schedule("counter.increment", fixed_rate="often")


class TestTick:
    @pytest.mark.asyncio
    async def test_disabled_scheduler_produces_nothing(self, counter_registry, transport, counter):
        dispatcher = Dispatcher(counter_registry, transport, scheduler_enabled=False)
        bridge = SchedulerBridge(dispatcher)
        job = bridge.schedule("counter.increment", fixed_rate=60)

        for _ in range(3):
            assert await bridge.tick(job) is False

        await dispatcher.senders.join()
        assert transport.sent == []
        assert counter.value == 0

    @pytest.mark.asyncio
    async def test_enabled_scheduler_dispatches(self, bridge, dispatcher, transport, counter):
        job = bridge.schedule("counter.increment", fixed_rate=60)
        assert await bridge.tick(job) is True
        await dispatcher.senders.join()

        assert len(transport.sent) == 1
        assert transport.sent[0].envelope.handler_id == "counter.increment"
        assert transport.sent[0].envelope.payload == "[]"
        # Dispatched, not executed on the timer
        assert counter.value == 0
        await dispatcher.close()

    @pytest.mark.asyncio
    async def test_job_overrides_durability_and_delay(self, bridge, transport):
        job = bridge.schedule("counter.increment", fixed_rate=60, durability=Durability.JOURNAL, delay="15")
        await bridge.tick(job)
        assert transport.sent[0].envelope.durability == Durability.JOURNAL
        assert transport.sent[0].delay_seconds == 15


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_fires_at_fixed_rate(self, counter_registry, transport, counter):
        dispatcher = Dispatcher(counter_registry, transport, enabled=False)
        bridge = SchedulerBridge(dispatcher)
        bridge.schedule("counter.increment", fixed_rate=0.05)

        await bridge.start()
        await asyncio.sleep(0.28)
        await bridge.stop()

        assert counter.value >= 3

    @pytest.mark.asyncio
    async def test_disabled_job_never_started(self, bridge, counter):
        bridge.schedule("counter.increment", fixed_rate="-")
        await bridge.start()
        await asyncio.sleep(0.05)
        await bridge.stop()
        assert counter.value == 0

    @pytest.mark.asyncio
    async def test_initial_delay_respected(self, counter_registry, transport, counter):
        dispatcher = Dispatcher(counter_registry, transport, enabled=False)
        bridge = SchedulerBridge(dispatcher)
        bridge.schedule("counter.increment", fixed_rate=0.01, initial_delay=10)

        await bridge.start()
        await asyncio.sleep(0.1)
        await bridge.stop()
        assert counter.value == 0
