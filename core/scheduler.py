"""
Scheduler Bridge — periodic triggers that dispatch instead of calling.

A scheduled job does not run its handler on the timer: each tick sends a
zero-argument dispatch through the Dispatcher, so the work lands on the
queue and is picked up by whichever worker is free.

Only one replica per deployment runs with scheduler_enabled; on every other
replica ticks are no-ops, so N containers do not produce N messages.

Rates and initial delays are seconds, or ${...} placeholders resolved
against configuration. A rate that resolves to "-" disables the job.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from typing import Callable, Optional, Union

from core.delay import DelaySpec
from core.dispatcher import Dispatcher
from core.exceptions import ConfigurationError
from models.schemas import Durability

logger = structlog.get_logger()

# Set as initial_delay on jobs that must not fire while a rolling restart is still in progress
INITIAL_DELAY_FIXED_RATE = 600

DISABLED = "-"

Seconds = Union[int, float, str]


@dataclass
class ScheduledJob:
    handler_id: str
    fixed_rate: Optional[float]            # None when disabled
    initial_delay: float = 0.0
    durability: Optional[Durability] = None
    delay: DelaySpec = None

    @property
    def disabled(self) -> bool:
        return self.fixed_rate is None


class SchedulerBridge:
    """
    Usage:
        bridge = SchedulerBridge(dispatcher)
        bridge.schedule("reports.rollup", fixed_rate=300, initial_delay=INITIAL_DELAY_FIXED_RATE)
        await bridge.start()
        ...
        await bridge.stop()
    """

    def __init__(self, dispatcher: Dispatcher, resolve_placeholders: Callable[[str], str] = None):
        self.dispatcher = dispatcher
        self._resolve_placeholders = resolve_placeholders
        self.jobs: list[ScheduledJob] = []
        self._tasks: list[asyncio.Task] = []

    def schedule(
        self,
        handler_id: str,
        fixed_rate: Seconds,
        initial_delay: Seconds = 0,
        durability: Durability = None,
        delay: DelaySpec = None,
    ) -> ScheduledJob:
        """Register a fixed-rate job for a zero-argument handler."""
        registration = self.dispatcher.registry.get(handler_id)
        if registration.parameter_count() != 0:
            raise ValueError(f"Only zero-argument handlers can be scheduled, '{handler_id}' takes arguments")

        rate = self._seconds(fixed_rate, allow_disabled=True)
        if rate is not None and rate <= 0:
            raise ConfigurationError(f"fixed_rate for '{handler_id}' must be positive")

        job = ScheduledJob(
            handler_id=handler_id,
            fixed_rate=rate,
            initial_delay=self._seconds(initial_delay) or 0.0,
            durability=durability,
            delay=delay,
        )
        self.jobs.append(job)
        logger.debug("scheduled_job_registered",
                     handler_id=handler_id,
                     fixed_rate=job.fixed_rate,
                     initial_delay=job.initial_delay)
        return job

    def _seconds(self, value: Seconds, allow_disabled: bool = False) -> Optional[float]:
        if isinstance(value, str):
            text = value.strip()
            if "${" in text and self._resolve_placeholders is not None:
                text = self._resolve_placeholders(text).strip()
            if text == DISABLED and allow_disabled:
                return None
            try:
                return float(text)
            except ValueError:
                raise ConfigurationError(f"Invalid schedule value '{value}'") from None
        return float(value)

    async def tick(self, job: ScheduledJob) -> bool:
        """Fire one trigger. Returns True if a dispatch was made."""
        if not self.dispatcher.scheduler_enabled:
            logger.debug("scheduled_tick_ignored",
                         handler_id=job.handler_id,
                         reason="scheduler disabled")
            return False

        logger.info("scheduled_tick_dispatching", handler_id=job.handler_id)
        await self.dispatcher.dispatch(job.handler_id, durability=job.durability, delay=job.delay)
        return True

    async def start(self):
        for job in self.jobs:
            if job.disabled:
                logger.info("scheduled_job_disabled", handler_id=job.handler_id)
                continue
            self._tasks.append(asyncio.create_task(self._run(job), name=f"schedule:{job.handler_id}"))
        logger.info("scheduler_started",
                    jobs=len(self._tasks),
                    enabled=self.dispatcher.scheduler_enabled)

    async def stop(self):
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("scheduler_stopped")

    async def _run(self, job: ScheduledJob):
        loop = asyncio.get_running_loop()
        next_at = loop.time() + job.initial_delay
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            try:
                await self.tick(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("scheduled_tick_error", handler_id=job.handler_id, error=str(e))
            # Fixed rate: skip missed slots instead of firing a burst
            next_at += job.fixed_rate
            now = loop.time()
            if next_at < now:
                next_at = now
