"""
Dispatch Consumer — pulls envelopes from the queues and executes them.

Runs as async tasks inside the worker process. For horizontal scaling,
deploy multiple processes with the same consumer_group; the transport
delivers each envelope to one consumer at a time (at-least-once).

Topology:
  ┌────────────┐        ┌──────────────┐        ┌────────────────┐
  │ Dispatcher │──send──▶│ primary queue │───────▶│ handle_message │
  └────────────┘        └──────────────┘        └───────┬────────┘
                               ▲                         │ failure
                               │ retry + backoff         │
                               └─────────────────────────┤ (< 10 retries)
                                                         │
                        ┌──────────────┐   escalate      │ JOURNAL, budget spent
                        │  dead-letter  │◀── redrive ─────┘
                        └──────┬───────┘
                               │            ┌─────────────────────┐
                               └───────────▶│ handle_dead_letter  │── retry + backoff ─┐
                                            └─────────────────────┘                    │
                               ▲                                                       │
                               └───────────────────────────────────────────────────────┘
"""
from __future__ import annotations

import asyncio
import random
import structlog
from typing import Optional

from core.dispatcher import Dispatcher
from core.exceptions import DeadLetterProcessingError, RetrySignal
from job_queue.message_queue import MessageTransport
from models.schemas import Durability, Envelope

logger = structlog.get_logger()


class DispatchConsumer:
    """
    Consumes envelopes from the primary and dead-letter destinations.

    Usage:
        consumer = DispatchConsumer(dispatcher)
        await consumer.start_background()   # returns immediately, runs as tasks
        await consumer.stop()
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        transport: MessageTransport = None,
        consumer_group: str = "dispatch-workers",
        consumer_name: str = "",
        concurrency: int = 1,
        dead_letter_backoff: tuple[float, float] = (30.0, 60.0),
    ):
        self.dispatcher = dispatcher
        self.transport = transport or dispatcher.transport
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.concurrency = concurrency
        self.dead_letter_backoff = dead_letter_backoff
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start consuming both destinations — blocks until stop() is called."""
        tasks = await self.start_background()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def start_background(self) -> list[asyncio.Task]:
        """Start consuming both destinations in background tasks."""
        self._running = True
        logger.info("dispatch_consumer_starting",
                    group=self.consumer_group,
                    concurrency=self.concurrency)

        for dead_letter, handler in ((False, self.handle_message), (True, self.handle_dead_letter)):
            task = asyncio.create_task(self.transport.consume(
                destination=self.transport.destination(dead_letter),
                handler=handler,
                consumer_group=self.consumer_group,
                consumer_name=self.consumer_name,
                concurrency=self.concurrency,
            ))
            self._tasks.append(task)
        return list(self._tasks)

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self._running = False
        self.transport.stop()
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("dispatch_consumer_stopped")

    # ── Primary queue ─────────────────────────────────

    async def handle_message(self, envelope: Envelope):
        """
        Execute one envelope from the primary queue.

        Returning normally acknowledges the message; raising leaves it to
        the transport's redelivery and dead-letter redrive.
        """
        await self.dispatcher.process(envelope)

    # ── Dead-letter queue ─────────────────────────────

    async def handle_dead_letter(self, envelope: Envelope):
        """
        Reprocess a dead-lettered envelope.

        TRANSIENT envelopes are dropped without running: the work will come
        round again some other way. JOURNAL envelopes are retried with
        backoff forever; unexpected failures are throttled so a poison
        message is not hammered in a tight loop.
        """
        if envelope.durability == Durability.TRANSIENT:
            logger.debug("dead_letter_transient_dropped",
                         handler_id=envelope.handler_id,
                         message_id=envelope.message_id)
            return

        try:
            await self.dispatcher.execute(envelope)
        except RetrySignal as e:
            logger.info("dispatch_retry_requested",
                        handler_id=envelope.handler_id,
                        message_id=envelope.message_id,
                        retry_count=envelope.retry_count,
                        dead_letter=True,
                        error=str(e))
            await self.dispatcher.retry(envelope, e, dead_letter=True)
        except Exception as e:
            pause = random.uniform(*self.dead_letter_backoff)
            logger.error("dead_letter_processing_failed",
                         handler_id=envelope.handler_id,
                         message_id=envelope.message_id,
                         retry_count=envelope.retry_count,
                         pause_seconds=round(pause, 1),
                         error=str(e),
                         exc_info=True)
            await asyncio.sleep(pause)
            raise DeadLetterProcessingError(
                f"Failed to execute dead-lettered message {envelope.message_id} for {envelope.handler_id}"
            ) from e


# ──────────────────────────────────────────────────────────────
#  Delayed Message Promoter
# ──────────────────────────────────────────────────────────────

class DelayedMessagePromoter:
    """
    Background task that periodically moves delayed/invisible envelopes
    whose time has arrived onto their destination.

    For Redis: runs ZRANGEBYSCORE + ZREM/XADD.
    For in-memory: already handled inside InMemoryMessageTransport.
    """

    def __init__(self, transport: MessageTransport, interval_seconds: float = 1.0):
        self.transport = transport
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.transport.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
