"""
SenderPool — bounded background senders for TRANSIENT messages.

TRANSIENT dispatches are handed to this pool so the caller never waits on
the transport. Workers are started on demand, from one up to `size`, and
fed from a bounded work queue; when the queue is full the send is dropped
with a warning rather than blocking the caller or growing without bound.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

from models.schemas import Envelope

logger = structlog.get_logger()

SendFn = Callable[[Envelope, int], Awaitable[Any]]


class SenderPool:

    def __init__(self, send: SendFn, size: int = 32, max_pending: int = 10000):
        self._send = send
        self.size = max(1, size)
        self.max_pending = max_pending
        self._queue: Optional[asyncio.Queue] = None
        self._workers: list[asyncio.Task] = []
        self._busy = 0

    @property
    def worker_count(self) -> int:
        return len(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    def submit(self, envelope: Envelope, delay_seconds: int = 0) -> bool:
        """Queue a send. Returns False if the pool is saturated and the send was dropped."""
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.max_pending)

        try:
            self._queue.put_nowait((envelope, delay_seconds))
        except asyncio.QueueFull:
            logger.warning("transient_send_dropped",
                           handler_id=envelope.handler_id,
                           message_id=envelope.message_id,
                           pending=self._queue.qsize())
            return False

        if self._busy + self._queue.qsize() > len(self._workers) and len(self._workers) < self.size:
            self._workers.append(asyncio.create_task(self._run(), name=f"dispatch_sender_{len(self._workers)}"))
        return True

    async def join(self) -> None:
        """Wait until every submitted send has been attempted."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        """Drain pending sends (up to timeout), then stop the workers."""
        if self._queue is not None and self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("sender_pool_drain_timeout", pending=self._queue.qsize())

        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._busy = 0
        logger.info("sender_pool_stopped")

    async def _run(self) -> None:
        while True:
            envelope, delay_seconds = await self._queue.get()
            self._busy += 1
            try:
                await self._send(envelope, delay_seconds)
            except Exception as e:
                # TRANSIENT work is best-effort: the caller already returned
                logger.error("transient_send_failed",
                             handler_id=envelope.handler_id,
                             message_id=envelope.message_id,
                             error=str(e))
            finally:
                self._busy -= 1
                self._queue.task_done()
