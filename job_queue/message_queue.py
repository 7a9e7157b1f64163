"""
Message Transport — Abstract interface with Redis Streams and in-memory backends.

Queue Topology:
  <queue>              — Envelopes ready for a worker
  <deadletter>         — Envelopes the primary consumer failed to acknowledge
                         max_receive_count times (redrive)
  delayed              — Envelopes with a delivery delay, or waiting out a
                         visibility timeout after a failed receive

Delivery semantics (at-least-once):
  - A handler that returns normally acknowledges the message.
  - A handler that raises leaves it unacknowledged: it becomes visible again
    after visibility_timeout. On the primary queue, after max_receive_count
    failed receives it is moved to the dead-letter queue instead. Dead-letter
    deliveries are redelivered indefinitely.
  - Per-message delay is capped at 900 seconds.

Wire Schema (Redis stream entry):
  {
      "envelope":      Envelope JSON (payload emptied when offloaded),
      "receive_count": failed receives so far on this destination,
      "payload_ref":   blob key holding the payload when it exceeded
                       large_payload_threshold, else "",
  }
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from tenacity import retry, stop_after_attempt, wait_exponential

from core.delay import clamp_delay
from core.exceptions import SendFailure, SerializationError
from job_queue.destinations import DestinationResolver
from models.schemas import Envelope

logger = structlog.get_logger()

Handler = Callable[[Envelope], Awaitable[Any]]


@dataclass
class QueuedMessage:
    """An envelope as held by a transport, with its receive bookkeeping."""
    envelope: Envelope
    receive_count: int = 0


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageTransport(ABC):
    """Abstract message transport interface."""

    def __init__(
        self,
        queue_name: str,
        deadletter_name: str,
        resolver: DestinationResolver = None,
        visibility_timeout: int = 900,
        max_receive_count: int = 5,
    ):
        self.queue_name = queue_name
        self.deadletter_name = deadletter_name
        self.resolver = resolver or DestinationResolver()
        self.visibility_timeout = visibility_timeout
        self.max_receive_count = max_receive_count
        self._running = False      # backend connected (promoters)
        self._consuming = False    # consume loops

    def destination(self, dead_letter: bool = False) -> str:
        """Resolved name of the primary or dead-letter destination."""
        return self.resolver.resolve(self.deadletter_name if dead_letter else self.queue_name)

    def is_dead_letter(self, destination: str) -> bool:
        return destination == self.destination(dead_letter=True)

    def stop(self):
        """Ask running consume loops to exit. Background promotion keeps running."""
        self._consuming = False

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def send(self, envelope: Envelope, delay_seconds: int = 0, dead_letter: bool = False):
        """Send an envelope to the primary or dead-letter destination. Raises SendFailure."""
        ...

    @abstractmethod
    async def consume(
        self,
        destination: str,
        handler: Handler,
        consumer_group: str = "default",
        consumer_name: str = "",
        concurrency: int = 1,
    ):
        """
        Start consuming from a destination. Blocks and calls handler for each
        envelope, at most `concurrency` at a time.
        """
        ...

    @abstractmethod
    async def check_destination(self, name: str) -> bool:
        """True if the named destination resolves and the backend can reach it."""
        ...

    @abstractmethod
    async def queue_length(self, destination: str) -> int:
        """Return the number of visible envelopes on a destination."""
        ...

    @abstractmethod
    async def peek(self, destination: str, count: int = 10) -> list[Envelope]:
        """Peek at envelopes without consuming them."""
        ...

    @abstractmethod
    async def promote_delayed(self):
        """Move delayed envelopes whose time has come onto their destination."""
        ...

    def _next_after_failure(self, destination: str, message: QueuedMessage) -> tuple[str, int]:
        """Where a failed receive goes next: (destination, delay)."""
        if not self.is_dead_letter(destination) and message.receive_count >= self.max_receive_count:
            return self.destination(dead_letter=True), 0
        return destination, self.visibility_timeout


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageTransport(MessageTransport):
    """
    Production transport backed by Redis Streams + Sorted Sets.

    - Destinations are Redis Streams consumed through consumer groups
    - Delayed and invisible messages wait in a Sorted Set scored by due time
    - Payloads above large_payload_threshold are stored under their own key
      and restored transparently on receive
    """

    def __init__(
        self,
        queue_name: str,
        deadletter_name: str,
        resolver: DestinationResolver = None,
        redis_url: str = "redis://localhost:6379",
        stream_prefix: str = "dispatch",
        visibility_timeout: int = 900,
        max_receive_count: int = 5,
        large_payload_threshold: int = 256 * 1024,
        blob_ttl_seconds: int = 14 * 24 * 3600,
        reclaim_interval: float = 30.0,
        redis=None,
    ):
        super().__init__(queue_name, deadletter_name, resolver, visibility_timeout, max_receive_count)
        self._redis_url = redis_url
        self._prefix = stream_prefix
        self.large_payload_threshold = large_payload_threshold
        self.blob_ttl_seconds = blob_ttl_seconds
        self.reclaim_interval = reclaim_interval
        self._redis = redis

    @property
    def _delayed_key(self) -> str:
        return f"{self._prefix}:delayed"

    def _stream_key(self, destination: str) -> str:
        return f"{self._prefix}:{destination}"

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10))
    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        await self._redis.ping()
        logger.info("redis_transport_connected", url=self._redis_url)

    async def close(self):
        self._running = False
        self._consuming = False
        if self._redis:
            await self._redis.close()

    async def _ensure_group(self, stream: str, group: str):
        """Create consumer group if it doesn't exist."""
        try:
            await self._redis.xgroup_create(stream, group, id="0", mkstream=True)
        except Exception as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _encode(self, envelope: Envelope, receive_count: int = 0) -> dict[str, str]:
        payload_ref = ""
        if len(envelope.payload.encode("utf-8")) > self.large_payload_threshold:
            payload_ref = f"{self._prefix}:blob:{uuid.uuid4().hex}"
            await self._redis.set(payload_ref, envelope.payload, ex=self.blob_ttl_seconds)
            envelope = envelope.model_copy(update={"payload": ""})
            logger.debug("payload_offloaded", message_id=envelope.message_id, ref=payload_ref)
        return {
            "envelope": envelope.to_json(),
            "receive_count": str(receive_count),
            "payload_ref": payload_ref,
        }

    async def _decode(self, fields: dict[str, str]) -> Envelope:
        envelope = Envelope.from_json(fields["envelope"])
        ref = fields.get("payload_ref", "")
        if ref:
            payload = await self._redis.get(ref)
            if payload is None:
                raise SerializationError(f"Offloaded payload {ref} for {envelope.message_id} is missing")
            envelope = envelope.model_copy(update={"payload": payload})
        return envelope

    async def _publish(self, destination: str, fields: dict[str, str], delay_seconds: int):
        if delay_seconds > 0:
            member = json.dumps({"destination": destination, "fields": fields, "id": uuid.uuid4().hex})
            await self._redis.zadd(self._delayed_key, {member: time.time() + delay_seconds})
        else:
            await self._redis.xadd(self._stream_key(destination), fields)

    async def send(self, envelope: Envelope, delay_seconds: int = 0, dead_letter: bool = False):
        destination = self.destination(dead_letter)
        delay_seconds = clamp_delay(delay_seconds)
        try:
            fields = await self._encode(envelope)
            await self._publish(destination, fields, delay_seconds)
        except Exception as e:
            raise SendFailure(f"Failed to send {envelope.message_id} to {destination}: {e}",
                              destination=destination) from e

        logger.debug("envelope_sent",
                     destination=destination,
                     handler_id=envelope.handler_id,
                     message_id=envelope.message_id,
                     retry_count=envelope.retry_count,
                     delay_seconds=delay_seconds)

    async def consume(
        self,
        destination: str,
        handler: Handler,
        consumer_group: str = "default",
        consumer_name: str = "",
        concurrency: int = 1,
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        stream = self._stream_key(destination)
        await self._ensure_group(stream, consumer_group)
        semaphore = asyncio.Semaphore(concurrency)
        in_flight: set[asyncio.Task] = set()
        loop = asyncio.get_running_loop()
        reclaim_at = 0.0
        self._consuming = True
        logger.info("consumer_started",
                    destination=destination,
                    group=consumer_group,
                    consumer=consumer_name,
                    concurrency=concurrency)

        try:
            while self._consuming:
                try:
                    entries = []
                    if loop.time() >= reclaim_at:
                        entries.extend(await self._reclaim(destination, stream, consumer_group,
                                                           consumer_name, concurrency))
                        reclaim_at = loop.time() + self.reclaim_interval

                    messages = await self._redis.xreadgroup(
                        groupname=consumer_group,
                        consumername=consumer_name,
                        streams={stream: ">"},
                        count=concurrency,
                        block=2000,  # block 2s waiting for messages
                    )
                    for _stream_name, stream_messages in messages or []:
                        entries.extend(stream_messages)

                    for message_id, fields in entries:
                        await semaphore.acquire()
                        task = asyncio.create_task(self._deliver(
                            destination, stream, consumer_group, message_id, fields, handler, semaphore,
                        ))
                        in_flight.add(task)
                        task.add_done_callback(in_flight.discard)

                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error("consumer_error", destination=destination, error=str(e))
                    await asyncio.sleep(1)
        finally:
            # Interrupted deliveries stay pending in the group and are reclaimed later
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def _reclaim(self, destination, stream, group, consumer_name, count) -> list[tuple[str, dict]]:
        """
        Claim entries another consumer left pending for longer than
        visibility_timeout (crashed or stopped mid-delivery).

        Each claim counts as a failed receive, so a message that keeps
        killing its worker is still redriven to the dead-letter queue.
        """
        result = await self._redis.xautoclaim(
            stream, group, consumer_name,
            min_idle_time=self.visibility_timeout * 1000,
            start_id="0-0",
            count=count,
        )
        claimed = []
        for message_id, fields in (result[1] if result else []):
            if not fields:
                # Trimmed from the stream while pending
                await self._redis.xack(stream, group, message_id)
                continue

            receive_count = int(fields.get("receive_count", 0)) + 1
            message = QueuedMessage(Envelope.from_json(fields["envelope"]), receive_count)
            next_destination, _ = self._next_after_failure(destination, message)
            logger.warning("message_reclaimed",
                           destination=destination,
                           message_id=message.envelope.message_id,
                           receive_count=receive_count)

            if next_destination != destination:
                await self._publish(next_destination, dict(fields, receive_count="0"), 0)
                await self._redis.xack(stream, group, message_id)
                logger.warning("message_redriven_to_dead_letter",
                               message_id=message.envelope.message_id,
                               receives=receive_count)
                continue

            claimed.append((message_id, dict(fields, receive_count=str(receive_count))))
        return claimed

    async def _deliver(self, destination, stream, group, message_id, fields, handler, semaphore):
        receive_count = int(fields.get("receive_count", 0))
        try:
            try:
                envelope = await self._decode(fields)
                await handler(envelope)
            except Exception as e:
                receive_count += 1
                message = QueuedMessage(Envelope.from_json(fields["envelope"]), receive_count)
                next_destination, delay = self._next_after_failure(destination, message)
                if next_destination != destination:
                    receive_count = 0
                    logger.warning("message_redriven_to_dead_letter",
                                   message_id=message.envelope.message_id,
                                   receives=message.receive_count)
                redelivery = dict(fields, receive_count=str(receive_count))
                await self._publish(next_destination, redelivery, delay)
                logger.warning("message_not_acknowledged",
                               destination=destination,
                               message_id=message.envelope.message_id,
                               receive_count=message.receive_count,
                               error=str(e))
            else:
                if fields.get("payload_ref"):
                    await self._redis.delete(fields["payload_ref"])
            await self._redis.xack(stream, group, message_id)
        except asyncio.CancelledError:
            # Not acknowledged: _reclaim picks it up once visibility_timeout has passed
            logger.warning("delivery_interrupted", destination=destination, message_id=message_id)
            raise
        except Exception as e:
            # Left pending in the group; _reclaim retries it after visibility_timeout
            logger.error("delivery_bookkeeping_failed", message_id=message_id, error=str(e))
        finally:
            semaphore.release()

    async def check_destination(self, name: str) -> bool:
        # Re-resolve so a configuration change shows up in the status check
        self.resolver.remove_from_cache(name)
        resolved = self.resolver.resolve(name)
        await self._redis.ping()
        return bool(resolved)

    async def queue_length(self, destination: str) -> int:
        return await self._redis.xlen(self._stream_key(destination))

    async def peek(self, destination: str, count: int = 10) -> list[Envelope]:
        messages = await self._redis.xrange(self._stream_key(destination), count=count)
        return [Envelope.from_json(fields["envelope"]) for _, fields in messages]

    async def promote_delayed(self):
        """Move envelopes whose due time <= now from the sorted set to their stream."""
        now = time.time()
        ready = await self._redis.zrangebyscore(self._delayed_key, "-inf", now)

        if not ready:
            return

        promoted = 0
        for member in ready:
            # Only the replica that wins the ZREM publishes, so promotion never duplicates
            if await self._redis.zrem(self._delayed_key, member):
                item = json.loads(member)
                await self._redis.xadd(self._stream_key(item["destination"]), item["fields"])
                promoted += 1

        if promoted:
            logger.debug("delayed_envelopes_promoted", count=promoted)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageTransport(MessageTransport):
    """
    Development/test transport backed by asyncio primitives.
    Single-process only — no consumer groups or persistence.
    """

    def __init__(
        self,
        queue_name: str = "distributed-default",
        deadletter_name: str = "distributed-default-deadletter",
        resolver: DestinationResolver = None,
        visibility_timeout: int = 900,
        max_receive_count: int = 5,
        promote_interval: float = 1.0,
    ):
        super().__init__(queue_name, deadletter_name, resolver, visibility_timeout, max_receive_count)
        self.promote_interval = promote_interval
        self._queues: dict[str, asyncio.Queue] = {}
        self._delayed: list[tuple[float, str, QueuedMessage]] = []  # (due, destination, message)
        self._delayed_promoter_task: Optional[asyncio.Task] = None

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        self._running = True
        self._delayed_promoter_task = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_transport_connected")

    async def close(self):
        self._running = False
        self._consuming = False
        if self._delayed_promoter_task:
            self._delayed_promoter_task.cancel()
            try:
                await self._delayed_promoter_task
            except asyncio.CancelledError:
                pass

    async def _publish(self, destination: str, message: QueuedMessage, delay_seconds: float):
        if delay_seconds > 0:
            self._delayed.append((time.monotonic() + delay_seconds, destination, message))
            self._delayed.sort(key=lambda x: x[0])
        else:
            await self._get_queue(destination).put(message)

    async def send(self, envelope: Envelope, delay_seconds: int = 0, dead_letter: bool = False):
        destination = self.destination(dead_letter)
        delay_seconds = clamp_delay(delay_seconds)
        await self._publish(destination, QueuedMessage(envelope), delay_seconds)
        logger.debug("envelope_sent",
                     destination=destination,
                     handler_id=envelope.handler_id,
                     message_id=envelope.message_id,
                     retry_count=envelope.retry_count,
                     delay_seconds=delay_seconds)

    async def consume(
        self,
        destination: str,
        handler: Handler,
        consumer_group: str = "default",
        consumer_name: str = "",
        concurrency: int = 1,
    ):
        q = self._get_queue(destination)
        semaphore = asyncio.Semaphore(concurrency)
        in_flight: set[asyncio.Task] = set()
        self._consuming = True
        logger.info("consumer_started", destination=destination, concurrency=concurrency)

        try:
            while self._consuming:
                try:
                    message = await asyncio.wait_for(q.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                except asyncio.CancelledError:
                    break
                try:
                    await semaphore.acquire()
                except asyncio.CancelledError:
                    q.put_nowait(message)
                    break
                task = asyncio.create_task(self.deliver(destination, message, handler, semaphore))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        finally:
            # Interrupted deliveries put their message back before this returns
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def deliver(
        self,
        destination: str,
        message: QueuedMessage,
        handler: Handler,
        semaphore: asyncio.Semaphore = None,
    ) -> bool:
        """Hand one message to handler. Returns True if it was acknowledged."""
        try:
            await handler(message.envelope)
            return True
        except asyncio.CancelledError:
            # Stopped mid-delivery: not a failed receive, visible again immediately
            self._get_queue(destination).put_nowait(message)
            logger.warning("delivery_interrupted",
                           destination=destination,
                           message_id=message.envelope.message_id)
            raise
        except Exception as e:
            message.receive_count += 1
            next_destination, delay = self._next_after_failure(destination, message)
            if next_destination != destination:
                logger.warning("message_redriven_to_dead_letter",
                               message_id=message.envelope.message_id,
                               receives=message.receive_count)
                message = QueuedMessage(message.envelope)
            logger.warning("message_not_acknowledged",
                           destination=destination,
                           message_id=message.envelope.message_id,
                           receive_count=message.receive_count,
                           error=str(e))
            await self._publish(next_destination, message, delay)
            return False
        finally:
            if semaphore is not None:
                semaphore.release()

    async def receive(self, destination: str, handler: Handler) -> bool:
        """Deliver the next visible message on destination, if any. Returns False when empty."""
        q = self._get_queue(destination)
        if q.empty():
            return False
        await self.deliver(destination, q.get_nowait(), handler)
        return True

    async def check_destination(self, name: str) -> bool:
        self.resolver.remove_from_cache(name)
        return bool(self.resolver.resolve(name))

    async def queue_length(self, destination: str) -> int:
        return self._get_queue(destination).qsize()

    def delayed_count(self, destination: str = None) -> int:
        return sum(1 for _, dest, _ in self._delayed if destination is None or dest == destination)

    async def peek(self, destination: str, count: int = 10) -> list[Envelope]:
        q = self._get_queue(destination)
        items = []
        # asyncio.Queue has no peek: drain and re-add
        while not q.empty() and len(items) < count:
            items.append(q.get_nowait())
        for item in items:
            await q.put(item)
        return [item.envelope for item in items]

    async def promote_delayed(self, now: float = None):
        now = time.monotonic() if now is None else now
        ready = [(due, dest, msg) for due, dest, msg in self._delayed if due <= now]
        self._delayed = [(due, dest, msg) for due, dest, msg in self._delayed if due > now]

        for _, destination, message in ready:
            await self._get_queue(destination).put(message)

        if ready:
            logger.debug("delayed_envelopes_promoted", count=len(ready))

    async def _promote_loop(self):
        """Background loop to promote delayed envelopes."""
        while self._running:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self.promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────


def create_message_transport(settings=None, resolver: DestinationResolver = None) -> MessageTransport:
    """Factory: create the configured transport backend."""
    if settings is None:
        from config.settings import get_settings
        settings = get_settings()

    resolver = resolver or DestinationResolver(settings.resolve)
    t = settings.transport
    d = settings.dispatch

    if t.backend == "redis":
        return RedisMessageTransport(
            d.queue, d.deadletter, resolver,
            redis_url=t.redis_url,
            stream_prefix=t.stream_prefix,
            visibility_timeout=t.visibility_timeout,
            max_receive_count=t.max_receive_count,
            large_payload_threshold=t.large_payload_threshold,
            blob_ttl_seconds=t.blob_ttl_seconds,
            reclaim_interval=t.reclaim_interval,
        )

    return InMemoryMessageTransport(
        d.queue, d.deadletter, resolver,
        visibility_timeout=t.visibility_timeout,
        max_receive_count=t.max_receive_count,
        promote_interval=t.delayed_promote_interval,
    )
