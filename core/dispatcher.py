"""
Dispatcher — turns a handler call into queued work.

Decision order for dispatch(handler_id, *args):
  1. The call is the handler currently being processed in this context
     recursing into itself → run it inline and return its result.
  2. Dispatch is disabled (tests, local runs) → run it now, through the
     same process() path a worker uses, retries included.
  3. Otherwise build an Envelope and send it. JOURNAL sends are awaited so
     the caller sees persistence failures; TRANSIENT sends go to the
     bounded SenderPool and never block the caller.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from core.context import ReentrancyGuard
from core.delay import DelayResolver, DelaySpec, MAX_DELAY_SECONDS
from core.exceptions import RetryBudgetExhausted, RetrySignal
from core.invoker import Invoker
from core.registry import HandlerRegistry
from core.retry import RetryPolicy
from core.sender import SenderPool
from core.serialization import ArgumentSerializer
from job_queue.message_queue import MessageTransport
from models.schemas import Durability, Envelope, RetryAction

logger = structlog.get_logger()


class Dispatcher:

    def __init__(
        self,
        registry: HandlerRegistry,
        transport: MessageTransport,
        enabled: bool = True,
        scheduler_enabled: bool = True,
        max_random_delay: int = MAX_DELAY_SECONDS,
        sender_pool_size: int = 32,
        sender_queue_size: int = 10000,
        resolve_placeholders=None,
        serializer: ArgumentSerializer = None,
        guard: ReentrancyGuard = None,
        retry_policy: RetryPolicy = None,
    ):
        self.registry = registry
        self.transport = transport
        self.enabled = enabled
        self._scheduler_enabled = scheduler_enabled
        self.max_random_delay = max_random_delay
        self.invoker = Invoker(registry)
        self.serializer = serializer or ArgumentSerializer()
        self.guard = guard or ReentrancyGuard()
        self.delays = DelayResolver(max_random_delay, resolve_placeholders)
        self.retry_policy = retry_policy or RetryPolicy(max_delay=max_random_delay)
        self.senders = SenderPool(self._send_transient, size=sender_pool_size, max_pending=sender_queue_size)

    @classmethod
    def from_settings(cls, settings, registry: HandlerRegistry, transport: MessageTransport) -> Dispatcher:
        d = settings.dispatch
        return cls(
            registry,
            transport,
            enabled=d.enabled,
            scheduler_enabled=d.scheduler_enabled,
            max_random_delay=d.max_random_delay,
            sender_pool_size=d.sender_pool_size,
            sender_queue_size=d.sender_queue_size,
            resolve_placeholders=settings.resolve,
        )

    @property
    def scheduler_enabled(self) -> bool:
        """True if scheduled jobs produce messages in this process."""
        return self._scheduler_enabled

    def is_processing(self) -> bool:
        """True while a dispatched call is executing in the current context."""
        return self.guard.is_active()

    # ── Dispatch ──────────────────────────────────────

    async def dispatch(
        self,
        handler_id: str,
        *args: Any,
        durability: Optional[Durability] = None,
        delay: DelaySpec = None,
    ) -> Any:
        """
        Queue handler_id(*args) for execution by a worker.

        durability and delay default to the handler's registration. Returns
        None unless the call re-enters the handler being processed, in which
        case the handler's own result is returned.
        """
        registration = self.registry.get(handler_id)

        if self.guard.is_reentrant(handler_id):
            logger.debug("dispatch_passthrough", handler_id=handler_id)
            return await self.invoker.invoke(handler_id, args)

        envelope = Envelope(
            handler_id=handler_id,
            payload=self.serializer.serialize(args),
            durability=durability or registration.durability,
        )

        if not self.enabled:
            logger.debug("dispatch_executing_inline",
                         handler_id=handler_id,
                         arg_types=[type(a).__name__ for a in args],
                         reason="dispatch disabled")
            await self.process(envelope)
            return None

        delay_seconds = self.delays.resolve(registration.delay if delay is None else delay)
        logger.debug("dispatch_queuing",
                     handler_id=handler_id,
                     message_id=envelope.message_id,
                     durability=envelope.durability.value,
                     delay_seconds=delay_seconds,
                     arg_types=[type(a).__name__ for a in args])

        if envelope.durability == Durability.JOURNAL:
            # Must be persisted before returning so the caller sees a failed enqueue
            await self.send(envelope, delay_seconds)
        else:
            self.senders.submit(envelope, delay_seconds)
        return None

    async def send(self, envelope: Envelope, delay_seconds: int = 0, dead_letter: bool = False):
        await self.transport.send(envelope, delay_seconds=delay_seconds, dead_letter=dead_letter)

    async def _send_transient(self, envelope: Envelope, delay_seconds: int):
        await self.send(envelope, delay_seconds)

    # ── Execution ─────────────────────────────────────

    async def execute(self, envelope: Envelope) -> Any:
        """Run the envelope's handler with the execution context marked."""
        with self.guard.executing(envelope.handler_id):
            logger.debug("dispatch_executing",
                         handler_id=envelope.handler_id,
                         message_id=envelope.message_id,
                         retry_count=envelope.retry_count)
            args = self.serializer.deserialize(envelope.payload)
            return await self.invoker.invoke(envelope.handler_id, args)

    async def process(self, envelope: Envelope):
        """
        Execute one envelope the way a worker handles the primary queue.

        Any failure goes through the retry policy. Returning normally
        acknowledges the message; RetryBudgetExhausted leaves it to the
        transport's redelivery and dead-letter redrive.
        """
        try:
            await self.execute(envelope)
        except Exception as e:
            self._log_failure(envelope, e, dead_letter=False)
            await self.retry(envelope, e, dead_letter=False)

    async def retry(self, envelope: Envelope, error: Exception, dead_letter: bool = False):
        """Apply the retry policy to a failed envelope: resend, discard or escalate."""
        decision = self.retry_policy.on_failure(envelope, from_dead_letter=dead_letter)

        if decision.action == RetryAction.RETRY:
            logger.info("dispatch_retry_scheduled",
                        handler_id=envelope.handler_id,
                        message_id=envelope.message_id,
                        retry_count=decision.envelope.retry_count,
                        delay_seconds=decision.delay_seconds,
                        dead_letter=dead_letter,
                        reason=str(error))
            await self.send(decision.envelope, decision.delay_seconds, dead_letter=dead_letter)

        elif decision.action == RetryAction.DISCARD:
            logger.warning("transient_message_discarded",
                           handler_id=envelope.handler_id,
                           message_id=envelope.message_id,
                           max_retries=self.retry_policy.max_retry_count,
                           reason=str(error))

        else:
            raise RetryBudgetExhausted(
                f"Message {envelope.message_id} for {envelope.handler_id} reached the maximum "
                f"number of retries ({self.retry_policy.max_retry_count}) and will be dead lettered",
                message_id=envelope.message_id,
            ) from error

    def _log_failure(self, envelope: Envelope, error: Exception, dead_letter: bool):
        fields = dict(handler_id=envelope.handler_id,
                      message_id=envelope.message_id,
                      retry_count=envelope.retry_count,
                      dead_letter=dead_letter,
                      error=str(error))
        if isinstance(error, RetrySignal):
            logger.info("dispatch_retry_requested", **fields)
        else:
            logger.error("dispatch_handler_failed", exc_info=True, **fields)

    # ── Status ────────────────────────────────────────

    async def get_status(self) -> bool:
        """True if both the primary and dead-letter destinations resolve."""
        try:
            return (await self.transport.check_destination(self.transport.queue_name)
                    and await self.transport.check_destination(self.transport.deadletter_name))
        except Exception as e:
            logger.warning("dispatch_status_check_failed", error=str(e))
            return False

    async def close(self):
        await self.senders.stop()
