"""
FastAPI Application — worker process bootstrap and operational endpoints.

Provides:
- Process lifespan: transport connection, primary + dead-letter consumers,
  delayed-message promoter and the scheduler bridge
- Health and status checks for the queue destinations
- Queue depth stats (dead-letter depth is the operator signal)
- Manual dispatch endpoint for operators
"""
from __future__ import annotations

import importlib
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from config.settings import get_settings
from core.dispatcher import Dispatcher
from core.exceptions import ConfigurationError, HandlerNotFound, InvocationFailure, SendFailure
from core.registry import HandlerRegistry
from core.scheduler import SchedulerBridge
from job_queue.consumer import DelayedMessagePromoter, DispatchConsumer
from job_queue.message_queue import create_message_transport
from models.schemas import Durability

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()

registry = HandlerRegistry()
transport = create_message_transport(_settings_boot)
dispatcher = Dispatcher.from_settings(_settings_boot, registry, transport)
scheduler = SchedulerBridge(dispatcher, resolve_placeholders=_settings_boot.resolve)

dispatch_consumer = DispatchConsumer(
    dispatcher, transport,
    consumer_group=_settings_boot.transport.consumer_group,
    concurrency=_settings_boot.dispatch.consumer_concurrency,
    dead_letter_backoff=(_settings_boot.dispatch.dead_letter_backoff_min,
                         _settings_boot.dispatch.dead_letter_backoff_max),
)
delayed_promoter = DelayedMessagePromoter(
    transport,
    interval_seconds=_settings_boot.transport.delayed_promote_interval,
)


def load_handler_modules(module_names: list[str]) -> int:
    """Import each module and let it register handlers and scheduled jobs."""
    loaded = 0
    for name in module_names:
        module = importlib.import_module(name)
        register = getattr(module, "register_handlers", None)
        if register is None:
            raise ConfigurationError(f"Handler module '{name}' has no register_handlers(registry, scheduler)")
        register(registry, scheduler)
        loaded += 1
    return loaded


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    modules = load_handler_modules(settings.dispatch.handler_modules)

    await transport.connect()
    await dispatch_consumer.start_background()
    if settings.transport.backend == "redis":
        # The in-memory transport promotes delayed messages itself
        await delayed_promoter.start_background()
    await scheduler.start()

    logger.info("dispatch_worker_started",
                handlers=len(registry.list_handlers()),
                handler_modules=modules,
                dispatch_enabled=dispatcher.enabled,
                scheduler_enabled=dispatcher.scheduler_enabled,
                transport=type(transport).__name__)
    yield

    await scheduler.stop()
    await dispatch_consumer.stop()
    await delayed_promoter.stop()
    await dispatcher.close()
    await transport.close()
    logger.info("dispatch_worker_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Distributed Dispatch",
    description="Queued handler execution with retry, backoff and dead-lettering",
    version="1.0.0",
    lifespan=lifespan,
)


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class DispatchRequest(BaseModel):
    handler_id: str
    args: list[Any] = []
    durability: Optional[Durability] = None
    delay: Optional[str] = None


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    queues_ok = await dispatcher.get_status()
    return {
        "status": "healthy" if queues_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "queues_resolvable": queues_ok,
        "consumer_running": dispatch_consumer.running,
        "dispatch_enabled": dispatcher.enabled,
        "scheduler_enabled": dispatcher.scheduler_enabled,
    }


@app.get("/api/v1/dispatch/status")
async def dispatch_status():
    return {"status": await dispatcher.get_status()}


@app.get("/api/v1/handlers")
async def list_handlers():
    handlers = []
    for handler_id in registry.list_handlers():
        reg = registry.get(handler_id)
        handlers.append({
            "handler_id": handler_id,
            "durability": reg.durability.value,
            "delay": reg.delay,
            "description": reg.description,
        })
    return {"handlers": handlers, "scheduled": [job.handler_id for job in scheduler.jobs]}


# ══════════════════════════════════════════════════════════════
#  QUEUE
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/queue/stats")
async def queue_stats():
    primary = transport.destination(dead_letter=False)
    dead_letter = transport.destination(dead_letter=True)
    return {
        "queue": primary,
        "queue_depth": await transport.queue_length(primary),
        "deadletter": dead_letter,
        "deadletter_depth": await transport.queue_length(dead_letter),
        "pending_transient_sends": dispatcher.senders.pending,
        "consumer_running": dispatch_consumer.running,
    }


@app.post("/api/v1/dispatch")
async def dispatch(req: DispatchRequest):
    try:
        await dispatcher.dispatch(req.handler_id, *req.args, durability=req.durability, delay=req.delay)
    except HandlerNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InvocationFailure, ConfigurationError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SendFailure as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"status": "dispatched", "handler_id": req.handler_id}


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
