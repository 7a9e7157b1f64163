"""
Core data models for distributed dispatch.
These are the types shared between the dispatcher, the retry policy,
the transports and the worker loop.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Durability(str, Enum):
    JOURNAL = "journal"        # must execute at least once, retried indefinitely
    TRANSIENT = "transient"    # best-effort, discarded after the retry budget


class RetryAction(str, Enum):
    RETRY = "retry"
    DISCARD = "discard"
    ESCALATE = "escalate"


# ──────────────────────────────────────────────────────────────
#  Envelope, the unit of work on the queue
# ──────────────────────────────────────────────────────────────

class Envelope(BaseModel):
    """
    A serialized handler call.

    The payload holds the JSON of the argument list. It stays serialized so
    that transient messages whose arguments no longer deserialize can still
    be discarded by the dead-letter consumer without touching them.
    """
    model_config = ConfigDict(frozen=True)

    handler_id: str
    payload: str = "[]"
    durability: Durability = Durability.TRANSIENT
    retry_count: int = Field(default=0, ge=0)
    message_id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    created_at: str = Field(default_factory=lambda: _utcnow().isoformat())

    def next_retry(self) -> Envelope:
        """Copy with retry_count + 1; identity, target and durability are kept."""
        return self.model_copy(update={"retry_count": self.retry_count + 1})

    @property
    def is_journal(self) -> bool:
        return self.durability == Durability.JOURNAL

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> Envelope:
        return cls.model_validate_json(data)


# ──────────────────────────────────────────────────────────────
#  Retry decision
# ──────────────────────────────────────────────────────────────

class RetryDecision(BaseModel):
    """Outcome of a failed delivery attempt."""
    model_config = ConfigDict(frozen=True)

    action: RetryAction
    envelope: Optional[Envelope] = None     # set for RETRY
    delay_seconds: int = 0

    @classmethod
    def retry(cls, envelope: Envelope, delay_seconds: int) -> RetryDecision:
        return cls(action=RetryAction.RETRY, envelope=envelope, delay_seconds=delay_seconds)

    @classmethod
    def discard(cls) -> RetryDecision:
        return cls(action=RetryAction.DISCARD)

    @classmethod
    def escalate(cls) -> RetryDecision:
        return cls(action=RetryAction.ESCALATE)
