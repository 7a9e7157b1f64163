"""Tests for the envelope and retry decision models."""
from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from models.schemas import Durability, Envelope, RetryAction, RetryDecision


class TestEnvelope:
    def test_defaults(self):
        env = Envelope(handler_id="reports.rollup")
        assert env.payload == "[]"
        assert env.durability == Durability.TRANSIENT
        assert env.retry_count == 0
        assert env.message_id.startswith("msg_")
        assert env.created_at

    def test_message_ids_are_unique(self):
        ids = {Envelope(handler_id="x").message_id for _ in range(50)}
        assert len(ids) == 50

    def test_created_at_is_timezone_aware_utc(self):
        created = datetime.fromisoformat(Envelope(handler_id="x").created_at)
        assert created.utcoffset() == timedelta(0)

    def test_next_retry_keeps_identity(self):
        env = Envelope(handler_id="billing.recalculate", payload='["acct-1"]', durability=Durability.JOURNAL)
        retried = env.next_retry()
        assert retried.retry_count == 1
        assert retried.message_id == env.message_id
        assert retried.handler_id == env.handler_id
        assert retried.payload == env.payload
        assert retried.durability == Durability.JOURNAL
        # original untouched
        assert env.retry_count == 0

    def test_envelope_is_immutable(self):
        env = Envelope(handler_id="x")
        with pytest.raises(ValidationError):
            env.retry_count = 5

    def test_negative_retry_count_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(handler_id="x", retry_count=-1)

    def test_json_wire_format(self):
        env = Envelope(handler_id="x", payload='[1, "a"]', durability=Durability.JOURNAL, retry_count=3)
        data = env.to_json()
        assert '"durability":"journal"' in data
        assert Envelope.from_json(data) == env

    def test_is_journal(self):
        assert Envelope(handler_id="x", durability=Durability.JOURNAL).is_journal
        assert not Envelope(handler_id="x").is_journal


class TestRetryDecision:
    def test_retry_carries_envelope_and_delay(self):
        env = Envelope(handler_id="x").next_retry()
        decision = RetryDecision.retry(env, 17)
        assert decision.action == RetryAction.RETRY
        assert decision.envelope.retry_count == 1
        assert decision.delay_seconds == 17

    def test_discard_and_escalate_have_no_envelope(self):
        assert RetryDecision.discard().envelope is None
        assert RetryDecision.escalate().action == RetryAction.ESCALATE
