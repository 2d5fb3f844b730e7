from __future__ import annotations

import pytest

from promptdj.config import ReconnectState
from promptdj.reconnect import ReconnectPolicy


def test_backoff_doubles_from_base_delay() -> None:
    policy = ReconnectPolicy(max_retries=5, base_delay=1.0)

    delays = [policy.backoff(count) for count in range(5)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert policy.backoff(5) is None


def test_backoff_rejects_negative_count() -> None:
    with pytest.raises(ValueError):
        ReconnectPolicy().backoff(-1)


def test_decide_schedules_next_attempt() -> None:
    policy = ReconnectPolicy(max_retries=3, base_delay=0.5)

    decision = policy.decide(ReconnectState(retry_count=2))

    assert decision.should_retry
    assert decision.attempt == 3
    assert decision.max_attempts == 3
    assert decision.delay == pytest.approx(2.0)


def test_decide_is_pending_while_reconnecting() -> None:
    policy = ReconnectPolicy()

    decision = policy.decide(ReconnectState(retry_count=1, is_reconnecting=True))

    assert decision.action == "pending"
    assert not decision.should_retry


def test_decide_reports_exhaustion() -> None:
    policy = ReconnectPolicy(max_retries=2)

    assert policy.decide(ReconnectState(retry_count=2)).action == "exhausted"
    assert ReconnectPolicy(max_retries=0).decide(ReconnectState()).action == "exhausted"
