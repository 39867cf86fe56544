from __future__ import annotations

import threading

import pytest

from patchloop.budget import BudgetExceededError, BudgetGuard
from patchloop.config import BudgetConfig
from patchloop.models.llm_client import TokenUsage


def test_record_accumulates_tokens_and_cost() -> None:
    guard = BudgetGuard(prompt_price_per_1k=1.0, completion_price_per_1k=2.0)

    guard.record(TokenUsage(prompt_tokens=1000, completion_tokens=500))
    state = guard.record(TokenUsage(prompt_tokens=500, completion_tokens=0))

    assert state.prompt_tokens == 1500
    assert state.completion_tokens == 500
    assert state.total_tokens == 2000
    assert state.calls == 2
    assert state.cost_gbp == pytest.approx(2.5)


def test_check_raises_once_token_ceiling_is_crossed() -> None:
    guard = BudgetGuard(max_total_tokens=100)
    guard.record(TokenUsage(prompt_tokens=60, completion_tokens=40))
    assert guard.check().total_tokens == 100
    assert not guard.exceeded

    guard.record(TokenUsage(prompt_tokens=1))

    assert guard.exceeded
    with pytest.raises(BudgetExceededError) as excinfo:
        guard.check()
    assert excinfo.value.state.total_tokens == 101
    assert "token budget" in str(excinfo.value)


def test_cost_ceiling_is_enforced_independently() -> None:
    guard = BudgetGuard(max_cost_gbp=0.01, prompt_price_per_1k=1.0)
    guard.record(TokenUsage(prompt_tokens=20))

    assert guard.breach() is not None
    assert "cost budget" in guard.breach()


def test_negative_usage_never_decreases_counters() -> None:
    guard = BudgetGuard()
    guard.record(TokenUsage(prompt_tokens=10, completion_tokens=5))
    state = guard.record(TokenUsage(prompt_tokens=-50, completion_tokens=-50))

    assert state.total_tokens == 15


def test_concurrent_records_are_not_lost() -> None:
    guard = BudgetGuard()

    def worker() -> None:
        for _ in range(200):
            guard.record(TokenUsage(prompt_tokens=1, completion_tokens=1))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    state = guard.state()
    assert state.calls == 1600
    assert state.total_tokens == 3200


def test_from_config_uses_configured_limits() -> None:
    guard = BudgetGuard.from_config(BudgetConfig(max_total_tokens=5, max_cost_gbp=None))
    guard.record(TokenUsage(prompt_tokens=6))

    assert guard.exceeded
