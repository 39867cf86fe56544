"""Process-wide token and cost accounting with a fatal admission check."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .models.llm_client import TokenUsage

if TYPE_CHECKING:
    from .config import BudgetConfig

LOGGER = logging.getLogger(__name__)


class BudgetExceededError(RuntimeError):
    """Raised when cumulative token usage or cost crosses a configured ceiling."""

    def __init__(self, message: str, *, state: "BudgetState") -> None:
        super().__init__(message)
        self.state = state


@dataclass(frozen=True, slots=True)
class BudgetState:
    """Immutable snapshot of the counters held by :class:`BudgetGuard`."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_gbp: float = 0.0
    calls: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class BudgetGuard:
    """Thread-safe accumulator shared by every concurrent agent session.

    Counters only ever grow. ``record`` is called after each billable model
    call; ``check`` is the admission test that callers run at the iteration
    boundary and that raises :class:`BudgetExceededError` once a ceiling is
    crossed.
    """

    def __init__(
        self,
        *,
        max_total_tokens: int | None = None,
        max_cost_gbp: float | None = None,
        prompt_price_per_1k: float = 0.0,
        completion_price_per_1k: float = 0.0,
    ) -> None:
        self._max_total_tokens = max_total_tokens
        self._max_cost_gbp = max_cost_gbp
        self._prompt_price = max(prompt_price_per_1k, 0.0)
        self._completion_price = max(completion_price_per_1k, 0.0)
        self._lock = threading.Lock()
        self._state = BudgetState()

    @classmethod
    def from_config(cls, config: "BudgetConfig") -> "BudgetGuard":
        return cls(
            max_total_tokens=config.max_total_tokens,
            max_cost_gbp=config.max_cost_gbp,
            prompt_price_per_1k=config.prompt_price_per_1k,
            completion_price_per_1k=config.completion_price_per_1k,
        )

    def record(self, usage: TokenUsage) -> BudgetState:
        """Add ``usage`` to the running totals and return the new snapshot."""
        prompt = max(int(usage.prompt_tokens), 0)
        completion = max(int(usage.completion_tokens), 0)
        cost = (prompt / 1000.0) * self._prompt_price + (completion / 1000.0) * self._completion_price
        with self._lock:
            current = self._state
            self._state = BudgetState(
                prompt_tokens=current.prompt_tokens + prompt,
                completion_tokens=current.completion_tokens + completion,
                cost_gbp=current.cost_gbp + cost,
                calls=current.calls + 1,
            )
            return self._state

    def state(self) -> BudgetState:
        with self._lock:
            return self._state

    def breach(self) -> str | None:
        """Return a description of the crossed ceiling, or ``None``."""
        state = self.state()
        if self._max_total_tokens is not None and state.total_tokens > self._max_total_tokens:
            return f"token budget exceeded: {state.total_tokens} > {self._max_total_tokens}"
        if self._max_cost_gbp is not None and state.cost_gbp > self._max_cost_gbp:
            return f"cost budget exceeded: £{state.cost_gbp:.4f} > £{self._max_cost_gbp:.4f}"
        return None

    @property
    def exceeded(self) -> bool:
        return self.breach() is not None

    def check(self) -> BudgetState:
        """Raise :class:`BudgetExceededError` when any ceiling has been crossed."""
        state = self.state()
        reason = self.breach()
        if reason is not None:
            LOGGER.error("Budget check failed: %s", reason)
            raise BudgetExceededError(reason, state=state)
        return state


__all__ = ["BudgetExceededError", "BudgetGuard", "BudgetState"]
