"""Per-iteration focus strings that steer each builder worker."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

_GENERIC_FOCUS = (
    "Fix the failing tests with the smallest correct change to the code under test.",
    "Find the root cause in the implementation rather than changing test expectations.",
    "Check edge cases: empty inputs, None values, boundary indices and off-by-one errors.",
    "Review recently changed files for regressions and restore the intended behaviour.",
)

BUG_HUNT_FOCUS = (
    "Bug hunt: read the most-used module and fix one latent defect; add a regression test for it."
)
STABILITY_FOCUS = (
    "Stability pass: make flaky or order-dependent tests deterministic without skipping them."
)


@dataclass(slots=True)
class HypothesisInputs:
    iteration: int
    failing_tests: Sequence[str] = ()
    build_error: Optional[str] = None
    suggestion: Optional[str] = None
    coverage_gaps: Sequence[str] = ()
    attempted: Sequence[str] = field(default_factory=tuple)


class HypothesisGenerator:
    """Produce exactly ``count`` hypotheses, preferring ones not yet attempted."""

    def __init__(self, count: int = 3, *, bug_hunt_every: int = 5, stability_every: int = 0) -> None:
        if count < 1:
            raise ValueError("count must be at least 1")
        self.count = count
        self.bug_hunt_every = bug_hunt_every
        self.stability_every = stability_every

    def candidates(self, inputs: HypothesisInputs) -> List[str]:
        """All hypotheses for ``inputs`` in preference order, without duplicates."""
        ordered: list[str] = []
        for name in inputs.failing_tests[: self.count]:
            ordered.append(f"Make the failing test {name} pass without weakening its assertions.")
        if len(inputs.failing_tests) > 1:
            ordered.append(
                f"Find one shared cause behind the {len(inputs.failing_tests)} failing tests and fix it once."
            )
        if inputs.build_error:
            first_line = next((line.strip() for line in inputs.build_error.splitlines() if line.strip()), "")
            ordered.append(f"Fix the build error first: {first_line[:200]}")
        if inputs.suggestion:
            ordered.append(inputs.suggestion.strip())
        if _every(inputs.iteration, self.bug_hunt_every):
            ordered.append(BUG_HUNT_FOCUS)
        if _every(inputs.iteration, self.stability_every):
            ordered.append(STABILITY_FOCUS)
        for path in inputs.coverage_gaps[: self.count]:
            ordered.append(f"Add focused tests for the uncovered lines in {path}.")
        ordered.extend(_GENERIC_FOCUS)
        return list(dict.fromkeys(item for item in ordered if item))

    def generate(self, inputs: HypothesisInputs) -> List[str]:
        candidates = self.candidates(inputs)
        attempted = set(inputs.attempted)
        fresh = [item for item in candidates if item not in attempted]
        stale = [item for item in candidates if item in attempted]
        chosen = (fresh + stale)[: self.count]
        round_number = 2
        while len(chosen) < self.count:
            base = candidates[(len(chosen)) % len(candidates)]
            chosen.append(f"{base} (alternative approach {round_number})")
            round_number += 1
        return chosen


def _every(iteration: int, period: int) -> bool:
    return period > 0 and iteration > 0 and iteration % period == 0


__all__ = ["BUG_HUNT_FOCUS", "HypothesisGenerator", "HypothesisInputs", "STABILITY_FOCUS"]
