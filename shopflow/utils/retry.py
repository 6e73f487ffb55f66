from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..contracts import Outcome, RetryPolicy, Success


class TransitionKind(str, Enum):
    ADVANCE = "advance"
    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True)
class Transition:
    """Next move for a step after one attempt."""

    kind: TransitionKind
    next_attempt: Optional[int] = None
    delay_s: float = 0.0

    @property
    def delay_ms(self) -> int:
        return int(round(self.delay_s * 1000))


def compute_backoff(policy: RetryPolicy, attempt: int) -> float:
    """Delay in seconds to wait after failed ``attempt`` (1-based)."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    delay_ms = policy.initial_backoff_ms * policy.backoff_multiplier ** (attempt - 1)
    return delay_ms / 1000.0


def decide(policy: RetryPolicy, attempt: int, outcome: Outcome) -> Transition:
    """Transition table for a step attempt.

    ========  ==========================  =========
    outcome   attempt                     result
    ========  ==========================  =========
    success   any                         advance
    failure   attempt < max_attempts      retry
    failure   attempt >= max_attempts     fail
    ========  ==========================  =========
    """
    if isinstance(outcome, Success):
        return Transition(TransitionKind.ADVANCE)
    if attempt < policy.max_attempts:
        return Transition(
            TransitionKind.RETRY,
            next_attempt=attempt + 1,
            delay_s=compute_backoff(policy, attempt),
        )
    return Transition(TransitionKind.FAIL)
