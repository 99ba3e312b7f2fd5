from __future__ import annotations

from abc import ABC, abstractmethod

from .models import ConcurrencyState


class ControlStrategy(ABC):
    """Abstract base class for adaptive concurrency strategies.

    Each strategy inspects the scheduler's outcome window and decides
    whether to move the current concurrency."""

    @abstractmethod
    def should_apply(self, state: ConcurrencyState) -> bool:
        """Return True if this strategy should be activated for the current window."""
        raise NotImplementedError

    @abstractmethod
    def apply(self, state: ConcurrencyState) -> None:
        """Execute the strategy's adjustment on the state."""
        raise NotImplementedError


class ReduceConcurrencyStrategy(ControlStrategy):
    """Drops concurrency by one while the failure rate is at or above the shrink threshold."""

    def should_apply(self, state: ConcurrencyState) -> bool:
        if not state.has_enough_samples:
            return False
        return state.failure_rate >= state.shrink_threshold and state.current > state.minimum

    def apply(self, state: ConcurrencyState) -> None:
        """Decrease the concurrency limit by one, respecting the minimum."""
        state.set_current(max(state.minimum, state.current - 1))


class IncreaseConcurrencyStrategy(ControlStrategy):
    """Restores concurrency by one, up to the initial value, once failures settle below the grow threshold."""

    def should_apply(self, state: ConcurrencyState) -> bool:
        if not state.has_enough_samples:
            return False
        return state.failure_rate < state.grow_threshold and state.current < state.initial

    def apply(self, state: ConcurrencyState) -> None:
        """Increase the concurrency limit by one, respecting the initial value."""
        state.set_current(min(state.initial, state.current + 1))


def default_strategies() -> list[ControlStrategy]:
    return [ReduceConcurrencyStrategy(), IncreaseConcurrencyStrategy()]
