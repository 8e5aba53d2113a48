from __future__ import annotations

import math
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from open_llm_mux.candidates import Candidate


@dataclass(frozen=True, slots=True)
class SelectionContext:
    candidates: tuple[Candidate, ...]
    attempt: int
    last_index: int | None


SelectionStrategy = Callable[[SelectionContext], Any]
StrategyName = Literal["round_robin", "random"]

_STRATEGY_ALIASES = {
    "round_robin": "round_robin",
    "roundrobin": "round_robin",
    "round-robin": "round_robin",
    "random": "random",
}


class RoundRobinStrategy:
    """Cycles through candidates starting from a random offset.

    The offset is drawn once per strategy instance, on first use, so that
    independent routers over the same candidates do not all hammer index 0.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()
        self._cursor = 0
        self._seeded = False

    def __call__(self, context: SelectionContext) -> int:
        length = len(context.candidates)
        if not self._seeded:
            self._cursor = self._rng.randrange(length)
            self._seeded = True
        pick = self._cursor % length
        self._cursor = (self._cursor + 1) % length
        return pick


class RandomStrategy:
    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def __call__(self, context: SelectionContext) -> int:
        return self._rng.randrange(len(context.candidates))


def round_robin_strategy(rng: random.Random | None = None) -> RoundRobinStrategy:
    return RoundRobinStrategy(rng=rng)


def random_strategy(rng: random.Random | None = None) -> RandomStrategy:
    return RandomStrategy(rng=rng)


def resolve_strategy(
    strategy: SelectionStrategy | StrategyName | str | None,
) -> SelectionStrategy:
    if strategy is None:
        return round_robin_strategy()
    if isinstance(strategy, str):
        normalized = _STRATEGY_ALIASES.get(strategy.strip().lower())
        if normalized == "round_robin":
            return round_robin_strategy()
        if normalized == "random":
            return random_strategy()
        raise ValueError(
            f"Unknown selection strategy '{strategy}'. "
            "Use 'round_robin', 'random' or a callable."
        )
    if not callable(strategy):
        raise ValueError("Selection strategy must be a name or a callable.")
    return strategy


def normalize_index(choice: Any, length: int) -> int:
    if isinstance(choice, bool) or not isinstance(choice, (int, float)):
        numeric = 0
    elif isinstance(choice, float):
        numeric = math.trunc(choice) if math.isfinite(choice) else 0
    else:
        numeric = choice
    return ((numeric % length) + length) % length


def trial_order(start_index: int, length: int) -> list[int]:
    return [(start_index + offset) % length for offset in range(length)]


__all__ = [
    "RandomStrategy",
    "RoundRobinStrategy",
    "SelectionContext",
    "SelectionStrategy",
    "StrategyName",
    "normalize_index",
    "random_strategy",
    "resolve_strategy",
    "round_robin_strategy",
    "trial_order",
]
