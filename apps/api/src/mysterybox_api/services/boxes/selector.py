"""Weighted random selection over integer probability tables."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Generic, Hashable, Protocol, Sequence, TypeVar

KeyT = TypeVar("KeyT", bound=Hashable)


class RandomSource(Protocol):
    """Uniform integer source; ``random.Random`` satisfies it."""

    def randrange(self, stop: int) -> int:  # pragma: no cover - protocol
        ...


@dataclass(frozen=True, slots=True)
class WeightedCandidate(Generic[KeyT]):
    key: KeyT
    weight: int


class WeightedSelector:
    """Draw one candidate with probability proportional to its weight.

    Candidates are walked in the order given; callers pass them in a stable
    order (catalog queries sort by an explicit key). Zero-weight candidates
    are never selectable. The total is taken from the actual weights, so a
    table that does not sum to 100 is still drawn proportionally.
    """

    def __init__(self, random_source: RandomSource | None = None) -> None:
        self._random = random_source or random.Random()

    def select(self, candidates: Sequence[WeightedCandidate[KeyT]]) -> KeyT:
        eligible: list[WeightedCandidate[KeyT]] = []
        for candidate in candidates:
            if candidate.weight < 0:
                raise ValueError(f"Negative weight for candidate {candidate.key!r}")
            if candidate.weight > 0:
                eligible.append(candidate)

        total = sum(candidate.weight for candidate in eligible)
        if total <= 0:
            raise ValueError("No candidate with a positive weight")

        draw = self._random.randrange(total)
        if not 0 <= draw < total:
            raise ValueError(f"Random source returned {draw} outside [0, {total})")

        running = 0
        for candidate in eligible:
            running += candidate.weight
            if draw < running:
                return candidate.key

        raise AssertionError("unreachable: cumulative weight did not exceed draw")  # pragma: no cover


__all__ = ["RandomSource", "WeightedCandidate", "WeightedSelector"]
