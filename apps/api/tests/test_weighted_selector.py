import random
from collections import Counter

import pytest

from mysterybox_api.services.boxes.selector import WeightedCandidate, WeightedSelector


def _candidates(*weights):
    return [WeightedCandidate(key=f"c{index}", weight=weight) for index, weight in enumerate(weights)]


def test_selector_walks_cumulative_weights_in_order(sequence_random) -> None:
    source = sequence_random([0, 59, 60, 89, 90, 98, 99])
    selector = WeightedSelector(source)
    candidates = _candidates(60, 30, 9, 1)

    picks = [selector.select(candidates) for _ in range(7)]

    assert picks == ["c0", "c0", "c1", "c1", "c2", "c2", "c3"]
    assert source.calls == [100] * 7


def test_selector_never_picks_zero_weight_candidates(sequence_random) -> None:
    selector = WeightedSelector(sequence_random([0, 49, 50, 99]))
    candidates = _candidates(50, 0, 50, 0)

    picks = [selector.select(candidates) for _ in range(4)]

    assert picks == ["c0", "c0", "c2", "c2"]


def test_selector_normalizes_by_actual_total(sequence_random) -> None:
    source = sequence_random([2, 3])
    selector = WeightedSelector(source)
    candidates = _candidates(3, 1)

    assert selector.select(candidates) == "c0"
    assert selector.select(candidates) == "c1"
    assert source.calls == [4, 4]


def test_selector_rejects_tables_without_positive_weight() -> None:
    selector = WeightedSelector(random.Random(1))

    with pytest.raises(ValueError):
        selector.select([])
    with pytest.raises(ValueError):
        selector.select(_candidates(0, 0))


def test_selector_rejects_negative_weights() -> None:
    selector = WeightedSelector(random.Random(1))

    with pytest.raises(ValueError):
        selector.select(_candidates(50, -1, 51))


def test_selector_frequencies_match_weights() -> None:
    selector = WeightedSelector(random.Random(20240229))
    candidates = _candidates(60, 30, 9, 1)
    draws = 100_000

    counts = Counter(selector.select(candidates) for _ in range(draws))

    expected = {"c0": 0.60, "c1": 0.30, "c2": 0.09, "c3": 0.01}
    for key, share in expected.items():
        assert abs(counts[key] / draws - share) <= 0.015, (key, counts[key])
