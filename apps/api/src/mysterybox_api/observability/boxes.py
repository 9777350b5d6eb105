from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class BoxSnapshot:
    purchases: Dict[str, Dict[str, int]]
    opens: Dict[str, Dict[str, int]]
    failures: Dict[str, int]
    conflict_retries: Dict[str, int]
    sweeps: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "purchases": {key: dict(value) for key, value in self.purchases.items()},
            "opens": {key: dict(value) for key, value in self.opens.items()},
            "failures": dict(self.failures),
            "conflict_retries": dict(self.conflict_retries),
            "sweeps": dict(self.sweeps),
        }


class BoxObservabilityStore:
    """Collect box economy counters for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._purchases_by_tier: Dict[str, int] = defaultdict(int)
        self._purchases_by_rarity: Dict[str, int] = defaultdict(int)
        self._opens_by_rarity: Dict[str, int] = defaultdict(int)
        self._opens_by_reward_type: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)
        self._conflict_retries: Dict[str, int] = defaultdict(int)
        self._sweeps: Dict[str, int] = defaultdict(int)

    def record_purchase(self, tier: int, rarity_code: str) -> None:
        with self._lock:
            self._purchases_by_tier[f"tier:{tier}"] += 1
            self._purchases_by_rarity[rarity_code] += 1

    def record_open(self, rarity_code: str, reward_type: str) -> None:
        with self._lock:
            self._opens_by_rarity[rarity_code] += 1
            self._opens_by_reward_type[reward_type] += 1

    def record_failure(self, operation: str, code: str) -> None:
        with self._lock:
            self._failures[f"{operation}:{code}"] += 1

    def record_conflict_retry(self, operation: str) -> None:
        with self._lock:
            self._conflict_retries[operation] += 1

    def record_sweep(self, *, expired: int, failed: int) -> None:
        with self._lock:
            self._sweeps["runs"] += 1
            self._sweeps["expired"] += expired
            self._sweeps["failed"] += failed

    def snapshot(self) -> BoxSnapshot:
        with self._lock:
            return BoxSnapshot(
                purchases={
                    "by_tier": dict(self._purchases_by_tier),
                    "by_rarity": dict(self._purchases_by_rarity),
                },
                opens={
                    "by_rarity": dict(self._opens_by_rarity),
                    "by_reward_type": dict(self._opens_by_reward_type),
                },
                failures=dict(self._failures),
                conflict_retries=dict(self._conflict_retries),
                sweeps=dict(self._sweeps),
            )

    def reset(self) -> None:
        with self._lock:
            self._purchases_by_tier.clear()
            self._purchases_by_rarity.clear()
            self._opens_by_rarity.clear()
            self._opens_by_reward_type.clear()
            self._failures.clear()
            self._conflict_retries.clear()
            self._sweeps.clear()


_STORE = BoxObservabilityStore()


def get_box_store() -> BoxObservabilityStore:
    return _STORE


__all__ = ["get_box_store", "BoxObservabilityStore", "BoxSnapshot"]
