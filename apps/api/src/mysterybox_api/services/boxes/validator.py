"""Probability table consistency checks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable
from uuid import UUID

from mysterybox_api.services.boxes.catalog import CatalogStore

REQUIRED_TOTAL = 100


@dataclass(frozen=True, slots=True)
class ProbabilitySums:
    """Sums of active real/display weights for one table."""

    real_sum: int
    display_sum: int
    active_count: int
    required: bool = True

    @property
    def ok(self) -> bool:
        if self.active_count == 0:
            return not self.required
        return self.real_sum == REQUIRED_TOTAL and self.display_sum == REQUIRED_TOTAL

    def as_dict(self) -> dict[str, object]:
        return {
            "real_sum": self.real_sum,
            "display_sum": self.display_sum,
            "active_count": self.active_count,
            "ok": self.ok,
        }


def summarize(weights: Iterable[tuple[int, int]], *, required: bool = True) -> ProbabilitySums:
    """Sum ``(real, display)`` pairs of active rows."""

    real_sum = 0
    display_sum = 0
    count = 0
    for real, display in weights:
        real_sum += int(real)
        display_sum += int(display)
        count += 1
    return ProbabilitySums(real_sum=real_sum, display_sum=display_sum, active_count=count, required=required)


class ProbabilityValidator:
    """Check that active probabilities of a table sum to exactly 100."""

    def __init__(self, catalog: CatalogStore) -> None:
        self._catalog = catalog

    async def validate(self, tenant_id: UUID, rarity_id: UUID) -> ProbabilitySums:
        """Validate the active reward table of a rarity.

        A rarity no tier can roll may have no active rewards at all; once any
        tier reaches it, an empty table is invalid.
        """

        rewards = await self._catalog.list_active_rewards(tenant_id, rarity_id)
        required = True
        if not rewards:
            required = bool(await self._catalog.tiers_reaching_rarity(tenant_id, rarity_id))
        return summarize(
            ((reward.real_weight, reward.display_weight) for reward in rewards),
            required=required,
        )

    async def validate_tier(self, tenant_id: UUID, tier: int) -> ProbabilitySums:
        """Validate a tier's rarity table; a tier with no active rows is disabled."""

        weights = await self._catalog.get_rarity_weights(tenant_id, tier)
        return summarize(
            ((weight.real_weight, weight.display_weight) for weight in weights),
            required=False,
        )


__all__ = ["ProbabilitySums", "ProbabilityValidator", "REQUIRED_TOTAL", "summarize"]
