# Overview: Immutable pricing catalog mapping tier ids to price and duration.

"""
Pricing Catalog

WHY: Keys are priced per tier. The catalog is built once from configuration
and handed to the issuer explicitly, so tests can pass alternate pricing
without touching module state.

INVARIANTS:
- Tier ids are unique.
- price and duration_millis are positive integers.
- The catalog cannot be mutated after construction.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from ..errors import ValidationError


MILLIS_PER_HOUR = 60 * 60 * 1000


@dataclass(frozen=True)
class PricingTier:
    tier_id: str
    price: int
    duration_millis: int
    label: str = ""

    def to_dict(self) -> dict:
        return {
            "tier_id": self.tier_id,
            "label": self.label or self.tier_id,
            "price": self.price,
            "duration_millis": self.duration_millis,
        }


class PricingCatalog:
    """Read-only tier lookup, in configured order."""

    __slots__ = ("_tiers",)

    def __init__(self, tiers: Iterable[PricingTier]):
        by_id: dict[str, PricingTier] = {}
        for tier in tiers:
            if not tier.tier_id:
                raise ValueError("Pricing tier id is required")
            if tier.tier_id in by_id:
                raise ValueError(f"Duplicate pricing tier: {tier.tier_id}")
            if not isinstance(tier.price, int) or tier.price <= 0:
                raise ValueError(f"Tier {tier.tier_id} price must be a positive integer")
            if not isinstance(tier.duration_millis, int) or tier.duration_millis <= 0:
                raise ValueError(f"Tier {tier.tier_id} duration must be a positive integer")
            by_id[tier.tier_id] = tier
        if not by_id:
            raise ValueError("Pricing catalog must contain at least one tier")
        object.__setattr__(self, "_tiers", MappingProxyType(by_id))

    def __setattr__(self, name, value):
        raise AttributeError("PricingCatalog is immutable")

    def __contains__(self, tier_id: object) -> bool:
        return tier_id in self._tiers

    def __len__(self) -> int:
        return len(self._tiers)

    def get(self, tier_id: str) -> PricingTier:
        tier = self._tiers.get(tier_id) if isinstance(tier_id, str) else None
        if tier is None:
            raise ValidationError(f"Invalid tier: {tier_id}. Must be one of {list(self._tiers)}")
        return tier

    def tiers(self) -> list[PricingTier]:
        return list(self._tiers.values())

    def to_list(self) -> list[dict]:
        return [t.to_dict() for t in self._tiers.values()]

    @classmethod
    def from_config(cls, rows: Iterable[Mapping]) -> "PricingCatalog":
        """
        Build from config rows: {tier_id, price, duration_hours | duration_millis, label?}.
        """
        tiers = []
        for row in rows:
            if "duration_millis" in row:
                duration = int(row["duration_millis"])
            else:
                duration = int(row["duration_hours"]) * MILLIS_PER_HOUR
            tiers.append(PricingTier(
                tier_id=str(row["tier_id"]),
                price=int(row["price"]),
                duration_millis=duration,
                label=str(row.get("label", "")),
            ))
        return cls(tiers)
