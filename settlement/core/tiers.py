"""Commission tier table validation and rate resolution."""
from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Sequence

from settlement.core.results import TierConfigurationError

RATE_QUANT = Decimal("0.01")


@dataclass(frozen=True)
class Tier:
    """Minimum month-to-date revenue (minor units) and the rate applied from it."""

    min_monthly_revenue: int
    rate_percent: Decimal


def to_rate(value) -> Decimal:
    """Coerce a percentage into a two-place Decimal without float rounding."""

    try:
        rate = Decimal(str(value)).quantize(RATE_QUANT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise TierConfigurationError(f"Invalid commission rate {value!r}") from exc
    if rate < 0 or rate > 100:
        raise TierConfigurationError(f"Commission rate {rate}% is outside 0-100")
    return rate


def validate_tiers(tiers: Iterable[Tier | tuple[int, object]]) -> list[Tier]:
    """Check an admin-supplied tier table and return it as Tier objects.

    Thresholds must be strictly ascending in the given order and the first
    threshold must be zero so every revenue figure resolves to a rate.
    """

    normalized: list[Tier] = []
    for item in tiers:
        if isinstance(item, Tier):
            threshold, rate = item.min_monthly_revenue, item.rate_percent
        else:
            threshold, rate = item
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise TierConfigurationError(f"Tier threshold {threshold!r} must be an integer amount")
        if threshold < 0:
            raise TierConfigurationError(f"Tier threshold {threshold} cannot be negative")
        normalized.append(Tier(min_monthly_revenue=threshold, rate_percent=to_rate(rate)))

    if not normalized:
        raise TierConfigurationError("Commission tier table is empty")
    if normalized[0].min_monthly_revenue != 0:
        raise TierConfigurationError("Commission tier table must start with a zero threshold")
    for previous, current in zip(normalized, normalized[1:]):
        if current.min_monthly_revenue <= previous.min_monthly_revenue:
            raise TierConfigurationError(
                "Commission tier thresholds must be strictly ascending "
                f"({previous.min_monthly_revenue} then {current.min_monthly_revenue})"
            )
    return normalized


def resolve_rate(monthly_revenue: int, tiers: Sequence[Tier]) -> Decimal:
    """Return the rate of the highest threshold not above ``monthly_revenue``.

    ``monthly_revenue`` already includes the treatment being settled.
    """

    if monthly_revenue < 0:
        raise ValueError("monthly revenue cannot be negative")
    ordered = sorted(tiers, key=lambda tier: tier.min_monthly_revenue)
    if not ordered or ordered[0].min_monthly_revenue != 0:
        raise TierConfigurationError("Commission tier table has no zero-threshold tier")

    thresholds = [tier.min_monthly_revenue for tier in ordered]
    return ordered[bisect_right(thresholds, monthly_revenue) - 1].rate_percent


def commission_for(treatment_amount: int, rate_percent: Decimal) -> int:
    """Commission in minor units, rounded half-up on the smallest unit."""

    if treatment_amount < 0:
        raise ValueError("treatment amount cannot be negative")
    value = Decimal(treatment_amount) * Decimal(rate_percent) / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))
