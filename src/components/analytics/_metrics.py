"""
Derived metric math for aggregate rows.

Pure functions only: counter increments and rate derivation.

Rates:
- engagement_rate = 100 * (likes + comments + shares) / impressions
- click_through_rate = 100 * clicks / impressions
Both are 0 when impressions == 0 and are rounded half-up to 2 places.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from src.core.entities import PostAnalyticsAggregate

logger = logging.getLogger(__name__)

COUNTER_FIELDS: tuple[str, ...] = (
    "views",
    "likes",
    "comments",
    "shares",
    "clicks",
    "impressions",
)

RATE_FIELDS: tuple[str, ...] = ("engagement_rate", "click_through_rate")

# event_type -> counter incremented by it
EVENT_COUNTER: dict[str, str] = {
    "view": "views",
    "like": "likes",
    "comment": "comments",
    "share": "shares",
    "click": "clicks",
    "impression": "impressions",
}

_HUNDRED = Decimal(100)
_CENT = Decimal("0.01")


def round2(value: Decimal | float | int) -> float:
    """Round half-up to two decimal places."""
    if not isinstance(value, Decimal):
        # str() avoids binary float artefacts (2.675 -> 2.68, not 2.67)
        value = Decimal(str(value))
    return float(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def percentage(numerator: int, denominator: int) -> Decimal:
    """100 * numerator / denominator, or 0 when denominator is 0."""
    if denominator <= 0:
        return Decimal(0)
    return _HUNDRED * Decimal(numerator) / Decimal(denominator)


@dataclass(frozen=True)
class DerivedRates:
    engagement_rate: float
    click_through_rate: float


def _finish_rate(raw: Decimal, name: str, clamp: bool, context: Any) -> float:
    rate = round2(raw)
    if rate > 100.0:
        if clamp:
            logger.warning(
                "Clamping %s=%.2f to 100 for %s (counters inconsistent)", name, rate, context
            )
            return 100.0
        logger.warning("%s=%.2f exceeds 100 for %s", name, rate, context)
    return rate


def derive_rates(
    likes: int,
    comments: int,
    shares: int,
    clicks: int,
    impressions: int,
    clamp: bool = True,
    context: Any = None,
) -> DerivedRates:
    """Compute both rates from raw counters."""
    engagement = percentage(likes + comments + shares, impressions)
    ctr = percentage(clicks, impressions)
    return DerivedRates(
        engagement_rate=_finish_rate(engagement, "engagement_rate", clamp, context),
        click_through_rate=_finish_rate(ctr, "click_through_rate", clamp, context),
    )


def counter_for(event_type: str) -> str:
    """Counter field driven by an event type."""
    try:
        return EVENT_COUNTER[event_type]
    except KeyError:
        msg = f"Unknown event type: {event_type}"
        raise ValueError(msg) from None


def apply_increment(
    row: PostAnalyticsAggregate,
    event_type: str,
    value: int,
    clamp: bool = True,
) -> PostAnalyticsAggregate:
    """
    Return a copy of row with one counter incremented and rates recomputed.

    All other counters are carried forward unchanged.
    """
    field_name = counter_for(event_type)
    counters = {name: getattr(row, name) for name in COUNTER_FIELDS}
    counters[field_name] += value

    rates = derive_rates(
        likes=counters["likes"],
        comments=counters["comments"],
        shares=counters["shares"],
        clicks=counters["clicks"],
        impressions=counters["impressions"],
        clamp=clamp,
        context=row.key.as_tuple(),
    )

    return row.model_copy(
        update={
            **counters,
            "engagement_rate": rates.engagement_rate,
            "click_through_rate": rates.click_through_rate,
        }
    )


def mean_rate(values: list[float]) -> float:
    """Arithmetic mean of per-row rates, rounded to 2 places (0 when empty)."""
    if not values:
        return 0.0
    total = sum((Decimal(str(v)) for v in values), Decimal(0))
    return round2(total / Decimal(len(values)))
