"""
market.py — read-only snapshot of the upstream listing data the scorer needs.

Suggestion derivation and confidence scoring are pure functions; instead of
querying the DB themselves they receive a MarketContext loaded once per
auto-fill request or queue batch:
  • active categories and their keyword lists
  • trailing-6-month average sale price per category
  • trailing-3-month price sample counts per category
  • historical acceptance rate of category/price suggestions
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

import database as db
from database import Category

logger = logging.getLogger(__name__)

CONDITION_MULTIPLIERS: dict[str, float] = {
    "new":      1.0,
    "like_new": 0.85,
    "good":     0.7,
    "fair":     0.55,
    "poor":     0.4,
}
DEFAULT_CONDITION = "good"
PRICE_RANGE_SPREAD = 0.2                # ±20 %

PRICE_WINDOW = timedelta(days=183)      # ~6 months
SAMPLE_WINDOW = timedelta(days=91)      # ~3 months
ACCURACY_WINDOW = timedelta(days=183)
DEFAULT_ACCURACY = 0.5


@dataclass
class MarketContext:
    categories: list[Category] = field(default_factory=list)
    avg_prices: dict[int, float] = field(default_factory=dict)
    recent_samples: dict[int, int] = field(default_factory=dict)
    # (suggestion_type, category_id or None) → acceptance rate
    accuracy: dict[tuple[str, Optional[int]], float] = field(default_factory=dict)

    def category(self, category_id: Optional[int]) -> Optional[Category]:
        for c in self.categories:
            if c.id == category_id:
                return c
        return None

    def keywords(self, category_id: Optional[int]) -> list[str]:
        c = self.category(category_id)
        return c.keywords if c else []

    def average_price(self, category_id: Optional[int]) -> Optional[float]:
        return self.avg_prices.get(category_id) if category_id is not None else None

    def recent_sample_count(self, category_id: Optional[int]) -> int:
        return self.recent_samples.get(category_id, 0) if category_id is not None else 0

    def historical_accuracy(self, suggestion_type: str, category_id: Optional[int] = None) -> float:
        return self.accuracy.get((suggestion_type, category_id), DEFAULT_ACCURACY)


async def load_market_context() -> MarketContext:
    now = db.utcnow()
    categories = await db.get_categories()
    ctx = MarketContext(categories=categories)

    for c in categories:
        stats = await db.get_price_stats(c.id, now - PRICE_WINDOW)
        if stats["avg"] is not None:
            ctx.avg_prices[c.id] = stats["avg"]
        recent = await db.get_price_stats(c.id, now - SAMPLE_WINDOW)
        ctx.recent_samples[c.id] = recent["sample_size"]

    for suggestion_type in ("category", "price"):
        for category_id in [None] + [c.id for c in categories]:
            acc = await db.get_historical_accuracy(
                suggestion_type, now - ACCURACY_WINDOW, category_id
            )
            if acc is not None:
                ctx.accuracy[(suggestion_type, category_id)] = acc

    logger.debug("Market context: %d categories, %d with price data",
                 len(categories), len(ctx.avg_prices))
    return ctx


def apply_condition(base_price: float, condition: Optional[str]) -> tuple[float, tuple[float, float]]:
    """Scale a base price by the condition multiplier; returns (price, (min, max))."""
    multiplier = CONDITION_MULTIPLIERS.get(condition or DEFAULT_CONDITION,
                                           CONDITION_MULTIPLIERS[DEFAULT_CONDITION])
    price = base_price * multiplier
    return round(price, 2), (
        round(price * (1 - PRICE_RANGE_SPREAD), 2),
        round(price * (1 + PRICE_RANGE_SPREAD), 2),
    )


async def estimate_price(category_id: int, condition: str) -> Optional[dict]:
    """
    Price estimate from sales of the same category *and* condition over the
    last 6 months. Returns None for an unknown category; an estimate with
    estimated_price=None when there is no price history.
    """
    if condition not in CONDITION_MULTIPLIERS:
        raise ValueError(f"condition must be one of {', '.join(CONDITION_MULTIPLIERS)}")
    categories = {c.id: c for c in await db.get_categories(active_only=False)}
    category = categories.get(category_id)
    if category is None:
        return None

    stats = await db.get_price_stats(category_id, db.utcnow() - PRICE_WINDOW, condition)
    estimation = {
        "estimated_price": None,
        "price_range":     {"min": None, "max": None},
        "confidence":      0.0,
        "sample_size":     stats["sample_size"],
        "factors":         {},
    }
    if stats["avg"]:
        price, (lo, hi) = apply_condition(stats["avg"], condition)
        estimation.update({
            "estimated_price": price,
            "price_range":     {"min": lo, "max": hi},
            "confidence":      min(stats["sample_size"] / 10, 1.0),
            "factors": {
                "category":             category.name,
                "condition":            condition,
                "base_price":           round(stats["avg"], 2),
                "condition_multiplier": CONDITION_MULTIPLIERS[condition],
            },
        })
    logger.info("Price estimated: category=%s condition=%s → %s",
                category_id, condition, estimation["estimated_price"])
    return estimation
