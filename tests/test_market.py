"""
Tests for market.py.

Covers:
  - apply_condition(): multipliers and ±20 % range
  - load_market_context(): averages, sample counts, historical accuracy
  - estimate_price(): per-condition stats, confidence, unknown category
"""
from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio

import database as db
from market import (
    CONDITION_MULTIPLIERS, DEFAULT_ACCURACY, apply_condition, estimate_price,
    load_market_context,
)


@pytest_asyncio.fixture(autouse=True)
async def init(tmp_data_dir):
    await db.init_db(seed_categories=False)


class TestApplyCondition:
    def test_good(self):
        assert apply_condition(100.0, "good") == (70.0, (56.0, 84.0))

    def test_new(self):
        assert apply_condition(100.0, "new") == (100.0, (80.0, 120.0))

    def test_unknown_condition_uses_default(self):
        assert apply_condition(100.0, None) == apply_condition(100.0, "good")

    def test_multipliers_decrease_with_wear(self):
        values = list(CONDITION_MULTIPLIERS.values())
        assert values == sorted(values, reverse=True)


@pytest.mark.asyncio
class TestLoadMarketContext:
    async def test_snapshot(self):
        now = db.utcnow()
        phones = await db.add_category("Phones", ["phone"])
        sofas = await db.add_category("Sofas", ["sofa"])
        await db.add_price_record(phones, 80.0)
        await db.add_price_record(phones, 120.0)
        await db.add_price_record(phones, 1000.0, created_at=now - timedelta(days=300))
        await db.add_price_record(phones, 60.0, created_at=now - timedelta(days=120))
        sid = await db.add_suggestion("category", str(phones), 0.7, category_id=phones)
        await db.store_feedback(sid, "accepted")

        ctx = await load_market_context()
        assert [c.name for c in ctx.categories] == ["Phones", "Sofas"]
        assert ctx.average_price(phones) == pytest.approx((80 + 120 + 60) / 3)
        assert ctx.average_price(sofas) is None
        assert ctx.recent_sample_count(phones) == 2
        assert ctx.keywords(phones) == ["phone"]
        assert ctx.historical_accuracy("category", phones) == 1.0
        assert ctx.historical_accuracy("category") == 1.0
        assert ctx.historical_accuracy("price", phones) == DEFAULT_ACCURACY

    async def test_unknown_category_lookups(self):
        ctx = await load_market_context()
        assert ctx.category(None) is None
        assert ctx.average_price(None) is None
        assert ctx.recent_sample_count(42) == 0


@pytest.mark.asyncio
class TestEstimatePrice:
    async def test_average_100_good(self):
        cat = await db.add_category("Phones", ["phone"])
        for price in (90.0, 110.0):
            await db.add_price_record(cat, price, "good")
        await db.add_price_record(cat, 500.0, "new")

        estimate = await estimate_price(cat, "good")
        assert estimate["estimated_price"] == 70.0
        assert estimate["price_range"] == {"min": 56.0, "max": 84.0}
        assert estimate["sample_size"] == 2
        assert estimate["confidence"] == pytest.approx(0.2)
        assert estimate["factors"]["base_price"] == 100.0

    async def test_no_history(self):
        cat = await db.add_category("Phones", ["phone"])
        estimate = await estimate_price(cat, "fair")
        assert estimate["estimated_price"] is None
        assert estimate["confidence"] == 0.0

    async def test_unknown_category(self):
        assert await estimate_price(999, "good") is None

    async def test_bad_condition(self):
        with pytest.raises(ValueError, match="condition must be one of"):
            await estimate_price(1, "shiny")
