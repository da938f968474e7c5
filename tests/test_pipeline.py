"""
Tests for pipeline.py.

Covers:
  - analyze(): cache hit skips the providers, fallback scores capped
  - submit_images_for_autofill(): skips bad images, limits, persistence
  - record_suggestion_feedback(): single nudge, unknown suggestion
  - get_suggestions(): grouping by type
"""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

import config
import database as db
from conftest import make_image_bytes
from errors import AggregationEmpty, SuggestionNotFound
from pipeline import AnalysisPipeline, ImageInput
from providers import manager
from providers.base import AnalysisOptions, AnalysisResult, DetectedObject, Label


def _remote_result() -> AnalysisResult:
    return AnalysisResult(
        provider="google_vision",
        objects=[DetectedObject("Laptop", 0.9)],
        labels=[Label("Mobile phone", 0.8)],
    )


@pytest_asyncio.fixture
async def pipeline(tmp_data_dir):
    await db.init_db()
    return await AnalysisPipeline.create()


@pytest.mark.asyncio
class TestAnalyze:
    async def test_cache_hit_skips_providers(self, pipeline, image_bytes):
        spy = AsyncMock(side_effect=manager.analyse_image)
        with patch("pipeline.manager.analyse_image", spy):
            first = await pipeline.analyze(image_bytes, AnalysisOptions(filename="sofa.jpg"))
            second = await pipeline.analyze(image_bytes, AnalysisOptions(filename="other.jpg"))
        assert spy.await_count == 1
        assert second == first

    async def test_fallback_result(self, pipeline, image_bytes):
        result = await pipeline.analyze(image_bytes, AnalysisOptions(filename="sofa.jpg"))
        assert result.provider == "local"
        assert result.suggested_title == "Furniture"
        assert result.category_name == "Home & Garden"
        assert result.confidence_scores
        assert all(0.1 <= s <= config.FALLBACK_MAX_CONFIDENCE
                   for s in result.confidence_scores.values())

    async def test_remote_result_is_derived_and_scored(self, pipeline, image_bytes):
        with patch("pipeline.manager.analyse_image", AsyncMock(return_value=_remote_result())):
            result = await pipeline.analyze(image_bytes)
        assert result.suggested_title == "Laptop"
        assert result.category_name == "Electronics"
        assert result.suggested_condition == "like_new"
        assert set(result.confidence_scores) == {"title", "description", "category",
                                                 "price", "condition"}

    async def test_explain(self, pipeline, image_bytes):
        result = await pipeline.analyze(image_bytes, AnalysisOptions(filename="sofa.jpg"))
        info = pipeline.explain(result, "category")
        assert info["suggestion_type"] == "category"
        assert info["confidence"] == result.confidence_scores["category"]


@pytest.mark.asyncio
class TestAutofill:
    async def test_invalid_image_skipped(self, pipeline):
        images = [
            ImageInput(make_image_bytes(), "sofa.jpg"),
            ImageInput(b"definitely not an image", "broken.jpg"),
        ]
        suggestion = await pipeline.submit_images_for_autofill(images)
        assert suggestion.image_count == 1
        assert suggestion.title == "Furniture"
        assert len(suggestion.skipped) == 1
        assert suggestion.skipped[0]["index"] == 1
        assert suggestion.skipped[0]["filename"] == "broken.jpg"

    async def test_all_invalid(self, pipeline):
        with pytest.raises(AggregationEmpty):
            await pipeline.submit_images_for_autofill([ImageInput(b"", "a.jpg"),
                                                       ImageInput(b"junk", "b.jpg")])

    async def test_no_images(self, pipeline):
        with pytest.raises(AggregationEmpty):
            await pipeline.submit_images_for_autofill([])

    async def test_too_many_images(self, pipeline):
        images = [ImageInput(make_image_bytes()) for _ in range(config.AUTOFILL_MAX_IMAGES + 1)]
        with pytest.raises(ValueError, match="Maximum"):
            await pipeline.submit_images_for_autofill(images)

    async def test_persists_image_and_listing_suggestions(self, pipeline):
        image_id = await db.add_image("listing/1.jpg", article_id=7)
        images = [
            ImageInput(make_image_bytes((10, 10, 10)), "1.jpg", image_id=image_id),
            ImageInput(make_image_bytes((250, 250, 250)), "2.jpg"),
        ]
        with patch("pipeline.manager.analyse_image", AsyncMock(return_value=_remote_result())):
            suggestion = await pipeline.submit_images_for_autofill(images, article_id=7)

        assert suggestion.title == "Laptop"
        assert set(suggestion.suggestion_ids) >= {"title", "category", "condition"}
        assert "price" not in suggestion.suggestion_ids     # no price history

        stored = await db.get_image(image_id)
        assert stored.analysis["suggested_title"] == "Laptop"

        grouped = await pipeline.get_suggestions(7)
        titles = grouped["title"]
        assert len(titles) == 3                             # two images + the listing
        assert [t["image_id"] for t in titles].count(None) == 1
        assert {t["value"] for t in titles} == {"Laptop"}

    async def test_price_history_recorded_after_start_is_used(self, pipeline):
        home = next(c.id for c in await db.get_categories() if c.name == "Home & Garden")
        await db.add_price_record(home, 100.0, "good")
        suggestion = await pipeline.submit_images_for_autofill(
            [ImageInput(make_image_bytes(), "sofa.jpg")]
        )
        assert suggestion.category == home
        assert suggestion.price == 70.0

    async def test_nothing_persisted_without_article(self, pipeline, image_bytes):
        await pipeline.submit_images_for_autofill([ImageInput(image_bytes, "sofa.jpg")])
        assert await db.get_suggestion_stats() == []


@pytest.mark.asyncio
class TestFeedback:
    async def test_applied_once(self, pipeline):
        sid = await db.add_suggestion("title", "Phone", 0.7, article_id=1)
        first = await pipeline.record_suggestion_feedback(sid, "accepted")
        assert first["applied"] is True
        assert first["feedback_weight"] == 1.05

        second = await pipeline.record_suggestion_feedback(sid, "accepted")
        assert second["applied"] is False
        assert second["feedback_weight"] == 1.05
        assert await db.get_confidence_weights() == {"title": 1.05}

    async def test_repeat_is_logged(self, pipeline, caplog):
        sid = await db.add_suggestion("title", "Phone", 0.7)
        await pipeline.record_suggestion_feedback(sid, "accepted")
        with caplog.at_level("INFO", logger="pipeline"):
            await pipeline.record_suggestion_feedback(sid, "rejected")
        assert f"suggestion {sid} was already processed" in caplog.text

    async def test_resubmission_updates_stored_feedback(self, pipeline):
        sid = await db.add_suggestion("price", "50", 0.4, article_id=1)
        await pipeline.record_suggestion_feedback(sid, "rejected")
        await pipeline.record_suggestion_feedback(sid, "modified", modified_value="45")
        stored = await db.get_suggestion(sid)
        assert stored.user_feedback == "modified"
        assert stored.modified_value == "45"
        assert await db.get_confidence_weights() == {"price": 0.95}

    async def test_picks_up_persisted_weight(self, pipeline):
        await db.set_confidence_weight("condition", 1.2)
        sid = await db.add_suggestion("condition", "good", 0.5)
        result = await pipeline.record_suggestion_feedback(sid, "accepted")
        assert result["feedback_weight"] == pytest.approx(1.25)

    async def test_unknown_suggestion(self, pipeline):
        with pytest.raises(SuggestionNotFound):
            await pipeline.record_suggestion_feedback(999, "accepted")

    async def test_bad_feedback_value(self, pipeline):
        sid = await db.add_suggestion("title", "Phone", 0.7)
        with pytest.raises(ValueError):
            await pipeline.record_suggestion_feedback(sid, "meh")


@pytest.mark.asyncio
class TestGetSuggestions:
    async def test_grouped_best_first(self, pipeline):
        await db.add_suggestion("category", "1", 0.3, article_id=3)
        await db.add_suggestion("category", "2", 0.8, article_id=3)
        await db.add_suggestion("title", "Lamp", 0.5, article_id=3)
        await db.add_suggestion("title", "Other listing", 0.5, article_id=4)

        grouped = await pipeline.get_suggestions(3)
        assert set(grouped) == {"category", "title"}
        assert [s["value"] for s in grouped["category"]] == ["2", "1"]
        assert grouped["title"][0]["user_feedback"] is None

    async def test_empty(self, pipeline):
        assert await pipeline.get_suggestions(42) == {}
