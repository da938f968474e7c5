"""
pipeline.py — cache → provider → derivation → scoring, plus the interactive
auto-fill flow and the feedback loop.

One AnalysisPipeline holds the explicit state the pure parts need: the learned
ConfidenceWeights and a MarketContext snapshot. Both the HTTP handlers and the
queue worker build one via AnalysisPipeline.create().
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional

import config
import database as db
from aggregator import AggregatedSuggestion, aggregate
from analysis_cache import AnalysisCache, content_hash
from confidence import ConfidenceCalculator, ConfidenceWeights
from errors import AggregationEmpty, DuplicateFeedback, InvalidImage, SuggestionNotFound
from market import MarketContext, load_market_context
from providers import manager
from providers.base import AnalysisOptions, AnalysisResult
from suggestion_engine import derive_suggestions

logger = logging.getLogger(__name__)


@dataclass
class ImageInput:
    data: bytes
    filename: str = ""
    image_id: Optional[int] = None


def _suggestion_values(values: dict[str, object], scores: dict[str, float]) -> list[tuple[str, str, float]]:
    """(type, value, confidence) for every field worth storing: non-empty value, confidence > 0."""
    rows = []
    for suggestion_type, value in values.items():
        confidence = scores.get(suggestion_type, 0.0)
        if value in (None, "") or confidence <= 0:
            continue
        rows.append((suggestion_type, str(value), confidence))
    return rows


class AnalysisPipeline:

    def __init__(
        self,
        cache: Optional[AnalysisCache] = None,
        weights: Optional[ConfidenceWeights] = None,
        context: Optional[MarketContext] = None,
    ):
        self.cache = cache or AnalysisCache()
        self.weights = weights or ConfidenceWeights()
        self.context = context or MarketContext()

    @classmethod
    async def create(cls) -> "AnalysisPipeline":
        pipeline = cls(weights=await ConfidenceWeights.load())
        await pipeline.refresh_context()
        return pipeline

    async def refresh_context(self) -> None:
        self.context = await load_market_context()

    @property
    def calculator(self) -> ConfidenceCalculator:
        return ConfidenceCalculator(self.weights, self.context)

    # ── Single image ──────────────────────────────────────────────────────────

    async def analyze(
        self,
        image_bytes: bytes,
        options: Optional[AnalysisOptions] = None,
    ) -> AnalysisResult:
        """
        Full analysis of one image. Byte-identical images within the cache TTL
        return the cached result without touching any provider.
        Raises InvalidImage for undecodable bytes; never raises for provider trouble.
        """
        options = options or AnalysisOptions()
        digest = content_hash(image_bytes)
        cached = await self.cache.get(digest)
        if cached is not None:
            logger.info("♻️ %s: cache hit (%s…)", options.image_ref or "image", digest[:12])
            return cached

        raw = await manager.analyse_image(image_bytes, options)
        derived = derive_suggestions(raw, self.context)
        result = replace(derived, confidence_scores=self.calculator.score_all(derived))
        await self.cache.put(digest, result)
        logger.info(
            "%s analysed via %s: title=%r category=%s condition=%s",
            options.image_ref or "image", result.provider, result.suggested_title,
            result.category_name, result.suggested_condition,
        )
        return result

    def explain(self, result: AnalysisResult, suggestion_type: str) -> dict:
        return self.calculator.explain(result, suggestion_type, result.suggested_category)

    # ── Persistence ───────────────────────────────────────────────────────────

    async def persist_image_suggestions(
        self,
        result: AnalysisResult,
        article_id: Optional[int],
        image_id: Optional[int],
    ) -> dict[str, int]:
        values = {
            "title":       result.suggested_title,
            "description": result.suggested_description,
            "category":    result.suggested_category,
            "price":       result.suggested_price,
            "condition":   result.suggested_condition,
        }
        ids = {}
        for suggestion_type, value, confidence in _suggestion_values(values, result.confidence_scores):
            ids[suggestion_type] = await db.add_suggestion(
                suggestion_type, value, confidence,
                article_id=article_id, image_id=image_id,
                category_id=result.suggested_category,
            )
        return ids

    async def persist_listing_suggestions(
        self,
        suggestion: AggregatedSuggestion,
        article_id: int,
    ) -> dict[str, int]:
        """Store listing-level (image_id NULL) suggestions for an aggregate."""
        ids = {}
        for suggestion_type, value, confidence in _suggestion_values(
            suggestion.field_values(), suggestion.confidence_scores
        ):
            ids[suggestion_type] = await db.add_suggestion(
                suggestion_type, value, confidence,
                article_id=article_id, image_id=None,
                category_id=suggestion.category,
            )
        suggestion.suggestion_ids = ids
        return ids

    # ── Interactive auto-fill ─────────────────────────────────────────────────

    async def submit_images_for_autofill(
        self,
        images: list[ImageInput],
        article_id: Optional[int] = None,
    ) -> AggregatedSuggestion:
        """
        Analyse up to AUTOFILL_MAX_IMAGES images one after another and merge
        them. Unreadable images are skipped and reported; if none is usable
        AggregationEmpty is raised.
        """
        if not images:
            raise AggregationEmpty("No images provided")
        if len(images) > config.AUTOFILL_MAX_IMAGES:
            raise ValueError(f"Maximum {config.AUTOFILL_MAX_IMAGES} images allowed")
        await self.refresh_context()

        results: list[AnalysisResult] = []
        skipped: list[dict] = []
        for idx, image in enumerate(images):
            ref = f"image {image.image_id}" if image.image_id else f"upload #{idx + 1}"
            try:
                result = await self.analyze(
                    image.data, AnalysisOptions(filename=image.filename, image_ref=ref)
                )
            except InvalidImage as exc:
                logger.warning("Skipping %s (%s): %s", ref, image.filename or "unnamed", exc)
                skipped.append({"index": idx, "filename": image.filename, "error": str(exc)})
                continue
            results.append(result)
            if image.image_id is not None:
                await db.save_image_analysis(image.image_id, result.to_dict())
            if article_id is not None:
                await self.persist_image_suggestions(result, article_id, image.image_id)

        if not results:
            raise AggregationEmpty("No images could be processed")

        suggestion = aggregate(results)
        suggestion.skipped = skipped
        if article_id is not None:
            await self.persist_listing_suggestions(suggestion, article_id)
        logger.info(
            "✅ Auto-fill: %d/%d images → %r (overall confidence %.2f)",
            len(results), len(images), suggestion.title, suggestion.overall_confidence,
        )
        return suggestion

    # ── Feedback ──────────────────────────────────────────────────────────────

    async def _learn(self, suggestion: db.Suggestion, feedback: str) -> float:
        suggestion_type = suggestion.suggestion_type
        # Pick up nudges persisted by other workers before applying ours
        persisted = await db.get_confidence_weights()
        if suggestion_type in persisted:
            self.weights = ConfidenceWeights({**self.weights.as_dict(),
                                              suggestion_type: persisted[suggestion_type]})
        new_weight = self.weights.nudge(suggestion_type, feedback)
        await self.weights.save(suggestion_type)
        return new_weight

    async def record_suggestion_feedback(
        self,
        suggestion_id: int,
        feedback: str,
        modified_value: Optional[str] = None,
    ) -> dict:
        """
        Store the user's verdict and nudge the learned weight for that
        suggestion type. Re-submitting feedback updates the stored value but
        never nudges the weight a second time.
        """
        suggestion, first_time = await db.store_feedback(suggestion_id, feedback, modified_value)
        if suggestion is None:
            raise SuggestionNotFound(suggestion_id)

        applied = first_time
        if first_time:
            weight = await self._learn(suggestion, feedback)
            logger.info("📝 Suggestion %d %s (%s) → %s weight %.2f",
                        suggestion_id, feedback, suggestion.suggestion_type,
                        suggestion.suggestion_type, weight)
        else:
            weight = self.weights.get(suggestion.suggestion_type)
            logger.info("%s; weights unchanged", DuplicateFeedback(suggestion_id))
        if modified_value is not None:
            logger.info("Suggestion %d modified value: %r", suggestion_id, modified_value)

        return {
            "suggestion_id":   suggestion_id,
            "suggestion_type": suggestion.suggestion_type,
            "feedback":        feedback,
            "applied":         applied,
            "feedback_weight": weight,
        }

    async def get_suggestions(self, article_id: int) -> dict[str, list[dict]]:
        """All stored suggestions for a listing, grouped by type, best first."""
        grouped: dict[str, list[dict]] = {}
        for s in await db.get_suggestions_for_article(article_id):
            grouped.setdefault(s.suggestion_type, []).append({
                "id":               s.id,
                "image_id":         s.image_id,
                "value":            s.suggested_value,
                "confidence_score": s.confidence_score,
                "user_feedback":    s.user_feedback,
                "modified_value":   s.modified_value,
                "is_accepted":      s.is_accepted,
                "created_at":       s.created_at.isoformat(),
            })
        return grouped
