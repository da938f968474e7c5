"""
confidence.py — per-field confidence scores with learned feedback weights.

score = clamp(weighted_mean(factors) × feedback_weight, 0.1, 0.95)

Factors per suggestion type (weights sum per type):
  title        object_clarity 0.5, object_count 0.3, detection_consistency 0.2
  description  object_diversity 0.3, label_accuracy 0.3, text_presence 0.2,
               color_information 0.2
  category     keyword_matching 0.4, object_relevance 0.3, historical_accuracy 0.3
  price        category_data_availability 0.4, condition_clarity 0.2,
               brand_recognition 0.2, historical_accuracy 0.2
  condition    image_quality 0.3, object_clarity 0.2, damage_detection 0.3,
               newness_indicators 0.2

Category and price factors are all zero when no category is known.
Results that came from the local fallback are additionally capped at
FALLBACK_MAX_CONFIDENCE.

Feedback weights start from the persisted confidence_weights table, or from the
trailing-3-month rolling average {accepted 1.2, rejected 0.8, modified 1.0}, and
are nudged by every new feedback event (+0.05 / −0.05 / −0.02) within [0.3, 1.5].
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from rapidfuzz.distance import Levenshtein

import config
import database as db
from market import MarketContext
from providers.base import AnalysisResult

logger = logging.getLogger(__name__)

SCORE_MIN, SCORE_MAX = 0.1, 0.95
WEIGHT_MIN, WEIGHT_MAX = 0.3, 1.5
DEFAULT_WEIGHT = 1.0
EMPTY_FACTORS_CONFIDENCE = 0.3
UNKNOWN_FACTOR_WEIGHT = 0.1
WEIGHT_WINDOW = timedelta(days=91)

FEEDBACK_NUDGES: dict[str, float] = {
    "accepted": 0.05,
    "rejected": -0.05,
    "modified": -0.02,
}

FACTOR_WEIGHTS: dict[str, dict[str, float]] = {
    "title": {
        "object_clarity":        0.5,
        "object_count":          0.3,
        "detection_consistency": 0.2,
    },
    "description": {
        "object_diversity":  0.3,
        "label_accuracy":    0.3,
        "text_presence":     0.2,
        "color_information": 0.2,
    },
    "category": {
        "keyword_matching":    0.4,
        "object_relevance":    0.3,
        "historical_accuracy": 0.3,
    },
    "price": {
        "category_data_availability": 0.4,
        "condition_clarity":          0.2,
        "brand_recognition":          0.2,
        "historical_accuracy":        0.2,
    },
    "condition": {
        "image_quality":      0.3,
        "object_clarity":     0.2,
        "damage_detection":   0.3,
        "newness_indicators": 0.2,
    },
}

KNOWN_BRANDS = [
    "apple", "samsung", "nike", "adidas", "sony", "lg", "hp", "dell",
    "canon", "nikon", "bmw", "mercedes", "audi", "volkswagen",
]
DAMAGE_KEYWORDS = ["damage", "broken", "crack", "scratch", "worn", "tear", "stain"]
NEWNESS_KEYWORDS = ["new", "pristine", "unused", "mint", "perfect"]

_RELEVANCE_THRESHOLD = 0.3


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def bound_score(value: float, fallback: bool = False) -> float:
    """Clamp any externally computed confidence into the range scores live in."""
    value = _clamp(value, SCORE_MIN, SCORE_MAX)
    if fallback:
        value = min(value, config.FALLBACK_MAX_CONFIDENCE)
    return round(value, 4)


# ── Learned weights ───────────────────────────────────────────────────────────

class ConfidenceWeights:
    """Per-suggestion-type feedback multipliers. Passed explicitly, never global."""

    def __init__(self, weights: Optional[dict[str, float]] = None):
        self._weights = {
            k: _clamp(float(v), WEIGHT_MIN, WEIGHT_MAX) for k, v in (weights or {}).items()
        }

    def get(self, suggestion_type: str) -> float:
        return self._weights.get(suggestion_type, DEFAULT_WEIGHT)

    def nudge(self, suggestion_type: str, feedback: str) -> float:
        """Apply one feedback event and return the new weight."""
        delta = FEEDBACK_NUDGES.get(feedback, 0.0)
        new = round(_clamp(self.get(suggestion_type) + delta, WEIGHT_MIN, WEIGHT_MAX), 4)
        self._weights[suggestion_type] = new
        return new

    def as_dict(self) -> dict[str, float]:
        return dict(self._weights)

    @classmethod
    async def load(cls) -> "ConfidenceWeights":
        """Persisted weights win; types never persisted start from the rolling average."""
        weights = await db.get_feedback_weight_averages(db.utcnow() - WEIGHT_WINDOW)
        weights.update(await db.get_confidence_weights())
        return cls(weights)

    async def save(self, suggestion_type: str) -> None:
        await db.set_confidence_weight(suggestion_type, self.get(suggestion_type))


# ── Calculator ────────────────────────────────────────────────────────────────

class ConfidenceCalculator:

    def __init__(
        self,
        weights: Optional[ConfidenceWeights] = None,
        context: Optional[MarketContext] = None,
        fallback_cap: Optional[float] = None,
    ):
        self.weights = weights or ConfidenceWeights()
        self.context = context or MarketContext()
        self.fallback_cap = config.FALLBACK_MAX_CONFIDENCE if fallback_cap is None else fallback_cap

    # ── factors ───────────────────────────────────────────────────────────────

    def factors(
        self,
        result: AnalysisResult,
        suggestion_type: str,
        category_id: Optional[int] = None,
    ) -> dict[str, float]:
        if suggestion_type == "title":
            return self._title_factors(result)
        if suggestion_type == "description":
            return self._description_factors(result)
        if suggestion_type == "category":
            return self._category_factors(result, category_id)
        if suggestion_type == "price":
            return self._price_factors(result, category_id)
        if suggestion_type == "condition":
            return self._condition_factors(result)
        return {}

    def _title_factors(self, result: AnalysisResult) -> dict[str, float]:
        factors = {"object_clarity": 0.0, "object_count": 0.0, "detection_consistency": 0.0}
        if result.objects:
            top = sorted((o.confidence for o in result.objects), reverse=True)[:3]
            factors["object_clarity"] = min(_mean(top) * 1.2, 1.0)
            factors["object_count"] = min(len(result.objects) / 10, 1.0)
            names = [o.name.lower() for o in result.objects]
            factors["detection_consistency"] = 1 - len(set(names)) / len(names)
        return factors

    def _description_factors(self, result: AnalysisResult) -> dict[str, float]:
        return {
            "object_diversity":  min(len(result.objects) / 5, 1.0),
            "label_accuracy":    _mean([lb.confidence for lb in result.labels]),
            "text_presence":     0.8 if result.text else 0.0,
            "color_information": 0.6 if result.colors else 0.0,
        }

    def _category_factors(self, result: AnalysisResult, category_id: Optional[int]) -> dict[str, float]:
        factors = {"keyword_matching": 0.0, "object_relevance": 0.0, "historical_accuracy": 0.0}
        category = self.context.category(category_id)
        if category is None:
            return factors
        keywords = [k.lower() for k in category.keywords]

        items = list(result.objects) + list(result.labels)
        if items:
            # each item counts once, for its first matching keyword
            matched = sum(
                item.confidence for item in items
                if any(k in item.name.lower() for k in keywords)
            )
            factors["keyword_matching"] = matched / len(items)

        factors["object_relevance"] = self._object_relevance(result, keywords)
        factors["historical_accuracy"] = self.context.historical_accuracy("category", category_id)
        return factors

    @staticmethod
    def _object_relevance(result: AnalysisResult, keywords: list[str]) -> float:
        if not result.objects or not keywords:
            return 0.0
        relevance = 0.0
        total = 0.0
        for obj in result.objects:
            name = obj.name.lower()
            for keyword in keywords:
                similarity = Levenshtein.normalized_similarity(name, keyword)
                if similarity > _RELEVANCE_THRESHOLD:
                    relevance += obj.confidence * similarity
            total += obj.confidence
        return relevance / total if total > 0 else 0.0

    def _price_factors(self, result: AnalysisResult, category_id: Optional[int]) -> dict[str, float]:
        factors = {
            "category_data_availability": 0.0,
            "condition_clarity":          0.0,
            "brand_recognition":          0.0,
            "historical_accuracy":        0.0,
        }
        if self.context.category(category_id) is None:
            return factors
        factors["category_data_availability"] = min(
            self.context.recent_sample_count(category_id) / 50, 1.0
        )
        factors["condition_clarity"] = self._condition_clarity(result)
        factors["brand_recognition"] = self._brand_recognition(result)
        factors["historical_accuracy"] = self.context.historical_accuracy("price", category_id)
        return factors

    @staticmethod
    def _condition_clarity(result: AnalysisResult) -> float:
        clarity = 0.0
        if result.objects:
            clarity += _mean([o.confidence for o in result.objects]) * 0.5
        if len(result.colors) >= 3:
            clarity += 0.3
        if result.text:
            clarity += 0.2
        return min(clarity, 1.0)

    @staticmethod
    def _brand_recognition(result: AnalysisResult) -> float:
        for fragment in result.text:
            text = fragment.text.lower()
            if any(brand in text for brand in KNOWN_BRANDS):
                return 0.8
        return 0.0

    @staticmethod
    def _keyword_signal(result: AnalysisResult, keywords: list[str]) -> float:
        score = 0.0
        for label in result.labels:
            name = label.name.lower()
            score += sum(label.confidence for k in keywords if k in name)
        return min(score, 1.0)

    def _condition_factors(self, result: AnalysisResult) -> dict[str, float]:
        quality = _mean([o.confidence for o in result.objects])
        return {
            "image_quality":      quality,
            "object_clarity":     quality,
            "damage_detection":   self._keyword_signal(result, DAMAGE_KEYWORDS),
            "newness_indicators": self._keyword_signal(result, NEWNESS_KEYWORDS),
        }

    # ── aggregation ───────────────────────────────────────────────────────────

    def combine(self, factors: dict[str, float], suggestion_type: str) -> float:
        """Weighted mean of the factors, times the learned weight, clamped."""
        if not factors:
            return EMPTY_FACTORS_CONFIDENCE
        table = FACTOR_WEIGHTS.get(suggestion_type, {})
        weighted = 0.0
        total = 0.0
        for name, value in factors.items():
            w = table.get(name, UNKNOWN_FACTOR_WEIGHT)
            weighted += value * w
            total += w
        if total == 0:
            return EMPTY_FACTORS_CONFIDENCE
        base = weighted / total
        return _clamp(base * self.weights.get(suggestion_type), SCORE_MIN, SCORE_MAX)

    def score(
        self,
        result: AnalysisResult,
        suggestion_type: str,
        category_id: Optional[int] = None,
    ) -> float:
        value = self.combine(self.factors(result, suggestion_type, category_id), suggestion_type)
        if result.is_fallback:
            value = min(value, self.fallback_cap)
        return round(value, 4)

    def score_all(self, result: AnalysisResult) -> dict[str, float]:
        """Scores for every suggestion type, using the result's own suggested category."""
        return {
            t: self.score(result, t, result.suggested_category)
            for t in FACTOR_WEIGHTS
        }

    def explain(
        self,
        result: AnalysisResult,
        suggestion_type: str,
        category_id: Optional[int] = None,
    ) -> dict:
        """Score plus a human-readable breakdown of which factors drove it."""
        factors = self.factors(result, suggestion_type, category_id)
        score = self.score(result, suggestion_type, category_id)

        if score > 0.8:
            level = "very high"
        elif score > 0.6:
            level = "high"
        elif score > 0.4:
            level = "medium"
        else:
            level = "low"

        reasons = []
        for name, value in factors.items():
            label = name.replace("_", " ")
            if value > 0.6:
                reasons.append(f"{label} is strong")
            elif value < 0.3:
                reasons.append(f"{label} is weak")

        explanation = f"Confidence is {level}"
        if reasons:
            explanation += " because " + ", ".join(reasons)
        return {
            "suggestion_type": suggestion_type,
            "confidence":      score,
            "level":           level,
            "factors":         {k: round(v, 4) for k, v in factors.items()},
            "feedback_weight": self.weights.get(suggestion_type),
            "explanation":     explanation + ".",
        }
