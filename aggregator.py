"""
aggregator.py — merge the per-image analyses of one listing into one suggestion.

A map-reduce over the ordered list of per-image results:
  objects/labels  confidence summed per lowercase name across images
  title           top-3 object names scoring at least half the leading object
                  (then top-2 labels the same way, then a placeholder)
  description     top-3 objects + top-5 labels, deduplicated
  category        Σ confidence_scores["category"] (default 0.5) per candidate
  price           mean of suggested prices weighted by confidence_scores["price"] (default 0.3)
  condition       majority vote
  overall         mean over images of each image's mean field confidence

Every tie goes to the candidate seen first, in image order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from errors import AggregationEmpty
from market import PRICE_RANGE_SPREAD
from providers.base import AnalysisResult
from suggestion_engine import TITLE_PLACEHOLDER, capitalize, describe

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_WEIGHT = 0.5
DEFAULT_PRICE_WEIGHT = 0.3
# A title name must reach this share of the leading accumulated score
TITLE_RELATIVE_MIN = 0.5


@dataclass
class AggregatedSuggestion:
    title: str
    description: str
    category: Optional[int]
    category_name: Optional[str]
    price: Optional[float]
    price_range: Optional[tuple[float, float]]
    condition: Optional[str]
    confidence_scores: dict[str, float]
    overall_confidence: float
    object_scores: dict[str, float] = field(default_factory=dict)
    label_scores: dict[str, float] = field(default_factory=dict)
    image_count: int = 0
    # filled by the pipeline once listing-level suggestions are persisted
    suggestion_ids: dict[str, int] = field(default_factory=dict)
    skipped: list[dict] = field(default_factory=list)

    def field_values(self) -> dict[str, object]:
        """Suggestion type → proposed value (None when nothing was proposed)."""
        return {
            "title":       self.title,
            "description": self.description,
            "category":    self.category,
            "price":       self.price,
            "condition":   self.condition,
        }

    def to_dict(self) -> dict:
        return {
            "title":              self.title,
            "description":        self.description,
            "category":           self.category,
            "category_name":      self.category_name,
            "price":              self.price,
            "price_range":        list(self.price_range) if self.price_range else None,
            "condition":          self.condition,
            "confidence_scores":  self.confidence_scores,
            "overall_confidence": self.overall_confidence,
            "all_objects":        self.object_scores,
            "all_labels":         self.label_scores,
            "image_count":        self.image_count,
            "suggestion_ids":     self.suggestion_ids,
            "skipped":            self.skipped,
        }


def _accumulate(pairs) -> dict[str, float]:
    totals: dict[str, float] = {}
    for name, confidence in pairs:
        key = name.lower()
        totals[key] = totals.get(key, 0.0) + confidence
    return totals


def _top(scores: dict[str, float], n: int) -> list[str]:
    # stable sort keeps first-seen order between equal totals
    return [name for name, _ in sorted(scores.items(), key=lambda kv: kv[1], reverse=True)[:n]]


def _title_names(scores: dict[str, float], n: int) -> list[str]:
    top = _top(scores, n)
    if not top:
        return []
    floor = scores[top[0]] * TITLE_RELATIVE_MIN
    return [name for name in top if scores[name] >= floor]


def _winner(scores: dict) -> Optional[object]:
    # max() returns the first maximal key, i.e. the first seen
    return max(scores, key=scores.get) if scores else None


def _mean_field_scores(results: list[AnalysisResult]) -> dict[str, float]:
    fields: dict[str, list[float]] = {}
    for r in results:
        for name, value in r.confidence_scores.items():
            fields.setdefault(name, []).append(value)
    return {name: round(sum(v) / len(v), 4) for name, v in fields.items()}


def aggregate(results: list[AnalysisResult]) -> AggregatedSuggestion:
    if not results:
        raise AggregationEmpty()

    object_scores = _accumulate((o.name, o.confidence) for r in results for o in r.objects)
    label_scores = _accumulate((lb.name, lb.confidence) for r in results for lb in r.labels)
    overall = round(sum(r.mean_confidence for r in results) / len(results), 4)

    # A single image is its own aggregate
    if len(results) == 1:
        only = results[0]
        return AggregatedSuggestion(
            title=only.suggested_title,
            description=only.suggested_description,
            category=only.suggested_category,
            category_name=only.category_name,
            price=only.suggested_price,
            price_range=only.price_range,
            condition=only.suggested_condition,
            confidence_scores=dict(only.confidence_scores),
            overall_confidence=overall,
            object_scores=object_scores,
            label_scores=label_scores,
            image_count=1,
        )

    # ── title & description ───────────────────────────────────────────────────
    title_names = _title_names(object_scores, 3) or _title_names(label_scores, 2)
    title = " ".join(capitalize(name) for name in title_names) or TITLE_PLACEHOLDER
    description = describe(_top(object_scores, 3) + _top(label_scores, 5))

    # ── category ──────────────────────────────────────────────────────────────
    category_totals: dict[int, float] = {}
    category_names: dict[int, Optional[str]] = {}
    for r in results:
        if r.suggested_category is None:
            continue
        weight = r.confidence_scores.get("category", DEFAULT_CATEGORY_WEIGHT)
        category_totals[r.suggested_category] = category_totals.get(r.suggested_category, 0.0) + weight
        category_names.setdefault(r.suggested_category, r.category_name)
    category = _winner(category_totals)

    # ── price ─────────────────────────────────────────────────────────────────
    price = None
    price_range = None
    priced = [
        (r.suggested_price, r.confidence_scores.get("price", DEFAULT_PRICE_WEIGHT))
        for r in results if r.suggested_price is not None
    ]
    total_weight = sum(w for _, w in priced)
    if priced and total_weight > 0:
        price = round(sum(p * w for p, w in priced) / total_weight, 2)
        price_range = (
            round(price * (1 - PRICE_RANGE_SPREAD), 2),
            round(price * (1 + PRICE_RANGE_SPREAD), 2),
        )

    # ── condition ─────────────────────────────────────────────────────────────
    votes: dict[str, int] = {}
    for r in results:
        if r.suggested_condition:
            votes[r.suggested_condition] = votes.get(r.suggested_condition, 0) + 1
    condition = _winner(votes)

    logger.debug("Aggregated %d images → title=%r category=%s price=%s condition=%s",
                 len(results), title, category, price, condition)
    return AggregatedSuggestion(
        title=title,
        description=description,
        category=category,
        category_name=category_names.get(category) if category is not None else None,
        price=price,
        price_range=price_range,
        condition=condition,
        confidence_scores=_mean_field_scores(results),
        overall_confidence=overall,
        object_scores=object_scores,
        label_scores=label_scores,
        image_count=len(results),
    )
