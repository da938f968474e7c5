"""
suggestion_engine.py — turn raw detections into proposed listing fields.

Runs the same way whether the detections came from the remote provider or the
local fallback. Every function here is pure: category keywords and price data
come in through a MarketContext snapshot.

  category     keyword substring match; objects count 2×, labels 1×
  title        top-3 confident objects, else top-2 labels, else a placeholder
  description  templated sentence from objects, dominant colour name and text
  price        category 6-month average × condition multiplier (±20 % range)
  condition    mean object confidence: >0.8 like_new, <0.4 fair, else good
"""
from __future__ import annotations

import math
from dataclasses import replace
from typing import Optional

from database import Category
from market import MarketContext, apply_condition
from providers.base import AnalysisResult

TITLE_PLACEHOLDER = "Item for Sale"
DESCRIPTION_PLACEHOLDER = "Please add a detailed description of this item."
DESCRIPTION_PREFIX = "This item appears to be "

TITLE_OBJECT_MIN = 0.5
TITLE_LABEL_MIN = 0.3
_DESCRIPTOR_MIN = 0.4
_COLOR_MAX_DISTANCE = 100

NAMED_COLORS: dict[str, tuple[int, int, int]] = {
    "red":    (255, 0, 0),
    "green":  (0, 255, 0),
    "blue":   (0, 0, 255),
    "yellow": (255, 255, 0),
    "orange": (255, 165, 0),
    "purple": (128, 0, 128),
    "pink":   (255, 192, 203),
    "brown":  (165, 42, 42),
    "black":  (0, 0, 0),
    "white":  (255, 255, 255),
    "gray":   (128, 128, 128),
    "silver": (192, 192, 192),
}


def capitalize(name: str) -> str:
    """Upper-case the first character only ("smart phone" → "Smart phone")."""
    return name[:1].upper() + name[1:]


def _by_confidence(items: list) -> list:
    # sorted() is stable, so equal confidences keep detection order
    return sorted(items, key=lambda i: i.confidence, reverse=True)


# ── Category ──────────────────────────────────────────────────────────────────

def category_scores(result: AnalysisResult, categories: list[Category]) -> list[tuple[Category, float]]:
    """All categories with a positive keyword score, best first."""
    scored = []
    for category in categories:
        keywords = [k.lower() for k in category.keywords]
        score = 0.0
        for obj in result.objects:
            name = obj.name.lower()
            score += sum(obj.confidence * 2 for k in keywords if k in name)
        for label in result.labels:
            name = label.name.lower()
            score += sum(label.confidence for k in keywords if k in name)
        if score > 0:
            scored.append((category, score))
    return sorted(scored, key=lambda cs: cs[1], reverse=True)


def suggest_category(result: AnalysisResult, categories: list[Category]) -> Optional[Category]:
    scored = category_scores(result, categories)
    return scored[0][0] if scored else None


# ── Title & description ───────────────────────────────────────────────────────

def suggest_title(result: AnalysisResult) -> str:
    parts = [
        capitalize(o.name) for o in _by_confidence(result.objects)[:3]
        if o.confidence > TITLE_OBJECT_MIN
    ]
    if not parts:
        parts = [
            capitalize(lb.name) for lb in _by_confidence(result.labels)[:2]
            if lb.confidence > TITLE_LABEL_MIN
        ]
    return " ".join(parts) or TITLE_PLACEHOLDER


def color_name(rgb: tuple[int, int, int]) -> Optional[str]:
    """Nearest named colour, or None when nothing is within distance 100."""
    best, best_dist = None, math.inf
    for name, ref in NAMED_COLORS.items():
        dist = math.dist(rgb, ref)
        if dist < best_dist:
            best, best_dist = name, dist
    return best if best_dist < _COLOR_MAX_DISTANCE else None


def describe(descriptors: list[str]) -> str:
    unique = list(dict.fromkeys(d for d in descriptors if d))
    if not unique:
        return DESCRIPTION_PLACEHOLDER
    return DESCRIPTION_PREFIX + ", ".join(unique) + "."


def suggest_description(result: AnalysisResult) -> str:
    descriptors = [
        o.name for o in _by_confidence(result.objects)[:5] if o.confidence > _DESCRIPTOR_MIN
    ]
    if not descriptors:
        descriptors = [
            lb.name.lower() for lb in _by_confidence(result.labels)[:5]
            if lb.confidence > _DESCRIPTOR_MIN
        ]
    if result.colors:
        name = color_name(result.colors[0].rgb)
        if name:
            descriptors.append(name)
    if result.text:
        text = result.text[0].text.strip()
        if 5 < len(text) < 100:
            descriptors.append(f'with text: "{text}"')
    return describe(descriptors)


# ── Condition & price ─────────────────────────────────────────────────────────

def suggest_condition(result: AnalysisResult) -> str:
    if not result.objects:
        return "good"
    mean = sum(o.confidence for o in result.objects) / len(result.objects)
    if mean > 0.8:
        return "like_new"
    if mean < 0.4:
        return "fair"
    return "good"


def suggest_price(
    ctx: MarketContext,
    category_id: Optional[int],
    condition: Optional[str],
) -> tuple[Optional[float], Optional[tuple[float, float]]]:
    base = ctx.average_price(category_id)
    if not base:
        return None, None
    return apply_condition(base, condition)


def derive_suggestions(result: AnalysisResult, ctx: MarketContext) -> AnalysisResult:
    """Return a copy of `result` with every suggested_* field filled in."""
    category = suggest_category(result, ctx.categories)
    condition = suggest_condition(result)
    price, price_range = suggest_price(ctx, category.id if category else None, condition)
    return replace(
        result,
        suggested_category=category.id if category else None,
        category_name=category.name if category else None,
        suggested_title=suggest_title(result),
        suggested_description=suggest_description(result),
        suggested_price=price,
        price_range=price_range,
        suggested_condition=condition,
    )
