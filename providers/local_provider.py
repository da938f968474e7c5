"""
Local fallback provider — Pillow only, no network.

Used whenever the remote provider is unconfigured, disabled or failing.
It cannot recognise objects, so it reports:
  • basic image metadata (size, format, MIME type)
  • a quantized dominant-colour histogram
  • keyword labels guessed from the upload's filename (confidence 0.6)
"""
from __future__ import annotations

import io
import logging
from collections import Counter

from PIL import Image, UnidentifiedImageError

from errors import InvalidImage
from providers.base import (
    FALLBACK_PROVIDER, AnalysisOptions, AnalysisResult, DominantColor,
    Label, VisionProvider,
)

logger = logging.getLogger(__name__)

FILENAME_LABEL_CONFIDENCE = 0.6
TOP_COLORS = 5
_BUCKET = 32        # channel quantization step

# category → filename substrings that suggest it
FILENAME_PATTERNS: dict[str, list[str]] = {
    "phone":       ["phone", "smartphone", "mobile", "iphone", "android"],
    "car":         ["car", "auto", "vehicle", "mercedes", "bmw", "audi"],
    "furniture":   ["table", "chair", "sofa", "bed", "desk"],
    "clothing":    ["shirt", "dress", "pants", "jacket", "shoes"],
    "book":        ["book", "novel", "textbook", "manual"],
    "electronics": ["laptop", "computer", "tablet", "tv", "monitor"],
}


def open_image(image_bytes: bytes, image_ref: str = "") -> Image.Image:
    """Decode image bytes fully. Raises InvalidImage for anything Pillow can't read."""
    if not image_bytes:
        raise InvalidImage("empty file", image_ref)
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise InvalidImage(str(exc), image_ref) from exc
    return img


def image_properties(img: Image.Image) -> dict:
    fmt = img.format or "UNKNOWN"
    return {
        "width":  img.width,
        "height": img.height,
        "format": fmt,
        "mime":   Image.MIME.get(fmt, "application/octet-stream"),
    }


def inspect_image(image_bytes: bytes, image_ref: str = "") -> dict:
    """Validate the bytes and return their metadata."""
    return image_properties(open_image(image_bytes, image_ref))


def _quantize(channel: int) -> int:
    return min(255, round(channel / _BUCKET) * _BUCKET)


def dominant_colors(img: Image.Image, top: int = TOP_COLORS) -> list[DominantColor]:
    """
    Sample pixels on a grid whose step grows with image size, bucket each
    channel to 32 levels and return the most common buckets by coverage.
    """
    rgb = img.convert("RGB")
    width, height = rgb.size
    step = max(1, min(width, height) // 100)
    pixels = rgb.load()

    counts: Counter = Counter()
    for x in range(0, width, step):
        for y in range(0, height, step):
            r, g, b = pixels[x, y]
            counts[(_quantize(r), _quantize(g), _quantize(b))] += 1

    total = sum(counts.values())
    if not total:
        return []
    return [
        DominantColor(r=r, g=g, b=b, score=n / total, coverage=n / total)
        for (r, g, b), n in counts.most_common(top)
    ]


def filename_labels(filename: str) -> list[Label]:
    lowered = filename.lower()
    return [
        Label(name=category.capitalize(), confidence=FILENAME_LABEL_CONFIDENCE)
        for category, patterns in FILENAME_PATTERNS.items()
        if any(p in lowered for p in patterns)
    ]


class LocalProvider(VisionProvider):

    def __init__(self) -> None:
        self.name = FALLBACK_PROVIDER

    async def detect(self, image_bytes: bytes, options: AnalysisOptions) -> AnalysisResult:
        img = open_image(image_bytes, options.image_ref)
        result = AnalysisResult(
            provider=self.name,
            labels=filename_labels(options.filename),
            colors=dominant_colors(img),
            image_properties=image_properties(img),
        )
        logger.info(
            "[local] %s: %dx%d %s, %d colors, %d filename labels",
            options.image_ref or "image", img.width, img.height,
            result.image_properties["format"], len(result.colors), len(result.labels),
        )
        return result
