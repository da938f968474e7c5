"""
Tests for providers/local_provider.py.

Covers:
  - open_image(): InvalidImage for empty / undecodable bytes
  - inspect_image(): size, format, MIME type
  - dominant_colors(): quantised buckets, coverage sums to 1
  - filename_labels(): keyword patterns, confidence 0.6
  - LocalProvider.detect(): no objects, provider name "local"
"""
from __future__ import annotations

import pytest
from PIL import Image

from conftest import make_image_bytes
from errors import InvalidImage
from providers.base import AnalysisOptions
from providers.local_provider import (
    FILENAME_LABEL_CONFIDENCE, LocalProvider, _quantize, dominant_colors,
    filename_labels, inspect_image, open_image,
)


class TestOpenImage:
    def test_empty_bytes(self):
        with pytest.raises(InvalidImage, match="empty"):
            open_image(b"")

    def test_garbage_bytes(self):
        with pytest.raises(InvalidImage) as exc_info:
            open_image(b"definitely not an image", "upload #2")
        assert exc_info.value.image_ref == "upload #2"


class TestInspectImage:
    def test_png_metadata(self, image_bytes):
        props = inspect_image(image_bytes)
        assert props == {"width": 64, "height": 48, "format": "PNG", "mime": "image/png"}

    def test_jpeg_mime(self):
        props = inspect_image(make_image_bytes(fmt="JPEG"))
        assert props["mime"] == "image/jpeg"


class TestDominantColors:
    def test_quantize(self):
        assert _quantize(0) == 0
        assert _quantize(200) == 192
        assert _quantize(250) == 255

    def test_solid_image_single_bucket(self):
        img = Image.new("RGB", (50, 50), (200, 30, 30))
        colors = dominant_colors(img)
        assert len(colors) == 1
        assert colors[0].rgb == (192, 32, 32)
        assert colors[0].coverage == pytest.approx(1.0)

    def test_two_halves(self):
        img = Image.new("RGB", (100, 100), (0, 0, 0))
        img.paste((255, 255, 255), (0, 0, 100, 25))
        colors = dominant_colors(img)
        assert colors[0].rgb == (0, 0, 0)
        assert colors[1].rgb == (255, 255, 255)
        assert sum(c.coverage for c in colors) == pytest.approx(1.0)
        assert colors[0].coverage == pytest.approx(0.75)


class TestFilenameLabels:
    def test_matches_patterns(self):
        labels = filename_labels("My_iPhone_back.JPG")
        assert [lb.name for lb in labels] == ["Phone"]
        assert labels[0].confidence == FILENAME_LABEL_CONFIDENCE

    def test_no_match(self):
        assert filename_labels("IMG_0001.jpg") == []


@pytest.mark.asyncio
class TestLocalProvider:
    async def test_detect(self, image_bytes):
        result = await LocalProvider().detect(image_bytes, AnalysisOptions(filename="sofa.png"))
        assert result.provider == "local"
        assert result.is_fallback
        assert result.objects == []
        assert [lb.name for lb in result.labels] == ["Furniture"]
        assert result.colors
        assert result.image_properties["format"] == "PNG"
