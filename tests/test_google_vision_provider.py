"""
Tests for providers/google_vision_provider.py.

Covers:
  - build_request(): base64 content, all seven features
  - parse_response(): objects, labels, text, colours, landmarks, faces, safe search
  - detect(): success via mocked aiohttp session; every failure mode
    raises ProviderUnavailable
"""
from __future__ import annotations

import asyncio
import base64
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from errors import ProviderUnavailable
from providers.base import AnalysisOptions
from providers.google_vision_provider import (
    FEATURES, GoogleVisionProvider, build_request, parse_response,
)

ANNOTATIONS = {
    "localizedObjectAnnotations": [
        {"name": "Mobile phone", "score": 0.91,
         "boundingPoly": {"normalizedVertices": [{"x": 0.1, "y": 0.1}, {"x": 0.9, "y": 0.9}]}},
    ],
    "labelAnnotations": [
        {"description": "Gadget", "score": 0.85},
        {"description": "Smartphone", "score": 0.8},
    ],
    "textAnnotations": [{"description": "SAMSUNG Galaxy"}],
    "imagePropertiesAnnotation": {"dominantColors": {"colors": [
        {"color": {"red": 20, "green": 20, "blue": 20}, "score": 0.7, "pixelFraction": 0.5},
    ]}},
    "landmarkAnnotations": [],
    "faceAnnotations": [{"joyLikelihood": "VERY_UNLIKELY"}],
    "safeSearchAnnotation": {"adult": "VERY_UNLIKELY", "violence": "UNLIKELY"},
}


def mock_session(status=200, payload=None, text="", post_error=None):
    mock_resp = AsyncMock()
    mock_resp.status = status
    mock_resp.json = AsyncMock(return_value=payload)
    mock_resp.text = AsyncMock(return_value=text)
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    if post_error is not None:
        session.post = MagicMock(side_effect=post_error)
    else:
        session.post = MagicMock(return_value=mock_resp)
    return session


@pytest.fixture
def provider():
    return GoogleVisionProvider("AIza-test", endpoint="https://vision.test/annotate",
                                timeout_secs=5)


class TestBuildRequest:
    def test_payload(self):
        body = build_request(b"\x89PNG")
        request = body["requests"][0]
        assert base64.b64decode(request["image"]["content"]) == b"\x89PNG"
        assert [f["type"] for f in request["features"]] == [f["type"] for f in FEATURES]
        assert len(FEATURES) == 7


class TestParseResponse:
    def test_full_response(self):
        result = parse_response(ANNOTATIONS)
        assert result.provider == "google_vision"
        assert [(o.name, o.confidence) for o in result.objects] == [("Mobile phone", 0.91)]
        assert result.objects[0].bounds[0] == {"x": 0.1, "y": 0.1}
        assert [lb.name for lb in result.labels] == ["Gadget", "Smartphone"]
        assert result.text[0].text == "SAMSUNG Galaxy"
        assert result.colors[0].rgb == (20, 20, 20)
        assert result.colors[0].coverage == 0.5
        assert result.faces_present is True
        assert result.explicit_content["adult"] == "VERY_UNLIKELY"
        assert result.explicit_content["racy"] == "UNKNOWN"

    def test_missing_features_mean_nothing_detected(self):
        result = parse_response({})
        assert result.objects == [] and result.labels == [] and result.colors == []
        assert result.faces_present is False
        assert result.explicit_content == {}


@pytest.mark.asyncio
class TestDetect:
    async def test_success(self, provider):
        session = mock_session(payload={"responses": [ANNOTATIONS]})
        with patch("providers.google_vision_provider.aiohttp.ClientSession", return_value=session):
            result = await provider.detect(b"img", AnalysisOptions(image_ref="image 1"))
        assert result.objects[0].name == "Mobile phone"
        _, kwargs = session.post.call_args
        assert kwargs["params"] == {"key": "AIza-test"}
        assert kwargs["json"]["requests"][0]["features"] == FEATURES

    async def test_http_error(self, provider):
        session = mock_session(status=403, text="API key not valid")
        with patch("providers.google_vision_provider.aiohttp.ClientSession", return_value=session):
            with pytest.raises(ProviderUnavailable, match="HTTP 403"):
                await provider.detect(b"img", AnalysisOptions())

    async def test_timeout(self, provider):
        session = mock_session(post_error=asyncio.TimeoutError())
        with patch("providers.google_vision_provider.aiohttp.ClientSession", return_value=session):
            with pytest.raises(ProviderUnavailable, match="timed out"):
                await provider.detect(b"img", AnalysisOptions())

    async def test_transport_error(self, provider):
        session = mock_session(post_error=aiohttp.ClientConnectionError("refused"))
        with patch("providers.google_vision_provider.aiohttp.ClientSession", return_value=session):
            with pytest.raises(ProviderUnavailable, match="transport"):
                await provider.detect(b"img", AnalysisOptions())

    async def test_empty_responses(self, provider):
        session = mock_session(payload={"responses": []})
        with patch("providers.google_vision_provider.aiohttp.ClientSession", return_value=session):
            with pytest.raises(ProviderUnavailable, match="no responses"):
                await provider.detect(b"img", AnalysisOptions())

    async def test_per_image_error(self, provider):
        session = mock_session(payload={"responses": [{"error": {"message": "Bad image data"}}]})
        with patch("providers.google_vision_provider.aiohttp.ClientSession", return_value=session):
            with pytest.raises(ProviderUnavailable, match="Bad image data"):
                await provider.detect(b"img", AnalysisOptions())
