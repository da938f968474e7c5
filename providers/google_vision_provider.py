"""
Google Cloud Vision provider — one batched images:annotate call over aiohttp.

All seven features are requested in a single round trip. A feature key that
is missing from the response simply means nothing was detected; a non-200
status, a transport error/timeout, or a body without responses[0] is a
provider failure (ProviderUnavailable) and the manager falls back locally.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import time

import aiohttp

import config
from errors import ProviderUnavailable
from providers.base import (
    AnalysisOptions, AnalysisResult, DetectedObject, DominantColor,
    Label, Landmark, TextFragment, VisionProvider,
)

logger = logging.getLogger(__name__)

FEATURES: list[dict] = [
    {"type": "OBJECT_LOCALIZATION", "maxResults": 10},
    {"type": "LABEL_DETECTION",     "maxResults": 20},
    {"type": "TEXT_DETECTION",      "maxResults": 10},
    {"type": "IMAGE_PROPERTIES"},
    {"type": "LANDMARK_DETECTION",  "maxResults": 5},
    {"type": "FACE_DETECTION",      "maxResults": 1},
    {"type": "SAFE_SEARCH_DETECTION"},
]

_SAFE_SEARCH_KEYS = ("adult", "spoof", "medical", "violence", "racy")


def build_request(image_bytes: bytes) -> dict:
    return {
        "requests": [{
            "image": {"content": base64.b64encode(image_bytes).decode("ascii")},
            "features": FEATURES,
        }]
    }


def _vertices(poly: dict | None) -> list[dict] | None:
    if not poly:
        return None
    return poly.get("normalizedVertices") or poly.get("vertices") or None


def parse_response(annotations: dict, provider: str = "google_vision") -> AnalysisResult:
    """Convert one entry of `responses` into an AnalysisResult (detections only)."""
    objects = [
        DetectedObject(
            name=o.get("name", ""),
            confidence=float(o.get("score", 0.0)),
            bounds=_vertices(o.get("boundingPoly")),
        )
        for o in annotations.get("localizedObjectAnnotations", [])
    ]
    labels = [
        Label(name=lb.get("description", ""), confidence=float(lb.get("score", 0.0)))
        for lb in annotations.get("labelAnnotations", [])
    ]
    # Text detection carries no score; the API only returns what it is sure about
    text = [
        TextFragment(text=t.get("description", ""), confidence=1.0,
                     bounds=_vertices(t.get("boundingPoly")))
        for t in annotations.get("textAnnotations", [])
    ]

    colors = []
    props = annotations.get("imagePropertiesAnnotation", {})
    for c in props.get("dominantColors", {}).get("colors", []):
        rgb = c.get("color", {})
        colors.append(DominantColor(
            r=int(rgb.get("red", 0)),
            g=int(rgb.get("green", 0)),
            b=int(rgb.get("blue", 0)),
            score=float(c.get("score", 0.0)),
            coverage=float(c.get("pixelFraction", 0.0)),
        ))

    landmarks = [
        Landmark(name=lm.get("description", ""), confidence=float(lm.get("score", 0.0)))
        for lm in annotations.get("landmarkAnnotations", [])
    ]

    safe = annotations.get("safeSearchAnnotation")
    explicit = {k: safe.get(k, "UNKNOWN") for k in _SAFE_SEARCH_KEYS} if safe else {}

    return AnalysisResult(
        provider=provider,
        objects=objects,
        labels=labels,
        text=text,
        colors=colors,
        landmarks=landmarks,
        faces_present=bool(annotations.get("faceAnnotations")),
        explicit_content=explicit,
    )


class GoogleVisionProvider(VisionProvider):

    def __init__(
        self,
        api_key: str,
        endpoint: str | None = None,
        timeout_secs: float | None = None,
    ):
        self.name      = "google_vision"
        self._api_key  = api_key
        self._endpoint = endpoint or config.VISION_ENDPOINT
        self._timeout  = aiohttp.ClientTimeout(total=timeout_secs or config.VISION_TIMEOUT_SECS)

    async def detect(self, image_bytes: bytes, options: AnalysisOptions) -> AnalysisResult:
        t0 = time.monotonic()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self._endpoint,
                    params={"key": self._api_key},
                    json=build_request(image_bytes),
                    timeout=self._timeout,
                ) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        raise ProviderUnavailable(self.name, f"HTTP {resp.status}: {body[:200]}")
                    data = await resp.json()
        except asyncio.TimeoutError as exc:
            raise ProviderUnavailable(self.name, "request timed out") from exc
        except aiohttp.ClientError as exc:
            raise ProviderUnavailable(self.name, f"transport error: {exc}") from exc

        responses = data.get("responses") if isinstance(data, dict) else None
        if not responses:
            raise ProviderUnavailable(self.name, "response has no responses[0]")
        first = responses[0]
        if "error" in first:
            raise ProviderUnavailable(self.name, first["error"].get("message", "annotate error"))

        result = parse_response(first, self.name)
        logger.info(
            "[%s] %s: %d objects, %d labels, %d text, %d colors in %dms",
            self.name, options.image_ref or "image", len(result.objects), len(result.labels),
            len(result.text), len(result.colors), int((time.monotonic() - t0) * 1000),
        )
        return result
