"""
Shared types and base class for all vision providers.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Optional

# Name the local fallback reports in AnalysisResult.provider
FALLBACK_PROVIDER = "local"


# ── Detections ────────────────────────────────────────────────────────────────

@dataclass
class DetectedObject:
    name: str
    confidence: float
    bounds: Optional[list[dict]] = None     # polygon vertices, normalised when available


@dataclass
class Label:
    name: str
    confidence: float


@dataclass
class TextFragment:
    text: str
    confidence: float = 1.0
    bounds: Optional[list[dict]] = None


@dataclass
class DominantColor:
    r: int
    g: int
    b: int
    score: float
    coverage: float                         # fraction of the image this colour covers

    @property
    def rgb(self) -> tuple[int, int, int]:
        return self.r, self.g, self.b


@dataclass
class Landmark:
    name: str
    confidence: float


@dataclass
class AnalysisOptions:
    """Per-call hints. The filename feeds the fallback's keyword labels."""
    filename: str = ""
    image_ref: str = ""                     # e.g. "image 42", used in log lines


# ── Shared result type ────────────────────────────────────────────────────────

@dataclass
class AnalysisResult:
    """
    Everything known about one image: raw detections plus the suggestions
    derived from them. Treated as immutable once derivation has run; the
    pipeline builds new instances with dataclasses.replace().
    """
    provider: str                           # e.g. "google_vision" or "local"
    objects: list[DetectedObject] = field(default_factory=list)
    labels: list[Label] = field(default_factory=list)
    text: list[TextFragment] = field(default_factory=list)
    colors: list[DominantColor] = field(default_factory=list)
    landmarks: list[Landmark] = field(default_factory=list)
    faces_present: bool = False
    explicit_content: dict[str, str] = field(default_factory=dict)
    image_properties: dict = field(default_factory=dict)

    # derived
    suggested_category: Optional[int] = None
    category_name: Optional[str] = None
    suggested_title: str = ""
    suggested_description: str = ""
    suggested_price: Optional[float] = None
    price_range: Optional[tuple[float, float]] = None
    suggested_condition: Optional[str] = None
    confidence_scores: dict[str, float] = field(default_factory=dict)

    @property
    def is_fallback(self) -> bool:
        return self.provider == FALLBACK_PROVIDER

    @property
    def mean_confidence(self) -> float:
        scores = list(self.confidence_scores.values())
        return sum(scores) / len(scores) if scores else 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.price_range is not None:
            data["price_range"] = list(self.price_range)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AnalysisResult":
        price_range = data.get("price_range")
        return cls(
            provider=data.get("provider", FALLBACK_PROVIDER),
            objects=[DetectedObject(**o) for o in data.get("objects", [])],
            labels=[Label(**lb) for lb in data.get("labels", [])],
            text=[TextFragment(**t) for t in data.get("text", [])],
            colors=[DominantColor(**c) for c in data.get("colors", [])],
            landmarks=[Landmark(**lm) for lm in data.get("landmarks", [])],
            faces_present=bool(data.get("faces_present", False)),
            explicit_content=dict(data.get("explicit_content", {})),
            image_properties=dict(data.get("image_properties", {})),
            suggested_category=data.get("suggested_category"),
            category_name=data.get("category_name"),
            suggested_title=data.get("suggested_title", ""),
            suggested_description=data.get("suggested_description", ""),
            suggested_price=data.get("suggested_price"),
            price_range=tuple(price_range) if price_range else None,
            suggested_condition=data.get("suggested_condition"),
            confidence_scores=dict(data.get("confidence_scores", {})),
        )


# ── Abstract base ─────────────────────────────────────────────────────────────

class VisionProvider(ABC):
    """Base class all vision providers must implement."""

    name: str           # e.g. "google_vision"

    @abstractmethod
    async def detect(self, image_bytes: bytes, options: AnalysisOptions) -> AnalysisResult:
        """
        Run detection on image_bytes and return an AnalysisResult with the raw
        detections filled in. Remote providers raise ProviderUnavailable on any
        transport or response failure.
        """
        ...
