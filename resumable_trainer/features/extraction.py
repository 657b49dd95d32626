from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Any, Mapping

from resumable_trainer.errors import TrainingConfigError
from resumable_trainer.features.vocabulary import Vocabulary, tokenize


# Bump when the feature layout changes; stored features of an older version
# are recomputed before training.
FEATURE_VERSION = 3

URL_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("has_protocol", re.compile(r"^https?://(www\.)?")),
    ("is_localhost", re.compile(r"localhost|127\.0\.0\.1")),
    ("is_file", re.compile(r"\.(jpg|png|gif|pdf|doc|zip)$", re.IGNORECASE)),
    ("has_query_params", re.compile(r"\?.*=")),
    ("is_api", re.compile(r"/api/")),
    ("has_long_number", re.compile(r"\d{4,}")),
    ("has_uuid", re.compile(r"[a-f0-9]{8}-[a-f0-9]{4}")),
)

IMPORTANT_TOKENS: frozenset[str] = frozenset(
    {
        "login", "signin", "auth",
        "checkout", "payment", "order",
        "dashboard", "admin", "settings",
        "docs", "documentation", "guide",
        "blog", "article", "post",
        "search", "results", "query",
    }
)

# url patterns + important-token count + 4 length/shape features
NUM_ENGINEERED_FEATURES = len(URL_PATTERNS) + 5


@dataclass(frozen=True)
class FeatureVector:
    url_tokens: tuple[int, ...]
    title_tokens: tuple[int, ...]
    engineered: tuple[float, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "url_tokens": list(self.url_tokens),
            "title_tokens": list(self.title_tokens),
            "engineered": list(self.engineered),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FeatureVector":
        return cls(
            url_tokens=tuple(int(t) for t in raw["url_tokens"]),
            title_tokens=tuple(int(t) for t in raw["title_tokens"]),
            engineered=tuple(float(v) for v in raw["engineered"]),
        )


@dataclass(frozen=True)
class TrainingExample:
    """A labeled tab. `category` is 1-based; 0 means uncategorised."""

    url: str
    title: str
    category: int
    training_confidence: float
    combined_confidence: float
    timestamp: int = 0
    features: FeatureVector | None = None
    feature_version: int | None = None

    def with_features(self, features: FeatureVector) -> "TrainingExample":
        return replace(self, features=features, feature_version=FEATURE_VERSION)

    def has_current_features(self) -> bool:
        return self.features is not None and self.feature_version == FEATURE_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "category": self.category,
            "training_confidence": self.training_confidence,
            "combined_confidence": self.combined_confidence,
            "timestamp": self.timestamp,
            "features": self.features.to_dict() if self.features is not None else None,
            "feature_version": self.feature_version,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TrainingExample":
        feats = raw.get("features")
        return cls(
            url=str(raw.get("url") or ""),
            title=str(raw.get("title") or ""),
            category=int(raw.get("category") or 0),
            training_confidence=float(raw.get("training_confidence", 0.0)),
            combined_confidence=float(raw.get("combined_confidence", raw.get("training_confidence", 0.0))),
            timestamp=int(raw.get("timestamp") or 0),
            features=FeatureVector.from_dict(feats) if feats else None,
            feature_version=raw.get("feature_version"),
        )


def validate_confidences(example: TrainingExample, *, where: str = "training data") -> None:
    for name in ("training_confidence", "combined_confidence"):
        value = getattr(example, name)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
            raise TrainingConfigError(f"Invalid {name} for {where} {example.url}: {value!r}")


def engineered_features(url: str, title: str) -> tuple[float, ...]:
    out = [1.0 if rx.search(url or "") else 0.0 for _, rx in URL_PATTERNS]
    tokens = tokenize(url) + tokenize(title)
    out.append(float(sum(1 for t in tokens if t in IMPORTANT_TOKENS)))
    out.append(min(len(url or ""), 500) / 500.0)
    out.append(min(len(title or ""), 200) / 200.0)
    out.append(min((url or "").count("/"), 20) / 20.0)
    out.append(min(len(tokens), 50) / 50.0)
    return tuple(out)


def extract_features(
    example: TrainingExample,
    vocabulary: Vocabulary,
    *,
    max_url_length: int,
    max_title_length: int,
) -> FeatureVector:
    return FeatureVector(
        url_tokens=tuple(vocabulary.encode(tokenize(example.url), max_url_length)),
        title_tokens=tuple(vocabulary.encode(tokenize(example.title), max_title_length)),
        engineered=engineered_features(example.url, example.title),
    )
