"""
Core data types: feature kinds, feature vectors, documents and hits.

A Document is the per-image record produced by the extractor chain. It is
immutable once built, and so is every FeatureVector inside it.
"""

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, Mapping, NamedTuple, Optional

import numpy as np


class FeatureKind(enum.Enum):
    """The visual descriptors extracted for every indexed image."""

    SCALABLE_COLOR = "scalable_color"
    JPEG_COEFFICIENT_HISTOGRAM = "jpeg_coefficient_histogram"
    COLOR_LAYOUT = "color_layout"
    COLOR_HISTOGRAM = "color_histogram"
    TAMURA = "tamura"
    AUTO_COLOR_CORRELOGRAM = "auto_color_correlogram"
    CEDD = "cedd"
    FCTH = "fcth"
    GABOR = "gabor"
    JOINT_HISTOGRAM = "joint_histogram"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def parse(cls, value) -> "FeatureKind":
        """
        Resolve a kind from a member, its value, its name or its label.

        Matching on strings is case-insensitive, so "cedd", "CEDD" and
        "Scalable Color" all resolve.

        Raises:
            ValueError: If nothing matches.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            wanted = value.strip().lower()
            for kind in cls:
                if wanted in (kind.value, kind.name.lower(), kind.label.lower()):
                    return kind
        raise ValueError(f"Unknown feature kind: {value!r}")


_LABELS = {
    FeatureKind.SCALABLE_COLOR: "Scalable Color",
    FeatureKind.JPEG_COEFFICIENT_HISTOGRAM: "JPEG Coefficient Histogram",
    FeatureKind.COLOR_LAYOUT: "Color Layout",
    FeatureKind.COLOR_HISTOGRAM: "Color Histogram",
    FeatureKind.TAMURA: "Tamura",
    FeatureKind.AUTO_COLOR_CORRELOGRAM: "Auto Color Correlogram",
    FeatureKind.CEDD: "CEDD",
    FeatureKind.FCTH: "FCTH",
    FeatureKind.GABOR: "Gabor",
    FeatureKind.JOINT_HISTOGRAM: "Joint Histogram",
}


@dataclass(frozen=True, eq=False)
class FeatureVector:
    """
    Numeric payload produced by one extractor for one image.

    The payload is stored as a read-only 1-D float32 array. Its length is
    fixed per kind (see registry.FEATURES).
    """

    kind: FeatureKind
    payload: np.ndarray

    def __post_init__(self):
        payload = np.array(self.payload, dtype=np.float32).reshape(-1)
        if payload.size == 0:
            raise ValueError(f"Empty payload for {self.kind.label}")
        payload.setflags(write=False)
        object.__setattr__(self, "payload", payload)

    def __len__(self) -> int:
        return int(self.payload.shape[0])

    def __eq__(self, other) -> bool:
        if not isinstance(other, FeatureVector):
            return NotImplemented
        return (self.kind is other.kind
                and np.array_equal(self.payload, other.payload))

    __hash__ = None


@dataclass(frozen=True)
class Document:
    """An image identifier plus whichever feature vectors were extracted."""

    id: str
    features: Mapping[FeatureKind, FeatureVector] = field(default_factory=dict)

    def __post_init__(self):
        for kind, vector in self.features.items():
            if vector.kind is not kind:
                raise ValueError(
                    f"Feature stored under {kind.label} has kind {vector.kind.label}"
                )
        object.__setattr__(self, "features", MappingProxyType(dict(self.features)))

    @property
    def kinds(self) -> Iterator[FeatureKind]:
        return iter(self.features)

    def get(self, kind: FeatureKind) -> Optional[FeatureVector]:
        return self.features.get(kind)

    def __contains__(self, kind) -> bool:
        return kind in self.features


class SearchHit(NamedTuple):
    """One ranked search result. Lower score means a closer match."""

    document_id: str
    score: float
