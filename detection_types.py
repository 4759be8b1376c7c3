"""
Core value types for the detection run: kinds, regions and detected instances.
Also holds the closed vocabularies the model is asked to answer in, and the
ordinal tables used to compare count and size estimates.
"""

import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from geom.box_math import Box, normalize_box


COUNT_ESTIMATES = ("few", "moderate", "many", "very_many")
SIZE_ESTIMATES = ("tiny", "small", "medium", "large", "giant")
SEGMENTATIONS = ("exhaustive", "representative", "area_mass")
IMPORTANCE_CLASSES = ("primary", "secondary", "background")
SCOPES = ("full", "subregion")
REGION_TAGS = ("top-left", "top-right", "bottom-left", "bottom-right")
CATEGORIES = ("person", "animal", "building", "landscape", "object", "other")

COUNT_LEVELS: Dict[str, int] = {name: i + 1 for i, name in enumerate(COUNT_ESTIMATES)}
# Typical instance count behind each estimate word.
COUNT_ESTIMATE_VALUES: Dict[str, int] = {"few": 5, "moderate": 18, "many": 38, "very_many": 75}
SIZE_LEVELS: Dict[str, int] = {name: i + 1 for i, name in enumerate(SIZE_ESTIMATES)}
IMPORTANCE_LEVELS: Dict[str, int] = {name: i for i, name in enumerate(IMPORTANCE_CLASSES)}

# The model is prompted with these words, but older prompts (and some models)
# answer with synonyms.
_SEGMENTATION_ALIASES = {
    "individual": "exhaustive",
    "detect_individual": "exhaustive",
    "all": "exhaustive",
    "detect_representative": "representative",
    "sample": "representative",
    "region": "area_mass",
    "detect_region": "area_mass",
    "area": "area_mass",
    "mass": "area_mass",
}
_SCOPE_ALIASES = {"quadrant": "subregion", "quadrants": "subregion", "whole": "full"}
_COUNT_ALIASES = {"none": "few", "1": "few", "crowd": "very_many"}


def _coerce(value: Optional[str], allowed: Tuple[str, ...], aliases: Dict[str, str], default: str) -> str:
    if value is None:
        return default
    key = str(value).strip().lower()
    key = aliases.get(key, key)
    for candidate in (key, key.replace("-", "_").replace(" ", "_"), key.replace("_", "-").replace(" ", "-")):
        if candidate in allowed:
            return candidate
    return default


def coerce_count(value: Optional[str]) -> str:
    return _coerce(value, COUNT_ESTIMATES, _COUNT_ALIASES, "few")


def coerce_size(value: Optional[str]) -> str:
    return _coerce(value, SIZE_ESTIMATES, {}, "medium")


def coerce_segmentation(value: Optional[str]) -> str:
    return _coerce(value, SEGMENTATIONS, _SEGMENTATION_ALIASES, "exhaustive")


def coerce_importance(value: Optional[str]) -> str:
    return _coerce(value, IMPORTANCE_CLASSES, {}, "secondary")


def coerce_scope(value: Optional[str]) -> str:
    return _coerce(value, SCOPES, _SCOPE_ALIASES, "full")


def coerce_region_tag(value: Optional[str]) -> Optional[str]:
    tag = _coerce(value, REGION_TAGS, {}, "")
    return tag or None


def normalize_category(value: Optional[str]) -> str:
    return (value or "other").strip().lower() or "other"


def estimate_to_number(count: str) -> int:
    return COUNT_ESTIMATE_VALUES[coerce_count(count)]


def is_dense(count: str, tile_threshold: int) -> bool:
    """True when the estimated instance count exceeds tile_threshold. 0 never tiles."""
    return tile_threshold > 0 and estimate_to_number(count) > tile_threshold


@dataclass(frozen=True)
class ObjectKind:
    """A discovered object category plus the hints that pick a detection strategy."""
    label: str
    category: str
    estimated_count: str = "few"
    estimated_size: str = "medium"
    segmentation: str = "exhaustive"
    importance: str = "secondary"
    scope: str = "full"
    regions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.label,
            "type": self.category,
            "estimated_count": self.estimated_count,
            "estimated_size": self.estimated_size,
            "segmentation": self.segmentation,
            "importance": self.importance,
            "scope": self.scope,
            "regions": list(self.regions),
        }


@dataclass(frozen=True)
class Region:
    """Pixel rectangle of the source image. `path` records provenance, e.g. root.q00.q11."""
    left: int
    top: int
    width: int
    height: int
    path: str = "root"
    depth: int = 0

    @classmethod
    def full(cls, width: int, height: int) -> "Region":
        return cls(0, 0, width, height, "root", 0)

    def is_full_image(self, image_w: int, image_h: int) -> bool:
        return self.left == 0 and self.top == 0 and self.width == image_w and self.height == image_h

    def to_dict(self) -> Dict[str, object]:
        return {"left": self.left, "top": self.top, "width": self.width, "height": self.height, "path": self.path}


@dataclass(frozen=True)
class DetectedInstance:
    label: str
    type: str
    box: Box
    aliases: Tuple[str, ...] = ()
    importance: Optional[float] = None
    importance_rank: Optional[int] = None
    region_path: str = "root"
    depth: int = 0

    @classmethod
    def create(cls, label: str, type: str, raw_box, region_path: str = "root", depth: int = 0) -> "DetectedInstance":
        return cls(
            label=label.strip(),
            type=type.strip(),
            box=normalize_box(raw_box),
            region_path=region_path,
            depth=depth,
        )

    def with_box(self, raw_box) -> "DetectedInstance":
        return replace(self, box=normalize_box(raw_box))

    def to_dict(self) -> Dict[str, object]:
        out: Dict[str, object] = {
            "label": self.label,
            "type": self.type,
            "box_2d": list(self.box),
        }
        if self.importance is not None:
            out["importance"] = self.importance
            out["importance_rank"] = self.importance_rank
        if self.aliases:
            out["aliases"] = list(self.aliases)
        out["depth"] = self.depth
        return out


class RunReport:
    """Recoverable failures seen during one run; printed and written to the payload.

    Sibling regions and kinds record into the same report from worker threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.failed_kinds: List[str] = []
        self.failed_regions: List[str] = []
        self.failed_verifications = 0
        self.failed_count_estimates = 0
        self.discovery_failed = False

    def kind_failed(self, label: str) -> None:
        with self._lock:
            self.failed_kinds.append(label)

    def region_failed(self, path: str) -> None:
        with self._lock:
            self.failed_regions.append(path)

    def verification_failed(self) -> None:
        with self._lock:
            self.failed_verifications += 1

    def count_estimate_failed(self) -> None:
        with self._lock:
            self.failed_count_estimates += 1

    def has_failures(self) -> bool:
        with self._lock:
            return bool(
                self.failed_kinds
                or self.failed_regions
                or self.failed_verifications
                or self.failed_count_estimates
                or self.discovery_failed
            )

    def to_dict(self) -> Dict[str, object]:
        with self._lock:
            return {
                "failed_kinds": list(self.failed_kinds),
                "failed_regions": list(self.failed_regions),
                "failed_verifications": self.failed_verifications,
                "failed_count_estimates": self.failed_count_estimates,
                "discovery_failed": self.discovery_failed,
            }


# Terminal states of one region's detect/verify loop.
OUTCOME_STABLE = "stable"
OUTCOME_COMPLETE = "complete"
OUTCOME_MAX_ROUNDS = "max_rounds"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"
VERIFICATION_OUTCOMES = (OUTCOME_STABLE, OUTCOME_COMPLETE, OUTCOME_MAX_ROUNDS, OUTCOME_SKIPPED, OUTCOME_FAILED)
