"""Pydantic response schemas, one per inference call type."""

from typing import Any, List, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from detection_types import (
    coerce_count,
    coerce_importance,
    coerce_region_tag,
    coerce_scope,
    coerce_segmentation,
    coerce_size,
    normalize_category,
)
from scan_errors import SchemaViolationError

M = TypeVar("M", bound=BaseModel)


class KindEntry(BaseModel):
    kind: str = Field(min_length=1)
    type: str = "other"
    estimated_count: str = "few"
    estimated_size: str = "medium"
    segmentation: str = "exhaustive"
    importance: str = "secondary"

    @field_validator("kind", mode="before")
    @classmethod
    def _strip_kind(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("type", mode="before")
    @classmethod
    def _category(cls, v: Any) -> str:
        return normalize_category(v if isinstance(v, str) else None)

    @field_validator("estimated_count", mode="before")
    @classmethod
    def _count(cls, v: Any) -> str:
        return coerce_count(v)

    @field_validator("estimated_size", mode="before")
    @classmethod
    def _size(cls, v: Any) -> str:
        return coerce_size(v)

    @field_validator("segmentation", mode="before")
    @classmethod
    def _segmentation(cls, v: Any) -> str:
        return coerce_segmentation(v)

    @field_validator("importance", mode="before")
    @classmethod
    def _importance(cls, v: Any) -> str:
        return coerce_importance(v)


class DiscoveryResult(BaseModel):
    kinds: List[KindEntry]


class CountEstimateResult(BaseModel):
    estimated_count: str

    @field_validator("estimated_count", mode="before")
    @classmethod
    def _count(cls, v: Any) -> str:
        return coerce_count(v)


class DetectedBox(BaseModel):
    label: str = ""
    type: str = ""
    box_2d: List[float] = Field(min_length=4, max_length=4)


class DetectionResult(BaseModel):
    objects: List[DetectedBox]


class Correction(BaseModel):
    index: int
    box_2d: List[float] = Field(min_length=4, max_length=4)


class MissingBox(BaseModel):
    box_2d: List[float] = Field(min_length=4, max_length=4)


class VerificationResult(BaseModel):
    wrong_indices: List[int] = Field(default_factory=list)
    corrections: List[Correction] = Field(default_factory=list)
    missing: List[MissingBox] = Field(default_factory=list)
    complete: bool = False


class ReconciledKind(KindEntry):
    is_real: bool = True
    quadrants: List[str] = Field(default_factory=list)
    detection_scale: str = "full"

    @field_validator("quadrants", mode="before")
    @classmethod
    def _quadrants(cls, v: Any) -> List[str]:
        if not isinstance(v, list):
            return []
        tags = []
        for raw in v:
            tag = coerce_region_tag(raw if isinstance(raw, str) else None)
            if tag and tag not in tags:
                tags.append(tag)
        return tags

    @field_validator("detection_scale", mode="before")
    @classmethod
    def _scale(cls, v: Any) -> str:
        return coerce_scope(v)


class ReconciliationResult(BaseModel):
    kinds: List[ReconciledKind]


class DescriptionResult(BaseModel):
    alt_text: str
    long_description: str


def validate_response(schema: Type[M], data: Any) -> M:
    """Validate parsed JSON against `schema`; any mismatch is a SchemaViolationError."""
    if not isinstance(data, dict):
        raise SchemaViolationError(f"{schema.__name__}: expected a JSON object, got {type(data).__name__}")
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise SchemaViolationError(f"{schema.__name__}: {e.error_count()} validation error(s): {e.errors()[:3]}") from e
