"""Geometry helpers for boxes in the normalized 0..1000 image space."""

from .box_math import (
    NORM_MAX,
    BoxSimilarity,
    DedupThresholds,
    box_area,
    box_center,
    intersection_area,
    is_clipped_at_boundary,
    is_same_instance,
    map_global_box_to_region,
    map_region_box_to_global,
    normalize_box,
    similarity,
)

__all__ = [
    "NORM_MAX",
    "BoxSimilarity",
    "DedupThresholds",
    "box_area",
    "box_center",
    "intersection_area",
    "is_clipped_at_boundary",
    "is_same_instance",
    "map_global_box_to_region",
    "map_region_box_to_global",
    "normalize_box",
    "similarity",
]
