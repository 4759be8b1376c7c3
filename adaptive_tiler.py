"""
Per-kind detection strategy and recursive spatial subdivision.

AdaptiveTiler.detect_kind() chooses between a single full-image pass, the
four fixed 55% quadrants, or count-driven recursive quadtree subdivision.
Every level collects its children's results into fresh lists and merges
them with the geometric dedup on the way back up.
"""

import functools
import logging
import math
from typing import Iterable, List, Optional

from ai_pool import run_all
from detection_types import (
    REGION_TAGS,
    DetectedInstance,
    ObjectKind,
    Region,
    RunReport,
    is_dense,
)
from geom.box_math import DEFAULT_THRESHOLDS, DedupThresholds, is_clipped_at_boundary, map_region_box_to_global
from post_process import dedupe_instances
from prompts import get_count_estimate_prompt
from region_detector import RegionDetector
from scan_errors import InferenceError, format_error
from schemas import CountEstimateResult

logger = logging.getLogger(__name__)

QUADRANT_OVERLAP_PCT = 0.15
QUADRANT_SCALE_PCT = 55
COUNT_ESTIMATE_TEMPERATURE = 0.1


def subdivide(region: Region, image_w: int, image_h: int, overlap: float = QUADRANT_OVERLAP_PCT) -> List[Region]:
    """Split a region into four overlapping children q00 q01 q10 q11, clamped to the image."""
    half_w = region.width // 2
    half_h = region.height // 2
    ox = int(math.floor(half_w * overlap + 0.5))
    oy = int(math.floor(half_h * overlap + 0.5))
    right = region.left + region.width
    bottom = region.top + region.height
    mid_x = region.left + half_w
    mid_y = region.top + half_h
    spans = {
        (0, 0): (region.left, region.top, mid_x + ox, mid_y + oy),
        (0, 1): (mid_x - ox, region.top, right, mid_y + oy),
        (1, 0): (region.left, mid_y - oy, mid_x + ox, bottom),
        (1, 1): (mid_x - ox, mid_y - oy, right, bottom),
    }
    children = []
    for (row, col), (l, t, r, b) in spans.items():
        l = max(0, l)
        t = max(0, t)
        r = min(image_w, r)
        b = min(image_h, b)
        children.append(Region(l, t, r - l, b - t, f"{region.path}.q{row}{col}", region.depth + 1))
    return children


def quadrant_regions(image_w: int, image_h: int) -> List[Region]:
    """The four fixed 55% quadrants named by region tag; neighbours overlap by 10%."""
    half_w = image_w * QUADRANT_SCALE_PCT // 100
    half_h = image_h * QUADRANT_SCALE_PCT // 100
    off_x = image_w * (100 - QUADRANT_SCALE_PCT) // 100
    off_y = image_h * (100 - QUADRANT_SCALE_PCT) // 100
    return [
        Region(0, 0, half_w, half_h, "top-left", 1),
        Region(off_x, 0, image_w - off_x, half_h, "top-right", 1),
        Region(0, off_y, half_w, image_h - off_y, "bottom-left", 1),
        Region(off_x, off_y, image_w - off_x, image_h - off_y, "bottom-right", 1),
    ]


class AdaptiveTiler:
    def __init__(
        self,
        pool,
        detector: RegionDetector,
        images,
        max_depth: int = 3,
        min_tile_size: int = 256,
        tile_threshold: int = 12,
        edge_threshold: int = 15,
        thresholds: DedupThresholds = DEFAULT_THRESHOLDS,
        report: Optional[RunReport] = None,
    ) -> None:
        self.pool = pool
        self.detector = detector
        self.images = images
        self.max_depth = max_depth
        self.min_tile_size = min_tile_size
        self.tile_threshold = tile_threshold
        self.edge_threshold = edge_threshold
        self.thresholds = thresholds
        self.report = report if report is not None else detector.report

    @property
    def tiling_enabled(self) -> bool:
        return self.tile_threshold > 0

    @property
    def image_w(self) -> int:
        return self.images.width

    @property
    def image_h(self) -> int:
        return self.images.height

    def detect_kind(self, kind: ObjectKind) -> List[DetectedInstance]:
        full = Region.full(self.image_w, self.image_h)

        if kind.segmentation in ("area_mass", "representative"):
            logger.info("%s: %s detection on full image", kind.label, kind.segmentation)
            return self._detect_region(full, kind, drop_clipped=False)

        if kind.scope == "subregion":
            if not kind.regions:
                logger.warning("%s: subregion scope without quadrants, skipping", kind.label)
                return []
            logger.info("%s: quadrants %s", kind.label, ", ".join(kind.regions))
            return self._detect_on_quadrants(kind, kind.regions)

        if self.tiling_enabled:
            if kind.estimated_size == "tiny":
                # A full-image count estimate is unreliable at this scale.
                logger.info("%s: tiny, detecting on 4 quadrants", kind.label)
                return self._detect_on_quadrants(kind, REGION_TAGS)
            small = kind.estimated_size == "small"
            dense = is_dense(kind.estimated_count, self.tile_threshold)
            if small or dense:
                depth_cap = 2 if small and not dense else 3
                max_depth = min(self.max_depth, depth_cap)
                logger.info(
                    "%s: adaptive tiling (size=%s, count=%s, max depth %d)",
                    kind.label, kind.estimated_size, kind.estimated_count, max_depth,
                )
                return self._adaptive(full, kind, max_depth)

        logger.info("%s: full image detect+verify", kind.label)
        return self._detect_region(full, kind, drop_clipped=False)

    # ------------------------------------------------------------------
    def _detect_region(self, region: Region, kind: ObjectKind, drop_clipped: bool) -> List[DetectedInstance]:
        """Detect+verify inside one region and map the survivors to full-image coordinates."""
        try:
            image = self.images.region_bytes(region)
        except (OSError, ValueError) as e:
            logger.warning("[%s] %s: crop failed. %s", region.path, kind.label, format_error(e))
            self.report.region_failed(f"{kind.label}@{region.path}")
            return []

        result = self.detector.detect_and_verify(image, kind, region.path, region.depth)
        if region.is_full_image(self.image_w, self.image_h):
            return result.instances

        mapped = []
        clipped = 0
        for inst in result.instances:
            if drop_clipped and is_clipped_at_boundary(inst.box, region, self.image_w, self.image_h, self.edge_threshold):
                clipped += 1
                continue
            mapped.append(inst.with_box(map_region_box_to_global(inst.box, region, self.image_w, self.image_h)))
        if clipped:
            logger.info("[%s] %s: filtered %d boundary-clipped box(es)", region.path, kind.label, clipped)
        return mapped

    def _merge(self, parts: Iterable[List[DetectedInstance]], kind: ObjectKind, where: str) -> List[DetectedInstance]:
        combined = [inst for part in parts for inst in part]
        merged = dedupe_instances(combined, self.thresholds)
        if len(merged) < len(combined):
            logger.info("[%s] %s: merge %d -> %d", where, kind.label, len(combined), len(merged))
        return merged

    def _detect_on_quadrants(self, kind: ObjectKind, tags) -> List[DetectedInstance]:
        regions = [q for q in quadrant_regions(self.image_w, self.image_h) if q.path in tags]
        parts = run_all(
            [functools.partial(self._detect_region, q, kind, False) for q in regions],
            name=f"quadrant-{kind.label}",
        )
        return self._merge(parts, kind, "quadrants")

    def estimate_count(self, region: Region, kind: ObjectKind) -> Optional[str]:
        """Cheap density check for one region; None when the call failed."""
        try:
            image = self.images.region_bytes(region)
            result = self.pool.generate_object(
                get_count_estimate_prompt(kind), image, CountEstimateResult, COUNT_ESTIMATE_TEMPERATURE
            ).result()
        except (InferenceError, OSError, ValueError) as e:
            logger.warning("[%s] %s: count estimate failed, assuming dense. %s", region.path, kind.label, format_error(e))
            self.report.count_estimate_failed()
            return None
        logger.info("[%s] %s: count %s", region.path, kind.label, result.estimated_count)
        return result.estimated_count

    def _can_split(self, region: Region, max_depth: int) -> bool:
        return (
            region.depth < max_depth
            and region.width >= self.min_tile_size
            and region.height >= self.min_tile_size
        )

    def _adaptive(self, region: Region, kind: ObjectKind, max_depth: int) -> List[DetectedInstance]:
        if self._can_split(region, max_depth):
            count = self.estimate_count(region, kind)
            if count is None or is_dense(count, self.tile_threshold):
                children = subdivide(region, self.image_w, self.image_h)
                parts = run_all(
                    [functools.partial(self._adaptive, child, kind, max_depth) for child in children],
                    name=f"tile-{kind.label}",
                )
                return self._merge(parts, kind, region.path)
        return self._detect_region(region, kind, drop_clipped=True)
