import math
from dataclasses import dataclass
from typing import Any, Sequence, Tuple

NORM_MAX = 1000  # boxes live in a fixed [0, 1000] x [0, 1000] space

Box = Tuple[int, int, int, int]


@dataclass(frozen=True)
class BoxSimilarity:
    iou: float
    cover_min: float
    area_ratio: float


@dataclass(frozen=True)
class DedupThresholds:
    """Overlap bars for treating two boxes as one physical object.

    The values are hand-tuned defaults carried over from the production
    detector; pass a different instance to experiment.
    """
    iou: float = 0.88
    iou_area_ratio: float = 0.65
    cover_min: float = 0.94
    cover_area_ratio: float = 0.72
    cross_category_iou: float = 0.92
    cross_category_area_ratio: float = 0.80


DEFAULT_THRESHOLDS = DedupThresholds()


def _round_half_up(v: float) -> int:
    return int(math.floor(v + 0.5))


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def _coord(raw: Sequence[Any], i: int) -> float:
    try:
        v = float(raw[i])
    except (IndexError, TypeError, ValueError):
        return 0.0
    if math.isnan(v):
        return 0.0
    return v


def _norm_coord(v: float) -> int:
    return int(_clamp(_round_half_up(_clamp(v, -1e9, 1e9)), 0, NORM_MAX))


def normalize_box(raw: Sequence[Any]) -> Box:
    """Round, clamp to [0,1000] and reorder a raw [xmin,ymin,xmax,ymax]. Never raises."""
    x1, y1, x2, y2 = (_norm_coord(_coord(raw, i)) for i in range(4))
    return (min(x1, x2), min(y1, y2), max(x1, x2), max(y1, y2))


def box_area(box: Box) -> int:
    return max(0, box[2] - box[0]) * max(0, box[3] - box[1])


def box_center(box: Box) -> Tuple[float, float]:
    return (box[0] + box[2]) / 2.0, (box[1] + box[3]) / 2.0


def intersection_area(a: Box, b: Box) -> int:
    w = max(0, min(a[2], b[2]) - max(a[0], b[0]))
    h = max(0, min(a[3], b[3]) - max(a[1], b[1]))
    return w * h


def similarity(a: Box, b: Box) -> BoxSimilarity:
    area_a = box_area(a)
    area_b = box_area(b)
    inter = intersection_area(a, b)
    union = area_a + area_b - inter
    iou = inter / union if union > 0 else 0.0
    cover_min = inter / max(1, min(area_a, area_b))
    area_ratio = min(area_a, area_b) / max(1, max(area_a, area_b))
    return BoxSimilarity(iou=iou, cover_min=cover_min, area_ratio=area_ratio)


def is_same_instance(
    a: Box,
    b: Box,
    same_category: bool = True,
    thresholds: DedupThresholds = DEFAULT_THRESHOLDS,
) -> bool:
    """True if two boxes most likely outline the same physical object.

    Boxes of different categories (e.g. rider and horse) usually are distinct
    objects that happen to overlap, so they must also clear the stricter
    cross-category bar.
    """
    s = similarity(a, b)
    same = (s.iou >= thresholds.iou and s.area_ratio >= thresholds.iou_area_ratio) or (
        s.cover_min >= thresholds.cover_min and s.area_ratio >= thresholds.cover_area_ratio
    )
    if not same or same_category:
        return same
    return s.iou >= thresholds.cross_category_iou and s.area_ratio >= thresholds.cross_category_area_ratio


def map_region_box_to_global(box: Box, region: Any, image_w: int, image_h: int) -> Box:
    """Convert a box normalized within `region` (pixel rect) to full-image 0..1000 coords.

    `region` is anything with left/top/width/height in image pixels.
    """
    xmin, ymin, xmax, ymax = box
    px0 = region.left + (xmin / NORM_MAX) * region.width
    py0 = region.top + (ymin / NORM_MAX) * region.height
    px1 = region.left + (xmax / NORM_MAX) * region.width
    py1 = region.top + (ymax / NORM_MAX) * region.height
    return normalize_box([
        _clamp(px0 / image_w * NORM_MAX, 0, NORM_MAX),
        _clamp(py0 / image_h * NORM_MAX, 0, NORM_MAX),
        _clamp(px1 / image_w * NORM_MAX, 0, NORM_MAX),
        _clamp(py1 / image_h * NORM_MAX, 0, NORM_MAX),
    ])


def map_global_box_to_region(box: Box, region: Any, image_w: int, image_h: int) -> Box:
    """Inverse of map_region_box_to_global; parts outside the region are clamped."""
    xmin, ymin, xmax, ymax = box
    w = max(1, region.width)
    h = max(1, region.height)
    px0 = (xmin / NORM_MAX) * image_w - region.left
    py0 = (ymin / NORM_MAX) * image_h - region.top
    px1 = (xmax / NORM_MAX) * image_w - region.left
    py1 = (ymax / NORM_MAX) * image_h - region.top
    return normalize_box([
        _clamp(px0 / w * NORM_MAX, 0, NORM_MAX),
        _clamp(py0 / h * NORM_MAX, 0, NORM_MAX),
        _clamp(px1 / w * NORM_MAX, 0, NORM_MAX),
        _clamp(py1 / h * NORM_MAX, 0, NORM_MAX),
    ])


def is_clipped_at_boundary(
    box: Box,
    region: Any,
    image_w: int,
    image_h: int,
    edge_threshold: int = 15,
) -> bool:
    """True when a region-local box touches an internal region edge.

    Edges that coincide with the true image border never count: an object cut
    by the image frame is whole as far as any tile can tell.
    """
    xmin, ymin, xmax, ymax = box
    touches_left = xmin <= edge_threshold and region.left > 0
    touches_top = ymin <= edge_threshold and region.top > 0
    touches_right = xmax >= NORM_MAX - edge_threshold and region.left + region.width < image_w
    touches_bottom = ymax >= NORM_MAX - edge_threshold and region.top + region.height < image_h
    return touches_left or touches_top or touches_right or touches_bottom
