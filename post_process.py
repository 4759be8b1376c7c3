"""
Global post-processing over the union of every kind's instances:
geometry-based deduplication (alias preserving) and importance ranking.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass, replace
from typing import List, Sequence

from detection_types import DetectedInstance, normalize_category
from geom.box_math import DEFAULT_THRESHOLDS, NORM_MAX, DedupThresholds, box_area, box_center, is_same_instance

_TRAILING_HASH_NUM = re.compile(r"\s+#\d+$")
_TRAILING_NUM = re.compile(r"\s+\d+$")


@dataclass(frozen=True)
class ImportanceWeights:
    """Hand-tuned weights of the importance score; they sum to 1."""
    area: float = 0.30
    centrality: float = 0.25
    vertical: float = 0.15
    rarity_family: float = 0.20
    rarity_category: float = 0.10


DEFAULT_WEIGHTS = ImportanceWeights()


def _clamp01(v: float) -> float:
    return max(0.0, min(1.0, v))


def merge_aliases(target: DetectedInstance, incoming: DetectedInstance) -> DetectedInstance:
    aliases = set(target.aliases) | set(incoming.aliases)
    if incoming.label and incoming.label != target.label:
        aliases.add(incoming.label)
    if not aliases:
        return target
    return replace(target, aliases=tuple(sorted(aliases)))


def _same_category(a: str, b: str) -> bool:
    a = normalize_category(a)
    b = normalize_category(b)
    return a == b or a == "other" or b == "other"


def dedupe_instances(
    instances: Sequence[DetectedInstance],
    thresholds: DedupThresholds = DEFAULT_THRESHOLDS,
) -> List[DetectedInstance]:
    """First-wins geometric dedup.

    Each instance is compared with the survivors so far; on a match the
    survivor keeps its box and gains the incoming label as an alias. Boxes of
    different categories (neither 'other') must clear the stricter bar.
    Running it on its own output changes nothing.
    """
    kept: List[DetectedInstance] = []
    for inst in instances:
        for i, other in enumerate(kept):
            if is_same_instance(other.box, inst.box, _same_category(other.type, inst.type), thresholds):
                kept[i] = merge_aliases(other, inst)
                break
        else:
            kept.append(inst)
    return kept


def label_family(label: str) -> str:
    """'Hound #3' and 'hound 2' both belong to the 'hound' family."""
    s = (label or "").strip().lower()
    s = _TRAILING_HASH_NUM.sub("", s)
    s = _TRAILING_NUM.sub("", s)
    return s.strip()


def compute_importance(
    instances: Sequence[DetectedInstance],
    weights: ImportanceWeights = DEFAULT_WEIGHTS,
) -> List[DetectedInstance]:
    """Score every instance in [0, 1] and assign ranks 1..N by descending score.

    Terms: sqrt of normalized area, closeness to the image centre, vertical
    position (lower means more foreground), and rarity of the label family
    and of the category. Ties keep input order.
    """
    if not instances:
        return []
    total = len(instances)
    family_counts = Counter(label_family(i.label) for i in instances)
    type_counts = Counter(normalize_category(i.type) for i in instances)
    max_log = math.log(total + 1)
    half = NORM_MAX / 2
    dist_max = math.sqrt(2 * half * half)

    def rarity(count: int) -> float:
        if max_log <= 0:
            return 0.0
        return _clamp01(math.log((total + 1) / (count + 1)) / max_log)

    scores = []
    for inst in instances:
        area = box_area(inst.box) / float(NORM_MAX * NORM_MAX)
        cx, cy = box_center(inst.box)
        centrality = _clamp01(1 - math.hypot(cx - half, cy - half) / dist_max)
        score = (
            weights.area * math.sqrt(_clamp01(area))
            + weights.centrality * centrality
            + weights.vertical * _clamp01(cy / NORM_MAX)
            + weights.rarity_family * rarity(family_counts[label_family(inst.label)])
            + weights.rarity_category * rarity(type_counts[normalize_category(inst.type)])
        )
        scores.append(_clamp01(score))

    order = sorted(range(total), key=lambda i: -scores[i])
    ranks = [0] * total
    for rank, idx in enumerate(order, start=1):
        ranks[idx] = rank

    return [
        replace(inst, importance=round(scores[i], 4), importance_rank=ranks[i])
        for i, inst in enumerate(instances)
    ]


def top_ranked(instances: Sequence[DetectedInstance], n: int) -> List[DetectedInstance]:
    ranked = [i for i in instances if i.importance_rank is not None]
    ranked.sort(key=lambda i: i.importance_rank)
    return ranked[:n]
