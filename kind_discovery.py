"""
Kind discovery: which object categories are in the artwork, and how each
one should be detected.

Single-scale discovery asks once on the full image. Multi-scale discovery
also asks on the four 55% quadrants and then has the model reconcile the
per-scale findings against the full image, which filters artifacts and
tells us which quadrants hold small kinds.
"""

import functools
import logging
import math
from typing import Dict, Iterable, List, Optional, Sequence

from adaptive_tiler import quadrant_regions
from ai_pool import run_all
from detection_types import COUNT_LEVELS, IMPORTANCE_LEVELS, SIZE_LEVELS, ObjectKind, Region, RunReport
from prompts import get_discovery_prompt, get_reconciliation_prompt
from scan_errors import InferenceError, format_error
from schemas import DiscoveryResult, KindEntry, ReconciliationResult

logger = logging.getLogger(__name__)

DISCOVERY_TEMPERATURE = 0.2


def _kind_key(category: str, label: str) -> str:
    return f"{category}:{label.strip().lower()}"


def _entry_to_kind(entry: KindEntry) -> ObjectKind:
    return ObjectKind(
        label=entry.kind.strip().lower(),
        category=entry.type,
        estimated_count=entry.estimated_count,
        estimated_size=entry.estimated_size,
        segmentation=entry.segmentation,
        importance=entry.importance,
    )


def dedupe_kinds(kinds: Iterable[ObjectKind]) -> List[ObjectKind]:
    """Merge kinds sharing category and label; keep the higher count and the smaller size."""
    seen: Dict[str, ObjectKind] = {}
    for k in kinds:
        key = _kind_key(k.category, k.label)
        existing = seen.get(key)
        if existing is None:
            seen[key] = k
            continue
        count = existing.estimated_count
        if COUNT_LEVELS[k.estimated_count] > COUNT_LEVELS[count]:
            count = k.estimated_count
        size = existing.estimated_size
        if SIZE_LEVELS[k.estimated_size] < SIZE_LEVELS[size]:
            size = k.estimated_size
        seen[key] = ObjectKind(
            label=existing.label,
            category=existing.category,
            estimated_count=count,
            estimated_size=size,
            segmentation=existing.segmentation,
            importance=existing.importance,
            scope=existing.scope,
            regions=existing.regions,
        )
    return list(seen.values())


def cap_kinds(kinds: Sequence[ObjectKind], max_kinds: int) -> List[ObjectKind]:
    """Keep at most max_kinds, primaries first; order within a class is preserved."""
    ordered = sorted(kinds, key=lambda k: IMPORTANCE_LEVELS[k.importance])
    return ordered[:max_kinds]


def filter_only_kinds(kinds: Sequence[ObjectKind], only: Optional[Sequence[str]]) -> List[ObjectKind]:
    if not only:
        return list(kinds)
    wanted = {o.strip().lower() for o in only if o.strip()}
    return [k for k in kinds if k.label.lower() in wanted]


def discover_kinds(pool, image_bytes: bytes, max_kinds: int) -> List[ObjectKind]:
    """One discovery call; raises the classified InferenceError on failure.

    max_kinds only shapes the prompt. The answer is returned uncapped so
    cap_kinds can rank it by importance.
    """
    result = pool.generate_object(
        get_discovery_prompt(max_kinds), image_bytes, DiscoveryResult, DISCOVERY_TEMPERATURE
    ).result()
    return dedupe_kinds(_entry_to_kind(e) for e in result.kinds)


def reconcile_kinds(
    pool,
    image_bytes: bytes,
    full_kinds: Sequence[ObjectKind],
    quadrant_kinds: Dict[str, List[ObjectKind]],
    max_kinds: int,
) -> List[ObjectKind]:
    prompt = get_reconciliation_prompt(full_kinds, quadrant_kinds, max_kinds)
    result = pool.generate_object(prompt, image_bytes, ReconciliationResult, DISCOVERY_TEMPERATURE).result()
    kinds = []
    for entry in result.kinds:
        if not entry.is_real:
            logger.info("reconcile: dropping artifact %r", entry.kind)
            continue
        base = _entry_to_kind(entry)
        kinds.append(ObjectKind(
            label=base.label,
            category=base.category,
            estimated_count=base.estimated_count,
            estimated_size=base.estimated_size,
            segmentation=base.segmentation,
            importance=base.importance,
            scope=entry.detection_scale,
            regions=tuple(entry.quadrants),
        ))
    return dedupe_kinds(kinds)


def _discover_quadrant(pool, images, region, max_kinds: int) -> List[ObjectKind]:
    try:
        kinds = cap_kinds(discover_kinds(pool, images.region_bytes(region), max_kinds), max_kinds)
    except (InferenceError, OSError, ValueError) as e:
        logger.warning("[%s] discovery failed. %s", region.path, format_error(e))
        return []
    logger.info("[%s] found %d kind(s)", region.path, len(kinds))
    return kinds


def discover_multiscale(pool, images, max_kinds: int, report: Optional[RunReport] = None) -> List[ObjectKind]:
    """Full image plus quadrant discovery, reconciled against the full image.

    A failed quadrant contributes nothing; a failed reconciliation falls back
    to the full-image kinds.
    """
    full_bytes = images.region_bytes(_full_region(images))
    quadrants = quadrant_regions(images.width, images.height)
    per_quadrant = math.ceil(max_kinds / 2)

    calls = [functools.partial(discover_kinds, pool, full_bytes, max_kinds)]
    calls += [functools.partial(_discover_quadrant, pool, images, q, per_quadrant) for q in quadrants]
    try:
        results = run_all(calls, name="discover")
    except InferenceError as e:
        logger.error("full-image discovery failed. %s", format_error(e))
        if report is not None:
            report.discovery_failed = True
        return []

    full_kinds = results[0]
    quadrant_kinds = {q.path: kinds for q, kinds in zip(quadrants, results[1:])}
    logger.info(
        "discovery: %d kind(s) on full image, %d across quadrants",
        len(full_kinds), sum(len(k) for k in quadrant_kinds.values()),
    )
    try:
        return reconcile_kinds(pool, full_bytes, full_kinds, quadrant_kinds, max_kinds)
    except InferenceError as e:
        logger.warning("reconciliation failed, using full-image kinds. %s", format_error(e))
        return full_kinds


def _full_region(images) -> Region:
    return Region.full(images.width, images.height)


def run_discovery(
    pool,
    images,
    max_kinds: int,
    multi_scale: bool = False,
    only_kinds: Optional[Sequence[str]] = None,
    report: Optional[RunReport] = None,
) -> List[ObjectKind]:
    """Discover, cap and filter the kinds for one run. Never raises on inference failure."""
    if multi_scale:
        kinds = discover_multiscale(pool, images, max_kinds, report)
    else:
        try:
            kinds = discover_kinds(pool, images.region_bytes(_full_region(images)), max_kinds)
        except InferenceError as e:
            logger.error("discovery failed. %s", format_error(e))
            if report is not None:
                report.discovery_failed = True
            kinds = []
    kinds = cap_kinds(kinds, max_kinds)
    filtered = filter_only_kinds(kinds, only_kinds)
    if only_kinds:
        logger.info("only-kinds: processing %d of %d kind(s)", len(filtered), len(kinds))
    return filtered
