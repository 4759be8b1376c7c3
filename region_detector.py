"""
Detect + verify for a single (region, kind) pair.

One detection call proposes boxes; zero or more verification rounds show
the model a numbered overlay of the current boxes and apply its removals,
corrections and additions until the set is stable, the model declares it
complete, or the verify rounds run out.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from detection_types import (
    OUTCOME_COMPLETE,
    OUTCOME_FAILED,
    OUTCOME_MAX_ROUNDS,
    OUTCOME_SKIPPED,
    OUTCOME_STABLE,
    DetectedInstance,
    ObjectKind,
    RunReport,
)
from geom.box_math import DEFAULT_THRESHOLDS, DedupThresholds, box_area, box_center, normalize_box
from image_ops import build_numbered_overlay
from post_process import dedupe_instances
from prompts import get_detection_prompt, get_verification_prompt
from scan_errors import InferenceError, format_error
from schemas import DetectionResult, VerificationResult

logger = logging.getLogger(__name__)

DETECT_TEMPERATURE = 0.15
VERIFY_TEMPERATURE = 0.1
AREA_MASS_MAX_BOXES = 5
REPRESENTATIVE_CAP = 8
REPRESENTATIVE_MIN_SEPARATION = 80
REPRESENTATIVE_MIN_PICKS = 3


@dataclass
class RegionDetection:
    instances: List[DetectedInstance]
    outcome: str
    rounds: int = 0


def apply_verification(
    instances: Sequence[DetectedInstance],
    verification: VerificationResult,
    kind: ObjectKind,
    region_path: str = "root",
    depth: int = 0,
) -> Tuple[List[DetectedInstance], bool]:
    """Apply one verification round; returns (new instances, changed).

    Removals go first. Correction indices refer to the pre-removal numbering
    and are shifted down by the number of removed indices below them.
    A correction that repeats the current box is not a change. Missing boxes
    are appended last. Out-of-range indices are ignored.
    """
    n = len(instances)
    wrong = {i for i in verification.wrong_indices if 0 <= i < n}
    kept = [inst for i, inst in enumerate(instances) if i not in wrong]
    changed = bool(wrong)

    corrected = 0
    for corr in verification.corrections:
        if corr.index in wrong:
            continue
        adjusted = corr.index - sum(1 for w in wrong if w < corr.index)
        if 0 <= adjusted < len(kept) and normalize_box(corr.box_2d) != kept[adjusted].box:
            kept[adjusted] = kept[adjusted].with_box(corr.box_2d)
            corrected += 1
    if corrected:
        changed = True

    for m in verification.missing:
        kept.append(DetectedInstance.create(kind.label, kind.category, m.box_2d, region_path, depth))
    if verification.missing:
        changed = True

    return kept, changed


def select_representative(instances: Sequence[DetectedInstance], cap: int = REPRESENTATIVE_CAP) -> List[DetectedInstance]:
    """Pick up to `cap` larger, spatially spread instances.

    Larger boxes are considered first; a candidate is taken when its centre is
    more than 80 units from every pick so far (the first three are always
    taken). Leftover slots are filled with the largest remaining boxes.
    """
    if len(instances) <= cap:
        return list(instances)
    order = sorted(range(len(instances)), key=lambda i: box_area(instances[i].box), reverse=True)
    picked = [order[0]]
    for idx in order[1:]:
        if len(picked) >= cap:
            break
        cx, cy = box_center(instances[idx].box)
        min_dist = min(
            math.hypot(cx - sx, cy - sy)
            for sx, sy in (box_center(instances[p].box) for p in picked)
        )
        if min_dist > REPRESENTATIVE_MIN_SEPARATION or len(picked) < REPRESENTATIVE_MIN_PICKS:
            picked.append(idx)
    for idx in order:
        if len(picked) >= cap:
            break
        if idx not in picked:
            picked.append(idx)
    return [instances[i] for i in picked[:cap]]


class RegionDetector:
    def __init__(
        self,
        pool,
        max_verify_rounds: int = 2,
        representative_cap: int = REPRESENTATIVE_CAP,
        thresholds: DedupThresholds = DEFAULT_THRESHOLDS,
        report: Optional[RunReport] = None,
    ) -> None:
        self.pool = pool
        self.max_verify_rounds = max_verify_rounds
        self.representative_cap = representative_cap
        self.thresholds = thresholds
        self.report = report if report is not None else RunReport()

    def _detect(self, image: bytes, kind: ObjectKind, region_path: str, depth: int) -> List[DetectedInstance]:
        result = self.pool.generate_object(get_detection_prompt(kind), image, DetectionResult, DETECT_TEMPERATURE).result()
        # The label is forced to the kind; the model's own label is ignored.
        instances = [
            DetectedInstance.create(kind.label, kind.category, o.box_2d, region_path, depth)
            for o in result.objects
        ]
        if kind.segmentation == "area_mass":
            instances = instances[:AREA_MASS_MAX_BOXES]
        return instances

    def detect(self, image: bytes, kind: ObjectKind, region_path: str = "root", depth: int = 0) -> List[DetectedInstance]:
        """One detection call; a failed call yields no instances and is recorded."""
        try:
            return self._detect(image, kind, region_path, depth)
        except InferenceError as e:
            logger.warning("[%s] %s: detection failed. %s", region_path, kind.label, format_error(e))
            self.report.region_failed(f"{kind.label}@{region_path}")
            return []

    def verify_round(self, image: bytes, kind: ObjectKind, instances: Sequence[DetectedInstance]) -> VerificationResult:
        overlay = build_numbered_overlay(image, instances, kind.category, kind.label)
        prompt = get_verification_prompt(kind, len(instances))
        return self.pool.generate_object(prompt, overlay, VerificationResult, VERIFY_TEMPERATURE).result()

    def detect_and_verify(self, image: bytes, kind: ObjectKind, region_path: str = "root", depth: int = 0) -> RegionDetection:
        tag = f"[{region_path}] {kind.label}:"
        try:
            instances = self._detect(image, kind, region_path, depth)
        except InferenceError as e:
            logger.warning("%s detection failed. %s", tag, format_error(e))
            self.report.region_failed(f"{kind.label}@{region_path}")
            return RegionDetection([], OUTCOME_FAILED, 0)
        logger.info("%s found %d instance(s)", tag, len(instances))

        if kind.segmentation == "area_mass":
            return RegionDetection(instances, OUTCOME_SKIPPED, 0)

        max_rounds = self.max_verify_rounds
        if max_rounds <= 0 or not instances:
            return RegionDetection(self._cap(instances, kind), OUTCOME_SKIPPED, 0)

        outcome = OUTCOME_MAX_ROUNDS
        rounds = 0
        for round_no in range(max_rounds):
            logger.debug("%s verify %d/%d", tag, round_no + 1, max_rounds)
            try:
                verification = self.verify_round(image, kind, instances)
            except InferenceError as e:
                logger.warning("%s verification failed. %s", tag, format_error(e))
                self.report.verification_failed()
                outcome = OUTCOME_FAILED
                break
            rounds += 1
            before = len(instances)
            instances, changed = apply_verification(instances, verification, kind, region_path, depth)
            if not changed:
                outcome = OUTCOME_STABLE
                break
            logger.info("%s round %d: %d -> %d box(es)", tag, rounds, before, len(instances))
            deduped = dedupe_instances(instances, self.thresholds)
            if len(deduped) < len(instances):
                logger.info("%s deduped %d -> %d", tag, len(instances), len(deduped))
            instances = deduped
            if verification.complete:
                outcome = OUTCOME_COMPLETE
                break

        return RegionDetection(self._cap(instances, kind), outcome, rounds)

    def _cap(self, instances: List[DetectedInstance], kind: ObjectKind) -> List[DetectedInstance]:
        if kind.segmentation == "representative":
            return select_representative(instances, self.representative_cap)
        return instances
