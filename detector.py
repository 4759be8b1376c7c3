"""
One end-to-end detection run over a single artwork image.

Phases: discover kinds, detect+verify every kind (bounded concurrency across
kinds, adaptive tiling within a kind), global dedup and importance ranking,
then the optional accessibility description and annotated image. The JSON
payload is written once at the end.
"""

import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from adaptive_tiler import AdaptiveTiler
from ai_pool import AIPool, run_with_concurrency
from config import DetectionConfig
from detection_types import DetectedInstance, ObjectKind, Region, RunReport
from image_ops import SourceImage, annotate_image
from kind_discovery import run_discovery
from llm_client import EventLogger, InferenceClient, MockInference, build_langchain_llm
from post_process import compute_importance, dedupe_instances, top_ranked
from prompts import get_description_prompt
from region_detector import RegionDetector
from scan_errors import InferenceError, format_error
from schemas import DescriptionResult

logger = logging.getLogger(__name__)

STRATEGY = "hybrid-detect-verify"
DESCRIPTION_TOP_N = 30
DESCRIPTION_TEMPERATURE = 0.2


def _default_out_path(image_path: str) -> str:
    stem, _ = os.path.splitext(image_path)
    return f"{stem}.detections.json"


def _default_annotated_path(image_path: str) -> str:
    stem, _ = os.path.splitext(image_path)
    return f"{stem}.annotated.png"


def build_inference(config: DetectionConfig, model: str, events: Optional[EventLogger]):
    if config.mock:
        return MockInference()
    llm = build_langchain_llm(model, config.api_key, timeout=config.request_timeout)
    return InferenceClient(llm, model, events=events, timeout=config.request_timeout)


def detect_all_kinds(
    tiler: AdaptiveTiler,
    kinds: List[ObjectKind],
    kind_concurrency: int,
    report: RunReport,
) -> List[DetectedInstance]:
    """Run every kind through the tiler; a kind that blows up is recorded and contributes nothing."""
    total = len(kinds)

    def run_kind(kind: ObjectKind, i: int) -> List[DetectedInstance]:
        started = time.time()
        logger.info("[%d/%d] %s (%s, %s, %s)", i + 1, total, kind.label, kind.category, kind.estimated_count, kind.segmentation)
        try:
            found = tiler.detect_kind(kind)
        except Exception as e:
            logger.error("[%d/%d] %s failed. %s", i + 1, total, kind.label, format_error(e))
            report.kind_failed(kind.label)
            return []
        logger.info("[%d/%d] %s: %d instance(s) in %.1fs", i + 1, total, kind.label, len(found), time.time() - started)
        return found

    per_kind = run_with_concurrency(kinds, kind_concurrency, run_kind)
    return [inst for found in per_kind for inst in found]


def generate_descriptions(pool: AIPool, image_bytes: bytes, objects: List[DetectedInstance]) -> Optional[Dict[str, str]]:
    grounding = top_ranked(objects, DESCRIPTION_TOP_N)
    try:
        result = pool.generate_object(
            get_description_prompt(grounding), image_bytes, DescriptionResult, DESCRIPTION_TEMPERATURE
        ).result()
    except InferenceError as e:
        logger.error("description generation failed. %s", format_error(e))
        return None
    return {"alt_text": result.alt_text, "long_description": result.long_description}


def run_detection(config: DetectionConfig, inference=None, description_inference=None) -> Dict[str, Any]:
    """Run the whole pipeline and write the payload; returns the payload dict.

    `inference` / `description_inference` override the model-backed callables
    (tests pass fakes here). Recoverable failures end up in payload["report"].
    """
    config.validate()
    out_path = config.out_path or _default_out_path(config.image_path)
    images = SourceImage.from_path(config.image_path)
    logger.info("image %s: %dx%d", config.image_path, images.width, images.height)

    events = EventLogger(config.events_log)
    report = RunReport()
    try:
        if inference is None:
            inference = build_inference(config, config.model_name, events)
        if description_inference is None:
            description_inference = (
                inference
                if config.effective_description_model == config.model_name
                else build_inference(config, config.effective_description_model, events)
            )

        pool = AIPool(
            inference,
            config.concurrency,
            base_delay=config.base_delay,
            max_retries=config.max_retries,
            name="detect",
            model=config.model_name,
            events=events,
        )
        description_pool = AIPool(
            description_inference,
            1,
            base_delay=config.base_delay,
            max_retries=config.max_retries,
            name="describe",
            model=config.effective_description_model,
            events=events,
        )

        # Phase 1: kinds
        kinds = run_discovery(
            pool,
            images,
            config.max_kinds,
            multi_scale=config.multi_scale,
            only_kinds=config.only_kinds,
            report=report,
        )
        logger.info("discovered %d kind(s)", len(kinds))
        for k in kinds:
            scope = f"[{', '.join(k.regions)}]" if k.scope == "subregion" else "[full]"
            logger.info("  %s %s (%s): %s, %s, %s %s", k.importance, k.label, k.category,
                        k.estimated_count, k.estimated_size, k.segmentation, scope)

        # Phase 2: detect + verify per kind
        detector = RegionDetector(pool, max_verify_rounds=config.verify_rounds, report=report)
        tiler = AdaptiveTiler(
            pool,
            detector,
            images,
            max_depth=config.max_depth,
            min_tile_size=config.min_tile_size,
            tile_threshold=config.tile_threshold,
            report=report,
        )
        raw = detect_all_kinds(tiler, kinds, config.kind_concurrency, report)

        # Phase 3: global dedup + ranking
        deduped = dedupe_instances(raw)
        if len(deduped) < len(raw):
            logger.info("global dedup: %d -> %d", len(raw), len(deduped))
        objects = compute_importance(deduped)
        logger.info("detection complete: %d object(s)", len(objects))

        # Phase 4: descriptions
        descriptions = None
        if config.descriptions and objects:
            full_bytes = images.region_bytes(Region.full(images.width, images.height))
            descriptions = generate_descriptions(description_pool, full_bytes, objects)

        usage = {"detect": pool.usage_snapshot(), "describe": description_pool.usage_snapshot()}
        payload: Dict[str, Any] = {
            "strategy": STRATEGY,
            "image_path": config.image_path,
            "model_name": config.model_name,
            "description_model_name": config.effective_description_model,
            "config": config.echo(),
            "kinds": [k.to_dict() for k in kinds],
            "objects": [o.to_dict() for o in objects],
            "descriptions": descriptions,
            "report": report.to_dict(),
            "usage": usage,
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }

        os.makedirs(os.path.dirname(os.path.abspath(out_path)) or ".", exist_ok=True)
        with open(out_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
        logger.info("output written to %s", out_path)

        if config.annotate:
            annotated_path = config.annotated_out or _default_annotated_path(config.image_path)
            try:
                with open(annotated_path, "wb") as f:
                    f.write(annotate_image(images.data, objects))
                logger.info("annotated image written to %s", annotated_path)
            except (OSError, ValueError) as e:
                logger.warning("annotation failed. %s", format_error(e))

        if report.has_failures():
            logger.warning("run finished with partial failures: %s", report.to_dict())
        return payload
    finally:
        events.close()
