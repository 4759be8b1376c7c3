import argparse
import logging
import os
import sys

from config import DetectionConfig
from detector import run_detection
from llm_client import silence_external_loggers


def _split_kinds(value: str):
    return [k.strip().lower() for k in value.split(",") if k.strip()]


def main() -> None:
    ap = argparse.ArgumentParser(description="Detect, verify and rank objects in an artwork image using OpenRouter vision models.")
    ap.add_argument("--image", type=str, required=True, help="Path to the artwork image.")
    ap.add_argument("--out", type=str, default=None, help="Output JSON payload (default: <image>.detections.json).")
    ap.add_argument("--annotated_out", type=str, default=None, help="Annotated PNG path when --annotate is set (default: <image>.annotated.png).")
    ap.add_argument("--model", type=str, default=None, help="OpenRouter model id (default: MODEL_NAME env or built-in).")
    ap.add_argument("--description_model", type=str, default=None, help="Model for descriptions (default: same as --model).")
    ap.add_argument("--max_kinds", type=int, default=None, help="Maximum number of object kinds to detect.")
    ap.add_argument("--verify_rounds", type=int, default=None, help="Verification rounds per region (0 = detect only).")
    ap.add_argument("--tile_threshold", type=int, default=None, help="Tile when the estimated instance count exceeds this (0 = disable tiling).")
    ap.add_argument("--max_depth", type=int, default=None, help="Maximum subdivision depth for adaptive tiling.")
    ap.add_argument("--min_tile_size", type=int, default=None, help="Regions smaller than this (px) are never split.")
    ap.add_argument("--concurrency", type=int, default=None, help="Max in-flight inference calls (>=1).")
    ap.add_argument("--kind_concurrency", type=int, default=None, help="Kinds processed in parallel (>=1).")
    ap.add_argument("--multi_scale", action="store_true", help="Also discover kinds on the four quadrants and reconcile.")
    ap.add_argument("--only_kinds", type=_split_kinds, default=None, help="Comma-separated kind labels to process.")
    ap.add_argument("--no_descriptions", action="store_true", help="Skip accessibility description generation.")
    ap.add_argument("--annotate", action="store_true", help="Also write an annotated image.")
    ap.add_argument("--mock", action="store_true", help="Use deterministic offline responses instead of the API.")
    ap.add_argument("--events_log", type=str, default=None, help="Optional JSONL to log per-request events.")
    ap.add_argument("--debug", action="store_true", help="Enable verbose debug logging to console.")
    args = ap.parse_args()

    # Logging setup
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    silence_external_loggers()

    image_path = os.path.abspath(args.image)
    if not os.path.isfile(image_path):
        print(f"image not found: {image_path}", file=sys.stderr)
        sys.exit(1)

    try:
        config = DetectionConfig.from_env(
            image_path=image_path,
            out_path=args.out,
            annotated_out=args.annotated_out,
            model_name=args.model,
            description_model_name=args.description_model,
            max_kinds=args.max_kinds,
            verify_rounds=args.verify_rounds,
            tile_threshold=args.tile_threshold,
            max_depth=args.max_depth,
            min_tile_size=args.min_tile_size,
            concurrency=args.concurrency,
            kind_concurrency=args.kind_concurrency,
            only_kinds=args.only_kinds,
            events_log=args.events_log,
        )
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)
    if args.multi_scale:
        config.multi_scale = True
    config.descriptions = not args.no_descriptions
    config.annotate = args.annotate
    config.mock = args.mock

    if not config.mock and not config.api_key:
        print("Missing OPENROUTER_API_KEY in environment", file=sys.stderr)
        sys.exit(1)
    try:
        config.validate()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Image: {config.image_path}", file=sys.stderr)
    print(f"Model: {config.model_name}{' (mock)' if config.mock else ''}", file=sys.stderr)
    tiling = f">{config.tile_threshold}" if config.tiling_enabled else "off"
    print(f"Max kinds: {config.max_kinds}  verify rounds: {config.verify_rounds}  tiling: {tiling}", file=sys.stderr)

    try:
        payload = run_detection(config)
    except OSError as e:
        print(f"Could not read image or write output: {e}", file=sys.stderr)
        sys.exit(1)

    report = payload["report"]
    print(f"Objects: {len(payload['objects'])} across {len(payload['kinds'])} kind(s)", file=sys.stderr)
    usage = payload["usage"]["detect"]
    print(f"Calls: {usage['calls']}  tokens in/out: {usage['prompt_tokens']}/{usage['completion_tokens']}  est. cost: ${usage['estimated_cost_usd']:.4f}", file=sys.stderr)
    if report["failed_kinds"] or report["failed_regions"] or report["failed_verifications"] or report["failed_count_estimates"] or report["discovery_failed"]:
        print(f"Partial failures: {report}", file=sys.stderr)
    if payload["descriptions"]:
        print(f"\nAlt text:\n{payload['descriptions']['alt_text']}", file=sys.stderr)


if __name__ == "__main__":
    main()
