from ai_pool import AIPool
from detection_types import ObjectKind, RunReport
from image_ops import SourceImage, image_size
from kind_discovery import (
    cap_kinds,
    dedupe_kinds,
    discover_kinds,
    discover_multiscale,
    filter_only_kinds,
    run_discovery,
)
from scan_errors import FatalInferenceError

FULL_KINDS = [
    {"kind": "Hound", "type": "animal", "estimated_count": "few", "estimated_size": "medium",
     "segmentation": "individual", "importance": "primary"},
    {"kind": "hound ", "type": "animal", "estimated_count": "many", "estimated_size": "small"},
    {"kind": "forest", "type": "landscape", "segmentation": "region", "importance": "background"},
]


def _pool(fake_inference, handler):
    invoke = fake_inference(handler)
    return AIPool(invoke, 8), invoke


def test_dedupe_kinds_keeps_higher_count_and_smaller_size():
    kinds = [
        ObjectKind("hound", "animal", estimated_count="few", estimated_size="large", importance="primary"),
        ObjectKind("Hound", "animal", estimated_count="many", estimated_size="medium"),
        ObjectKind("hound", "person", estimated_count="few"),
    ]
    out = dedupe_kinds(kinds)
    assert len(out) == 2
    assert out[0].estimated_count == "many"
    assert out[0].estimated_size == "medium"
    assert out[0].importance == "primary"


def test_cap_kinds_prefers_primary_then_secondary():
    kinds = [
        ObjectKind("cloud", "landscape", importance="background"),
        ObjectKind("dog", "animal", importance="secondary"),
        ObjectKind("king", "person", importance="primary"),
        ObjectKind("cat", "animal", importance="secondary"),
    ]
    assert [k.label for k in cap_kinds(kinds, 3)] == ["king", "dog", "cat"]


def test_filter_only_kinds_is_case_insensitive():
    kinds = [ObjectKind("hound", "animal"), ObjectKind("stag", "animal")]
    assert [k.label for k in filter_only_kinds(kinds, ["Stag "])] == ["stag"]
    assert filter_only_kinds(kinds, None) == kinds


def test_discover_kinds_normalizes_and_merges(fake_inference, small_image_bytes):
    pool, invoke = _pool(fake_inference, lambda p, i, s: {"kinds": FULL_KINDS})
    kinds = discover_kinds(pool, small_image_bytes, 10)
    assert [(k.label, k.segmentation) for k in kinds] == [("hound", "exhaustive"), ("forest", "area_mass")]
    assert kinds[0].estimated_count == "many"
    assert kinds[0].estimated_size == "small"
    assert all(k.scope == "full" for k in kinds)


def _multiscale_handler(fail_quadrants=False, fail_reconcile=False):
    def handler(prompt, image, schema):
        if schema.__name__ == "DiscoveryResult":
            if fail_quadrants and image_size(image) != (1024, 1024):
                raise FatalInferenceError("quadrant failed")
            return {"kinds": FULL_KINDS}
        if fail_reconcile:
            raise FatalInferenceError("reconcile failed")
        return {"kinds": [
            {"kind": "hound", "type": "animal", "is_real": True, "estimated_count": "many",
             "estimated_size": "tiny", "quadrants": ["bottom-left", "Bottom Right", "bottom-left"],
             "detection_scale": "quadrant"},
            {"kind": "dragon", "type": "animal", "is_real": False},
            {"kind": "forest", "type": "landscape", "segmentation": "area_mass", "detection_scale": "full"},
        ]}
    return handler


def test_multiscale_reconciles_quadrant_findings(fake_inference, image_bytes):
    pool, invoke = _pool(fake_inference, _multiscale_handler())
    kinds = discover_multiscale(pool, SourceImage(image_bytes), 10)
    assert invoke.count("DiscoveryResult") == 5
    assert invoke.count("ReconciliationResult") == 1
    assert [k.label for k in kinds] == ["hound", "forest"]
    assert kinds[0].scope == "subregion"
    assert kinds[0].regions == ("bottom-left", "bottom-right")
    assert kinds[1].scope == "full"
    reconcile_prompt = [c[1] for c in invoke.calls if c[0] == "ReconciliationResult"][0]
    assert "TOP-LEFT" in reconcile_prompt


def test_quadrant_discovery_asks_for_half_as_many_kinds(fake_inference, image_bytes):
    pool, invoke = _pool(fake_inference, _multiscale_handler())
    discover_multiscale(pool, SourceImage(image_bytes), 9)
    prompts = [c[1] for c in invoke.calls if c[0] == "DiscoveryResult"]
    assert sum("<= 5." in p for p in prompts) == 4
    assert sum("<= 9." in p for p in prompts) == 1


def test_failed_quadrants_contribute_nothing(fake_inference, image_bytes):
    pool, invoke = _pool(fake_inference, _multiscale_handler(fail_quadrants=True))
    kinds = discover_multiscale(pool, SourceImage(image_bytes), 10)
    assert [k.label for k in kinds] == ["hound", "forest"]
    reconcile_prompt = [c[1] for c in invoke.calls if c[0] == "ReconciliationResult"][0]
    assert reconcile_prompt.count("(nothing found)") == 4


def test_reconciliation_failure_falls_back_to_full_image_kinds(fake_inference, image_bytes):
    pool, _ = _pool(fake_inference, _multiscale_handler(fail_reconcile=True))
    kinds = discover_multiscale(pool, SourceImage(image_bytes), 10)
    assert [k.label for k in kinds] == ["hound", "forest"]
    assert all(k.scope == "full" for k in kinds)


def test_discovery_failure_yields_empty_run(fake_inference, image_bytes):
    def handler(prompt, image, schema):
        raise FatalInferenceError("no kinds for you")

    for multi_scale in (False, True):
        pool, _ = _pool(fake_inference, handler)
        report = RunReport()
        assert run_discovery(pool, SourceImage(image_bytes), 10, multi_scale=multi_scale, report=report) == []
        assert report.discovery_failed


def test_run_discovery_caps_and_filters(fake_inference, image_bytes):
    pool, _ = _pool(fake_inference, lambda p, i, s: {"kinds": FULL_KINDS})
    kinds = run_discovery(pool, SourceImage(image_bytes), 1)
    assert [k.label for k in kinds] == ["hound"]
    pool, _ = _pool(fake_inference, lambda p, i, s: {"kinds": FULL_KINDS})
    kinds = run_discovery(pool, SourceImage(image_bytes), 10, only_kinds=["forest"])
    assert [k.label for k in kinds] == ["forest"]


def _clouds_then_king(reconciled=False):
    kinds = [
        {"kind": f"cloud{i}", "type": "landscape", "segmentation": "area_mass", "importance": "background"}
        for i in range(3)
    ]
    kinds.append({"kind": "king", "type": "person", "importance": "primary"})
    if reconciled:
        for k in kinds:
            k["is_real"] = True
    return kinds


def test_primary_kind_listed_last_survives_the_cap(fake_inference, image_bytes):
    pool, _ = _pool(fake_inference, lambda p, i, s: {"kinds": _clouds_then_king()})
    kinds = run_discovery(pool, SourceImage(image_bytes), 2)
    assert [k.label for k in kinds] == ["king", "cloud0"]


def test_primary_kind_listed_last_survives_reconciliation(fake_inference, image_bytes):
    def handler(prompt, image, schema):
        if schema.__name__ == "DiscoveryResult":
            return {"kinds": FULL_KINDS}
        return {"kinds": _clouds_then_king(reconciled=True)}

    pool, _ = _pool(fake_inference, handler)
    kinds = run_discovery(pool, SourceImage(image_bytes), 2, multi_scale=True)
    assert [k.label for k in kinds] == ["king", "cloud0"]
