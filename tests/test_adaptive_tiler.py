import threading
from dataclasses import replace

from adaptive_tiler import AdaptiveTiler, quadrant_regions, subdivide
from ai_pool import AIPool
from detection_types import DetectedInstance, Region, RunReport
from image_ops import SourceImage, image_size
from region_detector import RegionDetection
from scan_errors import FatalInferenceError


class _StubDetector:
    """Records which regions were detected; returns one fixed region-local box each time."""

    def __init__(self, box=(400, 400, 600, 600)):
        self.box = box
        self.regions = []
        self.report = RunReport()
        self._lock = threading.Lock()

    def detect_and_verify(self, image, kind, region_path="root", depth=0):
        with self._lock:
            self.regions.append((region_path, depth))
        inst = DetectedInstance.create(kind.label, kind.category, self.box, region_path, depth)
        return RegionDetection([inst], "stable", 1)


def _count_by_size(dense_above):
    def handler(prompt, image, schema):
        assert schema.__name__ == "CountEstimateResult"
        w, _ = image_size(image)
        return {"estimated_count": "many" if w > dense_above else "few"}
    return handler


def _tiler(image_bytes, fake_inference, handler=None, detector=None, **kwargs):
    invoke = fake_inference(handler or _count_by_size(600))
    detector = detector or _StubDetector()
    report = RunReport()
    tiler = AdaptiveTiler(AIPool(invoke, 4), detector, SourceImage(image_bytes), report=report, **kwargs)
    return tiler, detector, invoke, report


def test_subdivide_overlapping_children():
    children = subdivide(Region(0, 0, 1000, 800), 1000, 800)
    assert [c.path for c in children] == ["root.q00", "root.q01", "root.q10", "root.q11"]
    assert all(c.depth == 1 for c in children)
    assert [(c.left, c.top, c.width, c.height) for c in children] == [
        (0, 0, 575, 460),
        (425, 0, 575, 460),
        (0, 340, 575, 460),
        (425, 340, 575, 460),
    ]


def test_subdivide_stays_inside_image():
    parent = Region(425, 340, 575, 460, "root.q11", 1)
    for c in subdivide(parent, 1000, 800):
        assert c.left >= 0 and c.top >= 0
        assert c.left + c.width <= 1000
        assert c.top + c.height <= 800
        assert c.path.startswith("root.q11.q")
        assert c.depth == 2


def test_quadrant_regions_are_55_percent():
    quads = {q.path: q for q in quadrant_regions(1000, 800)}
    assert set(quads) == {"top-left", "top-right", "bottom-left", "bottom-right"}
    assert (quads["top-left"].width, quads["top-left"].height) == (550, 440)
    assert quads["top-right"] == Region(450, 0, 550, 440, "top-right", 1)
    assert quads["bottom-right"] == Region(450, 360, 550, 440, "bottom-right", 1)


def test_medium_sparse_kind_runs_on_full_image(image_bytes, fake_inference, hound):
    tiler, detector, invoke, _ = _tiler(image_bytes, fake_inference)
    found = tiler.detect_kind(hound)
    assert detector.regions == [("root", 0)]
    assert invoke.calls == []
    # full-image boxes are not remapped
    assert found[0].box == (400, 400, 600, 600)


def test_area_mass_and_representative_use_full_image(image_bytes, fake_inference, hound):
    for seg in ("area_mass", "representative"):
        kind = replace(hound, segmentation=seg, estimated_size="tiny", estimated_count="very_many")
        tiler, detector, invoke, _ = _tiler(image_bytes, fake_inference)
        tiler.detect_kind(kind)
        assert detector.regions == [("root", 0)]
        assert invoke.calls == []


def test_tiny_kind_goes_straight_to_quadrants(image_bytes, fake_inference, hound):
    tiler, detector, invoke, _ = _tiler(image_bytes, fake_inference)
    found = tiler.detect_kind(replace(hound, estimated_size="tiny"))
    assert sorted(p for p, _ in detector.regions) == ["bottom-left", "bottom-right", "top-left", "top-right"]
    assert invoke.calls == []
    assert len(found) == 4


def test_subregion_scope_only_visits_tagged_quadrants(image_bytes, fake_inference, hound):
    kind = replace(hound, scope="subregion", regions=("top-left", "bottom-right"))
    tiler, detector, _, _ = _tiler(image_bytes, fake_inference)
    tiler.detect_kind(kind)
    assert sorted(p for p, _ in detector.regions) == ["bottom-right", "top-left"]


def test_subregion_without_tags_detects_nothing(image_bytes, fake_inference, hound):
    tiler, detector, _, _ = _tiler(image_bytes, fake_inference)
    assert tiler.detect_kind(replace(hound, scope="subregion")) == []
    assert detector.regions == []


def test_dense_kind_subdivides_until_estimate_says_few(image_bytes, fake_inference, hound):
    tiler, detector, invoke, _ = _tiler(image_bytes, fake_inference)
    tiler.detect_kind(replace(hound, estimated_count="many"))
    assert sorted(p for p, _ in detector.regions) == ["root.q00", "root.q01", "root.q10", "root.q11"]
    assert invoke.count("CountEstimateResult") == 5
    assert {t for _, _, _, t in invoke.calls} == {0.1}


def test_failed_estimate_is_treated_as_dense(image_bytes, fake_inference, hound):
    def handler(prompt, image, schema):
        raise FatalInferenceError("estimate broke")

    tiler, detector, _, report = _tiler(image_bytes, fake_inference, handler=handler)
    # small and not dense: depth capped at 2
    tiler.detect_kind(replace(hound, estimated_size="small"))
    assert len(detector.regions) == 16
    assert {d for _, d in detector.regions} == {2}
    assert report.failed_count_estimates == 5


def test_max_depth_and_min_tile_size_stop_recursion(image_bytes, fake_inference, hound):
    dense = replace(hound, estimated_count="very_many")

    tiler, detector, invoke, _ = _tiler(image_bytes, fake_inference, handler=_count_by_size(0), max_depth=1)
    tiler.detect_kind(dense)
    assert {d for _, d in detector.regions} == {1}
    assert invoke.count("CountEstimateResult") == 1

    tiler, detector, invoke, _ = _tiler(image_bytes, fake_inference, handler=_count_by_size(0), min_tile_size=2000)
    tiler.detect_kind(dense)
    assert detector.regions == [("root", 0)]
    assert invoke.calls == []


def test_tiling_disabled_keeps_full_image(image_bytes, fake_inference, hound):
    tiler, detector, _, _ = _tiler(image_bytes, fake_inference, tile_threshold=0)
    tiler.detect_kind(replace(hound, estimated_size="tiny", estimated_count="very_many"))
    assert detector.regions == [("root", 0)]


def test_tile_boxes_touching_internal_edges_are_dropped(image_bytes, fake_inference, hound):
    # touches the left edge of whatever tile it is found in
    detector = _StubDetector(box=(0, 100, 100, 200))
    tiler, _, _, _ = _tiler(image_bytes, fake_inference, detector=detector)
    found = tiler.detect_kind(replace(hound, estimated_count="many"))
    # only the left-column tiles sit on the image border
    assert len(found) == 2
    assert all(inst.box[0] == 0 for inst in found)
    assert {inst.region_path for inst in found} == {"root.q00", "root.q10"}


def test_quadrant_detection_keeps_edge_boxes(image_bytes, fake_inference, hound):
    detector = _StubDetector(box=(0, 100, 100, 200))
    tiler, _, _, _ = _tiler(image_bytes, fake_inference, detector=detector)
    found = tiler.detect_kind(replace(hound, estimated_size="tiny"))
    assert len(found) == 4


def test_adaptive_results_carry_tile_depth(image_bytes, fake_inference, hound):
    tiler, _, _, _ = _tiler(image_bytes, fake_inference)
    found = tiler.detect_kind(replace(hound, estimated_count="many"))
    assert len(found) == 4
    assert all(inst.depth == 1 for inst in found)


def test_tile_threshold_sets_the_density_bar(image_bytes, fake_inference, hound):
    crowded = replace(hound, estimated_count="many")

    tiler, detector, invoke, _ = _tiler(image_bytes, fake_inference, tile_threshold=50)
    tiler.detect_kind(crowded)
    assert detector.regions == [("root", 0)]
    assert invoke.calls == []

    # "moderate" is about 18 instances: dense at the default bar of 12 only
    moderate = replace(hound, estimated_count="moderate")
    tiler, detector, invoke, _ = _tiler(image_bytes, fake_inference, tile_threshold=20)
    tiler.detect_kind(moderate)
    assert detector.regions == [("root", 0)]
    tiler, detector, invoke, _ = _tiler(image_bytes, fake_inference)
    tiler.detect_kind(moderate)
    assert invoke.count("CountEstimateResult") == 5


def test_region_estimates_are_compared_to_tile_threshold(image_bytes, fake_inference, hound):
    # root (1024) says very_many, depth-1 tiles (589) say many, depth-2 tiles say few
    def handler(prompt, image, schema):
        w, _ = image_size(image)
        if w > 600:
            return {"estimated_count": "very_many"}
        return {"estimated_count": "many" if w > 400 else "few"}

    dense = replace(hound, estimated_count="very_many")
    tiler, detector, _, _ = _tiler(image_bytes, fake_inference, handler=handler, tile_threshold=40)
    tiler.detect_kind(dense)
    assert {d for _, d in detector.regions} == {1}

    tiler, detector, _, _ = _tiler(image_bytes, fake_inference, handler=handler, tile_threshold=30)
    tiler.detect_kind(dense)
    assert {d for _, d in detector.regions} == {2}
    assert len(detector.regions) == 16
