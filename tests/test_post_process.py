import pytest

from detection_types import DetectedInstance
from post_process import ImportanceWeights, compute_importance, dedupe_instances, label_family, top_ranked


def _inst(label, type_, box):
    return DetectedInstance.create(label, type_, box)


def test_first_box_wins_and_keeps_other_label_as_alias():
    out = dedupe_instances([
        _inst("hound", "animal", [100, 100, 300, 300]),
        _inst("dog", "animal", [102, 102, 302, 302]),
        _inst("Hound", "animal", [101, 101, 301, 301]),
    ])
    assert len(out) == 1
    assert out[0].label == "hound"
    assert out[0].box == (100, 100, 300, 300)
    assert out[0].aliases == ("Hound", "dog")


def test_overlapping_boxes_of_different_categories_stay_apart():
    rider = _inst("rider", "person", [100, 100, 300, 300])
    horse = _inst("horse", "animal", [105, 105, 305, 305])
    assert len(dedupe_instances([rider, horse])) == 2


def test_other_category_matches_anything():
    out = dedupe_instances([
        _inst("hound", "animal", [100, 100, 300, 300]),
        _inst("shape", "other", [105, 105, 305, 305]),
    ])
    assert len(out) == 1
    assert out[0].aliases == ("shape",)


def test_dedupe_is_idempotent():
    instances = [
        _inst("hound", "animal", [100, 100, 300, 300]),
        _inst("dog", "animal", [102, 102, 302, 302]),
        _inst("stag", "animal", [500, 500, 700, 700]),
    ]
    once = dedupe_instances(instances)
    assert dedupe_instances(once) == once


def test_four_quadrant_copies_merge_to_one():
    # the same hound seen from four overlapping quadrants, labelled twice differently
    copies = [
        _inst("hound", "animal", [400, 400, 600, 600]),
        _inst("dog", "animal", [404, 402, 604, 602]),
        _inst("hound", "animal", [398, 401, 598, 601]),
        _inst("dog", "animal", [402, 398, 602, 598]),
    ]
    out = dedupe_instances(copies)
    assert len(out) == 1
    assert out[0].aliases == ("dog",)


@pytest.mark.parametrize(
    "label,family",
    [("Hound #3", "hound"), ("hound 2", "hound"), ("  Stag ", "stag"), ("Saint George", "saint george")],
)
def test_label_family(label, family):
    assert label_family(label) == family


def test_importance_ranks_form_a_permutation():
    instances = [
        _inst("hound", "animal", [450, 450, 550, 550]),
        _inst("hound", "animal", [146, 146, 854, 854]),
        _inst("hound", "animal", [342, 342, 658, 658]),
    ]
    out = compute_importance(instances)
    assert sorted(i.importance_rank for i in out) == [1, 2, 3]
    assert [i.importance_rank for i in out] == [3, 1, 2]
    for inst in out:
        assert 0.0 <= inst.importance <= 1.0
        assert inst.importance == round(inst.importance, 4)


def test_rare_family_outranks_common_one():
    instances = [_inst(f"hound #{i}", "animal", [100 * i, 800, 100 * i + 80, 880]) for i in range(5)]
    instances.append(_inst("stag", "animal", [200, 800, 280, 880]))
    out = compute_importance(instances)
    stag = out[-1]
    hound_at_same_spot = [i for i in out if i.box == (200, 800, 280, 880) and i.label != "stag"][0]
    assert stag.importance > hound_at_same_spot.importance


def test_ties_keep_input_order():
    a = _inst("hound", "animal", [100, 100, 200, 200])
    b = _inst("hound", "animal", [100, 100, 200, 200])
    out = compute_importance([a, b])
    assert [i.importance_rank for i in out] == [1, 2]


def test_weights_are_configurable():
    only_area = ImportanceWeights(area=1.0, centrality=0, vertical=0, rarity_family=0, rarity_category=0)
    out = compute_importance([_inst("sky", "landscape", [0, 0, 1000, 1000])], only_area)
    assert out[0].importance == 1.0


def test_empty_input():
    assert compute_importance([]) == []
    assert dedupe_instances([]) == []


def test_top_ranked():
    out = compute_importance([
        _inst("hound", "animal", [450, 450, 550, 550]),
        _inst("hound", "animal", [146, 146, 854, 854]),
    ])
    assert [i.box for i in top_ranked(out, 1)] == [(146, 146, 854, 854)]
    assert top_ranked([_inst("x", "object", [0, 0, 1, 1])], 3) == []
