"""
Tests for duplicate merging and the parallel classifier fan-out.
"""
import random

import pytest

from basemodels import Detection, DetectionSet, FusionParams, ImageContext, Rect
from errors import ConfigurationError, DetectionFailure, InputError
from fusion import DetectionFusion, conflicts, iou, merge_detections, merge_duplicates
from conftest import FakeDetector, primary


def det(x, y, w, h, conf=0.5, label=None, source="test"):
    return Detection(rect=Rect(x=x, y=y, width=w, height=h), confidence=conf, label=label, source=source)


def covers(outer: Rect, inner: Rect) -> bool:
    return (outer.left <= inner.left and outer.top <= inner.top
            and outer.right >= inner.right and outer.bottom >= inner.bottom)


# Conflict predicate #####################################
def test_iou_identical_and_disjoint():
    r = Rect(x=0, y=0, width=10, height=10)
    assert iou(r, r) == 1.0
    assert iou(r, Rect(x=100, y=100, width=10, height=10)) == 0.0


def test_touching_edges_do_not_conflict():
    assert not conflicts(det(0, 0, 10, 10), det(10, 0, 10, 10))
    assert not conflicts(det(0, 0, 10, 10), det(0, 10, 10, 10))


def test_overlap_conflicts():
    assert conflicts(det(0, 0, 10, 10), det(9, 9, 10, 10))


def test_iou_threshold_is_strict():
    a, b = det(0, 0, 10, 10), det(5, 0, 10, 10)   # IoU = 50 / 150
    assert conflicts(a, b, iou_thresh=0.3)
    assert not conflicts(a, b, iou_thresh=0.4)


def test_different_labels_never_conflict():
    assert not conflicts(det(0, 0, 10, 10, label="Alice"), det(2, 2, 10, 10, label="Bob"))
    assert conflicts(det(0, 0, 10, 10, label="Alice"), det(2, 2, 10, 10, label="Alice"))
    assert conflicts(det(0, 0, 10, 10, label="Alice"), det(2, 2, 10, 10))


def test_merge_detections_keeps_label_and_max_confidence():
    merged = merge_detections(det(0, 0, 10, 10, conf=0.7, source="frontal"),
                              det(5, 5, 10, 10, conf=1.0, label="Alice", source="manual"))
    assert merged.rect == Rect(x=0, y=0, width=15, height=15)
    assert merged.confidence == 1.0
    assert merged.label == "Alice"
    assert merged.source == "manual"


# merge_duplicates #####################################
def test_scenario_overlapping_pair_becomes_union():
    out = merge_duplicates([
        DetectionSet(detections=[det(10, 10, 50, 50, conf=0.9)]),
        DetectionSet(detections=[det(12, 12, 48, 48, conf=0.85)]),
    ])
    assert len(out) == 1
    assert out.detections[0].rect == Rect(x=10, y=10, width=50, height=50)
    assert out.detections[0].confidence == 0.9


def test_disjoint_detections_survive():
    out = merge_duplicates([DetectionSet(detections=[det(0, 0, 10, 10), det(50, 50, 10, 10), det(10, 0, 10, 10)])])
    assert len(out) == 3


def test_chain_of_overlaps_collapses():
    chain = [det(i * 8, 0, 10, 10, conf=0.1 * (i + 1)) for i in range(5)]
    out = merge_duplicates([DetectionSet(detections=chain)])
    assert len(out) == 1
    assert out.detections[0].rect == Rect(x=0, y=0, width=42, height=10)
    assert out.detections[0].confidence == pytest.approx(0.5)


def test_manual_label_survives_merge():
    manual = DetectionSet(detections=[Detection.manual(Rect(x=100, y=100, width=60, height=60), label="Alice")])
    auto = DetectionSet(detections=[det(110, 110, 60, 60, conf=0.7)])
    out = merge_duplicates([auto, manual])
    assert len(out) == 1
    assert out.detections[0].label == "Alice"
    assert out.detections[0].confidence == 1.0


def test_empty_input():
    assert len(merge_duplicates([])) == 0
    assert len(merge_duplicates([DetectionSet(), DetectionSet()])) == 0


def _random_sets(seed, n_sets=4, per_set=12):
    rng = random.Random(seed)
    return [
        DetectionSet(detections=[
            det(rng.randint(0, 300), rng.randint(0, 200), rng.randint(5, 60), rng.randint(5, 60),
                conf=round(rng.random(), 3), source=f"c{s}")
            for _ in range(per_set)
        ])
        for s in range(n_sets)
    ]


@pytest.mark.parametrize("seed", [0, 1, 2, 3])
def test_merge_is_idempotent(seed):
    once = merge_duplicates(_random_sets(seed))
    twice = merge_duplicates([once])
    assert twice.detections == once.detections


@pytest.mark.parametrize("seed", [4, 5])
def test_every_input_is_covered_by_a_stronger_output(seed):
    sets = _random_sets(seed)
    out = merge_duplicates(sets)
    for ds in sets:
        for d in ds.detections:
            assert any(covers(o.rect, d.rect) and o.confidence >= d.confidence for o in out.detections)


@pytest.mark.parametrize("seed", [6, 7])
def test_merge_is_order_independent(seed):
    sets = _random_sets(seed)
    assert merge_duplicates(sets).detections == merge_duplicates(list(reversed(sets))).detections


# DetectionFusion #####################################
@pytest.fixture
def ctx(image_path):
    return ImageContext(path=image_path)


def test_fusion_runs_every_primary_and_tags_sources(ctx):
    engine = FakeDetector(hits={
        "a": [Rect(x=10, y=10, width=50, height=50)],
        "b": [Rect(x=12, y=12, width=48, height=48), Rect(x=300, y=200, width=20, height=20)],
    })
    fusion = DetectionFusion(engine)
    try:
        out = fusion.run(ctx, [primary("a", 0.9), primary("b", 0.85)])
    finally:
        fusion.close()

    assert engine.called("a") == 1 and engine.called("b") == 1
    assert len(out) == 2
    by_conf = sorted(out.detections, key=lambda d: d.confidence)
    assert by_conf[0].source == "b" and by_conf[0].confidence == 0.85
    assert by_conf[1].source == "a" and by_conf[1].rect == Rect(x=10, y=10, width=50, height=50)


def test_fusion_maps_working_scale_back_to_image(ctx):
    engine = FakeDetector(hits={"small": [Rect(x=5, y=5, width=20, height=20)]})
    fusion = DetectionFusion(engine)
    try:
        out = fusion.run(ctx, [primary("small", max_image_size=200)])
    finally:
        fusion.close()

    assert engine.calls == [("small", (150, 200))]
    assert out.detections[0].rect == Rect(x=10, y=10, width=40, height=40)


def test_fusion_folds_existing_set_in_last(ctx):
    engine = FakeDetector(hits={"a": [Rect(x=110, y=110, width=60, height=60)]})
    existing = DetectionSet(detections=[Detection.manual(Rect(x=100, y=100, width=60, height=60), label="Alice")])
    with_pool = DetectionFusion(engine)
    try:
        out = with_pool.run(ctx, [primary("a", 0.7)], existing=existing)
    finally:
        with_pool.close()
    assert len(out) == 1
    assert out.detections[0].label == "Alice"
    assert out.detections[0].rect == Rect(x=100, y=100, width=70, height=70)


def test_fusion_without_primaries_or_existing_is_empty(ctx):
    engine = FakeDetector()
    fusion = DetectionFusion(engine)
    assert len(fusion.run(ctx, [])) == 0
    assert engine.calls == []


def test_fusion_existing_only_skips_image_read():
    engine = FakeDetector()
    fusion = DetectionFusion(engine)
    ctx = ImageContext(path="/does/not/exist.png")
    existing = DetectionSet(detections=[det(0, 0, 10, 10), det(5, 5, 10, 10)])
    out = fusion.run(ctx, [], existing=existing)
    assert len(out) == 1


def test_fusion_rejects_unreadable_image_before_detecting(broken_image_path):
    engine = FakeDetector(hits={"a": [Rect(x=0, y=0, width=5, height=5)]})
    fusion = DetectionFusion(engine)
    with pytest.raises(InputError):
        fusion.run(ImageContext(path=broken_image_path), [primary("a")])
    assert engine.calls == []


@pytest.mark.parametrize("error", [DetectionFailure("boom"), ConfigurationError("missing")])
def test_fusion_propagates_worker_errors(ctx, error):
    engine = FakeDetector(
        hits={"ok": [Rect(x=0, y=0, width=5, height=5)]},
        errors={"bad": error},
    )
    fusion = DetectionFusion(engine)
    try:
        with pytest.raises(type(error)):
            fusion.run(ctx, [primary("ok"), primary("bad")])
    finally:
        fusion.close()


def test_fusion_fails_fast_on_first_reported_error(ctx):
    engine = FakeDetector(
        errors={"first": DetectionFailure("first"), "second": ConfigurationError("second")},
        delays={"first": 0.2},
    )
    fusion = DetectionFusion(engine)
    try:
        with pytest.raises((DetectionFailure, ConfigurationError)):
            fusion.run(ctx, [primary("first"), primary("second")])
    finally:
        fusion.close()


def test_fusion_drops_classifiers_past_timeout(ctx, caplog):
    engine = FakeDetector(
        hits={"fast": [Rect(x=0, y=0, width=10, height=10)], "slow": [Rect(x=100, y=100, width=10, height=10)]},
        delays={"slow": 1.0},
    )
    fusion = DetectionFusion(engine, params=FusionParams(classifier_timeout=0.2))
    try:
        with caplog.at_level("WARNING", logger="cascadefusion.fusion"):
            out = fusion.run(ctx, [primary("fast"), primary("slow")])
    finally:
        fusion.close()

    assert [d.source for d in out.detections] == ["fast"]
    assert "slow" in caplog.text


def test_fusion_uses_given_executor(ctx, mocker):
    from concurrent.futures import ThreadPoolExecutor

    pool = ThreadPoolExecutor(max_workers=1)
    spy = mocker.spy(pool, "submit")
    fusion = DetectionFusion(FakeDetector(), executor=pool)
    fusion.run(ctx, [primary("a"), primary("b")])
    fusion.close()
    assert spy.call_count == 2
    # caller-owned pools stay open
    assert pool.submit(lambda: 1).result() == 1
    pool.shutdown()


def test_timeout_counts_from_worker_start(ctx, caplog):
    engine = FakeDetector(
        hits={name: [Rect(x=i * 100, y=0, width=10, height=10)] for i, name in enumerate("abc")},
        delays={"a": 0.15, "b": 0.15, "c": 0.15},
    )
    fusion = DetectionFusion(engine, params=FusionParams(classifier_timeout=0.25, max_workers=1))
    try:
        with caplog.at_level("WARNING", logger="cascadefusion.fusion"):
            out = fusion.run(ctx, [primary("a"), primary("b"), primary("c")])
    finally:
        fusion.close()

    assert sorted(d.source for d in out.detections) == ["a", "b", "c"]
    assert "dropping" not in caplog.text


def test_queued_classifier_behind_stuck_worker_is_dropped(ctx, caplog):
    engine = FakeDetector(
        hits={"stuck": [Rect(x=0, y=0, width=10, height=10)], "queued": [Rect(x=100, y=0, width=10, height=10)]},
        delays={"stuck": 1.0},
    )
    fusion = DetectionFusion(engine, params=FusionParams(classifier_timeout=0.2, max_workers=1))
    try:
        with caplog.at_level("WARNING", logger="cascadefusion.fusion"):
            out = fusion.run(ctx, [primary("stuck"), primary("queued")])
    finally:
        fusion.close()

    assert len(out) == 0
    assert "'stuck' did not finish" in caplog.text
    assert "'queued' never started" in caplog.text
    assert engine.called("queued") == 0
