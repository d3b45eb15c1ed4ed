import pytest
from pydantic import ValidationError

from runner.perception.geometry import (BoundingBox, CoordinateMapping, average_box, cluster_boxes, common_area,
                                        crop_region_scale, extend_zoom_region, intersections, overlap_groups,
                                        union_of)


def box(x1, y1, x2, y2):
    return BoundingBox(x1=x1, y1=y1, x2=x2, y2=y2)


def test_degenerate_box_rejected():
    with pytest.raises(ValidationError):
        box(10, 10, 10, 20)
    with pytest.raises(ValidationError):
        box(10, 30, 20, 20)


def test_iou():
    a = box(0, 0, 10, 10)
    assert a.iou(a) == 1.0
    assert a.iou(box(20, 20, 30, 30)) == 0.0
    # 5x10 overlap, union 150
    assert a.iou(box(5, 0, 15, 10)) == pytest.approx(50 / 150)


def test_touching_boxes_do_not_intersect():
    assert box(0, 0, 10, 10).intersection(box(10, 0, 20, 10)) is None


def test_overlapping_proposals_cluster_into_one():
    boxes = [box(100, 100, 200, 150), box(102, 101, 202, 151), box(99, 100, 199, 150)]
    clusters = cluster_boxes(boxes, 0.7)
    assert len(clusters) == 1
    assert average_box(clusters[0]) == box(100, 100, 200, 150)


def test_disjoint_proposals_stay_separate():
    boxes = [box(0, 0, 50, 50), box(300, 300, 350, 350)]
    clusters = cluster_boxes(boxes, 0.7)
    assert len(clusters) == 2


def test_five_votes_three_agree_two_outliers():
    boxes = [
        box(500, 400, 560, 430),
        box(100, 100, 200, 150),
        box(102, 101, 202, 151),
        box(501, 401, 561, 431),
        box(99, 100, 199, 150),
    ]
    clusters = cluster_boxes(boxes, 0.7)
    assert [len(c) for c in clusters] == [3, 2]
    assert average_box(clusters[0]) == box(100, 100, 200, 150)
    assert average_box(clusters[1]) == box(500, 400, 560, 430)


def test_weak_overlap_below_threshold_is_not_merged():
    # IoU = 50 / 150
    clusters = cluster_boxes([box(0, 0, 10, 10), box(5, 0, 15, 10)], 0.7)
    assert len(clusters) == 2


def test_average_box_truncates():
    assert average_box([box(0, 0, 10, 10), box(1, 1, 12, 12)]) == box(0, 0, 10, 10)
    with pytest.raises(ValueError):
        average_box([])


def test_overlap_groups_chain_transitively():
    groups = overlap_groups([box(0, 0, 10, 10), box(8, 0, 18, 10), box(16, 0, 26, 10), box(100, 100, 110, 110)])
    assert groups == [[0, 1, 2], [3]]


def test_intersections_are_distinct():
    a = [box(0, 0, 10, 10), box(0, 0, 10, 10)]
    b = [box(5, 5, 20, 20)]
    assert intersections(a, b) == [box(5, 5, 10, 10)]
    assert intersections(a, [box(50, 50, 60, 60)]) == []


def test_union_of_keeps_first_occurrence_order():
    a, b, c = box(0, 0, 1, 1), box(1, 1, 2, 2), box(2, 2, 3, 3)
    assert union_of([a, b], [b, c]) == [a, b, c]


def test_common_area():
    assert common_area([box(10, 20, 30, 40), box(5, 25, 15, 60)]) == box(5, 20, 30, 60)


def test_extend_zoom_region_caps_at_half_screen():
    region = box(900, 500, 940, 520)
    extended = extend_zoom_region(region, element_width=20, extension_ratio=15.0,
                                  screen_width=1920, screen_height=1080)
    assert extended == box(770, 435, 1070, 585)


def test_extend_zoom_region_keeps_large_region():
    region = box(900, 500, 940, 520)
    assert extend_zoom_region(region, 1, 15.0, 1920, 1080) == region


def test_extend_zoom_region_clamps_to_screen():
    extended = extend_zoom_region(box(0, 0, 20, 10), 20, 15.0, 1920, 1080)
    assert extended.x1 == 0 and extended.y1 == 0
    assert extended.width == 300 and extended.height == 150


def test_zoom_mapping_round_trip():
    mapping = CoordinateMapping(offset_x=770, offset_y=435, scale=2.0)
    child = box(100, 60, 160, 90)
    parent = mapping.to_parent(child)
    assert parent == box(820, 465, 850, 480)
    assert mapping.to_child(parent) == child


def test_zoom_mapping_round_trip_fractional_scale():
    mapping = CoordinateMapping(offset_x=13, offset_y=7, scale=1.5)
    original = box(40, 40, 100, 85)
    restored = mapping.to_parent(mapping.to_child(original))
    for a, b in zip(original.as_tuple(), restored.as_tuple()):
        assert abs(a - b) <= 2


def test_crop_region_scale():
    assert crop_region_scale(1920, 960, 2.0) == 2.0
    assert crop_region_scale(1920, 1600, 2.0) == pytest.approx(1.2)
