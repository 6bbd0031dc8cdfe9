"""Accessibility tree scoring and best-candidate selection."""

import pytest

import sft_xcpreview as xc


def test_content_subrole_wins_over_keyword_only_node(make_node):
    content = make_node(role="AXGroup", subrole="deviceContentGroup", frame=(0.0, 0.0, 300.0, 650.0))
    # 1 keyword hit (12) + container (8) + handset aspect (20) + area (8) = 48 < 70
    labelled = make_node(
        role="AXGroup", title="iPhone 15 Pro simulator", frame=(0.0, 0.0, 300.0, 650.0)
    )
    root = make_node(role="AXWindow", children=[labelled, content])

    best, signals = xc._detect_region(root, max_depth=12)

    assert best["frame"] == (0.0, 0.0, 300.0, 650.0)
    assert best["score"] >= 220
    assert best["confidence"] >= 0.846
    assert "subrole=deviceContentGroup" in best["reason"]
    assert signals["has_content_subrole"] is True
    assert signals["keyword_count"] == 4


def test_keyword_only_node_below_cutoff_is_not_a_candidate(make_node):
    labelled = make_node(
        role="AXGroup", title="iPhone 15 Pro simulator", frame=(0.0, 0.0, 300.0, 650.0)
    )
    signals = {"keyword_count": 1, "has_content_subrole": False}
    assert xc._score_candidate((0.0, 0.0, 300.0, 650.0), "AXGroup", "", signals) is None
    best, _ =xc._detect_region(make_node(role="AXWindow", children=[labelled]))
    assert best is None


def test_score_components():
    signals = {"keyword_count": 3, "has_content_subrole": True}
    candidate = xc._score_candidate((0.0, 0.0, 200.0, 420.0), "AXGroup", "iOSContentGroup", signals)
    # 220 + 36 + 8 + 20 + 8
    assert candidate["score"] == 292
    assert candidate["confidence"] == 0.99
    assert candidate["reason"] == "subrole=iOSContentGroup, device-keywords, handset-aspect"


def test_keyword_score_is_capped():
    signals = {"keyword_count": 40, "has_content_subrole": False}
    candidate = xc._score_candidate((0.0, 0.0, 300.0, 300.0), "AXGroup", "", signals)
    # 60 cap + container 8 + area 8
    assert candidate["score"] == 76
    assert candidate["confidence"] == pytest.approx(76 / 260)


@pytest.mark.parametrize("height, bonus", [(160.0, 20), (260.0, 20), (159.0, 0), (261.0, 0)])
def test_handset_aspect_range_is_inclusive(height, bonus):
    signals = {"keyword_count": 0, "has_content_subrole": False}
    candidate = xc._score_candidate((0.0, 0.0, 100.0, height), "AXUnknown", "iOSContentGroup", signals)
    assert candidate["score"] == 220 + bonus


def test_subrole_match_is_exact_not_substring():
    signals = {"keyword_count": 0, "has_content_subrole": False}
    assert xc._score_candidate((0.0, 0.0, 100.0, 100.0), "AXGroup", "iOSContentGroupLegacy", signals) is None


def test_equal_scores_prefer_smaller_area(make_node):
    small = make_node(role="AXGroup", subrole="iOSContentGroup", frame=(10.0, 10.0, 100.0, 200.0))
    large = make_node(role="AXGroup", subrole="iOSContentGroup", frame=(5.0, 5.0, 120.0, 210.0))

    for children in ([large, small], [small, large]):
        best, _ = xc._detect_region(make_node(role="AXWindow", children=children))
        assert best["frame"] == (10.0, 10.0, 100.0, 200.0)


def test_equal_score_and_area_keeps_first_seen(make_node):
    first = make_node(role="AXGroup", subrole="iOSContentGroup", frame=(0.0, 0.0, 100.0, 200.0))
    second = make_node(role="AXGroup", subrole="iOSContentGroup", frame=(300.0, 0.0, 100.0, 200.0))
    best, _ = xc._detect_region(make_node(role="AXWindow", children=[first, second]))
    assert best["frame"] == (0.0, 0.0, 100.0, 200.0)


def test_scan_is_idempotent(preview_window):
    first, first_signals = xc._detect_region(preview_window)
    second, second_signals = xc._detect_region(preview_window)
    assert first == second
    assert first_signals == second_signals
    assert first["frame"] == (400.0, 150.0, 200.0, 420.0)


def test_depth_limit_hides_deep_nodes(make_node):
    node = make_node(role="AXGroup", subrole="iOSContentGroup", frame=(0.0, 0.0, 100.0, 200.0))
    for _ in range(3):
        node = make_node(role="AXGroup", children=[node])
    root = node

    assert xc._detect_region(root, max_depth=3)[0] is not None
    assert xc._detect_region(root, max_depth=2)[0] is None


def test_fan_out_is_capped(make_node, monkeypatch):
    monkeypatch.setitem(xc.CONFIG, "max_children", 5)
    filler = [make_node(role="AXButton") for _ in range(5)]
    content = make_node(role="AXGroup", subrole="iOSContentGroup", frame=(0.0, 0.0, 100.0, 200.0))
    root = make_node(role="AXWindow", children=filler + [content])
    assert xc._detect_region(root)[0] is None


def test_nodes_without_attributes_are_tolerated(make_node):
    root = make_node(role=None, children=[make_node(role=None, frame=None)])
    best, signals = xc._detect_region(root)
    assert best is None
    assert signals == {"keyword_count": 0, "has_content_subrole": False}
