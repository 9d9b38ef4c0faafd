"""
Tests for detection matching and ranked curve statistics.

Author: MixDet Toolkit Team
Date: October 2026
"""

import pytest

from mixdet.core.geometry import Detection, Rectangle
from mixdet.evaluation.statistics import (
    TestResult,
    average_precision,
    fmeasure,
    fmeasure_at,
    match_detections,
    max_fmeasure,
    optimal_threshold,
    ranked_curve
)


LABELLED = [(0.9, True), (0.8, False), (0.7, True), (0.7, False), (0.4, True), (0.1, False)]


class TestFMeasure:
    """Test the weighted harmonic mean."""

    @pytest.mark.unit
    def test_values(self):
        assert fmeasure(1.0, 1.0) == pytest.approx(1.0)
        assert fmeasure(0.5, 1.0) == pytest.approx(2 / 3)
        assert fmeasure(0.0, 0.0) == 0.0

    @pytest.mark.unit
    def test_recall_weight(self):
        assert fmeasure(0.5, 1.0, b=2.0) > fmeasure(0.5, 1.0, b=1.0)
        assert fmeasure(0.5, 1.0, b=0.0) == pytest.approx(0.5)

    @pytest.mark.unit
    def test_result_properties(self):
        result = TestResult(0.5, tp=3, fp=1, np=6)
        assert result.precision == pytest.approx(0.75)
        assert result.recall == pytest.approx(0.5)
        assert TestResult(0.0, 0, 0, 0).precision == 0.0
        assert TestResult(0.0, 0, 0, 0).recall == 0.0


class TestMatching:
    """Test greedy detection matching."""

    @pytest.mark.unit
    def test_each_box_claimed_once(self):
        gt = [Rectangle(0, 0, 10, 10)]
        detections = [
            Detection('a', 0.5, Rectangle(0, 0, 10, 10)),
            Detection('a', 0.9, Rectangle(1, 0, 10, 10)),
        ]
        assert match_detections(detections, gt) == [(0.9, True), (0.5, False)]

    @pytest.mark.unit
    def test_overlap_threshold(self):
        gt = [Rectangle(0, 0, 10, 10)]
        shifted = [Detection('a', 1.0, Rectangle(5, 0, 10, 10))]
        assert match_detections(shifted, gt, eq_overlap=0.5) == [(1.0, False)]
        assert match_detections(shifted, gt, eq_overlap=0.3) == [(1.0, True)]

    @pytest.mark.unit
    def test_best_overlap_is_claimed(self):
        gt = [Rectangle(0, 0, 10, 10), Rectangle(2, 0, 10, 10)]
        detections = [Detection('a', 1.0, Rectangle(2, 0, 10, 10)), Detection('a', 0.5, Rectangle(0, 0, 10, 10))]
        assert match_detections(detections, gt) == [(1.0, True), (0.5, True)]


class TestRankedCurve:
    """Test curve construction and queries."""

    @pytest.mark.unit
    def test_one_row_per_distinct_score(self):
        curve = ranked_curve(LABELLED, 4)
        assert [r.threshold for r in curve] == [0.9, 0.8, 0.7, 0.4, 0.1]
        assert [(r.tp, r.fp) for r in curve] == [(1, 0), (1, 1), (2, 2), (3, 2), (3, 3)]
        assert all(r.np == 4 for r in curve)

    @pytest.mark.unit
    def test_counts_monotone_and_thresholds_descending(self):
        curve = ranked_curve(LABELLED[::-1], 3)
        for prev, cur in zip(curve, curve[1:]):
            assert cur.threshold < prev.threshold
            assert cur.tp >= prev.tp
            assert cur.fp >= prev.fp

    @pytest.mark.unit
    def test_empty(self):
        assert ranked_curve([], 5) == []
        assert max_fmeasure([]) == (0.0, 0.0)
        assert average_precision([]) == 0.0

    @pytest.mark.unit
    def test_max_fmeasure_is_argmax(self):
        curve = ranked_curve(LABELLED, 3)
        threshold, best = max_fmeasure(curve)
        assert best == pytest.approx(max(r.fmeasure() for r in curve))
        assert threshold == 0.4
        assert best == pytest.approx(fmeasure(3 / 5, 1.0))

    @pytest.mark.unit
    def test_max_fmeasure_ties_take_highest_threshold(self):
        curve = [TestResult(2.0, 1, 0, 2), TestResult(1.0, 1, 0, 2)]
        assert max_fmeasure(curve)[0] == 2.0

    @pytest.mark.unit
    def test_fmeasure_at(self):
        curve = ranked_curve(LABELLED, 3)
        assert fmeasure_at(curve, 0.75) == pytest.approx(curve[1].fmeasure())
        assert fmeasure_at(curve, 0.7) == pytest.approx(curve[2].fmeasure())
        assert fmeasure_at(curve, 5.0) == 0.0
        assert fmeasure_at(curve, -5.0) == pytest.approx(curve[-1].fmeasure())

    @pytest.mark.unit
    def test_average_precision(self):
        perfect = ranked_curve([(1.0, True), (0.5, True)], 2)
        assert average_precision(perfect) == pytest.approx(1.0)
        half = ranked_curve([(1.0, False), (0.5, True)], 1)
        assert average_precision(half) == pytest.approx(0.5)
        missed = ranked_curve([(1.0, True)], 2)
        assert average_precision(missed) == pytest.approx(0.5)

    @pytest.mark.unit
    def test_average_precision_invariant_to_duplication(self):
        single = average_precision(ranked_curve(LABELLED, 4))
        doubled = average_precision(ranked_curve(LABELLED * 2, 8))
        assert doubled == pytest.approx(single)


class TestOptimalThreshold:
    """Test threshold selection from labelled scores."""

    @pytest.mark.unit
    def test_separable_scores(self):
        threshold, f = optimal_threshold([3.0, 2.0, 2.5], [1.0, 0.5], 3)
        assert threshold == 2.0
        assert f == pytest.approx(1.0)

    @pytest.mark.unit
    def test_missed_objects_lower_recall(self):
        _, f = optimal_threshold([3.0], [], 2)
        assert f == pytest.approx(fmeasure(1.0, 0.5))

    @pytest.mark.unit
    def test_no_positives(self):
        assert optimal_threshold([], [1.0, 2.0], 3) == (0.0, 0.0)
