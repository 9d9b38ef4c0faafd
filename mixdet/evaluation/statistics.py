"""
Ranked detection statistics.

Detections of a model on an evaluation set are matched against ground truth
and turned into a ranked curve: one ``TestResult`` per distinct detection
score, in descending threshold order, holding the numbers of true and false
positives at or above that threshold and the total number of ground-truth
positives. Precision, recall, F-measure and average precision are derived
from the curve.

Author: MixDet Toolkit Team
Date: October 2026
"""

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

import numpy as np

from ..core.geometry import Detection, Rectangle


@dataclass(frozen=True)
class TestResult:
    """One point of a ranked curve."""

    __test__ = False  # not a pytest test class

    threshold: float
    tp: int
    fp: int
    np: int

    @property
    def precision(self) -> float:
        return self.tp / (self.tp + self.fp) if self.tp + self.fp > 0 else 0.0

    @property
    def recall(self) -> float:
        return self.tp / self.np if self.np > 0 else 0.0

    def fmeasure(self, b: float = 1.0) -> float:
        return fmeasure(self.precision, self.recall, b)


def fmeasure(precision: float, recall: float, b: float = 1.0) -> float:
    """Weighted harmonic mean ``(1 + b^2) P R / (b^2 P + R)``; 0 if both are 0."""
    denominator = b * b * precision + recall
    if denominator <= 0:
        return 0.0
    return (1 + b * b) * precision * recall / denominator


def match_detections(detections: Sequence[Detection], ground_truth: Sequence[Rectangle],
                     eq_overlap: float = 0.5) -> List[Tuple[float, bool]]:
    """
    Label detections of one image as true or false positives.

    Detections are visited from the highest score down; each claims the
    unclaimed ground-truth box it overlaps most, provided the IoU is at least
    ``eq_overlap``. A ground-truth box is claimed at most once.

    Returns:
        List of (score, is_true_positive)
    """
    claimed = [False] * len(ground_truth)
    labelled = []
    for det in sorted(detections):
        best, best_iou = -1, eq_overlap
        for i, gt in enumerate(ground_truth):
            if claimed[i]:
                continue
            iou = det.bbox.iou(gt)
            if iou >= best_iou:
                best, best_iou = i, iou
        if best >= 0:
            claimed[best] = True
        labelled.append((det.score, best >= 0))
    return labelled


def ranked_curve(labelled: Iterable[Tuple[float, bool]], num_positives: int) -> List[TestResult]:
    """
    Sweep all distinct scores as thresholds, from the highest down.

    Args:
        labelled: (score, is_true_positive) pairs of the whole evaluation set
        num_positives: Number of ground-truth boxes of the evaluation set

    Returns:
        Curve in descending threshold order; ``tp`` and ``fp`` never decrease
        along it
    """
    ordered = sorted(labelled, key=lambda item: -item[0])
    curve = []
    tp = fp = 0
    for i, (score, is_tp) in enumerate(ordered):
        if is_tp:
            tp += 1
        else:
            fp += 1
        if i + 1 == len(ordered) or ordered[i + 1][0] != score:
            curve.append(TestResult(float(score), tp, fp, num_positives))
    return curve


def max_fmeasure(curve: Sequence[TestResult], b: float = 1.0) -> Tuple[float, float]:
    """
    Best operating point of a curve.

    Returns:
        (threshold, F-measure) of the first row reaching the maximum, i.e. the
        highest threshold among ties; (0, 0) for an empty curve
    """
    best_threshold, best_f = 0.0, 0.0
    found = False
    for result in curve:
        f = result.fmeasure(b)
        if not found or f > best_f:
            best_threshold, best_f, found = result.threshold, f, True
    return best_threshold, best_f


def fmeasure_at(curve: Sequence[TestResult], threshold: float, b: float = 1.0) -> float:
    """
    F-measure of the operating point at ``threshold``.

    Uses the row with the smallest threshold not below the query, i.e. the
    counts of all detections scoring at least ``threshold``. Returns 0 if no
    detection reaches the query threshold.
    """
    value = 0.0
    for result in curve:
        if result.threshold < threshold:
            break
        value = result.fmeasure(b)
    return value


def average_precision(curve: Sequence[TestResult]) -> float:
    """
    Area under the precision/recall staircase.

    All-points interpolation: precision is replaced by its running maximum
    from the high-recall end and integrated over every recall step.
    """
    if not curve:
        return 0.0
    recall = np.array([r.recall for r in curve])
    precision = np.array([r.precision for r in curve])

    mrec = np.concatenate(([0.], recall, [1.]))
    mpre = np.concatenate(([0.], precision, [0.]))
    for i in range(mpre.size - 1, 0, -1):
        mpre[i - 1] = np.maximum(mpre[i - 1], mpre[i])

    i = np.where(mrec[1:] != mrec[:-1])[0]
    return float(np.sum((mrec[i + 1] - mrec[i]) * mpre[i + 1]))


def optimal_threshold(positive_scores: Sequence[float], negative_scores: Sequence[float],
                      num_positives: int, b: float = 1.0) -> Tuple[float, float]:
    """
    Threshold maximising F_b over labelled scores.

    Args:
        positive_scores: Scores of windows that are true positives
        negative_scores: Scores of windows that are false positives
        num_positives: Number of objects that should be found
        b: Recall weight of the F-measure

    Returns:
        (threshold, F_b); the threshold is 0 if there are no positive scores
    """
    labelled = [(s, True) for s in positive_scores] + [(s, False) for s in negative_scores]
    curve = ranked_curve(labelled, max(num_positives, len(positive_scores)))
    if not positive_scores:
        return 0.0, 0.0
    return max_fmeasure(curve, b)
