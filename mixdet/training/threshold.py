"""
Per-component threshold calibration.

For every mixture component the learned template is run over the positive
samples (and optional negative images). The best window overlapping each box
assigned to the component is a positive score; windows on background regions
and on negative images, after non-maximum suppression, are negative scores.
The threshold maximising the F-measure over these scores is chosen.

In leave-one-out mode every assigned box is held out once: the template is
rebuilt without it and scores only that box. The held-out scores of all folds
are pooled with the background and negative windows of the full template,
which never saw them, and one threshold is optimised over the pool. Feature
pyramids are computed once and shared by all folds.

Author: MixDet Toolkit Team
Date: October 2026
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..core.geometry import Detection, Rectangle, Sample
from ..core.progress import as_reporter
from ..data_preparation.images import ImageData
from ..evaluation.detector import FeaturePyramid, non_maximum_suppression
from ..evaluation.statistics import optimal_threshold
from ..models.features import FeatureExtractor
from ..models.mixture import Model

logger = logging.getLogger(__name__)


def window_boxes(pyramid: FeaturePyramid, model: Model) -> Tuple[np.ndarray, np.ndarray]:
    """
    Scores and clipped image-space boxes of all template positions.

    Returns:
        Tuple of scores ``(N,)`` and boxes ``(N, 4)`` as ``x, y, width, height``
    """
    all_scores, all_boxes = [], []
    cs = pyramid.cell_size
    for sx, sy, feats in pyramid.levels:
        scores = model.correlate(feats)
        if scores.size == 0:
            continue
        rows, cols = np.indices(scores.shape)
        x = np.round(cols.ravel() * cs / sx)
        y = np.round(rows.ravel() * cs / sy)
        w = np.round(model.cols * cs / sx)
        h = np.round(model.rows * cs / sy)
        left = np.clip(x, 0, pyramid.image_width)
        top = np.clip(y, 0, pyramid.image_height)
        right = np.minimum(x + w - 1, pyramid.image_width - 1)
        bottom = np.minimum(y + h - 1, pyramid.image_height - 1)
        boxes = np.stack([left, top, np.maximum(0, right - left + 1), np.maximum(0, bottom - top + 1)], axis=1)
        all_scores.append(scores.ravel())
        all_boxes.append(boxes.astype(np.int64))
    if not all_scores:
        return np.zeros(0), np.zeros((0, 4), dtype=np.int64)
    return np.concatenate(all_scores), np.concatenate(all_boxes)


def box_iou(boxes: np.ndarray, rect: Rectangle) -> np.ndarray:
    """IoU of every ``x, y, width, height`` row with one rectangle."""
    if boxes.shape[0] == 0 or rect.empty():
        return np.zeros(boxes.shape[0])
    left = np.maximum(boxes[:, 0], rect.left)
    top = np.maximum(boxes[:, 1], rect.top)
    right = np.minimum(boxes[:, 0] + boxes[:, 2] - 1, rect.right)
    bottom = np.minimum(boxes[:, 1] + boxes[:, 3] - 1, rect.bottom)
    inter = np.maximum(0, right - left + 1) * np.maximum(0, bottom - top + 1)
    union = boxes[:, 2] * boxes[:, 3] + rect.area - inter
    return np.where(union > 0, inter / np.maximum(union, 1), 0.0)


class ThresholdCalibrator:
    """
    Chooses one decision threshold per mixture component.

    Args:
        feature_extractor: Extractor the components were learned with
        components: Learned components (see ``ModelLearner.components``)
        interval: Pyramid levels per octave
        b: Recall weight of the F-measure
        overlap: IoU for a window to count as hitting a box
    """

    def __init__(self, feature_extractor: FeatureExtractor, components, interval: int = 5,
                 b: float = 1.0, overlap: float = 0.5):
        self.feature_extractor = feature_extractor
        self.components = components
        self.interval = interval
        self.b = b
        self.overlap = overlap

    def _pyramid(self, image: Optional[ImageData]) -> Optional[FeaturePyramid]:
        if image is None or image.empty():
            return None
        return FeaturePyramid(image, self.feature_extractor, self.interval,
                              min(c.rows for c in self.components), min(c.cols for c in self.components))

    def calibrate(self, positives: Sequence[Sample], negatives: Sequence[ImageData] = (),
                  loocv: bool = False, progress=None) -> List[float]:
        """
        Compute the thresholds.

        Args:
            positives: Samples with component associations
            negatives: Images without objects
            loocv: Score each box of a component with at least two boxes
                by the template learned without it
            progress: Progress reporter or ``(current, total)`` callback

        Returns:
            One threshold per component
        """
        reporter = as_reporter(progress)
        num_positive = len(positives)
        members = [[(j, m) for j, m in enumerate(c.members) if m[0] < num_positive] for c in self.components]
        folds = [len(m) if loocv and len(m) >= 2 else 1 for m in members]
        total = len(positives) + len(negatives) + sum(folds)
        step = 0

        pos_pyramids = []
        for sample in positives:
            reporter.checkpoint(step, total)
            step += 1
            pos_pyramids.append(self._pyramid(sample.image))
        neg_pyramids = []
        for image in negatives:
            reporter.checkpoint(step, total)
            step += 1
            pyramid = self._pyramid(image)
            if pyramid is not None:
                neg_pyramids.append(pyramid)

        thresholds = []
        for k, component in enumerate(self.components):
            model = component.build_model()
            if loocv and len(members[k]) >= 2:
                held_out = []
                for j, (si, bi) in members[k]:
                    reporter.checkpoint(step, total)
                    step += 1
                    score = self._held_out_score(component.build_model(exclude=j), positives[si].bboxes[bi],
                                                 pos_pyramids[si])
                    if score is not None:
                        held_out.append(score)
                _, num_objects, candidates = self._scan(k, model, positives, pos_pyramids, neg_pyramids)
                threshold = self._optimize(k, held_out, num_objects, candidates)
            else:
                reporter.checkpoint(step, total)
                step += 1
                threshold = self._optimize(k, *self._scan(k, model, positives, pos_pyramids, neg_pyramids))
            thresholds.append(threshold)
            logger.debug(f"Component {k}: threshold {threshold:.4f}")
        reporter.checkpoint(total, total)
        return thresholds

    def _held_out_score(self, model: Model, box: Rectangle, pyramid: Optional[FeaturePyramid]) -> Optional[float]:
        """Best window of ``model`` overlapping ``box``, or ``None`` if no window does."""
        if pyramid is None:
            return None
        scores, boxes = window_boxes(pyramid, model)
        hits = box_iou(boxes, box) >= self.overlap
        return float(scores[hits].max()) if hits.any() else None

    def _scan(self, k: int, model: Model, positives: Sequence[Sample],
              pos_pyramids: List[Optional[FeaturePyramid]], neg_pyramids: List[FeaturePyramid]):
        """
        Score the positive and negative images with one template.

        Returns:
            The best window score of every box of component ``k``, the number
            of such boxes, and the ``(scores, boxes)`` of windows hitting no
            box at all or lying on a negative image
        """
        pos_scores = []
        num_objects = 0
        candidates = []
        for sample, pyramid in zip(positives, pos_pyramids):
            if pyramid is None:
                continue
            scores, boxes = window_boxes(pyramid, model)
            background = np.ones(scores.shape[0], dtype=bool)
            for box, assoc in zip(sample.bboxes, sample.model_assoc):
                hits = box_iou(boxes, box) >= self.overlap
                background &= ~hits
                if assoc != k:
                    continue
                num_objects += 1
                if hits.any():
                    pos_scores.append(float(scores[hits].max()))
            candidates.append((scores[background], boxes[background]))
        for pyramid in neg_pyramids:
            candidates.append(window_boxes(pyramid, model))
        return pos_scores, num_objects, candidates

    def _optimize(self, k: int, pos_scores: List[float], num_objects: int, candidates) -> float:
        if not pos_scores:
            logger.warning(f"Component {k}: no window overlaps its boxes, keeping threshold 0")
            return 0.0
        floor = min(pos_scores)
        neg_scores = []
        for scores, boxes in candidates:
            keep = scores >= floor
            detections = [Detection('', float(s), Rectangle(*map(int, b))) for s, b in zip(scores[keep], boxes[keep])]
            neg_scores.extend(d.score for d in non_maximum_suppression(detections, self.overlap))

        threshold, f = optimal_threshold(pos_scores, neg_scores, num_objects, self.b)
        logger.debug(f"Component {k}: {len(pos_scores)}/{num_objects} positives, "
                     f"{len(neg_scores)} negatives, F={f:.3f}")
        return threshold
