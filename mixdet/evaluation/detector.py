"""
Sliding-window detection with mixtures of linear templates.

Each image is turned into a feature pyramid with ``interval`` levels per
octave. Every component template of every registered mixture is correlated
with every pyramid level; windows scoring at least the class threshold
become detections, which are mapped back to image coordinates, clipped and
reduced by greedy non-maximum suppression per class.

Key Features:
- One feature pyramid per distinct feature extractor configuration
- Full, single-best and top-k detection variants
- Model files and model list files
- Optional cap on the number of registered classes

References:
- Felzenszwalb, P. F., Girshick, R. B., McAllester, D., & Ramanan, D. (2010).
  Object Detection with Discriminatively Trained Part-Based Models. TPAMI.

Author: MixDet Toolkit Team
Date: October 2026
"""

import heapq
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

import numpy as np

from ..core.geometry import Detection, Rectangle
from ..core.status import InvalidImageDataError, NoModelsError, TooManyModelsError
from ..data_preparation.images import ImageData
from ..models.features import FeatureExtractor
from ..models.mixture import Mixture, Model, read_model_list

logger = logging.getLogger(__name__)


class FeaturePyramid:
    """
    Features of an image at geometrically decreasing scales.

    Level ``i`` holds the features of the image scaled by ``2^(-i/interval)``.
    Levels stop once the scaled image is smaller than ``min_rows x min_cols``
    cells.

    Args:
        image: Source image
        extractor: Feature extractor
        interval: Levels per octave
        min_rows: Smallest useful level height in cells
        min_cols: Smallest useful level width in cells
    """

    def __init__(self, image: ImageData, extractor: FeatureExtractor, interval: int = 10,
                 min_rows: int = 1, min_cols: int = 1):
        self.image_width = image.width
        self.image_height = image.height
        self.cell_size = extractor.cell_size
        self.levels: List[Tuple[float, float, np.ndarray]] = []

        interval = max(1, int(interval))
        level = 0
        while True:
            factor = 2.0 ** (-level / interval)
            scaled = image if level == 0 else image.scale(factor)
            if scaled.empty():
                break
            rows, cols = extractor.cells_for(scaled.width, scaled.height)
            if rows < min_rows or cols < min_cols:
                break
            feats = extractor.extract(scaled)
            self.levels.append((scaled.width / image.width, scaled.height / image.height, feats))
            level += 1

    def __len__(self) -> int:
        return len(self.levels)

    def window_to_box(self, level: int, row: int, col: int, rows: int, cols: int) -> Rectangle:
        """Image-space box of a ``rows x cols`` window at cell ``(row, col)`` of a level."""
        sx, sy, _ = self.levels[level]
        cs = self.cell_size
        box = Rectangle(
            int(round(col * cs / sx)),
            int(round(row * cs / sy)),
            int(round(cols * cs / sx)),
            int(round(rows * cs / sy))
        )
        return box.clip(self.image_width, self.image_height)


def non_maximum_suppression(detections: List[Detection], overlap: float) -> List[Detection]:
    """
    Greedy per-class suppression.

    Detections are visited in descending score order; a detection is dropped
    if its IoU with an already kept detection of the same class exceeds
    ``overlap``.
    """
    kept: Dict[str, List[Detection]] = {}
    for det in sorted(detections):
        same_class = kept.setdefault(det.classname, [])
        if all(det.bbox.iou(k.bbox) <= overlap for k in same_class):
            same_class.append(det)
    return sorted(d for group in kept.values() for d in group)


@dataclass
class DetectorEntry:
    """A registered class: its mixture, decision threshold and taxonomy id."""

    classname: str
    mixture: Mixture
    threshold: float = 0.0
    synset_id: str = ''


@dataclass
class ScoreMap:
    """Window scores of one template at one pyramid level."""

    entry_index: int
    model_index: int
    level: int
    scores: np.ndarray
    model: Model
    pyramid: FeaturePyramid


class Detector:
    """
    Multi-class sliding-window detector.

    Args:
        overlap: IoU above which lower-scoring detections of the same class
            are suppressed
        interval: Pyramid levels per octave
        debug: Log per-image details at INFO level
        max_models: Maximum number of registered classes (0: unlimited)
    """

    def __init__(self, overlap: float = 0.5, interval: int = 10, debug: bool = False, max_models: int = 0):
        self.overlap = overlap
        self.interval = max(1, int(interval))
        self.debug = debug
        self.max_models = max_models
        self.entries: List[DetectorEntry] = []
        self._detail_level = logging.INFO if debug else logging.DEBUG

    @property
    def num_models(self) -> int:
        return len(self.entries)

    def add_model(self, classname: str, mixture: Union[Mixture, str, Path], threshold: float = 0.0,
                  synset_id: str = '') -> None:
        """
        Register a class.

        Args:
            classname: Label of the detections this mixture produces
            mixture: Mixture or path of a model file
            threshold: Minimum window score for a detection of this class
            synset_id: Optional taxonomy identifier

        Raises:
            InvalidModelFileError: If the model file cannot be read
            TooManyModelsError: If the class cap is reached
        """
        if self.max_models and len(self.entries) >= self.max_models:
            raise TooManyModelsError(f"Detector already holds {self.max_models} models")
        if not isinstance(mixture, Mixture):
            mixture = Mixture.load(mixture)
        self.entries.append(DetectorEntry(classname, mixture, float(threshold), synset_id))
        logger.log(self._detail_level,
                   f"Added model '{classname}' with {len(mixture)} components, threshold {threshold}")

    def add_models(self, list_file: Union[str, Path]) -> int:
        """
        Register every class of a model list file.

        Returns:
            Number of classes added
        """
        entries = read_model_list(list_file)
        for entry in entries:
            self.add_model(entry.classname, entry.model_file, entry.threshold, entry.synset_id)
        logger.info(f"Added {len(entries)} models from {list_file}")
        return len(entries)

    def different_feature_extractors(self) -> int:
        return len(self._extractor_groups(range(len(self.entries))))

    def _extractor_groups(self, entry_indices) -> Dict[str, List[int]]:
        groups: Dict[str, List[int]] = {}
        for i in entry_indices:
            key = json.dumps(self.entries[i].mixture.feature_extractor.to_dict(), sort_keys=True)
            groups.setdefault(key, []).append(i)
        return groups

    def score_maps(self, image: ImageData, entry_indices=None,
                   interval: Optional[int] = None) -> Iterator[ScoreMap]:
        """
        Correlate templates with the feature pyramid(s) of an image.

        Classes sharing a feature extractor configuration share one pyramid,
        built down to the smallest template among them. Levels too small for
        a larger template yield no score map for it, so the scores of a class
        do not depend on which other classes are scanned with it.

        Args:
            image: Image to scan
            entry_indices: Registered classes to use (default: all)
            interval: Pyramid levels per octave (default: the detector's)

        Yields:
            One ``ScoreMap`` per template and pyramid level
        """
        if image is None or image.empty():
            raise InvalidImageDataError('Image data is empty.')
        if not self.entries:
            raise NoModelsError('No models have been added to the detector.')
        indices = range(len(self.entries)) if entry_indices is None else entry_indices
        interval = self.interval if not interval else int(interval)

        for group in self._extractor_groups(indices).values():
            extractor = self.entries[group[0]].mixture.feature_extractor
            models = [m for i in group for m in self.entries[i].mixture.models]
            pyramid = FeaturePyramid(image, extractor, interval,
                                     min(m.rows for m in models), min(m.cols for m in models))
            for i in group:
                for j, model in enumerate(self.entries[i].mixture.models):
                    for level, (_, _, feats) in enumerate(pyramid.levels):
                        scores = model.correlate(feats)
                        if scores.size:
                            yield ScoreMap(i, j, level, scores, model, pyramid)

    def _to_detection(self, smap: ScoreMap, row: int, col: int, score: float) -> Detection:
        entry = self.entries[smap.entry_index]
        bbox = smap.pyramid.window_to_box(smap.level, row, col, smap.model.rows, smap.model.cols)
        return Detection(entry.classname, float(score), bbox, entry.synset_id)

    def entry_candidates(self, image: ImageData, entry_indices=None, interval: Optional[int] = None,
                         apply_threshold: bool = True) -> Dict[int, List[Detection]]:
        """
        Windows passing the class thresholds (or all windows) before
        suppression, keyed by class index. The image is scanned once for all
        requested classes.
        """
        indices = range(len(self.entries)) if entry_indices is None else entry_indices
        detections: Dict[int, List[Detection]] = {i: [] for i in indices}
        for smap in self.score_maps(image, indices, interval):
            threshold = self.entries[smap.entry_index].threshold if apply_threshold else -np.inf
            for row, col in np.argwhere(smap.scores >= threshold):
                detections[smap.entry_index].append(self._to_detection(smap, row, col, smap.scores[row, col]))
        return detections

    def candidates(self, image: ImageData, entry_indices=None, interval: Optional[int] = None,
                   apply_threshold: bool = True) -> List[Detection]:
        """All windows passing the class thresholds (or all windows), before suppression."""
        per_entry = self.entry_candidates(image, entry_indices, interval, apply_threshold)
        return [d for group in per_entry.values() for d in group]

    def detect(self, image: ImageData) -> List[Detection]:
        """
        Detect all registered classes in an image.

        Returns:
            Detections after non-maximum suppression, best first
        """
        detections = non_maximum_suppression(self.candidates(image), self.overlap)
        logger.log(self._detail_level, f"Detected {len(detections)} objects in {image!r}")
        return detections

    def detect_max(self, image: ImageData) -> Optional[Detection]:
        """The single highest-scoring detection above threshold, or ``None``."""
        best = None
        best_score = -np.inf
        for smap in self.score_maps(image):
            threshold = self.entries[smap.entry_index].threshold
            row, col = np.unravel_index(np.argmax(smap.scores), smap.scores.shape)
            score = smap.scores[row, col]
            if score >= threshold and score > best_score:
                best_score = score
                best = (smap, row, col)
        if best is None:
            return None
        smap, row, col = best
        return self._to_detection(smap, row, col, best_score)

    def _ranked_windows(self, image: ImageData) -> Iterator[Tuple[float, ScoreMap, int, int]]:
        """
        Windows above their class threshold in descending score order.

        The sorted windows of every score map are merged lazily, so a consumer
        that stops early never builds the remaining detections.
        """
        streams = [self._sorted_windows(n, smap) for n, smap in enumerate(self.score_maps(image))]
        for neg_score, _, idx, smap in heapq.merge(*streams, key=lambda item: item[:3]):
            row, col = divmod(idx, smap.scores.shape[1])
            yield -neg_score, smap, row, col

    def _sorted_windows(self, n: int, smap: ScoreMap) -> Iterator[Tuple[float, int, int, ScoreMap]]:
        flat = smap.scores.ravel()
        order = np.argsort(-flat, kind='stable')
        passing = int(np.count_nonzero(flat >= self.entries[smap.entry_index].threshold))
        for idx in order[:passing]:
            yield -float(flat[idx]), n, int(idx), smap

    def detect_top_k(self, image: ImageData, k: int) -> List[Detection]:
        """
        The ``k`` highest-scoring detections after suppression.

        Windows are visited best first and suppressed greedily as they come;
        the scan stops as soon as ``k`` detections are kept.
        """
        if k <= 0:
            return []
        if k == 1:
            best = self.detect_max(image)
            return [best] if best is not None else []
        kept: Dict[str, List[Detection]] = {}
        found: List[Detection] = []
        for score, smap, row, col in self._ranked_windows(image):
            det = self._to_detection(smap, row, col, score)
            same_class = kept.setdefault(det.classname, [])
            if all(det.bbox.iou(other.bbox) <= self.overlap for other in same_class):
                same_class.append(det)
                found.append(det)
                if len(found) == k:
                    break
        return found
