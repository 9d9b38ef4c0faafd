"""
Mixture model learning for the MixDet toolkit.

Learns a mixture of WHO (whitened histograms of orientations) templates from
positive samples and a stationary background model. No negative mining or
iterative optimisation is needed: every template is the LDA direction
``Sigma^-1 (mean(x) - mu)`` of a cluster of positive descriptors.

Key Features:
- Incremental accumulation of samples from images, raw buffers and synsets
- Aspect-ratio clustering followed by appearance clustering in whitened space
- Per-component threshold calibration (overlapping or leave-one-out)
- JSON model files, optionally appended to an existing file
- Explicit learner state machine, results committed only on success

References:
- Hariharan, B., Malik, J., & Ramanan, D. (2012). Discriminative
  Decorrelation for Clustering and Classification. ECCV.
- Göring, C., Rodner, E., Freytag, A., & Denzler, J. (2014). Nonparametric
  Part Transfer for Fine-grained Recognition. CVPR.

Author: MixDet Toolkit Team
Date: October 2026
"""

import copy
import logging
import math
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from sklearn.cluster import KMeans

from ..core.geometry import Rectangle, Sample
from ..core.progress import ProgressReporter, as_reporter
from ..core.status import (
    FeatureExtractorNotReadyError,
    InvalidRepositoryError,
    InvalidSampleImageError,
    LearningFailedError,
    ModelNotLearnedError,
    NoSamplesError,
    SynsetNotFoundError
)
from ..data_preparation.images import ImageData
from ..data_preparation.repository import ImageRepository, Synset
from ..models.background import StationaryBackground
from ..models.features import FeatureExtractor, default_feature_extractor
from ..models.mixture import Mixture, Model
from .threshold import ThresholdCalibrator

logger = logging.getLogger(__name__)


class LearnerState(IntEnum):
    EMPTY = 0
    ACCUMULATING = 1
    LEARNED = 2
    CALIBRATED = 3
    SAVED = 4


@dataclass
class Component:
    """
    Everything needed to rebuild one template.

    ``whitened`` holds one row per member box, ``members`` the matching
    ``(sample index, box index)`` pairs.
    """

    rows: int
    cols: int
    chol: np.ndarray
    mu: np.ndarray
    whitened: np.ndarray
    members: List[Tuple[int, int]] = field(default_factory=list)

    def build_model(self, exclude: Optional[int] = None) -> Model:
        """
        LDA template of the cluster, optionally leaving one member out.

        The bias puts the decision boundary halfway between the background
        mean and the cluster mean.
        """
        rows = self.whitened if exclude is None else np.delete(self.whitened, exclude, axis=0)
        mean_whitened = rows.mean(axis=0)
        w = np.linalg.solve(self.chol.T, mean_whitened)
        x_bar = self.mu + self.chol @ mean_whitened
        bias = -0.5 * float(w @ (x_bar + self.mu))
        return Model(w.reshape(self.rows, self.cols, -1), bias)


def template_size(aspect_ratio: float, max_cells: int) -> Tuple[int, int]:
    """
    Largest template of ``rows x cols <= max_cells`` cells with the given
    width/height ratio; both dimensions are at least 1.
    """
    aspect_ratio = aspect_ratio if aspect_ratio > 0 else 1.0
    rows = max(1, int(math.floor(math.sqrt(max_cells / aspect_ratio))))
    cols = max(1, min(int(round(rows * aspect_ratio)), max_cells // rows))
    while rows * cols > max_cells and rows > 1:
        rows -= 1
    return rows, cols


class ModelLearner:
    """
    Learns a mixture of WHO templates from positive samples.

    Args:
        background: Background statistics used for whitening
        feature_extractor: Extractor (default: copy of the process-wide default)
        loocv: Calibrate thresholds by leave-one-out cross-validation
        debug: Log per-step details at INFO level
        max_template_cells: Upper bound of template rows x cols
        regularization: Ridge added to the template covariance
        kmeans_n_init: k-means restarts
        random_seed: Seed of the clustering
        calibration_interval: Pyramid levels per octave used for calibration
    """

    def __init__(self, background: StationaryBackground, feature_extractor: Optional[FeatureExtractor] = None,
                 loocv: bool = False, debug: bool = False, max_template_cells: int = 100,
                 regularization: float = 0.01, kmeans_n_init: int = 10, random_seed: int = 42,
                 calibration_interval: int = 5):
        self.background = background
        self.feature_extractor = copy.deepcopy(feature_extractor or default_feature_extractor())
        self.loocv = loocv
        self.debug = debug
        self.max_template_cells = max_template_cells
        self.regularization = regularization
        self.kmeans_n_init = kmeans_n_init
        self.random_seed = random_seed
        self.calibration_interval = calibration_interval
        self.repository: Optional[ImageRepository] = None
        self.positive_synsets: List[str] = []
        self._detail_level = logging.INFO if debug else logging.DEBUG

        self.samples: List[Sample] = []
        self.mixture: Optional[Mixture] = None
        self.components: List[Component] = []
        self.thresholds: List[float] = []
        self.state = LearnerState.EMPTY

    @property
    def num_samples(self) -> int:
        return len(self.samples)

    def reset(self) -> None:
        """Drop all samples and any learned mixture."""
        for sample in self.samples:
            sample.release()
        self.samples = []
        self.positive_synsets = []
        self.mixture = None
        self.components = []
        self.thresholds = []
        self.state = LearnerState.EMPTY

    def _append_sample(self, sample: Sample) -> None:
        self.samples.append(sample)
        if self.state == LearnerState.EMPTY:
            self.state = LearnerState.ACCUMULATING

    def add_positive_sample(self, image: ImageData, bboxes: Optional[Sequence[Rectangle]] = None) -> None:
        """
        Add an image with annotated objects.

        Args:
            image: Decoded image
            bboxes: Object boxes; empty or ``None`` means the whole image

        Raises:
            InvalidSampleImageError: If the image is empty or no box lies inside it
        """
        if image is None or image.empty():
            raise InvalidSampleImageError('Sample image could not be decoded.')
        if bboxes:
            clipped = [b.clip(image.width, image.height) for b in bboxes]
            clipped = [b for b in clipped if not b.empty()]
            if not clipped:
                raise InvalidSampleImageError('No bounding box lies inside the sample image.')
        else:
            clipped = [image.bounds()]
        self._append_sample(Sample(image=image, bboxes=clipped))
        logger.log(self._detail_level, f"Added positive sample {image!r} with {len(clipped)} boxes")

    def add_positive_samples_from_synset(self, synset: Synset, max_samples: int = 0) -> int:
        """
        Add annotated images of a synset.

        Images are loaded lazily; only images with at least one annotated box
        are used.

        Returns:
            Number of samples added
        """
        added = 0
        for simg in synset.iter_images(with_boxes_only=True):
            if max_samples > 0 and added >= max_samples:
                break
            if not simg.load_bounding_boxes():
                continue
            simg.release()
            self._append_sample(Sample(bboxes=simg.bboxes, source=simg))
            added += 1
        if added > 0 and synset.id not in self.positive_synsets:
            self.positive_synsets.append(synset.id)
        logger.info(f"Added {added} samples from synset {synset.id}")
        return added

    def _cluster(self, data: np.ndarray, max_clusters: int) -> np.ndarray:
        distinct = np.unique(data, axis=0).shape[0]
        k = max(1, min(int(max_clusters), distinct))
        if k == 1:
            return np.zeros(data.shape[0], dtype=int)
        kmeans = KMeans(n_clusters=k, n_init=self.kmeans_n_init, random_state=self.random_seed)
        return kmeans.fit_predict(data)

    def _whitening_factor(self, rows: int, cols: int) -> np.ndarray:
        """
        Cholesky factor of the regularised template covariance.

        A covariance truncated at the background's maximum offset need not be
        positive definite; the ridge is increased tenfold until it is.
        """
        sigma = self.background.compute_covariance(rows, cols, 0.0)
        regularization = max(self.regularization, 1e-6)
        for _ in range(8):
            try:
                return np.linalg.cholesky(sigma + regularization * np.eye(sigma.shape[0]))
            except np.linalg.LinAlgError:
                logger.warning(f"Template covariance {rows}x{cols} not positive definite "
                               f"with regularization {regularization}, increasing it")
                regularization *= 10
        raise LearningFailedError(f"Template covariance {rows}x{cols} is not positive definite.")

    def _descriptor(self, image: ImageData, box: Rectangle, rows: int, cols: int) -> Optional[np.ndarray]:
        cs = self.feature_extractor.cell_size
        crop = image.crop(box).resize(cols * cs, rows * cs)
        if crop.empty():
            return None
        feats = self.feature_extractor.extract(crop)
        if feats.shape[:2] != (rows, cols):
            return None
        return feats.reshape(-1)

    def learn(self, max_aspect_clusters: int = 3, max_who_clusters: int = 3, progress=None) -> None:
        """
        Learn the mixture.

        Boxes are clustered by aspect ratio; for every aspect cluster a
        template size is fixed and the whitened descriptors of its boxes are
        clustered again by appearance. Each non-empty appearance cluster
        becomes one component. Results replace the previous mixture only if
        the whole run succeeds.

        Args:
            max_aspect_clusters: Upper bound of aspect-ratio clusters
            max_who_clusters: Upper bound of appearance clusters per aspect cluster
            progress: Progress reporter or ``(current, total)`` callback;
                ``total`` is the number of boxes plus aspect clusters

        Raises:
            NoSamplesError: If no sample was added
            FeatureExtractorNotReadyError: If the background does not fit the extractor
            LearningFailedError: If no descriptor could be computed
            OperationAborted: If the progress callback cancelled the run
        """
        if not self.samples:
            raise NoSamplesError('No positive samples have been added.')
        readiness = self.feature_extractor.whitening_readiness(self.background)
        if not readiness:
            raise FeatureExtractorNotReadyError(readiness.reason)
        reporter = as_reporter(progress)

        boxes = [(si, bi, box) for si, sample in enumerate(self.samples) for bi, box in enumerate(sample.bboxes)]
        ratios = np.array([[box.aspect_ratio] for _, _, box in boxes])
        aspect_labels = self._cluster(ratios, max_aspect_clusters)
        aspect_ids = list(dict.fromkeys(aspect_labels.tolist()))

        total = len(boxes) + len(aspect_ids)
        step = 0
        components: List[Component] = []
        models: List[Model] = []
        assoc = [[Sample.NO_ASSOC] * len(sample.bboxes) for sample in self.samples]

        logger.info(f"Learning from {len(boxes)} boxes in {len(self.samples)} samples, "
                    f"{len(aspect_ids)} aspect clusters")
        for a in aspect_ids:
            members = np.flatnonzero(aspect_labels == a)
            rows, cols = template_size(float(ratios[members].mean()), self.max_template_cells)
            chol = self._whitening_factor(rows, cols)
            mu = self.background.mean_vector(rows, cols)

            descriptors, owners = [], []
            for idx in members:
                reporter.checkpoint(step, total)
                step += 1
                si, bi, box = boxes[idx]
                image = self.samples[si].image
                if image is None or image.empty():
                    logger.warning(f"Skipping box {box} of sample {si}: image could not be loaded")
                    continue
                x = self._descriptor(image, box, rows, cols)
                if x is None:
                    logger.warning(f"Skipping box {box} of sample {si}: no features")
                    continue
                descriptors.append(np.linalg.solve(chol, x - mu))
                owners.append((si, bi))

            reporter.checkpoint(step, total)
            step += 1
            if not descriptors:
                continue
            whitened = np.vstack(descriptors)
            who_labels = self._cluster(whitened, max_who_clusters)
            for c in dict.fromkeys(who_labels.tolist()):
                picked = np.flatnonzero(who_labels == c)
                component = Component(rows, cols, chol, mu, whitened[picked],
                                      [owners[i] for i in picked])
                for si, bi in component.members:
                    assoc[si][bi] = len(components)
                components.append(component)
                models.append(component.build_model())
            logger.log(self._detail_level,
                       f"Aspect cluster {a}: template {rows}x{cols}, {len(descriptors)} boxes")

        if not models:
            raise LearningFailedError('No descriptor could be computed from the samples.')
        reporter.checkpoint(total, total)

        for sample, sample_assoc in zip(self.samples, assoc):
            sample.model_assoc = sample_assoc
        self.components = components
        self.mixture = Mixture(copy.deepcopy(self.feature_extractor), models)
        self.thresholds = [0.0] * len(models)
        self.state = LearnerState.LEARNED
        logger.info(f"Learned mixture with {len(models)} components")

    def optimize_threshold(self, max_positive: int = 0, num_negative: int = 0, b: float = 1.0,
                           progress=None) -> List[float]:
        """
        Calibrate one decision threshold per component.

        Args:
            max_positive: Number of positive samples to use (0: all)
            num_negative: Number of repository images used as negatives
            b: Recall weight of the F-measure to maximise
            progress: Progress reporter or ``(current, total)`` callback

        Returns:
            The calibrated thresholds

        Raises:
            ModelNotLearnedError: If ``learn`` has not succeeded yet
            InvalidRepositoryError: If negatives are requested without a repository
            OperationAborted: If the progress callback cancelled the run
        """
        if self.state < LearnerState.LEARNED or self.mixture is None:
            raise ModelNotLearnedError('Thresholds can only be optimized after learning.')
        if num_negative > 0 and self.repository is None:
            raise InvalidRepositoryError('Negative samples require an image repository.')

        negatives = []
        if num_negative > 0:
            mixed = self.repository.get_mixed_iterator(per_synset=1, exclude=self.positive_synsets)
            negatives = list(mixed.images(num_negative))

        positives = self.samples[:max_positive] if max_positive > 0 else self.samples
        calibrator = ThresholdCalibrator(self.feature_extractor, self.components,
                                         interval=self.calibration_interval, b=b)
        thresholds = calibrator.calibrate(positives, negatives, loocv=self.loocv, progress=progress)

        self.thresholds = thresholds
        self.state = LearnerState.CALIBRATED
        logger.info(f"Calibrated thresholds: {[round(t, 4) for t in thresholds]}")
        return thresholds

    def calibrated_mixture(self) -> Mixture:
        """
        Copy of the learned mixture with the thresholds folded into the biases.

        Raises:
            ModelNotLearnedError: If ``learn`` has not succeeded yet
        """
        if self.state < LearnerState.LEARNED or self.mixture is None:
            raise ModelNotLearnedError('No mixture has been learned.')
        models = [Model(m.weights.copy(), m.bias - t) for m, t in zip(self.mixture.models, self.thresholds)]
        return Mixture(copy.deepcopy(self.mixture.feature_extractor), models)

    def save(self, path: Union[str, Path], append: bool = False) -> bool:
        """
        Write the calibrated mixture to a model file.

        Returns:
            ``True`` on success, ``False`` if the file could not be written

        Raises:
            ModelNotLearnedError: If ``learn`` has not succeeded yet
        """
        if not self.calibrated_mixture().save(path, append):
            return False
        self.state = LearnerState.SAVED
        return True


class RepositoryModelLearner(ModelLearner):
    """
    Model learner with access to an image repository.

    The repository provides positive samples by synset id and negative images
    for threshold calibration.

    Args:
        background: Background statistics used for whitening
        repository: Repository directory or instance (optional)
        **kwargs: Passed on to ``ModelLearner``
    """

    def __init__(self, background: StationaryBackground,
                 repository: Union[str, Path, ImageRepository, None] = None, **kwargs):
        super().__init__(background, **kwargs)
        if isinstance(repository, ImageRepository):
            self.repository = repository
        elif repository:
            valid, message = ImageRepository.has_repository_structure(repository)
            if not valid:
                raise InvalidRepositoryError(message)
            self.repository = ImageRepository(repository)

    def add_positive_samples_from_synset(self, synset: Union[Synset, str], max_samples: int = 0) -> int:
        """
        Add annotated images of a synset given as instance or id.

        Raises:
            InvalidRepositoryError: If a synset id is given without a repository
            SynsetNotFoundError: If the repository has no such synset
        """
        if isinstance(synset, str):
            if self.repository is None:
                raise InvalidRepositoryError('No image repository attached to the learner.')
            found = self.repository.get_synset(synset)
            if found is None:
                raise SynsetNotFoundError(f"Synset {synset} not found")
            synset = found
        return super().add_positive_samples_from_synset(synset, max_samples)


def run_learning(learner: ModelLearner, output: Union[str, Path], max_aspect_clusters: int = 3,
                 max_who_clusters: int = 3, optimize_threshold: bool = True, max_positive: int = 0,
                 num_negative: int = 0, b: float = 1.0, append: bool = False,
                 progress: Optional[ProgressReporter] = None) -> bool:
    """
    Learn, optionally calibrate, and save in one go.

    The overall step counter covers learning, calibration (if requested) and
    saving, so it has 3 steps with calibration and 2 without.

    Returns:
        Result of ``save``
    """
    reporter = progress or ProgressReporter()
    reporter.begin_phase(3 if optimize_threshold else 2)

    learner.learn(max_aspect_clusters, max_who_clusters, reporter)
    reporter.next_phase()
    if optimize_threshold:
        learner.optimize_threshold(max_positive, num_negative, b, reporter)
        reporter.next_phase()
    reporter.report_overall()
    reporter.raise_if_aborted()
    saved = learner.save(output, append)
    reporter.finish()
    return saved


def main():
    """
    Main entry point for model learning.

    Learns a model either from a repository synset or from image files (each
    optionally annotated by a Pascal VOC file of the same name).
    """
    import sys
    import argparse

    from ..config import Config
    from ..core.progress import ConsoleProgress
    from ..data_preparation.annotations import Scene
    from ..data_preparation.utils import ReproducibilityManager

    parser = argparse.ArgumentParser(description='Learn a MixDet mixture model')
    parser.add_argument('--config', type=str, help='Path to configuration file')
    parser.add_argument('--background', type=str, required=True, help='Background statistics file')
    parser.add_argument('--output', type=str, required=True, help='Model file to write')
    parser.add_argument('--repository', type=str, help='Image repository directory')
    parser.add_argument('--synset', type=str, help='Synset id to learn from')
    parser.add_argument('--images', nargs='+', default=[], help='Positive image files')
    parser.add_argument('--no-threshold', action='store_true', help='Skip threshold calibration')
    parser.add_argument('--append', action='store_true', help='Append to an existing model file')
    parser.add_argument('--verbose', action='store_true', help='Verbose logging')

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        config = Config(args.config)
        learning = config.get('learning', {})
        ReproducibilityManager.set_seed(learning.get('random_seed', 42))

        background = StationaryBackground(args.background)
        if background.empty():
            logger.error(f"Could not load background statistics from {args.background}")
            sys.exit(1)

        extractor = config.configure_feature_extractor()

        learner = RepositoryModelLearner(
            background,
            args.repository,
            feature_extractor=extractor,
            loocv=learning.get('threshold_mode', 'overlapping') == 'loocv',
            max_template_cells=learning.get('max_template_cells', 100),
            regularization=learning.get('regularization', 0.01),
            kmeans_n_init=learning.get('kmeans_n_init', 10),
            random_seed=learning.get('random_seed', 42),
            calibration_interval=learning.get('calibration_interval', 5)
        )

        if args.synset:
            count = learner.add_positive_samples_from_synset(args.synset, learning.get('max_samples', 0))
            logger.info(f"Step 1/2: Loaded {count} samples from synset {args.synset}")
        for image_file in args.images:
            image = ImageData.from_file(image_file)
            annotation = Path(image_file).with_suffix('.xml')
            boxes = []
            if annotation.exists():
                scene = Scene.from_file(annotation)
                if not scene.empty():
                    scale = image.width / scene.width if not image.empty() else 1.0
                    boxes = [obj.bndbox.scaled(scale) for obj in scene.objects]
            learner.add_positive_sample(image, boxes)
        logger.info(f"Step 1/2: {learner.num_samples} positive samples")

        console = ConsoleProgress('Learning')
        saved = run_learning(
            learner, args.output,
            max_aspect_clusters=learning.get('max_aspect_clusters', 3),
            max_who_clusters=learning.get('max_who_clusters', 3),
            optimize_threshold=not args.no_threshold,
            max_positive=learning.get('threshold_max_positive', 0),
            num_negative=learning.get('threshold_num_negative', 0) if args.repository else 0,
            b=learning.get('threshold_fmeasure_b', 1.0),
            append=args.append,
            progress=ProgressReporter.overall(console)
        )
        console.close()
        if not saved:
            logger.error(f"Could not write model file {args.output}")
            sys.exit(1)
        logger.info(f"Step 2/2: Model written to {args.output}")

    except Exception as e:
        logger.error(f"Learning failed: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
