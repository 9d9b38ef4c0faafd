"""
Model evaluation on annotated images.

Runs the registered mixtures over positive images (with ground-truth boxes)
and optional negative images at threshold -inf, matches the detections to the
ground truth and keeps one ranked precision/recall curve per registered
class. Curves can be queried for the best F-measure, the F-measure at a
given threshold and the average precision, or dumped as a table.

Key Features:
- Greedy matching: best detection first, each ground-truth box claimed once
- Evaluation granularity independent of the detection interval
- Results replaced only when a run completes
- Tab separated result dumps via pandas

References:
- Everingham, M., Van Gool, L., Williams, C. K. I., Winn, J., & Zisserman, A.
  (2010). The PASCAL Visual Object Classes (VOC) Challenge. IJCV.

Author: MixDet Toolkit Team
Date: October 2026
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd

from ..core.geometry import Rectangle, Sample
from ..core.progress import as_reporter
from ..core.status import (
    IndexOutOfBoundsError,
    InvalidAnnotationsError,
    InvalidImageDataError,
    NoImagesError,
    NoModelsError,
    NoResultsError
)
from ..data_preparation.annotations import Scene
from ..data_preparation.images import ImageData
from ..data_preparation.repository import ImageRepository, Synset
from ..data_preparation.utils import AtomicFileWriter
from .detector import Detector, non_maximum_suppression
from .statistics import TestResult, average_precision, fmeasure_at, match_detections, max_fmeasure, ranked_curve

logger = logging.getLogger(__name__)


def positive_sample(image: ImageData, bboxes: Optional[Sequence[Rectangle]] = None) -> Sample:
    """
    Build an evaluation sample; no boxes means the whole image is the object.

    Raises:
        InvalidImageDataError: If the image is empty
    """
    if image is None or image.empty():
        raise InvalidImageDataError('Evaluation image could not be decoded.')
    boxes = list(bboxes) if bboxes else [image.bounds()]
    return Sample(image=image, bboxes=boxes)


def positive_sample_from_annotation(image_file: Union[str, Path], annotation_file: Union[str, Path]) -> Sample:
    """
    Load an image and its Pascal VOC annotation as an evaluation sample.

    Boxes are scaled from the annotation's coordinate space into image space.
    Boxes touching the left or top border (``x <= 0`` or ``y <= 0``), lying
    outside the image or having no area are dropped.

    Raises:
        InvalidImageDataError: If the image cannot be decoded
        InvalidAnnotationsError: If the annotation cannot be parsed
    """
    image = ImageData.from_file(image_file)
    if image.empty():
        raise InvalidImageDataError(f"Could not decode image {image_file}")
    scene = Scene.from_file(annotation_file)
    if scene.empty():
        raise InvalidAnnotationsError(f"Could not read annotations from {annotation_file}")

    scale = image.width / scene.width
    boxes = []
    for obj in scene.objects:
        bbox = obj.bndbox.scaled(scale)
        if 0 < bbox.x < image.width and 0 < bbox.y < image.height and bbox.width > 0 and bbox.height > 0:
            boxes.append(bbox)
        else:
            logger.debug(f"Dropping annotation {bbox} of {annotation_file}")
    return Sample(image=image, bboxes=boxes)


def samples_from_synset(synset: Synset) -> List[Sample]:
    """
    Evaluation samples for every image of a synset.

    Images without annotation count as a single object covering the image.
    """
    samples = []
    for simg in synset.iter_images():
        image = simg.get_image()
        if image.empty():
            continue
        bboxes = simg.bboxes if simg.load_bounding_boxes() else [image.bounds()]
        samples.append(Sample(image=image, bboxes=bboxes))
    logger.info(f"Loaded {len(samples)} evaluation samples from synset {synset.id}")
    return samples


def negatives_from_repository(repo: ImageRepository, exclude: Sequence[str], num_negative: int) -> List[ImageData]:
    """Up to ``num_negative`` images of synsets other than ``exclude``."""
    if num_negative <= 0:
        return []
    negatives = list(repo.get_mixed_iterator(per_synset=1, exclude=list(exclude)).images(num_negative))
    logger.info(f"Loaded {len(negatives)} negative images")
    return negatives


class ModelEvaluator(Detector):
    """
    Detector that measures its own models on annotated data.

    Args:
        overlap: IoU above which detections of a class are suppressed
        eq_overlap: IoU from which a detection matches a ground-truth box
        interval: Pyramid levels per octave for detection
        debug: Log per-image details at INFO level
        max_models: Maximum number of registered classes (0: unlimited)
    """

    def __init__(self, overlap: float = 0.5, eq_overlap: float = 0.5, interval: int = 10,
                 debug: bool = False, max_models: int = 0):
        super().__init__(overlap, interval, debug, max_models)
        self.eq_overlap = eq_overlap
        self.results: Dict[int, List[TestResult]] = {}

    def set_eq_overlap(self, value: float) -> None:
        self.eq_overlap = float(value)

    def _check_index(self, model_index: int) -> None:
        if model_index < 0 or model_index >= self.num_models:
            raise IndexOutOfBoundsError(f"Model index {model_index} out of range (have {self.num_models})")

    def test_models(self, positives: Sequence[Sample], model_index: Optional[int] = None,
                    negatives: Optional[Sequence[ImageData]] = None, granularity: int = 0,
                    progress=None) -> Dict[int, List[TestResult]]:
        """
        Evaluate registered models.

        Every window of every template is a detection candidate; candidates
        are suppressed per class and matched to the ground-truth boxes of the
        positive samples. Detections on negative images are false positives.

        Args:
            positives: Samples with ground-truth boxes
            model_index: Class to evaluate (default: all)
            negatives: Images without objects of any evaluated class
            granularity: Pyramid levels per octave for this run (0: detector interval)
            progress: Progress reporter or ``(current, total)`` callback

        Returns:
            The new curves keyed by class index

        Raises:
            NoModelsError: If no class is registered
            NoImagesError: If there are no positive samples
            IndexOutOfBoundsError: If ``model_index`` is invalid
            OperationAborted: If the progress callback cancelled the run
        """
        if not self.entries:
            raise NoModelsError('No models have been added to the detector.')
        if not positives:
            raise NoImagesError('No positive samples for evaluation.')
        if model_index is not None:
            self._check_index(model_index)
        indices = list(range(self.num_models)) if model_index is None else [model_index]
        negatives = negatives or []
        interval = granularity if granularity > 0 else self.interval
        reporter = as_reporter(progress)
        total = len(positives) + len(negatives)

        labelled: Dict[int, List[Tuple[float, bool]]] = {i: [] for i in indices}
        num_positives = 0
        step = 0
        for sample in positives:
            reporter.checkpoint(step, total)
            step += 1
            image = sample.image
            if image is None or image.empty():
                logger.warning(f"Skipping evaluation sample {sample!r}: image could not be loaded")
                continue
            num_positives += len(sample.bboxes)
            per_entry = self.entry_candidates(image, indices, interval, apply_threshold=False)
            for i in indices:
                detections = non_maximum_suppression(per_entry[i], self.overlap)
                labelled[i].extend(match_detections(detections, sample.bboxes, self.eq_overlap))
            logger.log(self._detail_level, f"Evaluated {image!r} with {len(sample.bboxes)} objects")

        for image in negatives:
            reporter.checkpoint(step, total)
            step += 1
            if image is None or image.empty():
                continue
            per_entry = self.entry_candidates(image, indices, interval, apply_threshold=False)
            for i in indices:
                labelled[i].extend((d.score, False) for d in non_maximum_suppression(per_entry[i], self.overlap))
        reporter.checkpoint(total, total)

        curves = {i: ranked_curve(labelled[i], num_positives) for i in indices}
        if model_index is None:
            self.results = curves
        else:
            self.results.update(curves)
        for i, curve in curves.items():
            threshold, f = max_fmeasure(curve)
            logger.info(f"Model '{self.entries[i].classname}': {len(curve)} thresholds, "
                        f"max F {f:.3f} at {threshold:.4f}, AP {average_precision(curve):.3f}")
        return curves

    def get_results(self, model_index: int = 0) -> List[TestResult]:
        """
        Curve of a class in descending threshold order (empty if not evaluated).

        Raises:
            IndexOutOfBoundsError: If ``model_index`` is invalid
        """
        self._check_index(model_index)
        return list(self.results.get(model_index, []))

    def _curve(self, model_index: int) -> List[TestResult]:
        curve = self.get_results(model_index)
        if not curve:
            raise NoResultsError(f"No test results for model {model_index}")
        return curve

    def get_max_fmeasure(self, model_index: int = 0, b: float = 1.0) -> Tuple[float, float]:
        """
        Best operating point of a class.

        Returns:
            (threshold, F-measure)

        Raises:
            IndexOutOfBoundsError: If ``model_index`` is invalid
            NoResultsError: If the class has not been evaluated
        """
        return max_fmeasure(self._curve(model_index), b)

    def get_fmeasure_at(self, threshold: float, model_index: int = 0, b: float = 1.0) -> float:
        return fmeasure_at(self._curve(model_index), threshold, b)

    def compute_average_precision(self, model_index: int = 0) -> float:
        return average_precision(self._curve(model_index))

    def results_table(self) -> pd.DataFrame:
        """All curves as one long table, one row per class and threshold."""
        rows = []
        for i in sorted(self.results):
            entry = self.entries[i]
            for r in self.results[i]:
                rows.append({
                    'model': i,
                    'classname': entry.classname,
                    'threshold': r.threshold,
                    'tp': r.tp,
                    'fp': r.fp,
                    'np': r.np,
                    'precision': r.precision,
                    'recall': r.recall,
                    'fmeasure': r.fmeasure()
                })
        return pd.DataFrame(rows, columns=['model', 'classname', 'threshold', 'tp', 'fp', 'np',
                                           'precision', 'recall', 'fmeasure'])

    def dump_test_results(self, path: Union[str, Path]) -> bool:
        """
        Write all curves to a tab separated file.

        Returns:
            ``True`` on success, ``False`` if the file could not be written

        Raises:
            NoResultsError: If nothing has been evaluated
        """
        if not any(self.results.values()):
            raise NoResultsError('No test results to dump.')
        table = self.results_table()
        try:
            with AtomicFileWriter.atomic_write(path) as f:
                table.to_csv(f, sep='\t', index=False, float_format='%.6f')
        except OSError as e:
            logger.error(f"Failed to write test results to {path}: {e}")
            return False
        logger.info(f"Test results written to {path}")
        return True


def main():
    """
    Main entry point for model evaluation.

    Evaluates a model (or model list) either on a repository synset or on
    image files annotated by Pascal VOC files of the same name.
    """
    import sys
    import argparse

    from ..config import Config
    from ..core.progress import ConsoleProgress, ProgressReporter
    from ..core.status import SynsetNotFoundError, InvalidRepositoryError

    parser = argparse.ArgumentParser(description='Evaluate MixDet models')
    parser.add_argument('--config', type=str, help='Path to configuration file')
    parser.add_argument('--model', type=str, help='Model file to evaluate')
    parser.add_argument('--classname', type=str, default='object', help='Class name of --model')
    parser.add_argument('--model-list', type=str, help='Model list file to evaluate')
    parser.add_argument('--repository', type=str, help='Image repository directory')
    parser.add_argument('--synset', type=str, help='Synset id to evaluate on')
    parser.add_argument('--images', nargs='+', default=[], help='Annotated positive image files')
    parser.add_argument('--negatives', nargs='+', default=[], help='Negative image files')
    parser.add_argument('--output', type=str, help='Result table to write')
    parser.add_argument('--verbose', action='store_true', help='Verbose logging')

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        config = Config(args.config)

        evaluator = ModelEvaluator(
            overlap=config.get('detection.overlap', 0.5),
            eq_overlap=config.get('evaluation.eq_overlap', 0.5),
            interval=config.get('detection.interval', 10),
            debug=args.verbose
        )
        if args.model:
            evaluator.add_model(args.classname, args.model)
        if args.model_list:
            evaluator.add_models(args.model_list)
        logger.info(f"Step 1/3: {evaluator.num_models} models loaded")

        positives: List[Sample] = []
        negatives: List[ImageData] = []
        if args.synset:
            repo_dir = args.repository or config.get('repository.directory')
            valid, message = ImageRepository.has_repository_structure(repo_dir)
            if not valid:
                raise InvalidRepositoryError(message)
            repo = ImageRepository(repo_dir)
            synset = repo.get_synset(args.synset)
            if synset is None:
                raise SynsetNotFoundError(f"Synset {args.synset} not found")
            positives.extend(samples_from_synset(synset))
            negatives.extend(negatives_from_repository(repo, [synset.id], config.get('evaluation.num_negative', 0)))
        for image_file in args.images:
            positives.append(positive_sample_from_annotation(image_file, Path(image_file).with_suffix('.xml')))
        for image_file in args.negatives:
            image = ImageData.from_file(image_file)
            if image.empty():
                logger.warning(f"Skipping undecodable negative image {image_file}")
                continue
            negatives.append(image)
        logger.info(f"Step 2/3: {len(positives)} positive and {len(negatives)} negative images")

        console = ConsoleProgress('Evaluating')
        reporter = ProgressReporter.overall(console)
        reporter.begin_phase(1)
        evaluator.test_models(positives, negatives=negatives,
                              granularity=config.get('evaluation.granularity', 0), progress=reporter)
        reporter.finish()
        console.close()

        logger.info("Step 3/3: Results")
        for i, entry in enumerate(evaluator.entries):
            threshold, f = evaluator.get_max_fmeasure(i)
            ap = evaluator.compute_average_precision(i)
            logger.info(f"  {entry.classname}: AP {ap:.4f}, max F-measure {f:.4f} at threshold {threshold:.4f}")

        if args.output and not evaluator.dump_test_results(args.output):
            sys.exit(1)

    except Exception as e:
        logger.error(f"Evaluation failed: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
