"""
Status-code API over detector and learner sessions.

Every entry point is total: it returns a ``ResultCode`` (alone or as the first
element of a tuple) and never raises. Pipeline errors arrive as
``MixDetError`` subclasses and are returned as their code; anything else is
logged with its traceback and returned as ``INTERNAL_ERROR``.

Handle validation precedes every other check. Two conventions coexist for
"how many / which one" queries:

- Enumerations take ``buf`` and ``buf_size``. With ``buf=None`` they return
  the number of available entries; otherwise they append at most
  ``buf_size`` entries to ``buf`` and return the number written.
- Indexed queries return ``INDEX_OUT_OF_BOUNDS`` for an invalid index.

Author: MixDet Toolkit Team
Date: October 2026
"""

import functools
import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

from ..core.geometry import Rectangle
from ..core.progress import ProgressReporter
from ..core.status import (
    DirectoryNotFoundError,
    ExtractionFailedError,
    FileAccessDeniedError,
    InvalidBackgroundError,
    InvalidImageDataError,
    InvalidRepositoryError,
    MixDetError,
    ResultCode,
    SynsetNotFoundError,
    ThresholdOptimization
)
from ..data_preparation.images import ImageData
from ..data_preparation.repository import ImageRepository, Synset
from ..data_preparation.utils import is_dir
from ..evaluation.evaluator import (
    negatives_from_repository,
    positive_sample,
    positive_sample_from_annotation,
    samples_from_synset
)
from ..models import features
from ..models.background import StationaryBackground
from ..training.background_learning import learn_background
from ..training.learner import ModelLearner, RepositoryModelLearner, run_learning
from .flat import (
    FeatureExtractorInfo,
    FeatureExtractorParameter,
    FlatBoundingBox,
    FlatDetection,
    RawTestResult,
    SynsetSearchResult
)
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], bool]
OverallProgressCallback = Callable[[int, int, int, int], bool]


def api_call(*fallback):
    """
    Translate exceptions raised by an entry point into result codes.

    Args:
        *fallback: Values following the code when the entry point returns a
            tuple and fails
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except MixDetError as e:
                logger.debug(f"{func.__name__} failed with {e.code.name}: {e}")
                code = e.code
            except Exception:
                logger.exception(f"Internal error in {func.__name__}")
                code = ResultCode.INTERNAL_ERROR
            return (code, *fallback) if fallback else code
        return wrapper
    return decorator


def _fill(buf: Optional[list], buf_size: int, items: Sequence) -> int:
    if buf is None:
        return len(items)
    written = list(items[:max(0, int(buf_size))])
    buf.extend(written)
    return len(written)


def _rectangles(bboxes: Optional[Sequence[FlatBoundingBox]]) -> List[Rectangle]:
    return [b.to_rectangle() for b in bboxes] if bboxes else []


def _load_background(bg_file: Union[str, Path]) -> StationaryBackground:
    background = StationaryBackground(bg_file)
    if background.empty():
        raise InvalidBackgroundError(f"Could not load background statistics from {bg_file}")
    return background


def _open_repository(repo_directory) -> ImageRepository:
    valid, message = ImageRepository.has_repository_structure(repo_directory)
    if not valid:
        raise InvalidRepositoryError(message)
    return ImageRepository(repo_directory)


def _find_synset(repo: ImageRepository, synset_id: str) -> Synset:
    synset = repo.get_synset(synset_id)
    if synset is None:
        raise SynsetNotFoundError(f"Synset {synset_id} not found")
    return synset


class DetectionLibrary:
    """
    Flat API of the toolkit.

    Args:
        registry: Session registry the handles refer to (default: a new one)

    Example:
        >>> lib = DetectionLibrary()
        >>> det = lib.create_detector(0.5, 10, False)
        >>> lib.add_model(det, 'flower', 'flower.json', 0.0)
        >>> detections = []
        >>> code, count = lib.detect_file(det, 'garden.jpg', detections, 10)
    """

    def __init__(self, registry: Optional[SessionRegistry] = None):
        self.registry = registry or SessionRegistry()

    # ------------------------------------------------------------------ detecting

    def create_detector(self, overlap: float = 0.5, interval: int = 10, debug: bool = False,
                        max_models: int = 0) -> int:
        """Returns the handle of a new detector session, 0 on failure."""
        return self.registry.create_detector_session(overlap, interval, debug, max_models)

    def destroy_detector(self, detector: int) -> None:
        self.registry.destroy_detector(detector)

    @api_call()
    def add_model(self, detector: int, classname: str, modelfile: Union[str, Path], threshold: float = 0.0,
                  synset_id: Optional[str] = None) -> ResultCode:
        session = self.registry.get_detector(detector)
        session.evaluator.add_model(classname, modelfile, threshold, synset_id or '')
        return ResultCode.OK

    @api_call()
    def add_models(self, detector: int, modellistfile: Union[str, Path]) -> ResultCode:
        session = self.registry.get_detector(detector)
        session.evaluator.add_models(modellistfile)
        return ResultCode.OK

    @api_call()
    def add_model_from_learner(self, detector: int, classname: str, learner: int, threshold: float = 0.0,
                               synset_id: Optional[str] = None) -> ResultCode:
        """Register an independent copy of a learner's mixture, calibrated thresholds folded in."""
        session = self.registry.get_detector(detector)
        mixture = self.registry.get_learner(learner).calibrated_mixture()
        session.evaluator.add_model(classname, mixture, threshold, synset_id or '')
        return ResultCode.OK

    @api_call()
    def num_feature_extractors_in_detector(self, detector: int) -> int:
        return self.registry.get_detector(detector).evaluator.different_feature_extractors()

    @api_call(0)
    def detect_file(self, detector: int, imagefile: Union[str, Path], buf: list,
                    buf_size: int) -> Tuple[ResultCode, int]:
        """
        Detect objects in an image file.

        A capacity of 1 only searches for the single best detection.

        Returns:
            (code, number of detections written to ``buf``)
        """
        session = self.registry.get_detector(detector)
        return self._detect(session.evaluator, ImageData.from_file(imagefile), buf, buf_size)

    @api_call(0)
    def detect_raw(self, detector: int, img_data: bytes, img_width: int, img_height: int, grayscale: bool,
                   buf: list, buf_size: int) -> Tuple[ResultCode, int]:
        session = self.registry.get_detector(detector)
        return self._detect(session.evaluator, ImageData.from_raw(img_data, img_width, img_height, grayscale),
                            buf, buf_size)

    @staticmethod
    def _detect(evaluator, image: ImageData, buf: list, buf_size: int) -> Tuple[ResultCode, int]:
        if image.empty():
            raise InvalidImageDataError('Image data could not be decoded.')
        detections = evaluator.detect_top_k(image, int(buf_size))
        written = _fill(buf, buf_size, [FlatDetection.from_detection(d) for d in detections])
        return ResultCode.OK, written

    # ------------------------------------------------------------------- learning

    @api_call()
    def learn_imagenet(self, repo_directory: Union[str, Path], synset_id: str, bg_file: Union[str, Path],
                       modelfile: Union[str, Path], add: bool = False, max_aspect_clusters: int = 3,
                       max_who_clusters: int = 3, th_opt_num_positive: int = 0, th_opt_num_negative: int = 0,
                       th_opt_mode: int = ThresholdOptimization.OVERLAPPING,
                       progress_cb: Optional[OverallProgressCallback] = None, debug: bool = False) -> ResultCode:
        """Learn a model from a repository synset and write it to ``modelfile``."""
        repo = _open_repository(repo_directory)
        synset = _find_synset(repo, synset_id)
        background = _load_background(bg_file)
        mode = ThresholdOptimization(th_opt_mode)

        learner = RepositoryModelLearner(background, repo, loocv=mode == ThresholdOptimization.LOOCV, debug=debug)
        if learner.add_positive_samples_from_synset(synset) == 0:
            raise ExtractionFailedError(f"No annotated images in synset {synset_id}")
        return self._learn_and_save(learner, modelfile, add, max_aspect_clusters, max_who_clusters, mode,
                                    th_opt_num_positive, th_opt_num_negative, progress_cb)

    @api_call()
    def learn_files(self, imagefiles: Sequence[Union[str, Path]], bounding_boxes: Optional[Sequence[FlatBoundingBox]],
                    bg_file: Union[str, Path], modelfile: Union[str, Path], add: bool = False,
                    max_aspect_clusters: int = 3, max_who_clusters: int = 3,
                    th_opt_mode: int = ThresholdOptimization.OVERLAPPING,
                    progress_cb: Optional[OverallProgressCallback] = None, debug: bool = False) -> ResultCode:
        """
        Learn a model from image files and write it to ``modelfile``.

        ``bounding_boxes`` holds one box per image file (``None``: whole
        images). Undecodable images are skipped.
        """
        background = _load_background(bg_file)
        mode = ThresholdOptimization(th_opt_mode)
        learner = ModelLearner(background, loocv=mode == ThresholdOptimization.LOOCV, debug=debug)
        for i, imagefile in enumerate(imagefiles):
            image = ImageData.from_file(imagefile)
            if image.empty():
                logger.warning(f"Skipping undecodable image {imagefile}")
                continue
            bbox = bounding_boxes[i] if bounding_boxes is not None else None
            learner.add_positive_sample(image, [bbox.to_rectangle()] if bbox is not None else None)
        return self._learn_and_save(learner, modelfile, add, max_aspect_clusters, max_who_clusters, mode,
                                    0, 0, progress_cb)

    @staticmethod
    def _learn_and_save(learner: ModelLearner, modelfile, add: bool, max_aspect_clusters: int,
                        max_who_clusters: int, mode: ThresholdOptimization, num_positive: int, num_negative: int,
                        progress_cb: Optional[OverallProgressCallback]) -> ResultCode:
        saved = run_learning(
            learner, modelfile,
            max_aspect_clusters=max_aspect_clusters,
            max_who_clusters=max_who_clusters,
            optimize_threshold=mode != ThresholdOptimization.NONE,
            max_positive=num_positive,
            num_negative=num_negative,
            append=add,
            progress=ProgressReporter.overall(progress_cb)
        )
        if not saved:
            raise FileAccessDeniedError(f"Could not write model file {modelfile}")
        return ResultCode.OK

    def create_learner(self, bg_file: Union[str, Path], repo_directory: Union[str, Path, None] = None,
                       th_opt_loocv: bool = False, debug: bool = False) -> int:
        """Returns the handle of a new learner session, 0 if the background file is unusable."""
        try:
            return self.registry.create_learner_session(bg_file, repo_directory, th_opt_loocv, debug)
        except MixDetError as e:
            logger.error(f"Could not create learner session: {e}")
            return 0

    def destroy_learner(self, learner: int) -> None:
        self.registry.destroy_learner(learner)

    @api_call()
    def learner_add_synset(self, learner: int, synset_id: str, max_samples: int = 0) -> ResultCode:
        session = self.registry.get_learner(learner)
        if session.add_positive_samples_from_synset(synset_id, max_samples) == 0:
            raise ExtractionFailedError(f"No annotated images in synset {synset_id}")
        return ResultCode.OK

    @api_call()
    def learner_add_file(self, learner: int, imagefile: Union[str, Path],
                         bboxes: Optional[Sequence[FlatBoundingBox]] = None) -> ResultCode:
        session = self.registry.get_learner(learner)
        session.add_positive_sample(ImageData.from_file(imagefile), _rectangles(bboxes))
        return ResultCode.OK

    @api_call()
    def learner_add_raw(self, learner: int, img_data: bytes, img_width: int, img_height: int, grayscale: bool,
                        bboxes: Optional[Sequence[FlatBoundingBox]] = None) -> ResultCode:
        session = self.registry.get_learner(learner)
        image = ImageData.from_raw(img_data, img_width, img_height, grayscale)
        session.add_positive_sample(image, _rectangles(bboxes))
        return ResultCode.OK

    @api_call()
    def learner_run(self, learner: int, max_aspect_clusters: int = 3, max_who_clusters: int = 3,
                    progress_cb: Optional[ProgressCallback] = None) -> ResultCode:
        session = self.registry.get_learner(learner)
        session.learn(max_aspect_clusters, max_who_clusters, ProgressReporter.simple(progress_cb))
        return ResultCode.OK

    @api_call()
    def learner_optimize_th(self, learner: int, max_positive: int = 0, num_negative: int = 0,
                            progress_cb: Optional[ProgressCallback] = None) -> ResultCode:
        session = self.registry.get_learner(learner)
        session.optimize_threshold(max_positive, num_negative, 1.0, ProgressReporter.simple(progress_cb))
        return ResultCode.OK

    @api_call()
    def learner_save(self, learner: int, modelfile: Union[str, Path], add: bool = False) -> ResultCode:
        session = self.registry.get_learner(learner)
        if not session.save(modelfile, add):
            raise FileAccessDeniedError(f"Could not write model file {modelfile}")
        return ResultCode.OK

    @api_call()
    def learner_reset(self, learner: int) -> ResultCode:
        self.registry.get_learner(learner).reset()
        return ResultCode.OK

    # ----------------------------------------------------------------- background

    @api_call()
    def learn_bg(self, repo_directory: Union[str, Path], bg_file: Union[str, Path], num_images: int = 1000,
                 max_offset: int = 19, progress_cb: Optional[OverallProgressCallback] = None,
                 accurate_autocorrelation: bool = False) -> ResultCode:
        learn_background(repo_directory, bg_file, num_images, max_offset,
                         ProgressReporter.overall(progress_cb), accurate_autocorrelation)
        return ResultCode.OK

    # ----------------------------------------------------------------- evaluation

    @api_call()
    def evaluator_add_samples_from_synset(self, detector: int, repo_directory: Union[str, Path], synset_id: str,
                                          num_negative: int = 0) -> ResultCode:
        """
        Add every image of a synset as positive sample and up to
        ``num_negative`` images of other synsets as negative samples.
        """
        session = self.registry.get_detector(detector)
        repo = _open_repository(repo_directory)
        synset = _find_synset(repo, synset_id)
        session.positives.extend(samples_from_synset(synset))
        session.negatives.extend(negatives_from_repository(repo, [synset.id], num_negative))
        return ResultCode.OK

    @api_call()
    def evaluator_add_positive_file(self, detector: int, imagefile: Union[str, Path],
                                    annotation_file: Union[str, Path]) -> ResultCode:
        session = self.registry.get_detector(detector)
        session.positives.append(positive_sample_from_annotation(imagefile, annotation_file))
        return ResultCode.OK

    @api_call()
    def evaluator_add_positive_file_jpeg(self, detector: int, imagefile: Union[str, Path],
                                         bboxes: Optional[Sequence[FlatBoundingBox]] = None) -> ResultCode:
        session = self.registry.get_detector(detector)
        session.positives.append(positive_sample(ImageData.from_file(imagefile), _rectangles(bboxes)))
        return ResultCode.OK

    @api_call()
    def evaluator_add_positive_raw(self, detector: int, img_data: bytes, img_width: int, img_height: int,
                                   grayscale: bool, bboxes: Optional[Sequence[FlatBoundingBox]] = None) -> ResultCode:
        session = self.registry.get_detector(detector)
        image = ImageData.from_raw(img_data, img_width, img_height, grayscale)
        session.positives.append(positive_sample(image, _rectangles(bboxes)))
        return ResultCode.OK

    @api_call()
    def evaluator_add_negative_file(self, detector: int, imagefile: Union[str, Path]) -> ResultCode:
        session = self.registry.get_detector(detector)
        image = ImageData.from_file(imagefile)
        if image.empty():
            raise InvalidImageDataError(f"Could not decode image {imagefile}")
        session.negatives.append(image)
        return ResultCode.OK

    @api_call()
    def evaluator_add_negative_raw(self, detector: int, img_data: bytes, img_width: int, img_height: int,
                                   grayscale: bool) -> ResultCode:
        session = self.registry.get_detector(detector)
        image = ImageData.from_raw(img_data, img_width, img_height, grayscale)
        if image.empty():
            raise InvalidImageDataError('Image data could not be decoded.')
        session.negatives.append(image)
        return ResultCode.OK

    @api_call()
    def evaluator_run(self, detector: int, granularity: int = 0, eq_overlap: float = 0.5,
                      progress_cb: Optional[ProgressCallback] = None) -> ResultCode:
        session = self.registry.get_detector(detector)
        session.evaluator.set_eq_overlap(eq_overlap)
        session.evaluator.test_models(session.positives, negatives=session.negatives or None,
                                      granularity=granularity, progress=ProgressReporter.simple(progress_cb))
        return ResultCode.OK

    @api_call(0)
    def evaluator_get_raw_results(self, detector: int, buf: Optional[list], buf_size: int = 0,
                                  model_index: int = 0) -> Tuple[ResultCode, int]:
        """
        Returns:
            (code, count); ``NO_RESULTS`` if the model has not been evaluated
        """
        evaluator = self.registry.get_detector(detector).evaluator
        results = evaluator.get_results(model_index)
        count = _fill(buf, buf_size, [RawTestResult.from_result(r) for r in results])
        return (ResultCode.OK if results else ResultCode.DETECT_NO_RESULTS), count

    @api_call(0.0, 0.0)
    def evaluator_get_max_fmeasure(self, detector: int, model_index: int = 0) -> Tuple[ResultCode, float, float]:
        """
        Returns:
            (code, F-measure, threshold)
        """
        evaluator = self.registry.get_detector(detector).evaluator
        threshold, fmeasure = evaluator.get_max_fmeasure(model_index)
        return ResultCode.OK, fmeasure, threshold

    @api_call(0.0)
    def evaluator_get_fmeasure_at(self, detector: int, threshold: float,
                                  model_index: int = 0) -> Tuple[ResultCode, float]:
        evaluator = self.registry.get_detector(detector).evaluator
        return ResultCode.OK, evaluator.get_fmeasure_at(threshold, model_index)

    @api_call(0.0)
    def evaluator_get_ap(self, detector: int, model_index: int = 0) -> Tuple[ResultCode, float]:
        evaluator = self.registry.get_detector(detector).evaluator
        return ResultCode.OK, evaluator.compute_average_precision(model_index)

    @api_call()
    def evaluator_dump_results(self, detector: int, dump_file: Union[str, Path]) -> ResultCode:
        evaluator = self.registry.get_detector(detector).evaluator
        if not evaluator.dump_test_results(dump_file):
            raise FileAccessDeniedError(f"Could not write {dump_file}")
        return ResultCode.OK

    # ------------------------------------------------------------------- settings

    @api_call()
    def change_feature_extractor(self, type_name: str) -> ResultCode:
        features.set_default_feature_extractor(type_name)
        return ResultCode.OK

    @api_call(None)
    def feature_extractor_get_info(self) -> Tuple[ResultCode, FeatureExtractorInfo]:
        return ResultCode.OK, FeatureExtractorInfo.from_extractor(features.default_feature_extractor())

    @api_call(0)
    def list_feature_extractors(self, buf: Optional[list], buf_size: int = 0) -> Tuple[ResultCode, int]:
        infos = [FeatureExtractorInfo.from_extractor(fe) for fe in features.list_feature_extractors()]
        return ResultCode.OK, _fill(buf, buf_size, infos)

    @api_call(0)
    def list_feature_extractor_params(self, type_name: str, buf: Optional[list],
                                      buf_size: int = 0) -> Tuple[ResultCode, int]:
        params = [FeatureExtractorParameter.from_info(p) for p in features.create(type_name).list_parameters()]
        return ResultCode.OK, _fill(buf, buf_size, params)

    @api_call(0)
    def feature_extractor_list_params(self, buf: Optional[list], buf_size: int = 0) -> Tuple[ResultCode, int]:
        params = [FeatureExtractorParameter.from_info(p)
                  for p in features.default_feature_extractor().list_parameters()]
        return ResultCode.OK, _fill(buf, buf_size, params)

    @api_call()
    def feature_extractor_set_int_param(self, param_name: str, value: int) -> ResultCode:
        features.default_feature_extractor().set_param(param_name, int(value))
        return ResultCode.OK

    @api_call()
    def feature_extractor_set_scalar_param(self, param_name: str, value: float) -> ResultCode:
        features.default_feature_extractor().set_param(param_name, float(value))
        return ResultCode.OK

    @api_call()
    def feature_extractor_set_string_param(self, param_name: str, value: str) -> ResultCode:
        features.default_feature_extractor().set_param(param_name, str(value))
        return ResultCode.OK

    # ----------------------------------------------------------------- repository

    @staticmethod
    def check_repository_directory(repo_directory: Union[str, Path]) -> Tuple[bool, str]:
        return ImageRepository.has_repository_structure(repo_directory)

    @staticmethod
    def get_image_repository_type() -> str:
        return ImageRepository.type()

    @api_call(0)
    def list_synsets(self, repo_directory: Union[str, Path], buf: Optional[list],
                     buf_size: int = 0) -> Tuple[ResultCode, int]:
        repo = _open_repository(repo_directory)
        if buf is None or buf_size <= 0:
            return ResultCode.OK, repo.num_synsets
        results = [SynsetSearchResult.create(s.id, s.description) for s in repo.list_synsets()]
        return ResultCode.OK, _fill(buf, buf_size, results)

    @api_call(0)
    def search_synsets(self, repo_directory: Union[str, Path], phrase: str, buf: Optional[list],
                       buf_size: int = 0) -> Tuple[ResultCode, int]:
        """Best ``buf_size`` matches of a phrase, highest score first."""
        repo = _open_repository(repo_directory)
        limit = 0 if buf is None else int(buf_size)
        matches = repo.search_synsets(phrase, limit)
        results = [SynsetSearchResult.create(s.id, s.description, score) for s, score in matches]
        return ResultCode.OK, _fill(buf, buf_size, results)

    @api_call(0)
    def extract_images_from_synset(self, repo_directory: Union[str, Path], synset_id: str,
                                   out_directory: Union[str, Path], num_images: int) -> Tuple[ResultCode, int]:
        """
        Write up to ``num_images`` images of a synset to ``out_directory``.

        Returns:
            (code, number of images visited)
        """
        repo = _open_repository(repo_directory)
        if not is_dir(out_directory):
            raise DirectoryNotFoundError(f"Output directory {out_directory} does not exist")
        synset = _find_synset(repo, synset_id)
        images = synset.iter_images()
        for simg in images:
            if images.pos > num_images:
                break
            simg.extract(out_directory)
            simg.release()
        return ResultCode.OK, min(images.pos, num_images)

    @api_call(0)
    def extract_samples_from_synset(self, repo_directory: Union[str, Path], synset_id: str,
                                    out_directory: Union[str, Path], num_samples: int) -> Tuple[ResultCode, int]:
        """
        Write up to ``num_samples`` annotated object crops of a synset as
        ``<image>_<n>.jpg`` to ``out_directory``.

        Returns:
            (code, number of crops written)
        """
        repo = _open_repository(repo_directory)
        if not is_dir(out_directory):
            raise DirectoryNotFoundError(f"Output directory {out_directory} does not exist")
        synset = _find_synset(repo, synset_id)
        count = 0
        for simg in synset.iter_images(with_boxes_only=True):
            if count >= num_samples:
                break
            for i, crop in enumerate(simg.samples_from_bounding_boxes(), start=1):
                if count >= num_samples:
                    break
                crop.save(Path(out_directory) / f"{simg.filename}_{i}.jpg")
                count += 1
            simg.release()
        return ResultCode.OK, count

    @api_call()
    def extract_mixed_images(self, repo_directory: Union[str, Path], out_directory: Union[str, Path],
                             num_images: int, per_synset: int = 1) -> ResultCode:
        repo = _open_repository(repo_directory)
        if not is_dir(out_directory):
            raise DirectoryNotFoundError(f"Output directory {out_directory} does not exist")
        mixed = repo.get_mixed_iterator(per_synset)
        for simg in mixed:
            if mixed.pos > num_images:
                break
            simg.extract(out_directory)
            simg.release()
        return ResultCode.OK
