"""
Tests for mixture learning, threshold calibration and the one-shot pipeline.

Learning runs on 48x48 synthetic images with a single-feature extractor and
templates of at most 16 cells, which keeps every test well under a second.

Author: MixDet Toolkit Team
Date: October 2026
"""

import pytest
import numpy as np

from mixdet.core.geometry import Rectangle, Sample
from mixdet.core.progress import ProgressReporter
from mixdet.core.status import (
    FeatureExtractorNotReadyError,
    InvalidRepositoryError,
    InvalidSampleImageError,
    ModelNotLearnedError,
    NoSamplesError,
    OperationAborted,
    SynsetNotFoundError
)
from mixdet.data_preparation.images import ImageData
from mixdet.models import features
from mixdet.models.background import StationaryBackground
from mixdet.models.mixture import Mixture
from mixdet.training.learner import LearnerState, ModelLearner, RepositoryModelLearner, run_learning, template_size

from tests.conftest import make_noise_image


@pytest.fixture
def learner(learned_background, gray_extractor):
    return ModelLearner(learned_background, gray_extractor, max_template_cells=16, kmeans_n_init=2)


@pytest.fixture
def filled_learner(learner, object_images):
    for image, box in object_images:
        learner.add_positive_sample(image, [box])
    return learner


class TestTemplateSize:
    """Test template size selection."""

    @pytest.mark.unit
    @pytest.mark.parametrize("aspect,max_cells,expected", [
        (1.0, 16, (4, 4)),
        (1.0, 100, (10, 10)),
        (4.0, 16, (2, 8)),
        (0.25, 16, (8, 2)),
        (0.0, 9, (3, 3)),
    ])
    def test_sizes(self, aspect, max_cells, expected):
        assert template_size(aspect, max_cells) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("aspect", [0.05, 0.3, 0.8, 1.7, 6.0, 40.0])
    def test_within_cell_limit(self, aspect):
        rows, cols = template_size(aspect, 20)
        assert rows >= 1 and cols >= 1
        assert rows * cols <= 20


class TestSampleAccumulation:
    """Test adding positive samples."""

    @pytest.mark.unit
    def test_initial_state(self, learner):
        assert learner.state == LearnerState.EMPTY
        assert learner.num_samples == 0
        assert learner.mixture is None

    @pytest.mark.unit
    def test_add_sample_with_boxes(self, learner, object_images):
        image, box = object_images[0]
        learner.add_positive_sample(image, [box, Rectangle(40, 40, 20, 20)])
        assert learner.state == LearnerState.ACCUMULATING
        assert learner.samples[0].bboxes == [box, Rectangle(40, 40, 8, 8)]
        assert learner.samples[0].model_assoc == [Sample.NO_ASSOC] * 2

    @pytest.mark.unit
    def test_no_boxes_means_whole_image(self, learner, object_images):
        learner.add_positive_sample(object_images[0][0])
        assert learner.samples[0].bboxes == [Rectangle(0, 0, 48, 48)]

    @pytest.mark.unit
    def test_invalid_samples(self, learner, object_images):
        with pytest.raises(InvalidSampleImageError):
            learner.add_positive_sample(ImageData())
        with pytest.raises(InvalidSampleImageError):
            learner.add_positive_sample(object_images[0][0], [Rectangle(100, 100, 10, 10)])
        assert learner.num_samples == 0
        assert learner.state == LearnerState.EMPTY

    @pytest.mark.unit
    def test_reset(self, filled_learner):
        filled_learner.learn(1, 1)
        filled_learner.reset()
        assert filled_learner.state == LearnerState.EMPTY
        assert filled_learner.num_samples == 0
        assert filled_learner.mixture is None
        assert filled_learner.thresholds == []


class TestLearning:
    """Test mixture learning."""

    @pytest.mark.integration
    def test_learn_assigns_every_box(self, filled_learner):
        filled_learner.learn(max_aspect_clusters=2, max_who_clusters=2)
        num_models = len(filled_learner.mixture)
        assert 1 <= num_models <= 4
        assert filled_learner.state == LearnerState.LEARNED
        assert filled_learner.thresholds == [0.0] * num_models
        for sample in filled_learner.samples:
            assert len(sample.model_assoc) == len(sample.bboxes)
            assert all(0 <= a < num_models for a in sample.model_assoc)

    @pytest.mark.integration
    def test_template_shapes(self, filled_learner):
        filled_learner.learn(1, 1)
        model = filled_learner.mixture.models[0]
        assert (model.rows, model.cols, model.num_features) == (4, 4, 1)
        assert np.all(np.isfinite(model.weights))

    @pytest.mark.integration
    def test_template_prefers_object_over_background(self, filled_learner):
        filled_learner.learn(1, 1)
        model = filled_learner.mixture.models[0]
        extractor = filled_learner.mixture.feature_extractor
        image, box = filled_learner.samples[0].image, filled_learner.samples[0].bboxes[0]
        object_feats = extractor.extract(image.crop(box).resize(16, 16))
        background_feats = extractor.extract(make_noise_image(16, 16, seed=7))
        assert model.correlate(object_feats)[0, 0] > model.correlate(background_feats)[0, 0]

    @pytest.mark.unit
    def test_learn_without_samples(self, learner):
        with pytest.raises(NoSamplesError):
            learner.learn()

    @pytest.mark.unit
    def test_learn_with_mismatched_background(self, learned_background, object_images):
        learner = ModelLearner(learned_background, features.create('HOG'))
        learner.add_positive_sample(*object_images[0])
        with pytest.raises(FeatureExtractorNotReadyError):
            learner.learn()
        assert learner.state == LearnerState.ACCUMULATING

    @pytest.mark.unit
    def test_learn_with_empty_background(self, gray_extractor, object_images):
        learner = ModelLearner(StationaryBackground(), gray_extractor)
        learner.add_positive_sample(*object_images[0])
        with pytest.raises(FeatureExtractorNotReadyError):
            learner.learn()

    @pytest.mark.unit
    def test_abort_on_first_callback(self, filled_learner):
        calls = []

        def stop(current, total):
            calls.append((current, total))
            return False

        with pytest.raises(OperationAborted):
            filled_learner.learn(2, 2, progress=stop)
        assert len(calls) == 1
        assert filled_learner.state == LearnerState.ACCUMULATING
        assert filled_learner.mixture is None
        assert all(a == Sample.NO_ASSOC for s in filled_learner.samples for a in s.model_assoc)

    @pytest.mark.unit
    def test_abort_keeps_previous_mixture(self, filled_learner):
        filled_learner.learn(1, 1)
        previous = filled_learner.mixture
        with pytest.raises(OperationAborted):
            filled_learner.learn(2, 2, progress=lambda current, total: False)
        assert filled_learner.mixture is previous
        assert filled_learner.state == LearnerState.LEARNED

    @pytest.mark.unit
    def test_progress_reaches_total(self, filled_learner):
        calls = []
        filled_learner.learn(1, 1, progress=lambda current, total: calls.append((current, total)) or True)
        assert calls[-1][0] == calls[-1][1]
        assert [c for c, _ in calls] == sorted(c for c, _ in calls)


class TestThresholds:
    """Test threshold calibration and model saving."""

    @pytest.mark.unit
    def test_optimize_before_learn(self, filled_learner):
        with pytest.raises(ModelNotLearnedError):
            filled_learner.optimize_threshold()

    @pytest.mark.unit
    def test_save_before_learn(self, filled_learner, temp_directory):
        with pytest.raises(ModelNotLearnedError):
            filled_learner.save(temp_directory / "model.json")
        assert not (temp_directory / "model.json").exists()

    @pytest.mark.unit
    def test_negatives_need_repository(self, filled_learner):
        filled_learner.learn(1, 1)
        with pytest.raises(InvalidRepositoryError):
            filled_learner.optimize_threshold(num_negative=5)

    @pytest.mark.integration
    def test_overlapping_calibration(self, filled_learner):
        filled_learner.learn(1, 2)
        thresholds = filled_learner.optimize_threshold()
        assert len(thresholds) == len(filled_learner.mixture)
        assert all(np.isfinite(t) for t in thresholds)
        assert filled_learner.state == LearnerState.CALIBRATED

    @pytest.mark.integration
    def test_loocv_calibration(self, learned_background, gray_extractor, object_images):
        learner = ModelLearner(learned_background, gray_extractor, loocv=True, max_template_cells=16,
                               kmeans_n_init=2)
        for image, box in object_images:
            learner.add_positive_sample(image, [box])
        learner.learn(1, 1)
        thresholds = learner.optimize_threshold()
        assert len(thresholds) == 1
        assert np.isfinite(thresholds[0])

    @pytest.mark.integration
    def test_loocv_scores_boxes_with_held_out_templates(self, learned_background, gray_extractor):
        """
        Each 16x16 image is one whole-image box and exactly one 4x4 cell
        window, so every threshold is the lowest positive score.
        """
        images = [make_noise_image(16, 16, seed=200 + i) for i in range(4)]
        learners = {}
        for loocv in (False, True):
            learner = ModelLearner(learned_background, gray_extractor, loocv=loocv, max_template_cells=16)
            for image in images:
                learner.add_positive_sample(image)
            learner.learn(1, 1)
            learners[loocv] = learner
        overlapping = learners[False].optimize_threshold()[0]
        held_out = learners[True].optimize_threshold()[0]

        component = learners[True].components[0]
        full = component.build_model()
        cells = [gray_extractor.extract(image) for image in images]
        held_out_scores = [component.build_model(exclude=j).correlate(cells[si])[0, 0]
                           for j, (si, _) in enumerate(component.members)]
        assert overlapping == pytest.approx(min(full.correlate(c)[0, 0] for c in cells))
        assert held_out == pytest.approx(min(held_out_scores))
        assert held_out < overlapping

    @pytest.mark.integration
    def test_thresholds_folded_into_bias(self, filled_learner):
        filled_learner.learn(1, 1)
        filled_learner.thresholds = [0.75]
        calibrated = filled_learner.calibrated_mixture()
        assert calibrated.models[0].bias == pytest.approx(filled_learner.mixture.models[0].bias - 0.75)
        assert filled_learner.mixture.models[0].bias != calibrated.models[0].bias

    @pytest.mark.integration
    def test_save_and_append(self, filled_learner, temp_directory):
        path = temp_directory / "model.json"
        filled_learner.learn(1, 1)
        assert filled_learner.save(path)
        assert filled_learner.state == LearnerState.SAVED
        assert filled_learner.save(path, append=True)
        loaded = Mixture.load(path)
        assert len(loaded) == 2
        assert loaded.feature_extractor.same_configuration(filled_learner.feature_extractor)


class TestRepositoryLearner:
    """Test learning from repository synsets."""

    @pytest.mark.unit
    def test_invalid_repository(self, learned_background, temp_directory):
        with pytest.raises(InvalidRepositoryError):
            RepositoryModelLearner(learned_background, temp_directory)

    @pytest.mark.unit
    def test_synset_needs_repository(self, learned_background, gray_extractor):
        learner = RepositoryModelLearner(learned_background, feature_extractor=gray_extractor)
        with pytest.raises(InvalidRepositoryError):
            learner.add_positive_samples_from_synset('n0001')

    @pytest.mark.unit
    def test_unknown_synset(self, learned_background, gray_extractor, tiny_repository):
        learner = RepositoryModelLearner(learned_background, tiny_repository, feature_extractor=gray_extractor)
        with pytest.raises(SynsetNotFoundError):
            learner.add_positive_samples_from_synset('n9999')

    @pytest.mark.unit
    def test_only_annotated_images_are_added(self, learned_background, gray_extractor, tiny_repository):
        learner = RepositoryModelLearner(learned_background, tiny_repository, feature_extractor=gray_extractor)
        assert learner.add_positive_samples_from_synset('n0002') == 0
        assert learner.add_positive_samples_from_synset('n0001', max_samples=2) == 2
        assert learner.positive_synsets == ['n0001']
        assert learner.samples[0].bboxes == [Rectangle(10, 10, 24, 24)]

    @pytest.mark.integration
    def test_calibration_with_negatives(self, learned_background, gray_extractor, tiny_repository):
        learner = RepositoryModelLearner(learned_background, tiny_repository, feature_extractor=gray_extractor,
                                         max_template_cells=16, kmeans_n_init=2)
        learner.add_positive_samples_from_synset('n0001')
        learner.learn(1, 1)
        thresholds = learner.optimize_threshold(num_negative=3)
        assert len(thresholds) == 1


class TestRunLearning:
    """Test the learn, calibrate and save pipeline."""

    @pytest.mark.integration
    def test_phases_with_calibration(self, filled_learner, temp_directory):
        calls = []
        reporter = ProgressReporter.overall(lambda *args: calls.append(args) or True)
        assert run_learning(filled_learner, temp_directory / "model.json", 1, 1, progress=reporter)
        assert {c[1] for c in calls} == {3}
        assert calls[-1] == (3, 3, 0, 0)
        assert filled_learner.state == LearnerState.SAVED

    @pytest.mark.integration
    def test_phases_without_calibration(self, filled_learner, temp_directory):
        calls = []
        reporter = ProgressReporter.overall(lambda *args: calls.append(args) or True)
        assert run_learning(filled_learner, temp_directory / "model.json", 1, 1, optimize_threshold=False,
                            progress=reporter)
        assert {c[1] for c in calls} == {2}
        assert filled_learner.thresholds == [0.0]

    @pytest.mark.unit
    def test_abort_writes_nothing(self, filled_learner, temp_directory):
        reporter = ProgressReporter.overall(lambda *args: False)
        with pytest.raises(OperationAborted):
            run_learning(filled_learner, temp_directory / "model.json", progress=reporter)
        assert not (temp_directory / "model.json").exists()
