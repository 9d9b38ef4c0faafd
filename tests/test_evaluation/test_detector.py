"""
Tests for feature pyramids, non-maximum suppression and the detector.

The detector tests use a hand-built template: a 6x6 cell box filter on grey
cell means, which peaks exactly on the 24x24 bright square of the synthetic
object image.

Author: MixDet Toolkit Team
Date: October 2026
"""

import pytest
import numpy as np

from mixdet.core.geometry import Detection, Rectangle
from mixdet.core.status import InvalidImageDataError, InvalidModelFileError, NoModelsError, TooManyModelsError
from mixdet.data_preparation.images import ImageData
from mixdet.evaluation.detector import Detector, FeaturePyramid, non_maximum_suppression
from mixdet.models import features

from tests.conftest import OBJECT_BOX as OBJECT, box_filter_mixture, configure_gray_extractor, make_object_image


@pytest.fixture
def scene():
    return make_object_image(48, 48, OBJECT, seed=3)


class TestFeaturePyramid:
    """Test pyramid construction."""

    @pytest.mark.unit
    def test_levels(self, scene, gray_extractor):
        pyramid = FeaturePyramid(scene, gray_extractor, interval=2, min_rows=3, min_cols=3)
        widths = [feats.shape[1] for _, _, feats in pyramid.levels]
        assert widths[0] == 12
        assert widths == sorted(widths, reverse=True)
        assert min(widths) >= 3
        assert pyramid.levels[0][0] == 1.0
        assert pyramid.levels[2][0] == pytest.approx(0.5)

    @pytest.mark.unit
    def test_window_to_box(self, scene, gray_extractor):
        pyramid = FeaturePyramid(scene, gray_extractor, interval=2, min_rows=3, min_cols=3)
        assert pyramid.window_to_box(0, 3, 3, 6, 6) == OBJECT
        assert pyramid.window_to_box(2, 0, 0, 6, 6) == Rectangle(0, 0, 48, 48)
        assert pyramid.window_to_box(0, 10, 10, 6, 6) == Rectangle(40, 40, 8, 8)


class TestNonMaximumSuppression:
    """Test greedy per-class suppression."""

    @pytest.mark.unit
    def test_suppresses_overlapping_same_class(self):
        detections = [
            Detection('a', 0.5, Rectangle(1, 0, 10, 10)),
            Detection('a', 0.9, Rectangle(0, 0, 10, 10)),
            Detection('a', 0.3, Rectangle(50, 50, 10, 10)),
        ]
        kept = non_maximum_suppression(detections, 0.5)
        assert [d.score for d in kept] == [0.9, 0.3]

    @pytest.mark.unit
    def test_classes_are_independent(self):
        detections = [Detection('a', 0.9, Rectangle(0, 0, 10, 10)), Detection('b', 0.8, Rectangle(0, 0, 10, 10))]
        assert len(non_maximum_suppression(detections, 0.5)) == 2

    @pytest.mark.unit
    def test_overlap_equal_to_limit_is_kept(self):
        detections = [Detection('a', 0.9, Rectangle(0, 0, 10, 10)), Detection('a', 0.8, Rectangle(5, 0, 10, 10))]
        assert len(non_maximum_suppression(detections, 1 / 3)) == 2
        assert len(non_maximum_suppression(detections, 0.3)) == 1


class TestDetector:
    """Test model registration and detection."""

    @pytest.mark.unit
    def test_capacity(self):
        detector = Detector(max_models=1)
        detector.add_model('flower', box_filter_mixture())
        with pytest.raises(TooManyModelsError):
            detector.add_model('bee', box_filter_mixture())
        assert detector.num_models == 1

    @pytest.mark.unit
    def test_add_model_file(self, temp_directory):
        path = temp_directory / "flower.json"
        assert box_filter_mixture().save(path)
        detector = Detector()
        detector.add_model('flower', path, threshold=0.5, synset_id='n0001')
        assert detector.entries[0].threshold == 0.5
        with pytest.raises(InvalidModelFileError):
            detector.add_model('missing', temp_directory / "missing.json")
        assert detector.num_models == 1

    @pytest.mark.unit
    def test_add_models_from_list(self, temp_directory):
        assert box_filter_mixture().save(temp_directory / "a.json")
        assert box_filter_mixture().save(temp_directory / "b.json")
        (temp_directory / "list.txt").write_text("a a.json 0.1 n01\nb b.json\n")
        detector = Detector()
        assert detector.add_models(temp_directory / "list.txt") == 2
        assert [e.classname for e in detector.entries] == ['a', 'b']
        assert detector.entries[0].synset_id == 'n01'

    @pytest.mark.unit
    def test_different_feature_extractors(self):
        detector = Detector()
        detector.add_model('a', box_filter_mixture())
        detector.add_model('b', box_filter_mixture())
        assert detector.different_feature_extractors() == 1
        coarse = configure_gray_extractor(features.create('RGB'))
        coarse.set_param('cellSize', 2)
        detector.add_model('c', box_filter_mixture(extractor=coarse))
        assert detector.different_feature_extractors() == 2

    @pytest.mark.unit
    def test_errors(self, scene):
        with pytest.raises(NoModelsError):
            Detector().detect(scene)
        detector = Detector()
        detector.add_model('flower', box_filter_mixture())
        with pytest.raises(InvalidImageDataError):
            detector.detect(ImageData())

    @pytest.mark.integration
    def test_detect_finds_object(self, scene):
        detector = Detector(interval=2)
        detector.add_model('flower', box_filter_mixture(), synset_id='n0001')
        detections = detector.detect(scene)
        assert len(detections) == 1
        assert detections[0].bbox == OBJECT
        assert detections[0].classname == 'flower'
        assert detections[0].synset_id == 'n0001'

    @pytest.mark.integration
    def test_threshold_filters(self, scene):
        detector = Detector(interval=2)
        detector.add_model('flower', box_filter_mixture(), threshold=100.0)
        assert detector.detect(scene) == []
        assert detector.detect_max(scene) is None
        assert detector.detect_top_k(scene, 3) == []

    @pytest.mark.integration
    def test_detect_max_and_top_k(self, scene):
        detector = Detector(interval=2)
        detector.add_model('flower', box_filter_mixture(bias=-20.0))
        best = detector.detect_max(scene)
        assert best.bbox == OBJECT
        top = detector.detect_top_k(scene, 2)
        assert len(top) == 2
        assert top[0].bbox == OBJECT
        assert top[0].score >= top[1].score
        assert detector.detect_top_k(scene, 1) == [best]
        assert detector.detect_top_k(scene, 0) == []

    @pytest.mark.integration
    @pytest.mark.parametrize("k", [2, 3, 5, 50])
    def test_top_k_is_prefix_of_detect(self, scene, k):
        detector = Detector(overlap=0.3, interval=2)
        detector.add_model('flower', box_filter_mixture(bias=-10.0))
        assert detector.detect_top_k(scene, k) == detector.detect(scene)[:k]

    @pytest.mark.integration
    def test_top_k_stops_early(self, scene, monkeypatch):
        detector = Detector(interval=2)
        detector.add_model('flower', box_filter_mixture(bias=-5.0))
        num_candidates = len(detector.candidates(scene))
        built = []
        original = detector._to_detection
        monkeypatch.setattr(detector, '_to_detection', lambda *args: built.append(args) or original(*args))
        assert len(detector.detect_top_k(scene, 2)) == 2
        assert len(built) < num_candidates

    @pytest.mark.integration
    def test_detections_sorted_and_suppressed(self, scene):
        detector = Detector(overlap=0.3, interval=2)
        detector.add_model('flower', box_filter_mixture(bias=-10.0))
        detections = detector.detect(scene)
        assert [d.score for d in detections] == sorted((d.score for d in detections), reverse=True)
        for i, a in enumerate(detections):
            for b in detections[i + 1:]:
                assert a.bbox.iou(b.bbox) <= 0.3
