"""
Tests for repository background learning and calibration helpers.

Author: MixDet Toolkit Team
Date: October 2026
"""

import pytest
import numpy as np

from mixdet.core.geometry import Rectangle
from mixdet.core.progress import ProgressReporter
from mixdet.core.status import InvalidRepositoryError, OperationAborted
from mixdet.evaluation.detector import FeaturePyramid
from mixdet.models.background import StationaryBackground
from mixdet.models.mixture import Model
from mixdet.training.background_learning import learn_background
from mixdet.training.threshold import box_iou, window_boxes

from tests.conftest import make_object_image


class TestLearnBackground:
    """Test background learning from a repository."""

    @pytest.mark.integration
    def test_learn_and_write(self, tiny_repository, temp_directory, gray_extractor):
        bg_file = temp_directory / "bg.npz"
        calls = []
        reporter = ProgressReporter.overall(lambda *args: calls.append(args) or True)
        background = learn_background(tiny_repository, bg_file, num_images=4, max_offset=2,
                                      progress=reporter, feature_extractor=gray_extractor)
        assert background.max_offset == 2
        assert background.num_features == 1
        assert {c[1] for c in calls} == {2}
        assert calls[-1][:2] == (2, 2)

        loaded = StationaryBackground(bg_file)
        assert np.allclose(loaded.cov, background.cov)
        assert loaded.feature_type == 'RGB'

    @pytest.mark.integration
    def test_accurate_estimator(self, tiny_repository, temp_directory, gray_extractor):
        background = learn_background(tiny_repository, temp_directory / "bg.npz", num_images=3, max_offset=1,
                                      accurate=True, feature_extractor=gray_extractor)
        assert background.cov.shape == (3, 3, 1, 1)

    @pytest.mark.unit
    def test_uses_default_extractor(self, tiny_repository, temp_directory, gray_default_extractor):
        background = learn_background(tiny_repository, temp_directory / "bg.npz", num_images=2, max_offset=1)
        assert background.feature_type == 'RGB'
        assert background.num_features == 1

    @pytest.mark.unit
    def test_invalid_repository(self, temp_directory):
        with pytest.raises(InvalidRepositoryError):
            learn_background(temp_directory, temp_directory / "bg.npz")

    @pytest.mark.unit
    def test_abort_writes_nothing(self, tiny_repository, temp_directory, gray_extractor):
        bg_file = temp_directory / "bg.npz"
        reporter = ProgressReporter.overall(lambda *args: False)
        with pytest.raises(OperationAborted):
            learn_background(tiny_repository, bg_file, num_images=2, max_offset=1, progress=reporter,
                             feature_extractor=gray_extractor)
        assert not bg_file.exists()


class TestCalibrationHelpers:
    """Test window enumeration used by threshold calibration."""

    @pytest.mark.unit
    def test_box_iou(self):
        boxes = np.array([[0, 0, 10, 10], [5, 0, 10, 10], [40, 40, 2, 2]])
        iou = box_iou(boxes, Rectangle(0, 0, 10, 10))
        assert iou == pytest.approx([1.0, 50 / 150, 0.0])
        assert box_iou(boxes, Rectangle()).tolist() == [0.0, 0.0, 0.0]
        assert box_iou(np.zeros((0, 4)), Rectangle(0, 0, 1, 1)).size == 0

    @pytest.mark.unit
    def test_window_boxes_match_pyramid(self, gray_extractor):
        image = make_object_image(32, 32)
        pyramid = FeaturePyramid(image, gray_extractor, interval=2, min_rows=2, min_cols=2)
        model = Model(np.ones((2, 2, 1)))
        scores, boxes = window_boxes(pyramid, model)
        expected = sum((f.shape[0] - 1) * (f.shape[1] - 1) for _, _, f in pyramid.levels)
        assert scores.shape == (expected,)
        assert boxes.shape == (expected, 4)
        assert boxes[0].tolist() == [0, 0, 8, 8]
        assert np.all(boxes[:, 0] + boxes[:, 2] <= 32)
